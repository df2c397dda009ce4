"""
Tests for the Redis queue client.

Queue transitions run the real Lua scripts against fakeredis; call shapes
and error mapping are checked against a mocked redis.asyncio client.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeClock
from scheduler_service.errors import QueueError, ReceiptExpiredError
from scheduler_service.jobs.models import (
    DeadLetterCategory,
    DeadLetterRecord,
    JobType,
    QueuePriority,
    encode_job,
)
from scheduler_service.queue.redis_list import (
    RESTORE_SCRIPT,
    TAKE_SCRIPT,
    RedisQueueClient,
    unwrap_entry,
    wrap_entry,
)

REGULAR = QueuePriority.REGULAR


def email_body(job_id, attempt=0):
    return encode_job(JobType.SEND_EMAIL, {"to": ["a@example.com"]}, job_id=job_id, attempt=attempt)


@pytest.fixture
def clock():
    return FakeClock(now=5000.0)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def queue(fake_redis, clock):
    return RedisQueueClient(
        "redis://test",
        prefix="sched",
        visibility_timeout=60,
        client=fake_redis,
        clock=clock,
    )


def test_entry_wrapping():
    entry = wrap_entry('{"a": 1}', "mid-1")

    assert unwrap_entry(entry) == ("mid-1", '{"a": 1}')
    message_id, body = unwrap_entry('{"type": "email"}')
    assert body == '{"type": "email"}'
    assert len(message_id) == 40


@pytest.mark.asyncio
async def test_poll_takes_oldest_first_and_tracks_in_flight(queue, fake_redis):
    for job_id in ("job-1", "job-2", "job-3"):
        await queue.publish(REGULAR, email_body(job_id), deduplication_id=job_id)

    jobs = await queue.poll_batch(REGULAR, max_messages=2, wait_time_seconds=0)

    assert [j.id for j in jobs] == ["job-1", "job-2"]
    assert len({j.receipt_handle for j in jobs}) == 2
    assert await fake_redis.llen("sched:regular") == 1
    assert await fake_redis.hlen("sched:regular:inflight") == 2
    assert await fake_redis.zscore("sched:regular:deadlines", jobs[0].receipt_handle) == 5060.0


@pytest.mark.asyncio
async def test_unacked_message_is_redelivered_after_visibility_timeout(queue, clock):
    await queue.publish(REGULAR, email_body("job-1"))
    first, = await queue.poll_batch(REGULAR, 10, 0)

    clock.advance(59)
    assert await queue.poll_batch(REGULAR, 10, 0) == []

    clock.advance(2)
    second, = await queue.poll_batch(REGULAR, 10, 0)

    assert second.id == "job-1"
    assert second.receipt_handle != first.receipt_handle
    with pytest.raises(ReceiptExpiredError):
        await queue.ack(REGULAR, first.receipt_handle)
    await queue.ack(REGULAR, second.receipt_handle)


@pytest.mark.asyncio
async def test_acked_message_is_not_redelivered(queue, clock, fake_redis):
    await queue.publish(REGULAR, email_body("job-1"))
    job, = await queue.poll_batch(REGULAR, 10, 0)

    await queue.ack(REGULAR, job.receipt_handle)
    clock.advance(3600)

    assert await queue.poll_batch(REGULAR, 10, 0) == []
    assert await fake_redis.hlen("sched:regular:inflight") == 0


@pytest.mark.asyncio
async def test_double_ack_raises_receipt_expired(queue):
    await queue.publish(REGULAR, email_body("job-1"))
    job, = await queue.poll_batch(REGULAR, 10, 0)
    await queue.ack(REGULAR, job.receipt_handle)

    with pytest.raises(ReceiptExpiredError):
        await queue.ack(REGULAR, job.receipt_handle)


@pytest.mark.asyncio
async def test_extend_visibility_postpones_redelivery(queue, clock):
    await queue.publish(REGULAR, email_body("job-1"))
    job, = await queue.poll_batch(REGULAR, 10, 0)

    clock.advance(50)
    await queue.extend_visibility(REGULAR, job.receipt_handle, 60)
    clock.advance(50)

    assert await queue.poll_batch(REGULAR, 10, 0) == []
    await queue.ack(REGULAR, job.receipt_handle)


@pytest.mark.asyncio
async def test_extend_unknown_receipt_raises(queue):
    with pytest.raises(ReceiptExpiredError):
        await queue.extend_visibility(REGULAR, "rh-gone", 30)


@pytest.mark.asyncio
async def test_requeued_job_stays_hidden_until_delay_and_carries_next_attempt(queue, clock):
    await queue.publish(REGULAR, email_body("job-1"), deduplication_id="job-1")
    job, = await queue.poll_batch(REGULAR, 10, 0)

    await queue.requeue(job, delay_seconds=8, next_attempt=1)

    clock.advance(7)
    assert await queue.poll_batch(REGULAR, 10, 0) == []
    clock.advance(2)
    retried, = await queue.poll_batch(REGULAR, 10, 0)

    assert retried.id == "job-1"
    assert retried.attempt == 1
    with pytest.raises(ReceiptExpiredError):
        await queue.requeue(job, delay_seconds=0, next_attempt=2)


@pytest.mark.asyncio
async def test_delayed_publish_is_hidden_until_due(queue, clock):
    message_id = await queue.publish(REGULAR, email_body("job-1"), delay_seconds=10, deduplication_id="job-1")

    assert message_id == "job-1"
    assert await queue.poll_batch(REGULAR, 10, 0) == []
    clock.advance(10)
    job, = await queue.poll_batch(REGULAR, 10, 0)
    assert job.id == "job-1"


@pytest.mark.asyncio
async def test_cancelled_poll_does_not_lose_taken_messages(queue, clock):
    await queue.publish(REGULAR, email_body("job-1"))
    await queue.connect()
    take = queue._scripts["take"]
    taken = asyncio.Event()

    async def take_then_hang(**kwargs):
        result = await take(**kwargs)
        taken.set()
        await asyncio.Event().wait()
        return result

    queue._scripts["take"] = take_then_hang
    poll = asyncio.create_task(queue.poll_batch(REGULAR, 10, 0))
    await taken.wait()
    poll.cancel()
    with pytest.raises(asyncio.CancelledError):
        await poll
    queue._scripts["take"] = take

    assert await queue.poll_batch(REGULAR, 10, 0) == []
    clock.advance(61)
    job, = await queue.poll_batch(REGULAR, 10, 0)
    assert job.id == "job-1"


@pytest.mark.asyncio
async def test_connect_restores_entries_stranded_in_processing_list(queue, fake_redis):
    await fake_redis.lpush("sched:regular:processing", wrap_entry(email_body("job-old"), "job-old"))

    await queue.connect()
    job, = await queue.poll_batch(REGULAR, 10, 0)

    assert job.id == "job-old"
    assert await fake_redis.exists("sched:regular:processing") == 0


@pytest.mark.asyncio
async def test_undecodable_entry_is_still_delivered(queue, fake_redis):
    await fake_redis.lpush("sched:regular", "garbage")

    job, = await queue.poll_batch(REGULAR, 10, 0)

    assert job.decode_error is not None
    assert job.raw_body == "garbage"
    await queue.publish_dead_letter(DeadLetterRecord.from_job(job, DeadLetterCategory.INVALID_PAYLOAD, "bad"))
    entry = await fake_redis.lindex("sched:dead-letter", 0)
    assert json.loads(entry)["original_body"] == "garbage"


@pytest.mark.asyncio
async def test_healthcheck_counts(queue, clock):
    await queue.publish(REGULAR, email_body("job-1"))
    await queue.publish(REGULAR, email_body("job-2"))
    await queue.publish(REGULAR, email_body("job-3"), delay_seconds=30)
    await queue.poll_batch(REGULAR, 1, 0)

    health = await queue.healthcheck(REGULAR)

    assert health == {"status": "ok", "attributes": {"visible": 1, "delayed": 1, "in_flight": 1}}


@pytest.fixture
def redis_client():
    client = MagicMock()

    def register_script(source):
        if source == TAKE_SCRIPT:
            return AsyncMock(return_value=[])
        if source == RESTORE_SCRIPT:
            return AsyncMock(return_value=0)
        return AsyncMock(return_value=1)

    client.register_script = MagicMock(side_effect=register_script)
    client.blmove = AsyncMock(return_value=None)
    client.lpush = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mocked_queue(redis_client, clock):
    return RedisQueueClient("redis://test", prefix="sched", visibility_timeout=60, client=redis_client, clock=clock)


@pytest.mark.asyncio
async def test_long_poll_peeks_without_consuming(mocked_queue, redis_client):
    assert await mocked_queue.poll_batch(REGULAR, 5, 20) == []

    redis_client.blmove.assert_awaited_once_with("sched:regular", "sched:regular", 20, "RIGHT", "RIGHT")
    mocked_queue._scripts["take"].assert_not_awaited()


@pytest.mark.asyncio
async def test_ready_peek_takes_batch_atomically(mocked_queue, redis_client):
    redis_client.blmove.return_value = "entry"

    await mocked_queue.poll_batch(REGULAR, 5, 20)

    mocked_queue._scripts["take"].assert_awaited_once()
    call = mocked_queue._scripts["take"].await_args
    assert call.kwargs["keys"] == ["sched:regular", "sched:regular:inflight", "sched:regular:deadlines"]
    assert call.kwargs["args"][:2] == [5, 5060.0]


@pytest.mark.asyncio
async def test_redis_errors_become_queue_errors(mocked_queue, redis_client):
    redis_client.lpush.side_effect = RedisConnectionError("down")

    with pytest.raises(QueueError):
        await mocked_queue.publish(REGULAR, "{}")

    mocked_queue._scripts["reclaim"].side_effect = RedisConnectionError("down")
    with pytest.raises(QueueError):
        await mocked_queue.poll_batch(REGULAR, 1, 0)

    mocked_queue._scripts["reclaim"].side_effect = None
    redis_client.blmove.side_effect = RedisConnectionError("down")
    with pytest.raises(QueueError):
        await mocked_queue.poll_batch(REGULAR, 1, 5)


@pytest.mark.asyncio
async def test_close_releases_client(mocked_queue, redis_client):
    await mocked_queue.connect()

    await mocked_queue.close()

    redis_client.aclose.assert_awaited_once()

"""
Tests for the producer-side SchedulerClient.
"""

import json
from unittest.mock import AsyncMock

import pytest

from scheduler_service.client import SchedulerClient
from scheduler_service.errors import JobValidationError
from scheduler_service.jobs.models import JobType, QueuePriority


@pytest.fixture
def client(memory_queue):
    return SchedulerClient(memory_queue)


@pytest.mark.asyncio
async def test_enqueue_email_routes_low_numbers_to_priority(client, memory_queue):
    urgent_id = await client.enqueue_email("a@example.com", "Urgent", text="now", priority=1)
    normal_id = await client.enqueue_email("b@example.com", "Later", html="<p>later</p>")

    urgent, = await memory_queue.poll_batch(QueuePriority.PRIORITY, 10, 0)
    normal, = await memory_queue.poll_batch(QueuePriority.REGULAR, 10, 0)
    assert urgent.id == urgent_id
    assert normal.id == normal_id
    assert JobType.parse(urgent.type) is JobType.SEND_EMAIL


@pytest.mark.parametrize(("priority", "expected"), [(1, QueuePriority.PRIORITY), (3, QueuePriority.PRIORITY), (4, QueuePriority.REGULAR)])
def test_route_threshold(client, priority, expected):
    assert client.route(priority) is expected


@pytest.mark.asyncio
async def test_enqueued_payload_round_trips_through_worker_schema(client, memory_queue):
    await client.enqueue_email(
        ["a@example.com"],
        "Report",
        text="hello",
        from_email="office@example.com",
        reply_to="office@example.com",
        cc=["c@example.com"],
        attachments=[{"filename": "a.txt", "content": "aGk=", "content_type": "text/plain"}],
        job_id="job-42",
    )

    job, = await memory_queue.poll_batch(QueuePriority.REGULAR, 1, 0)
    assert job.id == "job-42"
    assert job.payload["from"] == "office@example.com"
    assert job.payload["replyTo"] == "office@example.com"
    assert job.payload["attachments"][0]["contentType"] == "text/plain"
    assert "html" not in job.payload


@pytest.mark.asyncio
async def test_invalid_email_is_rejected_before_publishing(client, memory_queue):
    memory_queue.publish = AsyncMock()

    with pytest.raises(JobValidationError) as exc_info:
        await client.enqueue_email("not-an-address", "Hi", text="x")

    assert exc_info.value.errors
    memory_queue.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_delay_and_dedup_id_are_passed_to_queue(memory_queue):
    memory_queue.publish = AsyncMock(return_value="mid-1")
    client = SchedulerClient(memory_queue)

    job_id = await client.enqueue_email("a@example.com", "Hi", text="x", delay_seconds=30)

    queue_id, body = memory_queue.publish.await_args.args
    assert queue_id is QueuePriority.REGULAR
    assert memory_queue.publish.await_args.kwargs == {"delay_seconds": 30, "deduplication_id": job_id}
    assert json.loads(body)["id"] == job_id


@pytest.mark.asyncio
async def test_enqueue_digest(client, memory_queue):
    await client.enqueue_digest(
        "a@example.com",
        "Weekly",
        sections=[{"title": "Grades", "text": "All A"}],
        intro="Hello",
    )

    job, = await memory_queue.poll_batch(QueuePriority.REGULAR, 1, 0)
    assert job.type == "SEND_DIGEST"
    assert job.payload["sections"] == [{"title": "Grades", "text": "All A"}]


@pytest.mark.asyncio
async def test_healthcheck_reports_each_queue(client):
    report = await client.healthcheck()

    assert report["status"] == "ok"
    assert set(report["queues"]) == {"priority", "regular"}

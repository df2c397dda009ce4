"""
Tests for the job processor.
"""

import pytest

from conftest import FakeDispatcher, email_payload, make_job
from scheduler_service.errors import PermanentDeliveryError, TransientDeliveryError
from scheduler_service.jobs.dedupe import InMemoryDedupeStore
from scheduler_service.jobs.handlers import build_default_registry
from scheduler_service.jobs.models import (
    DeadLetterCategory,
    DeliveryOutcome,
    DeliveryStatus,
    ProcessingAction,
    QueuePriority,
    decode_job,
)
from scheduler_service.jobs.processor import JobProcessor
from scheduler_service.jobs.retry import RetryPolicy


def build_processor(dispatcher, max_retries=3):
    registry = build_default_registry(dispatcher, InMemoryDedupeStore())
    return JobProcessor(registry, RetryPolicy(max_retries=max_retries, base_delay=2, max_delay=60))


@pytest.mark.asyncio
async def test_success_acks(dispatcher):
    processor = build_processor(dispatcher)

    result = await processor.process(make_job())

    assert result.action is ProcessingAction.ACK
    assert result.outcome.provider_message_id == "fake-1"
    assert processor.stats.acked == 1


@pytest.mark.asyncio
async def test_legacy_email_body_is_processed(dispatcher):
    processor = build_processor(dispatcher)
    job = decode_job(
        '{"type": "email", "to": "parent@example.com", "subject": "Hi", "text": "Hello",'
        ' "timestamp": "2024-01-01T00:00:00Z"}',
        message_id="msg-1",
        receipt_handle="rh-1",
        priority=QueuePriority.REGULAR,
    )

    result = await processor.process(job)

    assert result.action is ProcessingAction.ACK
    assert dispatcher.sent[0].to == ("parent@example.com",)


@pytest.mark.asyncio
async def test_transient_outcome_requeues_with_backoff():
    dispatcher = FakeDispatcher([DeliveryOutcome.transient("rate limited")])
    processor = build_processor(dispatcher)

    result = await processor.process(make_job(attempt=1))

    assert result.action is ProcessingAction.RETRY
    assert result.next_attempt == 2
    assert result.delay_seconds == 4


@pytest.mark.asyncio
async def test_transient_outcome_at_max_retries_dead_letters():
    dispatcher = FakeDispatcher([DeliveryOutcome.transient("rate limited")])
    processor = build_processor(dispatcher, max_retries=3)

    result = await processor.process(make_job(attempt=3))

    assert result.action is ProcessingAction.DEAD_LETTER
    assert result.dead_letter_category is DeadLetterCategory.RETRIES_EXHAUSTED


@pytest.mark.asyncio
async def test_permanent_outcome_dead_letters_on_first_attempt():
    dispatcher = FakeDispatcher([DeliveryOutcome.permanent("550 no such user")])
    processor = build_processor(dispatcher)

    result = await processor.process(make_job())

    assert result.action is ProcessingAction.DEAD_LETTER
    assert result.dead_letter_category is DeadLetterCategory.PERMANENT_FAILURE


@pytest.mark.parametrize(
    "job",
    [
        make_job(payload=email_payload(to=[])),
        make_job(payload=email_payload(to=["nope"])),
        make_job(payload={"to": ["a@example.com"], "subject": "no body"}),
        make_job(job_type="SEND_SMS"),
        decode_job("[1, 2]", message_id="m", receipt_handle="r", priority=QueuePriority.REGULAR),
    ],
    ids=["no-recipients", "bad-address", "no-body", "unknown-type", "non-object"],
)
@pytest.mark.asyncio
async def test_invalid_jobs_dead_letter_without_sending(dispatcher, job):
    processor = build_processor(dispatcher)

    result = await processor.process(job)

    assert result.action is ProcessingAction.DEAD_LETTER
    assert result.dead_letter_category is DeadLetterCategory.INVALID_PAYLOAD
    assert result.outcome.status is DeliveryStatus.PERMANENT_FAILURE
    assert dispatcher.sent == []
    assert processor.stats.validation_failures == 1


@pytest.mark.asyncio
async def test_delivery_errors_raised_by_handler_are_classified():
    processor = build_processor(
        FakeDispatcher([TransientDeliveryError("reset"), PermanentDeliveryError("auth")])
    )

    first = await processor.process(make_job(job_id="a"))
    second = await processor.process(make_job(job_id="b"))

    assert first.action is ProcessingAction.RETRY
    assert second.action is ProcessingAction.DEAD_LETTER
    assert second.outcome.reason == "auth"


@pytest.mark.asyncio
async def test_unexpected_handler_error_is_transient():
    processor = build_processor(FakeDispatcher([KeyError("surprise")]))

    result = await processor.process(make_job())

    assert result.action is ProcessingAction.RETRY
    assert "KeyError" in result.outcome.reason
    assert processor.stats.unexpected_errors == 1


@pytest.mark.asyncio
async def test_stats_snapshot_counts_dispositions():
    processor = build_processor(
        FakeDispatcher([DeliveryOutcome.transient("x"), DeliveryOutcome.permanent("y")])
    )

    await processor.process(make_job(job_id="a"))
    await processor.process(make_job(job_id="b"))
    await processor.process(make_job(job_id="c"))

    snapshot = processor.stats.snapshot()
    assert snapshot["processed"] == 3
    assert snapshot["retried"] == 1
    assert snapshot["dead_lettered"] == 1
    assert snapshot["acked"] == 1

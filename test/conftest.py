"""
Shared fixtures for scheduler service tests.

Nothing here touches the network: queues are in-memory, email delivery goes
through a scripted fake dispatcher.
"""

import json
from typing import Any

import pytest

from scheduler_service.config import WorkerSettings
from scheduler_service.email.interfaces import EmailDispatcher, EmailMessage
from scheduler_service.jobs.dedupe import InMemoryDedupeStore
from scheduler_service.jobs.handlers import build_default_registry
from scheduler_service.jobs.models import DeliveryOutcome, JobType, QueuePriority, decode_job, encode_job
from scheduler_service.jobs.processor import JobProcessor
from scheduler_service.jobs.retry import RetryPolicy
from scheduler_service.queue.memory import InMemoryQueueClient
from scheduler_service.worker.loop import WorkerLoop


class FakeDispatcher(EmailDispatcher):
    """Records messages; returns scripted outcomes, then SUCCESS."""

    name = "fake"

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.sent: list[EmailMessage] = []
        self._outcomes = list(outcomes or [])

    async def send(self, message: EmailMessage) -> DeliveryOutcome:
        self.sent.append(message)
        if self._outcomes:
            outcome = self._outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return DeliveryOutcome.success(provider_message_id=f"fake-{len(self.sent)}")

    async def health_check(self) -> bool:
        return True


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def email_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "to": ["parent@example.com"],
        "subject": "Term report ready",
        "text": "Your child's term report is available.",
    }
    payload.update(overrides)
    return payload


def make_job(
    payload: dict[str, Any] | None = None,
    job_type: str = JobType.SEND_EMAIL.value,
    job_id: str = "job-1",
    attempt: int = 0,
    priority: QueuePriority = QueuePriority.REGULAR,
):
    body = encode_job(job_type, payload if payload is not None else email_payload(), job_id=job_id, attempt=attempt)
    return decode_job(body, message_id=f"msg-{job_id}", receipt_handle=f"rh-{job_id}", priority=priority)


@pytest.fixture
def make_settings():
    """Settings tuned for fast, deterministic loop tests."""

    def _make(**overrides: Any) -> WorkerSettings:
        values: dict[str, Any] = {
            "queue_provider": "memory",
            "email_provider": "smtp",
            "smtp_host": "localhost",
            "poll_interval": 0,
            "wait_time_seconds": 0,
            "priority_wait_time_seconds": 0,
            "retry_base_delay_seconds": 0,
            "retry_max_delay_seconds": 0,
            "shutdown_grace_seconds": 1,
        }
        values.update(overrides)
        return WorkerSettings(_env_file=None, **values)

    return _make


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def memory_queue():
    return InMemoryQueueClient(visibility_timeout=300)


@pytest.fixture
def build_worker(make_settings, memory_queue):
    """Wire a WorkerLoop over the in-memory queue and a fake dispatcher."""

    def _build(dispatcher: FakeDispatcher | None = None, **overrides: Any):
        settings = make_settings(**overrides)
        dispatcher = dispatcher or FakeDispatcher()
        registry = build_default_registry(dispatcher, InMemoryDedupeStore())
        processor = JobProcessor(registry, RetryPolicy.from_settings(settings))
        worker = WorkerLoop(memory_queue, processor, settings)
        return worker, processor, dispatcher

    return _build


async def publish_email(queue, queue_id=QueuePriority.REGULAR, job_id=None, **payload_overrides) -> str:
    body = encode_job(JobType.SEND_EMAIL, email_payload(**payload_overrides), job_id=job_id)
    await queue.publish(queue_id, body)
    return json.loads(body)["id"]

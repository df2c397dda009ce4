"""
Job data model and wire codec.

A Job is the unit of work pulled from a queue. Its body on the wire is a
JSON envelope; bodies published by the legacy Node client (flat email
fields with `"type": "email"`) are accepted as well.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


class QueuePriority(str, Enum):
    """Logical queue a job was read from."""

    PRIORITY = "priority"
    REGULAR = "regular"


class JobType(str, Enum):
    """Job types routed by the handler registry."""

    SEND_EMAIL = "SEND_EMAIL"
    SEND_DIGEST = "SEND_DIGEST"

    @classmethod
    def parse(cls, value: str | None) -> "JobType | None":
        """Resolve a wire type name, including legacy aliases."""
        if not value:
            return None
        return _JOB_TYPE_ALIASES.get(value.strip().lower())


_JOB_TYPE_ALIASES: dict[str, JobType] = {
    "send_email": JobType.SEND_EMAIL,
    "send-email": JobType.SEND_EMAIL,
    "email": JobType.SEND_EMAIL,
    "send_digest": JobType.SEND_DIGEST,
    "send-digest": JobType.SEND_DIGEST,
    "digest": JobType.SEND_DIGEST,
}

_LEGACY_META_FIELDS = frozenset({"type", "timestamp"})


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of an EmailDispatcher.send call."""

    status: DeliveryStatus
    reason: str | None = None
    provider_message_id: str | None = None
    duplicate: bool = False

    @classmethod
    def success(cls, provider_message_id: str | None = None) -> "DeliveryOutcome":
        return cls(DeliveryStatus.SUCCESS, provider_message_id=provider_message_id)

    @classmethod
    def transient(cls, reason: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "DeliveryOutcome":
        return cls(DeliveryStatus.PERMANENT_FAILURE, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS


class ProcessingAction(str, Enum):
    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class DeadLetterCategory(str, Enum):
    PERMANENT_FAILURE = "permanent_failure"
    RETRIES_EXHAUSTED = "retries_exhausted"
    INVALID_PAYLOAD = "invalid_payload"


@dataclass(frozen=True)
class Job:
    """A dequeued job. `receipt_handle` is invalid once the job is acked."""

    id: str
    type: str
    payload: dict[str, Any]
    priority: QueuePriority
    receipt_handle: str
    attempt: int = 0
    raw_body: str = ""
    decode_error: str | None = None
    enqueued_at: str | None = None


@dataclass(frozen=True)
class ProcessingResult:
    """What the worker loop must do with a processed job."""

    action: ProcessingAction
    outcome: DeliveryOutcome
    next_attempt: int | None = None
    delay_seconds: float = 0.0
    dead_letter_category: DeadLetterCategory | None = None


@dataclass(frozen=True)
class DeadLetterRecord:
    """Terminal failure record kept for manual inspection."""

    job_id: str
    job_type: str
    queue: QueuePriority
    attempt: int
    category: DeadLetterCategory
    reason: str
    original_body: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_job(
        cls,
        job: Job,
        category: DeadLetterCategory,
        reason: str,
    ) -> "DeadLetterRecord":
        return cls(
            job_id=job.id,
            job_type=job.type,
            queue=job.priority,
            attempt=job.attempt,
            category=category,
            reason=reason,
            original_body=job.raw_body,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "queue": self.queue.value,
            "attempt": self.attempt,
            "category": self.category.value,
            "reason": self.reason,
            "original_body": self.original_body,
            "failed_at": self.failed_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def new_job_id() -> str:
    return str(uuid4())


def encode_job(
    job_type: JobType | str,
    payload: dict[str, Any],
    job_id: str | None = None,
    attempt: int = 0,
) -> str:
    """Serialize a job envelope for publishing."""
    type_name = job_type.value if isinstance(job_type, JobType) else job_type
    envelope = {
        "id": job_id or new_job_id(),
        "type": type_name,
        "payload": payload,
        "attempt": attempt,
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
    }
    return json.dumps(envelope, default=str)


def with_envelope_attempt(raw_body: str, attempt: int, job_id: str) -> str:
    """Rewrite the attempt counter of an encoded envelope.

    Legacy flat bodies are upgraded to the envelope format so the counter
    survives redelivery.
    """
    body = json.loads(raw_body)
    if "payload" not in body:
        body = {
            "id": job_id,
            "type": body.get("type"),
            "payload": {k: v for k, v in body.items() if k not in _LEGACY_META_FIELDS},
        }
    body.setdefault("id", job_id)
    body["attempt"] = attempt
    return json.dumps(body, default=str)


def decode_job(
    raw_body: str,
    *,
    message_id: str,
    receipt_handle: str,
    priority: QueuePriority,
    min_attempt: int = 0,
) -> Job:
    """Build a Job from a raw queue body.

    Never raises: undecodable bodies come back with `decode_error` set so
    the processor can dead-letter them.
    """
    try:
        body = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        return Job(
            id=message_id,
            type="",
            payload={},
            priority=priority,
            receipt_handle=receipt_handle,
            attempt=min_attempt,
            raw_body=raw_body if isinstance(raw_body, str) else "",
            decode_error=f"invalid JSON body: {e}",
        )

    if not isinstance(body, dict):
        return Job(
            id=message_id,
            type="",
            payload={},
            priority=priority,
            receipt_handle=receipt_handle,
            attempt=min_attempt,
            raw_body=raw_body,
            decode_error="job body must be a JSON object",
        )

    if isinstance(body.get("payload"), dict):
        payload = body["payload"]
        enqueued_at = body.get("enqueued_at")
    else:
        # Legacy flat body: every non-meta field belongs to the payload
        payload = {k: v for k, v in body.items() if k not in _LEGACY_META_FIELDS}
        payload.pop("id", None)
        payload.pop("attempt", None)
        enqueued_at = body.get("timestamp")

    attempt = body.get("attempt", 0)
    if not isinstance(attempt, int) or attempt < 0:
        attempt = 0

    return Job(
        id=str(body.get("id") or message_id),
        type=str(body.get("type") or ""),
        payload=payload,
        priority=priority,
        receipt_handle=receipt_handle,
        attempt=max(attempt, min_attempt),
        raw_body=raw_body,
        enqueued_at=str(enqueued_at) if enqueued_at is not None else None,
    )

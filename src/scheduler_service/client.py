"""
Producer-side client.

Services that need an email sent enqueue a job here instead of talking to
a provider. Payloads are validated before publishing so malformed jobs
never reach the queue.
"""

from typing import Any

from pydantic import BaseModel, ValidationError

from scheduler_service.errors import JobValidationError
from scheduler_service.jobs.models import JobType, QueuePriority, encode_job, new_job_id
from scheduler_service.jobs.schemas import SendDigestPayload, SendEmailPayload
from scheduler_service.queue.interface import QueueClient
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

# Numeric priorities at or below this go to the PRIORITY queue
PRIORITY_THRESHOLD = 3
DEFAULT_PRIORITY = 5


class SchedulerClient:
    """Enqueue email jobs onto the worker's queues."""

    def __init__(self, queue: QueueClient) -> None:
        self._queue = queue

    def route(self, priority: int) -> QueuePriority:
        """Pick the target queue for a numeric priority (lower is more urgent)."""
        if priority <= PRIORITY_THRESHOLD and self._queue.is_configured(QueuePriority.PRIORITY):
            return QueuePriority.PRIORITY
        return QueuePriority.REGULAR

    async def enqueue_email(
        self,
        to: str | list[str],
        subject: str,
        text: str | None = None,
        html: str | None = None,
        *,
        from_email: str | None = None,
        reply_to: str | None = None,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        attachments: list[dict[str, Any]] | None = None,
        headers: dict[str, str] | None = None,
        priority: int = DEFAULT_PRIORITY,
        delay_seconds: int = 0,
        job_id: str | None = None,
    ) -> str:
        """
        Enqueue a SEND_EMAIL job.

        Returns:
            The job id, usable for tracing the delivery in worker logs.

        Raises:
            JobValidationError: If the payload would be rejected by the worker.
            QueueError: If the queue backend is unreachable.
        """
        payload = self._validate(
            SendEmailPayload,
            {
                "to": to,
                "subject": subject,
                "text": text,
                "html": html,
                "from": from_email,
                "replyTo": reply_to,
                "cc": cc or [],
                "bcc": bcc or [],
                "attachments": attachments or [],
                "headers": headers or {},
            },
        )
        return await self._enqueue(JobType.SEND_EMAIL, payload, priority, delay_seconds, job_id)

    async def enqueue_digest(
        self,
        to: str | list[str],
        subject: str,
        sections: list[dict[str, Any]],
        *,
        intro: str | None = None,
        from_email: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        delay_seconds: int = 0,
        job_id: str | None = None,
    ) -> str:
        """Enqueue a SEND_DIGEST job built from pre-rendered sections."""
        payload = self._validate(
            SendDigestPayload,
            {"to": to, "subject": subject, "sections": sections, "intro": intro, "from": from_email},
        )
        return await self._enqueue(JobType.SEND_DIGEST, payload, priority, delay_seconds, job_id)

    async def healthcheck(self) -> dict[str, Any]:
        """Reachability of each configured queue."""
        results: dict[str, Any] = {}
        for queue_id in QueuePriority:
            if self._queue.is_configured(queue_id):
                results[queue_id.value] = await self._queue.healthcheck(queue_id)
            else:
                results[queue_id.value] = {"status": "not_configured"}
        healthy = all(r["status"] in ("ok", "not_configured") for r in results.values())
        return {"status": "ok" if healthy else "error", "queues": results}

    @staticmethod
    def _validate(schema: type[BaseModel], data: dict[str, Any]) -> dict[str, Any]:
        try:
            model = schema.model_validate(data)
        except ValidationError as e:
            raise JobValidationError(
                f"invalid {schema.__name__}: {e.error_count()} error(s)",
                errors=e.errors(include_url=False, include_input=False),
            ) from e
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def _enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        priority: int,
        delay_seconds: int,
        job_id: str | None,
    ) -> str:
        job_id = job_id or new_job_id()
        queue_id = self.route(priority)
        body = encode_job(job_type, payload, job_id=job_id)
        message_id = await self._queue.publish(
            queue_id,
            body,
            delay_seconds=delay_seconds,
            deduplication_id=job_id,
        )
        logger.info(
            "Job enqueued",
            extra={
                "job_id": job_id,
                "job_type": job_type.value,
                "queue": queue_id.value,
                "message_id": message_id,
                "delay_seconds": delay_seconds,
            },
        )
        return job_id

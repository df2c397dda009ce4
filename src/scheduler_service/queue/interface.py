"""
Queue client interface.

Delivery is at-least-once: a polled message becomes visible again if it is
not acked within the backend's visibility window. The worker loop is
backend-agnostic; every backend honors the same contract.
"""

from abc import ABC, abstractmethod
from typing import Any

from scheduler_service.jobs.models import DeadLetterRecord, Job, QueuePriority


class QueueClient(ABC):
    """Uniform pull/ack/extend interface over a queue backend."""

    name: str = "abstract"

    async def connect(self) -> None:
        """Open backend connections; called once before the first poll."""
        return None

    async def close(self) -> None:
        """Release backend connections."""
        return None

    @abstractmethod
    def is_configured(self, queue_id: QueuePriority) -> bool:
        """Return True if the backend has an endpoint for this queue."""

    @abstractmethod
    async def poll_batch(
        self,
        queue_id: QueuePriority,
        max_messages: int,
        wait_time_seconds: int,
    ) -> list[Job]:
        """
        Long-poll for up to `max_messages` jobs.

        Blocks up to `wait_time_seconds` for at least one message and returns
        an empty list when none arrive.

        Raises:
            QueueError: If the backend is unreachable.
        """

    @abstractmethod
    async def ack(self, queue_id: QueuePriority, receipt_handle: str) -> None:
        """
        Permanently remove a message.

        Raises:
            ReceiptExpiredError: If the visibility window elapsed; the message
                may already have been redelivered elsewhere.
            QueueError: For any other backend failure.
        """

    @abstractmethod
    async def extend_visibility(
        self,
        queue_id: QueuePriority,
        receipt_handle: str,
        extra_seconds: int,
    ) -> None:
        """Keep an in-flight message hidden for `extra_seconds` more."""

    @abstractmethod
    async def requeue(self, job: Job, delay_seconds: float, next_attempt: int) -> None:
        """Make the job eligible again after `delay_seconds`, carrying `next_attempt`.

        The message is not acked: it stays in the queue until redelivered.
        """

    @abstractmethod
    async def publish(
        self,
        queue_id: QueuePriority,
        body: str,
        delay_seconds: int = 0,
        deduplication_id: str | None = None,
    ) -> str:
        """Publish an encoded job body and return the backend message id."""

    @abstractmethod
    async def publish_dead_letter(self, record: DeadLetterRecord) -> None:
        """Store a dead-letter record for manual inspection."""

    @abstractmethod
    async def healthcheck(self, queue_id: QueuePriority) -> dict[str, Any]:
        """Report reachability of one queue.

        Returns `{"status": "ok", ...}` or `{"status": "error", "error": ...}`.
        """

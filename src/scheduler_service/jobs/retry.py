"""Bounded exponential retry policy."""

from dataclasses import dataclass

from scheduler_service.config import WorkerSettings
from scheduler_service.jobs.models import (
    DeadLetterCategory,
    DeliveryOutcome,
    DeliveryStatus,
    ProcessingAction,
)


@dataclass(frozen=True)
class RetryDecision:
    action: ProcessingAction
    next_attempt: int | None = None
    delay_seconds: float = 0.0
    dead_letter_category: DeadLetterCategory | None = None


class RetryPolicy:
    """Exponential backoff retry policy."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 900.0,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for attempt number."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Check if should retry based on attempt count."""
        return attempt < self.max_retries

    def decide(self, attempt: int, outcome: DeliveryOutcome) -> RetryDecision:
        """
        Map a delivery outcome to a queue action.

        Permanent failures never consume retry budget; transient failures
        are retried with backoff until `attempt` reaches `max_retries`.
        """
        if outcome.status is DeliveryStatus.SUCCESS:
            return RetryDecision(ProcessingAction.ACK)

        if outcome.status is DeliveryStatus.PERMANENT_FAILURE:
            return RetryDecision(
                ProcessingAction.DEAD_LETTER,
                dead_letter_category=DeadLetterCategory.PERMANENT_FAILURE,
            )

        if not self.should_retry(attempt):
            return RetryDecision(
                ProcessingAction.DEAD_LETTER,
                dead_letter_category=DeadLetterCategory.RETRIES_EXHAUSTED,
            )

        return RetryDecision(
            ProcessingAction.RETRY,
            next_attempt=attempt + 1,
            delay_seconds=self.get_delay(attempt),
        )

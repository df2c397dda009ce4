"""
Job processor.

Validates a dequeued job, routes it to its handler and turns the delivery
outcome into an ack/retry/dead-letter decision. It never touches the queue;
the worker loop carries out the returned action.
"""

from dataclasses import asdict, dataclass

from pydantic import BaseModel, ValidationError

from scheduler_service.errors import DeliveryError, JobValidationError
from scheduler_service.jobs.handlers import HandlerRegistry, JobHandler
from scheduler_service.jobs.models import (
    DeadLetterCategory,
    DeliveryOutcome,
    Job,
    JobType,
    ProcessingAction,
    ProcessingResult,
)
from scheduler_service.jobs.retry import RetryPolicy
from scheduler_service.shared.logging import get_logger, job_context

logger = get_logger(__name__)


@dataclass
class ProcessingStats:
    """Per-process outcome counters."""

    processed: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    duplicates: int = 0
    validation_failures: int = 0
    unexpected_errors: int = 0

    def record(self, result: ProcessingResult) -> None:
        self.processed += 1
        if result.action is ProcessingAction.ACK:
            self.acked += 1
            if result.outcome.duplicate:
                self.duplicates += 1
        elif result.action is ProcessingAction.RETRY:
            self.retried += 1
        else:
            self.dead_lettered += 1
            if result.dead_letter_category is DeadLetterCategory.INVALID_PAYLOAD:
                self.validation_failures += 1

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


class JobProcessor:
    """Runs one processing attempt for a job."""

    def __init__(self, registry: HandlerRegistry, retry_policy: RetryPolicy) -> None:
        self._registry = registry
        self._retry_policy = retry_policy
        self.stats = ProcessingStats()

    async def process(self, job: Job) -> ProcessingResult:
        with job_context(job.id):
            result = await self._process(job)
        self.stats.record(result)
        return result

    async def _process(self, job: Job) -> ProcessingResult:
        try:
            handler, payload = self._validate(job)
        except JobValidationError as e:
            return self._invalid(job, e)

        try:
            outcome = await handler.handle(job, payload)
        except JobValidationError as e:
            return self._invalid(job, e)
        except DeliveryError as e:
            outcome = (
                DeliveryOutcome.transient(e.reason)
                if e.is_transient
                else DeliveryOutcome.permanent(e.reason)
            )
        except Exception as e:
            self.stats.unexpected_errors += 1
            logger.exception(
                "Unexpected handler error",
                extra={"job_type": job.type, "attempt": job.attempt},
            )
            outcome = DeliveryOutcome.transient(f"unexpected error: {type(e).__name__}: {e}")

        decision = self._retry_policy.decide(job.attempt, outcome)
        if not outcome.is_success:
            logger.warning(
                "Delivery failed",
                extra={
                    "job_type": job.type,
                    "attempt": job.attempt,
                    "status": outcome.status.value,
                    "reason": outcome.reason,
                    "action": decision.action.value,
                },
            )
        return ProcessingResult(
            action=decision.action,
            outcome=outcome,
            next_attempt=decision.next_attempt,
            delay_seconds=decision.delay_seconds,
            dead_letter_category=decision.dead_letter_category,
        )

    def _validate(self, job: Job) -> tuple[JobHandler, BaseModel]:
        """Resolve the handler and parse the payload, raising JobValidationError."""
        if job.decode_error:
            raise JobValidationError(job.decode_error)

        job_type = JobType.parse(job.type)
        if job_type is None:
            raise JobValidationError(f"unknown job type: {job.type!r}")

        handler = self._registry.get(job_type)
        if handler is None:
            raise JobValidationError(f"no handler registered for {job_type.value}")

        try:
            payload = handler.schema.model_validate(job.payload)
        except ValidationError as e:
            raise JobValidationError(
                f"invalid {job_type.value} payload: {e.error_count()} error(s)",
                errors=e.errors(include_url=False, include_input=False),
            ) from e
        return handler, payload

    def _invalid(self, job: Job, error: JobValidationError) -> ProcessingResult:
        logger.warning(
            "Job failed validation",
            extra={"job_type": job.type, "reason": str(error), "errors": error.errors},
        )
        return ProcessingResult(
            action=ProcessingAction.DEAD_LETTER,
            outcome=DeliveryOutcome.permanent(str(error)),
            dead_letter_category=DeadLetterCategory.INVALID_PAYLOAD,
        )

"""
Priority-aware polling loop.

One loop per process. Each cycle polls the PRIORITY queue first and the
REGULAR queue only when PRIORITY came back empty, or after
`priority_burst_limit` consecutive non-empty priority polls so the regular
queue is never starved. Jobs of a batch run concurrently, bounded by a
semaphore; the loop applies the queue action each processing attempt
returns.
"""

import asyncio
import logging
from enum import Enum

from scheduler_service.config import WorkerSettings
from scheduler_service.errors import QueueError, ReceiptExpiredError
from scheduler_service.jobs.models import (
    DeadLetterCategory,
    DeadLetterRecord,
    Job,
    ProcessingAction,
    ProcessingResult,
    QueuePriority,
)
from scheduler_service.jobs.processor import JobProcessor
from scheduler_service.queue.interface import QueueClient
from scheduler_service.shared.logging import get_logger, job_context, log_with_context

logger = get_logger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    POLL_PRIORITY = "poll_priority"
    POLL_REGULAR = "poll_regular"
    PROCESS_BATCH = "process_batch"
    SLEEP = "sleep"
    STOPPED = "stopped"


class WorkerLoop:
    """
    Worker that polls the queues and processes jobs until stopped.

    Features:
    - Priority queue drained first, with a burst limit against starvation
    - Bounded concurrency within a batch
    - Shutdown cancels a pending long poll and drains the in-flight batch
      for at most `shutdown_grace_seconds`
    - Optional visibility heartbeat for slow provider calls
    """

    def __init__(
        self,
        queue: QueueClient,
        processor: JobProcessor,
        settings: WorkerSettings,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._max_messages = settings.max_messages_per_poll
        self._wait_time = settings.wait_time_seconds
        self._priority_wait_time = settings.priority_wait_time_seconds
        self._poll_interval = settings.poll_interval_seconds
        self._burst_limit = settings.priority_burst_limit
        self._grace = settings.shutdown_grace_seconds
        self._heartbeat = settings.visibility_heartbeat_seconds
        self._visibility_timeout = settings.sqs_visibility_timeout
        self._semaphore = asyncio.Semaphore(settings.worker_concurrency)
        self._stop = asyncio.Event()
        self._priority_streak = 0
        self._state = WorkerState.IDLE

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Stop issuing polls; the current batch is drained."""
        if not self._stop.is_set():
            logger.info("Worker stop requested", extra={"state": self._state.value})
            self._stop.set()

    async def run(self, max_cycles: int | None = None) -> None:
        """Run polling cycles until stopped or `max_cycles` is reached."""
        logger.info(
            "Worker started",
            extra={
                "queue_provider": self._queue.name,
                "max_messages_per_poll": self._max_messages,
                "priority_burst_limit": self._burst_limit,
            },
        )
        cycles = 0
        try:
            while not self._stop.is_set():
                if max_cycles is not None and cycles >= max_cycles:
                    break
                await self.run_cycle()
                cycles += 1
        finally:
            self._state = WorkerState.STOPPED
            logger.info(
                "Worker stopped",
                extra={"cycles": cycles, "stats": self._processor.stats.snapshot()},
            )

    async def run_cycle(self) -> None:
        """IDLE -> POLL_PRIORITY -> POLL_REGULAR -> PROCESS_BATCH | SLEEP -> IDLE."""
        self._state = WorkerState.IDLE
        regular_wait = self._wait_time
        try:
            if self._priority_turn():
                self._state = WorkerState.POLL_PRIORITY
                jobs = await self._poll(QueuePriority.PRIORITY, self._priority_wait_time)
                if jobs:
                    self._priority_streak += 1
                    await self._process_batch(jobs)
                    return
            elif self._queue.is_configured(QueuePriority.PRIORITY):
                # Priority may still be backed up; do not long-poll regular
                regular_wait = self._priority_wait_time
                logger.debug(
                    "Priority burst limit reached, polling regular queue",
                    extra={"streak": self._priority_streak},
                )

            self._priority_streak = 0
            if self._stop.is_set():
                return

            self._state = WorkerState.POLL_REGULAR
            jobs = await self._poll(QueuePriority.REGULAR, regular_wait)
            if jobs:
                await self._process_batch(jobs)
                return
        except QueueError as e:
            logger.error(
                "Queue poll failed, retrying next cycle",
                extra={"queue": e.queue_id, "error_code": e.error_code, "error": str(e)},
            )

        await self._sleep(self._poll_interval)
        self._state = WorkerState.IDLE

    def _priority_turn(self) -> bool:
        if not self._queue.is_configured(QueuePriority.PRIORITY):
            return False
        if self._burst_limit and self._priority_streak >= self._burst_limit:
            return False
        return True

    async def _poll(self, queue_id: QueuePriority, wait_time: int) -> list[Job]:
        """Long-poll one queue; a stop request cancels the pending poll."""
        if not self._queue.is_configured(queue_id) or self._stop.is_set():
            return []

        poll = asyncio.create_task(self._queue.poll_batch(queue_id, self._max_messages, wait_time))
        stop = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({poll, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

        if not poll.done():
            poll.cancel()
            await asyncio.gather(poll, return_exceptions=True)
            return []
        return poll.result()

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or self._stop.is_set():
            return
        self._state = WorkerState.SLEEP
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _process_batch(self, jobs: list[Job]) -> None:
        self._state = WorkerState.PROCESS_BATCH
        tasks = [asyncio.create_task(self._run_job(job)) for job in jobs]
        batch = asyncio.gather(*tasks, return_exceptions=True)
        stop = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({batch, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

        if not batch.done():
            logger.info(
                "Draining in-flight jobs",
                extra={"in_flight": sum(1 for t in tasks if not t.done()), "grace_seconds": self._grace},
            )
            _, pending = await asyncio.wait(tasks, timeout=self._grace)
            if pending:
                logger.warning(
                    "Grace period elapsed, abandoning in-flight jobs to visibility timeout",
                    extra={"abandoned": len(pending)},
                )
                for task in pending:
                    task.cancel()

        for result in await batch:
            if isinstance(result, Exception):
                logger.error("Job task failed", exc_info=result)

    async def _run_job(self, job: Job) -> None:
        async with self._semaphore:
            heartbeat = None
            if self._heartbeat > 0:
                heartbeat = asyncio.create_task(self._keep_visible(job))
            try:
                result = await self._processor.process(job)
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                    await asyncio.gather(heartbeat, return_exceptions=True)
            await self._apply(job, result)

    async def _keep_visible(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self._heartbeat)
            try:
                await self._queue.extend_visibility(
                    job.priority, job.receipt_handle, self._visibility_timeout
                )
            except QueueError as e:
                with job_context(job.id):
                    logger.warning("Visibility extension failed", extra={"error": str(e)})
                return

    async def _apply(self, job: Job, result: ProcessingResult) -> None:
        """Carry out the queue action for a processed job."""
        with job_context(job.id):
            try:
                if result.action is ProcessingAction.ACK:
                    await self._queue.ack(job.priority, job.receipt_handle)
                    log_with_context(
                        logger,
                        logging.INFO,
                        "job_duplicate_skipped" if result.outcome.duplicate else "job_acked",
                        job_type=job.type,
                        queue=job.priority.value,
                        attempt=job.attempt,
                        provider_message_id=result.outcome.provider_message_id,
                    )
                elif result.action is ProcessingAction.RETRY:
                    next_attempt = result.next_attempt or job.attempt + 1
                    await self._queue.requeue(job, result.delay_seconds, next_attempt)
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "job_requeued",
                        job_type=job.type,
                        queue=job.priority.value,
                        attempt=job.attempt,
                        next_attempt=next_attempt,
                        delay_seconds=result.delay_seconds,
                        reason=result.outcome.reason,
                    )
                else:
                    record = DeadLetterRecord.from_job(
                        job,
                        result.dead_letter_category or DeadLetterCategory.PERMANENT_FAILURE,
                        result.outcome.reason or "unknown failure",
                    )
                    await self._queue.publish_dead_letter(record)
                    await self._queue.ack(job.priority, job.receipt_handle)
                    log_with_context(
                        logger,
                        logging.ERROR,
                        "job_dead_lettered",
                        job_type=job.type,
                        queue=job.priority.value,
                        attempt=job.attempt,
                        category=record.category.value,
                        reason=record.reason,
                    )
            except ReceiptExpiredError as e:
                logger.warning(
                    "Receipt expired before queue action, message may be redelivered",
                    extra={"action": result.action.value, "error": str(e)},
                )
            except QueueError as e:
                logger.error(
                    "Queue action failed, message will be redelivered",
                    extra={"action": result.action.value, "error_code": e.error_code, "error": str(e)},
                )

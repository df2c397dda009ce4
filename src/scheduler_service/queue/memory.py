"""
In-process queue client.

Implements the same visibility-timeout semantics as the real backends, for
local runs (`QUEUE_PROVIDER=memory`) and tests.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from scheduler_service.errors import ReceiptExpiredError
from scheduler_service.jobs.models import (
    DeadLetterRecord,
    Job,
    QueuePriority,
    decode_job,
    with_envelope_attempt,
)
from scheduler_service.queue.interface import QueueClient


@dataclass
class _Message:
    message_id: str
    body: str
    receive_count: int = 0


@dataclass
class _InFlight:
    queue_id: QueuePriority
    message: _Message
    deadline: float


class InMemoryQueueClient(QueueClient):
    """Single-process queue with PRIORITY and REGULAR lists."""

    name = "memory"

    def __init__(
        self,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._queues: dict[QueuePriority, deque[_Message]] = {q: deque() for q in QueuePriority}
        self._delayed: dict[QueuePriority, list[tuple[float, _Message]]] = {q: [] for q in QueuePriority}
        self._in_flight: dict[str, _InFlight] = {}
        self._arrivals: dict[QueuePriority, asyncio.Event] = {}
        self.dead_letters: list[DeadLetterRecord] = []
        self.acked: list[str] = []
        self.poll_log: list[QueuePriority] = []

    def _arrival_event(self, queue_id: QueuePriority) -> asyncio.Event:
        # Created lazily so the event binds to the running loop
        if queue_id not in self._arrivals:
            self._arrivals[queue_id] = asyncio.Event()
        return self._arrivals[queue_id]

    def is_configured(self, queue_id: QueuePriority) -> bool:
        return True

    def depth(self, queue_id: QueuePriority) -> dict[str, int]:
        return {
            "visible": len(self._queues[queue_id]),
            "delayed": len(self._delayed[queue_id]),
            "in_flight": sum(1 for f in self._in_flight.values() if f.queue_id is queue_id),
        }

    def _housekeep(self, queue_id: QueuePriority) -> None:
        now = self._clock()
        # Expired in-flight messages are redelivered first
        for receipt, flight in list(self._in_flight.items()):
            if flight.queue_id is queue_id and flight.deadline <= now:
                del self._in_flight[receipt]
                self._queues[queue_id].appendleft(flight.message)

        still_delayed = []
        for ready_at, message in self._delayed[queue_id]:
            if ready_at <= now:
                self._queues[queue_id].append(message)
            else:
                still_delayed.append((ready_at, message))
        self._delayed[queue_id] = still_delayed

    def _next_wakeup(self, queue_id: QueuePriority) -> float | None:
        candidates = [ready_at for ready_at, _ in self._delayed[queue_id]]
        candidates += [f.deadline for f in self._in_flight.values() if f.queue_id is queue_id]
        return min(candidates) if candidates else None

    async def poll_batch(
        self,
        queue_id: QueuePriority,
        max_messages: int,
        wait_time_seconds: int,
    ) -> list[Job]:
        self.poll_log.append(queue_id)
        deadline = self._clock() + wait_time_seconds
        event = self._arrival_event(queue_id)

        while True:
            self._housekeep(queue_id)
            if self._queues[queue_id]:
                break
            remaining = deadline - self._clock()
            if remaining <= 0:
                return []
            wakeup = self._next_wakeup(queue_id)
            if wakeup is not None:
                remaining = min(remaining, max(wakeup - self._clock(), 0.0))
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

        jobs: list[Job] = []
        while self._queues[queue_id] and len(jobs) < max_messages:
            message = self._queues[queue_id].popleft()
            message.receive_count += 1
            receipt = uuid4().hex
            self._in_flight[receipt] = _InFlight(
                queue_id=queue_id,
                message=message,
                deadline=self._clock() + self._visibility_timeout,
            )
            jobs.append(
                decode_job(
                    message.body,
                    message_id=message.message_id,
                    receipt_handle=receipt,
                    priority=queue_id,
                )
            )
        return jobs

    def _take(self, receipt_handle: str) -> _InFlight:
        flight = self._in_flight.get(receipt_handle)
        if flight is None or flight.deadline <= self._clock():
            raise ReceiptExpiredError("receipt handle expired or unknown")
        return flight

    async def ack(self, queue_id: QueuePriority, receipt_handle: str) -> None:
        flight = self._take(receipt_handle)
        del self._in_flight[receipt_handle]
        self.acked.append(flight.message.message_id)

    async def extend_visibility(
        self,
        queue_id: QueuePriority,
        receipt_handle: str,
        extra_seconds: int,
    ) -> None:
        flight = self._take(receipt_handle)
        flight.deadline = self._clock() + extra_seconds

    async def requeue(self, job: Job, delay_seconds: float, next_attempt: int) -> None:
        flight = self._take(job.receipt_handle)
        del self._in_flight[job.receipt_handle]
        message = flight.message
        try:
            message.body = with_envelope_attempt(message.body, next_attempt, job.id)
        except (TypeError, ValueError, AttributeError):
            # Undecodable bodies keep their original text
            pass
        self._delayed[job.priority].append((self._clock() + delay_seconds, message))
        self._arrival_event(job.priority).set()

    async def publish(
        self,
        queue_id: QueuePriority,
        body: str,
        delay_seconds: int = 0,
        deduplication_id: str | None = None,
    ) -> str:
        message = _Message(message_id=uuid4().hex, body=body)
        if delay_seconds > 0:
            self._delayed[queue_id].append((self._clock() + delay_seconds, message))
        else:
            self._queues[queue_id].append(message)
        self._arrival_event(queue_id).set()
        return message.message_id

    async def publish_dead_letter(self, record: DeadLetterRecord) -> None:
        self.dead_letters.append(record)

    async def healthcheck(self, queue_id: QueuePriority) -> dict[str, Any]:
        return {"status": "ok", "attributes": self.depth(queue_id)}

"""
Delivery dedupe keyed by Job.id.

Queue delivery is at-least-once, so a handler claims the job id before
calling a provider. A claim is a short lease; `confirm` turns it into a
delivered marker that lives for the dedupe TTL, `release` drops it after a
failed attempt so the retry can claim again.
"""

import heapq
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

import redis.asyncio as redis

from scheduler_service.config import QueueProviderType, WorkerSettings

_IN_PROGRESS = "in_progress"
_DELIVERED = "delivered"


class ClaimResult(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


class DedupeStore(ABC):
    """Claim/confirm/release protocol over job ids."""

    @abstractmethod
    async def claim(self, job_id: str) -> ClaimResult:
        """Try to take the delivery lease for `job_id`."""

    @abstractmethod
    async def confirm(self, job_id: str) -> None:
        """Mark `job_id` as delivered."""

    @abstractmethod
    async def release(self, job_id: str) -> None:
        """Drop an unconfirmed lease."""

    async def close(self) -> None:
        return None


class InMemoryDedupeStore(DedupeStore):
    """Process-local store; enough for a single worker process."""

    def __init__(
        self,
        ttl_seconds: float = 86400,
        lease_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._lease = lease_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        # (expires_at, job_id); stale items are skipped when popped
        self._expiry: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def _set(self, job_id: str, state: str, expires_at: float) -> None:
        self._entries[job_id] = (state, expires_at)
        heapq.heappush(self._expiry, (expires_at, job_id))

    def _prune(self) -> None:
        now = self._clock()
        while self._expiry and self._expiry[0][0] <= now:
            _, job_id = heapq.heappop(self._expiry)
            entry = self._entries.get(job_id)
            if entry is not None and entry[1] <= now:
                del self._entries[job_id]

    def _current(self, job_id: str) -> str | None:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        state, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[job_id]
            return None
        return state

    async def claim(self, job_id: str) -> ClaimResult:
        self._prune()
        state = self._current(job_id)
        if state == _DELIVERED:
            return ClaimResult.DUPLICATE
        if state == _IN_PROGRESS:
            return ClaimResult.IN_PROGRESS
        self._set(job_id, _IN_PROGRESS, self._clock() + self._lease)
        return ClaimResult.NEW

    async def confirm(self, job_id: str) -> None:
        self._prune()
        self._set(job_id, _DELIVERED, self._clock() + self._ttl)

    async def release(self, job_id: str) -> None:
        if self._current(job_id) == _IN_PROGRESS:
            del self._entries[job_id]


# KEYS: marker; ARGV: expected state
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisDedupeStore(DedupeStore):
    """Store shared by every worker process on the same Redis."""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "scheduler:email",
        ttl_seconds: int = 86400,
        lease_seconds: int = 300,
        client: redis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._lease = lease_seconds
        self._client = client
        self._release_script = None

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "RedisDedupeStore":
        return cls(
            settings.redis_url,
            prefix=settings.redis_queue_prefix,
            ttl_seconds=settings.dedupe_ttl_seconds,
            lease_seconds=max(settings.sqs_visibility_timeout, 1),
        )

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}:dedupe:{job_id}"

    async def claim(self, job_id: str) -> ClaimResult:
        client = await self._redis()
        key = self._key(job_id)
        if await client.set(key, _IN_PROGRESS, nx=True, ex=self._lease):
            return ClaimResult.NEW
        state = await client.get(key)
        if state == _DELIVERED:
            return ClaimResult.DUPLICATE
        if state is None:
            # Lease expired between SET and GET
            return await self.claim(job_id)
        return ClaimResult.IN_PROGRESS

    async def confirm(self, job_id: str) -> None:
        client = await self._redis()
        await client.set(self._key(job_id), _DELIVERED, ex=self._ttl)

    async def release(self, job_id: str) -> None:
        client = await self._redis()
        if self._release_script is None:
            self._release_script = client.register_script(_RELEASE_SCRIPT)
        await self._release_script(keys=[self._key(job_id)], args=[_IN_PROGRESS])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._release_script = None


def create_dedupe_store(settings: WorkerSettings) -> DedupeStore:
    """Redis-backed when the queue lives in Redis, process-local otherwise."""
    if settings.queue_provider is QueueProviderType.REDIS:
        return RedisDedupeStore.from_settings(settings)
    return InMemoryDedupeStore(
        ttl_seconds=settings.dedupe_ttl_seconds,
        lease_seconds=max(settings.sqs_visibility_timeout, 1),
    )

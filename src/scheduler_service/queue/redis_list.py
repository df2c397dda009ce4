"""
Redis list-based queue client.

Key layout per queue (`<prefix>:<priority>`):
    <queue>             list, producers LPUSH, consumers take from the right
    <queue>:inflight    hash, receipt -> entry
    <queue>:deadlines   sorted set, receipt -> visibility deadline (epoch)
    <queue>:delayed     sorted set, entry -> ready time (epoch)
Dead letters go to `<prefix>:dead-letter`.

Every multi-key transition runs as a Lua script so concurrent workers never
observe half-moved entries. Taking an entry and issuing its receipt is one
script, so a cancelled poll either took nothing or left entries that the
visibility timeout returns to the queue. Entries left in
`<queue>:processing` by earlier releases are moved back on connect.
"""

import hashlib
import json
import time
from typing import Any, Callable
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from scheduler_service.config import WorkerSettings
from scheduler_service.errors import QueueError, ReceiptExpiredError
from scheduler_service.jobs.models import (
    DeadLetterRecord,
    Job,
    QueuePriority,
    decode_job,
    with_envelope_attempt,
)
from scheduler_service.queue.interface import QueueClient
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

# KEYS: delayed, queue; ARGV: now, limit
PROMOTE_DUE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, entry in ipairs(due) do
    redis.call('ZREM', KEYS[1], entry)
    redis.call('LPUSH', KEYS[2], entry)
end
return #due
"""

# KEYS: deadlines, inflight, queue; ARGV: now, limit
RECLAIM_EXPIRED_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, receipt in ipairs(expired) do
    local entry = redis.call('HGET', KEYS[2], receipt)
    redis.call('ZREM', KEYS[1], receipt)
    redis.call('HDEL', KEYS[2], receipt)
    if entry then
        redis.call('RPUSH', KEYS[3], entry)
    end
end
return #expired
"""

# KEYS: queue, inflight, deadlines; ARGV: limit, deadline, receipt prefix
TAKE_SCRIPT = """
local taken = {}
for i = 1, tonumber(ARGV[1]) do
    local entry = redis.call('RPOP', KEYS[1])
    if not entry then
        break
    end
    local receipt = ARGV[3] .. '-' .. i
    redis.call('HSET', KEYS[2], receipt, entry)
    redis.call('ZADD', KEYS[3], ARGV[2], receipt)
    table.insert(taken, receipt)
    table.insert(taken, entry)
end
return taken
"""

# KEYS: processing, queue
RESTORE_SCRIPT = """
local restored = 0
while redis.call('LMOVE', KEYS[1], KEYS[2], 'LEFT', 'RIGHT') do
    restored = restored + 1
end
return restored
"""

# KEYS: inflight, deadlines; ARGV: receipt
ACK_SCRIPT = """
if redis.call('HDEL', KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
return 1
"""

# KEYS: deadlines; ARGV: receipt, new_deadline
EXTEND_SCRIPT = """
if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[2], ARGV[1])
return 1
"""

# KEYS: inflight, deadlines, delayed; ARGV: receipt, new_entry, ready_at
REQUEUE_SCRIPT = """
if redis.call('HDEL', KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[2])
return 1
"""

_HOUSEKEEPING_BATCH = 100


def wrap_entry(body: str, message_id: str | None = None) -> str:
    """Stored list entry: the job body plus a stable backend message id."""
    return json.dumps({"message_id": message_id or uuid4().hex, "body": body})


def unwrap_entry(entry: str) -> tuple[str, str]:
    """Return (message_id, body); bare bodies pushed by other producers are accepted."""
    try:
        data = json.loads(entry)
    except ValueError:
        data = None
    if isinstance(data, dict) and "message_id" in data and isinstance(data.get("body"), str):
        return str(data["message_id"]), data["body"]
    return hashlib.sha1(entry.encode("utf-8")).hexdigest(), entry


class RedisQueueClient(QueueClient):
    """Redis-backed queue with visibility timeouts and delayed retries."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "scheduler:email",
        visibility_timeout: int = 300,
        client: redis.Redis | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._visibility_timeout = visibility_timeout
        self._client = client
        self._clock = clock
        self._scripts: dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "RedisQueueClient":
        return cls(
            settings.redis_url,
            prefix=settings.redis_queue_prefix,
            visibility_timeout=settings.sqs_visibility_timeout,
        )

    def _queue_key(self, queue_id: QueuePriority) -> str:
        return f"{self._prefix}:{queue_id.value}"

    @property
    def dead_letter_key(self) -> str:
        return f"{self._prefix}:dead-letter"

    async def connect(self) -> None:
        """Connect to Redis, register scripts and restore stranded entries."""
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        if self._scripts:
            return
        self._scripts = {
            "promote": self._client.register_script(PROMOTE_DUE_SCRIPT),
            "reclaim": self._client.register_script(RECLAIM_EXPIRED_SCRIPT),
            "take": self._client.register_script(TAKE_SCRIPT),
            "restore": self._client.register_script(RESTORE_SCRIPT),
            "ack": self._client.register_script(ACK_SCRIPT),
            "extend": self._client.register_script(EXTEND_SCRIPT),
            "requeue": self._client.register_script(REQUEUE_SCRIPT),
        }
        for queue_id in QueuePriority:
            queue = self._queue_key(queue_id)
            restored = await self._script("restore", [f"{queue}:processing", queue], [])
            if restored:
                logger.warning(
                    "Restored stranded entries to queue",
                    extra={"queue": queue_id.value, "restored": restored},
                )

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._scripts = {}

    async def _redis(self) -> redis.Redis:
        if self._client is None or not self._scripts:
            await self.connect()
        return self._client

    async def _script(self, name: str, keys: list[str], args: list[Any]) -> Any:
        await self._redis()
        try:
            return await self._scripts[name](keys=keys, args=args)
        except RedisError as e:
            raise QueueError(f"Redis {name} failed: {e}") from e

    def is_configured(self, queue_id: QueuePriority) -> bool:
        return bool(self._redis_url)

    async def poll_batch(
        self,
        queue_id: QueuePriority,
        max_messages: int,
        wait_time_seconds: int,
    ) -> list[Job]:
        client = await self._redis()
        queue = self._queue_key(queue_id)
        inflight = f"{queue}:inflight"
        deadlines = f"{queue}:deadlines"
        now = self._clock()

        await self._script("reclaim", [deadlines, inflight, queue], [now, _HOUSEKEEPING_BATCH])
        await self._script("promote", [f"{queue}:delayed", queue], [now, _HOUSEKEEPING_BATCH])

        if wait_time_seconds > 0:
            # Blocking peek: moving the tail onto itself leaves the list unchanged
            try:
                ready = await client.blmove(queue, queue, wait_time_seconds, "RIGHT", "RIGHT")
            except RedisError as e:
                raise QueueError(f"Redis poll failed: {e}", queue_id=queue_id.value) from e
            if ready is None:
                return []

        taken = await self._script(
            "take",
            [queue, inflight, deadlines],
            [max_messages, self._clock() + self._visibility_timeout, uuid4().hex],
        )

        jobs: list[Job] = []
        for receipt, entry in zip(taken[::2], taken[1::2]):
            message_id, body = unwrap_entry(entry)
            jobs.append(
                decode_job(
                    body,
                    message_id=message_id,
                    receipt_handle=receipt,
                    priority=queue_id,
                )
            )
        return jobs

    async def ack(self, queue_id: QueuePriority, receipt_handle: str) -> None:
        queue = self._queue_key(queue_id)
        removed = await self._script("ack", [f"{queue}:inflight", f"{queue}:deadlines"], [receipt_handle])
        if not removed:
            raise ReceiptExpiredError("receipt handle expired or unknown", queue_id=queue_id.value)

    async def extend_visibility(
        self,
        queue_id: QueuePriority,
        receipt_handle: str,
        extra_seconds: int,
    ) -> None:
        queue = self._queue_key(queue_id)
        extended = await self._script(
            "extend",
            [f"{queue}:deadlines"],
            [receipt_handle, self._clock() + extra_seconds],
        )
        if not extended:
            raise ReceiptExpiredError("receipt handle expired or unknown", queue_id=queue_id.value)

    async def requeue(self, job: Job, delay_seconds: float, next_attempt: int) -> None:
        queue = self._queue_key(job.priority)
        body = job.raw_body
        if job.decode_error is None:
            body = with_envelope_attempt(job.raw_body, next_attempt, job.id)
        moved = await self._script(
            "requeue",
            [f"{queue}:inflight", f"{queue}:deadlines", f"{queue}:delayed"],
            [job.receipt_handle, wrap_entry(body, job.id), self._clock() + delay_seconds],
        )
        if not moved:
            raise ReceiptExpiredError("receipt handle expired or unknown", queue_id=job.priority.value)

    async def publish(
        self,
        queue_id: QueuePriority,
        body: str,
        delay_seconds: int = 0,
        deduplication_id: str | None = None,
    ) -> str:
        client = await self._redis()
        message_id = deduplication_id or uuid4().hex
        entry = wrap_entry(body, message_id)
        queue = self._queue_key(queue_id)
        try:
            if delay_seconds > 0:
                await client.zadd(f"{queue}:delayed", {entry: self._clock() + delay_seconds})
            else:
                await client.lpush(queue, entry)
        except RedisError as e:
            raise QueueError(f"Redis publish failed: {e}", queue_id=queue_id.value) from e
        return message_id

    async def publish_dead_letter(self, record: DeadLetterRecord) -> None:
        client = await self._redis()
        try:
            await client.lpush(self.dead_letter_key, record.to_json())
        except RedisError as e:
            raise QueueError(f"Redis dead-letter publish failed: {e}") from e

    async def healthcheck(self, queue_id: QueuePriority) -> dict[str, Any]:
        queue = self._queue_key(queue_id)
        try:
            client = await self._redis()
            await client.ping()
            attributes = {
                "visible": await client.llen(queue),
                "delayed": await client.zcard(f"{queue}:delayed"),
                "in_flight": await client.hlen(f"{queue}:inflight"),
            }
        except (RedisError, QueueError) as e:
            return {"status": "error", "error": str(e)}
        return {"status": "ok", "attributes": attributes}

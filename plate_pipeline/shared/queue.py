"""Redis list operations for the intake, output and dead letter queues."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from plate_pipeline.config import get_settings
from plate_pipeline.observability import get_logger, redact_url

from .constants import REDIS_POOL_TIMEOUT
from .records import DeadLetter, PredictionResult

logger = get_logger("queue")


class QueueUnavailable(Exception):
    """Raised when the backing Redis cannot be reached."""

    pass


class QueueFullError(Exception):
    """Raised when the queue is at capacity."""

    pass


class MalformedRecordError(Exception):
    """Raised when a popped element cannot be decoded.

    The element has already been removed from the list; `raw` keeps it so the
    caller can dead-letter it.
    """

    def __init__(self, message: str, raw: str | bytes):
        super().__init__(message)
        self.raw = raw


class DurableQueue(Protocol):
    """FIFO list shared by many producers and consumers."""

    async def enqueue(self, record: Any, queue_name: str | None = None) -> int: ...

    async def dequeue(
        self, timeout: float, stop_event: asyncio.Event | None = None
    ) -> Any | None: ...


class QueueService:
    """Service for Redis queue operations.

    Records are appended with RPUSH and taken with BLPOP, so the list head is
    always the oldest record. The underlying `redis.asyncio` client uses a
    connection pool and is safe to share between worker tasks; each blocked
    BLPOP holds one connection.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        queue_name: str | None = None,
        *,
        record_type: type = PredictionResult,
        dead_letter_queue: str | None = None,
        max_queue_size: int | None = None,
        client: redis.Redis | None = None,
    ):
        """Initialize queue service.

        Args:
            redis_url: Redis connection URL (default: output queue Redis)
            queue_name: List consumed by dequeue (default: output queue)
            record_type: Class with `from_json` used to decode popped elements
            dead_letter_queue: List used by move_to_dlq (default from settings)
            max_queue_size: Reject enqueue beyond this depth (None = unbounded)
            client: Pre-built client, mainly for tests
        """
        settings = get_settings()
        self._redis_url = redis_url or settings.output_redis_url
        self._queue_name = queue_name or settings.output_queue_name
        self._record_type = record_type
        self._dlq_name = dead_letter_queue or settings.dead_letter_queue_name
        self._max_queue_size = max_queue_size
        self._redis: redis.Redis | None = client

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def dead_letter_queue(self) -> str:
        return self._dlq_name

    async def connect(self) -> None:
        """Connect to Redis and check it answers.

        Raises QueueUnavailable when the server cannot be reached, so process
        startup aborts instead of running degraded.
        """
        if self._redis is None:
            settings = get_settings()
            pool = redis.BlockingConnectionPool.from_url(
                self._redis_url,
                max_connections=settings.redis_max_connections,
                timeout=REDIS_POOL_TIMEOUT,
                socket_timeout=settings.redis_socket_timeout,
                decode_responses=True,
            )
            self._redis = redis.Redis(connection_pool=pool)
        try:
            await self._redis.ping()
        except RedisError as e:
            raise QueueUnavailable(f"Redis unreachable at {self._safe_url}: {e}") from e
        logger.info("redis_connected", url=self._safe_url, queue=self._queue_name)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_disconnected", queue=self._queue_name)

    @property
    def redis(self) -> redis.Redis:
        """Get Redis client (must be connected first)."""
        if self._redis is None:
            raise RuntimeError("Queue service not connected. Call connect() first.")
        return self._redis

    @property
    def _safe_url(self) -> str:
        # Hide credentials
        return redact_url(self._redis_url)

    async def enqueue(self, record: Any, queue_name: str | None = None) -> int:
        """
        Append a record to the tail of the queue.

        Never waits for a consumer. Returns the queue depth after the push.

        Args:
            record: Object with `to_json()`
            queue_name: Override queue name (default uses instance queue)
        """
        target_queue = queue_name or self._queue_name

        try:
            if self._max_queue_size is not None:
                queue_size = await self.redis.llen(target_queue)
                if queue_size >= self._max_queue_size:
                    raise QueueFullError(f"Queue is full ({queue_size}/{self._max_queue_size})")
            depth = await self.redis.rpush(target_queue, record.to_json())
        except RedisError as e:
            raise QueueUnavailable(f"enqueue on {target_queue} failed: {e}") from e

        logger.debug("record_enqueued", queue=target_queue, queue_depth=depth)
        return depth

    async def dequeue(
        self, timeout: float = 5.0, stop_event: asyncio.Event | None = None
    ) -> Any | None:
        """
        Take the oldest record from the queue.

        Blocks up to `timeout` seconds. Returns None when the timeout expires
        or when `stop_event` is set during the wait; the wait itself is
        preempted rather than run to completion.

        Raises:
            QueueUnavailable: Redis could not be reached.
            MalformedRecordError: the popped element could not be decoded.
        """
        pop = asyncio.ensure_future(self.redis.blpop([self._queue_name], timeout=timeout))

        if stop_event is not None:
            stopped = asyncio.ensure_future(stop_event.wait())
            try:
                await asyncio.wait({pop, stopped}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                pop.cancel()
                raise
            finally:
                stopped.cancel()
            if not pop.done():
                # A reply already on the wire is lost here (Redis has popped it)
                pop.cancel()
                with contextlib.suppress(asyncio.CancelledError, RedisError):
                    await pop
                return None

        try:
            result = await pop
        except RedisError as e:
            raise QueueUnavailable(f"dequeue on {self._queue_name} failed: {e}") from e

        return self._decode(result)

    def _decode(self, result: tuple[str, str] | None) -> Any | None:
        if result is None:
            return None

        _, payload = result
        try:
            record = self._record_type.from_json(payload)
        except ValueError as e:
            raise MalformedRecordError(str(e), payload) from e

        logger.debug("record_dequeued", queue=self._queue_name)
        return record

    async def pop_nowait(self, queue_name: str | None = None) -> str | None:
        """Pop the raw head element without blocking (operator tooling)."""
        target_queue = queue_name or self._queue_name
        try:
            return await self.redis.lpop(target_queue)
        except RedisError as e:
            raise QueueUnavailable(f"pop on {target_queue} failed: {e}") from e

    async def push_front(self, raw: str | bytes, queue_name: str | None = None) -> None:
        """Put a raw element back at the head, undoing a `pop_nowait`."""
        target_queue = queue_name or self._queue_name
        try:
            await self.redis.lpush(target_queue, raw)
        except RedisError as e:
            raise QueueUnavailable(f"push back on {target_queue} failed: {e}") from e

    async def peek(self, limit: int, queue_name: str | None = None) -> list[str]:
        """Return up to `limit` raw elements from the head without removing them."""
        target_queue = queue_name or self._queue_name
        try:
            return await self.redis.lrange(target_queue, 0, limit - 1)
        except RedisError as e:
            raise QueueUnavailable(f"peek on {target_queue} failed: {e}") from e

    async def move_to_dlq(self, entry: DeadLetter) -> None:
        """Append a failed item to the dead letter queue."""
        try:
            await self.redis.rpush(self._dlq_name, entry.to_json())
        except RedisError as e:
            raise QueueUnavailable(f"dead letter push failed: {e}") from e
        logger.warning(
            "record_moved_to_dlq",
            outcome=entry.outcome,
            error=entry.error,
            queue=self._dlq_name,
        )

    async def get_queue_depth(self, queue_name: str | None = None) -> int:
        """Get the number of records waiting in the queue."""
        target_queue = queue_name or self._queue_name
        try:
            return await self.redis.llen(target_queue)
        except RedisError as e:
            raise QueueUnavailable(f"depth of {target_queue} failed: {e}") from e

    async def get_dlq_depth(self) -> int:
        """Get the number of entries in the dead letter queue."""
        return await self.get_queue_depth(self._dlq_name)

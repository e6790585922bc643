"""Notification publisher over Redis Pub/Sub."""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from plate_pipeline.config import get_settings
from plate_pipeline.observability import get_logger, redact_url

from .constants import REDIS_POOL_TIMEOUT
from .records import NotificationPayload

logger = get_logger("publisher")


class PublishError(Exception):
    """Raised when a notification could not be handed to the broker."""

    pass


class NotificationPublisher(Protocol):
    """Delivers a payload to a topic, at most once per call."""

    async def publish(self, topic: str, payload: NotificationPayload) -> int: ...


class RedisPublisher:
    """Publishes notifications with Redis PUBLISH.

    Success means the broker accepted the message; there is no
    acknowledgement from subscribers.
    """

    def __init__(self, redis_url: str | None = None, client: redis.Redis | None = None):
        settings = get_settings()
        self._redis_url = redis_url or settings.pubsub_redis_url
        self._redis: redis.Redis | None = client

    async def connect(self) -> None:
        """Connect to the broker and check it answers."""
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
            raise PublishError(f"Pub/Sub broker unreachable: {e}") from e
        logger.info("publisher_connected", url=redact_url(self._redis_url))

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("publisher_disconnected")

    async def publish(self, topic: str, payload: NotificationPayload) -> int:
        """Publish the payload as JSON and return the number of receivers."""
        if self._redis is None:
            raise PublishError("Publisher not connected. Call connect() first.")
        try:
            receivers = await self._redis.publish(topic, payload.to_json())
        except RedisError as e:
            raise PublishError(f"publish to {topic} failed: {e}") from e

        logger.debug(
            "notification_published",
            topic=topic,
            file_name=payload.file_name,
            receivers=receivers,
        )
        return receivers

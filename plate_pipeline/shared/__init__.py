"""Shared components for queue-based processing."""

from .constants import TIMESTAMP_FORMAT
from .publisher import NotificationPublisher, PublishError, RedisPublisher
from .queue import (
    DurableQueue,
    MalformedRecordError,
    QueueFullError,
    QueueService,
    QueueUnavailable,
)
from .records import DeadLetter, NotificationPayload, PredictionResult, RawImageJob
from .storage import (
    ArtifactStore,
    ArtifactStoreError,
    PermanentStoreError,
    S3ArtifactStore,
    TransientStoreError,
    build_destination_key,
)

__all__ = [
    "TIMESTAMP_FORMAT",
    "NotificationPublisher",
    "PublishError",
    "RedisPublisher",
    "DurableQueue",
    "MalformedRecordError",
    "QueueFullError",
    "QueueService",
    "QueueUnavailable",
    "DeadLetter",
    "NotificationPayload",
    "PredictionResult",
    "RawImageJob",
    "ArtifactStore",
    "ArtifactStoreError",
    "PermanentStoreError",
    "S3ArtifactStore",
    "TransientStoreError",
    "build_destination_key",
]

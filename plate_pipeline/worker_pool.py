"""
Worker pool that drains the output queue.

Each worker is an independent asyncio task running the loop

    dequeue -> upload -> publish -> delete local file

one item at a time. Workers share nothing but the queue client; the queue's
atomic pop guarantees that no two workers receive the same item.

Failures are terminal for the item within a pass: a failed upload or
publish leaves the local file in place and, when a dead letter sink is
configured, records the item there for operator reconciliation. Nothing is
re-enqueued automatically.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import sentry_sdk

from plate_pipeline.config import Settings
from plate_pipeline.observability import get_logger, get_metrics
from plate_pipeline.shared.constants import DEFAULT_TOPIC
from plate_pipeline.shared.publisher import NotificationPublisher, PublishError
from plate_pipeline.shared.queue import DurableQueue, MalformedRecordError, QueueUnavailable
from plate_pipeline.shared.records import DeadLetter, NotificationPayload, PredictionResult
from plate_pipeline.shared.storage import (
    ArtifactStore,
    ArtifactStoreError,
    build_destination_key,
)

logger = get_logger("worker_pool")


class ItemOutcome(StrEnum):
    """Terminal outcome of one dequeued item."""

    COMPLETED = "completed"
    FAILED_UPLOAD = "failed_upload"
    FAILED_PUBLISH = "failed_publish"
    CLEANUP_FAILED = "cleanup_failed"  # Published, but the local file is still there
    MALFORMED = "malformed"
    FAILED = "failed"  # Unexpected error


class DeadLetterSink(Protocol):
    async def move_to_dlq(self, entry: DeadLetter) -> None: ...


@dataclass(frozen=True)
class PoolConfig:
    """Explicit configuration for a WorkerPool."""

    worker_count: int = 4
    poll_timeout: float = 5.0
    empty_backoff: float = 0.5
    error_backoff: float = 1.0
    max_error_backoff: float = 30.0
    drain_timeout: float = 60.0
    base_path: str = ""
    topic: str = DEFAULT_TOPIC

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.poll_timeout <= 0:
            raise ValueError("poll_timeout must be positive")
        if self.empty_backoff < 0:
            raise ValueError("empty_backoff cannot be negative")
        if self.error_backoff <= 0 or self.max_error_backoff < self.error_backoff:
            raise ValueError("error_backoff must be positive and <= max_error_backoff")
        if self.drain_timeout <= 0:
            raise ValueError("drain_timeout must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> PoolConfig:
        return cls(
            worker_count=settings.worker_count,
            poll_timeout=settings.poll_timeout_seconds,
            empty_backoff=settings.empty_backoff_seconds,
            error_backoff=settings.error_backoff_seconds,
            max_error_backoff=settings.max_error_backoff_seconds,
            drain_timeout=settings.drain_timeout_seconds,
            base_path=settings.s3_base_path,
            topic=settings.notification_topic,
        )


@dataclass
class WorkerState:
    """State owned by a single worker; never written by another one."""

    index: int
    current: PredictionResult | None = None
    current_since: float | None = None
    outcomes: dict[str, int] = field(default_factory=dict)

    def begin(self, item: PredictionResult) -> None:
        self.current = item
        self.current_since = time.monotonic()

    def finish(self, outcome: ItemOutcome) -> None:
        self.current = None
        self.current_since = None
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())

    def snapshot(self) -> dict[str, Any]:
        busy_for = None
        if self.current_since is not None:
            busy_for = round(time.monotonic() - self.current_since, 3)
        return {
            "worker": self.index,
            "current_file": self.current.file_name if self.current else None,
            "busy_seconds": busy_for,
            "processed": self.processed,
            "outcomes": dict(self.outcomes),
        }


class DrainTimeoutError(Exception):
    """Raised by WorkerPool.stop() when workers are still busy after the drain timeout."""

    def __init__(self, stuck: list[WorkerState], timeout: float):
        self.stuck = stuck
        self.timeout = timeout
        files = ", ".join(
            f"worker {s.index}: {s.current.file_name if s.current else 'idle'}" for s in stuck
        )
        super().__init__(f"{len(stuck)} worker(s) still busy after {timeout}s ({files})")


class WorkerPool:
    """Fixed-size pool of workers draining the output queue."""

    def __init__(
        self,
        config: PoolConfig,
        queue: DurableQueue,
        store: ArtifactStore,
        publisher: NotificationPublisher,
        *,
        dead_letters: DeadLetterSink | None = None,
        metrics=None,
    ):
        self.config = config
        self.queue = queue
        self.store = store
        self.publisher = publisher
        self.dead_letters = dead_letters
        self.metrics = metrics or get_metrics()
        self._stop: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []
        self._workers: list[WorkerState] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and self._stop is not None and not self._stop.is_set()

    @property
    def workers(self) -> list[WorkerState]:
        return list(self._workers)

    def snapshot(self) -> dict[str, Any]:
        """Pool state for health checks."""
        return {
            "running": self.running,
            "worker_count": self.config.worker_count,
            "busy": sum(1 for w in self._workers if w.current is not None),
            "workers": [w.snapshot() for w in self._workers],
        }

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._tasks:
            raise RuntimeError("Worker pool already started")

        self._stop = asyncio.Event()
        self._workers = [WorkerState(index=i) for i in range(self.config.worker_count)]
        self._tasks = [
            asyncio.create_task(self._run_worker(state), name=f"plate-worker-{state.index}")
            for state in self._workers
        ]
        logger.info(
            "worker_pool_started",
            worker_count=self.config.worker_count,
            poll_timeout=self.config.poll_timeout,
            topic=self.config.topic,
        )

    async def stop(self, drain_timeout: float | None = None) -> None:
        """
        Signal every worker to stop and wait for them to exit.

        In-flight items are finished, never interrupted; no new dequeue starts
        once the signal is set. Raises DrainTimeoutError when workers are
        still busy after the drain timeout; their tasks stay tracked so the
        caller can decide to abort() them.
        """
        if not self._tasks or self._stop is None:
            return

        timeout = drain_timeout if drain_timeout is not None else self.config.drain_timeout
        self._stop.set()
        logger.info(
            "worker_pool_stopping",
            busy=sum(1 for w in self._workers if w.current is not None),
            drain_timeout=timeout,
        )

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "worker_crashed",
                    task=task.get_name(),
                    error=str(task.exception()),
                    error_type=type(task.exception()).__name__,
                )

        if pending:
            stuck = [
                state for state, task in zip(self._workers, self._tasks) if task in pending
            ]
            logger.error(
                "worker_drain_timeout",
                drain_timeout=timeout,
                stuck=[s.snapshot() for s in stuck],
            )
            self._tasks = [task for task in self._tasks if task in pending]
            raise DrainTimeoutError(stuck, timeout)

        self._tasks = []
        logger.info("worker_pool_stopped")

    async def abort(self) -> None:
        """Cancel workers left running after a drain timeout."""
        if not self._tasks:
            return
        abandoned = [w.current.file_path for w in self._workers if w.current is not None]
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        # Local files of interrupted items are left on disk
        logger.warning("worker_pool_aborted", files_left=abandoned)

    async def _pause(self, seconds: float) -> None:
        """Sleep, returning early when the stop signal is set."""
        if seconds <= 0 or self._stop is None:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def _run_worker(self, state: WorkerState) -> None:
        log = logger.bind(worker=state.index)
        log.info("worker_started")
        stop = self._stop
        backoff = self.config.error_backoff

        while not stop.is_set():
            try:
                item = await self.queue.dequeue(timeout=self.config.poll_timeout, stop_event=stop)

            except QueueUnavailable as e:
                self.metrics.dequeue_errors.labels(error_type="queue_unavailable").inc()
                log.warning("queue_unavailable", error=str(e), retry_in=backoff)
                await self._pause(backoff)
                backoff = min(backoff * 2, self.config.max_error_backoff)
                continue

            except MalformedRecordError as e:
                self.metrics.dequeue_errors.labels(error_type="malformed").inc()
                self.metrics.items_processed.labels(outcome=ItemOutcome.MALFORMED.value).inc()
                log.error("malformed_record", error=str(e), payload=str(e.raw)[:500])
                await self._dead_letter(
                    DeadLetter.for_payload(e.raw, ItemOutcome.MALFORMED.value, str(e), state.index),
                    log,
                )
                continue

            except Exception as e:
                self.metrics.dequeue_errors.labels(error_type=type(e).__name__).inc()
                log.error("worker_loop_error", error=str(e), error_type=type(e).__name__)
                await self._pause(backoff)
                backoff = min(backoff * 2, self.config.max_error_backoff)
                continue

            backoff = self.config.error_backoff

            if item is None:
                await self._pause(self.config.empty_backoff)
                continue

            # An item popped while stopping is still ours to finish
            state.begin(item)
            self.metrics.workers_busy.inc()
            outcome = ItemOutcome.FAILED
            try:
                outcome = await self.process_item(item, worker=state.index)
            finally:
                self.metrics.workers_busy.dec()
                state.finish(outcome)

        log.info("worker_stopped", processed=state.processed)

    async def process_item(self, item: PredictionResult, worker: int | None = None) -> ItemOutcome:
        """Drive one item through upload, publish and cleanup."""
        log = logger.bind(worker=worker, file_name=item.file_name, device_id=item.device_id)
        start_time = time.perf_counter()

        try:
            outcome = await self._process(item, worker, log)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            log.error(
                "item_processing_error",
                error=str(e),
                error_type=type(e).__name__,
                file_path=item.file_path,
            )
            await self._dead_letter(
                DeadLetter.for_result(item, ItemOutcome.FAILED.value, str(e), worker), log
            )
            outcome = ItemOutcome.FAILED

        duration = time.perf_counter() - start_time
        self.metrics.items_processed.labels(outcome=outcome.value).inc()
        self.metrics.item_processing_seconds.labels(outcome=outcome.value).observe(duration)
        return outcome

    async def _process(self, item: PredictionResult, worker: int | None, log) -> ItemOutcome:
        key = build_destination_key(self.config.base_path, item.file_name)

        try:
            remote_reference = await self.store.upload(item.file_path, key)
        except ArtifactStoreError as e:
            log.error(
                "item_upload_failed",
                error=str(e),
                transient=e.transient,
                key=key,
                file_path=item.file_path,
                timestamp_in=item.timestamp_in,
                timestamp_out=item.timestamp_out,
                output_text=item.output_text,
            )
            await self._dead_letter(
                DeadLetter.for_result(item, ItemOutcome.FAILED_UPLOAD.value, str(e), worker), log
            )
            return ItemOutcome.FAILED_UPLOAD

        log.debug("item_uploaded", key=remote_reference)

        payload = NotificationPayload.from_result(item, remote_reference)
        try:
            await self.publisher.publish(self.config.topic, payload)
        except PublishError as e:
            # The artifact is already durable; the file stays for a manual republish
            log.error(
                "item_publish_failed",
                error=str(e),
                topic=self.config.topic,
                image_aws_s3_path=remote_reference,
                file_path=item.file_path,
            )
            await self._dead_letter(
                DeadLetter.for_result(item, ItemOutcome.FAILED_PUBLISH.value, str(e), worker), log
            )
            return ItemOutcome.FAILED_PUBLISH

        try:
            os.unlink(item.file_path)
        except OSError as e:
            log.warning("item_cleanup_failed", file_path=item.file_path, error=str(e))
            return ItemOutcome.CLEANUP_FAILED

        log.info("item_completed", image_aws_s3_path=remote_reference)
        return ItemOutcome.COMPLETED

    async def _dead_letter(self, entry: DeadLetter, log) -> None:
        if self.dead_letters is None:
            return
        try:
            await self.dead_letters.move_to_dlq(entry)
        except QueueUnavailable as e:
            log.error("dead_letter_failed", outcome=entry.outcome, error=str(e))
            return
        self.metrics.dead_letters.labels(outcome=entry.outcome).inc()

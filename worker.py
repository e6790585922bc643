#!/usr/bin/env python3
"""
Worker for draining prediction results from the Redis output queue.

Runs a pool of workers that upload each image to S3, publish the
notification and remove the local file. The pool lives inside the
lifespan of a small FastAPI app that serves /health and /metrics.
"""

import contextlib
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from plate_pipeline import PoolConfig, WorkerPool
from plate_pipeline.config import get_settings
from plate_pipeline.observability import get_logger, get_metrics, metrics_endpoint, setup_logging
from plate_pipeline.shared import (
    PredictionResult,
    QueueService,
    QueueUnavailable,
    RedisPublisher,
    S3ArtifactStore,
)
from plate_pipeline.worker_pool import DrainTimeoutError

# Setup logging
settings = get_settings()
setup_logging(
    json_format=settings.log_json,
    log_level=settings.log_level,
    quiet_loggers=settings.quiet_loggers_list,
    quiet_level=settings.quiet_log_level,
)

logger = get_logger("worker")

# Sentry / GlitchTip
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        server_name=f"plate-worker-{settings.worker_health_port}",
    )


class ResultWorker:
    """Owns the clients and the worker pool of one worker process."""

    def __init__(self):
        settings = get_settings()
        self.queue = QueueService(
            redis_url=settings.output_redis_url,
            queue_name=settings.output_queue_name,
            record_type=PredictionResult,
            dead_letter_queue=settings.dead_letter_queue_name,
        )
        self.publisher = RedisPublisher(redis_url=settings.pubsub_redis_url)
        self.store: S3ArtifactStore | None = None
        self.pool: WorkerPool | None = None
        self.metrics = get_metrics()

    async def start(self) -> None:
        """Connect everything and start the pool; any failure aborts startup."""
        settings = get_settings()
        logger.info("worker_starting", worker_count=settings.worker_count)

        settings.require_worker_settings()

        await self.queue.connect()
        await self.publisher.connect()

        self.store = S3ArtifactStore(settings)
        await self.store.verify()

        self.pool = WorkerPool(
            PoolConfig.from_settings(settings),
            queue=self.queue,
            store=self.store,
            publisher=self.publisher,
            dead_letters=self.queue if settings.dead_letter_enabled else None,
            metrics=self.metrics,
        )
        await self.pool.start()
        logger.info("worker_started")

    async def stop(self) -> None:
        """Drain the pool, then close the clients."""
        logger.info("worker_stopping")

        if self.pool:
            try:
                await self.pool.stop()
            except DrainTimeoutError as e:
                sentry_sdk.capture_exception(e)
                logger.error("worker_drain_incomplete", error=str(e))
                await self.pool.abort()

        await self.publisher.close()
        await self.queue.close()
        logger.info("worker_stopped")


# Global worker instance
worker: ResultWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage worker lifecycle."""
    global worker
    worker = ResultWorker()
    try:
        await worker.start()
    except Exception as e:
        logger.error("worker_start_failed", error=str(e), error_type=type(e).__name__)
        with contextlib.suppress(Exception):
            await worker.stop()
        raise

    yield

    await worker.stop()


# Health check app
app = FastAPI(
    title="plate-pipeline Worker",
    description="Worker health check endpoint",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Worker health check."""
    if worker is None or worker.pool is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "detail": "Worker not initialized"},
        )

    try:
        queue_depth = await worker.queue.get_queue_depth()
        dlq_depth = await worker.queue.get_dlq_depth()
    except QueueUnavailable as e:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "detail": str(e), **worker.pool.snapshot()},
        )

    worker.metrics.queue_depth.labels(queue="output").set(queue_depth)
    worker.metrics.queue_depth.labels(queue="dead_letter").set(dlq_depth)

    return {
        "status": "ok" if worker.pool.running else "stopping",
        "queue_depth": queue_depth,
        "dlq_depth": dlq_depth,
        **worker.pool.snapshot(),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return metrics_endpoint()


def main():
    """Run the worker."""
    import uvicorn

    settings = get_settings()

    logger.info(
        "worker_server_start",
        host="0.0.0.0",
        port=settings.worker_health_port,
    )

    # uvicorn turns SIGTERM/SIGINT into a lifespan shutdown, which drains the pool
    uvicorn.run(
        "worker:app",
        host="0.0.0.0",
        port=settings.worker_health_port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":
    main()

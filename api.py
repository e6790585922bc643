#!/usr/bin/env python3
"""
API REST de ingestão de imagens de placas.

Grava a imagem recebida em disco e enfileira um RawImageJob no Redis para o
processo de predição. O resultado é anunciado depois via Pub/Sub pelo worker.
"""

import io
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import sentry_sdk
from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from PIL import Image
from pydantic import BaseModel

from plate_pipeline.auth import AuthInfo, require_api_key
from plate_pipeline.config import get_settings
from plate_pipeline.observability import (
    PrometheusMiddleware,
    get_logger,
    get_metrics,
    metrics_endpoint,
    setup_logging,
)
from plate_pipeline.shared import (
    QueueFullError,
    QueueService,
    QueueUnavailable,
    RawImageJob,
)
from plate_pipeline.shared.records import parse_timestamp

# Setup logging antes de tudo
settings = get_settings()
setup_logging(
    json_format=settings.log_json,
    log_level=settings.log_level,
    quiet_loggers=settings.quiet_loggers_list,
    quiet_level=settings.quiet_log_level,
)

logger = get_logger("api")

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        server_name="plate-api",
    )

# Global queue service (intake queue)
queue_service: QueueService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gerencia ciclo de vida da aplicação."""
    global queue_service

    settings = get_settings()
    logger.info(
        "startup",
        redis_url=settings.intake_redis_url,
        queue=settings.intake_queue_name,
        auth_env_keys=len(settings.api_keys_list),
    )

    settings.upload_dir.mkdir(parents=True, exist_ok=True)

    queue_service = QueueService(
        redis_url=settings.intake_redis_url,
        queue_name=settings.intake_queue_name,
        record_type=RawImageJob,
        max_queue_size=settings.max_queue_size,
    )
    await queue_service.connect()

    logger.info("startup_complete")
    yield

    logger.info("shutdown_start")
    if queue_service:
        await queue_service.close()
    logger.info("shutdown_complete")


app = FastAPI(
    title="plate-pipeline API",
    description="Ingestão de imagens para reconhecimento de placas",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(PrometheusMiddleware)


# Response models
class HealthResponse(BaseModel):
    status: str
    redis_connected: bool
    queue_depth: int


class QueuedResponse(BaseModel):
    file_name: str
    device_id: str
    timestamp_in: str
    status: str
    queue_depth: int


def save_image(contents: bytes, original_name: str | None, upload_dir: Path) -> tuple[str, str]:
    """Validate the image bytes and store them; return (file_name, file_path)."""
    try:
        img = Image.open(io.BytesIO(contents))
        img.verify()
    except Exception as e:
        raise ValueError(f"Invalid image file: {e}")

    ext = os.path.splitext(original_name or "image.jpg")[1].lower() or ".jpg"
    file_name = f"{uuid.uuid4()}{ext}"

    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / file_name
    with open(file_path, "wb") as f:
        f.write(contents)

    return file_name, str(file_path)


def _discard(file_path: str) -> None:
    try:
        os.unlink(file_path)
    except OSError as e:
        logger.warning("temp_file_cleanup_error", path=file_path, error=str(e))


@app.get("/metrics")
async def metrics():
    """Endpoint para Prometheus scraping."""
    return metrics_endpoint()


@app.get("/health", response_model=HealthResponse)
async def health():
    """Verifica status da API e do Redis da fila de entrada."""
    if queue_service is None:
        return HealthResponse(status="degraded", redis_connected=False, queue_depth=0)

    try:
        depth = await queue_service.get_queue_depth()
    except QueueUnavailable:
        return HealthResponse(status="degraded", redis_connected=False, queue_depth=0)

    get_metrics().queue_depth.labels(queue="intake").set(depth)
    return HealthResponse(status="ok", redis_connected=True, queue_depth=depth)


@app.post("/jobs", status_code=202, response_model=QueuedResponse)
async def submit_job(
    image: Annotated[UploadFile, File(description="Imagem do veículo")],
    device_id: Annotated[str, Form(min_length=1, description="Identificador do dispositivo")],
    timestamp: Annotated[
        str | None, Form(description="Momento da captura (YYYY-MM-DD HH:MM:SS)")
    ] = None,
    auth: AuthInfo = Depends(require_api_key),
):
    """
    Recebe uma imagem e enfileira o job para predição.

    Retorna 202 com o nome do arquivo gerado, usado para correlacionar a
    notificação publicada ao final do processamento.
    """
    if queue_service is None:
        raise HTTPException(status_code=503, detail="Queue service not connected")

    settings = get_settings()
    metrics = get_metrics()
    client = auth.client_name or "unknown"

    if timestamp is not None:
        try:
            parse_timestamp(timestamp)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail="timestamp must use the format YYYY-MM-DD HH:MM:SS",
            )

    contents = await image.read()
    if len(contents) > settings.max_upload_bytes:
        metrics.jobs_enqueued.labels(client=client, status="413").inc()
        raise HTTPException(status_code=413, detail="Image too large")

    try:
        file_name, file_path = save_image(contents, image.filename, settings.upload_dir)
    except ValueError as e:
        metrics.jobs_enqueued.labels(client=client, status="400").inc()
        raise HTTPException(status_code=400, detail=str(e))

    job = RawImageJob.create(
        device_id=device_id,
        file_name=file_name,
        file_path=file_path,
        timestamp_in=timestamp,
    )

    try:
        depth = await queue_service.enqueue(job)

    except QueueFullError as e:
        _discard(file_path)
        metrics.jobs_enqueued.labels(client=client, status="503").inc()
        logger.warning("job_queue_full", error=str(e), client=client)
        raise HTTPException(status_code=503, detail=str(e))

    except QueueUnavailable as e:
        _discard(file_path)
        metrics.jobs_enqueued.labels(client=client, status="503").inc()
        logger.error("job_enqueue_error", error=str(e), client=client)
        raise HTTPException(status_code=503, detail="Queue unavailable")

    metrics.jobs_enqueued.labels(client=client, status="202").inc()
    logger.info(
        "job_enqueued",
        file_name=file_name,
        device_id=device_id,
        timestamp_in=job.timestamp_in,
        queue_depth=depth,
        client=client,
    )

    return JSONResponse(
        status_code=202,
        content=QueuedResponse(
            file_name=file_name,
            device_id=device_id,
            timestamp_in=job.timestamp_in,
            status="queued",
            queue_depth=depth,
        ).model_dump(),
    )


def main():
    """Run the API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":
    main()

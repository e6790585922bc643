"""Métricas Prometheus para a API de ingestão e o worker pool."""

import time
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware


class Metrics:
    """Container para métricas Prometheus."""

    def __init__(self, namespace: str = "plate_pipeline"):
        self.namespace = namespace

        # Requests totais por endpoint, método e status
        self.requests_total = Counter(
            f"{namespace}_requests_total",
            "Total de requests",
            ["method", "endpoint", "status"],
        )

        self.request_duration_seconds = Histogram(
            f"{namespace}_request_duration_seconds",
            "Duração dos requests em segundos",
            ["method", "endpoint"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.requests_in_progress = Gauge(
            f"{namespace}_requests_in_progress",
            "Requests sendo processados",
            ["method", "endpoint"],
        )

        self.errors_total = Counter(
            f"{namespace}_errors_total",
            "Total de erros",
            ["method", "endpoint", "error_type"],
        )

        # Ingestão
        self.jobs_enqueued = Counter(
            f"{namespace}_jobs_enqueued_total",
            "Raw image jobs pushed to the intake queue",
            ["client", "status"],
        )

        # Queue metrics
        self.queue_depth = Gauge(
            f"{namespace}_queue_depth",
            "Records waiting in a queue",
            ["queue"],
        )

        self.dequeue_errors = Counter(
            f"{namespace}_dequeue_errors_total",
            "Dequeue attempts that failed",
            ["error_type"],
        )

        # Worker pool
        self.items_processed = Counter(
            f"{namespace}_items_processed_total",
            "Prediction results processed by the worker pool",
            ["outcome"],
        )

        self.item_processing_seconds = Histogram(
            f"{namespace}_item_processing_seconds",
            "Time spent on upload, publish and cleanup of one item",
            ["outcome"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.workers_busy = Gauge(
            f"{namespace}_workers_busy",
            "Workers currently processing an item",
        )

        self.dead_letters = Counter(
            f"{namespace}_dead_letters_total",
            "Records pushed to the dead letter queue",
            ["outcome"],
        )


# Singleton global
_metrics: Metrics | None = None


def get_metrics() -> Metrics:
    """Retorna a instância global de métricas."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


def metrics_endpoint() -> Response:
    """Endpoint /metrics para Prometheus scraping."""
    return PlainTextResponse(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware que coleta métricas de cada request."""

    DEFAULT_EXCLUDE_PREFIXES = (
        "/metrics",
        "/health",
        "/docs",
        "/redoc",
        "/openapi",
        "/favicon",
    )

    # Endpoints da API que devem ser monitorados
    API_ENDPOINTS = {"/jobs"}

    def __init__(
        self,
        app,
        exclude_prefixes: tuple[str, ...] | None = None,
        api_only: bool = True,
    ):
        super().__init__(app)
        self.exclude_prefixes = exclude_prefixes or self.DEFAULT_EXCLUDE_PREFIXES
        self.api_only = api_only
        self.metrics = get_metrics()

    def _should_track(self, path: str) -> bool:
        """Verifica se o path deve ter métricas coletadas."""
        for prefix in self.exclude_prefixes:
            if path.startswith(prefix):
                return False

        if self.api_only:
            normalized = path.rstrip("/") or "/"
            return normalized in self.API_ENDPOINTS

        return True

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self._should_track(request.url.path):
            return await call_next(request)

        method = request.method
        endpoint = request.url.path.rstrip("/") or "/"

        self.metrics.requests_in_progress.labels(
            method=method,
            endpoint=endpoint,
        ).inc()

        start_time = time.perf_counter()
        status_code = 500
        error_type = None

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        except Exception as e:
            error_type = type(e).__name__
            raise

        finally:
            duration = time.perf_counter() - start_time

            self.metrics.requests_in_progress.labels(
                method=method,
                endpoint=endpoint,
            ).dec()

            self.metrics.requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=str(status_code),
            ).inc()

            self.metrics.request_duration_seconds.labels(
                method=method,
                endpoint=endpoint,
            ).observe(duration)

            if error_type:
                self.metrics.errors_total.labels(
                    method=method,
                    endpoint=endpoint,
                    error_type=error_type,
                ).inc()

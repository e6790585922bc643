"""Módulo de observabilidade: logging estruturado e métricas Prometheus."""

from .logging import get_logger, redact_url, setup_logging
from .metrics import PrometheusMiddleware, get_metrics, metrics_endpoint

__all__ = [
    "setup_logging",
    "get_logger",
    "redact_url",
    "get_metrics",
    "metrics_endpoint",
    "PrometheusMiddleware",
]

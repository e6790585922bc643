"""Logging estruturado com structlog para a API, o worker e a CLI."""

import logging
import re
import sys
from collections.abc import Iterable

import structlog

# user:password@ in redis://, rediss:// and http(s):// URLs
_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)

# Event keys that may carry a connection URL
URL_KEYS = ("url", "redis_url", "endpoint_url")


def redact_url(value: str) -> str:
    """Strip credentials from a connection URL."""
    return _CREDENTIALS.sub(r"\g<scheme>***@", value)


def redact_credentials(logger, method_name, event_dict):
    """Processor: hide credentials in URL-valued event keys."""
    for key in URL_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = redact_url(value)
    return event_dict


def setup_logging(
    json_format: bool = True,
    log_level: str = "INFO",
    quiet_loggers: Iterable[str] = (),
    quiet_level: str = "WARNING",
) -> None:
    """
    Configura logging estruturado para o processo.

    Args:
        json_format: Se True, logs em JSON. Se False, logs formatados para console.
        log_level: Nível de log (DEBUG, INFO, WARNING, ERROR).
        quiet_loggers: Loggers de bibliotecas (boto3, botocore...) que nunca
            ficam abaixo de `quiet_level`.
        quiet_level: Nível mínimo para `quiet_loggers`.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    floor = getattr(logging, quiet_level.upper(), logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Logs de libs externas (uvicorn, redis, boto3) vão para stdout
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        logging.getLogger(name).handlers = []

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, floor))


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Retorna um logger estruturado, opcionalmente nomeado."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()

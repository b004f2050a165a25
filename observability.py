"""Observability helpers: structured logging with structlog and CloudWatch Embedded Metrics.

Import `init_observability` and call it early in your FastAPI app to activate.
"""
from __future__ import annotations

import logging
from typing import Optional

import structlog
from aws_embedded_metrics.config import get_config

from settings import Settings, get_settings

__all__ = [
    "init_observability",
]

_HANDLER_NAME = "interview-coach"


def _setup_logging(settings: Settings) -> None:
    """Configure structlog for structured logging (JSON or console)."""

    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        final_processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [final_processor],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # structlog renders the message; the stdlib handler only writes it out.
    root_logger = logging.getLogger()
    if not any(h.get_name() == _HANDLER_NAME for h in root_logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def _setup_metrics(settings: Settings) -> None:
    """Point aws-embedded-metrics at the configured environment.

    "Local" writes EMF documents to stdout, which keeps development and tests
    free of the CloudWatch agent.
    """
    config = get_config()
    config.environment = settings.metrics_environment
    config.namespace = settings.metrics_namespace
    config.service_name = "InterviewCoach"


def init_observability(app: Optional["FastAPI"] = None) -> None:  # noqa: F821
    """Setup logging & metrics. Call once at process start."""

    settings = get_settings()
    _setup_logging(settings)
    _setup_metrics(settings)

    structlog.get_logger(__name__).info(
        "Observability initialized",
        app=getattr(app, "title", None),
        metrics_environment=settings.metrics_environment,
    )

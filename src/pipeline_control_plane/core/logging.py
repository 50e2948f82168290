"""Structured logging configuration with JSON output and correlation IDs.

Uses python-json-logger for structured JSON logging suitable for
log aggregation systems like Loki, ELK, or CloudWatch.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

from pipeline_control_plane.config import get_settings

# Context variables (request/operation scoped)
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)
component_ctx: ContextVar[str | None] = ContextVar("component", default=None)
provider_ctx: ContextVar[str | None] = ContextVar("provider", default=None)
pipeline_id_ctx: ContextVar[str | None] = ContextVar("pipeline_id", default=None)

_CONTEXT_FIELDS = ("correlation_id", "component", "provider", "pipeline_id")


class CorrelationIdFilter(logging.Filter):
    """Log filter that adds correlation and operation context to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        record.component = component_ctx.get()
        record.provider = provider_ctx.get()
        record.pipeline_id = pipeline_id_ctx.get()
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with additional fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value:
                log_record[field_name] = value

        # Source location for debugging
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)

    # Use JSON format in production, text format in dev
    if settings.log_format == "json":
        formatter: logging.Formatter = CustomJsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    # Reduce verbosity of third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.info(
        "Logging configured",
        extra={
            "environment": settings.environment,
            "log_level": settings.log_level,
            "log_format": settings.log_format,
        },
    )

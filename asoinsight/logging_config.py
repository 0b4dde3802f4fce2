"""Centralized logging configuration for the analytics service.

Request context (``request_id``, ``outcome``, ``duration_ms``, ...) travels as
``extra=`` fields on the record, never formatted into the message, so the
JSON output can be filtered on it directly.
"""
import logging
import sys
import os
import json
from typing import Any, Dict
from datetime import datetime, timezone


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_STR = os.getenv("LOG_LEVEL", "INFO")
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR.upper(), logging.INFO)
LOG_FORMAT_TYPE = os.getenv("LOG_FORMAT", "json")  # json or text

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_SENSITIVE_KEYS = frozenset(["authorization", "credential", "token", "access_token", "private_key"])


def context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to ``record`` through ``extra=``, with credentials masked."""
    fields = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS:
            continue
        fields[key] = "[redacted]" if key.lower() in _SENSITIVE_KEYS else value
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(context_fields(record))

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """``LOG_FORMAT`` followed by the context fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = context_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that stamps ``service_name`` on every record."""

    def __init__(self, logger: logging.Logger, service_name: str):
        super().__init__(logger, {"service_name": service_name})
        self.service_name = service_name

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        kwargs["extra"] = {**kwargs.get("extra", {}), "service_name": self.service_name}
        return msg, kwargs


def setup_logging(service_name: str) -> StructuredLogger:
    """
    Set up structured logging for a service.

    Handlers are attached to the service logger and to the ``asoinsight``
    package logger so component loggers share the same output.

    Args:
        service_name: Name of the service (e.g., 'aso-analytics')

    Returns:
        Configured logger instance with structured logging
    """
    if LOG_FORMAT_TYPE == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter(LOG_FORMAT)

    for name in (service_name, "asoinsight"):
        target = logging.getLogger(name)
        target.setLevel(LOG_LEVEL)
        # Remove existing handlers to avoid duplicates
        target.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(LOG_LEVEL)
        handler.setFormatter(formatter)
        target.addHandler(handler)
        target.propagate = False

    return StructuredLogger(logging.getLogger(service_name), service_name)


def log_request(logger: logging.Logger, request_id: str, endpoint: str, **fields: Any) -> None:
    logger.info("Analytics request received", extra={"request_id": request_id, "endpoint": endpoint, **fields})


def log_response(logger: logging.Logger, request_id: str, outcome: str, duration_ms: float, **fields: Any) -> None:
    logger.info(
        f"Analytics request finished: {outcome}",
        extra={"request_id": request_id, "outcome": outcome, "duration_ms": round(duration_ms, 2), **fields},
    )


def log_error(logger: logging.Logger, request_id: str, error: Exception, **fields: Any) -> None:
    """Log a caller-visible failure. Only the error kind and its safe message are written."""
    kind = getattr(error, "kind", type(error).__name__)
    level = logging.ERROR if getattr(error, "status_code", 500) >= 500 else logging.WARNING
    logger.log(
        level,
        f"Analytics request failed: {kind}: {error}",
        extra={
            "request_id": request_id,
            "error_kind": kind,
            "retryable": getattr(error, "retryable", False),
            **fields,
        },
    )

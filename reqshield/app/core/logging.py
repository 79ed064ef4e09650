"""Structured logging configuration for the security pipeline.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments, plus the
security-event helper every component uses to report violations.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from reqshield.app.core.async_logging import disable_async_logging, enable_async_logging
from reqshield.app.core.config import settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.
    """

    # Contextual fields attached to security events
    CONTEXT_FIELDS = [
        "code",          # Machine-readable event code (SECURITY_*)
        "client_id",     # Resolved client identity (session:/api:/ip:)
        "category",      # Threat category for detections
        "pattern",       # Matched pattern identifier
        "reason",        # Rejection reason (CSRF, transport, store)
        "excerpt",       # Truncated offending input
        "event_time",    # Time the event was observed
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
    ]

    _RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    ))

    def __init__(
        self,
        fields: Optional[list] = None,
        datefmt: Optional[str] = None,
    ):
        super().__init__(datefmt=datefmt)
        self.fields = fields or self.CONTEXT_FIELDS

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {}

        record.message = record.getMessage()

        log_data["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.message

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for field in self.fields:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        # Anything else passed via extra= ends up under "extra"
        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds default security context to log records.

    Records that were not emitted through log_security_event still carry
    the attributes referenced by the structured text format.
    """

    CONTEXT_DEFAULTS = {
        "code": None,
        "client_id": None,
        "category": None,
        "pattern": None,
        "reason": None,
        "path": None,
        "method": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - code=%(code)s - client_id=%(client_id)s - path=%(path)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "reqshield.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "reqshield.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "reqshield": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn.access": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the application with async support."""
    # A listener left from an earlier call would keep the replaced handlers
    disable_async_logging("reqshield")
    logging.config.dictConfig(get_logging_config())

    if getattr(settings, "log_async", True):
        enable_async_logging("reqshield")


def get_logger(name: str = "reqshield") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    code: Optional[str] = None,
    client_id: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    Example:
        >>> logger.warning(
        ...     "Rate limit triggered",
        ...     extra=get_log_context(code="SECURITY_RATE_LIMIT_TRIGGERED",
        ...                           client_id="ip:10.0.0.5")
        ... )
    """
    context = {
        "code": code,
        "client_id": client_id,
        "path": path,
        "method": method,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}


def log_security_event(
    logger: logging.Logger,
    level: int,
    code: str,
    message: str,
    **context: Any,
) -> None:
    """Emit a structured security event.

    The event carries ``code``, ``message``, the given context fields and
    an ``event_time`` timestamp. Logging is fire-and-forget: a failing
    handler or formatter never propagates into the caller.
    """
    try:
        logger.log(
            level,
            message,
            extra=get_log_context(
                code=code,
                event_time=datetime.now(timezone.utc).isoformat(),
                **context,
            ),
        )
    except Exception:  # noqa: BLE001 - a broken sink must not break a security check
        pass

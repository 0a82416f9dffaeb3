"""
Structured logging for the settlement service.

Every module logs through ``get_logger(__name__)`` and passes context as
keyword arguments (``job_id=...``, ``stream=...``). Console output renders the
context as ``key=value`` pairs; the optional rotating file handler writes one
JSON object per record. Audit-grade events (money moved, job dead-lettered,
parameter changed) go through ``log_business_event`` on the ``audit`` logger.
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Loggers that receive the configured handlers instead of propagating to root.
MANAGED_LOGGERS: Dict[str, Optional[str]] = {
    "settlement": None,  # follows the configured level
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
}

_CONTEXT_ATTR = "settlement_context"


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, _CONTEXT_ATTR, None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON document per record, context fields merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(_context_of(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable console format with trailing ``key=value`` context."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context_of(record)
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


class StructuredLogger:
    """Thin wrapper so call sites can pass context as keyword arguments."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log(self, level: int, message: str, **context: Any) -> None:
        exc_info = context.pop("exc_info", False)
        fields = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={_CONTEXT_ATTR: fields})

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log(logging.ERROR, message, **context)

    def critical(self, message: str, **context: Any) -> None:
        self.log(logging.CRITICAL, message, **context)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure handlers for the settlement, uvicorn and SQLAlchemy loggers.

    Args:
        log_level: Level for settlement loggers and the root logger
        log_file: Path of the rotating JSON log; directories are created
        enable_console: Attach the human-readable stdout handler
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "context",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    attached = list(handlers)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "context": {
                "()": ContextFormatter,
                "fmt": "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": attached, "propagate": False}
            for name, level in MANAGED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": attached},
    })


def get_logger(name: str) -> StructuredLogger:
    """Logger under the ``settlement`` namespace so it picks up the handlers."""
    if not name.startswith("settlement"):
        name = f"settlement.{name}"
    return StructuredLogger(name)


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    correlation_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Record an audit event.

    Args:
        event_type: e.g. 'job_dead_lettered', 'revenue_refund_recorded', 'parameter_change_executed'
        details: Event fields, merged into the record context
        correlation_id: Trade correlation id when the event belongs to a trade
        request_id: Operator API request id when triggered over HTTP
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        correlation_id=correlation_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Duration of a unit of work (one job, one aggregation pass)."""
    context: Dict[str, Any] = dict(additional_data or {})
    context["duration_ms"] = round(duration_ms, 2)
    get_logger("performance").info(f"Performance: {operation}", operation=operation, **context)

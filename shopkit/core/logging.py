"""
JSON logs for the payments API.

Every record carries the current request id (taken from the inbound
`request_id_header` or generated by the HTTP middleware), so a webhook
delivery can be followed from signature check to credit.
"""
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from shopkit.core.config import settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class RequestIdFilter(logging.Filter):
    """Copies the request id of the current context onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    # extra={...} keys that end up in the JSON line
    EXTRA_FIELDS = (
        "request_id", "path", "method", "status_code", "latency_ms",
        "provider", "event_id", "event_type", "reference", "order_id",
        "client_id", "credits", "strategy", "note", "outcome", "attempt",
        "error", "breaker_name", "old_state", "new_state",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in self.EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Decimal / datetime values from ORM rows
        return json.dumps(payload, ensure_ascii=False, default=str)


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    return handler


def configure_logging() -> None:
    """Root logger -> stdout (and LOG_FILE with rotation when set)."""
    formatter = JsonFormatter()
    handlers = [_handler(logging.StreamHandler(), formatter)]
    if settings.log_file:
        handlers.append(_handler(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
            ),
            formatter,
        ))
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    root.handlers = handlers
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

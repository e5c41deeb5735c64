from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


_RESERVED_ATTRIBUTES = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}

# Only these ``extra`` keys are written out, so a stray token or record body in
# ``extra`` never reaches the log sink.
REQUEST_FIELDS = frozenset({"method", "path", "status_code", "duration_ms", "client_ip", "retry_after"})
RECORD_FIELDS = frozenset({"entity_type", "entity_id", "operation", "event_name", "count"})
SECURITY_FIELDS = frozenset({"scope", "action", "user_id", "role_id", "permission_id", "team_id", "target_user_id"})
INTEGRATION_FIELDS = frozenset({"integration", "external_account_id", "is_token_renewal", "status"})
LOGGED_FIELDS = REQUEST_FIELDS | RECORD_FIELDS | SECURITY_FIELDS | INTEGRATION_FIELDS | {"error"}

MAX_ERROR_LENGTH = 500


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in LOGGED_FIELDS and key not in _RESERVED_ATTRIBUTES
    }
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
    if record.exc_info:
        fields["exception"] = logging.Formatter().formatException(record.exc_info)
    return fields


class CorrelationIdFilter(logging.Filter):
    """Stamps the request's correlation id on records logged outside the record factory."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": record_fields(record),
        }
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """One line per record for local runs: ``level logger [correlation] msg key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = record_fields(record)
        exception = fields.pop("exception", None)
        line = f"{record.levelname:<7} {record.name} [{getattr(record, 'correlation_id', None) or '-'}] {record.getMessage()}"
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        if exception:
            line += "\n" + exception
        return line


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_record_api_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if settings.log_format.lower() == "text" else JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    # Requests are logged by RequestLoggingMiddleware with the correlation id.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._record_api_configured = True  # type: ignore[attr-defined]

"""JSON logging for the API process and Celery workers.

Every record carries the correlation id of the request or job that produced it, and
OAuth material is masked before any handler sees it.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any

from ghl_sync.context import get_account_id, get_correlation_id


STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
EXPORTED_FIELDS = frozenset(
    {
        "event",
        "method",
        "path",
        "status_code",
        "duration_ms",
        "job_type",
        "status",
        "error",
        "account_id",
        "user_id",
        "connection_id",
        "contact_id",
        "conversation_id",
        "external_id",
        "location_id",
        "refreshed",
        "failed",
        "skipped",
        "candidates",
        "imported",
        "total",
    }
)
SECRET_FIELDS = frozenset({"access_token", "refresh_token", "client_secret", "secret", "signature", "password", "code"})
REDACTED = "[REDACTED]"
MAX_ERROR_LENGTH = 500

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*")


def redact(value: Any) -> Any:
    if isinstance(value, str):
        return _BEARER_RE.sub(f"Bearer {REDACTED}", value)
    if isinstance(value, dict):
        return {key: REDACTED if key in SECRET_FIELDS and item else redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _stamp_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "account_id", None):
        account_id = get_account_id()
        if account_id:
            record.account_id = account_id


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


class SecretRedactionFilter(logging.Filter):
    """Masks OAuth tokens and signing material in `extra` fields and the message."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in list(record.__dict__.items()):
            if key in STANDARD_ATTRS:
                continue
            record.__dict__[key] = REDACTED if key in SECRET_FIELDS and value else redact(value)
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in EXPORTED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        document = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(document, default=str)


_base_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    _stamp_context(record)
    return record


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_ghl_sync_configured", False):
        return

    resolved = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(SecretRedactionFilter())

    # queued jobs and request handlers both log through here, so context is attached at creation
    logging.setLogRecordFactory(_context_record_factory)
    root.handlers[:] = [handler]
    root.setLevel(resolved)
    root._ghl_sync_configured = True  # type: ignore[attr-defined]

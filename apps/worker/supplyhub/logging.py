from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from supplyhub.context import get_correlation_id, get_message_id
from supplyhub.core.config import Settings, get_settings


_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "job_type",
    "status",
    "error",
    "queue",
    "message_id",
    "message_type",
    "outcome",
    "attempt",
    "operation",
    "process_id",
    "metering_point_id",
    "from_status",
    "to_status",
    "run_id",
    "batch_id",
    "invoice_id",
    "period_start",
    "period_end",
    "count",
    "grid_area",
}


class CorrelationIdFilter(logging.Filter):
    """Fills in the ids of the hub message being handled, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        message_id = get_message_id()
        if message_id and not getattr(record, "message_id", None):
            record.message_id = message_id
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # message_id stays out of the factory: handlers pass it through extra=
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


_ERROR_LIMIT = 500
_QUIET_LOGGERS = ("httpx", "httpcore", "celery.worker.strategy", "sqlalchemy.engine")


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line.

    Ids sit at the top level; any other ``extra=`` field is kept only when it
    is listed in ``_KNOWN_FIELDS`` so payloads and tokens never reach the log.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        fields = {key: value for key, value in record.__dict__.items() if key in _KNOWN_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_ERROR_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


def _handler(settings: Settings) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stdout)
    if settings.log_format.lower() == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")
        )
    else:
        handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())
    return handler


def configure_logging(settings: Settings | None = None) -> None:
    """Route the root logger to stdout once per process, as JSON unless ``LOG_FORMAT=text``."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_supplyhub_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(_handler(settings))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    root_logger._supplyhub_configured = True  # type: ignore[attr-defined]

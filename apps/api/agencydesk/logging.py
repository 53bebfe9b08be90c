"""JSON log lines on stdout, each stamped with the request correlation id."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from agencydesk.context import get_correlation_id


LOGGED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "opportunity_id",
    "client_id",
    "strategy_id",
    "transition",
    "from_stage",
    "to_stage",
    "event_name",
    "error",
)
MAX_ERROR_LENGTH = 500

_HANDLER_NAME = "agencydesk.json"


def _install_correlation_factory() -> None:
    previous = logging.getLogRecordFactory()
    if getattr(previous, "stamps_correlation_id", False):
        return

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = previous(*args, **kwargs)
        record.correlation_id = get_correlation_id()
        return record

    factory.stamps_correlation_id = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(factory)


class JsonLogFormatter(logging.Formatter):
    """Renders a record as one JSON object; extras outside LOGGED_FIELDS are dropped."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {name: record.__dict__[name] for name in LOGGED_FIELDS if name in record.__dict__}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    resolved = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root_logger.setLevel(resolved)
    _install_correlation_factory()

    if any(handler.get_name() == _HANDLER_NAME for handler in root_logger.handlers):
        return

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(JsonLogFormatter())
    root_logger.addHandler(handler)

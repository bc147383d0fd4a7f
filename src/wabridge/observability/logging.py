"""Structured JSON logging with correlation ID support.

Every record is one JSON line on stdout. Callers attach structured context via
``extra={"extra_fields": safe_log_context(...)}`` so chat addresses, email
addresses and message bodies never reach the log stream unredacted.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

_ROOT_LOGGER = "wabridge"


class JsonFormatter(logging.Formatter):
    """JSON formatter that includes correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_obj.update(record.extra_fields)

        return json.dumps(log_obj, default=str)


def _configured_level() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output.

    Handlers live on the ``wabridge`` parent logger so module loggers share a
    single stream; third-party names get their own handler.
    """
    logger = logging.getLogger(name)
    owner = logging.getLogger(_ROOT_LOGGER) if name.startswith(_ROOT_LOGGER) else logger

    # Only configure once (avoid duplicate handlers)
    if not owner.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        owner.addHandler(handler)
        owner.setLevel(_configured_level())
        owner.propagate = False

    return logger

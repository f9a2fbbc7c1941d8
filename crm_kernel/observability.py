"""Structured logging for the kernel."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "user_id",
    "causality_id",
    "event_id",
    "entity_id",
    "kind",
    "status",
    "error",
}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with the kernel's known fields under "fields"."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        extras: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _BASE_RECORD_KEYS:
                continue
            if key in _KNOWN_FIELDS:
                extras[key] = value

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = error_value[:500]

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging(level: Optional[str] = None, json_logs: bool = True) -> None:
    """Attach a single stdout handler to the `crm_kernel` logger. Safe to call twice."""
    kernel_logger = logging.getLogger("crm_kernel")
    if getattr(kernel_logger, "_crm_configured", False):
        return

    level_name = (level or "INFO").upper()
    resolved = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    if json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    kernel_logger.handlers.clear()
    kernel_logger.setLevel(resolved)
    kernel_logger.addHandler(handler)
    kernel_logger._crm_configured = True  # type: ignore[attr-defined]

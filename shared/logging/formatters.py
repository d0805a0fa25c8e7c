"""
Log record formatters: JSON Lines for files, key=value text for the console.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .context import get_correlation_id, get_job_id


def _serialize(obj: Any) -> Any:
    """json.dumps fallback for domain values carried in event fields."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(str(v) for v in obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return repr(obj)


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JsonLinesFormatter(logging.Formatter):
    """
    One JSON object per line.

    Fixed keys are timestamp (UTC, taken from the record), level,
    event_type, module, component and correlation_id. job_id is added
    while a job is executing. Event fields are merged in at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, "event_type", "log"),
            "module": getattr(record, "fleet_module", record.module),
            "component": getattr(record, "component", record.funcName),
            "correlation_id": get_correlation_id(),
        }

        job_id = get_job_id()
        if job_id:
            entry["job_id"] = job_id

        entry.update(getattr(record, "event_data", {}))

        message = record.getMessage()
        if message and message != entry["event_type"]:
            entry["message"] = message

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_serialize)


class ConsoleFormatter(logging.Formatter):
    """
    Format: HH:MM:SS LEVEL component [job] event_type key=value ...
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            _record_time(record).astimezone().strftime("%H:%M:%S"),
            f"{record.levelname:<7}",
            getattr(record, "component", "") or record.module,
        ]

        job_id = get_job_id()
        if job_id:
            parts.append(f"[{job_id[:8]}]")

        event_type = getattr(record, "event_type", "")
        message = record.getMessage()
        parts.append(event_type or message)
        if event_type and message and message != event_type:
            parts.append(message)

        fields = getattr(record, "event_fields", None) or {}
        for key, value in fields.items():
            if not isinstance(value, (str, int, float)):
                value = _serialize(value)
            parts.append(f"{key}={value}")

        return " ".join(parts)

"""Structured logging setup for roomfix services and workers."""

import json
import logging
import sys
from datetime import datetime, timezone

_STRUCTURED_ATTRS = (
    "owner_id",
    "resource_id",
    "fix_id",
    "source_fix_id",
    "kind",
    "stage",
    "status",
    "signature",
    "transaction_type",
    "amount",
    "remaining",
    "attempt",
    "delay_seconds",
    "category",
    "error",
    "duration_ms",
    "frame_index",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for attr in _STRUCTURED_ATTRS:
            if hasattr(record, attr):
                data[attr] = getattr(record, attr)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root.handlers = [handler]

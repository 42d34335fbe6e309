from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from aiq.trace import get_current_turn_id

RUNTIME_LOGGER_NAME = "aiq.runtime"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        turn_id = getattr(record, "turn_id", None) or get_current_turn_id()
        if turn_id:
            payload["turn_id"] = turn_id

        for key in (
            "iteration",
            "tool_name",
            "tool_call_id",
            "risk",
            "duration_ms",
            "outcome",
            "exit_code",
        ):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "WARNING") -> logging.Logger:
    """Attach the JSON handler to the ``aiq`` package logger tree."""
    root = logging.getLogger("aiq")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.propagate = False
    root.setLevel(level.upper())
    return root


def get_runtime_logger() -> logging.Logger:
    logger = logging.getLogger(RUNTIME_LOGGER_NAME)
    if logger.handlers or logging.getLogger("aiq").handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger

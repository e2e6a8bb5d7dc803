from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .db import settings

OPTIONAL_FIELDS = (
    "user_id",
    "game_id",
    "question_index",
    "phase",
    "idempotency_key",
    "source",
    "coins_delta",
    "lives_delta",
    "help_type",
    "cost",
    "outcome",
    "session_id",
    "context",
    "attempt",
    "task",
    "route",
    "error_code",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "quizgame-api",
            "environment": settings.APP_ENV,
        }

        for field in OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True, default=str)


def setup_json_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level or settings.LOG_LEVEL)

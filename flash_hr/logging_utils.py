from __future__ import annotations

import enum
import json
import logging
from contextvars import ContextVar, Token
from datetime import date, datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_STANDARD_RECORD_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

_current_request_id: ContextVar[str | None] = ContextVar("flash_hr_request_id", default=None)


def bind_request_id(request_id: str | None) -> Token[str | None]:
    """Tag every record logged in this context (services included) with the request id."""

    return _current_request_id.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _current_request_id.reset(token)


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = _current_request_id.get()
        if request_id is not None:
            payload["request_id"] = request_id

        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        )

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default, ensure_ascii=True)


def setup_json_logging(level: str | int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)

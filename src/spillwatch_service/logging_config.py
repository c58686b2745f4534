from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any


# Values run until the next " key=" so free-text errors stay in one field.
_FIELD_RE = re.compile(r"(\w+)=(.*?)(?=\s\w+=|$)")
_EVENT_RE = re.compile(r"^[a-z][a-z0-9_]*$")

# Request lines are already logged by RequestTelemetryMiddleware.
QUIET_LOGGERS = ("uvicorn.access",)


def structured_fields(message: str) -> dict[str, Any]:
    """Split ``"event key=value ..."`` log messages into an event name and fields."""

    head, _, rest = message.partition(" ")
    pairs = _FIELD_RE.findall(rest)
    if not _EVENT_RE.match(head) or not pairs:
        return {}
    fields: dict[str, Any] = {"event": head}
    for key, value in pairs:
        fields.setdefault(key, value.strip())
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        for key, value in structured_fields(message).items():
            payload.setdefault(key, value)
        request_id = getattr(record, "request_id", None)
        if request_id and request_id != "-":
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = "-"
        return True


def configure_logging(*, level: str, json_logs: bool) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.strip().upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s")
        )
    root.handlers = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

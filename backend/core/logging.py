# backend/core/logging.py
import json
import logging
from typing import Any

from core.request_id import current_request_id

# LogRecord attributes that are noise in the JSON payload
_SKIP = {
    "args", "msg", "levelname", "name", "exc_info", "exc_text", "stack_info",
    "created", "msecs", "relativeCreated", "levelno", "pathname", "filename",
    "module", "funcName", "lineno", "thread", "threadName", "process",
    "processName", "taskName",
}


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = current_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # optional extra fields
        for key, val in getattr(record, "__dict__", {}).items():
            if key in _SKIP or key.startswith("_"):
                continue
            try:
                json.dumps(val)
            except (TypeError, ValueError):
                val = repr(val)
            payload[key] = val
        return json.dumps(payload, ensure_ascii=False)


def setup_json_logging(level: int = logging.INFO):
    root = logging.getLogger()
    root.handlers.clear()
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter())
    h.addFilter(RequestIdFilter())
    root.addHandler(h)
    root.setLevel(level)

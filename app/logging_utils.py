from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any


_RESERVED_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

_PII_FIELDS = ("forename", "surname", "mobile", "email", "location", "dateOfBirth", "date_of_birth")
_PII_JSON_PATTERNS = [re.compile(rf'["\']{field}["\']\s*:\s*["\'][^"\']*["\']') for field in _PII_FIELDS]
_PII_KV_PATTERNS = [re.compile(rf"\b{field}=[^,\s)]+") for field in _PII_FIELDS]
_EMAIL_PATTERN = re.compile(r"[^@\s\"',]+@[^@\s\"',]+\.[^@\s\"',]+")
_PHONE_PATTERN = re.compile(r"(?<![\w-])(?:\+44|0)\d[\d ]{7,12}\d(?![\w-])")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS or key.startswith("_"):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exception"] = sanitize_message(self.formatException(record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=True)


def setup_json_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


def sanitize_message(message: str, crn: str | None = None, uuid: object | None = None) -> str:
    """Strip personal details from free text before it is logged or stored.

    Case references and uuids are kept (and can be appended as context) so that
    failures stay traceable without leaking names, contact details or dates of birth.
    """
    sanitized = message
    for pattern in _PII_JSON_PATTERNS:
        sanitized = pattern.sub("", sanitized)
    for pattern in _PII_KV_PATTERNS:
        sanitized = pattern.sub("", sanitized)
    sanitized = _EMAIL_PATTERN.sub("[email]", sanitized)
    sanitized = _PHONE_PATTERN.sub("[phone]", sanitized)

    sanitized = re.sub(r",\s*,", ",", sanitized)
    sanitized = re.sub(r",\s*}", "}", sanitized)
    sanitized = re.sub(r"{\s*,", "{", sanitized)

    context: list[str] = []
    if crn:
        context.append(f"crn={crn}")
    if uuid:
        context.append(f"uuid={uuid}")
    if context:
        return f"{sanitized} [{', '.join(context)}]"
    return sanitized


def sanitize_exception(exc: BaseException, crn: str | None = None, uuid: object | None = None) -> str:
    message = str(exc) or exc.__class__.__name__
    return sanitize_message(message, crn, uuid)

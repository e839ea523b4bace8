"""
Logging for the Persona API.

All application logs go through the "persona" logger. Records carry the
request id of the HTTP call that produced them (bound by the request
context middleware) plus whatever structured fields the caller attached
with log_event(): user, entity, event type, key/order ids and so on.

Output is one JSON object per line in production and a compact
human-readable line elsewhere; LOG_FORMAT overrides the choice.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from persona.core.config import settings

LOGGER_NAME = "persona"
MAX_FIELD_CHARS = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("persona_request_id", default=None)

# Attributes every LogRecord has; anything else was attached via `extra`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "request_id"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    value = request_id_ctx_var.get()
    return default if value is None else value


@contextmanager
def bind_request_id(request_id: str) -> Iterator[str]:
    """Bind a request id to the current context for the duration of the block."""
    token = request_id_ctx_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and value is not None
    }


class RequestIdFilter(logging.Filter):
    """Stamp the bound request id onto records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_structured_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_timestamp(record), f"{record.levelname:<7}", f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in sorted(_structured_fields(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _pick_formatter(env: str) -> logging.Formatter:
    choice = (settings.LOG_FORMAT or "").lower()
    if choice == "json" or (not choice and env.lower() == "production"):
        return JsonFormatter()
    return PrettyFormatter()


def configure_logging(env: Optional[str] = None) -> logging.Logger:
    """Install the stdout handler on the persona logger. Safe to call twice."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.LOG_LEVEL.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_pick_formatter(env or settings.ENV))
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn.access duplicates request.complete
    logging.getLogger("uvicorn.access").propagate = False
    return logger


def _clip(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = value if isinstance(value, str) else repr(value)
    if len(text) > MAX_FIELD_CHARS:
        return text[:MAX_FIELD_CHARS] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    entity: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Emit one structured domain event on the persona logger.

    `entity` is "<entityType>:<id>" for engagement events. Values in `extra`
    are clipped to MAX_FIELD_CHARS so user-supplied text cannot flood logs.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging()

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "entity": entity,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        # Keys that collide with LogRecord attributes would make logging raise
        fields[f"x_{key}" if key in _RECORD_ATTRS else key] = _clip(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)

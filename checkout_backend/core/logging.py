"""
Checkout logging.

- One "checkout" logger; JSON lines in production, one readable line elsewhere.
- Every record carries the request_id of the HTTP request (or callback) it
  belongs to, so an intent and its later confirmation can be followed.
- Structured extras are whitelisted; anything that looks like a credential
  is masked before it reaches a handler.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "checkout"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Extra record attributes rendered by both formatters
_STRUCTURED_FIELDS = (
    "user_id",
    "network",
    "item_type",
    "item_ref",
    "event_type",
    "error_code",
    "reason",
    "status",
    "payment_id",
    "status_detail",
    "path",
    "method",
    "latency_bucket",
)

_SECRET_MARKERS = ("secret", "token", "authorization", "password", "apikey", "access_key")
_MASK = "***"

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label; exact timings are not worth a log field."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _utc_stamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


def _structured(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in _STRUCTURED_FIELDS
        if getattr(record, name, None) is not None
    }


class CheckoutContextFilter(logging.Filter):
    """Stamp request_id on records and mask credential-looking extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        for key in list(vars(record)):
            if is_secret_key(key) and getattr(record, key) is not None:
                setattr(record, key, _MASK)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": _utc_stamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        line.update(_structured(record))
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_stamp(record), f"{record.levelname:<7}", record.getMessage()]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"rid={rid}")
        parts.extend(f"{k}={v}" for k, v in _structured(record).items())
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development") -> logging.Logger:
    """Install the checkout handler; idempotent, safe to call per app."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(CheckoutContextFilter())
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own handlers; don't print its errors twice
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False
    return logger


def _clip(value: Any, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unprintable>"
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    network: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Log one checkout event with clipped, masked extras."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {"request_id": request_id or get_request_id()}
    for key, value in (("user_id", user_id), ("network", network), ("event_type", event_type), ("error_code", error_code)):
        if value is not None:
            fields[key] = value
    for key, value in (extra or {}).items():
        fields[key] = _MASK if is_secret_key(key) else _clip(value)

    getattr(logger, level.lower(), logger.info)(msg, extra=fields)

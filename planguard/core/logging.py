"""
Structured logging for enforcement decisions.

Features:
- JSON logs in production, pretty logs in development.
- Enforcement context (owner, limit_key, state) carried as record extras.
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from planguard.core.config import settings

# Record attributes that may be attached via `extra=` and are worth emitting.
CONTEXT_FIELDS = (
    "owner",
    "limit_key",
    "event_type",
    "state",
    "current_usage",
    "limit_amount",
    "requested",
    "threshold",
    "error_code",
)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


def _context(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = _format_timestamp(record)
        ctx = " ".join(f"{k}={v}" for k, v in _context(record).items())
        ctx_part = f" {ctx}" if ctx else ""
        line = f"{ts} {record.levelname} [planguard]{ctx_part} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("planguard")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logger.handlers = [handler]
    logger.propagate = True


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    owner: Optional[object] = None,
    limit_key: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Structured logging helper with safe truncation."""

    logger = logging.getLogger("planguard")
    if not logger.handlers:
        configure_logging(settings.ENV, settings.LOG_LEVEL)

    payload = {
        "owner": str(owner) if owner is not None else None,
        "limit_key": limit_key,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)

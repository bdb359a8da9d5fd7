"""Logging setup for ratewarden.

Three output formats are supported, selected by ``LOG_FORMAT``:

- ``text``: plain one-line records
- ``structured``: one-line records with the admission context appended
- ``json``: one JSON object per record, for log shippers

Admission events carry a small, fixed set of context fields (identity
source, truncated key hash, tier, limit, ...). Raw credentials never reach
a log record; callers pass ``short_hash(identity_key)`` instead.
"""

import json
import logging
import logging.config
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from ratewarden.app.core.config import settings

# Context attached to admission and backend events
CONTEXT_FIELDS = (
    "identity_source",  # credential | user_id | network | custom
    "key_hash",
    "tier",
    "limit",  # None for unbounded tiers
    "backend",  # memory | redis
    "path",
    "method",
    "status_code",
    "retry_after",
)

# Attributes every LogRecord has; anything else passed via extra= is user data
_BUILTIN_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime"}

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_STRUCTURED_FORMAT = (
    _TEXT_FORMAT
    + " - identity_source=%(identity_source)s - tier=%(tier)s - key_hash=%(key_hash)s"
)


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object.

    Known context fields become top-level keys (omitted when unset); any
    other ``extra=`` values are grouped under ``"extra"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _BUILTIN_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes the formats reference.

    The structured format interpolates ``%(tier)s`` and friends, which would
    fail on records logged without them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping from the current settings."""
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {"format": _TEXT_FORMAT},
        "structured": {"format": _STRUCTURED_FORMAT},
    }
    if log_format == "json":
        formatters["json"] = {"()": "ratewarden.app.core.logging.JSONFormatter"}
        formatter = "json"
    elif log_format == "structured":
        formatter = "structured"
    else:
        formatter = "standard"

    def stream_handler(stream: str, level: str) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": stream,
            "filters": ["context"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {"context": {"()": "ratewarden.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": stream_handler("ext://sys.stdout", log_level),
            "error_console": stream_handler("ext://sys.stderr", "ERROR"),
        },
        "loggers": {
            "ratewarden": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "ratewarden") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    identity_source: Optional[str] = None,
    key_hash: Optional[str] = None,
    tier: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build an ``extra=`` mapping for a log call, dropping unset values.

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(tier="free", key_hash="3f2a9c1d5e7b"),
        ... )
    """
    context = {"identity_source": identity_source, "key_hash": key_hash, "tier": tier, **extra}
    return {k: v for k, v in context.items() if v is not None}

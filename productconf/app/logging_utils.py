"""Logging utilities for structured, setting-aware logs."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.config import dictConfig
from typing import Any, Dict, Iterator

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", (), None))
) | {"message", "asctime", "setting", "taskName"}


setting_name_ctx_var: ContextVar[str] = ContextVar("setting_name", default="-")


class SettingContextFilter(logging.Filter):
    """Inject the name of the setting being resolved into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.setting = setting_name_ctx_var.get("-")
        return True


class JsonFormatter(logging.Formatter):
    """Render one JSON object per record.

    Byte strings passed through ``extra=`` are reported by length only so
    key material and ciphertext never reach the log stream.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "source": f"{record.module}:{record.lineno}",
            "setting": getattr(record, "setting", setting_name_ctx_var.get()),
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRIBUTES and key not in payload
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_describe)


def _describe(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    return str(value)


@contextmanager
def setting_context(name: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``name``."""

    token = setting_name_ctx_var.set(name)
    try:
        yield
    finally:
        setting_name_ctx_var.reset(token)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging for command-line use."""

    logging.captureWarnings(True)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": "productconf.app.logging_utils.JsonFormatter"}
            },
            "filters": {
                "setting": {"()": "productconf.app.logging_utils.SettingContextFilter"}
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "filters": ["setting"],
                    "formatter": "json",
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"handlers": ["default"], "level": level.upper()},
        }
    )


def get_setting_name(default: str = "-") -> str:
    """Return the setting currently being resolved, if any."""

    return setting_name_ctx_var.get(default)


__all__ = [
    "JsonFormatter",
    "SettingContextFilter",
    "get_setting_name",
    "setting_context",
    "setting_name_ctx_var",
    "setup_logging",
]

"""Logging helpers."""

from __future__ import annotations

import logging
import logging.config
from typing import Any, Dict, Iterable, Mapping

from .cli_shared import UsageError

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "WARNING", "ERROR")

_REDACT_KEYS = {"authorization", "x-api-key", "cookie"}


def redact_mapping(values: Mapping[str, Any], extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Return a shallow copy of `values` with sensitive keys redacted."""

    redacted: Dict[str, Any] = {}
    redact_keys = {key.lower() for key in _REDACT_KEYS} | {key.lower() for key in extra_keys}
    for key, value in values.items():
        if key.lower() in redact_keys:
            redacted[key] = "***REDACTED***"
        else:
            redacted[key] = value
    return redacted


def normalize_level(raw: str | None) -> str:
    level = str(raw or "").strip().upper()
    if level == "WARN":
        level = "WARNING"
    if level not in LOG_LEVELS:
        raise UsageError(f"invalid log level {raw!r} (expected one of {', '.join(LOG_LEVELS)})")
    return level


def configure_logging(level: str) -> None:
    """Configure the `ota` logger namespace to write to stderr."""

    level = normalize_level(level)
    numeric = TRACE if level == "TRACE" else getattr(logging, level)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": "%(levelname)s: %(name)s: %(message)s"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": "ext://sys.stderr",
                    "level": numeric,
                }
            },
            "loggers": {
                "ota": {
                    "level": numeric,
                    "handlers": ["console"],
                    "propagate": False,
                },
            },
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(f"ota.{name}")

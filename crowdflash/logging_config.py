"""Logging configuration: JSON records in production, readable lines in development.

Connection-scoped calls pass ``extra={"client_id": ..., "role": ...,
"remote_address": ..., "command": ...}``; both formatters surface those
fields so one device or admin can be followed through the log.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

CONTEXT_KEYS = ("client_id", "role", "remote_address", "command")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields set on ``record`` through ``extra=``, skipping empty ones."""
    context = {}
    for key in CONTEXT_KEYS:
        value = getattr(record, key, None)
        if value not in (None, ""):
            context[key] = value
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends ``key=value`` context after the message."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        suffix = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, rest = line.partition("\n")
        return f"{head} [{suffix}]{sep}{rest}"


def is_production() -> bool:
    env = os.environ.get("CROWDFLASH_ENV", "development").lower()
    return env in ("production", "prod", "staging")


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Install a single stdout handler on the root logger.

    JSON when ``json_logs`` is set or CROWDFLASH_ENV names a production
    environment; readable lines otherwise.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_logs or is_production():
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ContextFormatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Handshake failures and pings from the socket library; uvicorn is
    # configured at WARNING by the HTTP API itself
    logging.getLogger("websockets").setLevel(logging.WARNING)

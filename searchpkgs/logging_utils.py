"""Structured logging helpers shared across the application."""

from __future__ import annotations

import contextvars
import logging
from typing import Any
from uuid import uuid4

_RUN_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "searchpkgs_run_id",
    default="-",
)


def build_run_id(value: str | None = None) -> str:
    """Return a normalized run id, generating one when none is given."""
    candidate = (value or "").strip()
    if not candidate:
        return uuid4().hex
    return candidate[:128]


def set_run_id(run_id: str) -> contextvars.Token[str]:
    """Store the run id in the current context."""
    return _RUN_ID.set(run_id)


def get_run_id() -> str:
    """Return the current run id from context."""
    return _RUN_ID.get()


class _EventFormatter(logging.Formatter):
    """Append the structured fields of ``log_event`` records as ``key=value``."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        message = super().formatMessage(record)
        fields = getattr(record, "event_fields", None)
        if not fields:
            return message
        rendered = " ".join(f"{key}={value}" for key, value in fields.items() if key != "event")
        return f"{message} {rendered}"


def configure_logging(*, verbose: bool = False) -> None:
    """Attach a stderr handler to the package logger."""
    level = logging.DEBUG if verbose else logging.INFO
    package_logger = logging.getLogger("searchpkgs")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_EventFormatter("%(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event with run context fields."""
    payload: dict[str, Any] = {
        "event": event,
        "run_id": get_run_id(),
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, event, extra={**payload, "event_fields": payload}, exc_info=exc_info)

"""Logging setup for the service: one format, request ids on every record."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from .context import current_request_id


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s"

# Libraries whose own chatter duplicates the HTTP_CALL and access events.
NOISY_LOGGERS: Sequence[str] = ("urllib3", "uvicorn.access")


class RequestIdFilter(logging.Filter):
    """Stamp ``request_id`` on records that did not arrive with one.

    Records logged outside a request (CLI commands, startup) get ``-``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = current_request_id() or "-"
        return True


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> logging.Logger:
    """Attach *handlers* (stderr by default) to the root logger."""

    root = logging.getLogger()
    root.setLevel(level)

    if handlers is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [handler]

    for handler in handlers:
        if not any(isinstance(existing, RequestIdFilter) for existing in handler.filters):
            handler.addFilter(RequestIdFilter())
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return root


def get_log_file_path(storage_root: Path) -> Path:
    return storage_root / "little_microphones.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "NOISY_LOGGERS",
    "RequestIdFilter",
    "configure_logging",
    "get_log_file_path",
]

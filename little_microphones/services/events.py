"""Structured log events: application milestones, database statements and outbound calls.

Every event is one log line of the form ``[TYPE] message (key=value, ...)``.
The same data is attached to the record under ``extra`` so that a JSON
handler can pick it up without parsing the text.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("little_microphones.events")

APP_EVENT = "APP_EVENT"
DB_QUERY = "DB_QUERY"
HTTP_CALL = "HTTP_CALL"

MASK = "***"
_MAX_TEXT = 200
# Any key containing one of these fragments is masked, e.g. "brevo_api_key".
_SECRET_FRAGMENTS = ("secret", "api_key", "api-key", "apikey", "accesskey", "signature", "password", "token")

EventLogger = logging.Logger | logging.LoggerAdapter


def is_secret_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in _SECRET_FRAGMENTS)


def _clip(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    return text if len(text) <= _MAX_TEXT else text[:_MAX_TEXT] + "…"


def scrub(value: Any) -> Any:
    """Return a loggable copy of *value*; empty values come back as ``None``."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return scrub_mapping(value) or None
    if isinstance(value, (list, tuple, set, frozenset)):
        return _clip(", ".join(str(item) for item in value))
    if isinstance(value, Path):
        return str(value)
    return _clip(str(value))


def scrub_mapping(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Drop empty entries and mask secrets in *values*."""

    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or key == "":
            continue
        if is_secret_key(key):
            cleaned[str(key)] = MASK
            continue
        value = scrub(raw)
        if value is not None:
            cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    summary = str(message).strip()
    sections = {
        "event_correlation": scrub_mapping(correlation),
        "event_context": scrub_mapping(context),
        "event_payload": scrub_mapping(payload),
    }

    details: Dict[str, Any] = {}
    for section in sections.values():
        details.update(section)
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)

    text = f"[{event_type}] {summary}" if event_type else summary
    if details:
        text += " (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"

    extra: Dict[str, Any] = {"event": summary, "event_type": event_type or ""}
    extra.update({name: section for name, section in sections.items() if section})
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, text, extra=extra)


def emit_db_event(
    action: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Trace one repository action; failed statements are raised to WARNING."""

    failed = bool(payload) and payload.get("status") == "error"
    emit_structured_event(
        DB_QUERY,
        action,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=logging.WARNING if failed else logging.DEBUG,
        logger=logger,
    )


def emit_http_event(
    service: str,
    method: str,
    path: str,
    *,
    status_code: Optional[int] = None,
    error: Optional[str] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Trace one call to a third-party API.

    Transport errors and 5xx answers are logged at WARNING, the rest at INFO.
    Only the path is logged, never query strings or bodies.
    """

    failed = error is not None or (status_code is not None and status_code >= 500)
    emit_structured_event(
        HTTP_CALL,
        f"{service} {method.upper()} /{path.lstrip('/')}",
        payload={"status_code": status_code, "error": error},
        context={"service": service},
        correlation=correlation,
        duration_ms=duration_ms,
        level=logging.WARNING if failed else logging.INFO,
        logger=logger,
    )


__all__ = [
    "APP_EVENT",
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "HTTP_CALL",
    "MASK",
    "emit_db_event",
    "emit_http_event",
    "emit_structured_event",
    "is_secret_key",
    "scrub",
    "scrub_mapping",
]

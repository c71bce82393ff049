"""Request-scoped correlation context shared by the HTTP layer and the services."""

from __future__ import annotations

import contextvars
import logging
import uuid
from typing import Any, Dict, Optional


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "little_microphones_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "little_microphones_actor",
    default=None,
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def bind_request(request_id: str, actor: Optional[str] = None) -> tuple:
    """Bind *request_id* and *actor* to the current context; return reset tokens."""

    return _REQUEST_ID_VAR.set(request_id), _ACTOR_VAR.set(actor)


def reset_request(tokens: tuple) -> None:
    request_token, actor_token = tokens
    _ACTOR_VAR.reset(actor_token)
    _REQUEST_ID_VAR.reset(request_token)


def current_request_id() -> Optional[str]:
    return _REQUEST_ID_VAR.get()


def collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


__all__ = [
    "ContextualLoggerAdapter",
    "bind_request",
    "collect_correlation_context",
    "current_request_id",
    "format_actor_label",
    "new_correlation_id",
    "reset_request",
]

"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LittleMicrophonesError(Exception):
    """Base class for failures that map onto a structured HTTP response."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


class AuthenticationError(LittleMicrophonesError):
    """Missing or invalid request signature."""

    status_code = 401
    default_code = "AUTHENTICATION_FAILED"


class ValidationError(LittleMicrophonesError):
    """Malformed identifiers, unknown worlds or unparseable payloads."""

    status_code = 400
    default_code = "VALIDATION_FAILED"


class NotFoundError(LittleMicrophonesError):
    """The requested LMID, share link or recording does not exist."""

    status_code = 404
    default_code = "NOT_FOUND"


class ExhaustionError(LittleMicrophonesError):
    """No free LMID remains in the pool."""

    status_code = 503
    default_code = "LMID_POOL_EXHAUSTED"


class DependencyError(LittleMicrophonesError):
    """A third-party service failed or returned an unexpected response."""

    status_code = 502
    default_code = "DEPENDENCY_FAILED"

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        upstream_status: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.service = service
        self.upstream_status = upstream_status


class ConfigurationError(LittleMicrophonesError):
    """A credential or setting required by the operation is missing."""

    status_code = 500
    default_code = "SERVER_CONFIGURATION"


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DependencyError",
    "ExhaustionError",
    "LittleMicrophonesError",
    "NotFoundError",
    "ValidationError",
]

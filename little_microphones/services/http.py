"""Shared plumbing for the third-party HTTP clients."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Optional

import requests

from ..config import DEFAULT_HTTP_TIMEOUT
from ..context import ContextualLoggerAdapter, collect_correlation_context
from ..errors import DependencyError
from .events import emit_http_event


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})


class ServiceClient:
    """Base class wrapping a ``requests.Session`` for one remote service.

    Tests pass a custom ``session`` to intercept calls without touching the
    network; otherwise a real session is created lazily.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._session = session
        self._timeout = timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        expected: Iterable[int] = (200, 201, 202, 204),
        allowed: Iterable[int] = (),
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request and return the response.

        Responses whose status is in *expected* or *allowed* are returned to
        the caller; any other status, and every transport failure, raises
        ``DependencyError``.
        """

        merged_headers = dict(self._headers)
        if headers:
            merged_headers.update(headers)
        kwargs.setdefault("timeout", self._timeout)
        start = time.perf_counter()
        try:
            response = self.session.request(
                method, self._url(path), headers=merged_headers, **kwargs
            )
        except requests.RequestException as exc:
            duration_ms = (time.perf_counter() - start) * 1000.0
            emit_http_event(
                self.service_name,
                method,
                path,
                error=f"{exc.__class__.__name__}: {exc}",
                correlation=collect_correlation_context(),
                duration_ms=duration_ms,
            )
            raise DependencyError(
                f"{self.service_name} request failed: {exc}",
                service=self.service_name,
            ) from exc

        duration_ms = (time.perf_counter() - start) * 1000.0
        emit_http_event(
            self.service_name,
            method,
            path,
            status_code=response.status_code,
            correlation=collect_correlation_context(),
            duration_ms=duration_ms,
        )
        if response.status_code in set(expected) | set(allowed):
            return response

        body = (response.text or "")[:500]
        LOGGER.warning(
            "%s %s %s returned %s: %s",
            self.service_name,
            method.upper(),
            path,
            response.status_code,
            body,
        )
        raise DependencyError(
            f"{self.service_name} returned HTTP {response.status_code}",
            service=self.service_name,
            upstream_status=response.status_code,
            details={"status": response.status_code, "body": body},
        )


def response_json(response: requests.Response) -> Any:
    """Return the decoded JSON body of *response*, or ``None`` when empty."""

    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


__all__ = ["ServiceClient", "response_json"]

"""Client for the identity provider's admin API."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import requests

from ..config import DEFAULT_HTTP_TIMEOUT, ServiceSettings
from ..context import ContextualLoggerAdapter
from .http import ServiceClient


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

MEMBERSTACK_API_URL = "https://admin.memberstack.com"


def format_lmid_list(lmids: Iterable[object]) -> str:
    """Return the comma-separated metadata representation of *lmids*."""

    seen = []
    for lmid in lmids:
        text = str(lmid).strip()
        if text and text not in seen:
            seen.append(text)
    return ",".join(seen)


class MemberstackClient(ServiceClient):
    """Writes member metadata back to the identity provider."""

    service_name = "memberstack"

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = MEMBERSTACK_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(
            base_url,
            headers={"x-api-key": secret_key, "Content-Type": "application/json"},
            session=session,
            timeout=timeout,
        )

    @classmethod
    def from_settings(
        cls, settings: ServiceSettings, *, session: Optional[requests.Session] = None
    ) -> Optional["MemberstackClient"]:
        if not settings.memberstack_configured:
            return None
        return cls(
            settings.memberstack_secret_key or "",
            session=session,
            timeout=settings.http_timeout,
        )

    def update_lmids(self, member_id: str, lmids: str) -> None:
        """Replace the ``lmids`` metadata entry of *member_id*."""

        LOGGER.info("Updating LMID metadata for %s -> %r", member_id, lmids)
        self._request(
            "PATCH",
            f"/members/{member_id}",
            json={"metaData": {"lmids": lmids}},
        )


__all__ = ["MEMBERSTACK_API_URL", "MemberstackClient", "format_lmid_list"]

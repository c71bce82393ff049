"""Public share links granting access to one LMID's radio program in a world."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..context import ContextualLoggerAdapter
from ..errors import DependencyError, NotFoundError, ValidationError
from .naming import normalize_world, parse_lmid
from .storage import LmidRepository, ShareLinkRecord, ShareTokenCollision


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

PROGRAM_PAGE = "little-microphones"


def build_share_url(base_url: str, share_id: str, language: Optional[str] = None) -> str:
    base = base_url.rstrip("/")
    if (language or "").lower() == "pl":
        base = f"{base}/pl"
    return f"{base}/{PROGRAM_PAGE}?ID={share_id}"


@dataclass
class ShareLink:
    share_id: str
    lmid: int
    world: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"shareId": self.share_id, "lmid": self.lmid, "world": self.world, "url": self.url}


class ShareLinkService:
    def __init__(self, repository: LmidRepository) -> None:
        self._repository = repository

    def get_or_create(
        self,
        lmid: object,
        world: str,
        *,
        base_url: str,
        language: Optional[str] = None,
    ) -> ShareLink:
        """Return the share link for an assigned LMID, issuing one on first use."""

        lmid_value = parse_lmid(lmid)
        world = normalize_world(world)
        record = self._repository.get(lmid_value)
        if record is None:
            raise NotFoundError(f"LMID {lmid_value} not found", code="LMID_NOT_FOUND")
        if not record.is_used:
            raise NotFoundError(
                f"LMID {lmid_value} is not assigned", code="LMID_NOT_AVAILABLE"
            )

        link = self._repository.get_share_link(lmid_value, world)
        if link is None:
            try:
                link = self._repository.create_share_link(lmid_value, world)
            except ShareTokenCollision as error:
                raise DependencyError(str(error), service="database") from error
            LOGGER.info("Issued share id %s for %s/%s", link.share_id, lmid_value, world)
        return ShareLink(
            share_id=link.share_id,
            lmid=lmid_value,
            world=world,
            url=build_share_url(base_url, link.share_id, language),
        )

    def resolve(self, share_id: Optional[str]) -> ShareLinkRecord:
        token = (share_id or "").strip()
        if not token:
            raise ValidationError("Missing required parameter: shareId")
        if not token.isalnum():
            raise ValidationError("Invalid share id", code="INVALID_SHARE_ID")
        link = self._repository.resolve_share_link(token.lower())
        if link is None:
            raise NotFoundError("Share link not found", code="SHARE_ID_NOT_FOUND")
        return link


__all__ = ["ShareLink", "ShareLinkService", "build_share_url"]

"""Assignment and release of LMIDs from the pre-seeded pool."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..context import ContextualLoggerAdapter
from ..errors import DependencyError, ExhaustionError, NotFoundError
from .memberstack import MemberstackClient, format_lmid_list
from .naming import validate_member_id
from .ownership import validate_ownership
from .storage import LmidRepository, ShareTokenCollision


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})


@dataclass
class MetadataUpdate:
    lmid_string: str
    updated: bool
    error: Optional[str] = None


@dataclass
class AllocationResult:
    lmid: int
    share_id: str
    metadata: MetadataUpdate

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "lmid": self.lmid,
            "shareId": self.share_id,
            "newLmidString": self.metadata.lmid_string,
            "metadataUpdated": self.metadata.updated,
        }
        if self.metadata.error:
            data["metadataError"] = self.metadata.error
        return data


class LmidAllocator:
    """Claims free LMIDs for members and keeps their metadata in step.

    Claims are conditional updates on the single row being assigned, so two
    concurrent allocations can never end up holding the same LMID. The
    metadata write-back happens after the claim and never undoes it.
    """

    def __init__(
        self,
        repository: LmidRepository,
        *,
        memberstack: Optional[MemberstackClient] = None,
        batch_size: int = 25,
    ) -> None:
        self._repository = repository
        self._memberstack = memberstack
        self._batch_size = max(1, batch_size)

    def allocate(
        self,
        member_id: str,
        member_email: Optional[str] = None,
        *,
        existing_lmids: Optional[str] = "",
    ) -> AllocationResult:
        member_id = validate_member_id(member_id)
        record = None
        while record is None:
            candidates = self._repository.free_lmids(limit=self._batch_size)
            if not candidates:
                LOGGER.error("LMID pool exhausted while allocating for %s", member_id)
                raise ExhaustionError("No free LMID available")
            for candidate in candidates:
                record = self._repository.claim(candidate, member_id, member_email)
                if record is not None:
                    break
                LOGGER.debug("LMID %s was claimed concurrently; trying next", candidate)

        LOGGER.info("Assigned LMID %s to %s", record.lmid, member_id)

        ownership = validate_ownership(self._repository, member_id, existing_lmids)
        lmids: List[object] = list(ownership.owned_lmids)
        lmids.append(record.lmid)
        metadata = self._write_metadata(member_id, format_lmid_list(lmids))
        return AllocationResult(lmid=record.lmid, share_id=record.share_id, metadata=metadata)

    def release(self, member_id: str, lmid: int) -> MetadataUpdate:
        """Return *lmid* to the pool after checking that *member_id* owns it."""

        member_id = validate_member_id(member_id)
        try:
            released = self._repository.release(lmid, member_id)
        except ShareTokenCollision as error:
            raise DependencyError(str(error), service="database") from error
        if not released:
            raise NotFoundError(
                f"LMID {lmid} is not assigned to this member",
                code="LMID_NOT_OWNED",
                details={"lmid": lmid},
            )
        LOGGER.info("Released LMID %s from %s", lmid, member_id)
        remaining = self._repository.owned_by(member_id)
        return self._write_metadata(member_id, format_lmid_list(remaining))

    def sync_metadata(self, member_id: str) -> MetadataUpdate:
        """Rewrite the member's metadata from the LMIDs they actually own."""

        member_id = validate_member_id(member_id)
        return self._write_metadata(member_id, format_lmid_list(self._repository.owned_by(member_id)))

    def _write_metadata(self, member_id: str, lmid_string: str) -> MetadataUpdate:
        if self._memberstack is None:
            LOGGER.warning("Memberstack is not configured; skipping metadata update for %s", member_id)
            return MetadataUpdate(lmid_string, False, "MEMBERSTACK_SECRET_KEY not configured")
        try:
            self._memberstack.update_lmids(member_id, lmid_string)
        except DependencyError as error:
            LOGGER.warning("Metadata update failed for %s: %s", member_id, error)
            return MetadataUpdate(lmid_string, False, str(error))
        return MetadataUpdate(lmid_string, True)


__all__ = ["AllocationResult", "LmidAllocator", "MetadataUpdate"]

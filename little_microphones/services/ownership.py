"""Server-side validation of the LMIDs a member claims to own."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .naming import is_decimal_id
from .storage import LmidRepository


LOGGER = logging.getLogger(__name__)


def parse_lmid_list(raw: Optional[str]) -> List[str]:
    """Split a comma-separated LMID string into trimmed, non-empty candidates."""

    if not raw:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def _canonical(candidate: str) -> Optional[int]:
    if not is_decimal_id(candidate):
        return None
    return int(candidate)


@dataclass
class OwnershipResult:
    owned_lmids: List[str] = field(default_factory=list)
    invalid_lmids: List[str] = field(default_factory=list)
    actual_owned_lmids: List[int] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.invalid_lmids

    def to_dict(self) -> Dict[str, Any]:
        if self.valid:
            message = "All LMIDs are owned by the member"
        else:
            message = f"Member does not own LMIDs: {', '.join(self.invalid_lmids)}"
        return {
            "valid": self.valid,
            "ownedLmids": list(self.owned_lmids),
            "invalidLmids": list(self.invalid_lmids),
            "actualOwnedLmids": list(self.actual_owned_lmids),
            "message": message,
        }


def validate_ownership(
    repository: LmidRepository, member_id: str, raw_lmids: Optional[str]
) -> OwnershipResult:
    """Partition the candidates in *raw_lmids* into owned and invalid entries.

    The owned set is always re-read from the repository. Candidates keep the
    spelling they were submitted with; malformed entries are invalid.
    """

    candidates = parse_lmid_list(raw_lmids)
    actual = repository.owned_by(member_id)
    actual_set = set(actual)

    result = OwnershipResult(actual_owned_lmids=actual)
    for candidate in candidates:
        value = _canonical(candidate)
        if value is not None and value in actual_set:
            result.owned_lmids.append(candidate)
        else:
            result.invalid_lmids.append(candidate)

    if not result.valid:
        LOGGER.warning(
            "Member %s submitted LMIDs they do not own: %s (owns %s)",
            member_id,
            result.invalid_lmids,
            actual,
        )
    return result


__all__ = ["OwnershipResult", "parse_lmid_list", "validate_ownership"]

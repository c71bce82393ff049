"""Naming conventions for worlds, identifiers, share tokens and recordings."""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from ..errors import ValidationError

__all__ = [
    "WORLDS",
    "RecordingName",
    "build_recording_name",
    "generate_share_token",
    "is_decimal_id",
    "normalize_world",
    "parse_lmid",
    "parse_recording_name",
    "validate_member_id",
    "world_label",
]


WORLDS = (
    "spookyland",
    "waterpark",
    "shopping-spree",
    "amusement-park",
    "big-city",
    "neighborhood",
)

SHARE_TOKEN_LENGTH = 8
_SHARE_TOKEN_ALPHABET = string.ascii_lowercase + string.digits

_MEMBER_ID_PREFIX = "mem_"
_MEMBER_ID_MIN_LENGTH = 10

_DECIMAL_PATTERN = re.compile(r"[0-9]+")

_RECORDING_PATTERN = re.compile(
    r"^(?:kids-world_(?P<world>[a-z-]+?)"
    r"|parent_(?P<parent>[A-Za-z0-9_]+?)-world_(?P<parent_world>[a-z-]+?))"
    r"-lmid_(?P<lmid>[0-9]+)"
    r"-question_(?P<question>[A-Za-z0-9]+)"
    r"-tm_(?P<timestamp>[0-9]+)"
    r"\.(?P<extension>mp3|webm)$"
)


def normalize_world(value: Optional[str]) -> str:
    """Return the canonical world slug for *value* or raise ``ValidationError``."""

    if value is None:
        raise ValidationError("Missing world")
    candidate = value.strip().lower().replace("_", "-")
    if candidate not in WORLDS:
        raise ValidationError(
            f"Invalid world: {value}",
            code="INVALID_WORLD",
            details={"validWorlds": list(WORLDS)},
        )
    return candidate


def world_label(world: str) -> str:
    """Return a human readable label such as ``Big City`` for *world*."""

    return " ".join(part.capitalize() for part in world.split("-"))


def is_decimal_id(text: str) -> bool:
    """True for plain ASCII digit strings; Unicode digits such as ``"²"`` are rejected."""

    return _DECIMAL_PATTERN.fullmatch(text) is not None


def parse_lmid(value: object) -> int:
    """Return *value* as a positive LMID integer or raise ``ValidationError``."""

    if isinstance(value, bool):
        raise ValidationError(f"Invalid LMID: {value}", code="INVALID_LMID")
    if isinstance(value, int):
        candidate = value
    else:
        text = str(value).strip() if value is not None else ""
        if not is_decimal_id(text):
            raise ValidationError(f"Invalid LMID: {value}", code="INVALID_LMID")
        candidate = int(text)
    if candidate <= 0:
        raise ValidationError(f"Invalid LMID: {value}", code="INVALID_LMID")
    return candidate


def validate_member_id(value: Optional[str]) -> str:
    """Return *value* when it looks like an identity-provider member id."""

    member_id = (value or "").strip()
    if not member_id:
        raise ValidationError("Missing required field: memberId")
    if not member_id.startswith(_MEMBER_ID_PREFIX) or len(member_id) < _MEMBER_ID_MIN_LENGTH:
        raise ValidationError(
            "Invalid Member ID format",
            code="INVALID_MEMBER_ID",
            details={"memberId": member_id},
        )
    return member_id


def generate_share_token(length: int = SHARE_TOKEN_LENGTH) -> str:
    """Return a random lowercase alphanumeric token."""

    return "".join(secrets.choice(_SHARE_TOKEN_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class RecordingName:
    filename: str
    world: str
    lmid: int
    question_id: str
    timestamp: int
    extension: str
    parent_member_id: Optional[str] = None

    @property
    def is_parent_recording(self) -> bool:
        return self.parent_member_id is not None


def parse_recording_name(filename: str) -> Optional[RecordingName]:
    """Return the components encoded in a recording *filename*, if any."""

    match = _RECORDING_PATTERN.match(filename.strip())
    if match is None:
        return None
    world = match.group("world") or match.group("parent_world")
    if world not in WORLDS:
        return None
    return RecordingName(
        filename=match.group(0),
        world=world,
        lmid=int(match.group("lmid")),
        question_id=match.group("question"),
        timestamp=int(match.group("timestamp")),
        extension=match.group("extension"),
        parent_member_id=match.group("parent"),
    )


def build_recording_name(
    world: str,
    lmid: int,
    question_id: str,
    timestamp: int,
    *,
    extension: str = "mp3",
    parent_member_id: Optional[str] = None,
) -> str:
    """Return the canonical filename for a recording."""

    suffix = extension.lstrip(".").lower()
    if parent_member_id:
        prefix = f"parent_{parent_member_id}-world_{world}"
    else:
        prefix = f"kids-world_{world}"
    return f"{prefix}-lmid_{lmid}-question_{question_id}-tm_{timestamp}.{suffix}"

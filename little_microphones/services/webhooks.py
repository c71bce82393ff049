"""Signed identity-provider webhooks: verification, parsing and dispatch."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from ..context import ContextualLoggerAdapter
from ..errors import AuthenticationError, ConfigurationError, ValidationError
from .allocator import LmidAllocator
from .contacts import ContactSync
from .members import MemberRecord, member_from_mapping


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

SIGNATURE_HEADER = "x-memberstack-signature"
_SIGNATURE_PREFIX = "sha256="
_HEX_DIGEST = re.compile(r"[0-9a-f]{64}")

MEMBER_CREATED = "member.created"
MEMBER_UPDATED = "member.updated"


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], raw_body: bytes, header_value: Optional[str]) -> None:
    """Raise unless *header_value* is the HMAC-SHA256 of *raw_body* under *secret*."""

    if not secret:
        raise ConfigurationError("Webhook secret is not configured")
    provided = (header_value or "").strip()
    if not provided:
        raise AuthenticationError("Missing webhook signature", code="MISSING_SIGNATURE")
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]
    provided = provided.lower()
    if _HEX_DIGEST.fullmatch(provided) is None:
        raise AuthenticationError("Invalid webhook signature", code="INVALID_SIGNATURE")
    expected = compute_signature(secret, raw_body)
    if not hmac.compare_digest(expected, provided):
        raise AuthenticationError("Invalid webhook signature", code="INVALID_SIGNATURE")


@dataclass(frozen=True)
class MemberEvent:
    event_type: str
    member: MemberRecord
    shape: str


def _require_member(candidate: Any) -> MemberRecord:
    if not isinstance(candidate, Mapping):
        raise ValidationError("Webhook payload carries no member object", code="MISSING_MEMBER")
    member = member_from_mapping(candidate)
    if not member.id:
        raise ValidationError("Webhook member has no id", code="MISSING_MEMBER")
    return member


def parse_event(payload: Any) -> MemberEvent:
    """Decode one of the two known webhook shapes; anything else is rejected.

    * ``{"type": ..., "data": {"member": {...}}}``
    * ``{"event": ..., "payload": {...member...}}``
    """

    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise ValidationError("Webhook body is not valid JSON", code="INVALID_JSON") from error
    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook body must be a JSON object", code="UNKNOWN_SHAPE")

    event_type = payload.get("type")
    data = payload.get("data")
    if isinstance(event_type, str) and isinstance(data, Mapping) and "member" in data:
        return MemberEvent(event_type.strip(), _require_member(data["member"]), "data.member")

    event_name = payload.get("event")
    body = payload.get("payload")
    if isinstance(event_name, str) and isinstance(body, Mapping):
        return MemberEvent(event_name.strip(), _require_member(body), "payload")

    raise ValidationError(
        "Unrecognised webhook payload",
        code="UNKNOWN_SHAPE",
        details={"keys": sorted(str(key) for key in payload.keys())},
    )


class WebhookProcessor:
    """Applies member lifecycle events to the LMID pool and the contact list."""

    def __init__(
        self,
        allocator: LmidAllocator,
        contacts: ContactSync,
        *,
        parent_plan_ids: Iterable[str] = (),
    ) -> None:
        self._allocator = allocator
        self._contacts = contacts
        self._parent_plan_ids = frozenset(parent_plan_ids)

    def _allocation_skip_reason(self, member: MemberRecord) -> Optional[str]:
        if member.metadata_lmids:
            return "already_assigned"
        active = member.active_plans()
        if active and all(plan.plan_id in self._parent_plan_ids for plan in active):
            return "parent_plan"
        return None

    def process(self, event: MemberEvent) -> Dict[str, Any]:
        member = event.member
        outcome: Dict[str, Any] = {
            "eventType": event.event_type,
            "memberId": member.id,
            "handled": False,
        }

        if event.event_type == MEMBER_CREATED:
            lmids: Optional[str] = None
            skip_reason = self._allocation_skip_reason(member)
            if skip_reason is None:
                allocation = self._allocator.allocate(
                    member.id, member.email, existing_lmids=member.metadata_lmids
                )
                outcome.update(allocation.to_dict())
                lmids = allocation.metadata.lmid_string
            else:
                LOGGER.info("Skipping LMID allocation for %s (%s)", member.id, skip_reason)
                outcome["allocationSkipped"] = skip_reason
            sync = self._contacts.sync_member(member, lmids=lmids)
            outcome["contactSync"] = sync.to_dict()
            outcome["handled"] = True
        elif event.event_type == MEMBER_UPDATED:
            sync = self._contacts.sync_member(member)
            outcome["contactSync"] = sync.to_dict()
            outcome["handled"] = True
        else:
            LOGGER.info("Ignoring webhook event %s for %s", event.event_type, member.id)
        return outcome


__all__ = [
    "MEMBER_CREATED",
    "MEMBER_UPDATED",
    "MemberEvent",
    "SIGNATURE_HEADER",
    "WebhookProcessor",
    "compute_signature",
    "parse_event",
    "verify_signature",
]

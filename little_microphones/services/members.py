"""Member records as delivered by the identity provider, plus the plan catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class PlanInfo:
    plan_id: str
    category: str
    is_paid: bool
    name: str


PLAN_CATALOG: Dict[str, PlanInfo] = {
    plan.plan_id: plan
    for plan in (
        PlanInfo("pln_parents-y1ea03qk", "parents", False, "Parents Free"),
        PlanInfo("pln_free-plan-dhnb0ejd", "educators", False, "Educators Free"),
        PlanInfo("pln_educators-free-promo-ebfw0xzj", "educators", False, "Educators Free Promo"),
        PlanInfo(
            "pln_educators-school-bundle-monthly-jqo20xap",
            "educators",
            True,
            "Educators School Bundle",
        ),
        PlanInfo(
            "pln_educators-single-classroom-monthly-lkhq021n",
            "educators",
            True,
            "Educators Single Classroom",
        ),
        PlanInfo("pln_therapists-free-t7k40ii1", "therapists", False, "Therapists Free"),
        PlanInfo("pln_therapists-free-promo-i2kz0huu", "therapists", False, "Therapists Free Promo"),
        PlanInfo(
            "pln_therapists-single-practice-juk60iii",
            "therapists",
            True,
            "Therapists Single Practice",
        ),
    )
}


@dataclass(frozen=True)
class PlanConnection:
    plan_id: str
    status: Optional[str] = None
    active: Optional[bool] = None

    @property
    def is_active(self) -> bool:
        return (self.status or "").upper() == "ACTIVE" or bool(self.active)

    @property
    def plan(self) -> Optional[PlanInfo]:
        return PLAN_CATALOG.get(self.plan_id)


@dataclass(frozen=True)
class MemberRecord:
    id: str
    email: Optional[str] = None
    custom_fields: Dict[str, str] = field(default_factory=dict)
    metadata_lmids: str = ""
    language: Optional[str] = None
    created_at: Optional[str] = None
    plan_connections: Tuple[PlanConnection, ...] = ()

    @property
    def first_name(self) -> str:
        return (self.custom_fields.get("first-name") or "").strip()

    @property
    def last_name(self) -> str:
        return (self.custom_fields.get("last-name") or "").strip()

    @property
    def display_name(self) -> str:
        teacher_name = (self.custom_fields.get("teacher-name") or "").strip()
        if teacher_name:
            return teacher_name
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def school_name(self) -> str:
        for key in ("school-name", "school", "school-place-name"):
            value = (self.custom_fields.get(key) or "").strip()
            if value:
                return value
        return ""

    def active_plans(self) -> List[PlanConnection]:
        return [connection for connection in self.plan_connections if connection.is_active]

    def category(self) -> Optional[str]:
        """Return the user category of the first active, catalogued plan."""

        for connection in self.active_plans():
            plan = connection.plan
            if plan is not None:
                return plan.category
        return None


def _as_str_dict(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): str(item) for key, item in value.items() if item is not None}


def member_from_mapping(data: Mapping[str, Any]) -> MemberRecord:
    """Build a :class:`MemberRecord` from the provider's JSON representation."""

    auth = data.get("auth")
    email = None
    if isinstance(auth, Mapping):
        email = auth.get("email")
    email = email or data.get("email")

    metadata = data.get("metaData")
    if not isinstance(metadata, Mapping):
        metadata = {}
    raw_lmids = metadata.get("lmids")
    if raw_lmids is None:
        lmids = ""
    elif isinstance(raw_lmids, (list, tuple)):
        lmids = ",".join(str(item) for item in raw_lmids)
    else:
        lmids = str(raw_lmids)

    connections: List[PlanConnection] = []
    raw_connections = data.get("planConnections")
    if isinstance(raw_connections, list):
        for entry in raw_connections:
            if not isinstance(entry, Mapping) or not entry.get("planId"):
                continue
            active = entry.get("active")
            connections.append(
                PlanConnection(
                    plan_id=str(entry["planId"]),
                    status=entry.get("status"),
                    active=bool(active) if active is not None else None,
                )
            )

    language = metadata.get("language")
    return MemberRecord(
        id=str(data.get("id") or "").strip(),
        email=str(email).strip() if email else None,
        custom_fields=_as_str_dict(data.get("customFields")),
        metadata_lmids=lmids.strip(),
        language=str(language) if language else None,
        created_at=data.get("createdAt"),
        plan_connections=tuple(connections),
    )


__all__ = [
    "MemberRecord",
    "PLAN_CATALOG",
    "PlanConnection",
    "PlanInfo",
    "member_from_mapping",
]

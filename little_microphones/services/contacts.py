"""Contact synchronisation with the marketing/email service (Brevo)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests

from ..config import DEFAULT_HTTP_TIMEOUT, ServiceSettings
from ..context import ContextualLoggerAdapter
from ..errors import DependencyError
from .http import ServiceClient, response_json
from .members import MemberRecord


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

BREVO_API_URL = "https://api.brevo.com/v3"


def split_name(name: Optional[str]) -> Tuple[str, str]:
    """Split *name* into first and last name on the first space."""

    cleaned = " ".join((name or "").split())
    if not cleaned:
        return "", ""
    first, _, last = cleaned.partition(" ")
    return first, last


class BrevoClient(ServiceClient):
    """Thin wrapper over the contacts and transactional email endpoints."""

    service_name = "brevo"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = BREVO_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(
            base_url,
            headers={
                "api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            session=session,
            timeout=timeout,
        )

    @classmethod
    def from_settings(
        cls, settings: ServiceSettings, *, session: Optional[requests.Session] = None
    ) -> Optional["BrevoClient"]:
        if not settings.brevo_configured:
            return None
        return cls(settings.brevo_api_key or "", session=session, timeout=settings.http_timeout)

    def get_contact(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the contact for *email*, or ``None`` when it does not exist."""

        response = self._request("GET", f"/contacts/{quote(email, safe='')}", allowed=(404,))
        if response.status_code == 404:
            return None
        return response_json(response) or {}

    def create_contact(
        self,
        email: str,
        attributes: Dict[str, Any],
        list_ids: Sequence[int] = (),
    ) -> bool:
        """Create a contact; return ``False`` when it already existed."""

        response = self._request(
            "POST",
            "/contacts",
            allowed=(400,),
            json={
                "email": email,
                "attributes": attributes,
                "listIds": list(list_ids),
                "updateEnabled": False,
            },
        )
        if response.status_code == 400:
            body = response_json(response) or {}
            if body.get("code") == "duplicate_parameter":
                return False
            raise DependencyError(
                f"brevo rejected contact: {body.get('message') or 'bad request'}",
                service=self.service_name,
                upstream_status=400,
                details=body,
            )
        return True

    def update_contact(
        self,
        email: str,
        attributes: Dict[str, Any],
        list_ids: Sequence[int] = (),
    ) -> None:
        payload: Dict[str, Any] = {"attributes": attributes}
        if list_ids:
            payload["listIds"] = list(list_ids)
        self._request("PUT", f"/contacts/{quote(email, safe='')}", json=payload)

    def send_template_email(
        self,
        to_email: str,
        to_name: Optional[str],
        template_id: int,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Send a templated transactional email and return its message id."""

        recipient: Dict[str, Any] = {"email": to_email}
        if to_name:
            recipient["name"] = to_name
        response = self._request(
            "POST",
            "/smtp/email",
            json={"to": [recipient], "templateId": int(template_id), "params": params or {}},
        )
        body = response_json(response) or {}
        return body.get("messageId")


@dataclass
class ContactSyncResult:
    success: bool
    action: str
    email: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "action": self.action}
        if self.email:
            data["email"] = self.email
        if self.error:
            data["error"] = self.error
        return data


class ContactSync:
    """Keep a contact per member in the marketing service.

    Every public method is best-effort: failures are logged and reported in
    the returned :class:`ContactSyncResult`, never raised.
    """

    def __init__(self, client: Optional[BrevoClient], *, main_list_id: int) -> None:
        self._client = client
        self._main_list_id = main_list_id

    @property
    def configured(self) -> bool:
        return self._client is not None

    def ensure_contact(self, email: str, name: Optional[str] = None) -> ContactSyncResult:
        """Make sure a contact exists for *email*; repeated calls create nothing."""

        if self._client is None:
            LOGGER.warning("Skipping contact sync for %s: Brevo is not configured", email)
            return ContactSyncResult(False, "not_configured", email, "BREVO_API_KEY not configured")

        try:
            existing = self._client.get_contact(email)
        except DependencyError as error:
            LOGGER.warning("Contact lookup failed for %s: %s", email, error)
            return ContactSyncResult(False, "lookup_failed", email, str(error))
        if existing is not None:
            LOGGER.debug("Contact %s already exists", email)
            return ContactSyncResult(True, "exists", email)

        first_name, last_name = split_name(name)
        attributes = {"FIRSTNAME": first_name, "LASTNAME": last_name}
        try:
            created = self._client.create_contact(email, attributes, [self._main_list_id])
        except DependencyError as error:
            LOGGER.warning("Contact creation failed for %s: %s", email, error)
            return ContactSyncResult(False, "create_failed", email, str(error))
        if not created:
            LOGGER.debug("Contact %s was created concurrently", email)
            return ContactSyncResult(True, "exists", email)
        LOGGER.info("Created contact %s", email)
        return ContactSyncResult(True, "created", email)

    def member_attributes(self, member: MemberRecord, *, lmids: Optional[str] = None) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "FIRSTNAME": member.first_name,
            "LASTNAME": member.last_name,
            "TEACHER_NAME": member.display_name,
            "SCHOOL_NAME": member.school_name,
            "MEMBERSTACK_ID": member.id,
            "LANGUAGE_PREF": member.language or "en",
            "LAST_SYNC": datetime.now(timezone.utc).isoformat(),
        }
        if member.created_at:
            attributes["REGISTRATION_DATE"] = member.created_at
        resolved_lmids = lmids if lmids is not None else member.metadata_lmids
        if resolved_lmids:
            attributes["LMIDS"] = resolved_lmids
        for connection in member.active_plans():
            plan = connection.plan
            if plan is None:
                continue
            attributes.update(
                {
                    "USER_CATEGORY": plan.category,
                    "PLAN_TYPE": "paid" if plan.is_paid else "free",
                    "PLAN_NAME": plan.name,
                    "PLAN_ID": plan.plan_id,
                }
            )
            break
        return attributes

    def sync_member(self, member: MemberRecord, *, lmids: Optional[str] = None) -> ContactSyncResult:
        """Create or update the contact describing *member*."""

        email = member.email
        if not email:
            return ContactSyncResult(False, "skipped", None, "Member has no email address")
        if self._client is None:
            LOGGER.warning("Skipping member sync for %s: Brevo is not configured", email)
            return ContactSyncResult(False, "not_configured", email, "BREVO_API_KEY not configured")

        attributes = self.member_attributes(member, lmids=lmids)
        list_ids: List[int] = [self._main_list_id]
        try:
            existing = self._client.get_contact(email)
            if existing is None:
                created = self._client.create_contact(email, attributes, list_ids)
                if created:
                    LOGGER.info("Created contact for member %s", member.id)
                    return ContactSyncResult(True, "created", email)
            self._client.update_contact(email, attributes, list_ids)
        except DependencyError as error:
            LOGGER.warning("Member sync failed for %s: %s", member.id, error)
            return ContactSyncResult(False, "sync_failed", email, str(error))
        LOGGER.info("Updated contact for member %s", member.id)
        return ContactSyncResult(True, "updated", email)


__all__ = [
    "BREVO_API_URL",
    "BrevoClient",
    "ContactSync",
    "ContactSyncResult",
    "split_name",
]

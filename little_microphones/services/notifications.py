"""Templated email notifications about new recordings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import ServiceSettings
from ..context import ContextualLoggerAdapter
from ..errors import ConfigurationError, ValidationError
from .contacts import BrevoClient, ContactSync, ContactSyncResult


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

NOTIFICATION_TYPES = ("teacher", "parent")
LANGUAGES = ("pl", "en")


def select_template(settings: ServiceSettings, notification_type: str, language: str) -> int:
    """Return the template id for (*notification_type*, *language*)."""

    role = (notification_type or "").strip().lower()
    lang = (language or "").strip().lower()
    if role not in NOTIFICATION_TYPES:
        raise ValidationError(
            'Invalid notificationType. Must be "teacher" or "parent"',
            code="INVALID_NOTIFICATION_TYPE",
        )
    if lang not in LANGUAGES:
        raise ValidationError('Invalid language. Must be "pl" or "en"', code="INVALID_LANGUAGE")
    return settings.template_ids[(role, lang)]


@dataclass
class NotificationResult:
    template_id: int
    message_id: Optional[str]
    contact_sync: ContactSyncResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "templateId": self.template_id,
            "contactSync": self.contact_sync.to_dict(),
        }


class NotificationDispatcher:
    def __init__(
        self,
        settings: ServiceSettings,
        client: Optional[BrevoClient],
        contacts: ContactSync,
    ) -> None:
        self._settings = settings
        self._client = client
        self._contacts = contacts

    def dispatch(
        self,
        recipient_email: str,
        recipient_name: str,
        notification_type: str,
        language: str,
        template_data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResult:
        email = (recipient_email or "").strip()
        if not email or "@" not in email:
            raise ValidationError("Invalid recipientEmail", code="INVALID_EMAIL")
        template_id = select_template(self._settings, notification_type, language)
        if self._client is None:
            raise ConfigurationError("Email service configuration error")

        contact_sync = self._contacts.ensure_contact(email, recipient_name)
        if not contact_sync.success:
            LOGGER.warning(
                "Sending %s notification to %s without a synced contact (%s)",
                notification_type,
                email,
                contact_sync.action,
            )
        message_id = self._client.send_template_email(
            email, recipient_name, template_id, template_data or {}
        )
        LOGGER.info(
            "Sent %s/%s notification to %s with template %s",
            notification_type,
            language,
            email,
            template_id,
        )
        return NotificationResult(template_id, message_id, contact_sync)


__all__ = ["NotificationDispatcher", "NotificationResult", "select_template"]

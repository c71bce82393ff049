from __future__ import annotations

import json

import pytest

from little_microphones.errors import AuthenticationError, ConfigurationError, ValidationError
from little_microphones.services.allocator import LmidAllocator
from little_microphones.services.contacts import BrevoClient, ContactSync
from little_microphones.services.storage import STATUS_FREE, STATUS_USED, LmidRepository
from little_microphones.services.webhooks import (
    WebhookProcessor,
    compute_signature,
    parse_event,
    verify_signature,
)


CONTACT_URL = "https://api.brevo.com/v3/contacts/new%40example.test"


def _member(**overrides):
    member = {
        "id": "mem_newbie_0001",
        "auth": {"email": "new@example.test"},
        "customFields": {"first-name": "New", "last-name": "Teacher"},
        "planConnections": [{"planId": "pln_free-plan-dhnb0ejd", "status": "ACTIVE"}],
    }
    member.update(overrides)
    return member


def test_verify_signature_accepts_plain_and_prefixed_hex() -> None:
    body = b'{"type":"member.created"}'
    signature = compute_signature("secret", body)

    verify_signature("secret", body, signature)
    verify_signature("secret", body, f"sha256={signature}")


@pytest.mark.parametrize(
    "header",
    [None, "", "sha256=deadbeef", "0" * 64, "\xe9abc", "sha256=" + "\xe9" * 64, "g" * 64],
)
def test_verify_signature_rejects_missing_or_wrong_values(header) -> None:
    with pytest.raises(AuthenticationError):
        verify_signature("secret", b"{}", header)


def test_verify_signature_requires_configured_secret() -> None:
    with pytest.raises(ConfigurationError):
        verify_signature(None, b"{}", "abc")


def test_parse_event_accepts_both_known_shapes() -> None:
    first = parse_event({"type": "member.created", "data": {"member": _member()}})
    second = parse_event({"event": "member.updated", "payload": _member()})

    assert first.event_type == "member.created"
    assert first.member.email == "new@example.test"
    assert second.event_type == "member.updated"
    assert second.member.id == "mem_newbie_0001"


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "member.created", "data": _member()},
        {"type": "member.created"},
        {"event": "member.created", "payload": {"auth": {}}},
        {"member": _member()},
        ["not", "an", "object"],
        b"{not json",
    ],
)
def test_parse_event_fails_closed(payload) -> None:
    with pytest.raises(ValidationError):
        parse_event(payload)


def _processor(repository: LmidRepository, fake_session) -> WebhookProcessor:
    allocator = LmidAllocator(repository)
    contacts = ContactSync(BrevoClient("brevo_test", session=fake_session), main_list_id=2)
    return WebhookProcessor(allocator, contacts, parent_plan_ids=["pln_parents-y1ea03qk"])


def test_member_created_allocates_then_syncs(repository: LmidRepository, fake_session) -> None:
    repository.seed(2)
    fake_session.add("GET", CONTACT_URL, status=404)
    fake_session.add("POST", "https://api.brevo.com/v3/contacts", status=201, payload={"id": 1})
    event = parse_event(json.dumps({"type": "member.created", "data": {"member": _member()}}).encode())

    outcome = _processor(repository, fake_session).process(event)

    assert outcome["handled"] is True
    assert outcome["lmid"] == 1
    assert outcome["contactSync"]["action"] == "created"
    created = fake_session.calls_to("POST", "https://api.brevo.com/v3/contacts")[0]
    assert created["json"]["attributes"]["LMIDS"] == "1"


def test_contact_sync_failure_keeps_allocation(repository: LmidRepository, fake_session) -> None:
    repository.seed(1)
    fake_session.add("GET", CONTACT_URL, status=503, text="unavailable")
    event = parse_event({"type": "member.created", "data": {"member": _member()}})

    outcome = _processor(repository, fake_session).process(event)

    assert outcome["lmid"] == 1
    assert outcome["contactSync"]["success"] is False
    assert repository.get(1).status == STATUS_USED


def test_member_with_existing_lmids_is_not_reallocated(repository: LmidRepository, fake_session) -> None:
    repository.seed(1)
    fake_session.add("GET", CONTACT_URL, status=200, payload={})
    fake_session.add("PUT", CONTACT_URL, status=204)
    event = parse_event(
        {"type": "member.created", "data": {"member": _member(metaData={"lmids": "7"})}}
    )

    outcome = _processor(repository, fake_session).process(event)

    assert outcome["allocationSkipped"] == "already_assigned"
    assert repository.get(1).status == STATUS_FREE


def test_parent_plan_members_get_no_lmid(repository: LmidRepository, fake_session) -> None:
    repository.seed(1)
    fake_session.add("GET", CONTACT_URL, status=200, payload={})
    fake_session.add("PUT", CONTACT_URL, status=204)
    member = _member(planConnections=[{"planId": "pln_parents-y1ea03qk", "active": True}])

    outcome = _processor(repository, fake_session).process(
        parse_event({"type": "member.created", "data": {"member": member}})
    )

    assert outcome["allocationSkipped"] == "parent_plan"
    assert repository.get(1).status == STATUS_FREE


def test_unknown_events_are_acknowledged(repository: LmidRepository, fake_session) -> None:
    event = parse_event({"type": "subscription.created", "data": {"member": _member()}})

    outcome = _processor(repository, fake_session).process(event)

    assert outcome["handled"] is False
    assert fake_session.calls == []

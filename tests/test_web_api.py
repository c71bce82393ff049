from __future__ import annotations

import json
from typing import Any, Dict

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from little_microphones.config import ServiceSettings
from little_microphones.services.playlist import build_segments, render_manifest
from little_microphones.services.storage import STATUS_FREE, STATUS_USED, LmidRepository
from little_microphones.services.webhooks import compute_signature
from little_microphones.web import create_app


CONTACTS_URL = "https://api.brevo.com/v3/contacts"
MEMBER_CONTACT_URL = "https://api.brevo.com/v3/contacts/new%40example.test"
MEMBERSTACK_URL = "https://admin.memberstack.com/members/mem_newbie_0001"


def _client(temp_config, settings, fake_session) -> TestClient:
    repository = LmidRepository(temp_config)
    app = create_app(repository, config=temp_config, settings=settings, session=fake_session)
    return TestClient(app)


def _webhook_body() -> bytes:
    payload: Dict[str, Any] = {
        "type": "member.created",
        "data": {
            "member": {
                "id": "mem_newbie_0001",
                "auth": {"email": "new@example.test"},
                "customFields": {"first-name": "New", "last-name": "Teacher"},
            }
        },
    }
    return json.dumps(payload).encode("utf-8")


def test_webhook_without_signature_is_rejected_without_side_effects(
    temp_config, settings, fake_session
) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(1)
    client = _client(temp_config, settings, fake_session)

    response = client.post("/api/memberstack-webhook", content=_webhook_body())

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "MISSING_SIGNATURE"
    assert repository.get(1).status == STATUS_FREE
    assert fake_session.calls == []


def test_webhook_with_bad_signature_is_rejected(temp_config, settings, fake_session) -> None:
    client = _client(temp_config, settings, fake_session)

    response = client.post(
        "/api/memberstack-webhook",
        content=_webhook_body(),
        headers={"x-memberstack-signature": "sha256=" + "0" * 64},
    )

    assert response.status_code == 401
    assert fake_session.calls == []


def test_signed_member_created_allocates_and_syncs(temp_config, settings, fake_session) -> None:
    LmidRepository(temp_config).seed(3)
    fake_session.add("PATCH", MEMBERSTACK_URL, payload={"data": {}})
    fake_session.add("GET", MEMBER_CONTACT_URL, status=404)
    fake_session.add("POST", CONTACTS_URL, status=201, payload={"id": 3})
    client = _client(temp_config, settings, fake_session)
    body = _webhook_body()

    response = client.post(
        "/api/memberstack-webhook",
        content=body,
        headers={"x-memberstack-signature": compute_signature("whsec_test", body)},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["lmid"] == 1
    assert data["metadataUpdated"] is True
    assert data["contactSync"]["action"] == "created"
    assert response.headers["x-request-id"]


def test_webhook_reports_exhausted_pool(temp_config, settings, fake_session) -> None:
    client = _client(temp_config, settings, fake_session)
    body = _webhook_body()

    response = client.post(
        "/api/memberstack-webhook",
        content=body,
        headers={"x-memberstack-signature": compute_signature("whsec_test", body)},
    )

    assert response.status_code == 503
    assert response.json()["code"] == "LMID_POOL_EXHAUSTED"


def test_unrecognised_webhook_shape_is_a_validation_error(temp_config, settings, fake_session) -> None:
    client = _client(temp_config, settings, fake_session)
    body = b'{"hello": "world"}'

    response = client.post(
        "/api/memberstack-webhook",
        content=body,
        headers={"x-memberstack-signature": compute_signature("whsec_test", body)},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "UNKNOWN_SHAPE"


def test_validate_ownership_endpoint(temp_config, settings, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(5)
    for lmid in (1, 2, 3):
        repository.claim(lmid, "mem_teacher_001", None)
    client = _client(temp_config, settings, fake_session)

    response = client.post(
        "/api/validate-lmid-ownership", json={"memberId": "mem_teacher_001", "lmids": "2,5"}
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "valid": False,
        "ownedLmids": ["2"],
        "invalidLmids": ["5"],
        "actualOwnedLmids": [1, 2, 3],
        "message": "Member does not own LMIDs: 5",
    }


@pytest.mark.parametrize(
    "payload",
    [{"lmids": "1"}, {"memberId": "bad", "lmids": "1"}, {"memberId": "mem_teacher_001"}],
)
def test_validate_ownership_rejects_bad_input(temp_config, settings, fake_session, payload) -> None:
    client = _client(temp_config, settings, fake_session)

    response = client.post("/api/validate-lmid-ownership", json=payload)

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_lmid_operations_add_and_delete(temp_config, settings, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(2)
    member_url = "https://admin.memberstack.com/members/mem_teacher_001"
    fake_session.add("PATCH", member_url, payload={"data": {}})
    client = _client(temp_config, settings, fake_session)

    added = client.post(
        "/api/lmid-operations",
        json={"action": "add", "memberId": "mem_teacher_001", "memberEmail": "t@example.test"},
    )
    assert added.status_code == 200
    assert added.json()["lmid"] == 1

    foreign = client.post(
        "/api/lmid-operations",
        json={"action": "delete", "memberId": "mem_teacher_002", "lmidToDelete": 1},
    )
    assert foreign.status_code == 404

    deleted = client.post(
        "/api/lmid-operations",
        json={"action": "delete", "memberId": "mem_teacher_001", "lmidToDelete": "1"},
    )
    assert deleted.status_code == 200
    assert deleted.json()["newLmidString"] == ""
    assert repository.get(1).status == STATUS_FREE
    assert [call["json"] for call in fake_session.calls_to("PATCH", member_url)] == [
        {"metaData": {"lmids": "1"}},
        {"metaData": {"lmids": ""}},
    ]

    unknown = client.post(
        "/api/lmid-operations", json={"action": "explode", "memberId": "mem_teacher_001"}
    )
    assert unknown.status_code == 400


def test_radio_playlist_endpoint_degrades_to_inline_manifest(temp_config, fake_session) -> None:
    client = _client(temp_config, ServiceSettings.from_env({}), fake_session)

    response = client.post(
        "/api/radio-playlist",
        json={"lmid": 42, "world": "spookyland", "recordings": {"1": ["a.mp3"], "2": ["b.mp3", "c.mp3"]}},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["uploaded"] is False
    assert data["url"].startswith("data:audio/x-mpegurl;base64,")
    assert data["totalSegments"] == 8
    assert data["questionCount"] == 2
    assert data["totalRecordings"] == 3

    empty = client.post(
        "/api/radio-playlist", json={"lmid": 42, "world": "spookyland", "recordings": {}}
    )
    assert empty.status_code == 400


def test_share_link_and_radio_data_flow(temp_config, settings, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(1)
    repository.claim(1, "mem_teacher_001", None)
    client = _client(temp_config, settings, fake_session)

    link = client.get(
        "/api/share-link",
        params={"lmid": "1", "world": "spookyland"},
        headers={"referer": "https://www.example.test/pl/members/dashboard"},
    )
    assert link.status_code == 200
    share = link.json()
    assert share["url"] == f"https://www.example.test/pl/little-microphones?ID={share['shareId']}"

    filename = "kids-world_spookyland-lmid_1-question_1-tm_100.mp3"
    fake_session.add(
        "GET",
        "https://storage.bunnycdn.com/little-microphones/1/spookyland/",
        payload=[{"ObjectName": filename, "Length": 3}],
    )
    manifest_url = "https://storage.bunnycdn.com/little-microphones/1/spookyland/radio-program.m3u"
    fake_session.add("GET", manifest_url, status=404)
    fake_session.add(
        "GET",
        manifest_url,
        text=render_manifest(
            build_segments(1, "spookyland", {"1": [filename]}, base_url="https://cdn.example.test")
        ),
    )

    stale = client.get("/api/radio-data", params={"shareId": share["shareId"]})
    assert stale.status_code == 200
    assert stale.json()["needsNewProgram"] is True
    assert stale.json()["pageState"] == "generating"
    assert stale.json()["recordings"] == {"1": [filename]}

    current = client.get("/api/radio-data", params={"shareId": share["shareId"]})
    assert current.json()["needsNewProgram"] is False
    assert current.json()["pageState"] == "player"
    assert current.json()["manifestUrl"] == "https://cdn.example.test/1/spookyland/radio-program.m3u"


def test_share_link_for_unassigned_lmid_is_not_found(temp_config, settings, fake_session) -> None:
    LmidRepository(temp_config).seed(1)
    client = _client(temp_config, settings, fake_session)

    response = client.get("/api/share-link", params={"lmid": "1", "world": "spookyland"})

    assert response.status_code == 404
    assert response.json()["code"] == "LMID_NOT_AVAILABLE"


def test_email_notifications_endpoint(temp_config, settings, fake_session) -> None:
    fake_session.add("GET", "https://api.brevo.com/v3/contacts/t%40example.test", status=200, payload={})
    fake_session.add("POST", "https://api.brevo.com/v3/smtp/email", status=201, payload={"messageId": "m"})
    client = _client(temp_config, settings, fake_session)

    response = client.post(
        "/api/email-notifications",
        json={
            "recipientEmail": "t@example.test",
            "recipientName": "Teacher T",
            "notificationType": "teacher",
            "language": "pl",
            "templateData": {"lmid": 1},
        },
    )

    assert response.status_code == 200
    assert response.json()["templateId"] == 1

    invalid = client.post(
        "/api/email-notifications",
        json={
            "recipientEmail": "t@example.test",
            "recipientName": "Teacher T",
            "notificationType": "principal",
            "language": "pl",
        },
    )
    assert invalid.status_code == 400


def test_health_reports_pool_and_configuration(temp_config, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(2)
    repository.claim(2, "mem_teacher_001", None)
    client = _client(temp_config, ServiceSettings.from_env({"BREVO_API_KEY": "k"}), fake_session)

    data = client.get("/api/health").json()

    assert data["lmidPool"] == {STATUS_FREE: 1, STATUS_USED: 1}
    assert data["services"] == {
        "memberstack": False,
        "brevo": True,
        "storage": False,
        "webhookSecret": False,
    }


def test_forwarded_prefix_is_stripped(temp_config, settings, fake_session) -> None:
    client = _client(temp_config, settings, fake_session)

    response = client.get("/radio/api/health", headers={"x-forwarded-prefix": "/radio"})

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_webhook_with_non_ascii_signature_is_rejected(temp_config, settings, fake_session) -> None:
    LmidRepository(temp_config).seed(1)
    client = _client(temp_config, settings, fake_session)

    response = client.post(
        "/api/memberstack-webhook",
        content=_webhook_body(),
        headers={"x-memberstack-signature": b"\xe9abc"},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert fake_session.calls == []


def test_unexpected_errors_are_rendered_as_json(temp_config, settings, fake_session, monkeypatch) -> None:
    def broken_counts(self):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(LmidRepository, "status_counts", broken_counts)
    app = create_app(
        LmidRepository(temp_config), config=temp_config, settings=settings, session=fake_session
    )
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/api/health")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Internal server error",
        "code": "INTERNAL_ERROR",
        "details": {"type": "RuntimeError"},
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"memberId": "mem_teacher_001", "lmid": "²", "world": "spookyland", "recordings": {"1": ["a.mp3"]}},
        {"memberId": "mem_teacher_001", "lmid": "٣", "world": "spookyland", "recordings": {"1": ["a.mp3"]}},
    ],
)
def test_unicode_digit_lmids_are_validation_errors(temp_config, settings, fake_session, payload) -> None:
    client = _client(temp_config, settings, fake_session)

    playlist = client.post("/api/radio-playlist", json=payload)
    operation = client.post(
        "/api/lmid-operations",
        json={"action": "delete", "memberId": "mem_teacher_001", "lmidToDelete": payload["lmid"]},
    )
    ownership = client.post(
        "/api/validate-lmid-ownership", json={"memberId": "mem_teacher_001", "lmids": payload["lmid"]}
    )

    assert playlist.status_code == 400
    assert operation.status_code == 400
    assert ownership.status_code == 200
    assert ownership.json()["invalidLmids"] == [payload["lmid"]]


def test_delete_recording_endpoint(temp_config, settings, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(1)
    repository.claim(1, "mem_teacher_001", None)
    filename = "kids-world_spookyland-lmid_1-question_1-tm_100.mp3"
    target = f"https://storage.bunnycdn.com/little-microphones/1/spookyland/{filename}"
    fake_session.add("DELETE", target, status=200)
    client = _client(temp_config, settings, fake_session)
    body = {"memberId": "mem_teacher_001", "lmid": "1", "world": "spookyland", "filename": filename}

    deleted = client.request("DELETE", "/api/recordings", json=body)
    assert deleted.status_code == 200
    assert deleted.json()["deleted"] is True

    foreign = client.request("DELETE", "/api/recordings", json={**body, "memberId": "mem_teacher_002"})
    assert foreign.status_code == 404
    assert len(fake_session.calls_to("DELETE", target)) == 1

    missing_name = client.request("DELETE", "/api/recordings", json={**body, "filename": None})
    assert missing_name.status_code == 400


def test_update_parent_metadata_rewrites_from_owned_lmids(temp_config, settings, fake_session) -> None:
    repository = LmidRepository(temp_config)
    repository.seed(3)
    repository.claim(1, "mem_teacher_001", None)
    repository.claim(3, "mem_teacher_001", None)
    member_url = "https://admin.memberstack.com/members/mem_teacher_001"
    fake_session.add("PATCH", member_url, payload={"data": {}})
    client = _client(temp_config, settings, fake_session)

    response = client.post(
        "/api/lmid-operations",
        json={"action": "update_parent_metadata", "memberId": "mem_teacher_001"},
    )

    assert response.status_code == 200
    assert response.json()["newLmidString"] == "1,3"
    assert response.json()["metadataUpdated"] is True
    assert fake_session.calls_to("PATCH", member_url)[0]["json"] == {"metaData": {"lmids": "1,3"}}

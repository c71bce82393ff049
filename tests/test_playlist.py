from __future__ import annotations

import base64

import pytest

from little_microphones.errors import DependencyError, ValidationError
from little_microphones.services.cdn import CdnStorageClient
from little_microphones.services.playlist import (
    PlaylistPublisher,
    build_segments,
    question_sort_key,
    render_manifest,
)


BASE = "https://cdn.example.test"


def test_segments_follow_program_layout() -> None:
    segments = build_segments(
        42, "spookyland", {"2": ["b.mp3", "c.mp3"], "1": ["a.mp3"]}, base_url=BASE
    )

    assert [segment.filename for segment in segments] == [
        "intro.mp3",
        "1.mp3",
        "a.mp3",
        "monkeys.mp3",
        "2.mp3",
        "b.mp3",
        "c.mp3",
        "outro.mp3",
    ]
    assert [segment.type for segment in segments].count("transition") == 1
    assert segments[0].title == "Welcome to Spookyland Radio"
    assert segments[2].url == f"{BASE}/42/spookyland/a.mp3"
    assert segments[5].title == "Answer 1 - Question 2"
    assert segments[-1].url == f"{BASE}/outro.mp3"


def test_transitions_only_between_questions() -> None:
    recordings = {str(qid): [f"r{qid}.mp3"] for qid in (3, 10, 1, 2)}

    segments = build_segments(7, "big-city", recordings, base_url=BASE)

    prompts = [segment.filename for segment in segments if segment.type == "question"]
    assert prompts == ["1.mp3", "2.mp3", "3.mp3", "10.mp3"]
    assert sum(segment.type == "transition" for segment in segments) == len(recordings) - 1
    assert segments[-2].type == "answer"


def test_single_question_has_no_transition() -> None:
    segments = build_segments(7, "waterpark", {"5": ["x.mp3"]}, base_url=BASE)

    assert [segment.type for segment in segments] == ["intro", "question", "answer", "outro"]


def test_builder_and_manifest_are_deterministic() -> None:
    recordings = {"2": ["b.mp3"], "1": ["a.mp3", "z.mp3"]}

    first = build_segments(9, "neighborhood", recordings, base_url=BASE)
    second = build_segments(9, "neighborhood", dict(reversed(list(recordings.items()))), base_url=BASE)

    assert first == second
    assert render_manifest(first) == render_manifest(second)


def test_manifest_lists_duration_tagged_uris() -> None:
    manifest = render_manifest(build_segments(9, "spookyland", {"1": ["a.mp3"]}, base_url=BASE))

    lines = manifest.splitlines()
    assert lines[0] == "#EXTM3U"
    assert lines[1] == "#EXTINF:-1,Welcome to Spookyland Radio"
    assert lines[2] == f"{BASE}/intro.mp3"
    assert len(lines) == 1 + 2 * 4
    assert manifest.endswith("\n")


@pytest.mark.parametrize(
    "recordings",
    [{}, None, {"1": "a.mp3"}, {"1": ["../secret.mp3"]}, {"1": [""]}],
)
def test_builder_rejects_invalid_recordings(recordings) -> None:
    with pytest.raises(ValidationError):
        build_segments(1, "spookyland", recordings, base_url=BASE)


def test_non_ascii_digit_question_ids_sort_after_numeric_ones() -> None:
    segments = build_segments(
        1, "spookyland", {"²": ["b.mp3"], "10": ["c.mp3"], "2": ["a.mp3"]}, base_url=BASE
    )

    prompts = [segment.filename for segment in segments if segment.type == "question"]
    assert prompts == ["2.mp3", "10.mp3", "².mp3"]
    assert question_sort_key("²") > question_sort_key("999")


@pytest.mark.parametrize("lmid", ["²", "٣", "-1", "0", ""])
def test_builder_rejects_malformed_lmids(lmid) -> None:
    with pytest.raises(ValidationError):
        build_segments(lmid, "spookyland", {"1": ["a.mp3"]}, base_url=BASE)


def test_builder_rejects_unknown_world() -> None:
    with pytest.raises(ValidationError):
        build_segments(1, "atlantis", {"1": ["a.mp3"]}, base_url=BASE)


def test_publish_without_storage_returns_inline_manifest() -> None:
    publisher = PlaylistPublisher(None, cdn_url=BASE)

    result = publisher.publish("12", "spookyland", {"1": ["a.mp3"]})

    assert result.uploaded is False
    prefix = "data:audio/x-mpegurl;base64,"
    assert result.url.startswith(prefix)
    assert base64.b64decode(result.url[len(prefix):]).decode("utf-8") == result.manifest
    assert result.to_dict()["totalSegments"] == 4


def test_publish_uploads_manifest_keyed_by_lmid_and_world(fake_session) -> None:
    upload_url = "https://storage.bunnycdn.com/zone/12/spookyland/radio-program.m3u"
    fake_session.add("PUT", upload_url, status=201, payload={"HttpCode": 201})
    storage = CdnStorageClient("bunny_key", "zone", cdn_url=BASE, session=fake_session)
    publisher = PlaylistPublisher(storage, cdn_url=BASE)

    result = publisher.publish(12, "spookyland", {"1": ["a.mp3"], "2": ["b.mp3"]})

    assert result.uploaded is True
    assert result.url == f"{BASE}/12/spookyland/radio-program.m3u"
    call = fake_session.calls_to("PUT", upload_url)[0]
    assert call["data"] == result.manifest.encode("utf-8")
    assert call["headers"]["AccessKey"] == "bunny_key"
    assert call["headers"]["Content-Type"] == "audio/x-mpegurl"


def test_publish_surfaces_upload_failures(fake_session) -> None:
    upload_url = "https://storage.bunnycdn.com/zone/12/spookyland/radio-program.m3u"
    fake_session.add("PUT", upload_url, status=401, payload={"Message": "Unauthorized"})
    storage = CdnStorageClient("bad", "zone", cdn_url=BASE, session=fake_session)

    with pytest.raises(DependencyError):
        PlaylistPublisher(storage, cdn_url=BASE).publish(12, "spookyland", {"1": ["a.mp3"]})

"""Radio program playlists: segment ordering, manifest rendering and publishing."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import DEFAULT_CDN_URL
from ..context import ContextualLoggerAdapter
from ..errors import ValidationError
from .cdn import CdnStorageClient, join_path
from .naming import is_decimal_id, normalize_world, parse_lmid, world_label


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

INTRO_FILENAME = "intro.mp3"
TRANSITION_FILENAME = "monkeys.mp3"
OUTRO_FILENAME = "outro.mp3"
MANIFEST_FILENAME = "radio-program.m3u"
MANIFEST_CONTENT_TYPE = "audio/x-mpegurl"


@dataclass(frozen=True)
class Segment:
    type: str
    title: str
    filename: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "title": self.title, "filename": self.filename, "url": self.url}


def question_sort_key(question_id: str) -> Tuple[int, int, str]:
    """Numeric question ids sort numerically, any others after them by text."""

    if is_decimal_id(question_id):
        return (0, int(question_id), question_id)
    return (1, 0, question_id)


def normalize_recordings(recordings: Any) -> Dict[str, List[str]]:
    """Validate a question-id -> filenames mapping and return a clean copy."""

    if not isinstance(recordings, Mapping) or not recordings:
        raise ValidationError("No recordings provided", code="NO_RECORDINGS")
    cleaned: Dict[str, List[str]] = {}
    for raw_question, files in recordings.items():
        question_id = str(raw_question).strip()
        if not question_id:
            raise ValidationError("Empty question id in recordings")
        if not isinstance(files, (list, tuple)):
            raise ValidationError(
                f"Recordings for question {question_id} must be a list",
                details={"questionId": question_id},
            )
        names: List[str] = []
        for filename in files:
            name = str(filename).strip() if filename is not None else ""
            if not name or "/" in name or "\\" in name or name.startswith("."):
                raise ValidationError(
                    f"Invalid recording filename: {filename!r}",
                    details={"questionId": question_id},
                )
            names.append(name)
        cleaned[question_id] = names
    return cleaned


def build_segments(
    lmid: int,
    world: str,
    recordings: Mapping[str, Sequence[str]],
    *,
    base_url: str = DEFAULT_CDN_URL,
) -> List[Segment]:
    """Return the ordered segments of the radio program for (*lmid*, *world*).

    Layout: intro, then per question (ascending id) the question prompt and
    each recording in the supplied order, a transition between consecutive
    questions only, and the outro.
    """

    lmid = parse_lmid(lmid)
    world = normalize_world(world)
    cleaned = normalize_recordings(recordings)
    base = base_url.rstrip("/")

    segments: List[Segment] = [
        Segment(
            "intro",
            f"Welcome to {world_label(world)} Radio",
            INTRO_FILENAME,
            f"{base}/{INTRO_FILENAME}",
        )
    ]
    question_ids = sorted(cleaned, key=question_sort_key)
    for index, question_id in enumerate(question_ids, start=1):
        prompt = f"{question_id}.mp3"
        segments.append(Segment("question", f"Question {index}", prompt, f"{base}/{prompt}"))
        for answer_index, filename in enumerate(cleaned[question_id], start=1):
            segments.append(
                Segment(
                    "answer",
                    f"Answer {answer_index} - Question {index}",
                    filename,
                    f"{base}/{lmid}/{world}/{filename}",
                )
            )
        if index < len(question_ids):
            segments.append(
                Segment(
                    "transition",
                    "Musical Transition",
                    TRANSITION_FILENAME,
                    f"{base}/{TRANSITION_FILENAME}",
                )
            )
    segments.append(
        Segment("outro", "Thank you for listening!", OUTRO_FILENAME, f"{base}/{OUTRO_FILENAME}")
    )
    return segments


def render_manifest(segments: Sequence[Segment]) -> str:
    """Serialise *segments* as an extended M3U playlist."""

    lines = ["#EXTM3U"]
    for segment in segments:
        lines.append(f"#EXTINF:-1,{segment.title}")
        lines.append(segment.url)
    return "\n".join(lines) + "\n"


def manifest_data_uri(manifest: str) -> str:
    encoded = base64.b64encode(manifest.encode("utf-8")).decode("ascii")
    return f"data:{MANIFEST_CONTENT_TYPE};base64,{encoded}"


def manifest_path(lmid: int, world: str) -> str:
    return join_path(lmid, world, MANIFEST_FILENAME)


@dataclass
class PlaylistResult:
    lmid: int
    world: str
    url: str
    uploaded: bool
    manifest: str
    segments: List[Segment] = field(default_factory=list)
    question_count: int = 0
    total_recordings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "uploaded": self.uploaded,
            "lmid": self.lmid,
            "world": self.world,
            "questionCount": self.question_count,
            "totalRecordings": self.total_recordings,
            "totalSegments": len(self.segments),
            "segments": [segment.to_dict() for segment in self.segments],
        }


class PlaylistPublisher:
    """Builds the manifest and stores it next to the recordings it references."""

    def __init__(self, storage: Optional[CdnStorageClient], *, cdn_url: str = DEFAULT_CDN_URL) -> None:
        self._storage = storage
        self._cdn_url = cdn_url.rstrip("/")

    def build(self, lmid: object, world: str, recordings: Any) -> PlaylistResult:
        lmid_value = parse_lmid(lmid)
        world = normalize_world(world)
        cleaned = normalize_recordings(recordings)
        segments = build_segments(lmid_value, world, cleaned, base_url=self._cdn_url)
        manifest = render_manifest(segments)
        return PlaylistResult(
            lmid=lmid_value,
            world=world,
            url=manifest_data_uri(manifest),
            uploaded=False,
            manifest=manifest,
            segments=segments,
            question_count=len(cleaned),
            total_recordings=sum(len(files) for files in cleaned.values()),
        )

    def publish(self, lmid: object, world: str, recordings: Any) -> PlaylistResult:
        """Build the playlist and upload it; inline it when storage is unconfigured."""

        result = self.build(lmid, world, recordings)
        if self._storage is None:
            LOGGER.warning(
                "CDN storage is not configured; returning inline manifest for %s/%s",
                result.lmid,
                result.world,
            )
            return result
        result.url = self._storage.upload(
            manifest_path(result.lmid, result.world),
            result.manifest.encode("utf-8"),
            content_type=MANIFEST_CONTENT_TYPE,
        )
        result.uploaded = True
        LOGGER.info(
            "Published playlist for %s/%s with %s segment(s)",
            result.lmid,
            result.world,
            len(result.segments),
        )
        return result

    def current_manifest(self, lmid: int, world: str) -> Optional[str]:
        """Return the last published manifest for (*lmid*, *world*), if any."""

        if self._storage is None:
            return None
        return self._storage.fetch_text(manifest_path(lmid, world))

    def manifest_url(self, lmid: int, world: str) -> str:
        return f"{self._cdn_url}/{manifest_path(lmid, world)}"


__all__ = [
    "PlaylistPublisher",
    "PlaylistResult",
    "Segment",
    "build_segments",
    "manifest_data_uri",
    "normalize_recordings",
    "question_sort_key",
    "render_manifest",
]

"""Listing and uploading the recordings stored for an LMID and world."""

from __future__ import annotations

import base64
import binascii
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..context import ContextualLoggerAdapter
from ..errors import ConfigurationError, NotFoundError, ValidationError
from .cdn import CdnStorageClient, join_path
from .naming import (
    RecordingName,
    normalize_world,
    parse_lmid,
    parse_recording_name,
    validate_member_id,
)
from .playlist import question_sort_key
from .storage import LmidRepository


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

_CONTENT_TYPES = {"mp3": "audio/mpeg", "webm": "audio/webm"}


@dataclass(frozen=True)
class StoredRecording:
    name: RecordingName
    url: str
    size: int = 0
    last_changed: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "filename": self.name.filename,
            "questionId": self.name.question_id,
            "timestamp": self.name.timestamp,
            "url": self.url,
            "size": self.size,
            "lastModified": self.last_changed,
            "parentMemberId": self.name.parent_member_id,
        }


def recordings_folder(lmid: int, world: str) -> str:
    return join_path(lmid, world)


def group_by_question(recordings: Sequence[StoredRecording]) -> Dict[str, List[str]]:
    """Return ``{question_id: [filename, ...]}`` with questions in ascending order."""

    grouped: Dict[str, List[str]] = {}
    for recording in recordings:
        grouped.setdefault(recording.name.question_id, []).append(recording.name.filename)
    return OrderedDict(
        (question_id, grouped[question_id])
        for question_id in sorted(grouped, key=question_sort_key)
    )


def _decode_audio(audio_data: str) -> bytes:
    payload = audio_data.strip()
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as error:
        raise ValidationError("Audio data is not valid base64") from error
    if not content:
        raise ValidationError("Audio data is empty")
    return content


class RecordingCatalog:
    """Recordings live in the CDN store under ``{lmid}/{world}/``."""

    def __init__(
        self,
        storage: Optional[CdnStorageClient],
        *,
        repository: Optional[LmidRepository] = None,
    ) -> None:
        self._storage = storage
        self._repository = repository

    def _require_storage(self) -> CdnStorageClient:
        if self._storage is None:
            raise ConfigurationError("CDN storage is not configured")
        return self._storage

    def list(
        self,
        lmid: object,
        world: str,
        *,
        question_id: Optional[str] = None,
    ) -> List[StoredRecording]:
        """Return the recordings for (*lmid*, *world*), oldest first."""

        storage = self._require_storage()
        lmid_value = parse_lmid(lmid)
        world = normalize_world(world)
        folder = recordings_folder(lmid_value, world)

        recordings: List[StoredRecording] = []
        for entry in storage.list_directory(folder):
            if entry.is_directory:
                continue
            name = parse_recording_name(entry.name)
            if name is None or name.lmid != lmid_value or name.world != world:
                continue
            if question_id is not None and name.question_id != str(question_id):
                continue
            recordings.append(
                StoredRecording(
                    name=name,
                    url=storage.public_url(join_path(folder, name.filename)),
                    size=entry.length,
                    last_changed=entry.last_changed,
                )
            )
        recordings.sort(key=lambda item: (item.name.timestamp, item.name.filename))
        LOGGER.debug("Found %s recording(s) in %s", len(recordings), folder)
        return recordings

    @staticmethod
    def _matching_name(
        lmid: int, world: str, question_id: Optional[str], filename: Optional[str]
    ) -> RecordingName:
        name = parse_recording_name(filename or "")
        if (
            name is None
            or name.lmid != lmid
            or name.world != world
            or (question_id is not None and name.question_id != str(question_id).strip())
        ):
            raise ValidationError(
                "Recording filename does not match the naming convention",
                code="INVALID_FILENAME",
                details={"filename": filename},
            )
        return name

    def upload(
        self,
        lmid: object,
        world: str,
        question_id: str,
        filename: str,
        audio_data: str,
    ) -> StoredRecording:
        """Store a base64-encoded recording under its canonical path."""

        storage = self._require_storage()
        lmid_value = parse_lmid(lmid)
        world = normalize_world(world)
        name = self._matching_name(lmid_value, world, question_id, filename)
        content = _decode_audio(audio_data or "")
        path = join_path(recordings_folder(lmid_value, world), name.filename)
        url = storage.upload(path, content, content_type=_CONTENT_TYPES[name.extension])
        LOGGER.info("Stored recording %s (%s bytes)", path, len(content))
        return StoredRecording(name=name, url=url, size=len(content))

    def delete(
        self,
        member_id: str,
        lmid: object,
        world: str,
        filename: str,
        *,
        question_id: Optional[str] = None,
    ) -> bool:
        """Remove one recording of an LMID owned by *member_id*.

        Returns ``False`` when the file was already gone.
        """

        storage = self._require_storage()
        if self._repository is None:
            raise ConfigurationError("Recording deletion needs the LMID repository")
        member_id = validate_member_id(member_id)
        lmid_value = parse_lmid(lmid)
        world = normalize_world(world)
        name = self._matching_name(lmid_value, world, question_id, filename)
        if lmid_value not in self._repository.owned_by(member_id):
            raise NotFoundError(
                f"LMID {lmid_value} is not assigned to this member",
                code="LMID_NOT_OWNED",
                details={"lmid": lmid_value},
            )
        path = join_path(recordings_folder(lmid_value, world), name.filename)
        deleted = storage.delete(path)
        if deleted:
            LOGGER.info("Deleted recording %s for %s", path, member_id)
        else:
            LOGGER.info("Recording %s was already deleted", path)
        return deleted


__all__ = ["RecordingCatalog", "StoredRecording", "group_by_question", "recordings_folder"]

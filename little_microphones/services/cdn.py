"""Client for the CDN-backed object store (Bunny.net storage zones)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import requests

from ..config import DEFAULT_CDN_URL, DEFAULT_HTTP_TIMEOUT, ServiceSettings
from ..context import ContextualLoggerAdapter
from .http import ServiceClient, response_json


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})

STORAGE_API_URL = "https://storage.bunnycdn.com"


@dataclass(frozen=True)
class StoredObject:
    name: str
    length: int = 0
    last_changed: Optional[str] = None
    is_directory: bool = False


def join_path(*parts: Any) -> str:
    return "/".join(str(part).strip("/") for part in parts if str(part).strip("/"))


class CdnStorageClient(ServiceClient):
    """Upload, list and delete objects in one storage zone."""

    service_name = "bunny"

    def __init__(
        self,
        api_key: str,
        storage_zone: str,
        *,
        cdn_url: str = DEFAULT_CDN_URL,
        base_url: str = STORAGE_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        super().__init__(
            f"{base_url.rstrip('/')}/{storage_zone.strip('/')}",
            headers={"AccessKey": api_key},
            session=session,
            timeout=timeout,
        )
        self._cdn_url = cdn_url.rstrip("/")

    @classmethod
    def from_settings(
        cls, settings: ServiceSettings, *, session: Optional[requests.Session] = None
    ) -> Optional["CdnStorageClient"]:
        if not settings.storage_configured:
            return None
        return cls(
            settings.bunny_api_key or "",
            settings.bunny_storage_zone or "",
            cdn_url=settings.cdn_url,
            session=session,
            timeout=settings.http_timeout,
        )

    def public_url(self, path: str) -> str:
        return f"{self._cdn_url}/{path.lstrip('/')}"

    def upload(self, path: str, content: bytes, *, content_type: str) -> str:
        """Store *content* at *path* and return its public CDN URL."""

        LOGGER.info("Uploading %s (%s bytes, %s)", path, len(content), content_type)
        self._request(
            "PUT",
            path,
            data=content,
            headers={"Content-Type": content_type},
        )
        return self.public_url(path)

    def delete(self, path: str) -> bool:
        """Delete *path*; return ``False`` when it was already gone."""

        response = self._request("DELETE", path, allowed=(404,))
        return response.status_code != 404

    def list_directory(self, path: str) -> List[StoredObject]:
        """Return the objects directly under *path*; a missing folder is empty."""

        directory = path if path.endswith("/") else f"{path}/"
        response = self._request(
            "GET", directory, allowed=(404,), headers={"Accept": "application/json"}
        )
        if response.status_code == 404:
            return []
        entries = response_json(response) or []
        objects: List[StoredObject] = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("ObjectName"):
                continue
            objects.append(
                StoredObject(
                    name=str(entry["ObjectName"]),
                    length=int(entry.get("Length") or 0),
                    last_changed=entry.get("LastChanged"),
                    is_directory=bool(entry.get("IsDirectory")),
                )
            )
        return objects

    def fetch_text(self, path: str) -> Optional[str]:
        """Return the stored text at *path*, or ``None`` when it does not exist."""

        response = self._request("GET", path, allowed=(404,))
        if response.status_code == 404:
            return None
        return response.text


__all__ = ["CdnStorageClient", "STORAGE_API_URL", "StoredObject", "join_path"]

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from little_microphones.bootstrap import Bootstrapper
from little_microphones.config import AppConfig, ServiceSettings
from little_microphones.services.storage import LmidRepository


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Stand-in for ``requests.Session`` answering from registered routes."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._routes: Dict[Tuple[str, str], List[Any]] = {}

    def add(self, method: str, url: str, status: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self._routes.setdefault((method.upper(), url), []).append(FakeResponse(status, payload, text))

    def add_error(self, method: str, url: str, error: Exception) -> None:
        self._routes.setdefault((method.upper(), url), []).append(error)

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method.upper(), "url": url, "headers": headers or {}, **kwargs})
        queue = self._routes.get((method.upper(), url))
        if not queue:
            raise AssertionError(f"Unexpected request: {method} {url}")
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method.upper() and call["url"] == url]


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "default.json").write_text(
        json.dumps({"storage_root": "storage", "database_file": "storage/little_microphones.db"}),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/little_microphones.db",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> LmidRepository:
    return LmidRepository(temp_config)


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def settings() -> ServiceSettings:
    return ServiceSettings.from_env(
        {
            "MEMBERSTACK_WEBHOOK_SECRET": "whsec_test",
            "MEMBERSTACK_SECRET_KEY": "sk_test",
            "BREVO_API_KEY": "brevo_test",
            "BUNNY_API_KEY": "bunny_test",
            "BUNNY_STORAGE_ZONE": "little-microphones",
            "BUNNY_CDN_URL": "cdn.example.test",
            "LM_PUBLIC_BASE_URL": "https://www.example.test",
        }
    )

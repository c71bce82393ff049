"""Configuration loading utilities for the Little Microphones service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".little_microphones_write_check"

DEFAULT_CDN_URL = "https://little-microphones.b-cdn.net"
DEFAULT_MAIN_LIST_ID = 2
DEFAULT_PARENT_PLAN_IDS: Tuple[str, ...] = ("pln_parents-y1ea03qk",)
DEFAULT_HTTP_TIMEOUT = 30.0

# (role, language) -> default Brevo template id.
DEFAULT_TEMPLATE_IDS: Dict[Tuple[str, str], int] = {
    ("teacher", "pl"): 1,
    ("teacher", "en"): 2,
    ("parent", "pl"): 3,
    ("parent", "en"): 4,
}


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. When the preferred location is
    unavailable the fallbacks are tried in order and a flag reports that one
    was used. When nothing can be prepared the original ``preferred`` path is
    returned so that bootstrap can report the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AppConfig:
    """Simple container describing runtime paths for the service."""

    storage_root: Path
    database_file: Path

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".little_microphones" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(storage_root=storage_root, database_file=database_file)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the runtime paths from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _read_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _clean(environ.get(key))
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid integer for %s: %r (using %s)", key, raw, default)
        return default


def _read_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _clean(environ.get(key))
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid number for %s: %r (using %s)", key, raw, default)
        return default
    if value <= 0:
        LOGGER.warning("Ignoring non-positive value for %s: %r (using %s)", key, raw, default)
        return default
    return value


def _normalize_cdn_url(value: Optional[str]) -> str:
    if not value:
        return DEFAULT_CDN_URL
    normalized = value.rstrip("/")
    if not normalized.startswith(("http://", "https://")):
        normalized = f"https://{normalized}"
    return normalized


@dataclass(frozen=True)
class ServiceSettings:
    """Credentials and tunables for the third-party integrations.

    Resolved once at startup. Every key has a documented fallback; absent
    credentials leave the corresponding integration unconfigured instead of
    failing the process, and the endpoints depending on them report a
    configuration error (or degrade) at call time.
    """

    webhook_secret: Optional[str] = None
    memberstack_secret_key: Optional[str] = None
    brevo_api_key: Optional[str] = None
    brevo_main_list_id: int = DEFAULT_MAIN_LIST_ID
    template_ids: Dict[Tuple[str, str], int] = field(
        default_factory=lambda: dict(DEFAULT_TEMPLATE_IDS)
    )
    bunny_api_key: Optional[str] = None
    bunny_storage_zone: Optional[str] = None
    cdn_url: str = DEFAULT_CDN_URL
    public_base_url: Optional[str] = None
    parent_plan_ids: Tuple[str, ...] = DEFAULT_PARENT_PLAN_IDS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @property
    def memberstack_configured(self) -> bool:
        return bool(self.memberstack_secret_key)

    @property
    def brevo_configured(self) -> bool:
        return bool(self.brevo_api_key)

    @property
    def storage_configured(self) -> bool:
        return bool(self.bunny_api_key and self.bunny_storage_zone)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceSettings":
        """Build the settings from environment variables."""

        env: Mapping[str, str] = os.environ if environ is None else environ

        template_ids = {
            ("teacher", "pl"): _read_int(
                env, "BREVO_TEACHER_TEMPLATE_PL", DEFAULT_TEMPLATE_IDS[("teacher", "pl")]
            ),
            ("teacher", "en"): _read_int(
                env, "BREVO_TEACHER_TEMPLATE_EN", DEFAULT_TEMPLATE_IDS[("teacher", "en")]
            ),
            ("parent", "pl"): _read_int(
                env, "BREVO_PARENT_TEMPLATE_PL", DEFAULT_TEMPLATE_IDS[("parent", "pl")]
            ),
            ("parent", "en"): _read_int(
                env, "BREVO_PARENT_TEMPLATE_EN", DEFAULT_TEMPLATE_IDS[("parent", "en")]
            ),
        }

        raw_plans = _clean(env.get("LM_PARENT_PLAN_IDS"))
        if raw_plans is None:
            parent_plan_ids = DEFAULT_PARENT_PLAN_IDS
        else:
            parent_plan_ids = tuple(
                plan.strip() for plan in raw_plans.split(",") if plan.strip()
            )

        public_base_url = _clean(env.get("LM_PUBLIC_BASE_URL"))
        if public_base_url is not None:
            public_base_url = public_base_url.rstrip("/")

        settings = cls(
            webhook_secret=_clean(env.get("MEMBERSTACK_WEBHOOK_SECRET")),
            memberstack_secret_key=_clean(env.get("MEMBERSTACK_SECRET_KEY")),
            brevo_api_key=_clean(env.get("BREVO_API_KEY")),
            brevo_main_list_id=_read_int(env, "BREVO_MAIN_LIST_ID", DEFAULT_MAIN_LIST_ID),
            template_ids=template_ids,
            bunny_api_key=_clean(env.get("BUNNY_API_KEY")),
            bunny_storage_zone=_clean(env.get("BUNNY_STORAGE_ZONE")),
            cdn_url=_normalize_cdn_url(_clean(env.get("BUNNY_CDN_URL"))),
            public_base_url=public_base_url,
            parent_plan_ids=parent_plan_ids,
            http_timeout=_read_float(env, "LM_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        )
        LOGGER.debug(
            "Resolved service settings (memberstack=%s, brevo=%s, storage=%s, webhook_secret=%s)",
            settings.memberstack_configured,
            settings.brevo_configured,
            settings.storage_configured,
            bool(settings.webhook_secret),
        )
        return settings


__all__ = [
    "AppConfig",
    "DEFAULT_CDN_URL",
    "DEFAULT_TEMPLATE_IDS",
    "ServiceSettings",
    "load_config",
]

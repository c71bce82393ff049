"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        storage_root = self._config.storage_root
        if not config_module._ensure_writable_directory(storage_root):
            raise BootstrapError(f"Storage directory is not writable: {storage_root}")
        LOGGER.debug("Ensured directory exists: %s", storage_root)

        database_parent = self._config.database_file.parent
        if not config_module._ensure_writable_directory(database_parent):
            raise BootstrapError(f"Database directory is not writable: {database_parent}")

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Could not open database {self._config.database_file}: {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                PRAGMA foreign_keys = ON;
                PRAGMA journal_mode = WAL;
                CREATE TABLE IF NOT EXISTS lmids (
                    lmid INTEGER PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'free'
                        CHECK (status IN ('free', 'used')),
                    assigned_to_member_id TEXT,
                    assigned_to_member_email TEXT,
                    assigned_at TEXT,
                    share_id TEXT NOT NULL UNIQUE,
                    CHECK (status = 'free' OR assigned_to_member_id IS NOT NULL)
                );

                CREATE INDEX IF NOT EXISTS idx_lmids_member
                    ON lmids(assigned_to_member_id, status);

                CREATE TABLE IF NOT EXISTS share_links (
                    share_id TEXT PRIMARY KEY,
                    lmid INTEGER NOT NULL,
                    world TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(lmid, world),
                    FOREIGN KEY(lmid) REFERENCES lmids(lmid) ON DELETE CASCADE
                );
                """
            )
            connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]

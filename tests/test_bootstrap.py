import sqlite3
from pathlib import Path

import pytest

import little_microphones.config as config_module
from little_microphones.bootstrap import BootstrapError, Bootstrapper
from little_microphones.config import AppConfig


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "storage"
    config = AppConfig(storage_root=storage_root, database_file=storage_root / "pool.db")

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "storage" in str(excinfo.value).lower()


def test_bootstrap_creates_schema_idempotently(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()

    connection = sqlite3.connect(temp_config.database_file)
    try:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"lmids", "share_links"} <= tables

        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(
                "INSERT INTO lmids(lmid, status, share_id) VALUES (1, 'used', 'abcdefgh')"
            )
    finally:
        connection.close()

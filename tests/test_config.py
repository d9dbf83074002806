"""Configuration loader tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskboard.backend import config
from taskboard.backend.config import ResilienceSettings


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("TASKBOARD_CONFIG", str(tmp_path / "taskboard.json"))
    config.reload()
    yield
    config.reload()


def _write(tmp_path: Path, values: dict) -> None:
    (tmp_path / "taskboard.json").write_text(json.dumps(values), encoding="utf-8")
    config.reload()


class TestLookupOrder:
    def test_default_when_unset(self):
        assert config.get("max_retry_attempts", 3) == 3

    def test_env_overrides_default(self, monkeypatch):
        monkeypatch.setenv("TASKBOARD_MAX_RETRY_ATTEMPTS", "7")
        assert config.get("max_retry_attempts", 3) == "7"

    def test_file_overrides_env(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("TASKBOARD_STORAGE_BACKEND", "json")
        _write(tmp_path, {"storage_backend": "sqlite"})
        assert config.get("storage_backend") == "sqlite"


class TestResilienceSettings:
    def test_defaults(self):
        s = ResilienceSettings.from_config()
        assert s.max_retry_attempts == 3
        assert s.retry_base_delay == 1.0
        assert s.recovery_max_attempts == 5
        assert s.recovery_settle_delay == 2.0
        assert s.storage_backend == "json"

    def test_env_strings_coerced(self, monkeypatch):
        monkeypatch.setenv("TASKBOARD_RETRY_BASE_DELAY", "0.25")
        monkeypatch.setenv("TASKBOARD_RECOVERY_MAX_ATTEMPTS", "2")
        monkeypatch.setenv("TASKBOARD_STORAGE_BACKEND", "SQLite")
        s = ResilienceSettings.from_config()
        assert s.retry_base_delay == 0.25
        assert s.recovery_max_attempts == 2
        assert s.storage_backend == "sqlite"

    def test_from_file(self, tmp_path: Path):
        _write(tmp_path, {"max_retry_attempts": 5, "sqlite_path": "x.db"})
        s = ResilienceSettings.from_config()
        assert s.max_retry_attempts == 5
        assert s.sqlite_path == "x.db"

"""Configuration loader for the taskboard persistence core.

Reads from taskboard.json in the project root (or the file named by
TASKBOARD_CONFIG). Falls back to environment variables, then to defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from taskboard.shared.enums import (
    DEFAULT_MAX_RECOVERY_ATTEMPTS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_RECOVERY_SETTLE_DELAY,
    DEFAULT_RETRY_BASE_DELAY,
)

_CONFIG: dict | None = None


def _config_path() -> Path:
    override = os.environ.get("TASKBOARD_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent.parent.parent / "taskboard.json"


def _load() -> dict:
    global _CONFIG
    if _CONFIG is not None:
        return _CONFIG

    config_path = _config_path()
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            _CONFIG = json.load(f)
    else:
        _CONFIG = {}
    return _CONFIG


def get(key: str, default=None):
    """Get a config value. Checks taskboard.json first, then env var TASKBOARD_{KEY}, then default."""
    cfg = _load()
    if key in cfg:
        return cfg[key]
    env_key = f"TASKBOARD_{key.upper()}"
    env_val = os.environ.get(env_key)
    if env_val is not None:
        return env_val
    return default


def reload():
    """Force reload config from disk (useful for tests)."""
    global _CONFIG
    _CONFIG = None


@dataclass(frozen=True)
class ResilienceSettings:
    """Typed view over the values the resilience components consume.

    Env vars arrive as strings, so every field is coerced here once.
    """

    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    recovery_max_attempts: int = DEFAULT_MAX_RECOVERY_ATTEMPTS
    recovery_settle_delay: float = DEFAULT_RECOVERY_SETTLE_DELAY
    storage_backend: str = "json"
    data_dir: str = "data"
    sqlite_path: str = "data/taskboard.db"

    @classmethod
    def from_config(cls) -> "ResilienceSettings":
        return cls(
            max_retry_attempts=int(get("max_retry_attempts", DEFAULT_MAX_RETRY_ATTEMPTS)),
            retry_base_delay=float(get("retry_base_delay", DEFAULT_RETRY_BASE_DELAY)),
            recovery_max_attempts=int(get("recovery_max_attempts", DEFAULT_MAX_RECOVERY_ATTEMPTS)),
            recovery_settle_delay=float(get("recovery_settle_delay", DEFAULT_RECOVERY_SETTLE_DELAY)),
            storage_backend=str(get("storage_backend", "json")).lower(),
            data_dir=str(get("data_dir", "data")),
            sqlite_path=str(get("sqlite_path", "data/taskboard.db")),
        )

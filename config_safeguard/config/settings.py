"""Settings storage for safeguard configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "CONFIG_SAFEGUARD_SETTINGS_PATH",
        "/etc/config-safeguard/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BACKUP_ROOT = os.environ.get(
    "CONFIG_SAFEGUARD_BACKUP_DIR", "/var/backups/config-safeguard"
)
DEFAULT_LOG_ROOT = os.environ.get("CONFIG_SAFEGUARD_LOG_DIR", "/var/log/config-safeguard")
DEFAULT_MAX_ROLLBACKS = 10
DEFAULT_JOURNAL_WINDOW_HOURS = 24
DEFAULT_NETWORK_TIMEOUT_SECONDS = 5
DEFAULT_COMMAND_TIMEOUT_SECONDS = 300
DEFAULT_DISK_SPACE_THRESHOLD_PERCENT = 90

DEFAULT_SETTINGS: dict[str, Any] = {
    "backup_root": DEFAULT_BACKUP_ROOT,
    "log_dir": DEFAULT_LOG_ROOT,
    "system_root": "/",
    "max_rollbacks": DEFAULT_MAX_ROLLBACKS,
    "journal_window_hours": DEFAULT_JOURNAL_WINDOW_HOURS,
    "network_timeout_seconds": DEFAULT_NETWORK_TIMEOUT_SECONDS,
    "command_timeout_seconds": DEFAULT_COMMAND_TIMEOUT_SECONDS,
    "disk_space_threshold_percent": DEFAULT_DISK_SPACE_THRESHOLD_PERCENT,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    """Read an integer setting, falling back to ``default`` on junk values."""
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str, default: str | Path | None = None) -> Path:
    value = get_setting(key, default)
    if value is None:
        raise KeyError(f"Setting {key!r} has no value")
    return Path(value)


load_settings()

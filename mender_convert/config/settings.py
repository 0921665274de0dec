"""Settings storage for conversion defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "MENDER_CONVERT_SETTINGS_PATH",
        Path.home() / ".config" / "mender-convert" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DATA_PART_SIZE_MB = 128
DEFAULT_PARTITION_ALIGNMENT_BYTES = 8 * 1024 * 1024
DEFAULT_LOOP_ATTACH_ATTEMPTS = 5
DEFAULT_LOOP_ATTACH_RETRY_DELAY = 1.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "data_part_size_mb": DEFAULT_DATA_PART_SIZE_MB,
    "partition_alignment_bytes": DEFAULT_PARTITION_ALIGNMENT_BYTES,
    "loop_attach_attempts": DEFAULT_LOOP_ATTACH_ATTEMPTS,
    "loop_attach_retry_delay": DEFAULT_LOOP_ATTACH_RETRY_DELAY,
    "work_dir": "work",
    "output_dir": "output",
    "log_dir": None,
    "mender_artifact_tool": "mender-artifact",
    "installer_dir": None,
    "installer_sources_dir": None,
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


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str, default: Path | None = None) -> Path | None:
    value = get_setting(key)
    if value in (None, ""):
        return default
    return Path(value).expanduser()


load_settings()

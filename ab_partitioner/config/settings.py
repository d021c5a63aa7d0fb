"""Settings storage for conversion configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "AB_PARTITIONER_SETTINGS_PATH",
        Path.home() / ".config" / "ab-partitioner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_VARIANT = "tryboot"
DEFAULT_KERNEL_IMAGE = "wlanpi-kernel8.img"
DEFAULT_NODE_WAIT_ATTEMPTS = 10
DEFAULT_NODE_WAIT_INTERVAL = 0.5
# Home grows only when the device exceeds the provisioned image by more than
# a fifth of the current home size.
DEFAULT_EXPANSION_GROWTH_DIVISOR = 5

DEFAULT_SETTINGS: dict[str, Any] = {
    "variant": DEFAULT_VARIANT,
    "kernel_image": DEFAULT_KERNEL_IMAGE,
    "critical_boot_files": [
        "start.elf",
        "fixup.dat",
        DEFAULT_KERNEL_IMAGE,
        "bootcode.bin",
    ],
    "required_boot_files": ["cmdline.txt", DEFAULT_KERNEL_IMAGE],
    "secondary_cmdline": "cmdline_b.txt",
    "write_digest": None,
    "node_wait_attempts": DEFAULT_NODE_WAIT_ATTEMPTS,
    "node_wait_interval": DEFAULT_NODE_WAIT_INTERVAL,
    "expansion_growth_divisor": DEFAULT_EXPANSION_GROWTH_DIVISOR,
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


def set_setting(key: str, value: Any) -> None:
    """Override a setting for the current process only."""
    settings_store.values[key] = value


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_list(key: str, default: list[str] | None = None) -> list[str]:
    value = get_setting(key, default)
    if not isinstance(value, (list, tuple)):
        return list(default or [])
    return [str(item) for item in value]


load_settings()

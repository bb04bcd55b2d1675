"""
User settings, loaded from a JSON file in the platform config directory.
"""

import json
import logging
import os
import platform
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .core import (
    CONSOLE_NAME_PREFIX,
    RESET_DELAY_MS,
    RETRY_INTERVAL_MS,
    SCAN_DURATION_MS,
    SNOOP_BAUDRATE,
    TICK_INTERVAL_MS,
)
from .models import DeviceKind

logger = logging.getLogger(__name__)

APP_NAME = "treadsync"


@dataclass(frozen=True)
class Settings:
    device: DeviceKind = DeviceKind.FTMS
    name_prefix: str = CONSOLE_NAME_PREFIX
    retry_interval_ms: int = RETRY_INTERVAL_MS
    scan_duration_ms: int = SCAN_DURATION_MS
    tick_interval_ms: int = TICK_INTERVAL_MS
    reset_delay_ms: int = RESET_DELAY_MS
    request_port: Optional[str] = None
    response_port: Optional[str] = None
    baudrate: int = SNOOP_BAUDRATE
    log_level: str = "INFO"

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "device" in changes:
            changes["device"] = DeviceKind(changes["device"])
        return replace(self, **changes)


def get_config_file() -> Path:
    """Get the standard config file location."""
    # Check XDG_CONFIG_HOME first (Linux/Unix standard)
    config_dir = os.environ.get("XDG_CONFIG_HOME")
    if config_dir:
        config_path = Path(config_dir) / APP_NAME
    else:
        system = platform.system()
        if system == "Darwin":  # macOS
            config_path = Path.home() / "Library" / "Application Support" / APP_NAME
        elif system == "Windows":
            appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
            config_path = Path(appdata) / APP_NAME
        else:  # Linux/Unix fallback
            config_path = Path.home() / ".config" / APP_NAME
    return config_path / "config.json"


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    """Build Settings from a parsed JSON object, ignoring unknown keys."""
    known = {f.name for f in fields(Settings)}
    for key in sorted(set(data) - known):
        logger.warning(f"Ignoring unknown config key: {key}")
    values = {key: value for key, value in data.items() if key in known}
    try:
        return Settings().with_overrides(**values)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid config value ({e}), using defaults")
        return Settings()


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from path, or from the default config file.

    Args:
        path: Explicit config file; the platform default is used when None

    Returns:
        Settings, with defaults for anything missing or unreadable
    """
    config_file = path or get_config_file()
    if not config_file.exists():
        logger.debug(f"No config file at {config_file}, using defaults")
        return Settings()

    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load config from {config_file}: {e}")
        return Settings()

    if not isinstance(data, dict):
        logger.warning(f"Config in {config_file} is not a JSON object, using defaults")
        return Settings()
    return settings_from_dict(data)

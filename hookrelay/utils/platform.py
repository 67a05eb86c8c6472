"""Per-user config and data directories."""

from __future__ import annotations

import os
import sys
from pathlib import Path

APP_NAME = "hookrelay"


def get_platform() -> str:
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def _user_dir(override_env: str, windows_env: str, windows_default: str, xdg_env: str, xdg_default: str) -> Path:
    override = os.environ.get(override_env)
    if override:
        return Path(override)

    home = Path.home()
    platform = get_platform()
    if platform == "windows":
        base = Path(os.environ.get(windows_env) or home / "AppData" / windows_default)
    elif platform == "macos":
        base = home / "Library" / "Application Support"
    else:
        base = Path(os.environ.get(xdg_env) or home / xdg_default)
    return base / APP_NAME


def get_config_dir() -> Path:
    """Where config.yaml is looked up when no path is given."""
    return _user_dir("HOOKRELAY_CONFIG_DIR", "APPDATA", "Roaming", "XDG_CONFIG_HOME", ".config")


def get_data_dir() -> Path:
    """Default home of the SQLite webhook database."""
    return _user_dir("HOOKRELAY_DATA_DIR", "LOCALAPPDATA", "Local", "XDG_DATA_HOME", ".local/share")

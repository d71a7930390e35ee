"""Where client option files are looked up.

- User: %APPDATA%\\copilot-engine\\ on Windows, $XDG_CONFIG_HOME or
  ~/.config/copilot-engine/ elsewhere
- Project: ./copilot-engine.yaml in the working directory
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
PROJECT_FILENAME = "copilot-engine.yaml"
APP_NAME = "copilot-engine"


def get_user_config_path() -> Path | None:
    """User-level options file (may not exist)."""
    if sys.platform == "win32":
        app_data = os.environ.get("APPDATA")
        if app_data:
            return Path(app_data) / APP_NAME / CONFIG_FILENAME
        return None

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME / CONFIG_FILENAME
    return Path.home() / ".config" / APP_NAME / CONFIG_FILENAME


def get_project_config_path(cwd: str | os.PathLike[str] | None = None) -> Path:
    return Path(cwd or Path.cwd()) / PROJECT_FILENAME


def get_config_paths(cwd: str | os.PathLike[str] | None = None) -> list[Path]:
    """Options files in priority order (lowest to highest)."""
    paths: list[Path] = []
    user_path = get_user_config_path()
    if user_path:
        paths.append(user_path)
    paths.append(get_project_config_path(cwd))
    return paths

"""Platform-aware path resolution for Cursor data directories."""

import os
import sys
from pathlib import Path


def get_cursor_user_path() -> Path:
    """Return Cursor's ``User`` directory for this platform."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Cursor" / "User"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "Cursor" / "User"
    else:  # Linux
        config_home = os.environ.get("XDG_CONFIG_HOME")
        base = Path(config_home) if config_home else Path.home() / ".config"
        return base / "Cursor" / "User"


def get_workspace_storage_path() -> Path:
    """Return the path to Cursor's workspaceStorage directory."""
    env = os.environ.get("CURSOR_HELPER_STORAGE_PATH")
    if env:
        return Path(env)

    return get_cursor_user_path() / "workspaceStorage"


def get_global_storage_path() -> Path:
    """Return the path to Cursor's globalStorage directory."""
    env = os.environ.get("CURSOR_HELPER_STORAGE_PATH")
    if env:
        # A custom workspaceStorage path keeps globalStorage alongside it
        return Path(env).parent / "globalStorage"

    return get_cursor_user_path() / "globalStorage"


def get_global_db_path() -> Path:
    """Return the path to globalStorage/state.vscdb."""
    return get_global_storage_path() / "state.vscdb"


def get_projects_path() -> Path:
    """Return the path to Cursor's per-project agent data (~/.cursor/projects)."""
    env = os.environ.get("CURSOR_HELPER_PROJECTS_PATH")
    if env:
        return Path(env)

    return Path.home() / ".cursor" / "projects"

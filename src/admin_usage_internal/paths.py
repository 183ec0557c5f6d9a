"""Shared path utilities for admin-usage-ingest."""

from __future__ import annotations

import os
from pathlib import Path


def get_default_database_path() -> Path:
    """Return the default DuckDB path following XDG data directory conventions."""
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        base_data_dir = Path(xdg_data_home).expanduser()
    else:
        base_data_dir = Path("~/.local/share").expanduser()
    return base_data_dir / "admin-usage-ingest" / "usage_events.duckdb"


def get_default_credentials_path() -> Path:
    """Return the default credential file path following XDG config conventions."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        base_config_dir = Path(xdg_config_home).expanduser()
    else:
        base_config_dir = Path("~/.config").expanduser()
    return base_config_dir / "admin-usage-ingest" / "credentials.json"

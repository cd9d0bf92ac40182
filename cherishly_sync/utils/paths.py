"""
Path utilities for configuration directory resolution.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".cherishly-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "CHERISHLY_SYNC_CONFIG_DIR"

# Database file name inside the config directory
DEFAULT_DB_FILE = "sync.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter
        2. CHERISHLY_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.cherishly-sync)
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def default_db_path(config_dir: Path) -> Path:
    """Return the default SQLite database path inside a config directory."""
    return config_dir / DEFAULT_DB_FILE

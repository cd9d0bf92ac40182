"""
cherishly_sync.utils - Utility module

Name normalization, path resolution and timestamp helpers.
"""

from cherishly_sync.utils.normalization import first_token, normalize_name
from cherishly_sync.utils.paths import (
    DEFAULT_CONFIG_DIR,
    default_db_path,
    resolve_config_dir,
)
from cherishly_sync.utils.timestamps import (
    format_timestamp,
    now_iso,
    parse_timestamp,
    utcnow,
)

__all__ = [
    "normalize_name",
    "first_token",
    "resolve_config_dir",
    "default_db_path",
    "DEFAULT_CONFIG_DIR",
    "parse_timestamp",
    "format_timestamp",
    "now_iso",
    "utcnow",
]

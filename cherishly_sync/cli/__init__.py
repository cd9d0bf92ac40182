"""CLI package for cherishly_sync."""

from cherishly_sync.cli.formatters import (
    describe_action,
    show_actions,
    show_conflicts,
    show_mapping,
    show_run_result,
)
from cherishly_sync.cli.main import cli, get_config_dir, get_config_file
from cherishly_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "cli",
    "describe_action",
    "get_config_dir",
    "get_config_file",
    "show_actions",
    "show_conflicts",
    "show_mapping",
    "show_run_result",
]

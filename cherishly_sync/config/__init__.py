"""
cherishly_sync.config - Configuration management module

YAML configuration loading, validation and typed settings.
"""

from cherishly_sync.config.loader import ConfigError, ConfigLoader
from cherishly_sync.config.settings import SyncSettings

__all__ = ["ConfigError", "ConfigLoader", "SyncSettings"]

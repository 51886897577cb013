"""
Configuration module for groupware synchronization.

Provides YAML configuration file loading and the immutable session settings
snapshot.
"""

from groupware_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
)
from groupware_sync.config.settings import (
    ExportScope,
    SettingsError,
    SyncSettings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "ExportScope",
    "SettingsError",
    "SyncSettings",
    "load_settings",
]

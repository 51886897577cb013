"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the groupware-sync configuration
directory across all modules.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".groupware-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "GROUPWARE_SYNC_CONFIG_DIR"

# Default metadata database file name inside the config directory
DEFAULT_DATABASE_FILE = "sync.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. GROUPWARE_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.groupware-sync)

    Args:
        config_dir: Optional explicit configuration directory path.

    Returns:
        Resolved Path to the configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_database_path(
    config_dir: Path | str | None = None, database_path: str | None = None
) -> Path:
    """
    Resolve the metadata database path.

    Args:
        config_dir: Configuration directory (see resolve_config_dir)
        database_path: Explicit database path from configuration

    Returns:
        Path to the SQLite database file
    """
    if database_path:
        return Path(database_path).expanduser()
    return resolve_config_dir(config_dir) / DEFAULT_DATABASE_FILE

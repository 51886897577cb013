"""CLI package for groupware_sync."""

from groupware_sync.cli.main import cli, get_config_dir, get_config_file

__all__ = [
    "cli",
    "get_config_dir",
    "get_config_file",
]

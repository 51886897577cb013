"""
Configuration file loading for groupware synchronization.

The configuration is one YAML mapping. Top-level keys describe the session
identity (user, mailbox, time zone) and the local runtime (database, logs);
the ``sync`` section is the session settings snapshot read by
``SyncSettings.from_dict``. A missing file is not an error: every command
falls back to its defaults.
"""

import logging
import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from groupware_sync.config.settings import SettingsError, SyncSettings
from groupware_sync.utils.paths import CONFIG_DIR_ENV_VAR, DEFAULT_CONFIG_DIR

DEFAULT_CONFIG_FILE = "config.yaml"

# top-level key -> accepted type(s)
CONFIG_SCHEMA: dict[str, type[Any] | tuple[type[Any], ...]] = {
    "verbose": bool,
    "debug": bool,
    "user_id": str,
    "mailbox": str,
    "time_zone": str,
    "database_path": str,
    "log_dir": str,
    "log_retention_count": int,
    "sync": dict,
}

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    Reads and checks the YAML configuration of a sync installation.

    The directory is, in order: the ``config_dir`` argument,
    ``$GROUPWARE_SYNC_CONFIG_DIR``, ``~/.groupware-sync``.

    Usage:
        config = ConfigLoader().load_and_validate()
        settings = SyncSettings.from_dict(config.get("sync"))
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        if config_dir is None:
            env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
            config_dir = Path(env_dir) if env_dir else DEFAULT_CONFIG_DIR
        self.config_dir = Path(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Load the configuration file of ``config_dir``."""
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load a configuration file.

        Returns:
            The mapping; empty when the file is missing or blank

        Raises:
            ConfigError: The file cannot be read, parsed or is not a mapping
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No configuration file at {path}, using defaults")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(
                "Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )
        logger.debug(f"Loaded configuration from {path} ({len(config)} keys)")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check key types and the values a sync session depends on.

        Unknown keys are logged and ignored.

        Raises:
            ConfigError: On the first invalid value
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected = CONFIG_SCHEMA.get(key)
            if expected is None:
                logger.warning(f"Unknown configuration key ignored: {key}")
            elif not isinstance(value, expected):
                name = getattr(expected, "__name__", str(expected))
                raise ConfigError(
                    f"Invalid type for '{key}': expected {name}, "
                    f"got {type(value).__name__}"
                )

        if config.get("log_retention_count", 0) < 0:
            raise ConfigError(
                f"log_retention_count must be >= 0, got {config['log_retention_count']}"
            )
        if "mailbox" in config and "@" not in config["mailbox"]:
            raise ConfigError(f"mailbox must be an e-mail address, got {config['mailbox']}")
        if "time_zone" in config:
            _check_time_zone(config["time_zone"])
        if "sync" in config:
            try:
                SyncSettings.from_dict(config["sync"])
            except SettingsError as e:
                raise ConfigError(f"Invalid sync section: {e}") from e

    def load_and_validate(self) -> dict[str, Any]:
        """Load and validate; raises ConfigError."""
        config = self.load()
        if config:
            self.validate(config)
        return config


def _check_time_zone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown time_zone '{name}'") from e

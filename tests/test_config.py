"""
Tests for the config module.

Tests configuration loading and validation, and the session settings
snapshot built from the ``sync`` section, including YAML parsing and error
handling.
"""

import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from groupware_sync.config.loader import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
)
from groupware_sync.config.settings import (
    DEFAULT_PAGE_SIZE,
    ExportScope,
    SettingsError,
    SyncSettings,
    load_settings,
)

# ==============================================================================
# ConfigLoader
# ==============================================================================


class TestConfigLoaderInitialization:
    """Tests for ConfigLoader initialization."""

    def test_default_config_dir(self):
        """Test that default config dir is used when no argument provided."""
        with patch.dict(os.environ, {}, clear=True):
            loader = ConfigLoader()
            assert loader.config_dir == DEFAULT_CONFIG_DIR

    def test_custom_config_dir_via_argument(self, tmp_path):
        """Test that custom config dir can be passed as argument."""
        custom_dir = tmp_path / "custom_config"
        loader = ConfigLoader(config_dir=custom_dir)
        assert loader.config_dir == custom_dir

    def test_config_dir_from_environment_variable(self, tmp_path):
        """Test that config dir can be set via environment variable."""
        env_dir = str(tmp_path / "env_config")
        with patch.dict(os.environ, {"GROUPWARE_SYNC_CONFIG_DIR": env_dir}):
            loader = ConfigLoader()
            assert loader.config_dir == Path(env_dir)

    def test_argument_takes_precedence_over_environment(self, tmp_path):
        """Test that explicit argument takes precedence over env variable."""
        arg_dir = tmp_path / "arg_config"
        env_dir = str(tmp_path / "env_config")
        with patch.dict(os.environ, {"GROUPWARE_SYNC_CONFIG_DIR": env_dir}):
            loader = ConfigLoader(config_dir=arg_dir)
            assert loader.config_dir == arg_dir

    def test_default_config_file_name(self):
        """Test that default config file name is set correctly."""
        loader = ConfigLoader()
        assert loader.config_file == DEFAULT_CONFIG_FILE


class TestConfigLoading:
    """Tests for loading configuration files."""

    @pytest.fixture
    def loader(self, tmp_path):
        """Create a ConfigLoader instance with temp config dir."""
        return ConfigLoader(config_dir=tmp_path)

    def test_missing_file_returns_empty_dict(self, loader):
        """Test that a missing config file yields an empty dict."""
        assert loader.load() == {}

    def test_empty_file_returns_empty_dict(self, loader, tmp_path):
        """Test that an empty config file yields an empty dict."""
        (tmp_path / DEFAULT_CONFIG_FILE).write_text("")
        assert loader.load() == {}

    def test_load_valid_file(self, loader, tmp_path):
        """Test loading a valid configuration file."""
        config = {"mailbox": "me@example.com", "sync": {"sync_deletes": True}}
        (tmp_path / DEFAULT_CONFIG_FILE).write_text(yaml.dump(config))

        assert loader.load() == config

    def test_invalid_yaml_raises(self, loader, tmp_path):
        """Test that malformed YAML raises ConfigError."""
        (tmp_path / DEFAULT_CONFIG_FILE).write_text("mailbox: [unclosed")
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            loader.load()

    def test_non_dict_raises(self, loader, tmp_path):
        """Test that a YAML list is rejected."""
        (tmp_path / DEFAULT_CONFIG_FILE).write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must contain a YAML dictionary"):
            loader.load()

    def test_load_from_specific_file(self, loader, tmp_path):
        """Test loading from an explicit path."""
        path = tmp_path / "other.yaml"
        path.write_text("debug: true\n")
        assert loader.load_from_file(str(path)) == {"debug": True}


class TestConfigValidation:
    """Tests for configuration validation."""

    @pytest.fixture
    def loader(self, tmp_path):
        """Create a ConfigLoader instance with temp config dir."""
        return ConfigLoader(config_dir=tmp_path)

    def test_valid_config(self, loader):
        """Test that a complete configuration passes."""
        loader.validate(
            {
                "verbose": True,
                "debug": False,
                "user_id": "user-1",
                "mailbox": "me@example.com",
                "time_zone": "Europe/Kyiv",
                "database_path": "/tmp/sync.db",
                "log_dir": "/tmp/logs",
                "log_retention_count": 5,
                "sync": {},
            }
        )

    def test_wrong_type(self, loader):
        """Test that a value of the wrong type is rejected."""
        with pytest.raises(ConfigError, match="Invalid type for 'verbose'"):
            loader.validate({"verbose": "yes"})

    def test_negative_retention(self, loader):
        """Test that a negative log retention is rejected."""
        with pytest.raises(ConfigError, match="log_retention_count must be >= 0"):
            loader.validate({"log_retention_count": -1})

    def test_mailbox_must_be_address(self, loader):
        """Test that the mailbox must look like an e-mail address."""
        with pytest.raises(ConfigError, match="mailbox must be an e-mail address"):
            loader.validate({"mailbox": "me"})

    def test_unknown_time_zone(self, loader):
        """Test that the time zone must be a known IANA zone."""
        with pytest.raises(ConfigError, match="Unknown time_zone 'Mars/Olympus'"):
            loader.validate({"time_zone": "Mars/Olympus"})

    def test_invalid_sync_section(self, loader):
        """Test that the sync section is checked as session settings."""
        with pytest.raises(ConfigError, match="Invalid sync section: page_size must be >= 1"):
            loader.validate({"sync": {"page_size": 0}})

    def test_unknown_keys_are_ignored(self, loader):
        """Test that unknown keys only warn."""
        loader.validate({"something_else": 1})

    def test_not_a_dict(self, loader):
        """Test that non-dict configurations are rejected."""
        with pytest.raises(ConfigError, match="must be a dictionary"):
            loader.validate(["a"])

    def test_load_and_validate(self, loader, tmp_path):
        """Test that load_and_validate rejects invalid files."""
        (tmp_path / DEFAULT_CONFIG_FILE).write_text("debug: maybe\n")
        with pytest.raises(ConfigError):
            loader.load_and_validate()


# ==============================================================================
# SyncSettings
# ==============================================================================


class TestExportScope:
    """Tests for ExportScope parsing."""

    def test_parse_combines_flags(self):
        """Test that several names combine into one flag."""
        scope = ExportScope.parse(["from_scheduler", "APPOINTMENTS"])
        assert ExportScope.FROM_SCHEDULER in scope
        assert ExportScope.APPOINTMENTS in scope
        assert ExportScope.ALL not in scope

    def test_parse_empty(self):
        """Test that no names mean no export."""
        assert ExportScope.parse([]) == ExportScope.NONE

    def test_parse_unknown(self):
        """Test that unknown names are rejected."""
        with pytest.raises(SettingsError, match="Invalid export_scope 'everything'"):
            ExportScope.parse(["everything"])

    def test_names(self):
        """Test listing the names of a combined flag."""
        scope = ExportScope.FROM_GROUPS | ExportScope.ALL
        assert scope.names() == ["all", "from_groups"]


class TestSyncSettingsDefaults:
    """Tests for the default settings snapshot."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = SyncSettings()

        assert settings.page_size == DEFAULT_PAGE_SIZE == 41
        assert settings.message_page_size == 123
        assert settings.sync_deletes is False
        assert settings.delete_sync_days == 7
        assert settings.export_scope == ExportScope.ALL
        assert settings.export_disabled is False

    def test_settings_are_immutable(self):
        """Test that the snapshot cannot be changed."""
        settings = SyncSettings()
        with pytest.raises(AttributeError):
            settings.page_size = 10

    def test_export_disabled(self):
        """Test the export switch and the empty scope."""
        assert SyncSettings(export_enabled=False).export_disabled
        assert SyncSettings(export_scope=ExportScope.NONE).export_disabled

    def test_import_from_period(self):
        """Test that the window falls back to one period before now."""
        now = datetime(2024, 6, 15, tzinfo=timezone.utc)
        assert SyncSettings(sync_window_period=10).import_from(now) == now - timedelta(days=10)

    def test_import_from_explicit_start(self):
        """Test that an explicit window start wins."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        settings = SyncSettings(sync_window_start=start)
        assert settings.import_from(datetime(2024, 6, 15, tzinfo=timezone.utc)) == start


class TestSyncSettingsFromDict:
    """Tests for SyncSettings.from_dict."""

    def test_none_gives_defaults(self):
        """Test that a missing section gives the defaults."""
        assert SyncSettings.from_dict(None) == SyncSettings()

    def test_full_section(self):
        """Test reading every supported key."""
        settings = SyncSettings.from_dict(
            {
                "import_all_folders": True,
                "selected_folder_ids": ["f1"],
                "export_scope": ["from_scheduler"],
                "export_folder_ids": ["f2"],
                "sync_window_start": "2024-01-01",
                "sync_deletes": True,
                "page_size": 10,
                "private_meetings": True,
            }
        )

        assert settings.import_all_folders is True
        assert settings.selected_folder_ids == ("f1",)
        assert settings.export_scope == ExportScope.FROM_SCHEDULER
        assert settings.export_folder_ids == ("f2",)
        assert settings.sync_window_start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert settings.sync_deletes is True
        assert settings.page_size == 10
        assert settings.private_meetings is True

    def test_scope_as_string(self):
        """Test that a single scope name is accepted."""
        settings = SyncSettings.from_dict({"export_scope": "appointments"})
        assert settings.export_scope == ExportScope.APPOINTMENTS

    def test_window_start_from_yaml_date(self):
        """Test that dates parsed by YAML are accepted."""
        settings = SyncSettings.from_dict({"sync_window_start": date(2024, 3, 1)})
        assert settings.sync_window_start == datetime(2024, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ({"sync_deletes": "yes"}, "sync_deletes must be a boolean"),
            ({"page_size": True}, "page_size must be an integer"),
            ({"page_size": 0}, "page_size must be >= 1"),
            ({"delete_sync_days": -1}, "delete_sync_days must be >= 0"),
            ({"selected_folder_ids": "f1"}, "selected_folder_ids must be a list"),
            ({"export_folder_ids": [""]}, "entries must be non-empty strings"),
            ({"export_scope": 3}, "export_scope must be a list"),
            ({"sync_window_start": "soon"}, "Invalid sync_window_start"),
            ({"sync_window_start": 5}, "sync_window_start must be a date"),
        ],
    )
    def test_invalid_values(self, data, message):
        """Test that invalid values raise SettingsError."""
        with pytest.raises(SettingsError, match=message):
            SyncSettings.from_dict(data)

    def test_not_a_dict(self):
        """Test that a non-mapping section is rejected."""
        with pytest.raises(SettingsError, match="must be a dictionary"):
            SyncSettings.from_dict(["page_size"])

    def test_to_dict_round_trip(self):
        """Test that to_dict output is accepted by from_dict."""
        settings = SyncSettings(
            export_scope=ExportScope.FROM_GROUPS | ExportScope.APPOINTMENTS,
            selected_folder_ids=("f1",),
            sync_window_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        assert SyncSettings.from_dict(settings.to_dict()) == settings


class TestLoadSettings:
    """Tests for load_settings."""

    def test_missing_file(self, tmp_path):
        """Test that a missing file gives the defaults."""
        assert load_settings(tmp_path / "missing.yaml") == SyncSettings()

    def test_sync_section(self, tmp_path):
        """Test reading the sync section of a full config file."""
        path = tmp_path / "config.yaml"
        path.write_text("mailbox: me@example.com\nsync:\n  page_size: 5\n")
        assert load_settings(path).page_size == 5

    def test_bare_document(self, tmp_path):
        """Test reading a file holding only settings."""
        path = tmp_path / "settings.yaml"
        path.write_text("sync_deletes: true\n")
        assert load_settings(path).sync_deletes is True

    def test_invalid_yaml(self, tmp_path):
        """Test that malformed YAML raises SettingsError."""
        path = tmp_path / "settings.yaml"
        path.write_text("page_size: [1\n")
        with pytest.raises(SettingsError, match="Failed to parse settings file"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path):
        """Test that a YAML scalar is rejected."""
        path = tmp_path / "settings.yaml"
        path.write_text("42\n")
        with pytest.raises(SettingsError, match="YAML dictionary"):
            load_settings(path)

"""
Session settings snapshot.

All feature flags and scope options of a sync session are resolved once,
at session start, into an immutable ``SyncSettings`` value that is threaded
through every component.

Configuration file format (``sync`` section of config.yaml):

    sync:
      import_enabled: true
      import_all_folders: false
      selected_folder_ids: ["AAMkAD-calendar"]
      export_enabled: true
      export_scope: [from_scheduler, appointments]
      export_folder_ids: []
      sync_window_start: "2024-01-01"
      sync_window_period: 30
      sync_deletes: true
      delete_sync_days: 7
      recurring_support: true
      resolve_by_content_hash: true
      check_duplicates_by_content: true
      private_meetings: false
      search_by_local_id: true
      page_size: 41
      message_page_size: 123
      last_sync_minutes_offset: 0
      max_session_errors: 3
      actualize_metadata: true
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Defaults
DEFAULT_PAGE_SIZE = 41
DEFAULT_MESSAGE_PAGE_SIZE = 123
DEFAULT_DELETE_SYNC_DAYS = 7
DEFAULT_SYNC_WINDOW_PERIOD = 30
DEFAULT_MAX_SESSION_ERRORS = 3


class SettingsError(Exception):
    """Raised when the session settings are invalid."""

    pass


class ExportScope(enum.Flag):
    """Which local records are exported to the remote store."""

    NONE = 0
    ALL = enum.auto()
    FROM_GROUPS = enum.auto()
    FROM_SCHEDULER = enum.auto()
    APPOINTMENTS = enum.auto()

    @classmethod
    def parse(cls, values: list[str]) -> ExportScope:
        """
        Combine scope names (``all``, ``from_groups``, ...) into one flag.

        Raises:
            SettingsError: If a name is unknown
        """
        scope = cls.NONE
        for value in values:
            if not isinstance(value, str):
                raise SettingsError(
                    f"export_scope entries must be strings, got {type(value).__name__}"
                )
            try:
                scope |= cls[value.upper()]
            except KeyError:
                valid = ", ".join(m.name.lower() for m in cls if m.name != "NONE")
                raise SettingsError(
                    f"Invalid export_scope '{value}'. Must be one of: {valid}"
                ) from None
        return scope

    def names(self) -> list[str]:
        return [m.name.lower() for m in ExportScope if m.name != "NONE" and m in self]


_BOOL_KEYS = (
    "import_enabled",
    "import_all_folders",
    "export_enabled",
    "sync_deletes",
    "recurring_support",
    "resolve_by_content_hash",
    "check_duplicates_by_content",
    "private_meetings",
    "search_by_local_id",
    "actualize_metadata",
)

_INT_KEYS = {
    "sync_window_period": 1,
    "delete_sync_days": 0,
    "page_size": 1,
    "message_page_size": 1,
    "last_sync_minutes_offset": 0,
    "max_session_errors": 1,
}


@dataclass(frozen=True)
class SyncSettings:
    """
    Immutable per-session configuration.

    Attributes:
        import_enabled: Whether remote changes are imported
        import_all_folders: Walk every folder of the matching class instead
            of the selected folders only
        selected_folder_ids: Remote folders to import from
        export_enabled: Whether local changes are exported
        export_scope: Which local records are exported
        export_folder_ids: Remote folders receiving exported records
            (the first one is used for creates)
        sync_window_start: Import window start (None: no lower bound)
        sync_window_period: Days after "now" covered by the recurring window
        sync_deletes: Propagate deletions to the remote store
        delete_sync_days: Look-back, in days, for deletion detection
        recurring_support: Expand recurring series into instances
        resolve_by_content_hash: Enable hash based conflict suppression
        check_duplicates_by_content: Suppress creates duplicating existing
            local records by content
        private_meetings: Mask private meetings with a placeholder title
        search_by_local_id: Include items without a local link in searches
        page_size: Page size of remote item searches
        message_page_size: Page size of mail searches
        last_sync_minutes_offset: Minutes subtracted from the mail watermark
        max_session_errors: Consecutive session errors before suspension
        actualize_metadata: Update metadata on local changes between sessions
    """

    import_enabled: bool = True
    import_all_folders: bool = False
    selected_folder_ids: tuple[str, ...] = field(default_factory=tuple)
    export_enabled: bool = True
    export_scope: ExportScope = ExportScope.ALL
    export_folder_ids: tuple[str, ...] = field(default_factory=tuple)
    sync_window_start: Optional[datetime] = None
    sync_window_period: int = DEFAULT_SYNC_WINDOW_PERIOD
    sync_deletes: bool = False
    delete_sync_days: int = DEFAULT_DELETE_SYNC_DAYS
    recurring_support: bool = True
    resolve_by_content_hash: bool = True
    check_duplicates_by_content: bool = True
    private_meetings: bool = False
    search_by_local_id: bool = True
    page_size: int = DEFAULT_PAGE_SIZE
    message_page_size: int = DEFAULT_MESSAGE_PAGE_SIZE
    last_sync_minutes_offset: int = 0
    max_session_errors: int = DEFAULT_MAX_SESSION_ERRORS
    actualize_metadata: bool = True

    @property
    def export_disabled(self) -> bool:
        """True when no local record may be exported."""
        return not self.export_enabled or self.export_scope == ExportScope.NONE

    def import_from(self, now: datetime) -> datetime:
        """
        Lower bound of the import window.

        Falls back to one sync window period before ``now`` when no explicit
        start is configured.
        """
        if self.sync_window_start is not None:
            return self.sync_window_start
        return now - timedelta(days=self.sync_window_period)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> SyncSettings:
        """
        Create SyncSettings from a dictionary.

        Args:
            data: ``sync`` section of the configuration, or None for defaults

        Returns:
            SyncSettings instance

        Raises:
            SettingsError: If a key has the wrong type or an invalid value
        """
        if data is None:
            return cls()

        if not isinstance(data, dict):
            raise SettingsError(
                f"sync settings must be a dictionary, got {type(data).__name__}"
            )

        known = set(_BOOL_KEYS) | set(_INT_KEYS) | {
            "selected_folder_ids",
            "export_folder_ids",
            "export_scope",
            "sync_window_start",
        }
        for key in data:
            if key not in known:
                logger.warning(f"Unknown sync setting ignored: {key}")

        values: dict[str, Any] = {}

        for key in _BOOL_KEYS:
            if key in data:
                value = data[key]
                if not isinstance(value, bool):
                    raise SettingsError(
                        f"{key} must be a boolean, got {type(value).__name__}"
                    )
                values[key] = value

        for key, minimum in _INT_KEYS.items():
            if key in data:
                value = data[key]
                if isinstance(value, bool) or not isinstance(value, int):
                    raise SettingsError(
                        f"{key} must be an integer, got {type(value).__name__}"
                    )
                if value < minimum:
                    raise SettingsError(f"{key} must be >= {minimum}, got {value}")
                values[key] = value

        for key in ("selected_folder_ids", "export_folder_ids"):
            if key in data:
                ids = data[key]
                if not isinstance(ids, list):
                    raise SettingsError(
                        f"{key} must be a list, got {type(ids).__name__}"
                    )
                for folder_id in ids:
                    if not isinstance(folder_id, str) or not folder_id.strip():
                        raise SettingsError(f"{key} entries must be non-empty strings")
                values[key] = tuple(ids)

        if "export_scope" in data:
            scope = data["export_scope"]
            if isinstance(scope, str):
                scope = [scope]
            if not isinstance(scope, list):
                raise SettingsError(
                    f"export_scope must be a list, got {type(scope).__name__}"
                )
            values["export_scope"] = ExportScope.parse(scope)

        if data.get("sync_window_start") is not None:
            values["sync_window_start"] = _parse_window_start(data["sync_window_start"])

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary format.

        Returns:
            Dictionary accepted by ``from_dict``
        """
        result: dict[str, Any] = {key: getattr(self, key) for key in _BOOL_KEYS}
        result.update({key: getattr(self, key) for key in _INT_KEYS})
        result["selected_folder_ids"] = list(self.selected_folder_ids)
        result["export_folder_ids"] = list(self.export_folder_ids)
        result["export_scope"] = self.export_scope.names()
        result["sync_window_start"] = (
            self.sync_window_start.isoformat() if self.sync_window_start else None
        )
        return result


def _parse_window_start(value: Any) -> datetime:
    # yaml.safe_load already turns unquoted ISO values into date/datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise SettingsError(f"Invalid sync_window_start: {value}") from e
    else:
        raise SettingsError(
            f"sync_window_start must be a date, got {type(value).__name__}"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_settings(path: Path | str) -> SyncSettings:
    """
    Load the settings snapshot from a YAML file.

    The settings are read from the ``sync`` section when present, otherwise
    the whole document is taken as the settings mapping. A missing file
    yields the defaults.

    Args:
        path: Path to the YAML file

    Returns:
        SyncSettings instance

    Raises:
        SettingsError: If the file cannot be parsed or holds invalid settings
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"Settings file not found, using defaults: {path}")
        return SyncSettings()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(f"Failed to parse settings file: {e}") from e
    except OSError as e:
        raise SettingsError(f"Failed to read settings file: {e}") from e

    if data is None:
        return SyncSettings()
    if not isinstance(data, dict):
        raise SettingsError(
            f"Settings file must contain a YAML dictionary, got {type(data).__name__}"
        )
    section = data.get("sync", data)
    return SyncSettings.from_dict(section)

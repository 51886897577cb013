"""
Core synchronization data model.

Defines the states and actions of synchronized records, the ``SyncEntity``
wrapper around a local record, the ``LocalItem`` aggregate and the
``RemoteItem`` base shared by the appointment, contact and message variants.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from groupware_sync.storage.local import Entity
from groupware_sync.storage.metadata import ExtraParameters

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession


class SyncState(str, Enum):
    """What is already true about a record."""

    NEW = "new"
    MODIFIED = "modified"
    DELETED = "deleted"
    NONE = "none"


class SyncAction(str, Enum):
    """Which write a record still needs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NONE = "none"
    REPEAT = "repeat"
    CREATE_RECURRING_MASTER = "create_recurring_master"


class SyncDirection(str, Enum):
    """Direction of a logged sync operation."""

    UPLOAD = "upload"  # remote -> local
    DOWNLOAD = "download"  # local -> remote


class ConflictResolution(str, Enum):
    """Which side receives the changes of a candidate."""

    APPLY_TO_LOCAL = "apply_to_local"
    APPLY_TO_REMOTE = "apply_to_remote"


@dataclass
class SyncEntity:
    """
    One local record taking part in a sync pass.

    Attributes:
        entity: The wrapped local record
        state: What is already true about the record
        action: Which write the record still needs
        extra: Typed extension payload persisted with its metadata row
        version: Version of the metadata row the record was loaded from
    """

    entity: Entity
    state: SyncState = SyncState.NONE
    action: SyncAction = SyncAction.NONE
    extra: ExtraParameters = field(default_factory=ExtraParameters)
    version: Optional[datetime] = None

    @property
    def entity_id(self) -> Optional[str]:
        return self.entity.id

    @property
    def schema_name(self) -> str:
        return self.entity.schema_name


@dataclass
class LocalItem:
    """
    Aggregate of related local records synchronized as one unit.

    Usage:
        local_item = LocalItem("ExchangeAppointment")
        local_item.add_or_replace("Activity", SyncEntity(activity, SyncState.NEW))
        activity = local_item.first("Activity")
    """

    schema_name: str
    entities: dict[str, list[SyncEntity]] = field(default_factory=dict)

    def entities_of(self, schema_name: str) -> list[SyncEntity]:
        return self.entities.setdefault(schema_name, [])

    def first(self, schema_name: str) -> Optional[SyncEntity]:
        items = self.entities.get(schema_name) or []
        return items[0] if items else None

    def add_or_replace(self, schema_name: str, sync_entity: SyncEntity) -> SyncEntity:
        """Add ``sync_entity``, replacing a wrapper of the same record."""
        items = self.entities_of(schema_name)
        for index, existing in enumerate(items):
            if existing.entity_id == sync_entity.entity_id:
                items[index] = sync_entity
                return sync_entity
        items.append(sync_entity)
        return sync_entity

    def all_entities(self) -> Iterator[SyncEntity]:
        for items in self.entities.values():
            yield from items

    def set_action(self, action: SyncAction) -> None:
        """Set ``action`` on every record of the aggregate."""
        for sync_entity in self.all_entities():
            sync_entity.action = action

    @property
    def is_empty(self) -> bool:
        return not any(self.entities.values())


class RemoteItem:
    """
    Base of the remote-side variants (appointment, contact, message).

    Attributes:
        schema_name: Sync schema name of the variant
        root_schema: Local schema of the aggregate header record
        item: Wrapped remote object (None for tombstones)
        remote_id: Remote identity stored in metadata
        version: Remote last-modified time in the session time zone
        action: Write needed on the remote side
        state: What is already true about the remote item
    """

    schema_name = ""
    root_schema = ""

    def __init__(
        self,
        item: Any,
        remote_id: str,
        version: Optional[datetime] = None,
        action: SyncAction = SyncAction.NONE,
        state: SyncState = SyncState.NONE,
    ):
        self.item = item
        self.remote_id = remote_id
        self.version = version
        self.action = action
        self.state = state
        self.send_notifications = False

    @classmethod
    def from_remote(cls, session: SyncSession, item: Any) -> RemoteItem:
        """Wrap an item read from the remote store."""
        raise NotImplementedError

    @classmethod
    def new(cls, session: SyncSession) -> RemoteItem:
        """Return a blank item for the create flow."""
        raise NotImplementedError

    def refresh(self, session: SyncSession, item: Any) -> None:
        """Adopt the state returned by the remote store after a write."""
        raise NotImplementedError

    @classmethod
    def tombstone(cls, remote_id: str) -> RemoteItem:
        """Return a placeholder for a remote item that no longer exists."""
        return cls(
            None, remote_id, action=SyncAction.DELETE, state=SyncState.DELETED
        )

    @property
    def display_name(self) -> str:
        subject = getattr(self.item, "subject", None) if self.item else None
        return subject or self.remote_id

    def mark_deleted(self) -> None:
        self.action = SyncAction.DELETE
        self.state = SyncState.DELETED

    def fill_local_item(self, session: SyncSession, local_item: LocalItem) -> None:
        """Map the remote item onto the local aggregate."""
        raise NotImplementedError

    def fill_remote_item(self, session: SyncSession, local_item: LocalItem) -> None:
        """Map the local aggregate onto the remote item."""
        raise NotImplementedError

    def content_hash(self, session: SyncSession) -> Optional[str]:
        """Hash of the remote content, when the variant supports hashing."""
        return None

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return (
            f"{type(self).__name__}(remote_id={self.remote_id!r}, "
            f"action={self.action.value}, state={self.state.value})"
        )

"""
Slot-based detail reconciliation.

The remote model exposes small fixed sets of keyed slots (EmailAddress1..3,
Home/Business address, BusinessPhone/HomePhone/...) where the local store
keeps an unbounded child table. Each local child synchronized with a slot
carries the slot key in its ``ExtraParameters.slot`` marker.

Local <- Remote:
    a non-empty remote slot updates the marked child, or creates a new
    child carrying the marker; a marked child whose slot is now empty is
    deleted.

Remote <- Local:
    marked children push their value into their slot (a deleted marked
    child clears it); unmarked children are assigned, in creation order, to
    the first unclaimed slot of a matching type and receive the marker.

Both directions are idempotent: a round trip without edits reproduces the
same slot assignment.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from groupware_sync.storage.local import Entity
from groupware_sync.storage.metadata import ExtraParameters
from groupware_sync.sync.models import LocalItem, SyncAction, SyncEntity, SyncState

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)


class DetailSynchronizer(ABC):
    """
    Two-way reconciler between remote slots and a local child table.

    Subclasses declare the child schema, its parent and type columns, the
    ordered slot map ``{slot_key: local_type_id}`` and how values are read
    and written on both sides.

    Attributes:
        session: Current sync session
        local_item: Aggregate the children belong to
        parent_id: Identity of the parent record
    """

    schema_name = ""
    parent_column = ""
    type_column = ""
    slots: dict[str, str] = {}

    def __init__(self, session: SyncSession, local_item: LocalItem, parent_id: str):
        self.session = session
        self.local_item = local_item
        self.parent_id = parent_id

    @abstractmethod
    def remote_value(self, remote: Any, slot: str) -> Any:
        """Read a remote slot."""

    @abstractmethod
    def set_remote_value(self, remote: Any, slot: str, value: Any) -> None:
        """Write a remote slot; ``None`` clears it."""

    @abstractmethod
    def local_value(self, entity: Entity) -> Any:
        """Read the value of a local child."""

    @abstractmethod
    def set_local_value(self, entity: Entity, value: Any) -> None:
        """Write the value of a local child."""

    def is_empty(self, value: Any) -> bool:
        if isinstance(value, str):
            return not value.strip()
        return not value

    def _marked(self) -> dict[str, SyncEntity]:
        marked: dict[str, SyncEntity] = {}
        for sync_entity in self.local_item.entities_of(self.schema_name):
            slot = sync_entity.extra.slot
            if slot in self.slots and slot not in marked:
                marked[slot] = sync_entity
        return marked

    def sync_local_details(self, remote: Any) -> None:
        """Apply the remote slots to the local children (Local <- Remote)."""
        marked = self._marked()
        for slot, type_id in self.slots.items():
            value = self.remote_value(remote, slot)
            sync_entity = marked.get(slot)

            if self.is_empty(value):
                if sync_entity is not None and sync_entity.state != SyncState.DELETED:
                    sync_entity.action = SyncAction.DELETE
                    sync_entity.state = SyncState.DELETED
                    logger.debug(f"{self.schema_name} slot {slot} cleared remotely")
                continue

            if sync_entity is None or sync_entity.state == SyncState.DELETED:
                entity = self.session.local_store.create(self.schema_name)
                entity.set(self.parent_column, self.parent_id)
                entity.set(self.type_column, type_id)
                self.set_local_value(entity, value)
                self.local_item.add_or_replace(
                    self.schema_name,
                    SyncEntity(
                        entity,
                        SyncState.NEW,
                        SyncAction.CREATE,
                        ExtraParameters(slot=slot),
                    ),
                )
                logger.debug(f"{self.schema_name} slot {slot} created locally")
            elif self.local_value(sync_entity.entity) != value:
                self.set_local_value(sync_entity.entity, value)
                sync_entity.action = SyncAction.UPDATE
                sync_entity.state = SyncState.MODIFIED

    def sync_remote_details(self, remote: Any) -> None:
        """Apply the local children to the remote slots (Remote <- Local)."""
        children = self.session.local_store.query(
            self.schema_name, **{self.parent_column: self.parent_id}
        )
        children.sort(key=_creation_order)
        current = {child.id: child for child in children}

        claimed: set[str] = set()
        marked_ids: set[Optional[str]] = set()
        for slot, sync_entity in self._marked().items():
            marked_ids.add(sync_entity.entity_id)
            child = current.get(sync_entity.entity_id)
            if child is None or sync_entity.state == SyncState.DELETED:
                self.set_remote_value(remote, slot, None)
                sync_entity.state = SyncState.DELETED
                logger.debug(f"{self.schema_name} slot {slot} cleared locally")
                continue
            sync_entity.entity = child
            self.set_remote_value(remote, slot, self.local_value(child))
            claimed.add(slot)

        for child in children:
            if child.id in marked_ids or self.is_empty(self.local_value(child)):
                continue
            type_id = child.get(self.type_column)
            for slot, slot_type in self.slots.items():
                if slot in claimed or slot_type != type_id:
                    continue
                self.set_remote_value(remote, slot, self.local_value(child))
                claimed.add(slot)
                self.local_item.add_or_replace(
                    self.schema_name,
                    SyncEntity(
                        child, SyncState.NEW, SyncAction.NONE, ExtraParameters(slot=slot)
                    ),
                )
                logger.debug(f"{self.schema_name} {child.id} assigned to slot {slot}")
                break


def _creation_order(entity: Entity) -> tuple:
    created = entity.created_on
    return (created is None, created or datetime.min, entity.id or "")

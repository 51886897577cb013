"""
Metadata actualizer.

Keeps metadata rows current when linked local records change outside a
sync session (edits in the CRM user interface, imports, scripts). The next
sync session then finds the changed aggregates through
``SyncDatabase.get_locally_modified`` and pushes them.

Root records update their own row. Detail records (participants,
communications, addresses) update or insert their own row and touch the row
of their parent, so a changed child marks the whole aggregate as modified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from groupware_sync.storage.db import LOCAL_STORE_ID, MetadataRecord, SyncDatabase
from groupware_sync.storage.local import Entity
from groupware_sync.sync.appointment import ACTIVITY_SCHEMA, APPOINTMENT_STORE_ID
from groupware_sync.sync.contact import CONTACT_STORE_ID
from groupware_sync.sync.models import SyncAction, SyncState

logger = logging.getLogger(__name__)


class MetadataActualizer:
    """
    Applies local entity change events to the metadata rows of one store.

    Attributes:
        db: Metadata database
        remote_store_id: Remote store the rows belong to
        remote_item_name: Remote variant name written into inserted rows
        root_schema: Schema of the aggregate header
        detail_schemas: Detail schemas mapped to their parent column
        enabled: Whether events are applied at all

    Usage:
        actualizer = CalendarMetadataActualizer(db)
        actualizer.on_entity_changed("Activity", activity, SyncAction.UPDATE, user_id)
    """

    remote_store_id = ""
    remote_item_name = ""
    root_schema = ""
    detail_schemas: dict[str, str] = {}

    def __init__(
        self,
        db: SyncDatabase,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.enabled = enabled
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def handles(self, schema_name: str) -> bool:
        return schema_name == self.root_schema or schema_name in self.detail_schemas

    def on_entity_changed(
        self,
        schema_name: str,
        entity: Entity,
        action: SyncAction,
        owning_user_id: str,
    ) -> int:
        """
        Record a local change of ``entity``.

        Args:
            schema_name: Schema of the changed record
            entity: The changed record (its last known values for deletes)
            action: CREATE, UPDATE or DELETE
            owning_user_id: User whose rows are updated

        Returns:
            Number of metadata rows written
        """
        if not self.enabled or not self.handles(schema_name) or entity.id is None:
            return 0
        if schema_name == self.root_schema:
            return self._on_root_changed(entity, action, owning_user_id)
        return self._on_detail_changed(schema_name, entity, action, owning_user_id)

    def _version(self, entity: Entity, action: SyncAction) -> datetime:
        if action == SyncAction.DELETE or entity.modified_on is None:
            return self.clock()
        return entity.modified_on

    def _on_root_changed(
        self, entity: Entity, action: SyncAction, owning_user_id: str
    ) -> int:
        if action == SyncAction.CREATE:
            return 0
        is_delete = action == SyncAction.DELETE
        updated = self.db.update_metadata_version(
            entity.id,  # type: ignore[arg-type]
            self.root_schema,
            self.remote_store_id,
            self._version(entity, action),
            SyncState.DELETED if is_delete else SyncState.MODIFIED,
            owning_user_id=None if is_delete else owning_user_id,
            modified_in_store_id=LOCAL_STORE_ID,
        )
        if updated:
            logger.debug(
                f"{self.root_schema} {entity.id} marked {action.value} "
                f"for {self.remote_store_id} ({updated} rows)"
            )
        return updated

    def _on_detail_changed(
        self,
        schema_name: str,
        entity: Entity,
        action: SyncAction,
        owning_user_id: str,
    ) -> int:
        parent_id = entity.get(self.detail_schemas[schema_name])
        if not parent_id:
            return 0
        parent = self.db.get_metadata(
            parent_id, self.root_schema, self.remote_store_id, owning_user_id
        )
        if parent is None or not parent.remote_id:
            logger.debug(f"{schema_name} {entity.id}: parent {parent_id} is not linked")
            return 0

        version = self._version(entity, action)
        if action == SyncAction.CREATE:
            self.db.upsert_metadata(
                MetadataRecord(
                    local_id=entity.id,  # type: ignore[arg-type]
                    remote_id=parent.remote_id,
                    sync_schema_name=schema_name,
                    owning_user_id=owning_user_id,
                    remote_store_id=self.remote_store_id,
                    version=version,
                    local_state=SyncState.NEW,
                    remote_item_name=self.remote_item_name,
                    schema_order=1,
                    modified_in_store_id=LOCAL_STORE_ID,
                )
            )
            written = 1
        else:
            written = self.db.update_metadata_version(
                entity.id,  # type: ignore[arg-type]
                schema_name,
                self.remote_store_id,
                version,
                SyncState.DELETED if action == SyncAction.DELETE else SyncState.MODIFIED,
                owning_user_id=owning_user_id,
                modified_in_store_id=LOCAL_STORE_ID,
            )

        written += self.db.update_metadata_version(
            parent_id,
            self.root_schema,
            self.remote_store_id,
            version,
            SyncState.MODIFIED,
            owning_user_id=owning_user_id,
            modified_in_store_id=LOCAL_STORE_ID,
        )
        return written


class CalendarMetadataActualizer(MetadataActualizer):
    """Activities and their participants in the calendar store."""

    remote_store_id = APPOINTMENT_STORE_ID
    remote_item_name = "ExchangeAppointment"
    root_schema = ACTIVITY_SCHEMA
    detail_schemas = {"ActivityParticipant": "ActivityId"}


class ContactMetadataActualizer(MetadataActualizer):
    """Contacts, their communications and addresses in the contacts store."""

    remote_store_id = CONTACT_STORE_ID
    remote_item_name = "ExchangeContact"
    root_schema = "Contact"
    detail_schemas = {"ContactCommunication": "ContactId", "ContactAddress": "ContactId"}


def build_actualizers(
    db: SyncDatabase,
    enabled: bool = True,
    clock: Optional[Callable[[], datetime]] = None,
) -> list[MetadataActualizer]:
    """Return the actualizers of every store that exports local records."""
    return [
        CalendarMetadataActualizer(db, enabled, clock),
        ContactMetadataActualizer(db, enabled, clock),
    ]

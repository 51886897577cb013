"""
Sync engine module for CRM and groupware synchronization.

Runs one synchronization pass of one remote store for one (user, mailbox):

1. Remote candidates changed since the watermark are enumerated lazily,
   arbitrated by the conflict resolver and applied to the losing side.
2. Linked local aggregates changed since their metadata row was written are
   rehydrated and pushed (or their remote deletion is applied locally).
3. Local aggregates without metadata are created in the remote store.
4. Metadata rows are written for every surviving record and the provider
   commits the new watermark.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from groupware_sync.api.remote import RemoteConnectionError, RemoteStoreError
from groupware_sync.storage.db import LOCAL_STORE_ID, MetadataRecord
from groupware_sync.storage.local import Entity
from groupware_sync.sync.errors import ErrorTier, classify
from groupware_sync.sync.models import (
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncEntity,
    SyncState,
)
from groupware_sync.sync.provider import RemoteSyncProvider
from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """
    Statistics from a sync pass.

    Tracks counts of all operations performed on either side.
    """

    remote_candidates: int = 0
    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0
    created_remote: int = 0
    updated_remote: int = 0
    deleted_remote: int = 0
    conflicts_resolved: int = 0
    skipped: int = 0
    errors: int = 0
    suspended: bool = False
    committed: bool = False

    @property
    def total_local_changes(self) -> int:
        """Total records written to the local store."""
        return self.created_local + self.updated_local + self.deleted_local

    @property
    def total_remote_changes(self) -> int:
        """Total items written to the remote store."""
        return self.created_remote + self.updated_remote + self.deleted_remote

    @property
    def has_changes(self) -> bool:
        """Check if any change was applied."""
        return bool(self.total_local_changes or self.total_remote_changes)

    def summary(self, store_label: str = "remote store") -> str:
        """
        Generate a human-readable summary of the sync pass.

        Args:
            store_label: Label of the remote store (e.g., its identifier)

        Returns:
            Formatted string summary
        """
        lines = [
            "Sync Summary:",
            f"  Remote candidates from {store_label}: {self.remote_candidates}",
            "",
            "Local store:",
            f"  Created: {self.created_local}",
            f"  Updated: {self.updated_local}",
            f"  Deleted: {self.deleted_local}",
            "",
            f"{store_label}:",
            f"  Created: {self.created_remote}",
            f"  Updated: {self.updated_remote}",
            f"  Deleted: {self.deleted_remote}",
        ]
        if self.conflicts_resolved:
            lines.append(f"  Conflicts resolved: {self.conflicts_resolved}")
        if self.skipped:
            lines.append(f"  Skipped: {self.skipped}")
        if self.errors:
            lines.append(f"  Errors: {self.errors}")
        if self.suspended:
            lines.append("  Session suspended")
        elif not self.committed:
            lines.append("  Watermark not committed")
        return "\n".join(lines)


class SyncEngine:
    """
    Synchronization engine for one provider and session.

    Usage:
        session = SyncSession(user_id, mailbox, settings, local_store,
                              remote_store, db, APPOINTMENT_STORE_ID)
        engine = SyncEngine(AppointmentProvider(), session)
        stats = engine.run()
        print(stats.summary(APPOINTMENT_STORE_ID))
    """

    def __init__(self, provider: RemoteSyncProvider, session: SyncSession):
        """
        Initialize the sync engine.

        Args:
            provider: Provider of the synchronized remote store
            session: Session of the pass

        Raises:
            ValueError: If the session belongs to another remote store
        """
        if provider.store_id != session.remote_store_id:
            raise ValueError(
                f"Session store {session.remote_store_id!r} does not match "
                f"provider store {provider.store_id!r}"
            )
        self.provider = provider
        self.session = session
        self.stats = SyncStats()
        self._processed: set[str] = set()
        self._retry_pending = False

    @property
    def store_id(self) -> str:
        return self.provider.store_id

    @property
    def root_schema(self) -> str:
        return self.provider.root_schema

    def run(self) -> SyncStats:
        """
        Execute one synchronization pass.

        Returns:
            SyncStats of the pass

        Raises:
            Exception: Any unexpected error, after it was recorded
        """
        session = self.session
        if session.errors.is_suspended:
            logger.warning(
                f"Sync of {session.session_key} is suspended: {session.errors.last_error}"
            )
            self.stats.suspended = True
            return self.stats

        logger.info(
            f"Starting {self.store_id} sync for {session.mailbox} "
            f"(watermark={session.last_sync_version})"
        )
        try:
            self._import_remote_changes()
            if not self._stop_requested():
                self._push_local_changes()
            if not self._stop_requested():
                self._export_new_items()
        except RemoteConnectionError as e:
            session.errors.handle(e, f"synchronizing {self.store_id}")
            self.stats.errors += 1
            self.stats.suspended = session.errors.is_suspended
            session.locks.release_all()
            return self.stats
        except Exception as e:
            session.errors.handle(e, f"synchronizing {self.store_id}")
            session.locks.release_all()
            raise

        if self._stop_requested():
            self.stats.suspended = True
            session.locks.release_all()
        elif self._retry_pending:
            logger.warning(
                f"Watermark of {self.store_id} kept at {session.last_sync_version}, "
                f"transient failures will be retried"
            )
            session.locks.release_all()
        else:
            self.provider.commit_changes(session)
            self.stats.committed = True

        logger.info(
            f"Sync of {self.store_id} complete: "
            f"local (created={self.stats.created_local}, "
            f"updated={self.stats.updated_local}, deleted={self.stats.deleted_local}), "
            f"remote (created={self.stats.created_remote}, "
            f"updated={self.stats.updated_remote}, deleted={self.stats.deleted_remote})"
        )
        return self.stats

    def _stop_requested(self) -> bool:
        return self.session.errors.is_suspended

    # =========================================================================
    # Step 1: remote changes
    # =========================================================================

    def _import_remote_changes(self) -> None:
        if not self.session.settings.import_enabled:
            logger.debug("Import disabled")
            return
        for item in self.provider.enumerate_changes(self.session):
            if not item.remote_id or item.remote_id in self._processed:
                continue
            self._processed.add(item.remote_id)
            self.stats.remote_candidates += 1
            self._guarded(
                item,
                self._process_remote_candidate,
                f"importing {item.display_name}",
                SyncDirection.UPLOAD,
            )
            if self._stop_requested():
                return

    def _process_remote_candidate(self, item: RemoteItem) -> None:
        rows = self.session.db.find_by_remote_id(
            item.remote_id, self.store_id, self.session.user_id
        )
        root_row = self._root_row(rows)
        local_item = self._load_local_item(rows)

        if item.action != SyncAction.CREATE_RECURRING_MASTER:
            if root_row is None:
                item.action = SyncAction.CREATE
            else:
                item.action = SyncAction.UPDATE
                if _not_newer(item.version, root_row.version):
                    logger.debug(f"{item.display_name} unchanged since last sync")
                    return

        root_se = local_item.first(self.root_schema)
        if root_se is not None and root_se.state == SyncState.DELETED:
            logger.info(f"Local record of {item.display_name} was deleted")
            self._export(item, local_item)
            return

        result = self.provider.resolve_conflict(
            self.session, item, root_row, self._local_version(local_item)
        )
        if root_row is not None:
            self.stats.conflicts_resolved += 1
        logger.debug(f"{item.display_name}: {result.reason}")
        if result.apply_to_local:
            self._import(item, local_item)
        else:
            item.action = SyncAction.UPDATE
            self._export(item, local_item)

    # =========================================================================
    # Step 2: local changes of linked aggregates
    # =========================================================================

    def _push_local_changes(self) -> None:
        if not self.provider.export_supported:
            return
        for remote_id in self._locally_changed_remote_ids():
            self._processed.add(remote_id)
            self._guarded(
                remote_id,
                self._process_local_change,
                f"pushing {remote_id}",
                SyncDirection.DOWNLOAD,
            )
            if self._stop_requested():
                return

    def _locally_changed_remote_ids(self) -> list[str]:
        """Remote ids of linked aggregates with local changes, in row order."""
        session = self.session
        candidates: dict[str, None] = {}
        for row in self.provider.get_locally_modified_items_metadata(session):
            if row.remote_id:
                candidates.setdefault(row.remote_id)
        for row in session.db.list_metadata(self.store_id, session.user_id):
            if not row.remote_id or row.remote_id in candidates:
                continue
            entity = session.local_store.fetch(
                row.sync_schema_name, row.local_id, ["ModifiedOn"]
            )
            if entity is None or _is_newer(entity.modified_on, row.version):
                candidates.setdefault(row.remote_id)
        return [rid for rid in candidates if rid not in self._processed]

    def _process_local_change(self, remote_id: str) -> None:
        session = self.session
        rows = session.db.find_by_remote_id(remote_id, self.store_id, session.user_id)
        root_row = self._root_row(rows)
        if root_row is None:
            return
        local_item = self._load_local_item(rows)
        root_se = local_item.first(self.root_schema)
        item = self.provider.load_sync_item(session, root_row)

        if item.state == SyncState.DELETED:
            if root_se is None or root_se.state == SyncState.DELETED:
                self._forget(local_item)
                return
            logger.info(f"Remote item {remote_id} was deleted")
            self._import(item, local_item)
            return

        if root_se is None or root_se.state == SyncState.DELETED:
            self._export(item, local_item)
            return

        if _is_newer(item.version, root_row.version):
            result = self.provider.resolve_conflict(
                session, item, root_row, self._local_version(local_item)
            )
            self.stats.conflicts_resolved += 1
            logger.debug(f"{item.display_name}: {result.reason}")
            if result.apply_to_local:
                item.action = SyncAction.UPDATE
                self._import(item, local_item)
                return

        if not self._has_local_changes(local_item, root_row):
            return
        item.action = SyncAction.UPDATE
        self._export(item, local_item)

    def _has_local_changes(self, local_item: LocalItem, root_row: MetadataRecord) -> bool:
        if (
            root_row.modified_in_store_id == LOCAL_STORE_ID
            and _is_newer(root_row.version, self.session.last_sync_version)
        ):
            return True
        return any(
            sync_entity.state != SyncState.NONE
            or _is_newer(sync_entity.entity.modified_on, sync_entity.version)
            for sync_entity in local_item.all_entities()
        )

    # =========================================================================
    # Step 3: new local aggregates
    # =========================================================================

    def _export_new_items(self) -> None:
        for local_item in self.provider.collect_new_items(self.session):
            self._guarded(
                local_item,
                self._process_new_item,
                "exporting new record",
                SyncDirection.DOWNLOAD,
            )
            if self._stop_requested():
                return

    def _process_new_item(self, local_item: LocalItem) -> None:
        item = self.provider.create_new_sync_item(self.session)
        item.action = SyncAction.CREATE
        self._export(item, local_item, is_new=True)

    # =========================================================================
    # Apply
    # =========================================================================

    def _import(self, item: RemoteItem, local_item: LocalItem) -> None:
        """Fill the local aggregate from ``item`` and persist it."""
        item.fill_local_item(self.session, local_item)
        root_se = local_item.first(self.root_schema)
        if root_se is None:
            self.stats.skipped += 1
            return

        self._apply_local(local_item)
        if root_se.action == SyncAction.CREATE:
            self.stats.created_local += 1
        elif root_se.action == SyncAction.UPDATE:
            self.stats.updated_local += 1
        elif root_se.action in (SyncAction.DELETE, SyncAction.CREATE_RECURRING_MASTER):
            self.stats.deleted_local += 1
            return
        else:
            self.stats.skipped += 1
            if root_se.action == SyncAction.REPEAT or self._locked_elsewhere(item, local_item):
                return
        self._write_metadata(item, local_item)

    def _export(self, item: RemoteItem, local_item: LocalItem, is_new: bool = False) -> None:
        """Map the local aggregate onto ``item`` and write it remotely."""
        session = self.session
        item.fill_remote_item(session, local_item)

        if item.action == SyncAction.DELETE:
            if session.settings.sync_deletes and item.item is not None:
                if not self._apply_remote(item):
                    return
                self.stats.deleted_remote += 1
            self._forget(local_item)
            return

        if item.action in (SyncAction.NONE, SyncAction.REPEAT):
            self.stats.skipped += 1
            if (
                not is_new
                and item.action == SyncAction.NONE
                and not self._locked_elsewhere(item, local_item)
            ):
                self._write_metadata(item, local_item)
            return

        action = item.action
        if not self._apply_remote(item):
            return
        if action == SyncAction.CREATE:
            self.stats.created_remote += 1
        else:
            self.stats.updated_remote += 1
        self._write_metadata(item, local_item)
        self.provider.on_local_item_applied_in_remote_store(session, item, local_item)

    def _apply_remote(self, item: RemoteItem) -> bool:
        """
        Write ``item`` to the remote store.

        A failed write is logged and skipped so the rest of the batch still
        applies. Returns False when the write failed.
        """
        try:
            self.provider.apply_changes(self.session, item)
        except RemoteStoreError as e:
            self._record_failure(
                e, f"writing {item.display_name}", SyncDirection.DOWNLOAD
            )
            return False
        return True

    def _apply_local(self, local_item: LocalItem) -> None:
        """Insert, save or delete the local records as their actions ask."""
        store = self.session.local_store
        ordered = list(local_item.entities_of(self.root_schema))
        ordered += [
            sync_entity
            for schema_name, entities in local_item.entities.items()
            if schema_name != self.root_schema
            for sync_entity in entities
        ]
        for sync_entity in ordered:
            if sync_entity.action == SyncAction.CREATE:
                store.insert(sync_entity.entity)
            elif sync_entity.action == SyncAction.UPDATE:
                if sync_entity.entity.changed_columns:
                    store.save(sync_entity.entity)
        for sync_entity in reversed(ordered):
            if sync_entity.action not in (
                SyncAction.DELETE,
                SyncAction.CREATE_RECURRING_MASTER,
            ):
                continue
            if sync_entity.entity_id is None:
                continue
            if sync_entity.state != SyncState.DELETED or store.fetch(
                sync_entity.schema_name, sync_entity.entity_id, ["Id"]
            ):
                store.delete(sync_entity.schema_name, sync_entity.entity_id)
            sync_entity.state = SyncState.DELETED
            self._soft_delete(sync_entity)

    # =========================================================================
    # Metadata
    # =========================================================================

    def _root_row(self, rows: list[MetadataRecord]) -> Optional[MetadataRecord]:
        for row in rows:
            if row.schema_order == 0 and row.sync_schema_name == self.root_schema:
                return row
        return None

    def _load_local_item(self, rows: list[MetadataRecord]) -> LocalItem:
        """
        Rehydrate the aggregate of a remote item from its metadata rows.

        A record that no longer exists is represented by a placeholder in
        state DELETED. A row changed on the local side outside a session
        keeps its recorded local state.
        """
        local_item = LocalItem(self.provider.sync_item_class.schema_name)
        store = self.session.local_store
        for row in rows:
            entity = store.fetch(row.sync_schema_name, row.local_id)
            if entity is None:
                sync_entity = SyncEntity(
                    Entity(row.sync_schema_name, {"Id": row.local_id}),
                    SyncState.DELETED,
                    extra=row.extra,
                    version=row.version,
                )
            else:
                state = SyncState.NONE
                if row.modified_in_store_id == LOCAL_STORE_ID and row.local_state in (
                    SyncState.NEW,
                    SyncState.MODIFIED,
                ):
                    state = row.local_state
                sync_entity = SyncEntity(entity, state, extra=row.extra, version=row.version)
            local_item.add_or_replace(row.sync_schema_name, sync_entity)
        return local_item

    def _local_version(self, local_item: LocalItem) -> Optional[datetime]:
        versions = [
            sync_entity.entity.modified_on
            for sync_entity in local_item.all_entities()
            if sync_entity.state != SyncState.DELETED
        ]
        return _latest(*versions)

    def _write_metadata(self, item: RemoteItem, local_item: LocalItem) -> None:
        """Upsert rows for surviving records, soft-delete rows of deleted ones."""
        if not item.remote_id:
            logger.warning(f"{item!r} has no remote identity, metadata not written")
            return
        session = self.session
        root_se = local_item.first(self.root_schema)
        for sync_entity in local_item.all_entities():
            if sync_entity.entity_id is None:
                continue
            if sync_entity.state == SyncState.DELETED or sync_entity.action in (
                SyncAction.DELETE,
                SyncAction.CREATE_RECURRING_MASTER,
            ):
                self._soft_delete(sync_entity)
                continue
            is_root = sync_entity is root_se
            extra = sync_entity.extra
            if is_root and item.item is not None and getattr(item.item, "id", None):
                extra = extra.update(remote_id=item.item.id)
            version = _latest(sync_entity.entity.modified_on, item.version)
            session.db.upsert_metadata(
                MetadataRecord(
                    local_id=sync_entity.entity_id,
                    remote_id=item.remote_id,
                    sync_schema_name=sync_entity.schema_name,
                    owning_user_id=session.user_id,
                    remote_store_id=self.store_id,
                    version=version,
                    local_state=sync_entity.state,
                    remote_state=item.state,
                    extra=extra,
                    remote_item_name=self.provider.sync_item_class.schema_name,
                    schema_order=0 if is_root else 1,
                    modified_in_store_id=self.store_id,
                )
            )
            sync_entity.version = version

    def _soft_delete(self, sync_entity: SyncEntity) -> None:
        if sync_entity.entity_id is None:
            return
        self.session.db.soft_delete_metadata(
            sync_entity.entity_id,
            sync_entity.schema_name,
            self.store_id,
            self.session.user_id,
        )

    def _forget(self, local_item: LocalItem) -> None:
        for sync_entity in local_item.all_entities():
            self._soft_delete(sync_entity)

    def _locked_elsewhere(self, item: RemoteItem, local_item: LocalItem) -> bool:
        root_se = local_item.first(self.root_schema)
        identities = {item.remote_id, root_se.entity_id if root_se else None}
        return any(
            identity
            and self.session.locks.is_locked_by_other(identity, self.provider.lock_domain)
            for identity in identities
        )

    # =========================================================================
    # Failure isolation
    # =========================================================================

    def _guarded(
        self,
        subject: Any,
        operation: Callable[[Any], None],
        context: str,
        direction: SyncDirection,
    ) -> None:
        """
        Run ``operation(subject)``, isolating remote store failures.

        A missing or unreadable item never aborts the batch. Transient
        failures keep the watermark so the item is retried in the next pass.
        Any other remote failure outside a write (bind, enumeration) is
        rethrown.
        """
        try:
            operation(subject)
        except RemoteStoreError as e:
            if classify(e) is ErrorTier.FATAL:
                raise
            self._record_failure(e, context, direction)

    def _record_failure(
        self, error: RemoteStoreError, context: str, direction: SyncDirection
    ) -> None:
        """Count, record and log a skipped item; keep the watermark unless it is gone."""
        self.stats.errors += 1
        tier = self.session.errors.handle(error, context)
        if tier is not ErrorTier.ITEM:
            self._retry_pending = True
        self.session.sync_log.error(
            SyncAction.REPEAT if tier is ErrorTier.SESSION else SyncAction.NONE,
            direction,
            "Failed %s",
            error,
            context,
        )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [_aware(v) for v in values if v is not None]
    return max(present) if present else None  # type: ignore[type-var]


def _is_newer(value: Optional[datetime], than: Optional[datetime]) -> bool:
    """Whether ``value`` is later than ``than`` (anything beats no version)."""
    if value is None:
        return False
    if than is None:
        return True
    return _aware(value) > _aware(than)  # type: ignore[operator]


def _not_newer(value: Optional[datetime], than: Optional[datetime]) -> bool:
    return value is not None and than is not None and not _is_newer(value, than)

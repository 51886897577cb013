"""
Remote sync providers.

A provider knows how one kind of remote item (appointments, contacts, mail)
is enumerated, rehydrated and written back. The ``SyncEngine`` drives the
pass; providers supply:

- ``enumerate_changes``: folder-scoped, filtered, paginated and lazy stream
  of remote candidates
- ``collect_new_items``: local aggregates not linked yet (export candidates)
- ``load_sync_item``: rebind a linked item, or a tombstone when it is gone
- ``create_new_sync_item``: blank item for the create flow
- ``apply_changes``: create, update or delete on the remote side
- ``resolve_conflict``: which side wins a candidate
- ``commit_changes``: store the watermark, clear the session error state
  and release the session locks
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from datetime import timedelta
from typing import Any, Optional

from groupware_sync.api.filters import (
    And,
    Exists,
    IsEqualTo,
    IsGreaterThan,
    IsGreaterThanOrEqualTo,
    Not,
    Or,
    SearchFilter,
    SearchProperty,
)
from groupware_sync.api.remote import (
    CALENDAR_FOLDER_CLASS,
    CONTACTS_FOLDER_CLASS,
    MAIL_FOLDER_CLASS,
    AccessDeniedError,
    AppointmentType,
    ItemNotFoundError,
    RemoteFolder,
)
from groupware_sync.config.settings import ExportScope
from groupware_sync.storage.db import MetadataRecord
from groupware_sync.storage.local import Entity
from groupware_sync.sync.appointment import (
    ACTIVITY_SCHEMA,
    APPOINTMENT_STORE_ID,
    AppointmentSync,
)
from groupware_sync.sync.conflict import ConflictResolver, ConflictResult
from groupware_sync.sync.contact import CONTACT_STORE_ID, ContactSync
from groupware_sync.sync.message import EMAIL_ACTIVITY_TYPE, MESSAGE_STORE_ID, MessageSync
from groupware_sync.sync.models import (
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncEntity,
    SyncState,
)
from groupware_sync.sync.recurrence import (
    is_recurring_master,
    item_in_sync_period,
    iter_occurrences,
    need_full_window,
)
from groupware_sync.sync.session import (
    CALENDAR_LOCK_DOMAIN,
    CONTACT_LOCK_DOMAIN,
    MAIL_LOCK_DOMAIN,
    SyncSession,
)

logger = logging.getLogger(__name__)

# Folders never synchronized
IGNORED_FOLDER_NAMES = frozenset(
    {
        "Deleted Items",
        "Sync Issues",
        "Conflicts",
        "Local Failures",
        "Server Failures",
        "Junk E-mail",
        "Outbox",
    }
)


class RemoteSyncProvider(ABC):
    """
    Base of the per-kind remote providers.

    Attributes:
        store_id: Remote store identifier used in metadata and watermarks
        folder_class: Class of the folders the provider reads
        sync_item_class: Remote item variant
        lock_domain: Lock domain of the kind
        detail_schemas: Child schemas of the aggregate and their parent column
        hash_conflicts: Whether content hash suppression applies
        export_supported: Whether local records are exported
    """

    store_id = ""
    folder_class = ""
    sync_item_class: type[RemoteItem] = RemoteItem
    lock_domain = ""
    detail_schemas: dict[str, str] = {}
    hash_conflicts = False
    export_supported = True

    def __init__(self) -> None:
        self._export_folders: dict[str, Optional[str]] = {}

    @property
    def root_schema(self) -> str:
        return self.sync_item_class.root_schema

    def page_size(self, session: SyncSession) -> int:
        return session.settings.page_size

    # =========================================================================
    # Folder discovery
    # =========================================================================

    def import_folders(self, session: SyncSession) -> list[RemoteFolder]:
        """
        Folders to import from.

        Either every folder of the provider's class (recursive walk) or the
        selected folders, bound one by one; a selected folder that cannot be
        bound is skipped.
        """
        settings = session.settings
        folders: list[RemoteFolder] = []
        if settings.import_all_folders:
            folders = session.remote_store.find_folders(folder_class=self.folder_class)
        else:
            for folder_id in settings.selected_folder_ids:
                try:
                    folder = session.remote_store.get_folder(folder_id)
                except (ItemNotFoundError, AccessDeniedError) as e:
                    logger.warning(f"Skipping folder {folder_id}: {e}")
                    continue
                if folder.folder_class != self.folder_class:
                    logger.warning(
                        f"Skipping folder {folder.display_name!r}: "
                        f"class {folder.folder_class} is not {self.folder_class}"
                    )
                    continue
                folders.append(folder)
        return [f for f in folders if f.display_name not in IGNORED_FOLDER_NAMES]

    def export_folder_id(self, session: SyncSession) -> Optional[str]:
        """Folder receiving records created from local aggregates."""
        if session.session_id not in self._export_folders:
            folder_id: Optional[str] = None
            if session.settings.export_folder_ids:
                folder_id = session.settings.export_folder_ids[0]
            else:
                folders = self.import_folders(session) or session.remote_store.find_folders(
                    folder_class=self.folder_class
                )
                folder_id = folders[0].id if folders else None
            self._export_folders[session.session_id] = folder_id
        return self._export_folders[session.session_id]

    # =========================================================================
    # Enumeration
    # =========================================================================

    @abstractmethod
    def build_filter(self, session: SyncSession) -> Optional[SearchFilter]:
        """Search filter of the incremental enumeration."""

    def iter_folder_items(
        self,
        session: SyncSession,
        folder: RemoteFolder,
        search_filter: Optional[SearchFilter],
    ) -> Iterator[Any]:
        """
        Page through a folder until no continuation remains.

        Items written by this pass come back past the cursor; each item is
        yielded once.
        """
        cursor = None
        seen: set[str] = set()
        page_size = self.page_size(session)
        while True:
            page = session.remote_store.find_items(
                folder.id, search_filter, page_size, cursor
            )
            for item in page.items:
                if item.id in seen:
                    continue
                seen.add(item.id)
                yield item
            if not page.more_available or page.cursor is None:
                return
            cursor = page.cursor

    def wrap(
        self, session: SyncSession, folder: RemoteFolder, item: Any
    ) -> Iterator[RemoteItem]:
        """Turn one remote object into sync candidates."""
        yield self.sync_item_class.from_remote(session, item)

    def enumerate_changes(self, session: SyncSession) -> Iterator[RemoteItem]:
        """Yield remote candidates lazily, folder by folder, page by page."""
        if not session.settings.import_enabled:
            return
        search_filter = self.build_filter(session)
        logger.debug(f"{self.store_id} search filter: {search_filter!r}")
        for folder in self.import_folders(session):
            logger.debug(f"Enumerating {self.store_id} folder {folder.display_name!r}")
            for item in self.iter_folder_items(session, folder, search_filter):
                yield from self.wrap(session, folder, item)

    def _changed_filter(self, session: SyncSession) -> Optional[SearchFilter]:
        """``modifiedSince(watermark) OR lacksLocalLink()``; None means everything."""
        watermark = session.last_sync_version
        if watermark is None:
            return None
        modified = IsGreaterThan(SearchProperty.LAST_MODIFIED, watermark)
        if session.settings.search_by_local_id:
            return Or(modified, Not(Exists(SearchProperty.LOCAL_ID)))
        return modified

    # =========================================================================
    # Export candidates
    # =========================================================================

    def export_candidates(self, session: SyncSession) -> list[Entity]:
        """Root records that may be exported."""
        return []

    def collect_new_items(self, session: SyncSession) -> Iterator[LocalItem]:
        """Yield local aggregates not linked to metadata yet."""
        if session.settings.export_disabled or not self.export_supported:
            return
        for entity in self.export_candidates(session):
            if session.db.has_metadata(entity.id, self.store_id, session.user_id):
                continue
            local_item = LocalItem(self.sync_item_class.schema_name)
            local_item.add_or_replace(self.root_schema, SyncEntity(entity, SyncState.NEW))
            yield local_item

    # =========================================================================
    # Item operations
    # =========================================================================

    def load_sync_item(self, session: SyncSession, metadata: MetadataRecord) -> RemoteItem:
        """
        Rebind a linked remote item.

        Returns:
            The wrapped item, or a tombstone when it no longer exists or may
            not be read
        """
        item_id = metadata.extra.remote_id or metadata.remote_id
        if not item_id:
            return self.sync_item_class.tombstone(metadata.remote_id or "")
        try:
            item = session.remote_store.bind(item_id)
        except (ItemNotFoundError, AccessDeniedError) as e:
            logger.info(f"Remote item {item_id} is gone: {e}")
            return self.sync_item_class.tombstone(metadata.remote_id or item_id)
        return self.sync_item_class.from_remote(session, item)

    def create_new_sync_item(self, session: SyncSession) -> RemoteItem:
        return self.sync_item_class.new(session)

    def apply_changes(self, session: SyncSession, item: RemoteItem) -> None:
        """
        Execute the remote write ``item.action`` asks for.

        Deletes are ignored unless delete propagation is enabled.

        Raises:
            RemoteStoreError: If the remote write fails
        """
        store = session.remote_store
        if item.action == SyncAction.CREATE:
            saved = store.create(
                item.item,
                self.export_folder_id(session),
                send_notifications=item.send_notifications,
            )
            item.refresh(session, saved)
            item.state = SyncState.NEW
        elif item.action == SyncAction.UPDATE:
            saved = store.update(item.item, send_notifications=item.send_notifications)
            item.refresh(session, saved)
            item.state = SyncState.MODIFIED
        elif item.action == SyncAction.DELETE:
            if not session.settings.sync_deletes:
                logger.debug(f"Delete of {item.remote_id} ignored, deletes are not synced")
                return
            if item.item is None or item.item.id is None:
                return
            store.delete(item.item.id, send_notifications=False)
            item.state = SyncState.DELETED
        else:
            return
        session.sync_log.info(
            item.action,
            SyncDirection.DOWNLOAD,
            "%s %s applied in remote store",
            type(item).__name__,
            item.display_name,
        )

    def resolve_conflict(
        self,
        session: SyncSession,
        item: RemoteItem,
        metadata: Optional[MetadataRecord],
        local_version: Any,
    ) -> ConflictResult:
        resolver = ConflictResolver(
            session,
            hash_enabled=self.hash_conflicts and session.settings.resolve_by_content_hash,
        )
        return resolver.resolve(item, metadata, local_version)

    def commit_changes(self, session: SyncSession) -> None:
        """Persist the watermark and clear transient session state."""
        session.db.update_last_sync(self.store_id, session.user_id, session.start_version)
        session.errors.clear()
        released = session.locks.release_all()
        self._export_folders.pop(session.session_id, None)
        logger.info(
            f"Committed {self.store_id} for {session.mailbox} "
            f"(watermark {session.start_version.isoformat()}, {released} locks released)"
        )

    def get_locally_modified_items_metadata(
        self, session: SyncSession
    ) -> list[MetadataRecord]:
        """Metadata rows changed on the local side since the watermark."""
        return session.db.get_locally_modified(
            self.store_id, session.user_id, session.last_sync_version
        )

    def on_local_item_applied_in_remote_store(
        self, session: SyncSession, item: RemoteItem, local_item: LocalItem
    ) -> None:
        """Hook called after a local aggregate was written to the remote store."""
        logger.debug(f"{local_item.schema_name} applied as {item.remote_id}")


class AppointmentProvider(RemoteSyncProvider):
    """Calendar provider with recurring series fan-out."""

    store_id = APPOINTMENT_STORE_ID
    folder_class = CALENDAR_FOLDER_CLASS
    sync_item_class = AppointmentSync
    lock_domain = CALENDAR_LOCK_DOMAIN
    detail_schemas = {"ActivityParticipant": "ActivityId"}
    hash_conflicts = True

    def build_filter(self, session: SyncSession) -> Optional[SearchFilter]:
        in_window = IsGreaterThanOrEqualTo(SearchProperty.START, session.import_from)
        changed = self._changed_filter(session)
        search_filter: SearchFilter = in_window if changed is None else And(in_window, changed)
        if not session.settings.recurring_support:
            return search_filter
        masters: SearchFilter = IsEqualTo(
            SearchProperty.APPOINTMENT_TYPE, AppointmentType.RECURRING_MASTER
        )
        if changed is not None and not need_full_window(session):
            masters = And(masters, changed)
        return Or(search_filter, masters)

    def wrap(
        self, session: SyncSession, folder: RemoteFolder, item: Any
    ) -> Iterator[RemoteItem]:
        if not (session.settings.recurring_support and is_recurring_master(item)):
            yield AppointmentSync.from_remote(session, item)
            return

        master = AppointmentSync.from_remote(session, item)
        if session.db.find_by_remote_id(master.remote_id, self.store_id, session.user_id):
            master.action = SyncAction.CREATE_RECURRING_MASTER
            yield master
        for occurrence in iter_occurrences(session, folder.id, item):
            if item_in_sync_period(session, occurrence):
                yield AppointmentSync.from_remote(session, occurrence)

    def export_candidates(self, session: SyncSession) -> list[Entity]:
        scope = session.settings.export_scope
        if not scope & (
            ExportScope.ALL | ExportScope.FROM_SCHEDULER | ExportScope.APPOINTMENTS
        ):
            return []
        import_from = session.import_from
        return session.local_store.query(
            ACTIVITY_SCHEMA,
            OwnerId=session.user_id,
            ShowInScheduler=True,
            TypeId=lambda value: value != EMAIL_ACTIVITY_TYPE,
            DueDate=lambda value: session.to_session_time(value) >= import_from,
        )

    def get_locally_modified_items_metadata(
        self, session: SyncSession
    ) -> list[MetadataRecord]:
        rows = super().get_locally_modified_items_metadata(session)
        settings = session.settings
        since = session.last_sync_version
        if not settings.sync_deletes or since is None:
            return rows
        delete_since = max(since, session.import_from) - timedelta(
            days=settings.delete_sync_days
        )
        seen = {(row.local_id, row.sync_schema_name) for row in rows}
        for row in session.db.list_metadata(
            self.store_id, session.user_id, sync_schema_name=self.root_schema
        ):
            if row.version is None or row.version <= delete_since:
                continue
            if (row.local_id, row.sync_schema_name) not in seen:
                rows.append(row)
        return rows


class ContactProvider(RemoteSyncProvider):
    """Contacts provider."""

    store_id = CONTACT_STORE_ID
    folder_class = CONTACTS_FOLDER_CLASS
    sync_item_class = ContactSync
    lock_domain = CONTACT_LOCK_DOMAIN
    detail_schemas = {"ContactCommunication": "ContactId", "ContactAddress": "ContactId"}

    def build_filter(self, session: SyncSession) -> Optional[SearchFilter]:
        return self._changed_filter(session)

    def export_candidates(self, session: SyncSession) -> list[Entity]:
        scope = session.settings.export_scope
        if scope & ExportScope.ALL:
            return session.local_store.query("Contact", OwnerId=session.user_id)
        if scope & ExportScope.FROM_GROUPS:
            grouped = {
                row.get("ContactId") for row in session.local_store.query("ContactInGroup")
            }
            return session.local_store.query(
                "Contact",
                OwnerId=session.user_id,
                Id=lambda value: value in grouped,
            )
        return []


class MessageProvider(RemoteSyncProvider):
    """Mail provider (import only)."""

    store_id = MESSAGE_STORE_ID
    folder_class = MAIL_FOLDER_CLASS
    sync_item_class = MessageSync
    lock_domain = MAIL_LOCK_DOMAIN
    export_supported = False

    def page_size(self, session: SyncSession) -> int:
        return session.settings.message_page_size

    def build_filter(self, session: SyncSession) -> Optional[SearchFilter]:
        watermark = session.last_sync_version
        if watermark is None:
            return IsGreaterThanOrEqualTo(
                SearchProperty.DATE_TIME_RECEIVED, session.import_from
            )
        since = watermark - timedelta(minutes=session.settings.last_sync_minutes_offset)
        return IsGreaterThan(SearchProperty.DATE_TIME_RECEIVED, since)

    def get_locally_modified_items_metadata(
        self, session: SyncSession
    ) -> list[MetadataRecord]:
        return []

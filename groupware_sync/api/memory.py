"""
In-memory groupware store.

A complete ``RemoteStore`` implementation backed by dictionaries. It stamps
identities and last-modified versions like a real server, expands recurring
series in calendar views, pages search results and records every write with
its notification flag, which makes it the store of choice for dry runs and
tests.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Optional

from groupware_sync.api.filters import SearchFilter
from groupware_sync.api.remote import (
    AccessDeniedError,
    AppointmentType,
    FindItemsResult,
    ItemNotFoundError,
    PageCursor,
    RemoteAppointment,
    RemoteFolder,
    RemoteObject,
    RemoteStore,
    RemoteStoreError,
)

logger = logging.getLogger(__name__)


class InMemoryRemoteStore(RemoteStore):
    """
    Dictionary backed remote store.

    Attributes:
        clock: Source of last-modified versions
        writes: Log of (operation, item id, send_notifications) tuples
        failures: Item ids mapped to the exception raised when they are touched
        write_failures: Item ids mapped to the exception raised when they are
            updated or deleted (reads still succeed)
        find_calls: Number of find_items() requests served

    Usage:
        store = InMemoryRemoteStore()
        calendar = store.add_folder("Calendar", CALENDAR_FOLDER_CLASS)
        store.add_item(RemoteAppointment(subject="Review"), calendar.id)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._items: dict[str, RemoteObject] = {}
        self._folders: dict[str, RemoteFolder] = {}
        self.writes: list[tuple[str, str, bool]] = []
        self.failures: dict[str, Exception] = {}
        self.write_failures: dict[str, Exception] = {}
        self.find_calls = 0

    # =========================================================================
    # Setup helpers
    # =========================================================================

    def add_folder(
        self,
        display_name: str,
        folder_class: str,
        parent_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> RemoteFolder:
        folder = RemoteFolder(
            id=folder_id or f"folder-{uuid.uuid4().hex[:12]}",
            display_name=display_name,
            folder_class=folder_class,
            parent_id=parent_id,
        )
        self._folders[folder.id] = folder
        return folder

    def add_item(self, item: RemoteObject, folder_id: str) -> RemoteObject:
        """Store an item as if it had been created by another client."""
        self._assign_identity(item, folder_id)
        if item.last_modified is None:
            item.last_modified = self.clock()
        self._items[item.id] = copy.deepcopy(item)  # type: ignore[index]
        return copy.deepcopy(item)

    def get(self, item_id: str) -> Optional[RemoteObject]:
        """Return a copy of a stored item without bind semantics."""
        item = self._items.get(item_id)
        return copy.deepcopy(item) if item is not None else None

    def items_in(self, folder_id: str) -> list[RemoteObject]:
        return [
            copy.deepcopy(item)
            for item in self._items.values()
            if item.folder_id == folder_id
        ]

    def _assign_identity(self, item: RemoteObject, folder_id: Optional[str]) -> None:
        if item.id is None:
            item.id = f"item-{uuid.uuid4().hex}"
        if folder_id is not None:
            item.folder_id = folder_id
        if isinstance(item, RemoteAppointment) and not item.ical_uid:
            item.ical_uid = f"uid-{uuid.uuid4().hex}"

    def _check_failure(self, item_id: str, write: bool = False) -> None:
        failure = self.failures.get(item_id)
        if failure is None and write:
            failure = self.write_failures.get(item_id)
        if failure is not None:
            raise failure

    # =========================================================================
    # RemoteStore contract
    # =========================================================================

    def bind(self, item_id: str) -> RemoteObject:
        self._check_failure(item_id)
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        return copy.deepcopy(item)

    def find_items(
        self,
        folder_id: str,
        search_filter: Optional[SearchFilter],
        page_size: int,
        after: Optional[PageCursor] = None,
    ) -> FindItemsResult:
        if folder_id not in self._folders:
            raise ItemNotFoundError(f"Folder {folder_id} not found")
        self.find_calls += 1
        matching = [
            item
            for item in self._items.values()
            if item.folder_id == folder_id
            and not _is_expanded_occurrence(item)
            and (search_filter is None or search_filter.matches(item))
        ]
        matching.sort(key=lambda i: _page_key(i.last_modified, i.id or ""))
        if after is not None:
            start = _page_key(after.last_modified, after.item_id)
            matching = [
                i for i in matching if _page_key(i.last_modified, i.id or "") > start
            ]
        page = matching[:page_size]
        cursor = None
        if page:
            cursor = PageCursor(page[-1].last_modified, page[-1].id or "")
        return FindItemsResult(
            items=[copy.deepcopy(i) for i in page],
            more_available=len(matching) > len(page),
            cursor=cursor,
        )

    def calendar_view(
        self, folder_id: str, start: datetime, end: datetime
    ) -> list[RemoteAppointment]:
        if folder_id not in self._folders:
            raise ItemNotFoundError(f"Folder {folder_id} not found")
        result: list[RemoteAppointment] = []
        for item in list(self._items.values()):
            if item.folder_id != folder_id or not isinstance(item, RemoteAppointment):
                continue
            if _is_expanded_occurrence(item) or item.start is None:
                continue
            if item.appointment_type == AppointmentType.RECURRING_MASTER:
                for occurrence in self._expand(item):
                    if start <= occurrence.start < end:  # type: ignore[operator]
                        result.append(copy.deepcopy(occurrence))
            elif start <= item.start < end:
                result.append(copy.deepcopy(item))
        result.sort(key=lambda a: (a.start, a.id or ""))
        return result

    def _expand(self, master: RemoteAppointment) -> Iterator[RemoteAppointment]:
        """Yield (and register) the occurrences of a recurring master."""
        pattern = master.recurrence
        if pattern is None or master.start is None:
            return
        duration = (master.end or master.start) - master.start
        step = timedelta(days=max(pattern.interval_days, 1))
        occurrence_start = master.start
        count = 0
        while True:
            if pattern.occurrences is not None and count >= pattern.occurrences:
                return
            if pattern.end_date is not None and occurrence_start.date() > pattern.end_date:
                return
            if pattern.end_date is None and pattern.occurrences is None and count >= 730:
                return
            occurrence_id = f"{master.id}:{occurrence_start:%Y%m%d}"
            occurrence = self._items.get(occurrence_id)
            if occurrence is None:
                occurrence = copy.deepcopy(master)
                occurrence.id = occurrence_id
                occurrence.appointment_type = AppointmentType.OCCURRENCE
                occurrence.recurrence = None
                occurrence.recurrence_id = occurrence_start
                occurrence.start = occurrence_start
                occurrence.end = occurrence_start + duration
                occurrence.extended_properties = {}
                self._items[occurrence_id] = occurrence
            yield occurrence  # type: ignore[misc]
            occurrence_start = occurrence_start + step
            count += 1

    def get_folder(self, folder_id: str) -> RemoteFolder:
        self._check_failure(folder_id)
        folder = self._folders.get(folder_id)
        if folder is None:
            raise ItemNotFoundError(f"Folder {folder_id} not found")
        return copy.deepcopy(folder)

    def find_folders(
        self, root_id: Optional[str] = None, folder_class: Optional[str] = None
    ) -> list[RemoteFolder]:
        result: list[RemoteFolder] = []

        def walk(parent_id: Optional[str]) -> None:
            for folder in self._folders.values():
                if folder.parent_id != parent_id:
                    continue
                if folder_class is None or folder.folder_class == folder_class:
                    result.append(copy.deepcopy(folder))
                walk(folder.id)

        walk(root_id)
        return result

    def create(
        self,
        item: RemoteObject,
        folder_id: Optional[str],
        send_notifications: bool = False,
    ) -> RemoteObject:
        if folder_id is None or folder_id not in self._folders:
            raise RemoteStoreError(f"Cannot create item in unknown folder {folder_id}")
        item = copy.deepcopy(item)
        item.id = None
        self._assign_identity(item, folder_id)
        item.last_modified = self.clock()
        self._items[item.id] = item  # type: ignore[index]
        self.writes.append(("create", item.id, send_notifications))  # type: ignore[arg-type]
        logger.debug(f"Created remote item {item.id}")
        return copy.deepcopy(item)

    def update(self, item: RemoteObject, send_notifications: bool = False) -> RemoteObject:
        if item.id is None or item.id not in self._items:
            raise ItemNotFoundError(f"Item {item.id} not found")
        self._check_failure(item.id, write=True)
        item = copy.deepcopy(item)
        item.last_modified = self.clock()
        self._items[item.id] = item
        self.writes.append(("update", item.id, send_notifications))
        logger.debug(f"Updated remote item {item.id}")
        return copy.deepcopy(item)

    def delete(self, item_id: str, send_notifications: bool = False) -> None:
        self._check_failure(item_id, write=True)
        if self._items.pop(item_id, None) is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        self.writes.append(("delete", item_id, send_notifications))
        logger.debug(f"Deleted remote item {item_id}")

    def deny(self, item_id: str) -> None:
        """Make ``item_id`` unreadable for this mailbox."""
        self.failures[item_id] = AccessDeniedError(f"Access to {item_id} denied")


def _is_expanded_occurrence(item: RemoteObject) -> bool:
    return (
        isinstance(item, RemoteAppointment)
        and item.appointment_type == AppointmentType.OCCURRENCE
    )


def _page_key(last_modified: Optional[datetime], item_id: str) -> tuple:
    # items without a version sort first
    return (last_modified is not None, last_modified or _NO_VERSION, item_id)


_NO_VERSION = datetime.min.replace(tzinfo=timezone.utc)

"""
Shared fixtures for the groupware_sync test-suite.

Every store and session built here shares one controllable clock, so
versions, watermarks and ModifiedOn stamps are deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest

from groupware_sync.api.memory import InMemoryRemoteStore
from groupware_sync.api.remote import (
    CALENDAR_FOLDER_CLASS,
    CONTACTS_FOLDER_CLASS,
    MAIL_FOLDER_CLASS,
)
from groupware_sync.config.settings import SyncSettings
from groupware_sync.storage.db import SyncDatabase
from groupware_sync.storage.local import InMemoryLocalStore
from groupware_sync.sync.session import SyncSession
from groupware_sync.utils.logging import NullSyncLog

USER_ID = "user-1"
MAILBOX = "me@example.com"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    """Create a clock starting on 2024-06-15 10:00 UTC."""
    return FakeClock(datetime(2024, 6, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    """Create an initialized in-memory metadata database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    return database


@pytest.fixture
def local_store(clock):
    """Create an empty in-memory local store."""
    return InMemoryLocalStore(clock=clock)


@pytest.fixture
def remote_store(clock):
    """Create an in-memory remote store with calendar, contacts and inbox folders."""
    store = InMemoryRemoteStore(clock=clock)
    store.add_folder("Calendar", CALENDAR_FOLDER_CLASS, folder_id="calendar")
    store.add_folder("Contacts", CONTACTS_FOLDER_CLASS, folder_id="contacts")
    store.add_folder("Inbox", MAIL_FOLDER_CLASS, folder_id="inbox")
    return store


@pytest.fixture
def settings():
    """Create settings importing every folder of the matching class."""
    return SyncSettings(import_all_folders=True)


@pytest.fixture
def make_session(db, local_store, remote_store, clock, settings):
    """Return a factory building sessions over the shared stores."""

    def factory(store_id, session_settings=None, **kwargs):
        kwargs.setdefault("user_id", USER_ID)
        kwargs.setdefault("mailbox", MAILBOX)
        kwargs.setdefault("sync_log", NullSyncLog())
        return SyncSession(
            settings=session_settings or settings,
            local_store=local_store,
            remote_store=remote_store,
            db=db,
            remote_store_id=store_id,
            clock=clock,
            **kwargs,
        )

    return factory

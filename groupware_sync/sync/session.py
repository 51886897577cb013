"""
Sync session context.

A ``SyncSession`` carries everything one synchronization pass of one remote
store for one (user, mailbox) needs: the immutable settings snapshot, both
stores, the metadata database, the session time zone and clock, the version
bounds of the pass, and three session-scoped helpers:

- ``SessionCache``: lazily loaded lookups (participant roles, accounts by
  name, contacts by e-mail, mailboxes with an active sync)
- ``EntityLockHelper``: cross-session aggregate locks owned by the session
- ``SyncErrorHelper``: session-level error tracking
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from groupware_sync.api.remote import RemoteStore
from groupware_sync.config.settings import SyncSettings
from groupware_sync.storage.db import SyncDatabase
from groupware_sync.storage.local import LocalStore
from groupware_sync.sync.errors import SyncErrorHelper
from groupware_sync.utils.logging import LoggingSyncLog, SyncLog

logger = logging.getLogger(__name__)

# Lock domains
CALENDAR_LOCK_DOMAIN = "calendar sync"
CONTACT_LOCK_DOMAIN = "contact sync"
MAIL_LOCK_DOMAIN = "mail sync"

# Participant role codes
PARTICIPANT_ROLE = "Participant"
OPTIONAL_PARTICIPANT_ROLE = "OptionalParticipant"
RESPONSIBLE_ROLE = "Responsible"

# Communication type of e-mail addresses
EMAIL_COMMUNICATION_TYPE = "Email"


class SessionCache:
    """
    Lookups shared by all items of one session.

    Each lookup is loaded lazily on first use and kept for the rest of the
    session; misses are cached too.
    """

    def __init__(self, local_store: LocalStore):
        self.local_store = local_store
        self._roles: Optional[dict[str, str]] = None
        self._accounts: dict[str, Optional[str]] = {}
        self._contacts_by_email: dict[str, Optional[str]] = {}
        self._emails_by_contact: dict[str, Optional[str]] = {}
        self._active_mailboxes: Optional[set[str]] = None

    def role_id(self, code: str) -> str:
        """
        Identity of a participant role.

        Roles are read from the ``ActivityParticipantRole`` schema; a code
        without a stored role is used as its own identity.
        """
        if self._roles is None:
            self._roles = {
                role.get("Code"): role.id
                for role in self.local_store.query("ActivityParticipantRole")
                if role.get("Code") and role.id
            }
            logger.debug(f"Loaded {len(self._roles)} participant roles")
        return self._roles.get(code, code)

    def account_id(self, name: str) -> Optional[str]:
        """Identity of the account named ``name`` (case-insensitive)."""
        key = name.strip().lower()
        if not key:
            return None
        if key not in self._accounts:
            matches = self.local_store.query(
                "Account", Name=lambda value: value.strip().lower() == key
            )
            self._accounts[key] = matches[0].id if matches else None
        return self._accounts[key]

    def contact_id_by_email(self, address: str) -> Optional[str]:
        """Identity of the contact owning the e-mail ``address``."""
        key = address.strip().lower()
        if not key:
            return None
        if key not in self._contacts_by_email:
            matches = self.local_store.query(
                "ContactCommunication",
                CommunicationTypeId=EMAIL_COMMUNICATION_TYPE,
                Number=lambda value: value.strip().lower() == key,
            )
            matches.sort(key=lambda c: (c.created_on is None, c.created_on or 0, c.id))
            self._contacts_by_email[key] = matches[0].get("ContactId") if matches else None
        return self._contacts_by_email[key]

    def contact_email(self, contact_id: str) -> Optional[str]:
        """First e-mail address of a contact."""
        if contact_id not in self._emails_by_contact:
            matches = self.local_store.query(
                "ContactCommunication",
                ContactId=contact_id,
                CommunicationTypeId=EMAIL_COMMUNICATION_TYPE,
            )
            matches = [m for m in matches if m.get("Number")]
            matches.sort(key=lambda c: (c.created_on is None, c.created_on or 0, c.id))
            self._emails_by_contact[contact_id] = (
                matches[0].get("Number") if matches else None
            )
        return self._emails_by_contact[contact_id]

    def has_active_sync(self, mailbox: str) -> bool:
        """Whether ``mailbox`` has a sync of its own enabled."""
        if self._active_mailboxes is None:
            self._active_mailboxes = {
                settings.get("SenderEmailAddress", "").strip().lower()
                for settings in self.local_store.query(
                    "MailboxSyncSettings", EnableSync=True
                )
            }
        return mailbox.strip().lower() in self._active_mailboxes


class EntityLockHelper:
    """
    Cross-session locks owned by one session.

    Locks are keyed by (identity, domain); locks of different domains never
    contend. All locks taken by the session are released on commit.
    """

    def __init__(self, db: SyncDatabase, owner: str):
        self.db = db
        self.owner = owner
        self.held: set[tuple[str, str]] = set()

    def try_lock(self, identity: str, domain: str) -> bool:
        """
        Take the lock of ``identity`` in ``domain``.

        Returns:
            True if the session holds the lock, False if another session does
        """
        if self.db.try_acquire_lock(identity, domain, self.owner):
            self.held.add((identity, domain))
            return True
        logger.info(
            f"{identity} is locked in '{domain}' by session "
            f"{self.db.get_lock_owner(identity, domain)}"
        )
        return False

    def is_locked_by_other(self, identity: str, domain: str) -> bool:
        owner = self.db.get_lock_owner(identity, domain)
        return owner is not None and owner != self.owner

    def release(self, identity: str, domain: str) -> None:
        self.db.release_lock(identity, domain, self.owner)
        self.held.discard((identity, domain))

    def release_all(self) -> int:
        released = self.db.release_locks(self.owner)
        self.held.clear()
        return released


class SyncSession:
    """
    Context of one synchronization pass.

    Attributes:
        user_id: Local identity of the user (owner of created records)
        mailbox: E-mail address of the synchronized mailbox
        settings: Immutable settings snapshot
        local_store: Local (CRM) store
        remote_store: Remote (groupware) store
        db: Metadata database
        remote_store_id: Identifier of the synchronized remote store
        tz: Session time zone
        session_id: Unique id of the session (lock owner)
        start_version: Version committed as the watermark on success
        last_sync_version: Watermark of the previous successful session
        cache: Session-scoped lookups
        locks: Lock helper
        errors: Session error helper
        sync_log: Sync log side channel
    """

    def __init__(
        self,
        user_id: str,
        mailbox: str,
        settings: SyncSettings,
        local_store: LocalStore,
        remote_store: RemoteStore,
        db: SyncDatabase,
        remote_store_id: str,
        time_zone: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
        session_id: Optional[str] = None,
        sync_log: Optional[SyncLog] = None,
    ):
        self.user_id = user_id
        self.mailbox = mailbox
        self.settings = settings
        self.local_store = local_store
        self.remote_store = remote_store
        self.db = db
        self.remote_store_id = remote_store_id
        self.tz = ZoneInfo(time_zone)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.session_id = session_id or uuid.uuid4().hex
        self.start_version = self.clock()
        self.last_sync_version = db.get_last_sync(remote_store_id, user_id)
        self.cache = SessionCache(local_store)
        self.locks = EntityLockHelper(db, self.session_id)
        self.errors = SyncErrorHelper(
            db, self.session_key, settings.max_session_errors
        )
        self.sync_log = sync_log or LoggingSyncLog(self.info)

    @property
    def session_key(self) -> str:
        return f"{self.user_id}:{self.mailbox}:{self.remote_store_id}"

    def now(self) -> datetime:
        """Current time in the session time zone."""
        return self.clock().astimezone(self.tz)

    def to_session_time(self, value: Optional[datetime]) -> Optional[datetime]:
        """Convert ``value`` to the session time zone (naive values are UTC)."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz)

    @property
    def import_from(self) -> datetime:
        """Lower bound of the import window in the session time zone."""
        return self.to_session_time(self.settings.import_from(self.clock()))  # type: ignore[return-value]

    def info(self) -> str:
        """Session info prefix of sync log entries."""
        return (
            f"[SyncSessionId: {self.session_id}, utc now: "
            f"{self.clock().astimezone(timezone.utc).isoformat()}, "
            f"mailbox: {self.mailbox}]"
        )

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return (
            f"SyncSession(id={self.session_id!r}, user={self.user_id!r}, "
            f"mailbox={self.mailbox!r}, store={self.remote_store_id!r})"
        )

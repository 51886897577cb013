"""
SQLite database module for synchronization metadata.

Provides persistent storage for the metadata records linking local records to
remote items, the per-store watermarks, the cross-session lock table and the
session error state. This database is the only state that outlives a sync
session.
"""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from groupware_sync.storage.metadata import ExtraParameters
from groupware_sync.sync.models import SyncState

# Store identifier recorded when a row was last changed on the local side
LOCAL_STORE_ID = "local"

logger = logging.getLogger(__name__)

# SQL Schema for metadata, watermark, lock and error tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS sys_sync_metadata (
    id INTEGER PRIMARY KEY,
    local_id TEXT NOT NULL,
    remote_id TEXT,
    sync_schema_name TEXT NOT NULL,
    version TEXT,
    local_state TEXT NOT NULL DEFAULT 'none',
    remote_state TEXT NOT NULL DEFAULT 'none',
    owning_user_id TEXT NOT NULL,
    remote_store_id TEXT NOT NULL,
    remote_item_name TEXT,
    schema_order INTEGER NOT NULL DEFAULT 0,
    modified_in_store_id TEXT,
    extra_parameters TEXT,
    is_deleted BOOLEAN NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(local_id, sync_schema_name, remote_store_id, owning_user_id)
);

CREATE INDEX IF NOT EXISTS idx_metadata_remote
    ON sys_sync_metadata(remote_id, remote_store_id, owning_user_id);
CREATE INDEX IF NOT EXISTS idx_metadata_local ON sys_sync_metadata(local_id);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY,
    remote_store_id TEXT NOT NULL,
    owning_user_id TEXT NOT NULL,
    last_sync_at TEXT,
    UNIQUE(remote_store_id, owning_user_id)
);

CREATE TABLE IF NOT EXISTS entity_sync_lock (
    id INTEGER PRIMARY KEY,
    identity TEXT NOT NULL,
    domain TEXT NOT NULL,
    owner TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(identity, domain)
);

CREATE INDEX IF NOT EXISTS idx_lock_owner ON entity_sync_lock(owner);

CREATE TABLE IF NOT EXISTS sync_error (
    id INTEGER PRIMARY KEY,
    session_key TEXT NOT NULL,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    is_suspended BOOLEAN NOT NULL DEFAULT 0,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(session_key)
);
"""


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as sortable UTC ISO-8601 text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a datetime written by ``to_db_time``."""
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class MetadataRecord:
    """
    Durable linkage between a local record and a remote item.

    Attributes:
        local_id: Identity of the local record
        remote_id: Identity of the remote item (shared by detail rows)
        sync_schema_name: Local schema of the record
        owning_user_id: User the linkage belongs to
        remote_store_id: Remote store (calendar, contacts, mail) identifier
        version: Version watermark of the last synchronized change
        local_state: Last known state on the local side
        remote_state: Last known state on the remote side
        extra: Typed extension payload
        remote_item_name: Name of the remote variant
        schema_order: 0 for aggregate headers, 1 for detail records
        modified_in_store_id: Store that changed the row last
        is_deleted: Soft delete flag
    """

    local_id: str
    remote_id: Optional[str]
    sync_schema_name: str
    owning_user_id: str
    remote_store_id: str
    version: Optional[datetime] = None
    local_state: SyncState = SyncState.NONE
    remote_state: SyncState = SyncState.NONE
    extra: ExtraParameters = field(default_factory=ExtraParameters)
    remote_item_name: Optional[str] = None
    schema_order: int = 0
    modified_in_store_id: Optional[str] = None
    is_deleted: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MetadataRecord":
        return cls(
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            sync_schema_name=row["sync_schema_name"],
            owning_user_id=row["owning_user_id"],
            remote_store_id=row["remote_store_id"],
            version=from_db_time(row["version"]),
            local_state=SyncState(row["local_state"]),
            remote_state=SyncState(row["remote_state"]),
            extra=ExtraParameters.from_json(row["extra_parameters"]),
            remote_item_name=row["remote_item_name"],
            schema_order=row["schema_order"],
            modified_in_store_id=row["modified_in_store_id"],
            is_deleted=bool(row["is_deleted"]),
        )


class SyncDatabase:
    """
    SQLite database manager for sync metadata.

    Provides methods for:
    - Linking local records to remote items per user and remote store
    - Tracking the last synchronized version (watermark) per store
    - Cross-session entity locks keyed by (identity, lock domain)
    - Session-level error tracking

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.

        Returns:
            sqlite3.Connection: Database connection
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(":memory:")
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sys_sync_metadata")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """
        Initialize the database schema.

        Creates all tables and indexes if they don't exist.
        """
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Metadata Operations
    # =========================================================================

    def get_metadata(
        self,
        local_id: str,
        sync_schema_name: str,
        remote_store_id: str,
        owning_user_id: str,
        include_deleted: bool = False,
    ) -> Optional[MetadataRecord]:
        """
        Get the metadata record of one local record.

        Args:
            local_id: Local record identity
            sync_schema_name: Local schema name
            remote_store_id: Remote store identifier
            owning_user_id: Owning user identifier
            include_deleted: Also return soft-deleted rows

        Returns:
            MetadataRecord, or None if not found
        """
        query = """
            SELECT * FROM sys_sync_metadata
            WHERE local_id = ? AND sync_schema_name = ?
              AND remote_store_id = ? AND owning_user_id = ?
        """
        if not include_deleted:
            query += " AND is_deleted = 0"
        with self.connection() as conn:
            row = conn.execute(
                query, (local_id, sync_schema_name, remote_store_id, owning_user_id)
            ).fetchone()
            return MetadataRecord.from_row(row) if row else None

    def find_by_remote_id(
        self, remote_id: str, remote_store_id: str, owning_user_id: str
    ) -> list[MetadataRecord]:
        """
        Get all live metadata records of one remote item.

        Aggregate headers come first (schema_order 0), then detail records.

        Args:
            remote_id: Remote item identity
            remote_store_id: Remote store identifier
            owning_user_id: Owning user identifier

        Returns:
            List of MetadataRecord
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM sys_sync_metadata
                WHERE remote_id = ? AND remote_store_id = ? AND owning_user_id = ?
                  AND is_deleted = 0
                ORDER BY schema_order, id
                """,
                (remote_id, remote_store_id, owning_user_id),
            )
            return [MetadataRecord.from_row(row) for row in cursor.fetchall()]

    def find_by_local_id(
        self,
        local_id: str,
        owning_user_id: Optional[str] = None,
        remote_store_id: Optional[str] = None,
    ) -> list[MetadataRecord]:
        """
        Get live metadata records of a local record.

        Args:
            local_id: Local record identity
            owning_user_id: Restrict to one owning user (optional)
            remote_store_id: Restrict to one remote store (optional)

        Returns:
            List of MetadataRecord
        """
        query = "SELECT * FROM sys_sync_metadata WHERE local_id = ? AND is_deleted = 0"
        params: list[Any] = [local_id]
        if owning_user_id is not None:
            query += " AND owning_user_id = ?"
            params.append(owning_user_id)
        if remote_store_id is not None:
            query += " AND remote_store_id = ?"
            params.append(remote_store_id)
        with self.connection() as conn:
            cursor = conn.execute(query + " ORDER BY id", params)
            return [MetadataRecord.from_row(row) for row in cursor.fetchall()]

    def list_metadata(
        self,
        remote_store_id: str,
        owning_user_id: str,
        sync_schema_name: Optional[str] = None,
        include_deleted: bool = False,
    ) -> list[MetadataRecord]:
        """
        Get metadata records of a store and user.

        Args:
            remote_store_id: Remote store identifier
            owning_user_id: Owning user identifier
            sync_schema_name: Restrict to one local schema (optional)
            include_deleted: Also return soft-deleted rows

        Returns:
            List of MetadataRecord
        """
        query = """
            SELECT * FROM sys_sync_metadata
            WHERE remote_store_id = ? AND owning_user_id = ?
        """
        params: list[Any] = [remote_store_id, owning_user_id]
        if sync_schema_name is not None:
            query += " AND sync_schema_name = ?"
            params.append(sync_schema_name)
        if not include_deleted:
            query += " AND is_deleted = 0"
        with self.connection() as conn:
            cursor = conn.execute(query + " ORDER BY schema_order, id", params)
            return [MetadataRecord.from_row(row) for row in cursor.fetchall()]

    def get_locally_modified(
        self, remote_store_id: str, owning_user_id: str, since: Optional[datetime]
    ) -> list[MetadataRecord]:
        """
        Get rows changed on the local side after ``since``.

        Args:
            remote_store_id: Remote store identifier
            owning_user_id: Owning user identifier
            since: Watermark; None returns every locally changed row

        Returns:
            List of MetadataRecord
        """
        query = """
            SELECT * FROM sys_sync_metadata
            WHERE remote_store_id = ? AND owning_user_id = ?
              AND modified_in_store_id = ? AND is_deleted = 0
        """
        params: list[Any] = [remote_store_id, owning_user_id, LOCAL_STORE_ID]
        if since is not None:
            query += " AND version > ?"
            params.append(to_db_time(since))
        with self.connection() as conn:
            cursor = conn.execute(query + " ORDER BY schema_order, id", params)
            return [MetadataRecord.from_row(row) for row in cursor.fetchall()]

    def has_metadata(
        self, local_id: str, remote_store_id: str, owning_user_id: str
    ) -> bool:
        """Check whether a local record has a live row for the store and user."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM sys_sync_metadata
                WHERE local_id = ? AND remote_store_id = ? AND owning_user_id = ?
                  AND is_deleted = 0
                LIMIT 1
                """,
                (local_id, remote_store_id, owning_user_id),
            ).fetchone()
            return row is not None

    def upsert_metadata(self, record: MetadataRecord) -> None:
        """
        Insert or update a metadata record.

        Re-inserting a soft-deleted row revives it.

        Args:
            record: The record to store
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sys_sync_metadata (
                    local_id, remote_id, sync_schema_name, version,
                    local_state, remote_state, owning_user_id, remote_store_id,
                    remote_item_name, schema_order, modified_in_store_id,
                    extra_parameters, is_deleted
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(local_id, sync_schema_name, remote_store_id, owning_user_id)
                DO UPDATE SET
                    remote_id = excluded.remote_id,
                    version = excluded.version,
                    local_state = excluded.local_state,
                    remote_state = excluded.remote_state,
                    remote_item_name = excluded.remote_item_name,
                    schema_order = excluded.schema_order,
                    modified_in_store_id = excluded.modified_in_store_id,
                    extra_parameters = excluded.extra_parameters,
                    is_deleted = 0,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    record.local_id,
                    record.remote_id,
                    record.sync_schema_name,
                    to_db_time(record.version),
                    record.local_state.value,
                    record.remote_state.value,
                    record.owning_user_id,
                    record.remote_store_id,
                    record.remote_item_name,
                    record.schema_order,
                    record.modified_in_store_id,
                    record.extra.to_json(),
                ),
            )

    def soft_delete_metadata(
        self,
        local_id: str,
        sync_schema_name: str,
        remote_store_id: str,
        owning_user_id: str,
    ) -> bool:
        """
        Mark a metadata record as deleted.

        Returns:
            True if a live row was marked
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sys_sync_metadata
                SET is_deleted = 1, local_state = ?, updated_at = CURRENT_TIMESTAMP
                WHERE local_id = ? AND sync_schema_name = ?
                  AND remote_store_id = ? AND owning_user_id = ? AND is_deleted = 0
                """,
                (
                    SyncState.DELETED.value,
                    local_id,
                    sync_schema_name,
                    remote_store_id,
                    owning_user_id,
                ),
            )
            return cursor.rowcount > 0

    def update_metadata_version(
        self,
        local_id: str,
        sync_schema_name: str,
        remote_store_id: str,
        version: datetime,
        local_state: SyncState,
        owning_user_id: Optional[str] = None,
        modified_in_store_id: str = LOCAL_STORE_ID,
    ) -> int:
        """
        Record a change of a linked local record made outside a sync session.

        Args:
            local_id: Local record identity
            sync_schema_name: Local schema name
            remote_store_id: Remote store identifier
            version: New version (the record's modification time)
            local_state: New local state
            owning_user_id: Restrict to rows of one user; None updates all users
            modified_in_store_id: Store that made the change

        Returns:
            Number of rows updated
        """
        query = """
            UPDATE sys_sync_metadata
            SET version = ?, local_state = ?, modified_in_store_id = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE local_id = ? AND sync_schema_name = ? AND remote_store_id = ?
              AND is_deleted = 0
        """
        params: list[Any] = [
            to_db_time(version),
            local_state.value,
            modified_in_store_id,
            local_id,
            sync_schema_name,
            remote_store_id,
        ]
        if owning_user_id is not None:
            query += " AND owning_user_id = ?"
            params.append(owning_user_id)
        with self.connection() as conn:
            return conn.execute(query, params).rowcount

    # =========================================================================
    # Sync State Operations
    # =========================================================================

    def get_last_sync(
        self, remote_store_id: str, owning_user_id: str
    ) -> Optional[datetime]:
        """
        Get the watermark of a store and user.

        Returns:
            Last committed sync version, or None before the first commit
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT last_sync_at FROM sync_state
                WHERE remote_store_id = ? AND owning_user_id = ?
                """,
                (remote_store_id, owning_user_id),
            ).fetchone()
            return from_db_time(row["last_sync_at"]) if row else None

    def update_last_sync(
        self, remote_store_id: str, owning_user_id: str, version: datetime
    ) -> None:
        """
        Update or insert the watermark of a store and user.

        Args:
            remote_store_id: Remote store identifier
            owning_user_id: Owning user identifier
            version: The new watermark
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (remote_store_id, owning_user_id, last_sync_at)
                VALUES (?, ?, ?)
                ON CONFLICT(remote_store_id, owning_user_id) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at
                """,
                (remote_store_id, owning_user_id, to_db_time(version)),
            )

    def clear_last_sync(
        self,
        remote_store_id: Optional[str] = None,
        owning_user_id: Optional[str] = None,
    ) -> int:
        """
        Clear watermarks (forces a full window enumeration).

        Returns:
            Number of watermarks removed
        """
        query = "DELETE FROM sync_state WHERE 1 = 1"
        params: list[Any] = []
        if remote_store_id is not None:
            query += " AND remote_store_id = ?"
            params.append(remote_store_id)
        if owning_user_id is not None:
            query += " AND owning_user_id = ?"
            params.append(owning_user_id)
        with self.connection() as conn:
            return conn.execute(query, params).rowcount

    def list_sync_states(self) -> list[dict[str, Any]]:
        """Get all watermarks."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT remote_store_id, owning_user_id, last_sync_at FROM sync_state "
                "ORDER BY remote_store_id, owning_user_id"
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Lock Operations
    # =========================================================================

    def try_acquire_lock(self, identity: str, domain: str, owner: str) -> bool:
        """
        Take the lock of ``identity`` in ``domain`` for ``owner``.

        Succeeds when the lock is free or already held by ``owner``.

        Returns:
            True if ``owner`` holds the lock afterwards
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO entity_sync_lock (identity, domain, owner)
                VALUES (?, ?, ?)
                """,
                (identity, domain, owner),
            )
            row = conn.execute(
                "SELECT owner FROM entity_sync_lock WHERE identity = ? AND domain = ?",
                (identity, domain),
            ).fetchone()
            return row is not None and row["owner"] == owner

    def get_lock_owner(self, identity: str, domain: str) -> Optional[str]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT owner FROM entity_sync_lock WHERE identity = ? AND domain = ?",
                (identity, domain),
            ).fetchone()
            return row["owner"] if row else None

    def release_lock(self, identity: str, domain: str, owner: str) -> bool:
        """
        Release a lock held by ``owner``.

        Returns:
            True if a lock was released
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM entity_sync_lock
                WHERE identity = ? AND domain = ? AND owner = ?
                """,
                (identity, domain, owner),
            )
            return cursor.rowcount > 0

    def release_locks(self, owner: Optional[str] = None) -> int:
        """
        Release all locks of ``owner``, or every lock when owner is None.

        Returns:
            Number of locks released
        """
        with self.connection() as conn:
            if owner is None:
                return conn.execute("DELETE FROM entity_sync_lock").rowcount
            return conn.execute(
                "DELETE FROM entity_sync_lock WHERE owner = ?", (owner,)
            ).rowcount

    # =========================================================================
    # Sync Error Operations
    # =========================================================================

    def record_sync_error(self, session_key: str, message: str) -> int:
        """
        Record a session-level error.

        Returns:
            Number of consecutive errors recorded for the session
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_error (session_key, error_count, last_error)
                VALUES (?, 1, ?)
                ON CONFLICT(session_key) DO UPDATE SET
                    error_count = error_count + 1,
                    last_error = excluded.last_error,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (session_key, message),
            )
            row = conn.execute(
                "SELECT error_count FROM sync_error WHERE session_key = ?",
                (session_key,),
            ).fetchone()
            return int(row["error_count"])

    def set_sync_suspended(self, session_key: str, suspended: bool = True) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_error SET is_suspended = ? WHERE session_key = ?",
                (1 if suspended else 0, session_key),
            )

    def get_sync_error(self, session_key: str) -> Optional[dict[str, Any]]:
        """
        Get the error state of a session.

        Returns:
            Dictionary with error_count, last_error and is_suspended, or None
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT error_count, last_error, is_suspended FROM sync_error
                WHERE session_key = ?
                """,
                (session_key,),
            ).fetchone()
            if row is None:
                return None
            return {
                "error_count": row["error_count"],
                "last_error": row["last_error"],
                "is_suspended": bool(row["is_suspended"]),
            }

    def clear_sync_error(self, session_key: Optional[str] = None) -> int:
        """Clear the error state of a session, or of all sessions."""
        with self.connection() as conn:
            if session_key is None:
                return conn.execute("DELETE FROM sync_error").rowcount
            return conn.execute(
                "DELETE FROM sync_error WHERE session_key = ?", (session_key,)
            ).rowcount

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        """
        Get database statistics.

        Returns:
            Dictionary with live and deleted metadata counts per store,
            and the number of held locks and recorded session errors
        """
        with self.connection() as conn:
            per_store: dict[str, dict[str, int]] = {}
            cursor = conn.execute(
                """
                SELECT remote_store_id, is_deleted, COUNT(*) AS total
                FROM sys_sync_metadata
                GROUP BY remote_store_id, is_deleted
                """
            )
            for row in cursor.fetchall():
                counts = per_store.setdefault(
                    row["remote_store_id"], {"live": 0, "deleted": 0}
                )
                counts["deleted" if row["is_deleted"] else "live"] = row["total"]
            locks = conn.execute("SELECT COUNT(*) FROM entity_sync_lock").fetchone()[0]
            errors = conn.execute("SELECT COUNT(*) FROM sync_error").fetchone()[0]
            return {"metadata": per_store, "locks": locks, "session_errors": errors}

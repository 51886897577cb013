"""
Error classification and session-level error tracking.

Errors raised while synchronizing fall into three tiers:

- ITEM: the remote object does not exist or may not be read. The item is
  treated as a tombstone or skipped and the pass continues.
- SESSION: transient connectivity failure. The error is recorded in the
  metadata database; after ``max_session_errors`` consecutive failures the
  session is suspended.
- FATAL: anything else. The error is recorded and rethrown by the caller.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from groupware_sync.api.remote import (
    AccessDeniedError,
    ItemNotFoundError,
    RemoteConnectionError,
)
from groupware_sync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)


class ErrorTier(str, Enum):
    """Recovery tier of a synchronization error."""

    ITEM = "item"
    SESSION = "session"
    FATAL = "fatal"


def classify(error: BaseException) -> ErrorTier:
    """Return the recovery tier of ``error``."""
    if isinstance(error, (ItemNotFoundError, AccessDeniedError)):
        return ErrorTier.ITEM
    if isinstance(error, RemoteConnectionError):
        return ErrorTier.SESSION
    return ErrorTier.FATAL


class SyncErrorHelper:
    """
    Records session-level errors of one sync session.

    Attributes:
        db: Metadata database holding the error state
        session_key: Key of the (user, mailbox, store) session
        max_session_errors: Consecutive errors before the session is suspended

    Usage:
        try:
            ...
        except Exception as e:
            if errors.handle(e) is ErrorTier.FATAL:
                raise
    """

    def __init__(self, db: SyncDatabase, session_key: str, max_session_errors: int = 3):
        self.db = db
        self.session_key = session_key
        self.max_session_errors = max_session_errors

    def handle(self, error: BaseException, context: str = "") -> ErrorTier:
        """
        Classify and record an error.

        Item-level errors are only logged. Session-level and fatal errors are
        recorded; the caller is responsible for rethrowing fatal errors.

        Args:
            error: The exception
            context: Short description of the failed operation

        Returns:
            The error tier
        """
        tier = classify(error)
        where = f" while {context}" if context else ""

        if tier is ErrorTier.ITEM:
            logger.warning(f"Skipping item{where}: {error}")
            return tier

        count = self.db.record_sync_error(self.session_key, f"{type(error).__name__}: {error}")

        if tier is ErrorTier.SESSION:
            logger.warning(
                f"Transient error{where} ({count}/{self.max_session_errors}): {error}"
            )
            if count >= self.max_session_errors:
                self.db.set_sync_suspended(self.session_key, True)
                logger.error(
                    f"Session {self.session_key} suspended after {count} errors"
                )
        else:
            logger.error(f"Unexpected error{where}: {error}")

        return tier

    @property
    def is_suspended(self) -> bool:
        state = self.db.get_sync_error(self.session_key)
        return bool(state and state["is_suspended"])

    @property
    def last_error(self) -> Optional[str]:
        state = self.db.get_sync_error(self.session_key)
        return state["last_error"] if state else None

    def clear(self) -> None:
        """Forget the error state (called when a session commits)."""
        self.db.clear_sync_error(self.session_key)

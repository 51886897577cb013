"""
Guard chain shared by the per-kind mappers.

A mapper composes an ordered ``GuardChain`` instead of inheriting guard
methods. The chain stops at the first failing guard, sets the failure
action (and optionally state) on the whole local aggregate and logs why.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from groupware_sync.sync.models import (
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncState,
)

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)


@dataclass
class Guard:
    """
    One step of a guard chain.

    Attributes:
        name: Short name used in log messages
        check: Returns True when processing may continue
        on_failure: Action set on the aggregate when the check fails
        state: State set on the aggregate when the check fails (optional)
    """

    name: str
    check: Callable[[], bool]
    on_failure: SyncAction = SyncAction.NONE
    state: Optional[SyncState] = None


class GuardChain:
    """
    Ordered list of guards evaluated until the first failure.

    Usage:
        chain = GuardChain("appointment Review")
        chain.add("not deleted", lambda: check_not_deleted(item), SyncAction.DELETE)
        chain.add("not locked", lambda: check_not_locked(session, uid, domain))
        if not chain.run(local_item):
            return
    """

    def __init__(self, subject: str):
        self.subject = subject
        self.guards: list[Guard] = []
        self.failed: Optional[Guard] = None

    def add(
        self,
        name: str,
        check: Callable[[], bool],
        on_failure: SyncAction = SyncAction.NONE,
        state: Optional[SyncState] = None,
    ) -> GuardChain:
        self.guards.append(Guard(name, check, on_failure, state))
        return self

    def run(self, local_item: LocalItem) -> bool:
        """
        Evaluate the guards in order.

        Returns:
            True if every guard passed
        """
        for guard in self.guards:
            if guard.check():
                continue
            self.failed = guard
            local_item.set_action(guard.on_failure)
            if guard.state is not None:
                for sync_entity in local_item.all_entities():
                    sync_entity.state = guard.state
            logger.info(
                f"Skipping {self.subject}: '{guard.name}' check failed "
                f"(action {guard.on_failure.value})"
            )
            return False
        return True


def check_not_deleted(item: RemoteItem) -> bool:
    """The remote item still exists."""
    return item.state != SyncState.DELETED and item.item is not None


def check_stable_identity(identity: Optional[str]) -> bool:
    """The remote item carries a non-empty external identity."""
    return bool(identity and identity.strip())


def check_not_locked(session: SyncSession, identity: str, domain: str) -> bool:
    """The aggregate is not locked by another session (takes the lock)."""
    return session.locks.try_lock(identity, domain)

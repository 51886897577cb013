"""
groupware_sync.sync - Synchronization engine

Per-kind mappers, detail reconcilers, conflict resolution, recurring
series fan-out and the session driver.
"""

from groupware_sync.sync.models import (
    ConflictResolution,
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncEntity,
    SyncState,
)

__all__ = [
    "ConflictResolution",
    "LocalItem",
    "RemoteItem",
    "SyncAction",
    "SyncDirection",
    "SyncEntity",
    "SyncState",
]

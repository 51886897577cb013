"""
Conflict resolution module for groupware synchronization.

Decides which side receives the changes of a candidate that may have been
altered on both sides since the last pass. The policy is deterministic:

1. A "create recurring master" candidate always applies to local.
2. Without metadata there is nothing to compare against: apply to local.
3. With metadata, when content hash suppression is enabled and either the
   remote side deleted the item or the stored hash still equals the item's
   current hash, the remote copy is stale: apply to remote.
4. Otherwise the later version wins; ties go to local.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from groupware_sync.storage.db import MetadataRecord
from groupware_sync.sync.models import (
    ConflictResolution,
    RemoteItem,
    SyncAction,
)

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession


@dataclass
class ConflictResult:
    """
    Result of a conflict resolution.

    Attributes:
        resolution: Which side receives the changes
        reason: Human-readable explanation of the decision
    """

    resolution: ConflictResolution
    reason: str

    @property
    def apply_to_local(self) -> bool:
        return self.resolution == ConflictResolution.APPLY_TO_LOCAL


class ConflictResolver:
    """
    Resolves conflicts between a remote item and its local aggregate.

    Usage:
        resolver = ConflictResolver(session, hash_enabled=True)
        result = resolver.resolve(item, metadata, local_version)
        if result.apply_to_local:
            item.fill_local_item(session, local_item)

    Attributes:
        session: Current sync session
        hash_enabled: Whether content hash suppression applies
    """

    def __init__(self, session: "SyncSession", hash_enabled: bool = False):
        self.session = session
        self.hash_enabled = hash_enabled

    def resolve(
        self,
        item: RemoteItem,
        metadata: Optional[MetadataRecord],
        local_version: Optional[datetime],
    ) -> ConflictResult:
        """
        Decide which side wins.

        Args:
            item: Remote candidate
            metadata: Metadata row of the aggregate header, if linked
            local_version: Latest modification time of the local aggregate

        Returns:
            ConflictResult
        """
        if item.action == SyncAction.CREATE_RECURRING_MASTER:
            return ConflictResult(
                ConflictResolution.APPLY_TO_LOCAL,
                "Recurring master replaces its single-instance representation",
            )

        if metadata is None:
            return ConflictResult(
                ConflictResolution.APPLY_TO_LOCAL, "No metadata, first import"
            )

        if self.hash_enabled:
            if item.action == SyncAction.DELETE:
                return ConflictResult(
                    ConflictResolution.APPLY_TO_REMOTE,
                    "Remote item deleted, local aggregate is kept",
                )
            stored_hash = metadata.extra.content_hash
            if stored_hash is not None and stored_hash == item.content_hash(self.session):
                return ConflictResult(
                    ConflictResolution.APPLY_TO_REMOTE,
                    "Remote content unchanged since last sync",
                )

        return self._resolve_latest_version_wins(item.version, local_version)

    def _resolve_latest_version_wins(
        self, remote_version: Optional[datetime], local_version: Optional[datetime]
    ) -> ConflictResult:
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        remote_time = _aware(remote_version) or epoch
        local_time = _aware(local_version) or epoch

        if remote_time > local_time:
            return ConflictResult(
                ConflictResolution.APPLY_TO_LOCAL,
                f"Remote has newer version ({remote_time} > {local_time})",
            )
        if local_time > remote_time:
            return ConflictResult(
                ConflictResolution.APPLY_TO_REMOTE,
                f"Local has newer version ({local_time} > {remote_time})",
            )
        return ConflictResult(
            ConflictResolution.APPLY_TO_LOCAL,
            f"Versions are equal ({remote_time}), remote import wins",
        )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

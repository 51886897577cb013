"""
Typed extension payload stored with every metadata record.

The payload used to be an ad hoc JSON blob. It is now a single versioned
record, serialized and parsed only here:

    {
        "Version": 1,
        "RemoteId": "AAMkAD...",
        "ContentHash": "3f1c...",
        "PriorStatus": "New",
        "PriorDueDate": "2024-06-15T10:30:00+00:00",
        "IsPrivate": false,
        "Title": "Quarterly review",
        "Slot": "EmailAddress1"
    }

Appointment aggregates use the hash, status, due date, privacy and title
fields; detail children (addresses, phones, e-mails) only carry ``Slot``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional

# Current payload schema version
EXTRA_PARAMETERS_VERSION = 1

_FIELD_KEYS = {
    "remote_id": "RemoteId",
    "content_hash": "ContentHash",
    "prior_status": "PriorStatus",
    "prior_due_date": "PriorDueDate",
    "is_private": "IsPrivate",
    "title": "Title",
    "slot": "Slot",
}

# Keys written by older payload versions
_LEGACY_KEYS = {
    "ActivityHash": "ContentHash",
    "StatusId": "PriorStatus",
    "EndDate": "PriorDueDate",
}


class ExtraParametersError(ValueError):
    """Raised when a stored payload cannot be parsed."""

    pass


@dataclass(frozen=True)
class ExtraParameters:
    """
    Extension payload of a synchronized local record.

    Attributes:
        remote_id: Bindable remote store identifier
        content_hash: Hash of the semantically relevant fields at last sync
        prior_status: Activity status at last sync
        prior_due_date: Activity due date at last sync
        is_private: Whether the remote item was a private meeting
        title: Real title of a private meeting
        slot: Remote slot key a detail record is assigned to
        version: Payload schema version
    """

    remote_id: Optional[str] = None
    content_hash: Optional[str] = None
    prior_status: Optional[str] = None
    prior_due_date: Optional[datetime] = None
    is_private: Optional[bool] = None
    title: Optional[str] = None
    slot: Optional[str] = None
    version: int = EXTRA_PARAMETERS_VERSION

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in _FIELD_KEYS)

    def update(self, **changes: Any) -> ExtraParameters:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> ExtraParameters:
        """
        Parse a stored payload.

        Args:
            raw: JSON text, or None/empty for an empty payload

        Returns:
            ExtraParameters instance

        Raises:
            ExtraParametersError: If the text is not a JSON object
        """
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ExtraParametersError(f"Invalid extra parameters: {e}") from e
        if not isinstance(data, dict):
            raise ExtraParametersError(
                f"Extra parameters must be a JSON object, got {type(data).__name__}"
            )
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtraParameters:
        data = {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}
        values: dict[str, Any] = {}
        for name, key in _FIELD_KEYS.items():
            values[name] = data.get(key)
        due = values["prior_due_date"]
        if isinstance(due, str) and due:
            try:
                values["prior_due_date"] = datetime.fromisoformat(due)
            except ValueError as e:
                raise ExtraParametersError(f"Invalid PriorDueDate: {due}") from e
        elif not due:
            values["prior_due_date"] = None
        version = data.get("Version", EXTRA_PARAMETERS_VERSION)
        return cls(version=int(version), **values)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"Version": self.version}
        for name, key in _FIELD_KEYS.items():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            result[key] = value
        return result

    def to_json(self) -> Optional[str]:
        """Serialize the payload, or return None when it is empty."""
        if self.is_empty:
            return None
        return json.dumps(self.to_dict(), sort_keys=True)

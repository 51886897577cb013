"""
Local (CRM) store boundary.

The synchronization engine talks to the CRM database through the small
``LocalStore`` contract: query by schema and attribute filter, fetch by
identity, create with default values, insert, save and delete. Records are
exposed as ``Entity`` objects with typed column access and "is this column
loaded" introspection.

``InMemoryLocalStore`` is the reference implementation used by the CLI dry
runs and the test-suite.
"""

from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default column values applied by LocalStore.create()
SCHEMA_DEFAULTS: dict[str, dict[str, Any]] = {
    "Activity": {
        "Title": "",
        "Location": "",
        "Notes": "",
        "TypeId": "Task",
        "StatusId": "New",
        "PriorityId": "Medium",
        "ShowInScheduler": True,
        "RemindToOwner": False,
    },
    "ActivityParticipant": {
        "RoleId": "Participant",
        "InviteResponse": "InDoubt",
    },
    "Contact": {
        "Name": "",
        "Surname": "",
        "GivenName": "",
        "MiddleName": "",
        "JobTitle": "",
    },
    "ContactCommunication": {
        "Number": "",
    },
    "ContactAddress": {
        "Address": "",
        "City": "",
        "Region": "",
        "Zip": "",
        "Country": "",
    },
}


class LocalStoreError(Exception):
    """Raised when a local store operation cannot be completed."""

    pass


class Entity:
    """
    A single record of the local store.

    Column values are kept in a plain dictionary. A column that was never
    loaded (see ``LocalStore.fetch`` with ``columns``) is distinguishable
    from a column holding ``None`` through ``is_loaded``.

    Usage:
        entity = Entity("Activity", {"Id": "a1", "Title": "Review"})
        entity.set("Location", "Room 4")
        if entity.is_loaded("Notes"):
            notes = entity.get_typed("Notes", str, "")
    """

    def __init__(self, schema_name: str, values: Optional[dict[str, Any]] = None):
        self.schema_name = schema_name
        self._values: dict[str, Any] = dict(values or {})
        self._changed: set[str] = set()

    @property
    def id(self) -> Optional[str]:
        """Primary column value."""
        return self._values.get("Id")

    @property
    def created_on(self) -> Optional[datetime]:
        return self._values.get("CreatedOn")

    @property
    def modified_on(self) -> Optional[datetime]:
        return self._values.get("ModifiedOn")

    @property
    def changed_columns(self) -> frozenset[str]:
        """Columns set since the entity was loaded or last saved."""
        return frozenset(self._changed)

    def get(self, column: str, default: Any = None) -> Any:
        """Return a column value, or ``default`` when it is unset."""
        value = self._values.get(column)
        return default if value is None else value

    def get_typed(self, column: str, expected: type[T], default: Optional[T] = None) -> T:
        """
        Return a column value checked against ``expected``.

        Args:
            column: Column name
            expected: Expected Python type
            default: Value returned when the column is empty

        Returns:
            The column value

        Raises:
            TypeError: If the stored value has another type
        """
        value = self._values.get(column)
        if value is None:
            return default  # type: ignore[return-value]
        if not isinstance(value, expected):
            raise TypeError(
                f"{self.schema_name}.{column} holds {type(value).__name__}, "
                f"expected {expected.__name__}"
            )
        return value

    def set(self, column: str, value: Any) -> None:
        """Set a column value and mark it as changed."""
        if self._values.get(column) != value or column not in self._values:
            self._changed.add(column)
        self._values[column] = value

    def is_loaded(self, column: str) -> bool:
        """Check whether a column value was loaded or set."""
        return column in self._values

    def mark_saved(self) -> None:
        self._changed.clear()

    def as_dict(self) -> dict[str, Any]:
        """Return a copy of all loaded column values."""
        return dict(self._values)

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return f"Entity(schema={self.schema_name!r}, id={self.id!r})"


class LocalStore(ABC):
    """Contract of the local relational store used by the sync engine."""

    @abstractmethod
    def create(self, schema_name: str) -> Entity:
        """Return a new, not yet persisted entity with default values."""

    @abstractmethod
    def insert(self, entity: Entity) -> None:
        """Persist a new entity."""

    @abstractmethod
    def save(self, entity: Entity) -> None:
        """Persist changes of an existing entity."""

    @abstractmethod
    def delete(self, schema_name: str, entity_id: str) -> bool:
        """Delete an entity. Returns False when it did not exist."""

    @abstractmethod
    def fetch(
        self,
        schema_name: str,
        entity_id: str,
        columns: Optional[Iterable[str]] = None,
    ) -> Optional[Entity]:
        """Load an entity by identity, optionally only some columns."""

    @abstractmethod
    def query(self, schema_name: str, **filters: Any) -> list[Entity]:
        """
        Return entities whose columns match all ``filters``.

        A filter value is compared for equality, or called with the column
        value when it is callable.
        """


class InMemoryLocalStore(LocalStore):
    """
    Dictionary backed local store.

    Stamps ``CreatedOn`` and ``ModifiedOn`` from ``clock`` on every write,
    so change detection against metadata versions works as it does against
    a real CRM database.

    Usage:
        store = InMemoryLocalStore()
        contact = store.add("Contact", Surname="Doe", GivenName="Jane")
        found = store.query("Contact", Surname="Doe")
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        defaults: Optional[dict[str, dict[str, Any]]] = None,
    ):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.defaults = defaults if defaults is not None else SCHEMA_DEFAULTS
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}

    def _table(self, schema_name: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(schema_name, {})

    def create(self, schema_name: str) -> Entity:
        values = copy.deepcopy(self.defaults.get(schema_name, {}))
        values["Id"] = str(uuid.uuid4())
        return Entity(schema_name, values)

    def insert(self, entity: Entity) -> None:
        if entity.id is None:
            entity.set("Id", str(uuid.uuid4()))
        table = self._table(entity.schema_name)
        if entity.id in table:
            raise LocalStoreError(
                f"{entity.schema_name} record {entity.id} already exists"
            )
        now = self.clock()
        if entity.get("CreatedOn") is None:
            entity.set("CreatedOn", now)
        entity.set("ModifiedOn", now)
        table[entity.id] = entity.as_dict()
        entity.mark_saved()
        logger.debug(f"Inserted {entity.schema_name} {entity.id}")

    def save(self, entity: Entity) -> None:
        table = self._table(entity.schema_name)
        if entity.id not in table:
            raise LocalStoreError(
                f"{entity.schema_name} record {entity.id} does not exist"
            )
        entity.set("ModifiedOn", self.clock())
        table[entity.id].update(entity.as_dict())
        entity.mark_saved()
        logger.debug(f"Saved {entity.schema_name} {entity.id}")

    def delete(self, schema_name: str, entity_id: str) -> bool:
        removed = self._table(schema_name).pop(entity_id, None)
        if removed is not None:
            logger.debug(f"Deleted {schema_name} {entity_id}")
        return removed is not None

    def fetch(
        self,
        schema_name: str,
        entity_id: str,
        columns: Optional[Iterable[str]] = None,
    ) -> Optional[Entity]:
        row = self._table(schema_name).get(entity_id)
        if row is None:
            return None
        values = copy.deepcopy(row)
        if columns is not None:
            wanted = set(columns) | {"Id"}
            values = {k: v for k, v in values.items() if k in wanted}
        return Entity(schema_name, values)

    def query(self, schema_name: str, **filters: Any) -> list[Entity]:
        result = []
        for row in self._table(schema_name).values():
            if all(_matches(row.get(col), expected) for col, expected in filters.items()):
                result.append(Entity(schema_name, copy.deepcopy(row)))
        return result

    def add(self, schema_name: str, **values: Any) -> Entity:
        """Create, fill and insert an entity in one call."""
        entity = self.create(schema_name)
        for column, value in values.items():
            entity.set(column, value)
        self.insert(entity)
        return entity

    def count(self, schema_name: str) -> int:
        return len(self._table(schema_name))


def _matches(value: Any, expected: Any) -> bool:
    if callable(expected):
        return value is not None and bool(expected(value))
    return value == expected

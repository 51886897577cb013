"""
Search filter tree for remote item queries.

Filters are composed from leaf predicates over a bounded set of item
properties with ``And``, ``Or`` and ``Not``:

    modified = IsGreaterThan(SearchProperty.LAST_MODIFIED, last_sync)
    unlinked = Not(Exists(SearchProperty.LOCAL_ID))
    in_window = IsGreaterThanOrEqualTo(SearchProperty.START, window_start)
    search_filter = And(in_window, Or(modified, unlinked))

A remote store client translates the tree into its wire format; the
in-memory store evaluates it directly through ``matches``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

# Extended property carrying the local record id on remote items
LOCAL_ID_PROPERTY = "LocalId"


class SearchProperty(str, Enum):
    """Item properties usable in search filters."""

    LAST_MODIFIED = "last_modified"
    START = "start"
    DATE_TIME_RECEIVED = "date_time_received"
    ITEM_CLASS = "item_class"
    APPOINTMENT_TYPE = "appointment_type"
    LOCAL_ID = "local_id"


def property_value(item: Any, prop: SearchProperty) -> Any:
    """Read a searchable property of a remote item."""
    if prop == SearchProperty.LOCAL_ID:
        return (getattr(item, "extended_properties", None) or {}).get(
            LOCAL_ID_PROPERTY
        )
    return getattr(item, prop.value, None)


class SearchFilter(ABC):
    """Base of all filter tree nodes."""

    @abstractmethod
    def matches(self, item: Any) -> bool:
        """Evaluate the filter against a remote item."""

    def __and__(self, other: SearchFilter) -> And:
        return And(self, other)

    def __or__(self, other: SearchFilter) -> Or:
        return Or(self, other)

    def __invert__(self) -> Not:
        return Not(self)


class _Comparison(SearchFilter):
    operator = ""

    def __init__(self, prop: SearchProperty, value: Any):
        self.prop = prop
        self.value = value

    def matches(self, item: Any) -> bool:
        actual = property_value(item, self.prop)
        if actual is None:
            return False
        return self._compare(actual)

    def _compare(self, actual: Any) -> bool:
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        return (
            type(other) is type(self)
            and other.prop == self.prop  # type: ignore[attr-defined]
            and other.value == self.value  # type: ignore[attr-defined]
        )

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.prop, self.value))

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return f"{self.prop.value} {self.operator} {self.value!r}"


class IsEqualTo(_Comparison):
    operator = "=="

    def _compare(self, actual: Any) -> bool:
        return bool(actual == self.value)


class IsGreaterThan(_Comparison):
    operator = ">"

    def _compare(self, actual: Any) -> bool:
        return bool(actual > self.value)


class IsGreaterThanOrEqualTo(_Comparison):
    operator = ">="

    def _compare(self, actual: Any) -> bool:
        return bool(actual >= self.value)


class IsLessThan(_Comparison):
    operator = "<"

    def _compare(self, actual: Any) -> bool:
        return bool(actual < self.value)


class Exists(SearchFilter):
    """Matches items where the property holds a value."""

    def __init__(self, prop: SearchProperty):
        self.prop = prop

    def matches(self, item: Any) -> bool:
        return property_value(item, self.prop) not in (None, "")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Exists) and other.prop == self.prop

    def __hash__(self) -> int:
        return hash(("Exists", self.prop))

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return f"exists({self.prop.value})"


class _Collection(SearchFilter):
    joiner = ""

    def __init__(self, *filters: SearchFilter):
        if not filters:
            raise ValueError(f"{type(self).__name__} needs at least one filter")
        self.filters = tuple(filters)

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and other.filters == self.filters  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.filters))

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return "(" + f" {self.joiner} ".join(repr(f) for f in self.filters) + ")"


class And(_Collection):
    joiner = "AND"

    def matches(self, item: Any) -> bool:
        return all(f.matches(item) for f in self.filters)


class Or(_Collection):
    joiner = "OR"

    def matches(self, item: Any) -> bool:
        return any(f.matches(item) for f in self.filters)


class Not(SearchFilter):
    def __init__(self, inner: SearchFilter):
        self.inner = inner

    def matches(self, item: Any) -> bool:
        return not self.inner.matches(item)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Not) and other.inner == self.inner

    def __hash__(self) -> int:
        return hash(("Not", self.inner))

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return f"NOT {self.inner!r}"

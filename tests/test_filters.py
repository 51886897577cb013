"""Tests for the remote search filter tree."""

from datetime import datetime, timedelta, timezone

import pytest

from groupware_sync.api.filters import (
    LOCAL_ID_PROPERTY,
    And,
    Exists,
    IsEqualTo,
    IsGreaterThan,
    IsGreaterThanOrEqualTo,
    IsLessThan,
    Not,
    Or,
    SearchProperty,
    property_value,
)
from groupware_sync.api.remote import AppointmentType, RemoteAppointment

T0 = datetime(2024, 6, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def appointment():
    """Create an appointment linked to a local record."""
    return RemoteAppointment(
        subject="Review",
        start=T0,
        end=T0 + timedelta(hours=1),
        last_modified=T0,
        extended_properties={LOCAL_ID_PROPERTY: "activity-1"},
    )


class TestPropertyValue:
    """Tests for reading searchable properties."""

    def test_plain_attribute(self, appointment):
        """Regular properties are read from the attribute of the same name."""
        assert property_value(appointment, SearchProperty.START) == T0

    def test_local_id_from_extended_properties(self, appointment):
        """The local id lives in the extended properties."""
        assert property_value(appointment, SearchProperty.LOCAL_ID) == "activity-1"

    def test_missing_attribute(self):
        """Properties an item does not have read as None."""
        assert property_value(object(), SearchProperty.DATE_TIME_RECEIVED) is None


class TestComparisons:
    """Tests for leaf comparison nodes."""

    def test_is_equal_to(self, appointment):
        """Equality compares enum members and values alike."""
        node = IsEqualTo(SearchProperty.APPOINTMENT_TYPE, AppointmentType.SINGLE)
        assert node.matches(appointment)

    def test_greater_than_is_strict(self, appointment):
        """IsGreaterThan excludes the boundary."""
        assert not IsGreaterThan(SearchProperty.LAST_MODIFIED, T0).matches(appointment)
        assert IsGreaterThanOrEqualTo(SearchProperty.LAST_MODIFIED, T0).matches(appointment)

    def test_less_than(self, appointment):
        """IsLessThan compares against the item value."""
        later = T0 + timedelta(minutes=1)
        assert IsLessThan(SearchProperty.START, later).matches(appointment)

    def test_none_never_matches(self):
        """Comparisons against a missing value are false."""
        item = RemoteAppointment()
        assert not IsLessThan(SearchProperty.START, T0).matches(item)
        assert not IsGreaterThan(SearchProperty.START, T0).matches(item)


class TestExists:
    """Tests for the Exists node."""

    def test_exists(self, appointment):
        """A set extended property exists."""
        assert Exists(SearchProperty.LOCAL_ID).matches(appointment)

    def test_empty_value_does_not_exist(self):
        """An empty string counts as missing."""
        item = RemoteAppointment(extended_properties={LOCAL_ID_PROPERTY: ""})
        assert not Exists(SearchProperty.LOCAL_ID).matches(item)


class TestComposition:
    """Tests for And, Or and Not."""

    def test_and(self, appointment):
        """And requires every child to match."""
        node = And(
            IsGreaterThanOrEqualTo(SearchProperty.START, T0),
            Exists(SearchProperty.LOCAL_ID),
        )
        assert node.matches(appointment)
        assert not And(node, Not(Exists(SearchProperty.LOCAL_ID))).matches(appointment)

    def test_or(self, appointment):
        """Or requires one child to match."""
        node = Or(IsLessThan(SearchProperty.START, T0), Exists(SearchProperty.LOCAL_ID))
        assert node.matches(appointment)

    def test_operators(self, appointment):
        """The &, | and ~ operators build the same trees."""
        modified = IsGreaterThan(SearchProperty.LAST_MODIFIED, T0 - timedelta(days=1))
        unlinked = ~Exists(SearchProperty.LOCAL_ID)

        assert modified & unlinked == And(modified, unlinked)
        assert (modified | unlinked).matches(appointment)

    def test_empty_collection_rejected(self):
        """And/Or need at least one child."""
        with pytest.raises(ValueError, match="Or needs at least one filter"):
            Or()

    def test_equality_and_hash(self):
        """Equal trees compare and hash equal."""
        first = And(Exists(SearchProperty.LOCAL_ID), IsEqualTo(SearchProperty.ITEM_CLASS, "x"))
        second = And(Exists(SearchProperty.LOCAL_ID), IsEqualTo(SearchProperty.ITEM_CLASS, "x"))

        assert first == second
        assert hash(first) == hash(second)
        assert first != Or(*first.filters)

    def test_repr(self):
        """Trees render as readable text."""
        node = And(
            IsGreaterThan(SearchProperty.LAST_MODIFIED, 5),
            Not(Exists(SearchProperty.LOCAL_ID)),
        )
        assert repr(node) == "(last_modified > 5 AND NOT exists(local_id))"

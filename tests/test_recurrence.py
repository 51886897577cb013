"""Tests for recurring series fan-out."""

from datetime import datetime, timedelta, timezone

from groupware_sync.api.remote import (
    AppointmentType,
    RecurrencePattern,
    RemoteAppointment,
)
from groupware_sync.config.settings import SyncSettings
from groupware_sync.storage.local import Entity
from groupware_sync.sync.models import LocalItem, SyncAction, SyncEntity
from groupware_sync.sync.recurrence import (
    is_recurring,
    is_recurring_master,
    item_in_sync_period,
    iter_day_windows,
    iter_occurrences,
    mark_recurring_master,
    need_full_window,
    occurrence_window,
)

APPOINTMENT_STORE = "exchange-appointment"


def _master(start, occurrences=3):
    return RemoteAppointment(
        subject="Standup",
        start=start,
        end=start + timedelta(minutes=15),
        appointment_type=AppointmentType.RECURRING_MASTER,
        recurrence=RecurrencePattern(interval_days=1, occurrences=occurrences),
    )


class TestClassification:
    """Tests for series classification."""

    def test_master_needs_recurrence(self):
        """A master flag without a rule is not a master."""
        flagged = RemoteAppointment(appointment_type=AppointmentType.RECURRING_MASTER)
        assert not is_recurring_master(flagged)
        assert is_recurring_master(_master(datetime(2024, 6, 16, tzinfo=timezone.utc)))

    def test_is_recurring(self):
        """Occurrences and exceptions belong to a series."""
        assert is_recurring(RemoteAppointment(appointment_type=AppointmentType.OCCURRENCE))
        assert is_recurring(RemoteAppointment(appointment_type=AppointmentType.EXCEPTION))
        assert not is_recurring(RemoteAppointment())


class TestWindows:
    """Tests for the expansion window."""

    def test_need_full_window_first_session(self, make_session):
        """The first session ever expands every master."""
        assert need_full_window(make_session(APPOINTMENT_STORE))

    def test_need_full_window_same_day(self, make_session, db, clock):
        """A later session on the same day does not."""
        db.update_last_sync(APPOINTMENT_STORE, "user-1", clock() - timedelta(hours=1))
        assert not need_full_window(make_session(APPOINTMENT_STORE))

    def test_need_full_window_next_day(self, make_session, db, clock):
        """The first session of a new day does."""
        db.update_last_sync(APPOINTMENT_STORE, "user-1", clock() - timedelta(days=1))
        assert need_full_window(make_session(APPOINTMENT_STORE))

    def test_need_full_window_without_recurring_support(self, make_session):
        """Nothing is expanded when recurring support is off."""
        session = make_session(
            APPOINTMENT_STORE, session_settings=SyncSettings(recurring_support=False)
        )
        assert not need_full_window(session)

    def test_occurrence_window(self, make_session, clock):
        """The window spans from the import start to one period ahead."""
        session = make_session(
            APPOINTMENT_STORE, session_settings=SyncSettings(sync_window_period=3)
        )
        start, end = occurrence_window(session)

        assert start == clock() - timedelta(days=3)
        assert end == clock() + timedelta(days=3)

    def test_iter_day_windows(self):
        """Windows are at most one day and cover the range exactly."""
        start = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
        windows = list(iter_day_windows(start, start + timedelta(days=2, hours=6)))

        assert len(windows) == 3
        assert windows[0] == (start, start + timedelta(days=1))
        assert windows[-1][1] == start + timedelta(days=2, hours=6)

    def test_iter_day_windows_empty(self):
        """An empty range yields nothing."""
        start = datetime(2024, 6, 15, tzinfo=timezone.utc)
        assert list(iter_day_windows(start, start)) == []


class TestIterOccurrences:
    """Tests for walking the occurrences of a master."""

    def test_yields_each_occurrence_once(self, make_session, remote_store, clock):
        """Occurrences of the master are yielded once each."""
        master = remote_store.add_item(_master(clock() + timedelta(days=1)), "calendar")
        remote_store.add_item(
            RemoteAppointment(start=clock() + timedelta(days=1), end=clock() + timedelta(days=1)),
            "calendar",
        )
        session = make_session(APPOINTMENT_STORE)

        occurrences = list(iter_occurrences(session, "calendar", master))

        assert len(occurrences) == 3
        assert {o.ical_uid for o in occurrences} == {master.ical_uid}
        assert len({o.id for o in occurrences}) == 3

    def test_explicit_window(self, make_session, remote_store, clock):
        """Only occurrences inside the given window are yielded."""
        master = remote_store.add_item(_master(clock() + timedelta(days=1)), "calendar")
        session = make_session(APPOINTMENT_STORE)
        window = (clock(), clock() + timedelta(days=2))

        assert len(list(iter_occurrences(session, "calendar", master, window))) == 1


class TestSyncPeriod:
    """Tests for item_in_sync_period."""

    def test_in_period(self, make_session, clock):
        """Appointments starting after the window start are in period."""
        session = make_session(APPOINTMENT_STORE)
        assert item_in_sync_period(session, RemoteAppointment(start=clock()))

    def test_before_period(self, make_session, clock):
        """Appointments starting before the window start are not."""
        session = make_session(APPOINTMENT_STORE)
        old = RemoteAppointment(start=clock() - timedelta(days=60))
        assert not item_in_sync_period(session, old)
        assert not item_in_sync_period(session, RemoteAppointment())


class TestMarkRecurringMaster:
    """Tests for mark_recurring_master."""

    def test_marks_every_record_once(self):
        """Every record is marked; already marked records are not counted."""
        local_item = LocalItem("ExchangeAppointment")
        local_item.add_or_replace("Activity", SyncEntity(Entity("Activity", {"Id": "a1"})))
        local_item.add_or_replace(
            "ActivityParticipant", SyncEntity(Entity("ActivityParticipant", {"Id": "p1"}))
        )

        assert mark_recurring_master(local_item) == 2
        assert mark_recurring_master(local_item) == 0
        assert {e.action for e in local_item.all_entities()} == {
            SyncAction.CREATE_RECURRING_MASTER
        }

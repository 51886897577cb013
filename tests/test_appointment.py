"""
Tests for appointment synchronization.

Covers the identity, hashing, status and notification helpers and the
AppointmentSync mapper in both directions, including participants, private
meetings and the recurring master hand-over.
"""

from datetime import datetime, timedelta, timezone

import pytest

from groupware_sync.api.filters import LOCAL_ID_PROPERTY
from groupware_sync.api.remote import (
    Attendee,
    Importance,
    MeetingResponse,
    RemoteAppointment,
    Sensitivity,
)
from groupware_sync.config.settings import SyncSettings
from groupware_sync.storage.metadata import ExtraParameters
from groupware_sync.sync.appointment import (
    APPOINTMENT_STORE_ID,
    MAX_TITLE_LENGTH,
    PRIVATE_MEETING_TITLE,
    STATUS_COMPLETED,
    STATUS_NEW,
    AppointmentSync,
    activity_hash,
    activity_status,
    appointment_remote_id,
    content_hash,
    remote_appointment_hash,
    send_notifications,
    truncate_title,
)
from groupware_sync.sync.models import LocalItem, SyncAction, SyncEntity, SyncState
from groupware_sync.sync.session import CALENDAR_LOCK_DOMAIN

# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def session(make_session):
    """Create a calendar sync session."""
    return make_session(APPOINTMENT_STORE_ID)


@pytest.fixture
def start(clock):
    """Start of the test appointments, one day ahead."""
    return clock() + timedelta(days=1)


@pytest.fixture
def remote_appointment(remote_store, start):
    """Store a remote appointment with a reminder and high importance."""
    return remote_store.add_item(
        RemoteAppointment(
            subject="Quarterly review",
            location="Room 4",
            body="Agenda",
            start=start,
            end=start + timedelta(hours=1),
            importance=Importance.HIGH,
            is_reminder_set=True,
            reminder_minutes=30,
        ),
        "calendar",
    )


@pytest.fixture
def contact_with_email(local_store):
    """Store a contact reachable by e-mail."""
    contact = local_store.add("Contact", Name="Jane Doe")
    local_store.add(
        "ContactCommunication",
        ContactId=contact.id,
        CommunicationTypeId="Email",
        Number="jane@example.com",
    )
    return contact


@pytest.fixture
def local_activity(local_store, start):
    """Store a local activity one day ahead."""
    return local_store.add(
        "Activity",
        Title="Planning",
        Location="Room 1",
        Notes="Bring numbers",
        StartDate=start,
        DueDate=start + timedelta(hours=1),
        PriorityId="Medium",
        StatusId=STATUS_NEW,
    )


def _activity_item(activity, state=SyncState.NEW, extra=None):
    local_item = LocalItem(AppointmentSync.schema_name)
    local_item.add_or_replace(
        "Activity", SyncEntity(activity, state, extra=extra or ExtraParameters())
    )
    return local_item


# ==============================================================================
# Helpers
# ==============================================================================


class TestAppointmentRemoteId:
    """Tests for appointment_remote_id."""

    def test_single_appointment(self):
        """Single appointments are identified by their iCal uid."""
        assert appointment_remote_id(RemoteAppointment(ical_uid="uid-1")) == "uid-1"

    def test_occurrence(self):
        """Series instances append their recurrence date."""
        occurrence = RemoteAppointment(
            ical_uid="uid-1", recurrence_id=datetime(2024, 6, 16, 9, 0, tzinfo=timezone.utc)
        )
        assert appointment_remote_id(occurrence) == "uid-1_2024_06_16"

    def test_missing_uid(self):
        """Without a uid there is no identity."""
        assert appointment_remote_id(RemoteAppointment()) == ""


class TestTruncateTitle:
    """Tests for truncate_title."""

    def test_short_title(self):
        """Short titles are kept."""
        assert truncate_title("Review") == "Review"

    def test_long_title(self):
        """Long titles are cut with an ellipsis."""
        title = truncate_title("x" * 300)
        assert len(title) == MAX_TITLE_LENGTH
        assert title.endswith("...")


class TestContentHash:
    """Tests for the appointment content hash."""

    def test_stable(self, session, start):
        """The same fields hash the same."""
        first = content_hash(session, "a", "b", start, start, "High", "n")
        second = content_hash(session, "a", "b", start, start, "High", "n")
        assert first == second

    @pytest.mark.parametrize("field", range(6))
    def test_every_field_counts(self, session, start, field):
        """Changing any hashed field changes the hash."""
        values = ["a", "b", start, start, "High", "n"]
        changed = list(values)
        changed[field] = start + timedelta(minutes=1) if field in (2, 3) else "other"
        assert content_hash(session, *values) != content_hash(session, *changed)

    def test_time_zone_independent(self, session, start):
        """The same instant hashes the same in any offset."""
        shifted = start.astimezone(timezone(timedelta(hours=5)))
        assert content_hash(session, "", "", start, None, "", "") == content_hash(
            session, "", "", shifted, None, "", ""
        )

    def test_imported_activity_matches_remote(self, session, remote_appointment):
        """An imported activity hashes like the remote item it came from."""
        item = AppointmentSync.from_remote(session, remote_appointment)
        local_item = LocalItem(AppointmentSync.schema_name)
        item.fill_local_item(session, local_item)

        activity = local_item.first("Activity").entity
        assert activity_hash(session, activity) == remote_appointment_hash(
            session, remote_appointment
        )
        assert item.content_hash(session) == local_item.first("Activity").extra.content_hash


class TestActivityStatus:
    """Tests for activity_status."""

    def test_future_is_new(self, session, start):
        """Activities still ahead are new."""
        assert activity_status(session, start) == STATUS_NEW

    def test_past_is_completed(self, session, clock):
        """Past activities are completed."""
        assert activity_status(session, clock() - timedelta(hours=1)) == STATUS_COMPLETED
        assert activity_status(session, None) == STATUS_COMPLETED


class TestSendNotifications:
    """Tests for the notification decision."""

    def test_first_push_of_open_activity(self, session, start):
        """A first push of an upcoming open activity notifies."""
        assert send_notifications(session, STATUS_NEW, start, None, None)

    def test_first_push_of_final_activity(self, session, start):
        """Final activities never notify on their first push."""
        assert not send_notifications(session, STATUS_COMPLETED, start, None, None)

    def test_first_push_of_past_activity(self, session, clock):
        """Past activities do not notify."""
        assert not send_notifications(session, STATUS_NEW, clock() - timedelta(days=1), None, None)

    def test_status_and_due_changed(self, session, start):
        """Changing both status type and due date notifies."""
        later = start + timedelta(days=1)
        assert send_notifications(session, STATUS_COMPLETED, later, STATUS_NEW, start)

    def test_only_due_changed(self, session, start):
        """A moved due date alone does not notify."""
        later = start + timedelta(days=1)
        assert not send_notifications(session, STATUS_NEW, later, STATUS_NEW, start)

    def test_only_status_changed(self, session, start):
        """A status change alone does not notify."""
        assert not send_notifications(session, STATUS_COMPLETED, start, STATUS_NEW, start)


# ==============================================================================
# Local <- Remote
# ==============================================================================


class TestAppointmentImport:
    """Tests for AppointmentSync.fill_local_item."""

    def test_new_activity(self, session, remote_appointment, start):
        """A remote appointment creates an activity."""
        item = AppointmentSync.from_remote(session, remote_appointment)
        local_item = LocalItem(AppointmentSync.schema_name)

        item.fill_local_item(session, local_item)

        activity_se = local_item.first("Activity")
        assert activity_se.action == SyncAction.CREATE
        activity = activity_se.entity
        assert activity.get("Title") == "Quarterly review"
        assert activity.get("Location") == "Room 4"
        assert activity.get("Notes") == "Agenda"
        assert activity.get("StartDate") == start
        assert activity.get("DueDate") == start + timedelta(hours=1)
        assert activity.get("PriorityId") == "High"
        assert activity.get("StatusId") == STATUS_NEW
        assert activity.get("RemindToOwner") is True
        assert activity.get("RemindToOwnerDate") == start - timedelta(minutes=30)
        assert activity.get("OwnerId") == "user-1"

        extra = activity_se.extra
        assert extra.remote_id == remote_appointment.id
        assert extra.prior_status == STATUS_NEW
        assert extra.prior_due_date == start + timedelta(hours=1)
        assert extra.is_private is None

    def test_identity_is_ical_uid(self, session, remote_appointment):
        """The metadata identity of an appointment is its uid."""
        item = AppointmentSync.from_remote(session, remote_appointment)
        assert item.remote_id == remote_appointment.ical_uid

    def test_existing_activity_is_updated(self, session, remote_appointment, local_activity):
        """A linked activity is updated in place."""
        local_item = _activity_item(local_activity, SyncState.NONE)

        AppointmentSync.from_remote(session, remote_appointment).fill_local_item(
            session, local_item
        )

        activity_se = local_item.first("Activity")
        assert activity_se.action == SyncAction.UPDATE
        assert activity_se.entity.id == local_activity.id
        assert activity_se.entity.get("Title") == "Quarterly review"

    def test_canceled_status_is_kept(self, session, remote_appointment, local_activity):
        """Canceled activities stay canceled."""
        local_activity.set("StatusId", "Canceled")
        local_item = _activity_item(local_activity, SyncState.NONE)

        AppointmentSync.from_remote(session, remote_appointment).fill_local_item(
            session, local_item
        )

        assert local_item.first("Activity").entity.get("StatusId") == "Canceled"

    def test_private_meeting_is_masked(self, make_session, remote_store, start):
        """Private meetings get a placeholder title when masking is on."""
        session = make_session(
            APPOINTMENT_STORE_ID,
            session_settings=SyncSettings(import_all_folders=True, private_meetings=True),
        )
        private = remote_store.add_item(
            RemoteAppointment(
                subject="Doctor",
                location="Clinic",
                start=start,
                end=start + timedelta(hours=1),
                sensitivity=Sensitivity.PRIVATE,
            ),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, private).fill_local_item(session, local_item)

        activity_se = local_item.first("Activity")
        assert activity_se.entity.get("Title") == PRIVATE_MEETING_TITLE
        assert activity_se.entity.get("Location") == ""
        assert activity_se.extra.is_private is True
        assert activity_se.extra.title == "Doctor"

    def test_private_meeting_without_masking(self, session, remote_store, start):
        """Without masking private meetings keep their title."""
        private = remote_store.add_item(
            RemoteAppointment(subject="Doctor", start=start, end=start, sensitivity=Sensitivity.PRIVATE),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, private).fill_local_item(session, local_item)

        assert local_item.first("Activity").entity.get("Title") == "Doctor"

    def test_tombstone(self, session, local_activity):
        """A deleted remote appointment marks the aggregate for deletion."""
        local_item = _activity_item(local_activity, SyncState.NONE)

        AppointmentSync.tombstone("uid-1").fill_local_item(session, local_item)

        assert local_item.first("Activity").action == SyncAction.DELETE

    def test_missing_uid(self, session, local_activity, start):
        """Appointments without a stable identity are dropped."""
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync(RemoteAppointment(subject="x", start=start), "")

        item.fill_local_item(session, local_item)

        assert local_item.first("Activity").state == SyncState.DELETED

    def test_locked_create_is_skipped(self, session, db, remote_appointment):
        """A new appointment locked by another session is not created."""
        db.try_acquire_lock(remote_appointment.ical_uid, CALENDAR_LOCK_DOMAIN, "other")
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, remote_appointment).fill_local_item(
            session, local_item
        )

        assert local_item.is_empty

    def test_organizer_with_own_sync(self, session, local_store, remote_store, start):
        """Meetings organized by a mailbox with its own sync are left to it."""
        local_store.add(
            "MailboxSyncSettings", SenderEmailAddress="boss@example.com", EnableSync=True
        )
        meeting = remote_store.add_item(
            RemoteAppointment(subject="1:1", start=start, end=start, organizer="Boss@example.com"),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, meeting).fill_local_item(session, local_item)

        assert local_item.is_empty

    def test_content_duplicate_is_skipped(self, session, local_store, remote_appointment, start):
        """A new appointment matching a local activity by content is not created."""
        local_store.add(
            "Activity",
            Title="Quarterly review",
            Location="Room 4",
            StartDate=start,
            DueDate=start + timedelta(hours=1),
            PriorityId="High",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, remote_appointment).fill_local_item(
            session, local_item
        )

        assert local_item.is_empty

    def test_linked_to_other_activity(self, session, remote_store, local_activity, start):
        """An appointment exported from another existing activity is skipped."""
        linked = remote_store.add_item(
            RemoteAppointment(
                subject="Planning",
                start=start + timedelta(days=3),
                end=start + timedelta(days=3),
                extended_properties={LOCAL_ID_PROPERTY: local_activity.id},
            ),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, linked).fill_local_item(session, local_item)

        assert local_item.is_empty

    def test_linked_to_missing_activity(self, session, remote_store, start):
        """An appointment whose local activity is gone is imported again."""
        linked = remote_store.add_item(
            RemoteAppointment(
                subject="Orphan",
                start=start,
                end=start,
                extended_properties={LOCAL_ID_PROPERTY: "deleted-activity"},
            ),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, linked).fill_local_item(session, local_item)

        assert local_item.first("Activity").action == SyncAction.CREATE

    def test_attendees_become_participants(
        self, session, remote_store, contact_with_email, start
    ):
        """Attendees with a known contact become participants."""
        meeting = remote_store.add_item(
            RemoteAppointment(
                subject="Sync",
                start=start,
                end=start,
                required_attendees=[
                    Attendee("JANE@example.com", response=MeetingResponse.ACCEPT),
                    Attendee("stranger@example.com"),
                ],
            ),
            "calendar",
        )
        local_item = LocalItem(AppointmentSync.schema_name)

        AppointmentSync.from_remote(session, meeting).fill_local_item(session, local_item)

        participants = local_item.entities_of("ActivityParticipant")
        assert len(participants) == 1
        participant = participants[0].entity
        assert participant.get("ParticipantId") == contact_with_email.id
        assert participant.get("RoleId") == "Participant"
        assert participant.get("InviteResponse") == "Confirmed"
        assert participant.get("ActivityId") == local_item.first("Activity").entity.id

    def test_removed_attendee_is_deleted(
        self, session, local_store, remote_appointment, local_activity, contact_with_email
    ):
        """Participants no longer invited are deleted; the responsible stays."""
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=contact_with_email.id,
            RoleId="Participant",
        )
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId="owner-contact",
            RoleId="Responsible",
        )
        local_item = _activity_item(local_activity, SyncState.NONE)

        AppointmentSync.from_remote(session, remote_appointment).fill_local_item(
            session, local_item
        )

        by_participant = {
            se.entity.get("ParticipantId"): se
            for se in local_item.entities_of("ActivityParticipant")
        }
        assert by_participant[contact_with_email.id].action == SyncAction.DELETE
        assert "owner-contact" not in by_participant

    def test_recurring_master_supersedes_single(self, session, local_activity):
        """A series master marks the single-instance aggregate once."""
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync(
            RemoteAppointment(ical_uid="uid-1"),
            "uid-1",
            action=SyncAction.CREATE_RECURRING_MASTER,
        )

        item.fill_local_item(session, local_item)

        activity_se = local_item.first("Activity")
        assert activity_se.action == SyncAction.CREATE_RECURRING_MASTER
        assert activity_se.entity.get("Title") == "Planning"


# ==============================================================================
# Remote <- Local
# ==============================================================================


class TestAppointmentExport:
    """Tests for AppointmentSync.fill_remote_item."""

    def test_new_appointment(self, session, local_activity, start):
        """A new local activity fills a new remote appointment."""
        local_item = _activity_item(local_activity)
        item = AppointmentSync.new(session)

        item.fill_remote_item(session, local_item)

        remote = item.item
        assert item.action == SyncAction.CREATE
        assert remote.subject == "Planning"
        assert remote.location == "Room 1"
        assert remote.body == "Bring numbers"
        assert remote.start == start
        assert remote.importance == Importance.NORMAL
        assert remote.organizer == "me@example.com"
        assert remote.extended_properties[LOCAL_ID_PROPERTY] == local_activity.id
        assert item.send_notifications is True

        extra = local_item.first("Activity").extra
        assert extra.content_hash == activity_hash(session, local_activity)
        assert extra.prior_status == STATUS_NEW

    def test_reminder(self, session, local_activity, start):
        """Reminder dates become reminder minutes."""
        local_activity.set("RemindToOwner", True)
        local_activity.set("RemindToOwnerDate", start - timedelta(minutes=45))
        item = AppointmentSync.new(session)

        item.fill_remote_item(session, _activity_item(local_activity))

        assert item.item.is_reminder_set is True
        assert item.item.reminder_minutes == 45

    def test_unchanged_activity_is_not_pushed(self, session, local_activity):
        """An update whose hash is unchanged becomes a no-op."""
        extra = ExtraParameters(content_hash=activity_hash(session, local_activity))
        item = AppointmentSync(RemoteAppointment(subject="old"), "uid-1", action=SyncAction.UPDATE)

        item.fill_remote_item(session, _activity_item(local_activity, SyncState.NONE, extra))

        assert item.action == SyncAction.NONE
        assert item.item.subject == "old"

    def test_changed_activity_is_pushed_silently(self, session, local_activity, start):
        """An edit without status and due change does not notify."""
        extra = ExtraParameters(
            content_hash="stale", prior_status=STATUS_NEW, prior_due_date=start + timedelta(hours=1)
        )
        item = AppointmentSync(RemoteAppointment(), "uid-1", action=SyncAction.UPDATE)

        item.fill_remote_item(session, _activity_item(local_activity, SyncState.MODIFIED, extra))

        assert item.action == SyncAction.UPDATE
        assert item.item.subject == "Planning"
        assert item.send_notifications is False

    def test_private_title_is_not_pushed(self, session, local_activity):
        """Masked private meetings keep their remote title."""
        extra = ExtraParameters(content_hash="stale", is_private=True, title="Doctor")
        item = AppointmentSync(RemoteAppointment(subject="Doctor"), "uid-1", action=SyncAction.UPDATE)

        item.fill_remote_item(session, _activity_item(local_activity, SyncState.MODIFIED, extra))

        assert item.item.subject == "Doctor"

    def test_activity_before_window(self, session, local_store, clock):
        """Activities due before the sync window are not exported."""
        old = local_store.add(
            "Activity", Title="Old", StartDate=clock() - timedelta(days=90), DueDate=clock() - timedelta(days=90)
        )
        item = AppointmentSync.new(session)

        item.fill_remote_item(session, _activity_item(old))

        assert item.action == SyncAction.NONE

    def test_imported_in_this_pass(self, session, remote_appointment):
        """Activities created from the remote side are not pushed back."""
        item = AppointmentSync.from_remote(session, remote_appointment)
        local_item = LocalItem(AppointmentSync.schema_name)
        item.fill_local_item(session, local_item)
        item.action = SyncAction.UPDATE

        item.fill_remote_item(session, local_item)

        assert item.action == SyncAction.NONE

    def test_deleted_activity(self, session, local_activity):
        """A deleted activity turns the export into a delete."""
        item = AppointmentSync(RemoteAppointment(), "uid-1", action=SyncAction.UPDATE)
        item.fill_remote_item(session, _activity_item(local_activity, SyncState.DELETED))
        assert item.action == SyncAction.DELETE

    def test_locked_export(self, session, db, local_activity):
        """An activity locked by another session is not exported."""
        db.try_acquire_lock(local_activity.id, CALENDAR_LOCK_DOMAIN, "other")
        item = AppointmentSync.new(session)

        item.fill_remote_item(session, _activity_item(local_activity))

        assert item.action == SyncAction.NONE

    def test_participants_become_attendees(
        self, session, local_store, local_activity, contact_with_email
    ):
        """Participants with an e-mail are pushed as attendees by role."""
        optional_contact = local_store.add("Contact", Name="Opt")
        local_store.add(
            "ContactCommunication",
            ContactId=optional_contact.id,
            CommunicationTypeId="Email",
            Number="opt@example.com",
        )
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=contact_with_email.id,
            RoleId="Participant",
            InviteResponse="Confirmed",
        )
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=optional_contact.id,
            RoleId="OptionalParticipant",
        )
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId="no-email-contact",
            RoleId="Participant",
        )
        local_item = _activity_item(local_activity)
        item = AppointmentSync.new(session)

        item.fill_remote_item(session, local_item)

        required = item.item.required_attendees
        assert [(a.address, a.response) for a in required] == [
            ("jane@example.com", MeetingResponse.ACCEPT)
        ]
        assert [a.address for a in item.item.optional_attendees] == ["opt@example.com"]
        assert len(local_item.entities_of("ActivityParticipant")) == 2

    def test_new_participant_forces_push(
        self, session, local_store, local_activity, contact_with_email
    ):
        """Participant changes are pushed even when the activity hash is unchanged."""
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=contact_with_email.id,
            RoleId="Participant",
        )
        extra = ExtraParameters(content_hash=activity_hash(session, local_activity))
        item = AppointmentSync(RemoteAppointment(), "uid-1", action=SyncAction.UPDATE)

        item.fill_remote_item(session, _activity_item(local_activity, SyncState.NONE, extra))

        assert item.action == SyncAction.UPDATE
        assert [a.address for a in item.item.required_attendees] == ["jane@example.com"]

    @pytest.fixture
    def meeting(self, remote_store, start):
        """Store a remote meeting with one known attendee."""
        return remote_store.add_item(
            RemoteAppointment(
                subject="Sync",
                start=start,
                end=start + timedelta(hours=1),
                required_attendees=[
                    Attendee("jane@example.com", response=MeetingResponse.ACCEPT)
                ],
            ),
            "calendar",
        )

    def test_imported_attendees_are_not_pushed_back(
        self, session, meeting, local_activity, contact_with_email
    ):
        """Participants written from the attendees do not count as local changes."""
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync.from_remote(session, meeting)
        item.fill_local_item(session, local_item)
        item.action = SyncAction.UPDATE

        item.fill_remote_item(session, local_item)

        assert item.action == SyncAction.NONE

    def test_persisted_attendees_are_not_pushed_back(
        self, session, local_store, meeting, local_activity, contact_with_email
    ):
        """Saving the imported participants keeps the aggregate in sync."""
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync.from_remote(session, meeting)
        item.fill_local_item(session, local_item)
        for sync_entity in local_item.entities_of("ActivityParticipant"):
            local_store.insert(sync_entity.entity)
        item.action = SyncAction.UPDATE

        item.fill_remote_item(session, local_item)

        assert item.action == SyncAction.NONE

    def test_uninvited_participant_is_not_pushed_back(
        self, session, local_store, remote_appointment, local_activity, contact_with_email
    ):
        """A participant deleted by the import is not re-invited."""
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=contact_with_email.id,
            RoleId="Participant",
        )
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync.from_remote(session, remote_appointment)
        item.fill_local_item(session, local_item)
        item.action = SyncAction.UPDATE

        item.fill_remote_item(session, local_item)

        assert item.action == SyncAction.NONE

    def test_participant_added_after_import_is_pushed(
        self, session, local_store, meeting, local_activity, contact_with_email
    ):
        """A participant added outside the import still forces a push."""
        other = local_store.add("Contact", Name="Max")
        local_store.add(
            "ContactCommunication",
            ContactId=other.id,
            CommunicationTypeId="Email",
            Number="max@example.com",
        )
        local_item = _activity_item(local_activity, SyncState.NONE)
        item = AppointmentSync.from_remote(session, meeting)
        item.fill_local_item(session, local_item)
        for sync_entity in local_item.entities_of("ActivityParticipant"):
            local_store.insert(sync_entity.entity)
        local_store.add(
            "ActivityParticipant",
            ActivityId=local_activity.id,
            ParticipantId=other.id,
            RoleId="Participant",
        )
        item.action = SyncAction.UPDATE

        item.fill_remote_item(session, local_item)

        assert item.action == SyncAction.UPDATE
        assert sorted(a.address for a in item.item.required_attendees) == [
            "jane@example.com",
            "max@example.com",
        ]

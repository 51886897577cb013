"""
Appointment synchronization.

``AppointmentSync`` maps a remote calendar item onto a local ``Activity``
aggregate (the activity plus its ``ActivityParticipant`` rows) and back.

Remote identity is the iCal UID; occurrences and exceptions of a series
append the date of their recurrence id (``<uid>_YYYY_MM_DD``) so every
instance is its own aggregate. The bindable store id is kept in the
``RemoteId`` field of the payload.

A content hash over title, location, start, due date, priority and notes is
stored with the activity. It lets the remote fill skip pushes of unchanged
activities, and the conflict resolver recognise stale remote copies.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from groupware_sync.api.filters import LOCAL_ID_PROPERTY
from groupware_sync.api.remote import (
    Attendee,
    Importance,
    MeetingResponse,
    RemoteAppointment,
    Sensitivity,
)
from groupware_sync.storage.local import Entity
from groupware_sync.sync.guards import (
    GuardChain,
    check_not_deleted,
    check_not_locked,
    check_stable_identity,
)
from groupware_sync.sync.models import (
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncEntity,
    SyncState,
)
from groupware_sync.sync.recurrence import mark_recurring_master
from groupware_sync.sync.session import (
    CALENDAR_LOCK_DOMAIN,
    OPTIONAL_PARTICIPANT_ROLE,
    PARTICIPANT_ROLE,
    RESPONSIBLE_ROLE,
)

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)

APPOINTMENT_STORE_ID = "exchange-appointment"

ACTIVITY_SCHEMA = "Activity"
PARTICIPANT_SCHEMA = "ActivityParticipant"

MAX_TITLE_LENGTH = 255
PRIVATE_MEETING_TITLE = "Private meeting"

# Activity statuses
STATUS_NEW = "New"
STATUS_IN_PROGRESS = "InProgress"
STATUS_COMPLETED = "Completed"
STATUS_CANCELED = "Canceled"
FINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELED})

PRIORITY_BY_IMPORTANCE = {
    Importance.HIGH: "High",
    Importance.NORMAL: "Medium",
    Importance.LOW: "Low",
}
IMPORTANCE_BY_PRIORITY = {value: key for key, value in PRIORITY_BY_IMPORTANCE.items()}

RESPONSE_BY_MEETING_RESPONSE = {
    MeetingResponse.ACCEPT: "Confirmed",
    MeetingResponse.DECLINE: "Declined",
}
MEETING_RESPONSE_BY_RESPONSE = {
    "Confirmed": MeetingResponse.ACCEPT,
    "Declined": MeetingResponse.DECLINE,
}
DEFAULT_INVITE_RESPONSE = "InDoubt"


def appointment_remote_id(appointment: RemoteAppointment) -> str:
    """Return the remote identity of an appointment or series instance."""
    uid = appointment.ical_uid or ""
    if uid and appointment.recurrence_id is not None:
        return f"{uid}_{appointment.recurrence_id:%Y_%m_%d}"
    return uid


def truncate_title(title: str, limit: int = MAX_TITLE_LENGTH) -> str:
    if len(title) <= limit:
        return title
    return title[: limit - 3] + "..."


def content_hash(
    session: SyncSession,
    title: str,
    location: str,
    start: Optional[datetime],
    due: Optional[datetime],
    priority: str,
    notes: str,
) -> str:
    """Hash of the semantically relevant appointment fields."""

    def stamp(value: Optional[datetime]) -> str:
        converted = session.to_session_time(value)
        return converted.isoformat() if converted else ""

    lines = [
        f"title:{title or ''}",
        f"location:{location or ''}",
        f"start:{stamp(start)}",
        f"due:{stamp(due)}",
        f"priority:{priority or ''}",
        f"notes:{notes or ''}",
    ]
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


def activity_hash(session: SyncSession, activity: Entity) -> str:
    return content_hash(
        session,
        activity.get("Title", ""),
        activity.get("Location", ""),
        activity.get("StartDate"),
        activity.get("DueDate"),
        activity.get("PriorityId", ""),
        activity.get("Notes", ""),
    )


def remote_appointment_hash(session: SyncSession, appointment: RemoteAppointment) -> str:
    return content_hash(
        session,
        truncate_title(appointment.subject),
        appointment.location,
        appointment.start,
        appointment.end,
        PRIORITY_BY_IMPORTANCE.get(appointment.importance, "Medium"),
        appointment.body,
    )


def activity_status(session: SyncSession, due: Optional[datetime]) -> str:
    """New for activities still ahead, Completed for past ones."""
    if due is not None and due > session.now():
        return STATUS_NEW
    return STATUS_COMPLETED


def send_notifications(
    session: SyncSession,
    status: str,
    due: Optional[datetime],
    prior_status: Optional[str],
    prior_due: Optional[datetime],
) -> bool:
    """
    Whether attendees are notified about a pushed change.

    Compared against the state at last sync, attendees are notified only when
    both the status type (final or not) and the due date changed. On a first
    push they are notified when the activity is neither final nor past.
    """
    is_final = status in FINAL_STATUSES
    if prior_status is not None:
        status_type_changed = (prior_status in FINAL_STATUSES) != is_final
        due_changed = session.to_session_time(prior_due) != session.to_session_time(due)
        return status_type_changed and due_changed
    is_past = due is not None and due < session.now()
    return not is_final and not is_past


class AppointmentSync(RemoteItem):
    """Remote calendar item variant."""

    schema_name = "ExchangeAppointment"
    root_schema = ACTIVITY_SCHEMA

    @classmethod
    def from_remote(
        cls, session: SyncSession, appointment: RemoteAppointment
    ) -> AppointmentSync:
        return cls(
            appointment,
            appointment_remote_id(appointment),
            version=session.to_session_time(appointment.last_modified),
        )

    @classmethod
    def new(cls, session: SyncSession) -> AppointmentSync:
        return cls(
            RemoteAppointment(), "", action=SyncAction.CREATE, state=SyncState.NEW
        )

    def refresh(self, session: SyncSession, appointment: RemoteAppointment) -> None:
        """Adopt the stored state returned by the remote store."""
        self.item = appointment
        self.remote_id = appointment_remote_id(appointment)
        self.version = session.to_session_time(appointment.last_modified)

    def content_hash(self, session: SyncSession) -> Optional[str]:
        if self.item is None:
            return None
        return remote_appointment_hash(session, self.item)

    # =========================================================================
    # Local <- Remote
    # =========================================================================

    def fill_local_item(self, session: SyncSession, local_item: LocalItem) -> None:
        if (
            self.action == SyncAction.CREATE_RECURRING_MASTER
            and session.settings.recurring_support
        ):
            marked = mark_recurring_master(local_item)
            logger.info(
                f"Series {self.display_name!r} became recurring, "
                f"{marked} single-instance records superseded"
            )
            return

        activity_se = local_item.first(ACTIVITY_SCHEMA)
        is_create = activity_se is None

        chain = GuardChain(f"appointment {self.display_name!r}")
        chain.add(
            "not deleted",
            lambda: check_not_deleted(self),
            SyncAction.DELETE,
            SyncState.DELETED,
        )
        chain.add(
            "stable identity",
            lambda: check_stable_identity(self.item.ical_uid),
            SyncAction.DELETE,
            SyncState.DELETED,
        )
        if is_create:
            chain.add(
                "not locked",
                lambda: check_not_locked(session, self.remote_id, CALENDAR_LOCK_DOMAIN),
            )
        chain.add("organizer", lambda: self._may_write_as_organizer(session))
        if is_create and session.settings.check_duplicates_by_content:
            chain.add("no duplicate", lambda: not self._has_content_duplicate(session))
        chain.add(
            "local link", lambda: self._may_modify_activity(session, activity_se)
        )
        if not chain.run(local_item):
            return

        remote: RemoteAppointment = self.item
        if activity_se is None:
            entity = session.local_store.create(ACTIVITY_SCHEMA)
            entity.set("OwnerId", session.user_id)
            entity.set("ShowInScheduler", True)
            activity_se = local_item.add_or_replace(
                ACTIVITY_SCHEMA, SyncEntity(entity, SyncState.NEW, SyncAction.CREATE)
            )
        else:
            activity_se.action = SyncAction.UPDATE
            activity_se.state = SyncState.MODIFIED

        activity = activity_se.entity
        start = session.to_session_time(remote.start)
        due = session.to_session_time(remote.end)
        is_private = (
            session.settings.private_meetings
            and remote.sensitivity == Sensitivity.PRIVATE
        )
        if is_private:
            activity.set("Title", PRIVATE_MEETING_TITLE)
            activity.set("Location", "")
            activity.set("Notes", "")
        else:
            activity.set("Title", truncate_title(remote.subject))
            activity.set("Location", remote.location)
            activity.set("Notes", remote.body)
        activity.set("StartDate", start)
        activity.set("DueDate", due)
        activity.set("PriorityId", PRIORITY_BY_IMPORTANCE.get(remote.importance, "Medium"))
        if activity.get("StatusId") != STATUS_CANCELED:
            activity.set("StatusId", activity_status(session, due))
        if remote.is_reminder_set and start is not None:
            activity.set("RemindToOwner", True)
            activity.set(
                "RemindToOwnerDate", start - timedelta(minutes=remote.reminder_minutes)
            )
        else:
            activity.set("RemindToOwner", False)
            activity.set("RemindToOwnerDate", None)

        self._fill_local_participants(session, local_item, activity)

        activity_se.extra = activity_se.extra.update(
            remote_id=remote.id,
            content_hash=activity_hash(session, activity),
            prior_status=activity.get("StatusId"),
            prior_due_date=due,
            is_private=True if is_private else None,
            title=truncate_title(remote.subject) if is_private else None,
        )
        session.sync_log.info(
            activity_se.action,
            SyncDirection.UPLOAD,
            "Activity %s filled from remote item",
            self.display_name,
        )

    def _may_write_as_organizer(self, session: SyncSession) -> bool:
        organizer = (self.item.organizer or "").strip().lower()
        if not organizer or organizer == session.mailbox.strip().lower():
            return True
        return not session.cache.has_active_sync(organizer)

    def _has_content_duplicate(self, session: SyncSession) -> bool:
        remote: RemoteAppointment = self.item
        matches = session.local_store.query(
            ACTIVITY_SCHEMA,
            Title=truncate_title(remote.subject),
            Location=remote.location,
            StartDate=lambda value: _same_instant(value, remote.start),
            DueDate=lambda value: _same_instant(value, remote.end),
            PriorityId=PRIORITY_BY_IMPORTANCE.get(remote.importance, "Medium"),
        )
        if matches:
            logger.info(
                f"Activity {matches[0].id} already matches {self.display_name!r} by content"
            )
        return bool(matches)

    def _may_modify_activity(
        self, session: SyncSession, activity_se: Optional[SyncEntity]
    ) -> bool:
        linked_id = self.item.extended_properties.get(LOCAL_ID_PROPERTY)
        if not linked_id:
            return True
        if activity_se is not None and activity_se.entity_id == linked_id:
            return True
        return session.local_store.fetch(ACTIVITY_SCHEMA, linked_id, ["Id"]) is None

    def _fill_local_participants(
        self, session: SyncSession, local_item: LocalItem, activity: Entity
    ) -> None:
        remote: RemoteAppointment = self.item
        responsible_role = session.cache.role_id(RESPONSIBLE_ROLE)

        existing: dict[str, SyncEntity] = {}
        for sync_entity in local_item.entities_of(PARTICIPANT_SCHEMA):
            if sync_entity.state != SyncState.DELETED:
                existing[sync_entity.entity.get("ParticipantId")] = sync_entity
        for participant in session.local_store.query(
            PARTICIPANT_SCHEMA, ActivityId=activity.id
        ):
            existing.setdefault(
                participant.get("ParticipantId"), SyncEntity(participant)
            )

        desired: dict[str, tuple[str, str]] = {}
        for attendees, role in (
            (remote.required_attendees, PARTICIPANT_ROLE),
            (remote.optional_attendees, OPTIONAL_PARTICIPANT_ROLE),
        ):
            for attendee in attendees:
                contact_id = session.cache.contact_id_by_email(attendee.address)
                if contact_id is None:
                    logger.debug(f"No contact for attendee {attendee.address}")
                    continue
                response = RESPONSE_BY_MEETING_RESPONSE.get(
                    attendee.response, DEFAULT_INVITE_RESPONSE
                )
                desired.setdefault(contact_id, (session.cache.role_id(role), response))

        for contact_id, (role_id, response) in desired.items():
            sync_entity = existing.pop(contact_id, None)
            if sync_entity is None:
                entity = session.local_store.create(PARTICIPANT_SCHEMA)
                entity.set("ActivityId", activity.id)
                entity.set("ParticipantId", contact_id)
                entity.set("RoleId", role_id)
                entity.set("InviteResponse", response)
                local_item.add_or_replace(
                    PARTICIPANT_SCHEMA,
                    SyncEntity(entity, SyncState.NEW, SyncAction.CREATE),
                )
                continue
            participant = sync_entity.entity
            if participant.get("RoleId") == responsible_role:
                local_item.add_or_replace(PARTICIPANT_SCHEMA, sync_entity)
                continue
            participant.set("RoleId", role_id)
            participant.set("InviteResponse", response)
            if participant.changed_columns:
                sync_entity.action = SyncAction.UPDATE
                sync_entity.state = SyncState.MODIFIED
            local_item.add_or_replace(PARTICIPANT_SCHEMA, sync_entity)

        for sync_entity in existing.values():
            if sync_entity.entity.get("RoleId") == responsible_role:
                continue
            sync_entity.action = SyncAction.DELETE
            sync_entity.state = SyncState.DELETED
            local_item.add_or_replace(PARTICIPANT_SCHEMA, sync_entity)

    # =========================================================================
    # Remote <- Local
    # =========================================================================

    def fill_remote_item(self, session: SyncSession, local_item: LocalItem) -> None:
        activity_se = local_item.first(ACTIVITY_SCHEMA)
        if activity_se is None or activity_se.state == SyncState.DELETED:
            self.action = SyncAction.DELETE
            return
        if self.action in (SyncAction.NONE, SyncAction.DELETE):
            return
        if activity_se.action == SyncAction.CREATE:
            # imported in this pass
            self.action = SyncAction.NONE
            return

        activity = activity_se.entity
        new_hash = activity_hash(session, activity)
        participants_changed = self._sync_remote_participants(
            session, local_item, activity, apply=False
        )
        if (
            self.action == SyncAction.UPDATE
            and activity_se.extra.content_hash == new_hash
            and not participants_changed
        ):
            logger.debug(f"Activity {activity.id} unchanged, push skipped")
            self.action = SyncAction.NONE
            return

        due = session.to_session_time(activity.get("DueDate"))
        if due is not None and due < session.import_from:
            logger.debug(f"Activity {activity.id} is older than the sync window")
            self.action = SyncAction.NONE
            return

        if not check_not_locked(session, self.remote_id or activity.id, CALENDAR_LOCK_DOMAIN):
            self.action = SyncAction.NONE
            return

        remote: RemoteAppointment = self.item
        if not activity_se.extra.is_private:
            remote.subject = activity.get("Title", "")
            remote.location = activity.get("Location", "")
            remote.body = activity.get("Notes", "")
        remote.start = activity.get("StartDate")
        remote.end = activity.get("DueDate")
        remote.importance = IMPORTANCE_BY_PRIORITY.get(
            activity.get("PriorityId", "Medium"), Importance.NORMAL
        )
        reminder_date = activity.get("RemindToOwnerDate")
        if activity.get("RemindToOwner") and reminder_date and remote.start:
            remote.is_reminder_set = True
            remote.reminder_minutes = max(
                int((remote.start - reminder_date).total_seconds() // 60), 0
            )
        else:
            remote.is_reminder_set = False
        if self.action == SyncAction.CREATE:
            remote.organizer = session.mailbox
        self._sync_remote_participants(session, local_item, activity, apply=True)

        status = activity.get("StatusId", STATUS_NEW)
        self.send_notifications = send_notifications(
            session,
            status,
            due,
            activity_se.extra.prior_status,
            activity_se.extra.prior_due_date,
        )
        activity_se.extra = activity_se.extra.update(
            content_hash=new_hash, prior_status=status, prior_due_date=due
        )
        remote.extended_properties[LOCAL_ID_PROPERTY] = activity.id
        session.sync_log.info(
            self.action,
            SyncDirection.DOWNLOAD,
            "Activity %s mapped onto remote item",
            activity.get("Title", ""),
        )

    def _sync_remote_participants(
        self,
        session: SyncSession,
        local_item: LocalItem,
        activity: Entity,
        apply: bool,
    ) -> bool:
        """
        Compare (and optionally push) the local participants.

        Returns:
            True if participants were added, removed or modified since the
            last sync
        """
        responsible_role = session.cache.role_id(RESPONSIBLE_ROLE)
        optional_role = session.cache.role_id(OPTIONAL_PARTICIPANT_ROLE)

        known = {
            sync_entity.entity_id: sync_entity
            for sync_entity in local_item.entities_of(PARTICIPANT_SCHEMA)
        }
        # participants as they are once pending writes of the aggregate land
        stored = {
            participant.id: participant
            for participant in session.local_store.query(
                PARTICIPANT_SCHEMA, ActivityId=activity.id
            )
        }
        for entity_id, sync_entity in known.items():
            if sync_entity.action == SyncAction.CREATE:
                stored.setdefault(entity_id, sync_entity.entity)
            elif sync_entity.action == SyncAction.DELETE:
                stored.pop(entity_id, None)
        current = [
            participant
            for participant in stored.values()
            if participant.get("RoleId") != responsible_role
        ]
        current_ids = {participant.id for participant in current}
        live_known = {
            entity_id
            for entity_id, sync_entity in known.items()
            if sync_entity.state != SyncState.DELETED
            and sync_entity.entity.get("RoleId") != responsible_role
        }

        changed = current_ids != live_known
        if not changed:
            changed = any(
                _changed_since_sync(participant, known[participant.id])
                for participant in current
            )

        if not apply:
            return changed

        required: list[Attendee] = []
        optional: list[Attendee] = []
        for participant in current:
            address = session.cache.contact_email(participant.get("ParticipantId", ""))
            if not address:
                continue
            attendee = Attendee(
                address=address,
                response=MEETING_RESPONSE_BY_RESPONSE.get(
                    participant.get("InviteResponse"), MeetingResponse.UNKNOWN
                ),
            )
            if participant.get("RoleId") == optional_role:
                optional.append(attendee)
            else:
                required.append(attendee)
            if participant.id not in known:
                local_item.add_or_replace(
                    PARTICIPANT_SCHEMA, SyncEntity(participant, SyncState.NEW)
                )
        for entity_id, sync_entity in known.items():
            if entity_id not in current_ids and sync_entity.entity.get("RoleId") != responsible_role:
                sync_entity.state = SyncState.DELETED

        remote: RemoteAppointment = self.item
        remote.required_attendees = required
        remote.optional_attendees = optional
        return changed


def _changed_since_sync(participant: Entity, sync_entity: SyncEntity) -> bool:
    """Whether a participant differs from what the remote attendees hold."""
    if sync_entity.action in (SyncAction.CREATE, SyncAction.UPDATE):
        # written from the remote attendees by the local fill
        return False
    return sync_entity.state != SyncState.NONE or _modified_since(
        participant, sync_entity.version
    )


def _modified_since(entity: Entity, version: Optional[datetime]) -> bool:
    if version is None or entity.modified_on is None:
        return version is None
    return entity.modified_on > version


def _same_instant(value: object, expected: Optional[datetime]) -> bool:
    if not isinstance(value, datetime) or expected is None:
        return False
    if value.tzinfo is None or expected.tzinfo is None:
        return value.replace(tzinfo=None) == expected.replace(tzinfo=None)
    return value == expected

"""
Recurring series fan-out.

The remote calendar groups a repeating sequence as one master plus
date-keyed instances. The local store only knows single activities, so a
master is expanded into its occurrences over the session window
``[import_from, now + sync_window_period)``. The window is walked day by day
and occurrences are yielded as they are found, never materialized as a
whole.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from groupware_sync.api.remote import AppointmentType, RemoteAppointment
from groupware_sync.sync.models import LocalItem, SyncAction

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)


def is_recurring_master(appointment: RemoteAppointment) -> bool:
    """Master of a series: flagged as master and carrying a recurrence rule."""
    return (
        appointment.appointment_type == AppointmentType.RECURRING_MASTER
        and appointment.recurrence is not None
    )


def is_recurring(appointment: RemoteAppointment) -> bool:
    """Part of a series (master, occurrence or modified exception)."""
    return is_recurring_master(appointment) or appointment.appointment_type in (
        AppointmentType.OCCURRENCE,
        AppointmentType.EXCEPTION,
    )


def need_full_window(session: SyncSession) -> bool:
    """
    Whether recurring masters must be expanded regardless of modification.

    The window end moves forward every day, so the first session of a day
    (or the first session ever) re-expands every master.
    """
    if not session.settings.recurring_support:
        return False
    last_sync = session.to_session_time(session.last_sync_version)
    if last_sync is None:
        return True
    return last_sync.date() < session.now().date()


def occurrence_window(session: SyncSession) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` expansion window of the session."""
    start = session.import_from
    end = session.now() + timedelta(days=session.settings.sync_window_period)
    return start, end


def iter_day_windows(start: datetime, end: datetime) -> Iterator[tuple[datetime, datetime]]:
    """Split ``[start, end)`` into consecutive windows of at most one day."""
    current = start
    while current < end:
        next_day = min(current + timedelta(days=1), end)
        yield current, next_day
        current = next_day


def iter_occurrences(
    session: SyncSession,
    folder_id: str,
    master: RemoteAppointment,
    window: Optional[tuple[datetime, datetime]] = None,
) -> Iterator[RemoteAppointment]:
    """
    Yield the occurrences of ``master`` in the session window.

    Each remote occurrence is yielded once even if a calendar view returns
    it for several day windows.

    Args:
        session: Current sync session
        folder_id: Calendar folder of the master
        master: Recurring master
        window: Expansion window (defaults to ``occurrence_window``)
    """
    start, end = window or occurrence_window(session)
    seen: set[str] = set()
    count = 0
    for day_start, day_end in iter_day_windows(start, end):
        for appointment in session.remote_store.calendar_view(folder_id, day_start, day_end):
            if appointment.ical_uid != master.ical_uid:
                continue
            if appointment.appointment_type not in (
                AppointmentType.OCCURRENCE,
                AppointmentType.EXCEPTION,
            ):
                continue
            key = appointment.id or f"{appointment.ical_uid}:{appointment.recurrence_id}"
            if key in seen:
                continue
            seen.add(key)
            count += 1
            yield appointment
    logger.debug(f"Expanded {count} occurrences of {master.subject!r}")


def item_in_sync_period(session: SyncSession, appointment: RemoteAppointment) -> bool:
    """Whether an appointment starts after the import window start."""
    start = session.to_session_time(appointment.start)
    return start is not None and start > session.import_from


def mark_recurring_master(local_item: LocalItem) -> int:
    """
    Mark every record of a single-instance aggregate as superseded.

    Returns:
        Number of marked records
    """
    marked = 0
    for sync_entity in local_item.all_entities():
        if sync_entity.action != SyncAction.CREATE_RECURRING_MASTER:
            sync_entity.action = SyncAction.CREATE_RECURRING_MASTER
            marked += 1
    return marked

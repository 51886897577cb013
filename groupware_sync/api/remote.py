"""
Remote (groupware) store boundary.

Defines the remote item types exchanged with the groupware service, the
errors a remote store raises and the ``RemoteStore`` contract:

- bind by identity, raising ``ItemNotFoundError``/``AccessDeniedError``
  (recoverable, the item is skipped or treated as a tombstone) or any other
  ``RemoteStoreError`` (fatal, rethrown)
- paginated search against a filter tree
- calendar views expanding recurring series for a time window
- folder discovery (single folder or a recursive walk)
- create, update and delete with a notification-suppression toggle
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union

from groupware_sync.api.filters import SearchFilter

# Item classes
APPOINTMENT_ITEM_CLASS = "IPM.Appointment"
CONTACT_ITEM_CLASS = "IPM.Contact"
MESSAGE_ITEM_CLASS = "IPM.Note"

# Folder classes
CALENDAR_FOLDER_CLASS = "IPF.Appointment"
CONTACTS_FOLDER_CLASS = "IPF.Contact"
MAIL_FOLDER_CLASS = "IPF.Note"


class RemoteStoreError(Exception):
    """Raised when a remote store operation fails."""

    pass


class ItemNotFoundError(RemoteStoreError):
    """Raised when a remote item does not exist (or was deleted)."""

    pass


class AccessDeniedError(RemoteStoreError):
    """Raised when the mailbox may not read a remote item."""

    pass


class RemoteConnectionError(RemoteStoreError):
    """Raised on transient connectivity failures."""

    pass


class AppointmentType(str, Enum):
    SINGLE = "single"
    OCCURRENCE = "occurrence"
    EXCEPTION = "exception"
    RECURRING_MASTER = "recurring_master"


class Importance(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class MeetingResponse(str, Enum):
    UNKNOWN = "unknown"
    ACCEPT = "accept"
    TENTATIVE = "tentative"
    DECLINE = "decline"
    NO_RESPONSE = "no_response"


class Sensitivity(str, Enum):
    NORMAL = "normal"
    PERSONAL = "personal"
    PRIVATE = "private"
    CONFIDENTIAL = "confidential"


@dataclass
class Attendee:
    """Meeting attendee."""

    address: str
    name: str = ""
    response: MeetingResponse = MeetingResponse.UNKNOWN


@dataclass
class EmailAddress:
    """Mailbox address with display name."""

    address: str
    name: str = ""


@dataclass
class RecurrencePattern:
    """
    Daily-interval recurrence of a series.

    Attributes:
        interval_days: Days between occurrences (7 for weekly)
        end_date: Last day an occurrence may start on (inclusive)
        occurrences: Maximum number of occurrences
    """

    interval_days: int = 1
    end_date: Optional[date] = None
    occurrences: Optional[int] = None


@dataclass
class PhysicalAddress:
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country_or_region: str = ""

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.street, self.city, self.state, self.postal_code, self.country_or_region)
        )


@dataclass
class RemoteAppointment:
    """Calendar item of the groupware store."""

    id: Optional[str] = None
    folder_id: Optional[str] = None
    item_class: str = APPOINTMENT_ITEM_CLASS
    subject: str = ""
    location: str = ""
    body: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    importance: Importance = Importance.NORMAL
    is_reminder_set: bool = False
    reminder_minutes: int = 15
    organizer: Optional[str] = None
    required_attendees: list[Attendee] = field(default_factory=list)
    optional_attendees: list[Attendee] = field(default_factory=list)
    sensitivity: Sensitivity = Sensitivity.NORMAL
    appointment_type: AppointmentType = AppointmentType.SINGLE
    recurrence: Optional[RecurrencePattern] = None
    ical_uid: Optional[str] = None
    recurrence_id: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    extended_properties: dict[str, str] = field(default_factory=dict)


@dataclass
class RemoteContact:
    """Contact item of the groupware store."""

    id: Optional[str] = None
    folder_id: Optional[str] = None
    item_class: str = CONTACT_ITEM_CLASS
    given_name: str = ""
    middle_name: str = ""
    surname: str = ""
    job_title: str = ""
    company_name: str = ""
    birthday: Optional[date] = None
    business_home_page: str = ""
    email_addresses: dict[str, str] = field(default_factory=dict)
    physical_addresses: dict[str, PhysicalAddress] = field(default_factory=dict)
    phone_numbers: dict[str, str] = field(default_factory=dict)
    last_modified: Optional[datetime] = None
    extended_properties: dict[str, str] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return " ".join(p for p in (self.given_name, self.surname) if p)


@dataclass
class RemoteMessage:
    """Mail item of the groupware store."""

    id: Optional[str] = None
    folder_id: Optional[str] = None
    item_class: str = MESSAGE_ITEM_CLASS
    internet_message_id: Optional[str] = None
    subject: str = ""
    body: str = ""
    is_html: bool = False
    sender: Optional[EmailAddress] = None
    from_address: Optional[EmailAddress] = None
    to_recipients: list[EmailAddress] = field(default_factory=list)
    cc_recipients: list[EmailAddress] = field(default_factory=list)
    bcc_recipients: list[EmailAddress] = field(default_factory=list)
    date_time_sent: Optional[datetime] = None
    date_time_received: Optional[datetime] = None
    importance: Importance = Importance.NORMAL
    is_draft: bool = False
    headers: Optional[dict[str, str]] = None
    last_modified: Optional[datetime] = None
    extended_properties: dict[str, str] = field(default_factory=dict)


RemoteObject = Union[RemoteAppointment, RemoteContact, RemoteMessage]


@dataclass
class RemoteFolder:
    """Folder of the groupware mailbox."""

    id: str
    display_name: str
    folder_class: str
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class PageCursor:
    """
    Continuation of a paged search.

    Points just past the last item of a page in (last_modified, id) order.
    Items rewritten after the page was read move past the cursor instead of
    shifting unread items back, so no unread item is skipped.
    """

    last_modified: Optional[datetime]
    item_id: str


@dataclass
class FindItemsResult:
    """One page of a remote search."""

    items: list[Any]
    more_available: bool
    cursor: Optional[PageCursor] = None


class RemoteStore(ABC):
    """Contract of the groupware store used by the sync providers."""

    @abstractmethod
    def bind(self, item_id: str) -> RemoteObject:
        """
        Load an item by identity.

        Raises:
            ItemNotFoundError: If the item does not exist
            AccessDeniedError: If the item may not be read
            RemoteStoreError: On any other failure
        """

    @abstractmethod
    def find_items(
        self,
        folder_id: str,
        search_filter: Optional[SearchFilter],
        page_size: int,
        after: Optional[PageCursor] = None,
    ) -> FindItemsResult:
        """
        Return one page of folder items matching ``search_filter``.

        Items are ordered by (last_modified, id); the page starts after
        ``after`` (at the beginning when None).
        """

    @abstractmethod
    def calendar_view(
        self, folder_id: str, start: datetime, end: datetime
    ) -> list[RemoteAppointment]:
        """Return single items and expanded occurrences starting in ``[start, end)``."""

    @abstractmethod
    def get_folder(self, folder_id: str) -> RemoteFolder:
        """Bind a folder by identity."""

    @abstractmethod
    def find_folders(
        self, root_id: Optional[str] = None, folder_class: Optional[str] = None
    ) -> list[RemoteFolder]:
        """Walk the folder tree below ``root_id`` (the whole mailbox when None)."""

    @abstractmethod
    def create(
        self, item: RemoteObject, folder_id: Optional[str], send_notifications: bool = False
    ) -> RemoteObject:
        """Save a new item and return it with identity and version assigned."""

    @abstractmethod
    def update(self, item: RemoteObject, send_notifications: bool = False) -> RemoteObject:
        """Overwrite an existing item and return its new state."""

    @abstractmethod
    def delete(self, item_id: str, send_notifications: bool = False) -> None:
        """Delete an item."""

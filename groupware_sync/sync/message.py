"""
Mail import.

``MessageSync`` turns a remote mail item into an e-mail ``Activity``. Mail
is import only: the remote fill does nothing. A message already imported
(possibly from another mailbox) is recognised by its mail hash and only has
its sender and send date refreshed.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Optional

from groupware_sync.api.remote import (
    MESSAGE_ITEM_CLASS,
    EmailAddress,
    RemoteMessage,
)
from groupware_sync.storage.metadata import ExtraParameters
from groupware_sync.sync.appointment import (
    ACTIVITY_SCHEMA,
    PRIORITY_BY_IMPORTANCE,
    STATUS_COMPLETED,
    truncate_title,
)
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
from groupware_sync.sync.session import MAIL_LOCK_DOMAIN

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)

MESSAGE_STORE_ID = "exchange-email"

EMAIL_ACTIVITY_TYPE = "Email"
SEND_STATUS_NOT_SENT = "NotSend"
SEND_STATUS_SENT = "Sended"
MESSAGE_TYPE_INCOMING = "Incoming"
MESSAGE_TYPE_OUTGOING = "Outgoing"


def mail_hash(message: RemoteMessage) -> str:
    """Mailbox independent identity of a message."""
    key = (message.internet_message_id or "").strip().lower()
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def format_address(address: Optional[EmailAddress]) -> str:
    if address is None or not address.address:
        return ""
    if address.name:
        return f"{address.name} <{address.address}>"
    return address.address


def format_recipients(recipients: list[EmailAddress]) -> str:
    """Format recipients as ``Name <address>; `` entries."""
    return "".join(f"{format_address(r)}; " for r in recipients if r.address)


def format_headers(headers: dict[str, str]) -> str:
    return "\n".join(f"{name}: {value}" for name, value in headers.items())


class MessageSync(RemoteItem):
    """Remote mail item variant."""

    schema_name = "ExchangeEmail"
    root_schema = ACTIVITY_SCHEMA

    @classmethod
    def from_remote(cls, session: SyncSession, message: RemoteMessage) -> MessageSync:
        return cls(
            message,
            message.id or "",
            version=session.to_session_time(message.last_modified),
        )

    @classmethod
    def new(cls, session: SyncSession) -> MessageSync:
        return cls(RemoteMessage(), "", action=SyncAction.NONE)

    def refresh(self, session: SyncSession, message: RemoteMessage) -> None:
        self.item = message
        self.remote_id = message.id or ""
        self.version = session.to_session_time(message.last_modified)

    def _is_valid_message(self) -> bool:
        return check_stable_identity(self.item.internet_message_id) and (
            self.item.item_class or ""
        ).startswith(MESSAGE_ITEM_CLASS)

    def fill_local_item(self, session: SyncSession, local_item: LocalItem) -> None:
        chain = GuardChain(f"message {self.display_name!r}")
        chain.add(
            "not deleted",
            lambda: check_not_deleted(self),
            SyncAction.DELETE,
            SyncState.DELETED,
        )
        chain.add("valid message", self._is_valid_message)
        chain.add(
            "not locked",
            lambda: check_not_locked(
                session, self.item.internet_message_id, MAIL_LOCK_DOMAIN
            ),
        )
        if not chain.run(local_item):
            return

        message: RemoteMessage = self.item
        hashed = mail_hash(message)
        sender = format_address(message.from_address or message.sender)
        sent = session.to_session_time(message.date_time_sent)

        activity_se = local_item.first(ACTIVITY_SCHEMA)
        if activity_se is None:
            matches = session.local_store.query(ACTIVITY_SCHEMA, MailHash=hashed)
            if matches:
                activity_se = local_item.add_or_replace(
                    ACTIVITY_SCHEMA, SyncEntity(matches[0])
                )

        if activity_se is not None:
            activity = activity_se.entity
            activity.set("Sender", sender)
            activity.set("SendDate", sent)
            activity_se.action = SyncAction.UPDATE
            activity_se.state = SyncState.MODIFIED
            activity_se.extra = activity_se.extra.update(remote_id=message.id)
            logger.debug(f"Message {message.internet_message_id} already imported")
            return

        received = session.to_session_time(message.date_time_received)
        activity = session.local_store.create(ACTIVITY_SCHEMA)
        activity.set("TypeId", EMAIL_ACTIVITY_TYPE)
        activity.set("Title", truncate_title(message.subject))
        activity.set("Body", message.body)
        activity.set("IsHtmlBody", message.is_html)
        if message.headers:
            activity.set("HeaderProperties", format_headers(message.headers))
        activity.set("OwnerId", session.user_id)
        activity.set("Sender", sender)
        activity.set("SendDate", sent)
        activity.set("Recepient", format_recipients(message.to_recipients))
        activity.set("CopyRecepient", format_recipients(message.cc_recipients))
        activity.set("BlindCopyRecepient", format_recipients(message.bcc_recipients))
        activity.set(
            "EmailSendStatusId",
            SEND_STATUS_NOT_SENT if message.is_draft else SEND_STATUS_SENT,
        )
        activity.set(
            "MessageTypeId",
            MESSAGE_TYPE_INCOMING if message.headers else MESSAGE_TYPE_OUTGOING,
        )
        activity.set(
            "PriorityId", PRIORITY_BY_IMPORTANCE.get(message.importance, "Medium")
        )
        activity.set("StatusId", STATUS_COMPLETED)
        activity.set("StartDate", received)
        activity.set("DueDate", received)
        activity.set("ShowInScheduler", False)
        activity.set("MailHash", hashed)
        activity.set("UserEmailAddress", session.mailbox)
        local_item.add_or_replace(
            ACTIVITY_SCHEMA,
            SyncEntity(
                activity,
                SyncState.NEW,
                SyncAction.CREATE,
                ExtraParameters(remote_id=message.id),
            ),
        )
        session.sync_log.info(
            SyncAction.CREATE,
            SyncDirection.UPLOAD,
            "E-mail %s imported",
            message.internet_message_id,
        )

    def fill_remote_item(self, session: SyncSession, local_item: LocalItem) -> None:
        self.action = SyncAction.NONE

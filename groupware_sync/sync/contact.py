"""
Contact synchronization.

``ContactSync`` maps a remote contact onto a local ``Contact`` aggregate
(the contact plus its ``ContactCommunication`` and ``ContactAddress``
children) and back. Child collections are reconciled through slot-based
detail synchronizers:

- e-mail: EmailAddress1, EmailAddress2, EmailAddress3
- address: Home, Business
- phone: BusinessPhone, HomePhone, MobilePhone, BusinessPhone2
- web page: BusinessHomePage
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Optional

from groupware_sync.api.filters import LOCAL_ID_PROPERTY
from groupware_sync.api.remote import (
    CONTACT_ITEM_CLASS,
    PhysicalAddress,
    RemoteContact,
)
from groupware_sync.storage.local import Entity
from groupware_sync.sync.details import DetailSynchronizer
from groupware_sync.sync.guards import GuardChain, check_not_deleted, check_not_locked
from groupware_sync.sync.models import (
    LocalItem,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncEntity,
    SyncState,
)
from groupware_sync.sync.session import CONTACT_LOCK_DOMAIN

if TYPE_CHECKING:
    from groupware_sync.sync.session import SyncSession

logger = logging.getLogger(__name__)

CONTACT_STORE_ID = "exchange-contact"


class _CommunicationDetailsSynchronizer(DetailSynchronizer):
    schema_name = "ContactCommunication"
    parent_column = "ContactId"
    type_column = "CommunicationTypeId"

    def local_value(self, entity: Entity) -> Any:
        return entity.get("Number", "")

    def set_local_value(self, entity: Entity, value: Any) -> None:
        entity.set("Number", value)


class EmailAddressDetailsSynchronizer(_CommunicationDetailsSynchronizer):
    """E-mail slots EmailAddress1..3."""

    slots = {
        "EmailAddress1": "Email",
        "EmailAddress2": "Email",
        "EmailAddress3": "Email",
    }

    def remote_value(self, remote: RemoteContact, slot: str) -> Any:
        return remote.email_addresses.get(slot, "")

    def set_remote_value(self, remote: RemoteContact, slot: str, value: Any) -> None:
        if value:
            remote.email_addresses[slot] = value
        else:
            remote.email_addresses.pop(slot, None)


class PhoneNumberDetailsSynchronizer(_CommunicationDetailsSynchronizer):
    """Phone slots; both business slots map to work phones."""

    slots = {
        "BusinessPhone": "WorkPhone",
        "HomePhone": "HomePhone",
        "MobilePhone": "MobilePhone",
        "BusinessPhone2": "WorkPhone",
    }

    def remote_value(self, remote: RemoteContact, slot: str) -> Any:
        return remote.phone_numbers.get(slot, "")

    def set_remote_value(self, remote: RemoteContact, slot: str, value: Any) -> None:
        if value:
            remote.phone_numbers[slot] = value
        else:
            remote.phone_numbers.pop(slot, None)


class WebPageDetailsSynchronizer(_CommunicationDetailsSynchronizer):
    """Single web page slot."""

    slots = {"BusinessHomePage": "Web"}

    def remote_value(self, remote: RemoteContact, slot: str) -> Any:
        return remote.business_home_page

    def set_remote_value(self, remote: RemoteContact, slot: str, value: Any) -> None:
        remote.business_home_page = value or ""


class AddressDetailsSynchronizer(DetailSynchronizer):
    """Physical address slots Home and Business."""

    schema_name = "ContactAddress"
    parent_column = "ContactId"
    type_column = "AddressTypeId"
    slots = {"Home": "Home", "Business": "Business"}

    def remote_value(self, remote: RemoteContact, slot: str) -> Any:
        return remote.physical_addresses.get(slot)

    def set_remote_value(self, remote: RemoteContact, slot: str, value: Any) -> None:
        if value is None or value.is_empty:
            remote.physical_addresses.pop(slot, None)
        else:
            remote.physical_addresses[slot] = value

    def local_value(self, entity: Entity) -> Any:
        return PhysicalAddress(
            street=entity.get("Address", ""),
            city=entity.get("City", ""),
            state=entity.get("Region", ""),
            postal_code=entity.get("Zip", ""),
            country_or_region=entity.get("Country", ""),
        )

    def set_local_value(self, entity: Entity, value: Any) -> None:
        entity.set("Address", value.street)
        entity.set("City", value.city)
        entity.set("Region", value.state)
        entity.set("Zip", value.postal_code)
        entity.set("Country", value.country_or_region)

    def is_empty(self, value: Any) -> bool:
        return value is None or value.is_empty


DETAIL_SYNCHRONIZERS: tuple[type[DetailSynchronizer], ...] = (
    EmailAddressDetailsSynchronizer,
    AddressDetailsSynchronizer,
    PhoneNumberDetailsSynchronizer,
    WebPageDetailsSynchronizer,
)


class ContactSync(RemoteItem):
    """Remote contact variant."""

    schema_name = "ExchangeContact"
    root_schema = "Contact"

    @classmethod
    def from_remote(cls, session: SyncSession, contact: RemoteContact) -> ContactSync:
        return cls(
            contact,
            contact.id or "",
            version=session.to_session_time(contact.last_modified),
        )

    @classmethod
    def new(cls, session: SyncSession) -> ContactSync:
        return cls(RemoteContact(), "", action=SyncAction.CREATE, state=SyncState.NEW)

    def refresh(self, session: SyncSession, contact: RemoteContact) -> None:
        """Adopt the stored state returned by the remote store."""
        self.item = contact
        self.remote_id = contact.id or ""
        self.version = session.to_session_time(contact.last_modified)

    def _details(self, session: SyncSession, local_item: LocalItem, contact_id: str):
        return [cls(session, local_item, contact_id) for cls in DETAIL_SYNCHRONIZERS]

    # =========================================================================
    # Local <- Remote
    # =========================================================================

    def fill_local_item(self, session: SyncSession, local_item: LocalItem) -> None:
        chain = GuardChain(f"contact {self.display_name!r}")
        chain.add(
            "not deleted",
            lambda: check_not_deleted(self),
            SyncAction.DELETE,
            SyncState.DELETED,
        )
        chain.add("contact item", lambda: self.item.item_class == CONTACT_ITEM_CLASS)
        chain.add(
            "has name",
            lambda: any(
                name.strip()
                for name in (self.item.given_name, self.item.middle_name, self.item.surname)
            ),
        )
        chain.add(
            "not locked",
            lambda: check_not_locked(session, self.remote_id, CONTACT_LOCK_DOMAIN),
        )
        if not chain.run(local_item):
            return

        remote: RemoteContact = self.item
        contact_se = local_item.first(self.root_schema)
        if contact_se is None:
            entity = session.local_store.create(self.root_schema)
            entity.set("OwnerId", session.user_id)
            contact_se = local_item.add_or_replace(
                self.root_schema, SyncEntity(entity, SyncState.NEW, SyncAction.CREATE)
            )
        else:
            contact_se.action = SyncAction.UPDATE
            contact_se.state = SyncState.MODIFIED

        contact = contact_se.entity
        contact.set("Surname", remote.surname)
        contact.set("GivenName", remote.given_name)
        contact.set("MiddleName", remote.middle_name)
        contact.set(
            "Name",
            " ".join(
                part
                for part in (remote.given_name, remote.middle_name, remote.surname)
                if part
            ),
        )
        contact.set("JobTitle", remote.job_title)
        contact.set("BirthDate", remote.birthday)
        if remote.company_name:
            account_id = session.cache.account_id(remote.company_name)
            if account_id is not None:
                contact.set("AccountId", account_id)

        for synchronizer in self._details(session, local_item, contact.id):
            synchronizer.sync_local_details(remote)

        contact_se.extra = contact_se.extra.update(remote_id=remote.id)
        session.sync_log.info(
            contact_se.action,
            SyncDirection.UPLOAD,
            "Contact %s filled from remote item",
            self.display_name,
        )

    # =========================================================================
    # Remote <- Local
    # =========================================================================

    def fill_remote_item(self, session: SyncSession, local_item: LocalItem) -> None:
        contact_se = local_item.first(self.root_schema)
        if contact_se is None or contact_se.state == SyncState.DELETED:
            self.action = SyncAction.DELETE
            return
        if self.action in (SyncAction.NONE, SyncAction.DELETE):
            return

        contact = contact_se.entity
        lock_identity = self.remote_id or contact.id
        if not check_not_locked(session, lock_identity, CONTACT_LOCK_DOMAIN):
            self.action = SyncAction.NONE
            return

        remote: RemoteContact = self.item
        if self.action == SyncAction.CREATE:
            remote.extended_properties[LOCAL_ID_PROPERTY] = contact.id

        remote.surname = contact.get("Surname", "")
        remote.given_name = contact.get("GivenName", "")
        remote.middle_name = contact.get("MiddleName", "")
        remote.job_title = contact.get("JobTitle", "")
        remote.birthday = _as_date(contact.get("BirthDate"))
        remote.company_name = self._company_name(session, contact.get("AccountId"))

        for synchronizer in self._details(session, local_item, contact.id):
            synchronizer.sync_remote_details(remote)

    def _company_name(self, session: SyncSession, account_id: Optional[str]) -> str:
        if not account_id:
            return ""
        account = session.local_store.fetch("Account", account_id, ["Name"])
        return account.get("Name", "") if account else ""


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value

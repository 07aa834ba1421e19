from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from backend.app.models import (
    AdReferral,
    ContactRecord,
    ConversionDispatchRecord,
    ConversionType,
    DeliveryStatus,
    MessageDirection,
    MessageRecord,
    StatusUpdateOutcome,
    utc_now,
)
from backend.app.services.workflow import (
    CONVERSION_FLAGS,
    conversion_sent,
    is_forward_transition,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class InboundWrite:
    contact: ContactRecord
    message: MessageRecord
    new_ad_contact: bool


class InMemoryStore:
    """Contact store: one document per contact plus its ordered message log.

    Every compound mutation runs under a single re-entrant lock, so the
    read-then-write steps (first-touch referral, status ordering, conversion
    claims) are atomic within one process.
    """

    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.contacts: dict[str, ContactRecord] = {}
        self.messages: dict[str, list[MessageRecord]] = {}
        self.conversion_dispatches: list[ConversionDispatchRecord] = []
        self._provider_index: dict[str, tuple[str, str]] = {}
        self._pending_conversions: set[tuple[str, ConversionType]] = set()

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            else:
                self.conversion_dispatches = self.persistence.list_conversion_dispatches()

    def get_contact(self, contact_id: str) -> ContactRecord:
        contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def list_contacts(self) -> list[ContactRecord]:
        with self._lock:
            contacts = list(self.contacts.values())
        return sorted(
            contacts,
            key=lambda contact: contact.last_message_timestamp or contact.created_at,
            reverse=True,
        )

    def list_messages(self, contact_id: str) -> list[MessageRecord]:
        with self._lock:
            self.get_contact(contact_id)
            return list(self.messages.get(contact_id, []))

    def has_provider_message(self, provider_message_id: Optional[str]) -> bool:
        if not provider_message_id:
            return False
        return provider_message_id in self._provider_index

    def record_inbound_message(
        self,
        *,
        contact_id: str,
        name: Optional[str],
        text: Optional[str],
        summary: str,
        file_url: Optional[str] = None,
        file_type: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        referral: Optional[AdReferral] = None,
    ) -> Optional[InboundWrite]:
        """Append an inbound message and merge the contact summary.

        Returns ``None`` when ``provider_message_id`` was already ingested.
        A referral is attached only when the contact has none yet.
        """
        with self._lock:
            if self.has_provider_message(provider_message_id):
                return None

            now = utc_now()
            existing = self.contacts.get(contact_id)
            current_referral = existing.ad_referral if existing else None
            new_ad_contact = referral is not None and current_referral is None
            ad_referral = referral if new_ad_contact else current_referral

            message = MessageRecord(
                id=new_id("msg"),
                contact_id=contact_id,
                text=text,
                file_url=file_url,
                file_type=file_type,
                direction=MessageDirection.received,
                status=DeliveryStatus.received,
                provider_message_id=provider_message_id,
                timestamp=now,
            )
            if existing:
                contact = existing.model_copy(
                    update={
                        "name": name or existing.name,
                        "last_message": summary,
                        "last_message_timestamp": now,
                        "last_received_at": now,
                        "unread_count": existing.unread_count + 1,
                        "ad_referral": ad_referral,
                    }
                )
            else:
                contact = ContactRecord(
                    id=contact_id,
                    name=name,
                    last_message=summary,
                    last_message_timestamp=now,
                    last_received_at=now,
                    unread_count=1,
                    ad_referral=ad_referral,
                    created_at=now,
                )
            self.contacts[contact_id] = contact
            self._append_message(message)
            self._persist_state()
            return InboundWrite(contact=contact, message=message, new_ad_contact=new_ad_contact)

    def record_outbound_message(
        self,
        *,
        contact_id: str,
        text: Optional[str],
        summary: str,
        provider_message_id: str,
        file_url: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> MessageRecord:
        with self._lock:
            contact = self.get_contact(contact_id)
            now = utc_now()
            message = MessageRecord(
                id=new_id("msg"),
                contact_id=contact_id,
                text=text,
                file_url=file_url,
                file_type=file_type,
                direction=MessageDirection.sent,
                status=DeliveryStatus.sent,
                provider_message_id=provider_message_id,
                timestamp=now,
            )
            self.contacts[contact_id] = contact.model_copy(
                update={"last_message": summary, "last_message_timestamp": now}
            )
            self._append_message(message)
            self._persist_state()
            return message

    def apply_status_update(
        self,
        *,
        contact_id: str,
        provider_message_id: str,
        status: DeliveryStatus,
    ) -> StatusUpdateOutcome:
        with self._lock:
            located = self._provider_index.get(provider_message_id)
            if not located or located[0] != contact_id:
                return StatusUpdateOutcome.not_found
            log = self.messages.get(contact_id, [])
            for index, message in enumerate(log):
                if message.id != located[1]:
                    continue
                if message.direction != MessageDirection.sent:
                    return StatusUpdateOutcome.not_found
                if not is_forward_transition(message.status, status):
                    return StatusUpdateOutcome.stale
                log[index] = message.model_copy(update={"status": status})
                self._persist_state()
                return StatusUpdateOutcome.applied
            return StatusUpdateOutcome.not_found

    def mark_contact_read(self, contact_id: str) -> ContactRecord:
        with self._lock:
            contact = self.get_contact(contact_id)
            if contact.unread_count == 0:
                return contact
            updated = contact.model_copy(update={"unread_count": 0})
            self.contacts[contact_id] = updated
            self._persist_state()
            return updated

    def claim_conversion(self, contact_id: str, conversion_type: ConversionType) -> bool:
        """Reserve the (contact, type) cell; False if already sent or in flight."""
        with self._lock:
            contact = self.get_contact(contact_id)
            key = (contact_id, conversion_type)
            if conversion_sent(contact, conversion_type) or key in self._pending_conversions:
                return False
            self._pending_conversions.add(key)
            return True

    def release_conversion(self, contact_id: str, conversion_type: ConversionType) -> None:
        with self._lock:
            self._pending_conversions.discard((contact_id, conversion_type))

    def complete_conversion(
        self,
        *,
        contact_id: str,
        conversion_type: ConversionType,
        event_id: str,
        event_time: int,
        updates: Optional[dict[str, Any]] = None,
    ) -> ContactRecord:
        with self._lock:
            contact = self.get_contact(contact_id)
            attribute, done_value = CONVERSION_FLAGS[conversion_type]
            changes = dict(updates or {})
            changes[attribute] = done_value
            updated = contact.model_copy(update=changes)
            self.contacts[contact_id] = updated
            self._pending_conversions.discard((contact_id, conversion_type))
            record = ConversionDispatchRecord(
                id=new_id("conv"),
                contact_id=contact_id,
                event_name=conversion_type,
                event_id=event_id,
                event_time=event_time,
                dispatched_at=utc_now(),
            )
            self.conversion_dispatches.append(record)
            self._persist_conversion_dispatch(record)
            self._persist_state()
            return updated

    def list_conversion_dispatches(
        self,
        *,
        limit: int = 100,
        contact_id: Optional[str] = None,
    ) -> list[ConversionDispatchRecord]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            records = [
                record
                for record in self.conversion_dispatches
                if contact_id is None or record.contact_id == contact_id
            ]
        records.sort(key=lambda record: record.dispatched_at, reverse=True)
        return records[:safe_limit]

    def _append_message(self, message: MessageRecord) -> None:
        self.messages.setdefault(message.contact_id, []).append(message)
        if message.provider_message_id:
            self._provider_index[message.provider_message_id] = (message.contact_id, message.id)

    def _persist_conversion_dispatch(self, record: ConversionDispatchRecord) -> None:
        if self.persistence:
            self.persistence.insert_conversion_dispatch(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "contacts": [record.model_dump(mode="json") for record in self.contacts.values()],
            "messages": {
                contact_id: [record.model_dump(mode="json") for record in log]
                for contact_id, log in self.messages.items()
            },
            "conversion_dispatches": [
                record.model_dump(mode="json") for record in self.conversion_dispatches
            ],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.contacts = {
            record["id"]: ContactRecord.model_validate(record)
            for record in snapshot.get("contacts", [])
        }
        self.messages = {}
        self._provider_index = {}
        for records in snapshot.get("messages", {}).values():
            for record in records:
                self._append_message(MessageRecord.model_validate(record))
        self.conversion_dispatches = [
            ConversionDispatchRecord.model_validate(record)
            for record in snapshot.get("conversion_dispatches", [])
        ]

"""Conversion attribution: payload building and at-most-once dispatch.

Each (contact, conversion type) pair moves ``NOT_SENT -> SENT`` exactly once.
The flag is written only after the Conversions API accepted the event; a
failed dispatch leaves the cell retryable.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from backend.app.models import AdReferral, ContactRecord, ConversionType
from backend.app.services.conversions_api import ConversionsApiClient
from backend.app.services.hashing import (
    hash_identifier,
    normalize_email,
    normalize_first_name,
    normalize_phone,
)
from backend.app.services.workflow import conversion_sent

if TYPE_CHECKING:
    from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_crm.attribution")

AD_LEAD_SOURCE = "whatsapp_ad"
ORGANIC_LEAD_SOURCE = "whatsapp_organic"


class MissingUserDataError(Exception):
    pass


class ConversionOutcome(str, Enum):
    sent = "sent"
    already_processed = "already_processed"
    skipped = "skipped"


@dataclass(frozen=True)
class ConversionEvent:
    event_name: ConversionType
    event_time: int
    event_id: str
    action_source: str
    user_data: dict[str, Any]
    custom_data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_name": self.event_name.value,
            "event_time": self.event_time,
            "event_id": self.event_id,
            "action_source": self.action_source,
            "user_data": self.user_data,
            "custom_data": self.custom_data,
        }
        if self.action_source == "business_messaging":
            payload["messaging_channel"] = "whatsapp"
        return payload


def conversion_event_id(event_name: ConversionType, contact_id: str, event_time: int) -> str:
    contact_key = normalize_phone(contact_id) or contact_id
    return f"{event_name.value.lower()}_{contact_key}_{event_time}"


def build_user_data(contact: ContactRecord, referral: Optional[AdReferral]) -> dict[str, Any]:
    phone_hash = hash_identifier(contact.id, normalize_phone)
    if not phone_hash:
        raise MissingUserDataError(f"contact {contact.id!r} has no hashable phone identifier")
    user_data: dict[str, Any] = {"ph": [phone_hash]}
    first_name_hash = hash_identifier(contact.name, normalize_first_name)
    if first_name_hash:
        user_data["fn"] = first_name_hash
    email_hash = hash_identifier(contact.email, normalize_email)
    if email_hash:
        user_data["em"] = [email_hash]
    if referral and referral.ctwa_clid:
        user_data["ctwa_clid"] = referral.ctwa_clid
    return user_data


def build_custom_data(
    referral: Optional[AdReferral],
    extra_fields: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    custom_data: dict[str, Any] = {
        "lead_source": AD_LEAD_SOURCE if referral else ORGANIC_LEAD_SOURCE,
    }
    if referral:
        custom_data["ad_headline"] = referral.headline
        custom_data["ad_source_id"] = referral.source_id
    custom_data.update(extra_fields or {})
    return custom_data


def build_conversion_event(
    conversion_type: ConversionType,
    contact: ContactRecord,
    referral: Optional[AdReferral] = None,
    extra_fields: Optional[dict[str, Any]] = None,
    *,
    event_time: Optional[int] = None,
) -> ConversionEvent:
    resolved_time = event_time if event_time is not None else int(time.time())
    user_data = build_user_data(contact, referral)
    return ConversionEvent(
        event_name=conversion_type,
        event_time=resolved_time,
        event_id=conversion_event_id(conversion_type, contact.id, resolved_time),
        action_source="business_messaging" if "ctwa_clid" in user_data else "chat",
        user_data=user_data,
        custom_data=build_custom_data(referral, extra_fields),
    )


class AttributionEngine:
    def __init__(self, client: Optional[ConversionsApiClient] = None) -> None:
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def send_conversion_event(
        self,
        conversion_type: ConversionType,
        contact: ContactRecord,
        referral: Optional[AdReferral] = None,
        extra_fields: Optional[dict[str, Any]] = None,
    ) -> Optional[ConversionEvent]:
        """Build and send one event. Dispatch errors propagate to the caller."""
        if self.client is None:
            logger.warning(
                "conversion_skipped reason=not_configured event=%s contact=%s",
                conversion_type.value,
                contact.id,
            )
            return None
        event = build_conversion_event(conversion_type, contact, referral, extra_fields)
        response = self.client.send_events([event.to_payload()])
        logger.info(
            "conversion_sent event=%s event_id=%s events_received=%s",
            event.event_name.value,
            event.event_id,
            response.get("events_received"),
        )
        return event


def dispatch_conversion(
    *,
    store: "InMemoryStore",
    engine: AttributionEngine,
    contact_id: str,
    conversion_type: ConversionType,
    extra_fields: Optional[dict[str, Any]] = None,
    contact_updates: Optional[dict[str, Any]] = None,
) -> ConversionOutcome:
    """Attempt the NOT_SENT -> SENT transition for one contact and type.

    ``contact_updates`` are applied to the payload snapshot and persisted
    together with the sent flag, only when the dispatch succeeded.
    """
    contact = store.get_contact(contact_id)
    if conversion_sent(contact, conversion_type):
        return ConversionOutcome.already_processed
    if not engine.enabled:
        logger.warning(
            "conversion_skipped reason=not_configured event=%s contact=%s",
            conversion_type.value,
            contact_id,
        )
        return ConversionOutcome.skipped
    if not store.claim_conversion(contact_id, conversion_type):
        return ConversionOutcome.already_processed

    try:
        snapshot = store.get_contact(contact_id)
        if contact_updates:
            snapshot = snapshot.model_copy(update=contact_updates)
        event = engine.send_conversion_event(
            conversion_type,
            snapshot,
            snapshot.ad_referral,
            extra_fields,
        )
    except Exception:
        store.release_conversion(contact_id, conversion_type)
        raise

    if event is None:
        store.release_conversion(contact_id, conversion_type)
        return ConversionOutcome.skipped
    store.complete_conversion(
        contact_id=contact_id,
        conversion_type=conversion_type,
        event_id=event.event_id,
        event_time=event.event_time,
        updates=contact_updates,
    )
    return ConversionOutcome.sent

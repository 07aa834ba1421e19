from __future__ import annotations

from typing import Optional

from backend.app.models import ContactRecord, ConversionType, DeliveryStatus

STATUS_RANK = {
    DeliveryStatus.sending: 0,
    DeliveryStatus.sent: 1,
    DeliveryStatus.delivered: 2,
    DeliveryStatus.read: 3,
}

# (contact attribute, value once sent)
CONVERSION_FLAGS: dict[ConversionType, tuple[str, object]] = {
    ConversionType.view_content: ("view_content_sent", True),
    ConversionType.lead: ("lead_event_sent", True),
    ConversionType.complete_registration: ("registration_status", "completed"),
    ConversionType.purchase: ("purchase_status", "completed"),
}


def parse_delivery_status(value: Optional[str]) -> Optional[DeliveryStatus]:
    if not value:
        return None
    try:
        status = DeliveryStatus(value.strip().lower())
    except ValueError:
        return None
    return status if status in STATUS_RANK else None


def is_forward_transition(current: DeliveryStatus, incoming: DeliveryStatus) -> bool:
    if current not in STATUS_RANK or incoming not in STATUS_RANK:
        return False
    return STATUS_RANK[incoming] > STATUS_RANK[current]


def conversion_sent(contact: ContactRecord, conversion_type: ConversionType) -> bool:
    attribute, done_value = CONVERSION_FLAGS[conversion_type]
    return getattr(contact, attribute) == done_value

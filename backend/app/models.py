from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageDirection(str, Enum):
    received = "received"
    sent = "sent"


class DeliveryStatus(str, Enum):
    sending = "sending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    received = "received"


class ConversionType(str, Enum):
    view_content = "ViewContent"
    lead = "Lead"
    complete_registration = "CompleteRegistration"
    purchase = "Purchase"


class StatusUpdateOutcome(str, Enum):
    applied = "applied"
    stale = "stale"
    not_found = "not_found"
    unknown_status = "unknown_status"


class AdReferral(CamelModel):
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    source_url: Optional[str] = None
    headline: Optional[str] = None
    body: Optional[str] = None
    media_type: Optional[str] = None
    ctwa_clid: Optional[str] = None
    received_at: datetime


class ContactRecord(CamelModel):
    id: str
    name: Optional[str] = None
    last_message: Optional[str] = None
    last_message_timestamp: Optional[datetime] = None
    last_received_at: Optional[datetime] = None
    unread_count: int = Field(default=0, ge=0)
    ad_referral: Optional[AdReferral] = None
    registration_status: Optional[str] = None
    purchase_status: Optional[str] = None
    view_content_sent: bool = False
    lead_event_sent: bool = False
    purchase_value: Optional[float] = None
    purchase_currency: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime


class MessageRecord(CamelModel):
    id: str
    contact_id: str
    text: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    direction: MessageDirection
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    timestamp: datetime


class ConversionDispatchRecord(CamelModel):
    id: str
    contact_id: str
    event_name: ConversionType
    event_id: str
    event_time: int
    dispatched_at: datetime


class SendMessageRequest(CamelModel):
    text: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None


class RegistrationRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=254)


class PurchaseRequest(CamelModel):
    # Raw JSON value; booleans and non-numeric strings are rejected by the route.
    value: Any = None


class ActionResponse(CamelModel):
    success: bool
    message: str


class SendMessageResponse(ActionResponse):
    data: Optional[MessageRecord] = None

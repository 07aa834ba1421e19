"""Classify raw WhatsApp Cloud API webhook payloads.

The provider may omit any branch of ``entry[0].changes[0].value``. Only the
first entry, change, message and status are validated, each on its own, so a
malformed sibling never hides a usable first element. Anything that does not
fit is reported as ``Unrecognized`` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class WebhookModel(BaseModel):
    # Provider ids and timestamps sometimes arrive as JSON numbers.
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class WebhookProfile(WebhookModel):
    name: Optional[str] = None


class WebhookContact(WebhookModel):
    wa_id: Optional[str] = None
    profile: Optional[WebhookProfile] = None


class WebhookText(WebhookModel):
    body: Optional[str] = None


class WebhookMedia(WebhookModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class WebhookReferral(WebhookModel):
    source_url: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    headline: Optional[str] = None
    body: Optional[str] = None
    media_type: Optional[str] = None
    ctwa_clid: Optional[str] = None


class WebhookMessage(WebhookModel):
    id: Optional[str] = None
    from_: str = Field(alias="from", min_length=1)
    timestamp: Optional[str] = None
    type: str = "unknown"
    text: Optional[WebhookText] = None
    image: Optional[WebhookMedia] = None
    video: Optional[WebhookMedia] = None
    audio: Optional[WebhookMedia] = None
    document: Optional[WebhookMedia] = None
    referral: Optional[WebhookReferral] = None

    def media(self) -> Optional[WebhookMedia]:
        value = getattr(self, self.type, None) if self.type in MEDIA_TYPES else None
        return value if isinstance(value, WebhookMedia) else None


class WebhookStatus(WebhookModel):
    id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    recipient_id: str = Field(min_length=1)
    timestamp: Optional[str] = None


class WebhookValue(WebhookModel):
    # Elements are validated individually by ``classify``.
    messages: list[Any] = Field(default_factory=list)
    contacts: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)


class WebhookChange(WebhookModel):
    field: Optional[str] = None
    value: Optional[dict[str, Any]] = None


class WebhookEntry(WebhookModel):
    id: Optional[str] = None
    changes: list[Any] = Field(default_factory=list)


class WebhookPayload(WebhookModel):
    object: Optional[str] = None
    entry: list[Any] = Field(default_factory=list)


MEDIA_TYPES = ("image", "video", "audio", "document")


@dataclass(frozen=True)
class MessageEvent:
    message: WebhookMessage
    contact: Optional[WebhookContact]

    @property
    def contact_id(self) -> str:
        return self.message.from_

    @property
    def profile_name(self) -> Optional[str]:
        if self.contact and self.contact.profile and self.contact.profile.name:
            return self.contact.profile.name.strip() or None
        return None


@dataclass(frozen=True)
class StatusEvent:
    provider_message_id: str
    status: str
    recipient_id: str


@dataclass(frozen=True)
class Unrecognized:
    reason: str


WebhookEvent = Union[MessageEvent, StatusEvent, Unrecognized]


def _first_value(raw: dict[str, Any]) -> WebhookValue:
    payload = WebhookPayload.model_validate(raw)
    entry = WebhookEntry.model_validate(payload.entry[0]) if payload.entry else None
    if entry is None or not entry.changes:
        raise LookupError("no change value")
    change = WebhookChange.model_validate(entry.changes[0])
    if change.value is None:
        raise LookupError("no change value")
    return WebhookValue.model_validate(change.value)


def _first_contact(value: WebhookValue) -> Optional[WebhookContact]:
    if not value.contacts:
        return None
    try:
        return WebhookContact.model_validate(value.contacts[0])
    except ValidationError:
        return None


def classify(raw: Any) -> WebhookEvent:
    if not isinstance(raw, dict):
        return Unrecognized(reason="payload is not an object")
    try:
        value = _first_value(raw)
    except LookupError as exc:
        return Unrecognized(reason=str(exc))
    except ValidationError as exc:
        return Unrecognized(reason=f"envelope shape rejected: {exc.error_count()} errors")

    if value.messages:
        try:
            message = WebhookMessage.model_validate(value.messages[0])
        except ValidationError as exc:
            return Unrecognized(reason=f"message shape rejected: {exc.error_count()} errors")
        return MessageEvent(message=message, contact=_first_contact(value))
    if value.statuses:
        try:
            status = WebhookStatus.model_validate(value.statuses[0])
        except ValidationError as exc:
            return Unrecognized(reason=f"status shape rejected: {exc.error_count()} errors")
        return StatusEvent(
            provider_message_id=status.id,
            status=status.status,
            recipient_id=status.recipient_id,
        )
    return Unrecognized(reason="no messages or statuses")

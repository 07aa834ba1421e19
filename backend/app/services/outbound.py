from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import ContactRecord, MessageRecord, SendMessageRequest, utc_now
from backend.app.services.ingestion import MEDIA_PLACEHOLDERS
from backend.app.services.whatsapp_client import WhatsAppClient
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_crm.outbound")

SUPPORTED_FILE_TYPES = frozenset(MEDIA_PLACEHOLDERS)


class OutboundValidationError(Exception):
    pass


class MessagingWindowError(Exception):
    pass


@dataclass(frozen=True)
class OutboundContent:
    text: Optional[str]
    file_url: Optional[str]
    file_type: Optional[str]

    @property
    def summary(self) -> str:
        if self.file_type:
            return MEDIA_PLACEHOLDERS[self.file_type]
        return self.text or ""


def validate_outbound(payload: SendMessageRequest) -> OutboundContent:
    text = (payload.text or "").strip() or None
    file_url = (payload.file_url or "").strip() or None
    file_type = (payload.file_type or "").strip().lower() or None

    if file_url or file_type:
        if not file_url or not file_type:
            raise OutboundValidationError("fileUrl and fileType must be provided together")
        if file_type not in SUPPORTED_FILE_TYPES:
            raise OutboundValidationError(f"unsupported file type: {file_type}")
        if text:
            raise OutboundValidationError("send either text or a file, not both")
        return OutboundContent(text=None, file_url=file_url, file_type=file_type)
    if not text:
        raise OutboundValidationError("text or file is required")
    return OutboundContent(text=text, file_url=None, file_type=None)


def ensure_messaging_window(
    contact: ContactRecord,
    *,
    window_hours: int,
    now: Optional[datetime] = None,
) -> None:
    if contact.last_received_at is None:
        raise MessagingWindowError("contact has not started a conversation yet")
    current = now or utc_now()
    if current - contact.last_received_at > timedelta(hours=window_hours):
        raise MessagingWindowError(
            f"last inbound message is older than {window_hours} hours; use a template message"
        )


def send_outbound_message(
    *,
    store: InMemoryStore,
    whatsapp: WhatsAppClient,
    contact_id: str,
    payload: SendMessageRequest,
    window_hours: int,
) -> MessageRecord:
    """Validate, enforce the session window, send, then record the acknowledged message.

    Nothing is written unless the provider returned a message id.
    """
    content = validate_outbound(payload)
    contact = store.get_contact(contact_id)
    ensure_messaging_window(contact, window_hours=window_hours)

    if content.file_url and content.file_type:
        provider_message_id = whatsapp.send_media(
            to=contact_id,
            media_type=content.file_type,
            link=content.file_url,
        )
    else:
        provider_message_id = whatsapp.send_text(to=contact_id, body=content.text or "")

    message = store.record_outbound_message(
        contact_id=contact_id,
        text=content.text or content.summary,
        summary=content.summary,
        provider_message_id=provider_message_id,
        file_url=content.file_url,
        file_type=content.file_type,
    )
    logger.info(
        "outbound_sent contact=%s message_id=%s provider_message_id=%s",
        contact_id,
        message.id,
        provider_message_id,
    )
    return message

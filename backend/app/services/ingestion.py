from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from backend.app.models import AdReferral, ConversionType, utc_now
from backend.app.services.attribution import (
    AttributionEngine,
    MissingUserDataError,
    dispatch_conversion,
)
from backend.app.services.classifier import (
    MessageEvent,
    WebhookMedia,
    WebhookMessage,
    WebhookReferral,
)
from backend.app.services.conversions_api import ConversionDispatchError
from backend.app.services.media_storage import LocalMediaStorage, MediaStorageError
from backend.app.services.whatsapp_client import WhatsAppApiError, WhatsAppClient
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_crm.ingestion")

MEDIA_PLACEHOLDERS = {
    "image": "📷 Imagen",
    "video": "🎥 Video",
    "audio": "🎵 Audio",
    "document": "📄 Documento",
}

AD_CONTACT_CONVERSIONS = (ConversionType.view_content, ConversionType.lead)


def unsupported_placeholder(message_type: str) -> str:
    return f"[Tipo de mensaje no soportado: {message_type}]"


@dataclass(frozen=True)
class MessageContent:
    text: str
    summary: str
    media: Optional[WebhookMedia] = None
    media_type: Optional[str] = None


@dataclass
class IngestResult:
    contact_id: str
    duplicate: bool = False
    message_id: Optional[str] = None
    new_ad_contact: bool = False
    media_error: Optional[str] = None
    conversions: dict[ConversionType, str] = field(default_factory=dict)


def resolve_content(message: WebhookMessage) -> MessageContent:
    if message.type == "text":
        body = message.text.body if message.text and message.text.body else ""
        return MessageContent(text=body, summary=body)
    placeholder = MEDIA_PLACEHOLDERS.get(message.type)
    if placeholder:
        media = message.media()
        caption = media.caption.strip() if media and media.caption else ""
        return MessageContent(
            text=caption or placeholder,
            summary=placeholder,
            media=media if media and media.id else None,
            media_type=message.type,
        )
    placeholder = unsupported_placeholder(message.type)
    return MessageContent(text=placeholder, summary=placeholder)


def build_ad_referral(
    referral: Optional[WebhookReferral],
    received_at: datetime,
) -> Optional[AdReferral]:
    if referral is None or (referral.source_type or "").strip().lower() != "ad":
        return None
    return AdReferral(
        source_id=referral.source_id,
        source_type=referral.source_type,
        source_url=referral.source_url,
        headline=referral.headline,
        body=referral.body,
        media_type=referral.media_type,
        ctwa_clid=referral.ctwa_clid,
        received_at=received_at,
    )


def _store_media(
    *,
    whatsapp: WhatsAppClient,
    media_storage: LocalMediaStorage,
    contact_id: str,
    media: WebhookMedia,
) -> str:
    download = whatsapp.fetch_media(media.id or "")
    return media_storage.save(
        contact_id=contact_id,
        media_id=media.id or "",
        mime_type=media.mime_type or download.mime_type,
        content=download.content,
    )


def ingest_message(
    *,
    event: MessageEvent,
    store: InMemoryStore,
    whatsapp: WhatsAppClient,
    media_storage: LocalMediaStorage,
    attribution: AttributionEngine,
) -> IngestResult:
    """Persist one inbound message; media and attribution failures only degrade the result.

    Store errors propagate: message persistence is the step that must succeed.
    """
    contact_id = event.contact_id
    provider_message_id = event.message.id
    if store.has_provider_message(provider_message_id):
        logger.info("inbound_duplicate contact=%s provider_message_id=%s", contact_id, provider_message_id)
        return IngestResult(contact_id=contact_id, duplicate=True)

    content = resolve_content(event.message)
    result = IngestResult(contact_id=contact_id)
    file_url: Optional[str] = None
    if content.media is not None:
        try:
            file_url = _store_media(
                whatsapp=whatsapp,
                media_storage=media_storage,
                contact_id=contact_id,
                media=content.media,
            )
        except (WhatsAppApiError, MediaStorageError) as exc:
            result.media_error = str(exc)
            logger.warning(
                "media_store_failed contact=%s media_id=%s error=%s",
                contact_id,
                content.media.id,
                exc,
            )

    written = store.record_inbound_message(
        contact_id=contact_id,
        name=event.profile_name,
        text=content.text,
        summary=content.summary,
        file_url=file_url,
        file_type=content.media_type if file_url else None,
        provider_message_id=provider_message_id,
        referral=build_ad_referral(event.message.referral, utc_now()),
    )
    if written is None:
        result.duplicate = True
        return result

    result.message_id = written.message.id
    result.new_ad_contact = written.new_ad_contact
    logger.info(
        "inbound_stored contact=%s message_id=%s type=%s new_ad_contact=%s",
        contact_id,
        written.message.id,
        event.message.type,
        written.new_ad_contact,
    )

    if written.new_ad_contact:
        for conversion_type in AD_CONTACT_CONVERSIONS:
            try:
                outcome = dispatch_conversion(
                    store=store,
                    engine=attribution,
                    contact_id=contact_id,
                    conversion_type=conversion_type,
                )
                result.conversions[conversion_type] = outcome.value
            except (ConversionDispatchError, MissingUserDataError) as exc:
                result.conversions[conversion_type] = "failed"
                logger.warning(
                    "conversion_failed event=%s contact=%s error=%s",
                    conversion_type.value,
                    contact_id,
                    exc,
                )
    return result

from __future__ import annotations

from typing import Any, Optional

CONTACT_ID = "5215500000000"


def envelope(value: dict[str, Any]) -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "102290129340398",
                "changes": [{"field": "messages", "value": value}],
            }
        ],
    }


def message_payload(message: dict[str, Any], *, name: Optional[str] = "Ana") -> dict[str, Any]:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550783881", "phone_number_id": "106540352242922"},
        "messages": [message],
    }
    if name is not None:
        value["contacts"] = [{"profile": {"name": name}, "wa_id": message["from"]}]
    return envelope(value)


def text_message(
    *,
    sender: str = CONTACT_ID,
    body: str = "hola",
    message_id: str = "wamid.IN1",
    referral: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "from": sender,
        "id": message_id,
        "timestamp": "1760870000",
        "type": "text",
        "text": {"body": body},
    }
    if referral is not None:
        message["referral"] = referral
    return message


def media_message(
    *,
    sender: str = CONTACT_ID,
    media_type: str = "image",
    media_id: str = "1234567890",
    message_id: str = "wamid.IMG1",
    caption: Optional[str] = None,
) -> dict[str, Any]:
    media: dict[str, Any] = {"id": media_id, "mime_type": "image/jpeg", "sha256": "abc"}
    if caption:
        media["caption"] = caption
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1760870000",
        "type": media_type,
        media_type: media,
    }


def ad_referral(
    *,
    source_id: str = "120208000000000",
    headline: str = "Clases de ingles 50% off",
    ctwa_clid: Optional[str] = "ARAkLkA8rmlFeiCktEJQ",
) -> dict[str, Any]:
    referral: dict[str, Any] = {
        "source_url": "https://fb.me/3cr4Wqqkk",
        "source_id": source_id,
        "source_type": "ad",
        "headline": headline,
        "media_type": "image",
    }
    if ctwa_clid is not None:
        referral["ctwa_clid"] = ctwa_clid
    return referral


def status_payload(
    *,
    message_id: str,
    status: str,
    recipient_id: str = CONTACT_ID,
) -> dict[str, Any]:
    return envelope(
        {
            "messaging_product": "whatsapp",
            "metadata": {"display_phone_number": "15550783881", "phone_number_id": "106540352242922"},
            "statuses": [
                {
                    "id": message_id,
                    "status": status,
                    "timestamp": "1760870100",
                    "recipient_id": recipient_id,
                }
            ],
        }
    )

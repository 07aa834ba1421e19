from __future__ import annotations

from datetime import timedelta

from webhook_payloads import CONTACT_ID, message_payload, text_message

from backend.app.models import utc_now
from backend.app.store import InMemoryStore


def _start_conversation(client) -> None:
    client.post("/webhook", json=message_payload(text_message()))


def test_text_reply_is_sent_and_recorded(client, whatsapp) -> None:
    _start_conversation(client)
    response = client.post(f"/api/contacts/{CONTACT_ID}/messages", json={"text": "  hola Ana  "})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["text"] == "hola Ana"
    assert body["data"]["direction"] == "sent"
    assert body["data"]["status"] == "sent"
    assert body["data"]["providerMessageId"] == "wamid.OUT1"

    assert whatsapp.sent == [{"to": CONTACT_ID, "type": "text", "body": "hola Ana", "id": "wamid.OUT1"}]
    contact = client.get(f"/api/contacts/{CONTACT_ID}").json()
    assert contact["lastMessage"] == "hola Ana"
    assert contact["unreadCount"] == 1


def test_media_reply_uses_placeholder_summary(client, whatsapp) -> None:
    _start_conversation(client)
    response = client.post(
        f"/api/contacts/{CONTACT_ID}/messages",
        json={"fileUrl": "https://cdn.example.com/flyer.pdf", "fileType": "document"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["fileUrl"] == "https://cdn.example.com/flyer.pdf"
    assert whatsapp.sent[0]["type"] == "document"
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["lastMessage"] == "📄 Documento"


def test_invalid_payloads_are_rejected(client, whatsapp) -> None:
    _start_conversation(client)
    for payload in (
        {},
        {"text": "   "},
        {"fileUrl": "https://cdn.example.com/a.png"},
        {"fileType": "image"},
        {"fileUrl": "https://cdn.example.com/a.zip", "fileType": "archive"},
        {"text": "hola", "fileUrl": "https://cdn.example.com/a.png", "fileType": "image"},
    ):
        response = client.post(f"/api/contacts/{CONTACT_ID}/messages", json=payload)
        assert response.status_code == 400, payload
        assert response.json()["success"] is False
    assert whatsapp.sent == []


def test_unknown_contact_is_not_found(client, whatsapp) -> None:
    response = client.post("/api/contacts/5210000000009/messages", json={"text": "hola"})
    assert response.status_code == 404
    assert whatsapp.sent == []


def test_contact_without_inbound_message_cannot_be_messaged(client, whatsapp) -> None:
    store: InMemoryStore = client.app.state.store
    _start_conversation(client)
    contact = store.get_contact(CONTACT_ID)
    store.contacts[CONTACT_ID] = contact.model_copy(update={"last_received_at": None})

    response = client.post(f"/api/contacts/{CONTACT_ID}/messages", json={"text": "hola"})
    assert response.status_code == 403
    assert whatsapp.sent == []
    assert len(client.get(f"/api/contacts/{CONTACT_ID}/messages").json()) == 1


def test_expired_messaging_window_is_forbidden(client, whatsapp) -> None:
    store: InMemoryStore = client.app.state.store
    _start_conversation(client)
    contact = store.get_contact(CONTACT_ID)
    store.contacts[CONTACT_ID] = contact.model_copy(
        update={"last_received_at": utc_now() - timedelta(hours=25)}
    )

    response = client.post(f"/api/contacts/{CONTACT_ID}/messages", json={"text": "hola"})
    assert response.status_code == 403
    assert "24 hours" in response.json()["message"]
    assert whatsapp.sent == []


def test_provider_failure_records_nothing(client, whatsapp) -> None:
    _start_conversation(client)
    whatsapp.fail_send = True

    response = client.post(f"/api/contacts/{CONTACT_ID}/messages", json={"text": "hola"})
    assert response.status_code == 502
    assert len(client.get(f"/api/contacts/{CONTACT_ID}/messages").json()) == 1
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["lastMessage"] == "hola"

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.attribution import AttributionEngine
from backend.app.services.conversions_api import ConversionDispatchError
from backend.app.services.whatsapp_client import MediaDownload, WhatsAppApiError


class FakeWhatsApp:
    configured = True

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fetched: list[str] = []
        self.fail_send = False
        self.fail_media = False
        self.media_content = b"\xff\xd8\xff-fake-jpeg"
        self.media_mime_type = "image/jpeg"
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"wamid.OUT{self._counter}"

    def send_text(self, *, to: str, body: str) -> str:
        if self.fail_send:
            raise WhatsAppApiError("whatsapp api request failed: status=500")
        message_id = self._next_id()
        self.sent.append({"to": to, "type": "text", "body": body, "id": message_id})
        return message_id

    def send_media(self, *, to: str, media_type: str, link: str) -> str:
        if self.fail_send:
            raise WhatsAppApiError("whatsapp api request failed: status=500")
        message_id = self._next_id()
        self.sent.append({"to": to, "type": media_type, "link": link, "id": message_id})
        return message_id

    def fetch_media(self, media_id: str) -> MediaDownload:
        self.fetched.append(media_id)
        if self.fail_media:
            raise WhatsAppApiError("whatsapp api unreachable")
        return MediaDownload(content=self.media_content, mime_type=self.media_mime_type)


class FakeConversions:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.calls = 0
        self.fail = False

    def send_events(self, events: list[dict[str, Any]]) -> dict[str, Any]:
        self.calls += 1
        if self.fail:
            raise ConversionDispatchError("conversions api rejected event: status=500 body=")
        self.events.extend(events)
        return {"events_received": len(events), "fbtrace_id": "trace"}

    def names(self) -> list[str]:
        return [event["event_name"] for event in self.events]


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_APP_SECRET", "")
    monkeypatch.setenv("WHATSAPP_VERIFY_TOKEN", "verify-me")
    monkeypatch.setenv("META_PIXEL_ID", "pixel-1")
    monkeypatch.setenv("META_CAPI_ACCESS_TOKEN", "capi-token")
    monkeypatch.setenv("CONVERSION_CURRENCY", "MXN")
    monkeypatch.setenv("MEDIA_STORAGE_DIR", str(tmp_path / "media"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://testserver")


@pytest.fixture()
def whatsapp() -> FakeWhatsApp:
    return FakeWhatsApp()


@pytest.fixture()
def conversions() -> FakeConversions:
    return FakeConversions()


@pytest.fixture()
def client(app_env, whatsapp: FakeWhatsApp, conversions: FakeConversions) -> TestClient:
    app = create_app()
    app.state.whatsapp = whatsapp
    app.state.attribution = AttributionEngine(client=conversions)
    return TestClient(app)

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional
from urllib import request
from urllib.error import HTTPError, URLError

GRAPH_BASE_URL = "https://graph.facebook.com"


class WhatsAppApiError(Exception):
    pass


@dataclass(frozen=True)
class MediaDownload:
    content: bytes
    mime_type: str


class WhatsAppClient:
    """Thin Cloud API wrapper: outbound sends and inbound media download."""

    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v18.0",
        timeout_seconds: int = 10,
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.timeout_seconds = timeout_seconds
        self.base_url = f"{GRAPH_BASE_URL}/{api_version}"

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def send_text(self, *, to: str, body: str) -> str:
        return self._send(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"body": body},
            }
        )

    def send_media(self, *, to: str, media_type: str, link: str) -> str:
        return self._send(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": media_type,
                media_type: {"link": link},
            }
        )

    def fetch_media(self, media_id: str) -> MediaDownload:
        """Resolve the temporary media URL, then download the bytes with the same token."""
        meta = self._request_json("GET", f"{self.base_url}/{media_id}")
        url = meta.get("url")
        if not isinstance(url, str) or not url:
            raise WhatsAppApiError(f"media {media_id} has no download url")
        content = self._read(request.Request(url, method="GET", headers=self._auth_headers()))
        mime_type = meta.get("mime_type") or "application/octet-stream"
        return MediaDownload(content=content, mime_type=str(mime_type))

    def _send(self, payload: dict[str, Any]) -> str:
        if not self.configured:
            raise WhatsAppApiError("whatsapp access token or phone number id not configured")
        decoded = self._request_json(
            "POST",
            f"{self.base_url}/{self.phone_number_id}/messages",
            payload=payload,
        )
        messages = decoded.get("messages")
        if not isinstance(messages, list) or not messages or not messages[0].get("id"):
            raise WhatsAppApiError("whatsapp send response missing message id")
        return str(messages[0]["id"])

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = self._auth_headers()
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload).encode("utf-8")
        body = self._read(request.Request(url, data=data, method=method, headers=headers))
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WhatsAppApiError("whatsapp response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise WhatsAppApiError("whatsapp response was not an object")
        return decoded

    def _read(self, req: request.Request) -> bytes:
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return response.read()
        except HTTPError as exc:
            raise WhatsAppApiError(f"whatsapp api request failed: status={exc.code}") from exc
        except (URLError, TimeoutError) as exc:
            raise WhatsAppApiError("whatsapp api unreachable") from exc

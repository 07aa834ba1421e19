from __future__ import annotations

import json
from typing import Any, Optional
from urllib import request
from urllib.error import HTTPError, URLError

GRAPH_BASE_URL = "https://graph.facebook.com"


class ConversionDispatchError(Exception):
    pass


class ConversionsApiClient:
    """POSTs server-side events to ``/{pixel_id}/events`` with a bearer token."""

    def __init__(
        self,
        *,
        pixel_id: str,
        access_token: str,
        api_version: str = "v18.0",
        timeout_seconds: int = 10,
        test_event_code: Optional[str] = None,
    ) -> None:
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.test_event_code = test_event_code or None
        self.events_url = f"{GRAPH_BASE_URL}/{api_version}/{pixel_id}/events"

    def send_events(self, events: list[dict[str, Any]]) -> dict[str, Any]:
        body: dict[str, Any] = {"data": events}
        if self.test_event_code:
            body["test_event_code"] = self.test_event_code
        req = request.Request(
            self.events_url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.access_token}",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:300]
            raise ConversionDispatchError(
                f"conversions api rejected event: status={exc.code} body={detail}"
            ) from exc
        except (URLError, TimeoutError) as exc:
            raise ConversionDispatchError("conversions api request failed") from exc

        try:
            decoded = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise ConversionDispatchError("conversions api response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise ConversionDispatchError("conversions api response was not an object")
        if decoded.get("error"):
            raise ConversionDispatchError(f"conversions api error: {decoded['error']}")
        return decoded

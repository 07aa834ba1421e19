from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import time
import urllib.error
import urllib.request
from typing import Any, Optional


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def envelope(value: dict[str, Any]) -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "mock-waba", "changes": [{"field": "messages", "value": value}]}],
    }


def message_event(
    *,
    phone: str,
    name: str,
    message_id: str,
    body: str,
    ad_id: Optional[str],
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "from": phone,
        "id": message_id,
        "timestamp": str(int(time.time())),
        "type": "text",
        "text": {"body": body},
    }
    if ad_id:
        message["referral"] = {
            "source_url": "https://fb.me/mock",
            "source_id": ad_id,
            "source_type": "ad",
            "headline": "Mock ad",
            "media_type": "image",
            "ctwa_clid": f"mock-clid-{message_id}",
        }
    return envelope(
        {
            "messaging_product": "whatsapp",
            "contacts": [{"profile": {"name": name}, "wa_id": phone}],
            "messages": [message],
        }
    )


def status_event(*, phone: str, message_id: str, status: str) -> dict[str, Any]:
    return envelope(
        {
            "messaging_product": "whatsapp",
            "statuses": [
                {
                    "id": message_id,
                    "status": status,
                    "timestamp": str(int(time.time())),
                    "recipient_id": phone,
                }
            ],
        }
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock WhatsApp Cloud API webhooks to the local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--kind", choices=["message", "status"], default="message")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--ad-id", default=None, help="Attach a click-to-WhatsApp referral with this ad id.")
    parser.add_argument("--message-id", default=None, help="Outbound wamid to target with --kind status.")
    parser.add_argument("--status", choices=["sent", "delivered", "read"], default="delivered")
    parser.add_argument("--secret", default="", help="App secret used to sign X-Hub-Signature-256.")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhook"
    for index in range(args.start_index, args.start_index + args.count):
        phone = f"52155{index:08d}"
        if args.kind == "status":
            if not args.message_id:
                parser.error("--message-id is required for status events")
            payload = status_event(phone=phone, message_id=args.message_id, status=args.status)
            label = f"{args.message_id}:{args.status}"
        else:
            message_id = f"wamid.MOCK{index}"
            payload = message_event(
                phone=phone,
                name=f"Contacto {index}",
                message_id=message_id,
                body="Hola, quiero informes",
                ad_id=args.ad_id,
            )
            label = message_id
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            headers["X-Hub-Signature-256"] = sign_payload(args.secret, body)
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {label} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())

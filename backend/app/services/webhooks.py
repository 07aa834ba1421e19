from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers


class SignatureVerificationError(Exception):
    pass


class SubscriptionVerificationError(Exception):
    def __init__(self, message: str, *, missing_params: bool = False) -> None:
        super().__init__(message)
        self.missing_params = missing_params


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_whatsapp_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    if not secret:
        return
    signature = _header_value(headers, ["x-hub-signature-256"])
    if not signature:
        raise SignatureVerificationError("missing whatsapp signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError("invalid whatsapp signature")


def verify_subscription(
    *,
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: str,
) -> str:
    """Validate the one-time webhook handshake and return the challenge to echo."""
    if not mode or not token:
        raise SubscriptionVerificationError("missing hub.mode or hub.verify_token", missing_params=True)
    if mode != "subscribe" or not expected_token:
        raise SubscriptionVerificationError("unsupported hub.mode or verify token not configured")
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise SubscriptionVerificationError("verify token mismatch")
    return challenge or ""

from __future__ import annotations

import hashlib
from typing import Callable, Optional


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def normalize_email(value: Optional[str]) -> str:
    return "".join(normalize(value).split())


def normalize_phone(value: Optional[str]) -> str:
    if not value:
        return ""
    return "".join(char for char in value if char.isdigit())


def normalize_first_name(value: Optional[str]) -> str:
    parts = normalize(value).split()
    if not parts:
        return ""
    return "".join(char for char in parts[0] if char.isalnum())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_identifier(
    value: Optional[str],
    normalizer: Callable[[Optional[str]], str] = normalize,
) -> Optional[str]:
    normalized = normalizer(value)
    if not normalized:
        return None
    return sha256_hex(normalized)

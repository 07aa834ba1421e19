from __future__ import annotations

import mimetypes
import re
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")

# mimetypes returns odd picks for a few common WhatsApp formats
_PREFERRED_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "audio/ogg": ".ogg",
    "audio/ogg; codecs=opus": ".ogg",
    "video/mp4": ".mp4",
}


class MediaStorageError(Exception):
    pass


def _safe_segment(value: str) -> str:
    cleaned = _UNSAFE.sub("_", value.strip())
    if not cleaned.strip("._"):
        raise MediaStorageError(f"unusable path segment: {value!r}")
    return cleaned


def extension_for(mime_type: str) -> str:
    normalized = mime_type.strip().lower()
    if normalized in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[normalized]
    return mimetypes.guess_extension(normalized.split(";", 1)[0].strip()) or ".bin"


class LocalMediaStorage:
    """Writes media under ``root/<contact>/<media>.<ext>``, served from ``/media``."""

    def __init__(self, root: str, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def save(self, *, contact_id: str, media_id: str, mime_type: str, content: bytes) -> str:
        if not content:
            raise MediaStorageError(f"empty media payload for {media_id}")
        folder = _safe_segment(contact_id)
        filename = f"{_safe_segment(media_id)}{extension_for(mime_type)}"
        target = self.root / folder / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise MediaStorageError(f"could not write media {media_id}") from exc
        return f"{self.public_base_url}/media/{folder}/{filename}"

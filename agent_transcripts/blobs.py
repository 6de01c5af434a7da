"""Content-addressed storage for inline binary attachments."""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re

from agent_transcripts.models import ImageRef, TranscriptBlob

logger = logging.getLogger("agent_transcripts.blobs")

_DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,([\s\S]+)$")
_IMAGE_PLACEHOLDER_PATTERNS = (
    re.compile(r"<image[^>]*>", re.IGNORECASE),
    re.compile(r"</image>", re.IGNORECASE),
    re.compile(r"\[\s*image\s*#?\d+\s*\]", re.IGNORECASE),
)
_IMAGE_PLACEHOLDER_LINE = re.compile(r"^<image name=\[Image #\d+\]>$", re.IGNORECASE)
_DEFAULT_MEDIA_TYPE = "image/unknown"


def _decode_base64(payload: str) -> bytes | None:
    cleaned = "".join(payload.split())
    if not cleaned:
        return None
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned)
    except (binascii.Error, ValueError):
        return None


def strip_image_placeholders(text: str) -> str:
    """Remove inline image markup such as ``<image ...>`` and ``[Image #1]``."""
    result = text
    for pattern in _IMAGE_PLACEHOLDER_PATTERNS:
        result = pattern.sub("", result)
    return result


def is_image_placeholder(text: str) -> bool:
    return bool(_IMAGE_PLACEHOLDER_LINE.match(text.strip()))


class BlobStore:
    """Per-conversion blob map keyed by the sha256 of the decoded bytes."""

    def __init__(self) -> None:
        self.blobs: dict[str, TranscriptBlob] = {}

    def __len__(self) -> int:
        return len(self.blobs)

    def add(self, data: bytes, media_type: str | None) -> ImageRef:
        media = (media_type or "").strip() or _DEFAULT_MEDIA_TYPE
        digest = hashlib.sha256(data).hexdigest()
        if digest not in self.blobs:
            self.blobs[digest] = TranscriptBlob(data=data, mediaType=media)
        return ImageRef(sha256=digest, mediaType=media)

    def add_base64(self, payload: str | None, media_type: str | None) -> ImageRef | None:
        if not isinstance(payload, str):
            return None
        data = _decode_base64(payload)
        if data is None:
            logger.debug("Skipping attachment with invalid base64 payload")
            return None
        return self.add(data, media_type)

    def add_data_url(self, url: str | None) -> ImageRef | None:
        if not isinstance(url, str):
            return None
        match = _DATA_URL_PATTERN.match(url.strip())
        if not match:
            return None
        return self.add_base64(match.group(2), match.group(1))

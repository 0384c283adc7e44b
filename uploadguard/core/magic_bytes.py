"""Magic-byte signature checks and MIME sniffing.

The header of the file must start with one of the profile's allowed
signatures, the MIME type sniffed by libmagic (``python-magic``) must be
allowed and must agree with the signature, and the head must not carry PHP
markers together with PDF or ZIP markers (polyglot files).

Every failure raises the same generic :class:`ValidationError` message so
callers learn nothing about which check tripped; the reason is logged.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

import magic

from uploadguard.core.exceptions import ValidationError
from uploadguard.core.profiles import UploadProfile

logger = logging.getLogger(__name__)

HEAD_BYTES = 512
_SNIFF_BYTES = 8192
_RIFF_HEX = "52494646"
_WEBP_HEX = "57454250"
_GENERIC_MESSAGE = "Uploaded file format is invalid."

_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "image/x-webp": "image/webp",
    "application/x-pdf": "application/pdf",
}


def normalize_mime(mime: str | None) -> str | None:
    if not mime:
        return None
    value = mime.split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(value, value) or None


def sniff_mime(path: str) -> str | None:
    """Detect the MIME type of *path* from its content with libmagic."""
    with open(path, "rb") as fh:
        head = fh.read(_SNIFF_BYTES)
    if not head:
        return None
    return normalize_mime(magic.from_buffer(head, mime=True))


def read_head(path: str, size: int = HEAD_BYTES) -> bytes:
    with open(path, "rb") as fh:
        return fh.read(size)


def matched_signature_mime(head: bytes, signatures: dict[str, str]) -> str | None:
    """Return the MIME of the first signature *head* starts with."""
    hex_head = head.hex()
    for signature, mime in signatures.items():
        normalized = signature.strip().lower()
        if not normalized or len(normalized) % 2:
            continue
        if not hex_head.startswith(normalized):
            continue
        if normalized == _RIFF_HEX:
            if hex_head[16:24] != _WEBP_HEX:
                continue
            return "image/webp"
        return normalize_mime(mime)
    return None


def has_polyglot_markers(head: bytes) -> bool:
    lower = head.lower()
    php = b"<?php" in lower or b"<?=" in lower
    return php and (b"%PDF" in head or b"PK\x03\x04" in head)


class MagicBytesValidator:
    """Validates file headers against a profile.

    Args:
        sniffer: ``path -> mime`` callable; defaults to :func:`sniff_mime`.
    """

    def __init__(self, sniffer: Callable[[str], str | None] | None = None) -> None:
        self._sniffer = sniffer or sniff_mime

    def validate(self, path: str, profile: UploadProfile, context: dict[str, Any] | None = None) -> str:
        """Check *path* and return the trusted (sniffed) MIME type.

        Raises:
            ValidationError: On any mismatch.
        """
        context = context or {}
        head = read_head(path)
        if not head:
            self._fail("empty_head", context)

        trusted = normalize_mime(self._sniffer(path))
        if trusted is None:
            self._fail("mime_detection_failed", context)
        if trusted not in profile.allowed_mimes:
            self._fail("mime_not_allowed", context, mime=trusted)

        if profile.enforce_magic_bytes:
            signature_mime = matched_signature_mime(head, profile.allowed_signatures)
            if signature_mime is None:
                self._fail("signature_mismatch", context, mime=trusted)
            if signature_mime != trusted:
                self._fail("signature_mime_mismatch", context, mime=trusted, signature_mime=signature_mime)

        if profile.prevent_polyglot and has_polyglot_markers(head):
            self._fail("polyglot_detected", context, mime=trusted)
        return trusted

    @staticmethod
    def _fail(reason: str, context: dict[str, Any], **fields: Any) -> None:
        logger.warning(json.dumps({"event": "magic_bytes_failed", "reason": reason, **context, **fields}))
        raise ValidationError(_GENERIC_MESSAGE)

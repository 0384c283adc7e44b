"""Chunked detection of embedded code in uploaded bytes.

Files are read in fixed-size chunks; the last ``overlap`` bytes of each window
are carried into the next so a marker split across a chunk boundary is still
found.  Patterns are byte regexes and case-insensitive.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

# ``<?`` opens PHP (and short-echo) blocks.  XML declarations and XMP packets
# are processing instructions, not code.
_PHP_OPEN = re.compile(rb"<\?(?!xml\b|xpacket\b)[\s\x00]*(?:php|=)?", re.IGNORECASE)
_PHP_STRICT = re.compile(rb"<\?(?:php\b|=)", re.IGNORECASE)
_SCRIPT_TAG = re.compile(rb"<script\b", re.IGNORECASE)
_DANGEROUS_CALL = re.compile(
    rb"\b(?:eval|system|exec|passthru|shell_exec|proc_open|popen|assert)"
    rb"(?:[\s\x00]|/\*.*?\*/|#[^\n]*\n|//[^\n]*\n)*\(",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(frozen=True)
class ContentPattern:
    name: str
    regex: re.Pattern[bytes]


DOCUMENT_PATTERNS: tuple[ContentPattern, ...] = (
    ContentPattern("php_tag", _PHP_OPEN),
    ContentPattern("script_tag", _SCRIPT_TAG),
    ContentPattern("dangerous_call", _DANGEROUS_CALL),
)

# Compressed image data contains ``<?`` byte pairs by chance; only explicit
# PHP openers count there.
IMAGE_PATTERNS: tuple[ContentPattern, ...] = (
    ContentPattern("php_tag", _PHP_STRICT),
    ContentPattern("script_tag", _SCRIPT_TAG),
    ContentPattern("dangerous_call", _DANGEROUS_CALL),
)


def patterns_for(is_image: bool) -> tuple[ContentPattern, ...]:
    return IMAGE_PATTERNS if is_image else DOCUMENT_PATTERNS


def find_embedded_code(
    path: str,
    patterns: tuple[ContentPattern, ...],
    *,
    chunk_bytes: int = 128 * 1024,
    overlap_bytes: int = 512,
) -> str | None:
    """Return the name of the first pattern found in the file, else ``None``."""
    tail = b""
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(chunk_bytes)
            if not chunk:
                return None
            window = tail + chunk
            for pattern in patterns:
                if pattern.regex.search(window):
                    return pattern.name
            tail = window[-overlap_bytes:]

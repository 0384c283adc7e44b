"""Upload profiles: what a given kind of upload is allowed to be.

A profile bundles the constraints the
:class:`~uploadguard.core.validation.ValidationPipeline` enforces (size,
MIME types, extensions, image dimensions, magic-byte signatures) and the
durable storage collection the result is published into.

Three profiles ship by default: ``avatar``, ``gallery_image`` and
``document``.  Deployments can register more with :func:`register_profile`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from uploadguard.config import settings


class ProfileKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"


# Hex magic-byte prefixes -> MIME type.  RIFF only counts when the WEBP
# fourcc follows at offset 8; that check lives in the magic-byte validator.
IMAGE_SIGNATURES: dict[str, str] = {
    "ffd8ff": "image/jpeg",
    "89504e470d0a1a0a": "image/png",
    "474946383761": "image/gif",
    "474946383961": "image/gif",
    "52494646": "image/webp",
}

DOCUMENT_SIGNATURES: dict[str, str] = {
    "25504446": "application/pdf",
}


@dataclass(frozen=True)
class UploadProfile:
    """Constraints for one kind of upload.

    Attributes:
        name: Profile identifier used in URLs, logs and quarantine records.
        kind: Image profiles get dimension checks and image normalization.
        collection: Storage collection (``avatars``, ``documents``...).
        max_bytes: Largest accepted upload.
        allowed_mimes: MIME types accepted after sniffing.
        allowed_extensions: Filename extensions accepted (lowercase, no dot).
        min_width, min_height, max_width, max_height: Pixel bounds.
        max_megapixels: Upper bound on ``width * height / 1e6``.
        requires_av: Whether the upload must be scanned before promotion.
        enforce_magic_bytes: Whether the header signature must match.
        allowed_signatures: Hex prefix -> MIME map used by the magic-byte check.
        prevent_polyglot: Reject PHP markers combined with PDF/ZIP markers.
        bomb_ratio_threshold: Decompression ratio limit for images.
        normalize: Re-encode images (strips metadata and trailing payloads).
        latest_wins: Deferred uploads are debounced per owner; only the most
            recent one is processed.
    """

    name: str
    kind: ProfileKind
    collection: str
    max_bytes: int
    allowed_mimes: frozenset[str]
    allowed_extensions: frozenset[str]
    min_width: int = 1
    min_height: int = 1
    max_width: int | None = None
    max_height: int | None = None
    max_megapixels: float | None = None
    requires_av: bool = True
    enforce_magic_bytes: bool = True
    allowed_signatures: dict[str, str] = field(default_factory=dict)
    prevent_polyglot: bool = True
    bomb_ratio_threshold: float = 100.0
    normalize: bool = True
    latest_wins: bool = False

    @property
    def is_image(self) -> bool:
        return self.kind is ProfileKind.IMAGE


_IMAGE_MIMES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
_IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp"})

_REGISTRY: dict[str, UploadProfile] = {}


def register_profile(profile: UploadProfile) -> None:
    _REGISTRY[profile.name] = profile


def get_profile(name: str) -> UploadProfile:
    """Return the profile called *name*.

    Raises:
        KeyError: If no such profile is registered.
    """
    return _REGISTRY[name]


register_profile(
    UploadProfile(
        name="avatar",
        kind=ProfileKind.IMAGE,
        collection="avatars",
        max_bytes=min(5 * 1024 * 1024, settings.quarantine_max_bytes),
        allowed_mimes=_IMAGE_MIMES,
        allowed_extensions=_IMAGE_EXTENSIONS,
        min_width=128,
        min_height=128,
        max_width=4096,
        max_height=4096,
        max_megapixels=16.0,
        allowed_signatures=dict(IMAGE_SIGNATURES),
        bomb_ratio_threshold=settings.validation_bomb_ratio_threshold,
        latest_wins=True,
    )
)
register_profile(
    UploadProfile(
        name="gallery_image",
        kind=ProfileKind.IMAGE,
        collection="gallery",
        max_bytes=min(15 * 1024 * 1024, settings.quarantine_max_bytes),
        allowed_mimes=_IMAGE_MIMES,
        allowed_extensions=_IMAGE_EXTENSIONS,
        max_width=8192,
        max_height=8192,
        max_megapixels=48.0,
        allowed_signatures=dict(IMAGE_SIGNATURES),
        bomb_ratio_threshold=settings.validation_bomb_ratio_threshold,
    )
)
register_profile(
    UploadProfile(
        name="document",
        kind=ProfileKind.DOCUMENT,
        collection="documents",
        max_bytes=settings.quarantine_max_bytes,
        allowed_mimes=frozenset({"application/pdf"}),
        allowed_extensions=frozenset({"pdf"}),
        allowed_signatures=dict(DOCUMENT_SIGNATURES),
        normalize=False,
    )
)

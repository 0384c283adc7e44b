"""Image header inspection and re-encoding with Pillow.

Re-encoding decodes the pixels and writes a fresh file in the same format,
which drops EXIF/XMP metadata, comments and anything appended after the
image data.  It is the last line of defence against payloads hidden in
otherwise valid images.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from uploadguard.core.exceptions import ValidationError

_PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/webp": "WEBP",
}
_EXTENSIONS = {"JPEG": ".jpg", "PNG": ".png", "GIF": ".gif", "WEBP": ".webp"}


@dataclass(frozen=True)
class NormalizedImage:
    path: str
    width: int
    height: int
    mime_type: str


class ImageNormalizer(Protocol):
    """Anything that can rewrite an image file into a clean copy."""

    def normalize(self, source: str, mime_type: str, work_dir: str) -> NormalizedImage:
        """Write a normalized copy of *source* into *work_dir* and describe it.

        The caller owns the returned file.  Implementations must raise
        :class:`~uploadguard.core.exceptions.ValidationError` when the image
        cannot be decoded.
        """
        ...


def read_dimensions(path: str) -> tuple[int, int]:
    """Return ``(width, height)`` from the image header without decoding pixels.

    Raises:
        ValidationError: If Pillow cannot identify the image or it exceeds
            Pillow's decompression-bomb limit.
    """
    try:
        with Image.open(path) as img:
            return img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValidationError("Uploaded image could not be read.") from exc


class PillowImageNormalizer:
    """Re-encodes images with Pillow, keeping format and dimensions.

    Args:
        jpeg_quality: Quality used when writing JPEG and WEBP output.
    """

    def __init__(self, jpeg_quality: int = 90) -> None:
        self._quality = jpeg_quality

    def normalize(self, source: str, mime_type: str, work_dir: str) -> NormalizedImage:
        fmt = _PIL_FORMATS.get(mime_type)
        if fmt is None:
            raise ValidationError("Uploaded image type is not supported.")

        fd, target = tempfile.mkstemp(prefix="normalized-", suffix=_EXTENSIONS[fmt], dir=work_dir)
        os.close(fd)
        try:
            with Image.open(source) as img:
                img.load()
                frame = img.convert("RGB") if fmt == "JPEG" and img.mode not in ("RGB", "L") else img.copy()
                # Pillow writes some ``info`` entries (comments, XMP) back on save.
                frame.info = {k: v for k, v in frame.info.items() if k == "transparency"}
                options: dict[str, object] = {}
                if fmt in ("JPEG", "WEBP"):
                    options["quality"] = self._quality
                if fmt == "PNG":
                    options["optimize"] = True
                frame.save(target, format=fmt, **options)
                width, height = img.size
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            os.unlink(target)
            raise ValidationError("Uploaded image could not be processed.") from exc
        except BaseException:
            os.unlink(target)
            raise
        return NormalizedImage(path=target, width=width, height=height, mime_type=mime_type)

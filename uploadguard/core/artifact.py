"""ValidatedArtifact: the output descriptor of the validation pipeline.

Ownership of the underlying file is explicit.  Whoever holds the descriptor
must either :meth:`~ValidatedArtifact.consume` it (hand the file to another
owner, e.g. durable storage) or :meth:`~ValidatedArtifact.discard` it.
"""
from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass, field, replace


@dataclass
class ValidatedArtifact:
    """A validated (and possibly normalized) file waiting to be published.

    Attributes:
        path: Location of the validated bytes.
        size: Size in bytes.
        mime_type: Sniffed MIME type.
        sha256: Hex digest of the bytes at *path*.
        width, height: Pixel dimensions for images, else ``None``.
        original_filename: Client-supplied name, for display only.
        normalized: ``True`` when a normalizer rewrote the bytes.
    """

    path: str
    size: int
    mime_type: str
    sha256: str
    width: int | None = None
    height: int | None = None
    original_filename: str | None = None
    normalized: bool = False
    _consumed: bool = field(default=False, repr=False, compare=False)
    _owns_file: bool = field(default=True, repr=False, compare=False)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def extension(self) -> str:
        return _EXTENSIONS.get(self.mime_type, "bin")

    def consume(self) -> "ValidatedArtifact":
        """Transfer ownership of the file.

        Returns a copy whose :meth:`discard` is a no-op; this descriptor is
        marked consumed and will no longer delete the file either.

        Raises:
            RuntimeError: If already consumed.
        """
        if self._consumed:
            raise RuntimeError("Artifact has already been consumed.")
        self._consumed = True
        return replace(self, _consumed=False, _owns_file=False)

    def discard(self) -> None:
        """Delete the file unless ownership was transferred."""
        if self._consumed or not self._owns_file:
            return
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.path)


_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
}

"""LocalArtifactStorage: durable home of promoted artifacts.

Artifacts are laid out per tenant and owner::

    {root}/tenants/{tenant}/users/{owner}/{collection}/{uuid}.{ext}

Every relative path handed to this class is validated with the same
containment primitives the quarantine store uses, so a caller-controlled
string can never address a file outside the root.

Usage::

    from uploadguard.services.storage import LocalArtifactStorage

    storage = LocalArtifactStorage()
    relative = storage.path_for("acme", "42", "avatars", "png")
    storage.adopt(artifact.consume(), relative)
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import uuid
from typing import BinaryIO

from uploadguard.config import settings
from uploadguard.core import paths
from uploadguard.core.artifact import ValidatedArtifact
from uploadguard.core.exceptions import InfrastructureError

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_EXTENSION_RE = re.compile(r"^[a-z0-9]{1,8}$")


class StorageError(InfrastructureError):
    """Raised when durable storage cannot complete an operation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="storage", retryable=True)


class LocalArtifactStorage:
    """Filesystem-backed durable storage.

    Args:
        root: Storage root.  Defaults to ``settings.storage_root``.
    """

    def __init__(self, root: str | None = None) -> None:
        self._root = paths.canonical_root(root or settings.storage_root)

    @property
    def root(self) -> str:
        return self._root

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def path_for(
        self,
        tenant_id: str,
        owner_id: str,
        collection: str,
        extension: str,
        artifact_id: str | None = None,
    ) -> str:
        """Return a fresh relative path for a new artifact.

        Raises:
            ValueError: If any segment contains characters outside
                ``[A-Za-z0-9_-]`` or the extension is not alphanumeric.
        """
        for segment in (tenant_id, owner_id, collection):
            if not _SEGMENT_RE.match(segment or ""):
                raise ValueError("Invalid storage path segment.")
        ext = (extension or "").lower()
        if not _EXTENSION_RE.match(ext):
            raise ValueError("Invalid storage extension.")
        name = artifact_id or uuid.uuid4().hex
        if not _SEGMENT_RE.match(name):
            raise ValueError("Invalid artifact id.")
        return f"tenants/{tenant_id}/users/{owner_id}/{collection}/{name}.{ext}"

    def absolute(self, relative: str) -> str | None:
        """Resolve *relative* under the root, or ``None`` if it is unsafe."""
        return paths.resolve_under(self._root, relative)

    def exists(self, relative: str) -> bool:
        target = self.absolute(relative)
        return target is not None and os.path.isfile(target) and not os.path.islink(target)

    def open(self, relative: str) -> BinaryIO:
        """Open a stored artifact for reading.

        Raises:
            FileNotFoundError: If the path is unsafe or does not exist.
        """
        if not self.exists(relative):
            raise FileNotFoundError("Artifact not found.")
        target = self.absolute(relative)
        if target is None:
            raise FileNotFoundError("Artifact not found.")
        return open(target, "rb")

    def adopt(self, artifact: ValidatedArtifact, relative: str) -> str:
        """Move *artifact*'s file to *relative* and return the absolute path.

        The move goes through ``<dest>.tmp`` so readers never observe a
        partially written file.

        Raises:
            StorageError: If the destination is invalid or already exists,
                or the move failed.
        """
        target = self.absolute(relative)
        if target is None:
            raise StorageError("Storage destination is invalid.")
        if os.path.lexists(target):
            raise StorageError("Storage destination already exists.")
        os.makedirs(os.path.dirname(target), mode=0o750, exist_ok=True)
        staging = target + ".tmp"
        try:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staging)
            shutil.move(artifact.path, staging)
            os.chmod(staging, 0o640)
            os.replace(staging, target)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staging)
            raise StorageError("Failed to store artifact.") from exc

        logger.info("LocalArtifactStorage: stored path=%s bytes=%d", relative, artifact.size)
        return target

    def delete(self, relative: str) -> bool:
        """Delete a stored artifact.  Returns ``False`` if nothing was deleted."""
        target = self.absolute(relative)
        if target is None:
            logger.warning("LocalArtifactStorage.delete: rejected unsafe path")
            return False
        try:
            os.unlink(target)
        except FileNotFoundError:
            return False
        return True

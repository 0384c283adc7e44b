"""Unit tests for uploadguard/services/storage.py."""

from __future__ import annotations

import os
import stat

import pytest

from uploadguard.core.artifact import ValidatedArtifact
from uploadguard.services.storage import LocalArtifactStorage, StorageError


def _artifact(tmp_path, content: bytes = b"validated bytes") -> ValidatedArtifact:
    source = tmp_path / "work" / "validated.bin"
    source.parent.mkdir(exist_ok=True)
    source.write_bytes(content)
    return ValidatedArtifact(path=str(source), size=len(content), mime_type="image/png", sha256="0" * 64)


class TestPathFor:
    def setup_method(self):
        self.storage = LocalArtifactStorage(root="/srv/media")

    def test_layout(self):
        relative = self.storage.path_for("acme", "42", "avatars", "PNG", artifact_id="abc123")
        assert relative == "tenants/acme/users/42/avatars/abc123.png"

    def test_generated_ids_are_unique(self):
        first = self.storage.path_for("acme", "42", "avatars", "png")
        second = self.storage.path_for("acme", "42", "avatars", "png")
        assert first != second

    @pytest.mark.parametrize(
        "tenant,owner,collection,extension",
        [
            ("../etc", "42", "avatars", "png"),
            ("acme", "4/2", "avatars", "png"),
            ("acme", "42", "", "png"),
            ("acme", "42", "avatars", "p.ng"),
            ("acme", "42", "avatars", ""),
        ],
    )
    def test_invalid_segments_rejected(self, tenant, owner, collection, extension):
        with pytest.raises(ValueError):
            self.storage.path_for(tenant, owner, collection, extension)


class TestLocalArtifactStorage:
    def test_adopt_moves_file(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        artifact = _artifact(tmp_path)
        relative = storage.path_for("acme", "42", "avatars", "png")

        target = storage.adopt(artifact, relative)

        assert not os.path.exists(artifact.path)
        assert storage.exists(relative)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o640
        assert not os.path.exists(target + ".tmp")
        with storage.open(relative) as fh:
            assert fh.read() == b"validated bytes"

    def test_adopt_refuses_existing_destination(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        relative = storage.path_for("acme", "42", "avatars", "png")
        storage.adopt(_artifact(tmp_path, b"first"), relative)

        second = _artifact(tmp_path, b"second")
        with pytest.raises(StorageError):
            storage.adopt(second, relative)
        assert os.path.exists(second.path)

    def test_adopt_refuses_escaping_destination(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        with pytest.raises(StorageError):
            storage.adopt(_artifact(tmp_path), "../outside.png")

    def test_adopt_missing_source_is_storage_error(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        artifact = ValidatedArtifact(path=str(tmp_path / "gone.bin"), size=1, mime_type="image/png", sha256="")
        relative = storage.path_for("acme", "42", "avatars", "png")
        with pytest.raises(StorageError) as exc_info:
            storage.adopt(artifact, relative)
        assert exc_info.value.retryable
        assert not storage.exists(relative)

    def test_symlink_is_not_served(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        secret = tmp_path / "secret.txt"
        secret.write_text("secret")
        link_dir = tmp_path / "media" / "tenants" / "acme" / "users" / "42" / "avatars"
        link_dir.mkdir(parents=True)
        os.symlink(str(secret), str(link_dir / "x.png"))

        assert not storage.exists("tenants/acme/users/42/avatars/x.png")
        with pytest.raises(FileNotFoundError):
            storage.open("tenants/acme/users/42/avatars/x.png")

    def test_delete(self, tmp_path):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        relative = storage.path_for("acme", "42", "avatars", "png")
        storage.adopt(_artifact(tmp_path), relative)

        assert storage.delete(relative) is True
        assert storage.delete(relative) is False
        assert storage.delete("../../etc/passwd") is False

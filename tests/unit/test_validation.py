"""Unit tests for the validation layer.

Covers magic-byte checks, the chunked content scan, Pillow normalization and
the :class:`ValidationPipeline` end to end.  libmagic is replaced by a
header-based sniffer so the tests do not depend on the system magic database.
"""

from __future__ import annotations

import dataclasses
import hashlib
import io
import os

import pytest
from PIL import Image

from uploadguard.core.content_scan import (
    DOCUMENT_PATTERNS,
    IMAGE_PATTERNS,
    find_embedded_code,
)
from uploadguard.core.exceptions import (
    InfrastructureError,
    IntegrityError,
    MalwareDetectedError,
    ValidationError,
)
from uploadguard.core.image_normalizer import PillowImageNormalizer, read_dimensions
from uploadguard.core.magic_bytes import (
    MagicBytesValidator,
    has_polyglot_markers,
    matched_signature_mime,
    normalize_mime,
)
from uploadguard.core.profiles import IMAGE_SIGNATURES, get_profile
from uploadguard.core.validation import ValidationPipeline

_PHP_PAYLOAD = b"<?php system($_GET['c']); ?>"


def _header_sniffer(path: str) -> str | None:
    with open(path, "rb") as fh:
        head = fh.read(16)
    if head.startswith(b"\x89PNG"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"GIF8"):
        return "image/gif"
    if head.startswith(b"%PDF"):
        return "application/pdf"
    return "text/plain" if head else None


def _write(tmp_path, name: str, content: bytes) -> str:
    target = tmp_path / name
    target.write_bytes(content)
    return str(target)


# ---------------------------------------------------------------------------
# Magic bytes
# ---------------------------------------------------------------------------


class TestMagicBytes:
    def setup_method(self):
        self.validator = MagicBytesValidator(sniffer=_header_sniffer)
        self.avatar = get_profile("avatar")
        self.document = get_profile("document")

    def test_png_accepted(self, tmp_path, make_image):
        path = _write(tmp_path, "a.png", make_image(128, 128))
        assert self.validator.validate(path, self.avatar) == "image/png"

    def test_disallowed_mime_rejected(self, tmp_path):
        path = _write(tmp_path, "a.png", b"hello world")
        with pytest.raises(ValidationError):
            self.validator.validate(path, self.avatar)

    def test_empty_file_rejected(self, tmp_path):
        path = _write(tmp_path, "a.png", b"")
        with pytest.raises(ValidationError):
            self.validator.validate(path, self.avatar)

    def test_signature_must_agree_with_sniffed_mime(self, tmp_path):
        validator = MagicBytesValidator(sniffer=lambda path: "image/png")
        path = _write(tmp_path, "a.png", b"GIF89a" + b"\x00" * 64)
        with pytest.raises(ValidationError):
            validator.validate(path, self.avatar)

    def test_unknown_signature_rejected(self, tmp_path):
        validator = MagicBytesValidator(sniffer=lambda path: "image/png")
        path = _write(tmp_path, "a.png", b"\x00\x01\x02\x03" * 16)
        with pytest.raises(ValidationError):
            validator.validate(path, self.avatar)

    def test_polyglot_rejected(self, tmp_path, minimal_pdf):
        path = _write(tmp_path, "a.pdf", minimal_pdf + _PHP_PAYLOAD)
        with pytest.raises(ValidationError):
            self.validator.validate(path, self.document)

    def test_failure_reason_is_logged_not_raised(self, tmp_path, caplog):
        path = _write(tmp_path, "a.png", b"hello world")
        with caplog.at_level("WARNING"), pytest.raises(ValidationError) as exc_info:
            self.validator.validate(path, self.avatar, {"correlation_id": "cid-9"})
        assert "mime" not in str(exc_info.value)
        assert any("mime_not_allowed" in record.getMessage() for record in caplog.records)

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("image/jpg", "image/jpeg"),
            ("IMAGE/PNG; charset=binary", "image/png"),
            ("application/x-pdf", "application/pdf"),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_mime(self, raw, expected):
        assert normalize_mime(raw) == expected

    def test_riff_requires_webp_fourcc(self):
        webp = b"RIFF\x24\x00\x00\x00WEBPVP8 "
        wav = b"RIFF\x24\x00\x00\x00WAVEfmt "
        assert matched_signature_mime(webp, IMAGE_SIGNATURES) == "image/webp"
        assert matched_signature_mime(wav, IMAGE_SIGNATURES) is None

    def test_polyglot_markers(self):
        assert has_polyglot_markers(b"PK\x03\x04...<?= $x ?>")
        assert not has_polyglot_markers(b"%PDF-1.7 plain document")
        assert not has_polyglot_markers(b"<?php echo 1; ?>")


# ---------------------------------------------------------------------------
# Content scan
# ---------------------------------------------------------------------------


class TestContentScan:
    def test_marker_split_across_chunks_is_found(self, tmp_path):
        content = b"A" * 4094 + b"<?php echo 1;"
        path = _write(tmp_path, "split.bin", content)
        found = find_embedded_code(path, IMAGE_PATTERNS, chunk_bytes=4096, overlap_bytes=64)
        assert found == "php_tag"

    def test_clean_file(self, tmp_path):
        path = _write(tmp_path, "clean.bin", b"An evaluation (draft) of the system design.\n" * 200)
        assert find_embedded_code(path, DOCUMENT_PATTERNS, chunk_bytes=4096, overlap_bytes=64) is None

    def test_xml_declaration_is_not_code(self, tmp_path):
        path = _write(tmp_path, "doc.xml", b'<?xml version="1.0"?><?xpacket begin="" id="W5M0"?><root/>')
        assert find_embedded_code(path, DOCUMENT_PATTERNS) is None

    def test_short_open_tag_in_document(self, tmp_path):
        path = _write(tmp_path, "doc.bin", b"header <? echo $x; ?> footer")
        assert find_embedded_code(path, DOCUMENT_PATTERNS) == "php_tag"

    def test_image_patterns_ignore_bare_question_tag(self, tmp_path):
        path = _write(tmp_path, "img.bin", b"\x00\x10<?\x00\x91 compressed noise")
        assert find_embedded_code(path, IMAGE_PATTERNS) is None

    def test_dangerous_call_with_comment_obfuscation(self, tmp_path):
        path = _write(tmp_path, "doc.bin", b"x = eval/* hidden */ (payload)")
        assert find_embedded_code(path, DOCUMENT_PATTERNS) == "dangerous_call"

    def test_script_tag(self, tmp_path):
        path = _write(tmp_path, "doc.bin", b"<SCRIPT src='x'></SCRIPT>")
        assert find_embedded_code(path, IMAGE_PATTERNS) == "script_tag"


# ---------------------------------------------------------------------------
# Image normalizer
# ---------------------------------------------------------------------------


class TestImageNormalizer:
    def test_reencode_strips_exif_and_trailing_bytes(self, tmp_path):
        exif = Image.Exif()
        exif[0x010E] = "secret description"
        buffer = io.BytesIO()
        Image.new("RGB", (32, 24), (200, 10, 10)).save(buffer, format="JPEG", exif=exif.tobytes())
        source = _write(tmp_path, "in.jpg", buffer.getvalue() + b"TRAILING-PAYLOAD")

        result = PillowImageNormalizer().normalize(source, "image/jpeg", str(tmp_path))

        assert (result.width, result.height) == (32, 24)
        assert result.path.endswith(".jpg")
        with open(result.path, "rb") as fh:
            data = fh.read()
        assert b"TRAILING-PAYLOAD" not in data
        assert b"secret description" not in data
        with Image.open(result.path) as img:
            assert len(img.getexif()) == 0

    def test_unsupported_type_rejected(self, tmp_path):
        source = _write(tmp_path, "in.bmp", b"BM")
        with pytest.raises(ValidationError):
            PillowImageNormalizer().normalize(source, "image/bmp", str(tmp_path))

    def test_undecodable_image_rejected_and_output_removed(self, tmp_path):
        source = _write(tmp_path, "in.png", b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
        with pytest.raises(ValidationError):
            PillowImageNormalizer().normalize(source, "image/png", str(tmp_path))
        assert sorted(os.listdir(tmp_path)) == ["in.png"]

    def test_read_dimensions(self, tmp_path, make_image):
        path = _write(tmp_path, "a.png", make_image(300, 200))
        assert read_dimensions(path) == (300, 200)

    def test_read_dimensions_rejects_garbage(self, tmp_path):
        with pytest.raises(ValidationError):
            read_dimensions(_write(tmp_path, "a.png", b"not an image"))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class _TamperingValidator(MagicBytesValidator):
    """Appends to the snapshot while it is being inspected."""

    def validate(self, path, profile, context=None):
        with open(path, "ab") as fh:
            fh.write(b"late write")
        return "application/pdf"


class _ExplodingNormalizer:
    def normalize(self, source, mime_type, work_dir):
        raise RuntimeError("decoder crashed")


class TestValidationPipeline:
    def _make_pipeline(self, tmp_path, **kwargs) -> ValidationPipeline:
        self.work_dir = tmp_path / "work"
        options = {
            "magic_validator": MagicBytesValidator(sniffer=_header_sniffer),
            "work_dir": str(self.work_dir),
            "chunk_bytes": 4096,
            "overlap_bytes": 64,
        }
        options.update(kwargs)
        return ValidationPipeline(**options)

    def _work_files(self) -> list[str]:
        return sorted(os.listdir(self.work_dir)) if self.work_dir.exists() else []

    def test_avatar_is_normalized(self, tmp_path, make_image):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image() + b"TRAILER")

        artifact = pipeline.process(source, get_profile("avatar"), "cid-1", "me.png")

        assert artifact.normalized is True
        assert artifact.mime_type == "image/png"
        assert (artifact.width, artifact.height) == (256, 256)
        with open(artifact.path, "rb") as fh:
            data = fh.read()
        assert b"TRAILER" not in data
        assert hashlib.sha256(data).hexdigest() == artifact.sha256
        assert artifact.size == len(data)
        assert self._work_files() == [os.path.basename(artifact.path)]
        assert os.path.exists(source)
        artifact.discard()
        assert self._work_files() == []

    def test_document_published_as_copied(self, tmp_path, minimal_pdf):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", minimal_pdf)

        artifact = pipeline.process(source, get_profile("document"), original_filename="report.PDF")

        assert artifact.normalized is False
        assert artifact.mime_type == "application/pdf"
        assert artifact.width is None
        assert artifact.sha256 == hashlib.sha256(minimal_pdf).hexdigest()
        assert self._work_files() == [os.path.basename(artifact.path)]
        artifact.discard()

    def test_embedded_php_is_malware(self, tmp_path, make_image):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image() + _PHP_PAYLOAD)
        with pytest.raises(MalwareDetectedError) as exc_info:
            pipeline.process(source, get_profile("avatar"))
        assert exc_info.value.scanner == "content_scan"
        assert self._work_files() == []

    def test_script_deep_in_document_is_malware(self, tmp_path, minimal_pdf):
        pipeline = self._make_pipeline(tmp_path)
        content = minimal_pdf + b"%" + b"x" * 10_000 + b"\n<script>alert(1)</script>\n"
        source = _write(tmp_path, "upload.bin", content)
        with pytest.raises(MalwareDetectedError):
            pipeline.process(source, get_profile("document"))
        assert self._work_files() == []

    def test_extension_mismatch_rejected(self, tmp_path, make_image):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image())
        with pytest.raises(ValidationError):
            pipeline.process(source, get_profile("avatar"), original_filename="me.pdf")
        assert self._work_files() == []

    def test_image_below_minimum_dimensions_rejected(self, tmp_path, make_image):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image(64, 64))
        with pytest.raises(ValidationError):
            pipeline.process(source, get_profile("avatar"))

    def test_oversized_upload_rejected_during_snapshot(self, tmp_path, make_image):
        profile = dataclasses.replace(get_profile("avatar"), max_bytes=100)
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image())
        with pytest.raises(ValidationError):
            pipeline.process(source, profile)
        assert self._work_files() == []

    def test_empty_upload_rejected(self, tmp_path):
        pipeline = self._make_pipeline(tmp_path)
        with pytest.raises(ValidationError):
            pipeline.process(_write(tmp_path, "upload.bin", b""), get_profile("document"))

    def test_decompression_ratio_guard(self, tmp_path, make_image):
        profile = dataclasses.replace(get_profile("avatar"), bomb_ratio_threshold=1.0)
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", make_image())
        with pytest.raises(ValidationError):
            pipeline.process(source, profile)

    def test_snapshot_modified_during_validation(self, tmp_path, minimal_pdf):
        pipeline = self._make_pipeline(tmp_path, magic_validator=_TamperingValidator())
        source = _write(tmp_path, "upload.bin", minimal_pdf)
        with pytest.raises(IntegrityError):
            pipeline.process(source, get_profile("document"))
        assert self._work_files() == []

    def test_unexpected_error_is_wrapped(self, tmp_path, make_image):
        pipeline = self._make_pipeline(tmp_path, normalizer=_ExplodingNormalizer())
        source = _write(tmp_path, "upload.bin", make_image())
        with pytest.raises(InfrastructureError) as exc_info:
            pipeline.process(source, get_profile("avatar"))
        assert exc_info.value.reason == "processing"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert self._work_files() == []

    def test_rejection_is_logged_with_step(self, tmp_path, caplog):
        pipeline = self._make_pipeline(tmp_path)
        source = _write(tmp_path, "upload.bin", b"plain text")
        with caplog.at_level("WARNING"), pytest.raises(ValidationError):
            pipeline.process(source, get_profile("document"), correlation_id="cid-7")
        messages = [record.getMessage() for record in caplog.records]
        assert any('"step": "inspect"' in m and "cid-7" in m for m in messages)

    @pytest.mark.parametrize("step", ["_step_content_scan", "_step_rehash", "_step_normalize"])
    def test_step_without_snapshot_raises_processing_error(self, tmp_path, step):
        from uploadguard.core.validation import _ValidationState

        pipeline = self._make_pipeline(tmp_path)
        state = _ValidationState(
            source=str(tmp_path / "missing.bin"),
            profile=get_profile("document"),
            correlation_id=None,
            original_filename=None,
        )
        with pytest.raises(InfrastructureError) as exc_info:
            getattr(pipeline, step)(state)
        assert exc_info.value.reason == "processing"

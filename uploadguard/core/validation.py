"""ValidationPipeline: snapshot, inspect, scan content, verify and normalize.

:class:`ValidationPipeline` turns a quarantined file into a
:class:`~uploadguard.core.artifact.ValidatedArtifact` in these steps:

1. **snapshot**     copy the source into a private file under a shared
   ``flock`` (released as soon as the copy is done), hashing as it goes
2. **inspect**      size, sniffed MIME + magic bytes, extension and, for
   images, dimensions and megapixels
3. **bomb_guard**   reject images whose decoded size dwarfs the file size
4. **content_scan** look for embedded PHP, ``<script>`` and shell-style calls
   across chunk boundaries
5. **rehash**       re-hash the snapshot and compare with the copy-time hash
6. **normalize**    re-encode images; other files are published as copied

Every step runs inside an OpenTelemetry span.  Permanent failures
(:class:`ValidationError`, :class:`MalwareDetectedError`,
:class:`IntegrityError`) propagate unchanged; anything unexpected is wrapped
in :class:`InfrastructureError`.  The snapshot and any partial output are
removed on every exit path.

Usage::

    from uploadguard.core.profiles import get_profile
    from uploadguard.core.validation import ValidationPipeline

    pipeline = ValidationPipeline()
    artifact = pipeline.process(token.path, get_profile("avatar"), correlation_id=cid)
    try:
        storage.adopt(artifact.consume(), ...)
    finally:
        artifact.discard()
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from uploadguard.config import settings
from uploadguard.core.artifact import ValidatedArtifact
from uploadguard.core.content_scan import find_embedded_code, patterns_for
from uploadguard.core.exceptions import (
    InfrastructureError,
    IntegrityError,
    MalwareDetectedError,
    UploadGuardError,
    ValidationError,
)
from uploadguard.core.image_normalizer import ImageNormalizer, PillowImageNormalizer, read_dimensions
from uploadguard.core.magic_bytes import MagicBytesValidator
from uploadguard.core.profiles import UploadProfile

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "uploadguard.validation",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

_VALIDATION_REJECTIONS = Counter(
    "uploadguard_validation_rejections_total",
    "Uploads rejected by the validation pipeline, by step",
    ["step"],
)

_SNAPSHOT_CHUNK_BYTES = 1024 * 1024


@dataclass
class _ValidationState:
    """Mutable state shared by the validation steps of one run."""

    source: str
    profile: UploadProfile
    correlation_id: str | None
    original_filename: str | None
    snapshot_path: str | None = None
    snapshot_sha256: str | None = None
    size: int = 0
    mime_type: str | None = None
    width: int | None = None
    height: int | None = None
    output_path: str | None = None
    output_sha256: str | None = None
    output_size: int = 0
    normalized: bool = False


class ValidationPipeline:
    """Validates and normalizes quarantined files against an upload profile.

    Args:
        magic_validator: Header / MIME checker.
        normalizer: Image re-encoder; defaults to :class:`PillowImageNormalizer`.
        work_dir: Directory for snapshots and outputs.  Defaults to
            ``settings.validation_work_dir`` or the system temp directory.
        chunk_bytes: Content-scan chunk size.
        overlap_bytes: Bytes carried across content-scan chunks.
    """

    def __init__(
        self,
        magic_validator: MagicBytesValidator | None = None,
        normalizer: ImageNormalizer | None = None,
        work_dir: str | None = None,
        chunk_bytes: int | None = None,
        overlap_bytes: int | None = None,
    ) -> None:
        self._magic = magic_validator or MagicBytesValidator()
        self._normalizer = normalizer or PillowImageNormalizer()
        self._work_dir = work_dir or settings.validation_work_dir or tempfile.gettempdir()
        self._chunk_bytes = chunk_bytes or settings.validation_chunk_bytes
        self._overlap_bytes = overlap_bytes or settings.validation_overlap_bytes

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def process(
        self,
        source: str,
        profile: UploadProfile,
        correlation_id: str | None = None,
        original_filename: str | None = None,
    ) -> ValidatedArtifact:
        """Validate *source* against *profile*.

        Returns:
            A descriptor owning the validated output file.

        Raises:
            ValidationError: The file violates the profile.
            MalwareDetectedError: Embedded code was found.
            IntegrityError: The snapshot changed while being validated.
            InfrastructureError: An unexpected error occurred.
        """
        state = _ValidationState(
            source=source,
            profile=profile,
            correlation_id=correlation_id,
            original_filename=original_filename,
        )
        os.makedirs(self._work_dir, mode=0o700, exist_ok=True)

        with tracer.start_as_current_span("uploadguard.validate") as root_span:
            root_span.set_attribute("upload.profile", profile.name)
            if correlation_id:
                root_span.set_attribute("upload.correlation_id", correlation_id)
            succeeded = False
            try:
                self._run_step(state, "snapshot", self._step_snapshot)
                self._run_step(state, "inspect", self._step_inspect)
                self._run_step(state, "bomb_guard", self._step_bomb_guard)
                self._run_step(state, "content_scan", self._step_content_scan)
                self._run_step(state, "rehash", self._step_rehash)
                self._run_step(state, "normalize", self._step_normalize)
                succeeded = True
            except UploadGuardError as exc:
                root_span.record_exception(exc)
                root_span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                raise
            finally:
                self._cleanup(state, succeeded)

        if state.output_path is None or state.mime_type is None:
            raise InfrastructureError("Validation produced no output.", reason="processing")
        logger.info(
            json.dumps(
                {
                    "event": "upload_validated",
                    "profile": profile.name,
                    "correlation_id": correlation_id,
                    "mime_type": state.mime_type,
                    "size_bytes": state.output_size,
                    "normalized": state.normalized,
                }
            )
        )
        return ValidatedArtifact(
            path=state.output_path,
            size=state.output_size,
            mime_type=state.mime_type,
            sha256=state.output_sha256 or "",
            width=state.width,
            height=state.height,
            original_filename=original_filename,
            normalized=state.normalized,
        )

    # ------------------------------------------------------------------
    # Internal step runner
    # ------------------------------------------------------------------

    def _run_step(
        self,
        state: _ValidationState,
        step_name: str,
        step_fn: Callable[[_ValidationState], None],
    ) -> None:
        with tracer.start_as_current_span(f"uploadguard.validate.{step_name}") as span:
            span.set_attribute("step.name", step_name)
            step_start_ms = int(time.monotonic() * 1000)
            try:
                step_fn(state)
            except (ValidationError, MalwareDetectedError, IntegrityError) as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                _VALIDATION_REJECTIONS.labels(step=step_name).inc()
                logger.warning(
                    json.dumps(
                        {
                            "event": "upload_rejected",
                            "step": step_name,
                            "error": type(exc).__name__,
                            "profile": state.profile.name,
                            "correlation_id": state.correlation_id,
                        }
                    )
                )
                raise
            except UploadGuardError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                raise
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.error(
                    "Validation step '%s' failed: correlation_id=%s error=%r",
                    step_name,
                    state.correlation_id,
                    exc,
                )
                raise InfrastructureError(
                    "Upload could not be validated.", reason="processing"
                ) from exc
            finally:
                span.set_attribute("step.duration_ms", int(time.monotonic() * 1000) - step_start_ms)

    # ------------------------------------------------------------------
    # Step implementations
    # ------------------------------------------------------------------

    def _step_snapshot(self, state: _ValidationState) -> None:
        fd, snapshot = tempfile.mkstemp(prefix="snapshot-", dir=self._work_dir)
        state.snapshot_path = snapshot
        hasher = hashlib.sha256()
        size = 0
        limit = state.profile.max_bytes
        with os.fdopen(fd, "wb") as out, open(state.source, "rb") as src:
            fcntl.flock(src.fileno(), fcntl.LOCK_SH)
            try:
                for chunk in iter(lambda: src.read(_SNAPSHOT_CHUNK_BYTES), b""):
                    size += len(chunk)
                    if size > limit:
                        raise ValidationError("Uploaded file is too large.")
                    hasher.update(chunk)
                    out.write(chunk)
            finally:
                fcntl.flock(src.fileno(), fcntl.LOCK_UN)
        state.size = size
        state.snapshot_sha256 = hasher.hexdigest()

    def _step_inspect(self, state: _ValidationState) -> None:
        profile = state.profile
        if state.size == 0:
            raise ValidationError("Uploaded file is empty.")
        if state.size > profile.max_bytes:
            raise ValidationError("Uploaded file is too large.")

        if state.snapshot_path is None:
            raise InfrastructureError("Validation snapshot is missing.", reason="processing")
        state.mime_type = self._magic.validate(
            state.snapshot_path,
            profile,
            {"profile": profile.name, "correlation_id": state.correlation_id},
        )

        if state.original_filename:
            extension = os.path.splitext(state.original_filename)[1].lstrip(".").lower()
            if extension not in profile.allowed_extensions:
                raise ValidationError("Uploaded file extension is not allowed.")

        if profile.is_image:
            width, height = read_dimensions(state.snapshot_path)
            _check_dimensions(profile, width, height)
            state.width, state.height = width, height

    def _step_bomb_guard(self, state: _ValidationState) -> None:
        if not state.profile.is_image or not state.width or not state.height:
            return
        ratio = (state.width * state.height * 4) / max(state.size, 1)
        if ratio > state.profile.bomb_ratio_threshold:
            raise ValidationError("Uploaded image is not allowed.")

    def _step_content_scan(self, state: _ValidationState) -> None:
        if state.snapshot_path is None:
            raise InfrastructureError("Validation snapshot is missing.", reason="processing")
        found = find_embedded_code(
            state.snapshot_path,
            patterns_for(state.profile.is_image),
            chunk_bytes=self._chunk_bytes,
            overlap_bytes=self._overlap_bytes,
        )
        if found is not None:
            raise MalwareDetectedError(scanner="content_scan", signature=found)

    def _step_rehash(self, state: _ValidationState) -> None:
        if state.snapshot_path is None:
            raise InfrastructureError("Validation snapshot is missing.", reason="processing")
        actual = _sha256_file(state.snapshot_path)
        if actual != state.snapshot_sha256:
            raise IntegrityError(expected=state.snapshot_sha256, actual=actual)

    def _step_normalize(self, state: _ValidationState) -> None:
        if state.snapshot_path is None or state.mime_type is None:
            raise InfrastructureError("Validation snapshot is missing.", reason="processing")
        if state.profile.is_image and state.profile.normalize:
            result = self._normalizer.normalize(state.snapshot_path, state.mime_type, self._work_dir)
            state.output_path = result.path
            state.width, state.height = result.width, result.height
            _check_dimensions(state.profile, result.width, result.height)
            state.normalized = True
        else:
            fd, output = tempfile.mkstemp(prefix="validated-", dir=self._work_dir)
            os.close(fd)
            os.replace(state.snapshot_path, output)
            state.snapshot_path = None
            state.output_path = output
        state.output_sha256 = _sha256_file(state.output_path)
        state.output_size = os.path.getsize(state.output_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _cleanup(state: _ValidationState, succeeded: bool) -> None:
        doomed: list[Any] = [state.snapshot_path]
        if not succeeded:
            doomed.append(state.output_path)
        for path in doomed:
            if path:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(path)


def _check_dimensions(profile: UploadProfile, width: int, height: int) -> None:
    if width < profile.min_width or height < profile.min_height:
        raise ValidationError("Uploaded image is too small.")
    if (profile.max_width and width > profile.max_width) or (
        profile.max_height and height > profile.max_height
    ):
        raise ValidationError("Uploaded image is too large.")
    if profile.max_megapixels and (width * height) / 1_000_000 > profile.max_megapixels:
        raise ValidationError("Uploaded image is too large.")


def _sha256_file(path: str) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_SNAPSHOT_CHUNK_BYTES), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

"""UploadOrchestrator: drives an upload from raw bytes to durable storage.

The lifecycle of one upload::

    put -> pending -> scanning -> clean -> promoted
                          |          |
                          +-> infected / failed

:meth:`UploadOrchestrator.upload` stores the bytes in quarantine and either
processes them inline (returning :class:`UploadResult`) or hands them to a
background worker (returning :class:`UploadAccepted`).
:meth:`UploadOrchestrator.process_quarantined` is the shared processing path:

1. ``pending -> scanning`` (a retry resumes an artifact left in ``scanning``)
2. malware scan via the :class:`~uploadguard.core.scan_coordinator.ScanCoordinator`
3. validation / normalization via the :class:`~uploadguard.core.validation.ValidationPipeline`
4. ``scanning -> clean``
5. publish: normalized output is adopted by durable storage; byte-identical
   output is promoted straight out of quarantine after an integrity check
6. ``clean -> promoted``

Malware moves the artifact to ``infected``; any other error moves it to
``failed`` (best effort, the original error always propagates).  Retryable
infrastructure errors can leave the artifact in ``scanning`` so a later
attempt can resume it.

Usage::

    orchestrator = UploadOrchestrator(quarantine, coordinator, pipeline, storage)
    result = orchestrator.upload(fileobj, get_profile("avatar"), Owner("acme", "42"))
"""

from __future__ import annotations

import io
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable

import redis
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from uploadguard.config import settings
from uploadguard.core.artifact import ValidatedArtifact
from uploadguard.core.debounce import LatestArtifactDebouncer
from uploadguard.core.exceptions import (
    InfrastructureError,
    IntegrityError,
    MalwareDetectedError,
    UploadGuardError,
)
from uploadguard.core.profiles import UploadProfile
from uploadguard.core.quarantine_state import QuarantineState, QuarantineToken
from uploadguard.core.scan_coordinator import ScanCoordinator
from uploadguard.core.validation import ValidationPipeline
from uploadguard.engines.base import ScanContext
from uploadguard.services.quarantine import QuarantineError, QuarantineStore, StateConflictError
from uploadguard.services.storage import LocalArtifactStorage

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "uploadguard.orchestrator",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

_UPLOAD_OUTCOMES = Counter(
    "uploadguard_upload_outcomes_total",
    "Upload processing outcomes",
    ["profile", "outcome"],  # promoted | queued | infected | failed | retry
)


@dataclass(frozen=True)
class Owner:
    """Tenant and user an upload belongs to."""

    tenant_id: str
    user_id: str

    @property
    def subject(self) -> str:
        return f"{self.tenant_id}:{self.user_id}"


@dataclass(frozen=True)
class UploadResult:
    """A promoted upload.

    Attributes:
        artifact_id: Durable identifier (the storage file stem).
        path: Storage-relative path of the promoted file.
    """

    artifact_id: str
    path: str
    profile: str
    mime_type: str
    size: int
    sha256: str
    correlation_id: str
    quarantine_id: str
    width: int | None = None
    height: int | None = None
    normalized: bool = False


@dataclass(frozen=True)
class UploadAccepted:
    """An upload queued for background processing."""

    correlation_id: str
    quarantine_id: str
    status: str = "queued"


@dataclass
class _ProcessingState:
    token: QuarantineToken
    profile: UploadProfile
    owner: Owner
    correlation_id: str
    original_filename: str | None
    state: QuarantineState = QuarantineState.PENDING
    artifact: ValidatedArtifact | None = None
    result: UploadResult | None = None
    extra: dict[str, Any] = field(default_factory=dict)


Dispatcher = Callable[[dict[str, Any]], Any]


class UploadOrchestrator:
    """Coordinates quarantine, scanning, validation and publishing.

    Args:
        quarantine: Quarantine store.  Its promotion root must be the durable
            storage root for byte-identical artifacts to land in storage.
        coordinator: Malware scan coordinator.
        pipeline: Validation pipeline.
        storage: Durable storage.
        dispatcher: Callable that enqueues background processing; receives a
            JSON-serialisable payload.  Required for deferred uploads.
        debouncer: Latest-wins debouncer used for ``latest_wins`` profiles.
        defer_processing: Default for :meth:`upload`'s ``defer`` argument.
    """

    def __init__(
        self,
        quarantine: QuarantineStore,
        coordinator: ScanCoordinator,
        pipeline: ValidationPipeline,
        storage: LocalArtifactStorage,
        dispatcher: Dispatcher | None = None,
        debouncer: LatestArtifactDebouncer | None = None,
        defer_processing: bool | None = None,
    ) -> None:
        self._quarantine = quarantine
        self._coordinator = coordinator
        self._pipeline = pipeline
        self._storage = storage
        self._dispatcher = dispatcher
        self._debouncer = debouncer
        self._defer = settings.upload_defer_processing if defer_processing is None else defer_processing

    @classmethod
    def from_settings(
        cls,
        client: redis.Redis | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> "UploadOrchestrator":
        """Wire every component from :data:`~uploadguard.config.settings`.

        Byte-identical artifacts are promoted straight into the storage root.
        """
        storage = LocalArtifactStorage()
        return cls(
            quarantine=QuarantineStore(promoted_root=storage.root),
            coordinator=ScanCoordinator.from_settings(client),
            pipeline=ValidationPipeline(),
            storage=storage,
            dispatcher=dispatcher,
            debouncer=LatestArtifactDebouncer(client) if client is not None else None,
        )

    @property
    def quarantine(self) -> QuarantineStore:
        return self._quarantine

    @property
    def storage(self) -> LocalArtifactStorage:
        return self._storage

    @property
    def debouncer(self) -> LatestArtifactDebouncer | None:
        return self._debouncer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upload(
        self,
        source: BinaryIO | bytes,
        profile: UploadProfile,
        owner: Owner,
        correlation_id: str | None = None,
        original_filename: str | None = None,
        defer: bool | None = None,
    ) -> UploadResult | UploadAccepted:
        """Quarantine *source* and process it now or in the background.

        Raises:
            ValidationError: Rejected at the door or during validation.
            MalwareDetectedError: A scanner or the content scan flagged it.
            InfrastructureError: Scanning unavailable, dispatch failed, etc.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        deferred = self._defer if defer is None else defer

        if profile.requires_av:
            self._coordinator.assert_available()

        reader = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
        token = self._quarantine.put_stream(
            reader,
            {
                "tenant_id": owner.tenant_id,
                "user_id": owner.user_id,
                "original_filename": original_filename,
            },
            correlation_id=correlation_id,
            profile=profile.name,
        )

        if not deferred:
            return self.process_quarantined(token, profile, owner, original_filename=original_filename)

        try:
            self._enqueue(token, profile, owner, correlation_id, original_filename)
        except Exception as exc:
            self._quarantine.delete(token)
            logger.error(
                json.dumps(
                    {"event": "upload_dispatch_failed", "correlation_id": correlation_id, "error": str(exc)}
                )
            )
            raise InfrastructureError(
                "Upload could not be queued.", reason="dispatch", retryable=True
            ) from exc

        _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="queued").inc()
        return UploadAccepted(correlation_id=correlation_id, quarantine_id=token.identifier)

    def process_quarantined(
        self,
        token: QuarantineToken,
        profile: UploadProfile,
        owner: Owner,
        original_filename: str | None = None,
        *,
        final_attempt: bool = True,
    ) -> UploadResult:
        """Scan, validate and publish a quarantined artifact.

        Args:
            final_attempt: When ``False``, a retryable
                :class:`InfrastructureError` leaves the artifact in
                ``scanning`` for a later attempt instead of failing it.
        """
        correlation_id = token.correlation_id or str(uuid.uuid4())
        job = _ProcessingState(
            token=token,
            profile=profile,
            owner=owner,
            correlation_id=correlation_id,
            original_filename=original_filename,
        )
        keep_for_retry = False
        start_ms = int(time.monotonic() * 1000)

        with tracer.start_as_current_span("uploadguard.upload") as root_span:
            root_span.set_attribute("upload.profile", profile.name)
            root_span.set_attribute("upload.correlation_id", correlation_id)
            try:
                self._run_stage(job, "begin", self._stage_begin)
                self._run_stage(job, "scan", self._stage_scan)
                self._run_stage(job, "validate", self._stage_validate)
                self._run_stage(job, "publish", self._stage_publish)
            except MalwareDetectedError as exc:
                root_span.set_status(Status(StatusCode.ERROR, "infected"))
                self._mark(job, QuarantineState.INFECTED, {"scanner": exc.scanner, "signature": exc.signature})
                _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="infected").inc()
                raise
            except InfrastructureError as exc:
                root_span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                if exc.retryable and not final_attempt and job.state is QuarantineState.SCANNING:
                    keep_for_retry = True
                    _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="retry").inc()
                else:
                    self._mark(job, QuarantineState.FAILED, {"error": type(exc).__name__, "reason": exc.reason})
                    _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="failed").inc()
                raise
            except Exception as exc:
                root_span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                self._mark(job, QuarantineState.FAILED, {"error": type(exc).__name__})
                _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="failed").inc()
                raise
            finally:
                if job.artifact is not None:
                    job.artifact.discard()
                if not keep_for_retry:
                    self._quarantine.delete(token)

        if job.result is None:
            raise InfrastructureError("Upload finished without a result.", reason="processing")
        _UPLOAD_OUTCOMES.labels(profile=profile.name, outcome="promoted").inc()
        logger.info(
            json.dumps(
                {
                    "event": "upload_promoted",
                    "profile": profile.name,
                    "correlation_id": correlation_id,
                    "quarantine_id": token.identifier,
                    "path": job.result.path,
                    "normalized": job.result.normalized,
                    "duration_ms": int(time.monotonic() * 1000) - start_ms,
                }
            )
        )
        return job.result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_stage(self, job: _ProcessingState, stage: str, stage_fn: Callable[[_ProcessingState], None]) -> None:
        with tracer.start_as_current_span(f"uploadguard.upload.{stage}") as span:
            span.set_attribute("stage.name", stage)
            span.set_attribute("upload.correlation_id", job.correlation_id)
            try:
                stage_fn(job)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                raise

    def _stage_begin(self, job: _ProcessingState) -> None:
        current = self._quarantine.get_state(job.token)
        if current is QuarantineState.PENDING:
            self._quarantine.transition(
                job.token,
                QuarantineState.PENDING,
                QuarantineState.SCANNING,
                {"scan_started_at": time.time()},
            )
        elif current is not QuarantineState.SCANNING:
            raise StateConflictError(f"Artifact cannot be processed from state {current.value}.")
        job.state = QuarantineState.SCANNING

    def _stage_scan(self, job: _ProcessingState) -> None:
        if not job.profile.requires_av:
            return
        self._coordinator.scan(
            job.token.path,
            ScanContext(correlation_id=job.correlation_id, profile=job.profile.name),
        )

    def _stage_validate(self, job: _ProcessingState) -> None:
        job.artifact = self._pipeline.process(
            job.token.path,
            job.profile,
            correlation_id=job.correlation_id,
            original_filename=job.original_filename,
        )
        self._quarantine.transition(
            job.token,
            QuarantineState.SCANNING,
            QuarantineState.CLEAN,
            {"sha256": job.artifact.sha256, "normalized": job.artifact.normalized},
        )
        job.state = QuarantineState.CLEAN

    def _stage_publish(self, job: _ProcessingState) -> None:
        artifact = job.artifact
        if artifact is None:
            raise InfrastructureError("Nothing to publish.", reason="processing")
        relative = self._storage.path_for(
            job.owner.tenant_id,
            job.owner.user_id,
            job.profile.collection,
            artifact.extension,
        )

        if artifact.normalized:
            self._storage.adopt(artifact, relative)
            artifact.consume()
            try:
                self._quarantine.transition(
                    job.token, QuarantineState.CLEAN, QuarantineState.PROMOTED, {"destination": relative}
                )
            except Exception:
                self._storage.delete(relative)
                raise
        else:
            verified = self._quarantine.verify_integrity(job.token)
            if verified != artifact.sha256:
                raise IntegrityError(expected=verified, actual=artifact.sha256)
            self._quarantine.promote(job.token, {"destination": relative}, from_state=QuarantineState.CLEAN)

        job.state = QuarantineState.PROMOTED
        job.result = UploadResult(
            artifact_id=relative.rsplit("/", 1)[-1].split(".", 1)[0],
            path=relative,
            profile=job.profile.name,
            mime_type=artifact.mime_type,
            size=artifact.size,
            sha256=artifact.sha256,
            correlation_id=job.correlation_id,
            quarantine_id=job.token.identifier,
            width=artifact.width,
            height=artifact.height,
            normalized=artifact.normalized,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mark(self, job: _ProcessingState, target: QuarantineState, metadata: dict[str, Any]) -> None:
        """Best-effort transition to a failure state; never masks the caller's error."""
        try:
            self._quarantine.transition(job.token, job.state, target, metadata)
            job.state = target
        except (QuarantineError, OSError) as exc:
            logger.warning(
                json.dumps(
                    {
                        "event": "upload_state_update_failed",
                        "correlation_id": job.correlation_id,
                        "from": job.state.value,
                        "to": target.value,
                        "error": type(exc).__name__,
                    }
                )
            )

    def _enqueue(
        self,
        token: QuarantineToken,
        profile: UploadProfile,
        owner: Owner,
        correlation_id: str,
        original_filename: str | None,
    ) -> None:
        if self._dispatcher is None:
            raise InfrastructureError("No background dispatcher configured.", reason="config")

        payload = {
            "quarantine_id": token.identifier,
            "profile": profile.name,
            "tenant_id": owner.tenant_id,
            "user_id": owner.user_id,
            "correlation_id": correlation_id,
            "original_filename": original_filename,
        }
        if profile.latest_wins and self._debouncer is not None:
            subject = f"{owner.subject}:{profile.name}"
            latest = self._debouncer.remember_latest(
                subject,
                token.identifier,
                correlation_id,
                profile=profile.name,
                tenant_id=owner.tenant_id,
                user_id=owner.user_id,
                original_filename=original_filename,
            )
            self._debouncer.enqueue_once(
                subject, lambda: self._dispatcher({**payload, "subject": subject, "latest": latest})
            )
            return
        self._dispatcher(payload)

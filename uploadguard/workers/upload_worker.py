"""Celery upload worker: deferred processing, debounce, readiness and sweeps.

Tasks
-----
* :func:`process_upload_task`: process one quarantined upload through
  :meth:`~uploadguard.core.orchestrator.UploadOrchestrator.process_quarantined`.
* :func:`process_latest_task`: drain a latest-wins debounce subject, processing
  only the newest upload.
* :func:`await_artifact_task`: poll durable storage until an artifact exists
  and then kick off a follow-up task; the readiness policy decides when to
  give up.
* :func:`prune_quarantine_task` / :func:`cleanup_sidecars_task`: beat-driven
  quarantine maintenance.

**Retry policy**

Malware, validation and integrity failures are permanent: the task returns a
``rejected`` result and never retries.  Retryable infrastructure failures
(scanner timeouts, unreachable daemons, storage errors) retry after
:data:`_RETRY_COUNTDOWN_SECONDS` for up to :data:`_MAX_TRIES` attempts; the
artifact stays in ``scanning`` between attempts and is marked ``failed`` on
the last one.

The orchestrator is built per invocation so the scanner and storage
configuration is read when the task runs rather than at import time.

**Starting a worker**::

    celery -A uploadguard.celery_app worker --loglevel=info -Q uploadguard
"""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import time
from typing import Any

import redis

from uploadguard.celery_app import celery_app
from uploadguard.config import settings
from uploadguard.core.exceptions import PERMANENT_ERRORS, InfrastructureError
from uploadguard.core.orchestrator import Owner, UploadOrchestrator
from uploadguard.core.profiles import get_profile
from uploadguard.core.readiness import GiveUp, Ready, ReadinessPolicy, ReadinessState, check_ready
from uploadguard.services.quarantine import QuarantineStore, StateConflictError
from uploadguard.services.storage import LocalArtifactStorage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Total attempts for one upload, the first one included.
_MAX_TRIES: int = 3

#: Delay before retrying a transient failure.
_RETRY_COUNTDOWN_SECONDS: int = 60

#: Hard limit for one processing attempt.
_TIME_LIMIT_SECONDS: int = 300


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def _redis_client() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def _build_orchestrator() -> UploadOrchestrator:
    """Construct an :class:`UploadOrchestrator` from the current settings."""
    return UploadOrchestrator.from_settings(client=_redis_client(), dispatcher=dispatch_upload)


def _log(level: int, event: str, **fields: Any) -> None:
    logger.log(level, json.dumps({"event": event, **fields}, default=str))


def _process(
    orchestrator: UploadOrchestrator,
    *,
    quarantine_id: str,
    profile: str,
    tenant_id: str,
    user_id: str,
    correlation_id: str | None,
    original_filename: str | None,
    final_attempt: bool,
) -> dict[str, Any]:
    """Process one quarantined upload and return a JSON-serialisable result.

    Permanent failures are folded into a ``rejected`` result; retryable
    infrastructure errors propagate unless this is the final attempt.
    """
    token = orchestrator.quarantine.resolve_token_by_identifier(quarantine_id)
    if token is None:
        _log(logging.WARNING, "upload_missing", quarantine_id=quarantine_id, correlation_id=correlation_id)
        return {"status": "missing", "quarantine_id": quarantine_id}
    if correlation_id and token.correlation_id != correlation_id:
        token = dataclasses.replace(token, correlation_id=correlation_id)

    try:
        upload_profile = get_profile(profile)
    except KeyError:
        orchestrator.quarantine.delete(token)
        _log(logging.ERROR, "upload_profile_unknown", profile=profile, quarantine_id=quarantine_id)
        return {"status": "rejected", "quarantine_id": quarantine_id, "reason": "profile"}

    try:
        result = orchestrator.process_quarantined(
            token,
            upload_profile,
            Owner(tenant_id=tenant_id, user_id=user_id),
            original_filename=original_filename,
            final_attempt=final_attempt,
        )
    except PERMANENT_ERRORS as exc:
        _log(
            logging.WARNING,
            "upload_rejected",
            quarantine_id=quarantine_id,
            correlation_id=token.correlation_id,
            reason=type(exc).__name__,
        )
        return {"status": "rejected", "quarantine_id": quarantine_id, "reason": type(exc).__name__}
    except StateConflictError:
        _log(logging.INFO, "upload_already_processed", quarantine_id=quarantine_id)
        return {"status": "skipped", "quarantine_id": quarantine_id}
    except InfrastructureError as exc:
        if exc.retryable and not final_attempt:
            raise
        _log(
            logging.ERROR,
            "upload_failed",
            quarantine_id=quarantine_id,
            correlation_id=token.correlation_id,
            reason=exc.reason,
        )
        return {"status": "failed", "quarantine_id": quarantine_id, "reason": exc.reason}

    return {"status": "promoted", **dataclasses.asdict(result)}


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="uploadguard.workers.upload_worker.process_upload_task",
    bind=True,
    max_retries=_MAX_TRIES - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=_TIME_LIMIT_SECONDS,
)
def process_upload_task(
    self: Any,
    *,
    quarantine_id: str,
    profile: str,
    tenant_id: str,
    user_id: str,
    correlation_id: str | None = None,
    original_filename: str | None = None,
) -> dict[str, Any]:
    """Celery task: scan, validate and promote one quarantined upload.

    Returns:
        A dict with ``status`` (``promoted``, ``rejected``, ``failed``,
        ``skipped`` or ``missing``) and ``quarantine_id``; promoted results
        carry the :class:`~uploadguard.core.orchestrator.UploadResult` fields.

    Raises:
        :exc:`celery.exceptions.Retry`: On retryable infrastructure errors
            before the last attempt.
    """
    orchestrator = _build_orchestrator()
    final_attempt = self.request.retries >= _MAX_TRIES - 1
    try:
        return _process(
            orchestrator,
            quarantine_id=quarantine_id,
            profile=profile,
            tenant_id=tenant_id,
            user_id=user_id,
            correlation_id=correlation_id,
            original_filename=original_filename,
            final_attempt=final_attempt,
        )
    except InfrastructureError as exc:
        _log(
            logging.WARNING,
            "upload_retry_scheduled",
            quarantine_id=quarantine_id,
            correlation_id=correlation_id,
            attempt=self.request.retries + 1,
            max_tries=_MAX_TRIES,
            countdown=_RETRY_COUNTDOWN_SECONDS,
            reason=exc.reason,
        )
        raise self.retry(exc=exc, countdown=_RETRY_COUNTDOWN_SECONDS)


@celery_app.task(
    name="uploadguard.workers.upload_worker.process_latest_task",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=_TIME_LIMIT_SECONDS,
)
def process_latest_task(
    self: Any,
    *,
    subject: str,
    fallback: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Celery task: process only the newest upload recorded for *subject*.

    Superseded uploads stay ``pending`` in quarantine until the TTL prune
    removes them.  *fallback* is the payload the uploader recorded; it is
    processed when Redis no longer holds one.
    """
    orchestrator = _build_orchestrator()
    debouncer = orchestrator.debouncer
    results: list[dict[str, Any]] = []

    def _handle(payload: dict[str, Any]) -> None:
        results.append(
            _process(
                orchestrator,
                quarantine_id=payload["artifact_id"],
                profile=payload["profile"],
                tenant_id=payload["tenant_id"],
                user_id=payload["user_id"],
                correlation_id=payload.get("correlation_id"),
                original_filename=payload.get("original_filename"),
                final_attempt=True,
            )
        )

    if debouncer is None:
        if fallback is not None:
            _handle(fallback)
    else:
        debouncer.drain(subject, _handle, fallback=fallback)

    _log(logging.INFO, "debounce_drained", subject=subject, processed=len(results))
    return {"subject": subject, "processed": len(results), "results": results}


@celery_app.task(
    name="uploadguard.workers.upload_worker.await_artifact_task",
    bind=True,
    max_retries=None,
    acks_late=True,
)
def await_artifact_task(
    self: Any,
    *,
    path: str,
    follow_up: str | None = None,
    attempts: int = 0,
    first_checked_at: float | None = None,
) -> dict[str, Any]:
    """Celery task: wait for *path* to exist in durable storage.

    Each invocation is one check; :func:`~uploadguard.core.readiness.check_ready`
    decides whether to re-check (via ``self.retry`` with the returned
    countdown) or give up.  When the artifact is ready and *follow_up* names a
    registered task, that task is sent with ``path=...``.
    """
    now = time.time()
    first_checked_at = first_checked_at or now
    attempts += 1
    storage = LocalArtifactStorage()

    decision = check_ready(
        ReadinessState(
            ready=storage.exists(path),
            attempts=attempts,
            elapsed_seconds=now - first_checked_at,
        ),
        ReadinessPolicy.from_settings(),
    )

    if isinstance(decision, Ready):
        if follow_up:
            celery_app.send_task(follow_up, kwargs={"path": path})
        _log(logging.INFO, "artifact_ready", attempts=attempts, follow_up=follow_up)
        return {"status": "ready", "attempts": attempts}

    if isinstance(decision, GiveUp):
        _log(logging.WARNING, "artifact_wait_abandoned", attempts=attempts, reason=decision.reason)
        return {"status": "gave_up", "attempts": attempts, "reason": decision.reason}

    raise self.retry(
        countdown=decision.seconds,
        kwargs={
            "path": path,
            "follow_up": follow_up,
            "attempts": attempts,
            "first_checked_at": first_checked_at,
        },
    )


@celery_app.task(name="uploadguard.workers.upload_worker.prune_quarantine_task")
def prune_quarantine_task(max_age_hours: int | None = None) -> dict[str, Any]:
    """Beat task: expire and delete quarantined artifacts past their TTL."""
    store = QuarantineStore(promoted_root=LocalArtifactStorage().root)
    removed = store.prune_stale_files(max_age_hours)
    _log(logging.INFO, "quarantine_pruned", removed=removed)
    return {"removed": removed}


@celery_app.task(name="uploadguard.workers.upload_worker.cleanup_sidecars_task")
def cleanup_sidecars_task() -> dict[str, Any]:
    """Beat task: remove sidecars whose artifact no longer exists."""
    store = QuarantineStore(promoted_root=LocalArtifactStorage().root)
    removed = store.cleanup_orphaned_sidecars()
    _log(logging.INFO, "quarantine_sidecars_cleaned", removed=removed)
    return {"removed": removed}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch_upload(payload: dict[str, Any]) -> Any:
    """Enqueue background processing for an orchestrator payload.

    Debounced payloads (carrying ``subject``) go to :func:`process_latest_task`;
    everything else to :func:`process_upload_task`.
    """
    if payload.get("subject"):
        return process_latest_task.apply_async(
            kwargs={"subject": payload["subject"], "fallback": payload.get("latest")}
        )
    return process_upload_task.apply_async(
        kwargs={
            key: payload.get(key)
            for key in (
                "quarantine_id",
                "profile",
                "tenant_id",
                "user_id",
                "correlation_id",
                "original_filename",
            )
        }
    )

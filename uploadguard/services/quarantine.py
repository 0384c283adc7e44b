"""QuarantineStore: partitioned local storage for untrusted, in-flight artifacts.

Every upload lands here before anything else touches it.  The store handles:

* **Unpredictable placement**: each artifact lives at ``ab/cd/<64 hex>.bin``
  where the hex is 256 random bits.  A ``.lock`` reservation file is created
  with ``O_CREAT | O_EXCL`` before writing so two concurrent writers can never
  claim the same path (up to :data:`_RESERVATION_ATTEMPTS` fresh draws).

* **Tamper evidence**: the SHA-256 of the content is written to a
  ``<artifact>.sha256`` sidecar at write time and re-checked before the
  artifact leaves quarantine.

* **Lifecycle tracking**: a ``<artifact>.meta.json`` sidecar stores the
  :class:`~uploadguard.core.quarantine_state.QuarantineState` plus
  timestamps, TTL overrides and free-form metadata.  :meth:`QuarantineStore.transition`
  is the only way to change state; it compares the persisted state with the
  caller's expectation under an exclusive ``flock`` and writes the new record
  with an atomic rename.

* **TTL sweeps**: :meth:`QuarantineStore.prune_stale_files` expires and
  deletes artifacts that sat too long, and
  :meth:`QuarantineStore.cleanup_orphaned_sidecars` removes sidecars whose
  artifact disappeared.

Storage layout
--------------
``{root}/ab/cd/<hex>.bin``             artifact bytes (mode 0600)
``{root}/ab/cd/<hex>.bin.sha256``      hex SHA-256 of the bytes
``{root}/ab/cd/<hex>.bin.meta.json``   metadata record
``{promoted_root}/...``                promotion targets

Usage::

    from uploadguard.core.quarantine_state import QuarantineState
    from uploadguard.services.quarantine import QuarantineStore

    store = QuarantineStore(root="/var/lib/uploadguard/quarantine")
    token = store.put(raw_bytes, {"source": "api"}, correlation_id=cid)
    store.transition(token, QuarantineState.PENDING, QuarantineState.SCANNING)
    ...
    final_path = store.promote(token)
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import io
import json
import logging
import os
import re
import secrets
import shutil
import time
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Callable, Iterator

from prometheus_client import Counter, Gauge

from uploadguard.config import settings
from uploadguard.core import paths
from uploadguard.core.exceptions import IntegrityError, UploadGuardError, ValidationError
from uploadguard.core.quarantine_state import (
    FAILED_TTL_STATES,
    QuarantineState,
    QuarantineToken,
    can_transition,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_QUARANTINE_OPS = Counter(
    "uploadguard_quarantine_operations_total",
    "Total quarantine operations by type",
    ["operation"],  # put | transition | promote | delete | prune | sidecar_cleanup
)
_QUARANTINE_ERRORS = Counter(
    "uploadguard_quarantine_errors_total",
    "Total quarantine operation errors by type",
    ["operation"],
)
_QUARANTINE_ACTIVE = Gauge(
    "uploadguard_quarantine_active_files",
    "Approximate number of artifacts currently held in quarantine",
)

# ---------------------------------------------------------------------------
# Layout constants
# ---------------------------------------------------------------------------

_HASH_SUFFIX = ".sha256"
_META_SUFFIX = ".meta.json"
_LOCK_SUFFIX = ".lock"
_ARTIFACT_SUFFIX = ".bin"
_PROMOTED_NAMESPACE = "promoted"

_RESERVATION_ATTEMPTS = 5
_MAX_METADATA_DEPTH = 10

# Reservation files older than this with no artifact belong to a crashed put.
_STALE_RESERVATION_SECONDS = 3600

_PARTITION_RE = re.compile(r"^[0-9a-f]{2}$")
_ARTIFACT_RE = re.compile(r"^[0-9a-f]{64}\.bin$")
_TEMP_SIDECAR_RE = re.compile(r"^(?P<primary>.+)(?:\.sha256|\.meta\.json)\.tmp-[0-9a-f]+$")


class QuarantineError(UploadGuardError):
    """Raised when a quarantine operation fails in an unrecoverable way."""


class QuarantineNotFoundError(QuarantineError):
    """Raised when the referenced artifact or its metadata does not exist."""


class StateConflictError(QuarantineError):
    """Raised when the persisted state does not match the expected state."""


class QuarantineRejectedError(QuarantineError, ValidationError):
    """Raised when content is refused at the door (empty, too large, bad metadata)."""


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def metadata_depth(value: Any) -> int:
    """Return the nesting depth of *value* (a scalar is depth 0)."""
    if isinstance(value, dict):
        return 1 + max((metadata_depth(v) for v in value.values()), default=0)
    if isinstance(value, (list, tuple)):
        return 1 + max((metadata_depth(v) for v in value), default=0)
    return 0


class QuarantineStore:
    """Sidecar-backed quarantine with an explicit lifecycle state machine.

    Args:
        root: Quarantine root directory.  Defaults to
            ``settings.quarantine_root``.
        promoted_root: Directory that :meth:`promote` moves artifacts into.
            Defaults to ``{root}/promoted``.
        max_bytes: Largest accepted artifact.  Defaults to
            ``settings.quarantine_max_bytes``.
        pending_ttl_hours: Default TTL for pending/scanning/clean artifacts.
        failed_ttl_hours: Default TTL for failed/infected artifacts.
        chunk_bytes: Stream copy chunk size.
        stream_timeout_seconds: Wall-clock budget for :meth:`put_stream`.
        clock: Returns the current UTC time; injectable for tests.
        log: Logger used for security events.
    """

    def __init__(
        self,
        root: str | None = None,
        promoted_root: str | None = None,
        max_bytes: int | None = None,
        pending_ttl_hours: int | None = None,
        failed_ttl_hours: int | None = None,
        chunk_bytes: int | None = None,
        stream_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._root = paths.canonical_root(root or settings.quarantine_root)
        self._promoted_root = paths.canonical_root(
            promoted_root or os.path.join(self._root, _PROMOTED_NAMESPACE)
        )
        self._max_bytes = max_bytes or settings.quarantine_max_bytes
        self._pending_ttl = pending_ttl_hours or settings.quarantine_pending_ttl_hours
        self._failed_ttl = failed_ttl_hours or settings.quarantine_failed_ttl_hours
        self._chunk_bytes = chunk_bytes or settings.quarantine_stream_chunk_bytes
        self._stream_timeout = stream_timeout_seconds or settings.quarantine_stream_timeout_seconds
        self._clock = clock or _utcnow
        self._log = log or logger

    @property
    def root(self) -> str:
        return self._root

    @property
    def promoted_root(self) -> str:
        return self._promoted_root

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def put(
        self,
        data: bytes,
        metadata: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
        profile: str | None = None,
        pending_ttl_hours: int | None = None,
        failed_ttl_hours: int | None = None,
    ) -> QuarantineToken:
        """Place *data* in quarantine and return its token.

        Raises:
            QuarantineRejectedError: If *data* is empty or larger than
                ``max_bytes``, or *metadata* is nested too deeply.
            QuarantineError: If no unique path could be reserved or the
                write failed.
        """
        if not data:
            self._reject("put", "empty_content")
        if len(data) > self._max_bytes:
            self._reject("put", "too_large", size=len(data))
        return self.put_stream(
            io.BytesIO(data),
            metadata,
            correlation_id=correlation_id,
            profile=profile,
            pending_ttl_hours=pending_ttl_hours,
            failed_ttl_hours=failed_ttl_hours,
        )

    def put_stream(
        self,
        reader: BinaryIO,
        metadata: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
        profile: str | None = None,
        pending_ttl_hours: int | None = None,
        failed_ttl_hours: int | None = None,
    ) -> QuarantineToken:
        """Copy *reader* into quarantine chunk by chunk.

        The size limit is enforced while streaming; on any failure the partial
        artifact, its sidecars and the reservation file are removed before the
        exception propagates.
        """
        self._check_metadata(metadata)
        relative, absolute, reservation = self._reserve_path()
        try:
            digest, size = self._write_stream(reader, absolute)
            self._write_hash(absolute, digest)
            now = self._clock().isoformat()
            self._write_record(
                absolute,
                {
                    "state": QuarantineState.PENDING.value,
                    "created_at": now,
                    "updated_at": now,
                    "correlation_id": correlation_id,
                    "profile": profile,
                    "pending_ttl_hours": pending_ttl_hours or self._pending_ttl,
                    "failed_ttl_hours": failed_ttl_hours or self._failed_ttl,
                    "metadata": dict(metadata or {}),
                },
            )
        except BaseException:
            _QUARANTINE_ERRORS.labels(operation="put").inc()
            self._remove_files(absolute)
            self._prune_empty_dirs(absolute)
            raise
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(reservation)

        _QUARANTINE_OPS.labels(operation="put").inc()
        _QUARANTINE_ACTIVE.inc()
        self._security_event(
            "quarantine_put",
            identifier=relative,
            size_bytes=size,
            correlation_id=correlation_id,
            profile=profile,
        )
        return QuarantineToken(
            path=absolute,
            identifier=relative,
            correlation_id=correlation_id,
            profile=profile,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(
        self,
        token: QuarantineToken,
        from_state: QuarantineState,
        to_state: QuarantineState,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Move *token* from *from_state* to *to_state*.

        The persisted state is compared with *from_state* while an exclusive
        ``flock`` is held on the artifact, and the new record replaces the old
        one with an atomic rename, so two workers racing on the same token
        cannot both win.

        Raises:
            StateConflictError: If the persisted state differs from
                *from_state* or the transition is not allowed.  Nothing is
                written in that case.
            QuarantineNotFoundError: If the artifact or its record is gone.
        """
        path = self._require_path(token)
        if not can_transition(from_state, to_state):
            _QUARANTINE_ERRORS.labels(operation="transition").inc()
            raise StateConflictError(
                f"Transition {from_state.value} -> {to_state.value} is not allowed."
            )
        self._check_metadata(metadata)

        with self._exclusive_lock(path):
            record = self._read_record(path)
            current = self._state_of(record)
            if current is not from_state:
                _QUARANTINE_ERRORS.labels(operation="transition").inc()
                raise StateConflictError(
                    f"Invalid quarantine state transition: expected {from_state.value}, "
                    f"current {current.value}"
                )
            merged = dict(record.get("metadata") or {})
            merged.update(metadata or {})
            self._check_metadata(merged)
            record["state"] = to_state.value
            record["updated_at"] = self._clock().isoformat()
            record["metadata"] = merged
            self._write_record(path, record)

        _QUARANTINE_OPS.labels(operation="transition").inc()
        self._log.debug(
            "quarantine transition identifier=%s %s -> %s",
            token.identifier,
            from_state.value,
            to_state.value,
        )

    def get_state(self, token: QuarantineToken) -> QuarantineState:
        return self._state_of(self._read_record(self._require_path(token)))

    def get_metadata(self, token: QuarantineToken) -> dict[str, Any]:
        """Return a copy of the persisted metadata record for *token*."""
        return self._read_record(self._require_path(token))

    # ------------------------------------------------------------------
    # Integrity and promotion
    # ------------------------------------------------------------------

    def verify_integrity(self, token: QuarantineToken) -> str:
        """Recompute the artifact hash and compare it with the sidecar.

        Returns:
            The verified hex SHA-256.

        Raises:
            IntegrityError: If the sidecar is missing or does not match.
        """
        path = self._require_path(token)
        expected = self._read_hash(path)
        actual = _sha256_file(path, self._chunk_bytes)
        if expected is None or not secrets.compare_digest(expected, actual):
            _QUARANTINE_ERRORS.labels(operation="integrity").inc()
            self._security_event(
                "quarantine_integrity_failed",
                level=logging.ERROR,
                identifier=token.identifier,
                correlation_id=token.correlation_id,
                expected=expected,
                actual=actual,
            )
            raise IntegrityError(expected=expected, actual=actual)
        return actual

    def promote(
        self,
        token: QuarantineToken,
        metadata: dict[str, Any] | None = None,
        *,
        from_state: QuarantineState | None = None,
    ) -> str:
        """Move a verified artifact out of quarantine.

        The destination is ``metadata["destination"]`` (a path relative to
        the promotion root) or a fresh partitioned path.  The move is done in
        two phases, ``src -> dest.tmp -> dest``; if either phase fails the
        artifact is moved back to its quarantine location.

        With *from_state*, the persisted state must equal it and allow
        ``promoted``; the check and the move run under the exclusive lock.
        The record only becomes ``promoted`` once the move succeeded, and it
        leaves with the sidecars.  A failed move leaves the state unchanged.

        Returns:
            Absolute path of the promoted file.

        Raises:
            IntegrityError: If the content changed since :meth:`put`.  The
                artifact is left untouched.
            QuarantineError: If the destination is invalid, already exists,
                or the move failed.
        """
        path = self._require_path(token)
        if from_state is None:
            return self._move_out(token, path, metadata)
        with self._exclusive_lock(path):
            current = self._state_of(self._read_record(path))
            if current is not from_state or not can_transition(from_state, QuarantineState.PROMOTED):
                _QUARANTINE_ERRORS.labels(operation="promote").inc()
                raise StateConflictError(
                    f"Artifact cannot be promoted from state {current.value}."
                )
            return self._move_out(token, path, metadata, state=QuarantineState.PROMOTED)

    def _move_out(
        self,
        token: QuarantineToken,
        path: str,
        metadata: dict[str, Any] | None,
        state: QuarantineState | None = None,
    ) -> str:
        self.verify_integrity(token)
        destination = self._promotion_target(metadata or {})
        if os.path.lexists(destination):
            _QUARANTINE_ERRORS.labels(operation="promote").inc()
            raise QuarantineError("Promotion destination already exists.")

        os.makedirs(os.path.dirname(destination), mode=0o750, exist_ok=True)
        staging = destination + ".tmp"
        try:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staging)
            shutil.move(path, staging)
            os.replace(staging, destination)
        except OSError as exc:
            _QUARANTINE_ERRORS.labels(operation="promote").inc()
            self._restore_after_failed_move(staging, path)
            raise QuarantineError("Failed to move artifact out of quarantine.") from exc

        for suffix in (_HASH_SUFFIX, _META_SUFFIX):
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path + suffix)
        self._prune_empty_dirs(path)

        _QUARANTINE_OPS.labels(operation="promote").inc()
        _QUARANTINE_ACTIVE.dec()
        self._security_event(
            "quarantine_promote",
            identifier=token.identifier,
            correlation_id=token.correlation_id,
            destination=paths.to_relative(destination, self._promoted_root),
            state=state.value if state is not None else None,
        )
        return destination

    # ------------------------------------------------------------------
    # Removal and lookup
    # ------------------------------------------------------------------

    def delete(self, token: QuarantineToken) -> None:
        """Remove the artifact and its sidecars.  Missing files are not an error.

        A token pointing outside the root is logged and ignored.
        """
        path = token.path
        if not paths.is_within(path, self._root) or paths.is_within(path, self._promoted_root):
            self._security_event(
                "quarantine_delete_outside_root",
                level=logging.WARNING,
                identifier=token.identifier,
            )
            return
        existed = os.path.lexists(path)
        self._remove_files(path)
        self._prune_empty_dirs(path)
        if existed:
            _QUARANTINE_OPS.labels(operation="delete").inc()
            _QUARANTINE_ACTIVE.dec()

    def resolve_token_by_identifier(self, identifier: str) -> QuarantineToken | None:
        """Rebuild a token from a caller-supplied identifier.

        Returns ``None`` unless *identifier* matches ``[A-Za-z0-9._/-]+``,
        is relative, has no ``..`` segment, stays inside the root and names
        an existing regular file.
        """
        candidate = paths.normalize_separators(identifier or "")
        if paths.is_absolute(candidate):
            return None
        candidate = candidate.rstrip("/")
        if not paths.is_safe_identifier(candidate):
            return None
        absolute = paths.resolve_under(self._root, candidate)
        if absolute is None or paths.is_within(absolute, self._promoted_root):
            return None
        if os.path.islink(absolute) or not os.path.isfile(absolute):
            return None
        try:
            record = self._read_record(absolute)
        except QuarantineError:
            record = {}
        return QuarantineToken(
            path=absolute,
            identifier=paths.to_relative(absolute, self._root) or candidate,
            correlation_id=record.get("correlation_id"),
            profile=record.get("profile"),
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def prune_stale_files(self, max_age_hours: int | None = None) -> int:
        """Expire and delete artifacts whose state TTL has elapsed.

        ``pending``, ``scanning``, ``clean`` and leftover ``expired`` or
        ``promoted`` artifacts use the pending TTL; ``failed`` and ``infected`` artifacts
        use the failed TTL.  The record's own TTL wins; *max_age_hours* is the
        fallback for records without one.  An artifact is eligible exactly
        when ``now - updated_at >= ttl``.

        Returns:
            Number of artifacts deleted.
        """
        fallback = max_age_hours or self._pending_ttl
        now = self._clock()
        pruned = 0
        for path in self._iter_artifacts():
            token = self._token_for(path)
            try:
                record, state, updated_at = self._prune_view(path)
                if state in FAILED_TTL_STATES:
                    ttl = _coerce_ttl(record.get("failed_ttl_hours"), fallback)
                else:
                    ttl = _coerce_ttl(record.get("pending_ttl_hours"), fallback)
                if now - updated_at < timedelta(hours=ttl):
                    continue

                if state is not None and can_transition(state, QuarantineState.EXPIRED):
                    self.transition(
                        token, state, QuarantineState.EXPIRED, {"expired_reason": "ttl_expired"}
                    )
                self.delete(token)
                pruned += 1
            except (QuarantineError, OSError, OverflowError) as exc:
                _QUARANTINE_ERRORS.labels(operation="prune").inc()
                self._security_event(
                    "quarantine_cleanup_failed",
                    level=logging.WARNING,
                    reason="prune_failed",
                    identifier=token.identifier,
                    error=str(exc),
                )

        _QUARANTINE_OPS.labels(operation="prune").inc()
        self._log.info("quarantine prune finished pruned=%d", pruned)
        return pruned

    def cleanup_orphaned_sidecars(self) -> int:
        """Delete hash/metadata sidecars (and stale reservations) with no artifact.

        Temporary sidecar files left by an interrupted write are removed when
        their artifact is gone or once they are older than an hour.
        """
        cleaned = 0
        now = time.time()
        for directory in self._iter_partition_dirs():
            for name in sorted(os.listdir(directory)):
                sidecar = os.path.join(directory, name)
                primary = _primary_for(sidecar)
                if primary is None:
                    continue
                temporary = _TEMP_SIDECAR_RE.match(name) is not None
                if os.path.lexists(primary) and not temporary:
                    continue
                if sidecar.endswith(_LOCK_SUFFIX) or (temporary and os.path.lexists(primary)):
                    with contextlib.suppress(FileNotFoundError):
                        if now - os.path.getmtime(sidecar) < _STALE_RESERVATION_SECONDS:
                            continue
                try:
                    os.unlink(sidecar)
                    cleaned += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    _QUARANTINE_ERRORS.labels(operation="sidecar_cleanup").inc()
                    self._security_event(
                        "quarantine_cleanup_failed",
                        level=logging.WARNING,
                        reason="sidecar_cleanup_failed",
                        identifier=paths.to_relative(sidecar, self._root),
                        error=str(exc),
                    )
            self._prune_empty_dirs(os.path.join(directory, "_"))

        _QUARANTINE_OPS.labels(operation="sidecar_cleanup").inc()
        return cleaned

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reject(self, operation: str, reason: str, **fields: Any) -> None:
        _QUARANTINE_ERRORS.labels(operation=operation).inc()
        self._security_event("quarantine_rejected", level=logging.WARNING, reason=reason, **fields)
        messages = {
            "empty_content": "Empty uploads are not accepted.",
            "too_large": "Upload exceeds the maximum allowed size.",
            "metadata_too_deep": "Upload metadata is nested too deeply.",
            "metadata_invalid": "Upload metadata is not serialisable.",
        }
        raise QuarantineRejectedError(messages.get(reason, "Upload rejected."))

    def _check_metadata(self, metadata: dict[str, Any] | None) -> None:
        if not metadata:
            return
        if metadata_depth(metadata) > _MAX_METADATA_DEPTH:
            self._reject("metadata", "metadata_too_deep")
        try:
            json.dumps(metadata)
        except (TypeError, ValueError):
            self._reject("metadata", "metadata_invalid")

    def _reserve_path(self) -> tuple[str, str, str]:
        """Claim a fresh partitioned path via an exclusive reservation file."""
        for _attempt in range(_RESERVATION_ATTEMPTS):
            name = secrets.token_hex(32)
            relative = f"{name[:2]}/{name[2:4]}/{name}{_ARTIFACT_SUFFIX}"
            absolute = os.path.join(self._root, name[:2], name[2:4], name + _ARTIFACT_SUFFIX)
            os.makedirs(os.path.dirname(absolute), mode=0o700, exist_ok=True)
            reservation = absolute + _LOCK_SUFFIX
            try:
                fd = os.open(reservation, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                continue
            os.close(fd)
            if os.path.lexists(absolute):
                os.unlink(reservation)
                continue
            return relative, absolute, reservation
        _QUARANTINE_ERRORS.labels(operation="put").inc()
        raise QuarantineError("Unable to reserve a unique quarantine path.")

    def _write_stream(self, reader: BinaryIO, absolute: str) -> tuple[str, int]:
        deadline = time.monotonic() + self._stream_timeout
        hasher = hashlib.sha256()
        size = 0
        fd = os.open(absolute, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "wb") as out:
            while True:
                chunk = reader.read(self._chunk_bytes)
                if not chunk:
                    break
                size += len(chunk)
                if size > self._max_bytes:
                    self._reject("put", "too_large", size=size)
                if time.monotonic() > deadline:
                    _QUARANTINE_ERRORS.labels(operation="put").inc()
                    raise QuarantineError("Timed out while copying the upload into quarantine.")
                hasher.update(chunk)
                out.write(chunk)
            out.flush()
            os.fsync(out.fileno())
        if size == 0:
            self._reject("put", "empty_content")
        return hasher.hexdigest(), size

    def _write_hash(self, absolute: str, digest: str) -> None:
        _atomic_write(absolute + _HASH_SUFFIX, digest.encode("ascii"))

    def _read_hash(self, absolute: str) -> str | None:
        try:
            with open(absolute + _HASH_SUFFIX, "r", encoding="ascii") as fh:
                value = fh.read().strip().lower()
        except FileNotFoundError:
            return None
        return value or None

    def _write_record(self, absolute: str, record: dict[str, Any]) -> None:
        _atomic_write(absolute + _META_SUFFIX, json.dumps(record, sort_keys=True).encode("utf-8"))

    def _read_record(self, absolute: str) -> dict[str, Any]:
        try:
            with open(absolute + _META_SUFFIX, "r", encoding="utf-8") as fh:
                record = json.load(fh)
        except FileNotFoundError as exc:
            raise QuarantineNotFoundError("Quarantine metadata not found.") from exc
        except (OSError, ValueError) as exc:
            raise QuarantineError("Quarantine metadata is unreadable.") from exc
        if not isinstance(record, dict):
            raise QuarantineError("Quarantine metadata is malformed.")
        return record

    @staticmethod
    def _state_of(record: dict[str, Any]) -> QuarantineState:
        try:
            return QuarantineState(record.get("state"))
        except ValueError as exc:
            raise QuarantineError("Quarantine metadata carries an unknown state.") from exc

    def _prune_view(self, absolute: str) -> tuple[dict[str, Any], QuarantineState | None, datetime]:
        """Return ``(record, state, updated_at)``; unreadable records fall back to mtime."""
        try:
            record = self._read_record(absolute)
            return record, self._state_of(record), _parse_timestamp(record["updated_at"])
        except (QuarantineError, KeyError, TypeError, ValueError):
            return {}, None, datetime.fromtimestamp(os.path.getmtime(absolute), tz=timezone.utc)

    def _require_path(self, token: QuarantineToken) -> str:
        path = token.path
        if not paths.is_within(path, self._root) or paths.has_symlink_component(path, self._root):
            raise QuarantineError("Quarantine token points outside the quarantine root.")
        if not os.path.isfile(path):
            raise QuarantineNotFoundError("Quarantined artifact not found.")
        return path

    def _token_for(self, absolute: str) -> QuarantineToken:
        return QuarantineToken(
            path=absolute,
            identifier=paths.to_relative(absolute, self._root) or os.path.basename(absolute),
        )

    def _promotion_target(self, metadata: dict[str, Any]) -> str:
        requested = metadata.get("destination")
        if isinstance(requested, str) and requested:
            target = paths.resolve_under(self._promoted_root, requested)
            if target is None:
                _QUARANTINE_ERRORS.labels(operation="promote").inc()
                raise QuarantineError("Promotion destination is outside the promotion root.")
            return target
        name = secrets.token_hex(32)
        return os.path.join(self._promoted_root, name[:2], name[2:4], name + _ARTIFACT_SUFFIX)

    def _restore_after_failed_move(self, staging: str, original: str) -> None:
        if os.path.lexists(staging) and not os.path.lexists(original):
            try:
                shutil.move(staging, original)
            except OSError as exc:
                self._security_event(
                    "quarantine_restore_failed",
                    level=logging.ERROR,
                    error=str(exc),
                )

    def _remove_files(self, absolute: str) -> None:
        for suffix in ("", _HASH_SUFFIX, _META_SUFFIX, _LOCK_SUFFIX):
            with contextlib.suppress(FileNotFoundError):
                os.unlink(absolute + suffix)

    def _prune_empty_dirs(self, absolute: str) -> None:
        """Remove now-empty partition directories above *absolute*."""
        directory = os.path.dirname(absolute)
        while paths.is_within(directory, self._root):
            try:
                os.rmdir(directory)
            except OSError:
                return
            directory = os.path.dirname(directory)

    def _iter_partition_dirs(self) -> Iterator[str]:
        if not os.path.isdir(self._root):
            return
        for first in sorted(os.listdir(self._root)):
            level1 = os.path.join(self._root, first)
            if not _PARTITION_RE.match(first) or os.path.islink(level1) or not os.path.isdir(level1):
                continue
            for second in sorted(os.listdir(level1)):
                level2 = os.path.join(level1, second)
                if _PARTITION_RE.match(second) and not os.path.islink(level2) and os.path.isdir(level2):
                    yield level2

    def _iter_artifacts(self) -> Iterator[str]:
        for directory in self._iter_partition_dirs():
            for name in sorted(os.listdir(directory)):
                candidate = os.path.join(directory, name)
                if _ARTIFACT_RE.match(name) and not os.path.islink(candidate) and os.path.isfile(candidate):
                    yield candidate

    @contextlib.contextmanager
    def _exclusive_lock(self, absolute: str) -> Iterator[None]:
        with open(absolute, "rb") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _security_event(self, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
        self._log.log(level, json.dumps({"event": event, **fields}, default=str))


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _sha256_file(path: str, chunk_bytes: int = 1024 * 1024) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_bytes), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _atomic_write(target: str, payload: bytes) -> None:
    """Write *payload* to a temp file beside *target* and rename it into place."""
    temporary = f"{target}.tmp-{secrets.token_hex(4)}"
    fd = os.open(temporary, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temporary, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temporary)
        raise


def _primary_for(sidecar: str) -> str | None:
    temporary = _TEMP_SIDECAR_RE.match(sidecar)
    if temporary is not None:
        return temporary.group("primary")
    for suffix in (_HASH_SUFFIX, _META_SUFFIX, _LOCK_SUFFIX):
        if sidecar.endswith(suffix):
            return sidecar[: -len(suffix)]
    return None


def _coerce_ttl(value: Any, fallback: int) -> int:
    """Return *value* as a positive whole number of hours, else *fallback*."""
    if isinstance(value, bool):
        return fallback
    try:
        hours = int(value)
    except (TypeError, ValueError):
        return fallback
    return hours if hours > 0 else fallback


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; values without an offset are UTC."""
    if not isinstance(value, str):
        raise TypeError("timestamp must be a string")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

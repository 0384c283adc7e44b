"""Latest-wins debouncing of background processing kickoffs.

When the same subject (for example one user's avatar) is uploaded several
times in quick succession, only the most recent upload needs processing.
:class:`LatestArtifactDebouncer` keeps two Redis keys per subject:

* ``{prefix}:latest:{subject}``  JSON payload of the newest upload (TTL 300 s)
* ``{prefix}:lock:{subject}``    kickoff lock (``SET NX EX 60``)

The uploader calls :meth:`~LatestArtifactDebouncer.remember_latest` then
:meth:`~LatestArtifactDebouncer.enqueue_once`; the worker calls
:meth:`~LatestArtifactDebouncer.drain`, which processes whatever is newest and
loops (bounded) while newer uploads keep arriving.  A Redis outage never drops
work: ``enqueue_once`` dispatches anyway.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import redis

from uploadguard.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_PREFIX = "uploadguard:debounce"
_MAX_DRAIN_ITERATIONS = 3


class LatestArtifactDebouncer:
    """Redis-backed latest-wins debouncer.

    Args:
        client: Synchronous Redis client.
        lock_ttl_seconds: Kickoff lock TTL.  Defaults to
            ``settings.debounce_lock_ttl_seconds``.
        latest_ttl_seconds: Latest-payload TTL.  Defaults to
            ``settings.debounce_latest_ttl_seconds``.
        max_iterations: Upper bound of :meth:`drain` loop iterations.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        client: redis.Redis,
        lock_ttl_seconds: int | None = None,
        latest_ttl_seconds: int | None = None,
        max_iterations: int = _MAX_DRAIN_ITERATIONS,
        prefix: str = _DEFAULT_PREFIX,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._lock_ttl = lock_ttl_seconds or settings.debounce_lock_ttl_seconds
        self._latest_ttl = latest_ttl_seconds or settings.debounce_latest_ttl_seconds
        self._max_iterations = max(1, max_iterations)
        self._prefix = prefix
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def lock_key(self, subject: str) -> str:
        return f"{self._prefix}:lock:{subject}"

    def latest_key(self, subject: str) -> str:
        return f"{self._prefix}:latest:{subject}"

    # ------------------------------------------------------------------
    # Uploader side
    # ------------------------------------------------------------------

    def remember_latest(
        self,
        subject: str,
        artifact_id: str,
        correlation_id: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """Record *artifact_id* as the newest upload for *subject*.

        Returns the stored payload.  Redis errors are logged; the payload is
        still returned so the caller can dispatch it directly.
        """
        payload = {
            **extra,
            "artifact_id": artifact_id,
            "correlation_id": correlation_id,
            "updated_at": self._clock().isoformat(),
        }
        try:
            self._client.setex(self.latest_key(subject), self._latest_ttl, json.dumps(payload))
        except redis.RedisError as exc:
            logger.warning(
                json.dumps({"event": "debounce_remember_failed", "subject": subject, "error": str(exc)})
            )
        return payload

    def enqueue_once(self, subject: str, dispatch: Callable[[], Any]) -> bool:
        """Call *dispatch* unless a kickoff for *subject* is already pending.

        Returns:
            ``True`` if *dispatch* was called.

        If Redis is unavailable the lock cannot be taken and *dispatch* is
        called anyway.  If *dispatch* raises, the lock is released and the
        exception propagates.
        """
        try:
            acquired = self._client.set(self.lock_key(subject), "1", nx=True, ex=self._lock_ttl)
        except redis.RedisError as exc:
            logger.warning(
                json.dumps({"event": "debounce_lock_failed", "subject": subject, "error": str(exc)})
            )
            dispatch()
            return True

        if not acquired:
            logger.debug("debounce: kickoff already pending subject=%s", subject)
            return False
        try:
            dispatch()
        except Exception:
            self.release(subject)
            raise
        return True

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def read_latest(self, subject: str) -> dict[str, Any] | None:
        try:
            raw = self._client.get(self.latest_key(subject))
        except redis.RedisError as exc:
            logger.warning(
                json.dumps({"event": "debounce_read_failed", "subject": subject, "error": str(exc)})
            )
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning(json.dumps({"event": "debounce_payload_invalid", "subject": subject}))
            return None
        return payload if isinstance(payload, dict) else None

    def refresh_lock(self, subject: str) -> None:
        try:
            self._client.expire(self.lock_key(subject), self._lock_ttl)
        except redis.RedisError as exc:
            logger.warning(
                json.dumps({"event": "debounce_refresh_failed", "subject": subject, "error": str(exc)})
            )

    def release(self, subject: str) -> None:
        try:
            self._client.delete(self.lock_key(subject))
        except redis.RedisError as exc:
            logger.warning(
                json.dumps({"event": "debounce_release_failed", "subject": subject, "error": str(exc)})
            )

    def drain(
        self,
        subject: str,
        handler: Callable[[dict[str, Any]], Any],
        fallback: dict[str, Any] | None = None,
    ) -> int:
        """Process the newest payload for *subject*, looping while newer ones arrive.

        Args:
            subject: Debounce subject.
            handler: Called with each payload processed.
            fallback: Payload to process when Redis holds none (e.g. the
                payload carried by the task itself after a Redis outage).

        Returns:
            Number of payloads handed to *handler*.  The lock is always
            released.
        """
        processed = 0
        last_version: tuple[Any, Any] | None = None
        try:
            for _iteration in range(self._max_iterations):
                payload = self.read_latest(subject)
                if payload is None and processed == 0:
                    payload = fallback
                if payload is None:
                    break
                version = _version(payload)
                if version == last_version:
                    break
                handler(payload)
                processed += 1
                last_version = version

                current = self.read_latest(subject)
                if current is None or _version(current) == version:
                    break
                self.refresh_lock(subject)
        finally:
            self.release(subject)
        return processed


def _version(payload: dict[str, Any]) -> tuple[Any, Any]:
    return payload.get("artifact_id"), payload.get("updated_at")

"""ScanCoordinator: runs the configured scanners with retries and a circuit breaker.

Responsibilities:

* run every configured :class:`~uploadguard.engines.base.Scanner` in order;
  the first ``infected`` verdict raises
  :class:`~uploadguard.core.exceptions.MalwareDetectedError`;
* retry transient failures (``timeout``, ``unreachable``, ``process_failed``)
  with ``backoff + random jitter`` up to ``retry_attempts`` total attempts;
  anything else fails on the first attempt;
* count failures in a Redis-backed :class:`ScanCircuitBreaker`; once
  ``max_failures`` accumulate within ``decay_seconds`` the coordinator
  refuses to scan until the counter decays or a clean run resets it;
* hand final infrastructure failures to the
  :class:`~uploadguard.engines.base.ScanPolicy` (strict raises, non-strict
  logs and continues).

Usage::

    import redis
    from uploadguard.core.scan_coordinator import ScanCoordinator

    coordinator = ScanCoordinator.from_settings(redis.Redis.from_url(url))
    coordinator.scan(token.path, ScanContext(correlation_id=cid))
"""
from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable

import redis
from prometheus_client import Counter

from uploadguard.config import settings
from uploadguard.core.exceptions import InfrastructureError, MalwareDetectedError, UploadGuardError
from uploadguard.engines.base import ScanContext, ScanPolicy, Scanner, ScanVerdict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_SCAN_RESULTS = Counter(
    "uploadguard_scan_results_total",
    "Scanner outcomes by scanner key and result",
    ["scanner", "result"],  # result: clean | infected | error | fail_open
)
_SCAN_CIRCUIT_REJECTIONS = Counter(
    "uploadguard_scan_circuit_open_total",
    "Scans refused because the scan circuit breaker was open",
)

# reason -> (error_type, retryable)
_FAILURE_CLASSES: dict[str, tuple[str, bool]] = {
    "timeout": ("infra_timeout", True),
    "unreachable": ("infra_unreachable", True),
    "process_failed": ("infra_processing", True),
    "ruleset": ("infra_ruleset", False),
    "config": ("infra_config", False),
    "binary": ("infra_config", False),
    "input": ("infra_input", False),
    "limits": ("infra_limits", False),
}


def classify_failure(error: InfrastructureError) -> tuple[str, bool]:
    """Return ``(error_type, retryable)`` for a scanner failure."""
    return _FAILURE_CLASSES.get(error.reason, ("infra_unknown", False))


class ScanCircuitBreaker:
    """Failure counter stored in Redis with a sliding expiry.

    Storage errors are logged and treated as "closed"; they never replace the
    scan error being handled.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str | None = None,
        max_failures: int | None = None,
        decay_seconds: int | None = None,
    ) -> None:
        self._client = client
        self._key = key or settings.scan_circuit_key
        self._max_failures = max_failures or settings.scan_circuit_max_failures
        self._decay_seconds = decay_seconds or settings.scan_circuit_decay_seconds

    @property
    def max_failures(self) -> int:
        return self._max_failures

    def failures(self) -> int:
        try:
            value = self._client.get(self._key)
        except redis.RedisError as exc:
            logger.warning(json.dumps({"event": "scan_circuit_read_failed", "error": str(exc)}))
            return 0
        return int(value or 0)

    def is_open(self) -> bool:
        return self.failures() >= self._max_failures

    def record_failure(self) -> None:
        try:
            pipe = self._client.pipeline()
            pipe.incr(self._key)
            pipe.expire(self._key, self._decay_seconds)
            pipe.execute()
        except redis.RedisError as exc:
            logger.warning(json.dumps({"event": "scan_circuit_write_failed", "error": str(exc)}))

    def reset(self) -> None:
        try:
            self._client.delete(self._key)
        except redis.RedisError as exc:
            logger.warning(json.dumps({"event": "scan_circuit_write_failed", "error": str(exc)}))


class ScanCoordinator:
    """Runs scanners under the retry, circuit-breaker and strictness policies.

    Args:
        scanners: Ordered scanners to run.
        breaker: Optional circuit breaker.  Without one the coordinator never
            refuses to scan.
        policy: Strict / non-strict policy.  Defaults to
            ``ScanPolicy(strict=settings.scan_strict)``.
        enabled: Master switch.  Defaults to ``settings.scan_enabled``.
        retry_attempts: Total attempts per scanner for retryable failures.
        retry_backoff_ms: Base delay between attempts.
        retry_jitter_ms: Upper bound of the random delay added to the backoff.
        sleep: Injectable sleep function (seconds).
    """

    def __init__(
        self,
        scanners: list[Scanner],
        breaker: ScanCircuitBreaker | None = None,
        policy: ScanPolicy | None = None,
        enabled: bool | None = None,
        retry_attempts: int | None = None,
        retry_backoff_ms: int | None = None,
        retry_jitter_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._scanners = list(scanners)
        self._breaker = breaker
        self._policy = policy or ScanPolicy(strict=settings.scan_strict)
        self._enabled = settings.scan_enabled if enabled is None else enabled
        self._retry_attempts = max(1, retry_attempts or settings.scan_retry_attempts)
        self._backoff_ms = settings.scan_retry_backoff_ms if retry_backoff_ms is None else retry_backoff_ms
        self._jitter_ms = settings.scan_retry_jitter_ms if retry_jitter_ms is None else retry_jitter_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, client: redis.Redis | None = None) -> "ScanCoordinator":
        """Build the coordinator and scanners named by ``settings.scan_scanners``."""
        from uploadguard.engines.clamav import ClamAVScanner
        from uploadguard.engines.clamd_socket import ClamdSocketScanner
        from uploadguard.engines.yara import YaraScanner

        factories: dict[str, Callable[[], Scanner]] = {
            "clamav": ClamAVScanner,
            "clamd": ClamdSocketScanner,
            "yara": YaraScanner,
        }
        scanners = [factories[key]() for key in settings.scan_scanners]
        breaker = ScanCircuitBreaker(client) if client is not None else None
        return cls(scanners, breaker=breaker)

    @property
    def scanner_keys(self) -> list[str]:
        return [scanner.key for scanner in self._scanners]

    def enabled(self) -> bool:
        return self._enabled and bool(self._scanners)

    def assert_available(self) -> None:
        """Raise when scanning is enabled but the circuit breaker is open.

        Non-strict mode never refuses: its failures resolve to clean and are
        not counted by the breaker.

        Raises:
            InfrastructureError: ``reason="circuit_open"``.
        """
        if not self.enabled() or self._breaker is None or not self._policy.strict:
            return
        if self._breaker.is_open():
            _SCAN_CIRCUIT_REJECTIONS.inc()
            logger.warning(
                json.dumps({"event": "scan_circuit_open", "max_failures": self._breaker.max_failures})
            )
            raise InfrastructureError(
                "Malware scanning is temporarily unavailable.",
                reason="circuit_open",
                retryable=True,
            )

    def scan(self, path: str, context: ScanContext | None = None) -> None:
        """Scan *path* with every configured scanner.

        Returns normally when all scanners report clean (or failed open).

        Raises:
            MalwareDetectedError: A scanner returned ``infected``.
            InfrastructureError: A scanner failed in strict mode, or the
                circuit breaker is open.
        """
        if not self.enabled():
            return
        context = context or ScanContext()
        self.assert_available()

        failed = False
        for scanner in self._scanners:
            try:
                verdict = self._scan_with_retries(scanner, path, context)
            except InfrastructureError as exc:
                failed = True
                verdict = self._handle_failure(scanner, exc, context)
            except UploadGuardError:
                raise
            except Exception as exc:
                failed = True
                wrapped = InfrastructureError("Scanner failed unexpectedly.", reason="unknown")
                wrapped.__cause__ = exc
                verdict = self._handle_failure(scanner, wrapped, context)

            if verdict is ScanVerdict.INFECTED:
                _SCAN_RESULTS.labels(scanner=scanner.key, result="infected").inc()
                self._log(logging.WARNING, "scan_blocked", context, scanner=scanner.key)
                raise MalwareDetectedError(scanner=scanner.key)

        if not failed and self._breaker is not None:
            self._breaker.reset()
        self._log(logging.INFO, "scan_passed", context, scanners=self.scanner_keys)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _scan_with_retries(self, scanner: Scanner, path: str, context: ScanContext) -> ScanVerdict:
        attempt = 0
        while True:
            attempt += 1
            try:
                verdict = scanner.scan(path, context)
            except InfrastructureError as exc:
                error_type, retryable = classify_failure(exc)
                if not retryable or attempt >= self._retry_attempts:
                    raise
                delay_ms = self._next_delay_ms()
                self._log(
                    logging.WARNING,
                    "scan_retry",
                    context,
                    scanner=scanner.key,
                    attempt=attempt,
                    max_attempts=self._retry_attempts,
                    error_type=error_type,
                    delay_ms=delay_ms,
                )
                self._sleep(delay_ms / 1000.0)
                continue
            if verdict is ScanVerdict.CLEAN:
                _SCAN_RESULTS.labels(scanner=scanner.key, result="clean").inc()
            return verdict

    def _next_delay_ms(self) -> int:
        jitter = random.randint(0, self._jitter_ms) if self._jitter_ms > 0 else 0
        return self._backoff_ms + jitter

    def _handle_failure(
        self, scanner: Scanner, error: InfrastructureError, context: ScanContext
    ) -> ScanVerdict:
        if self._breaker is not None and self._policy.strict:
            self._breaker.record_failure()
        error_type, retryable = classify_failure(error)
        _SCAN_RESULTS.labels(scanner=scanner.key, result="error").inc()
        self._log(
            logging.ERROR,
            "scanner_unavailable",
            context,
            scanner=scanner.key,
            reason=error.reason,
            error_type=error_type,
            retryable=retryable,
            fail_closed=self._policy.strict,
        )
        verdict = self._policy.resolve(error, scanner=scanner.key, correlation_id=context.correlation_id)
        _SCAN_RESULTS.labels(scanner=scanner.key, result="fail_open").inc()
        return verdict

    def _log(self, level: int, event: str, context: ScanContext, **fields: Any) -> None:
        logger.log(
            level,
            json.dumps(
                {
                    "event": event,
                    "correlation_id": context.correlation_id,
                    "profile": context.profile,
                    **fields,
                }
            ),
        )

"""Abstract scanner interface and the strict / non-strict failure policy.

All malware scanning backends implement :class:`Scanner`.  The
:class:`~uploadguard.core.scan_coordinator.ScanCoordinator` depends only on
this interface; the concrete engines live beside it:

* :class:`~uploadguard.engines.clamav.ClamAVScanner`: ``clamdscan`` /
  ``clamscan`` subprocess fed through stdin.
* :class:`~uploadguard.engines.yara.YaraScanner`: ``yara`` subprocess with an
  integrity-checked rule set.
* :class:`~uploadguard.engines.clamd_socket.ClamdSocketScanner`: INSTREAM to a
  running ``clamd`` daemon.

Usage::

    from uploadguard.engines.base import ScanContext, Scanner, ScanVerdict

    class FakeScanner(Scanner):
        key = "fake"

        def scan(self, path: str, context: ScanContext) -> ScanVerdict:
            return ScanVerdict.CLEAN
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from uploadguard.core.exceptions import InfrastructureError

logger = logging.getLogger(__name__)


class ScanVerdict(str, Enum):
    """Outcome of a completed scan."""

    CLEAN = "clean"
    INFECTED = "infected"


@dataclass(frozen=True)
class ScanContext:
    """Per-scan metadata passed to every scanner.

    Attributes:
        correlation_id: Ties scanner log lines to the upload.
        profile: Upload profile name, if any.
        attributes: Extra engine-specific hints (e.g. ``{"filename": ...}``).
    """

    correlation_id: str | None = None
    profile: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


class Scanner(ABC):
    """Abstract interface for malware scanning backends.

    Implementations must be safe to call from several worker threads at
    once; no per-call state may live on the instance.

    Attributes:
        key: Short identifier used in configuration, logs and metrics
            (``"clamav"``, ``"yara"``, ``"clamd"``).
    """

    key: str = "scanner"

    @abstractmethod
    def scan(self, path: str, context: ScanContext) -> ScanVerdict:
        """Scan the file at *path*.

        Args:
            path: Absolute path of the quarantined artifact.
            context: Correlation and profile metadata for logging.

        Returns:
            :attr:`ScanVerdict.CLEAN` or :attr:`ScanVerdict.INFECTED`.

        Raises:
            InfrastructureError: If the engine could not produce a verdict.
                ``reason`` is one of ``timeout``, ``unreachable``,
                ``process_failed``, ``input``, ``limits``, ``ruleset``.
            ConfigurationError: If the engine is misconfigured (binary not
                allowlisted, rules missing).
        """

    def ping(self) -> bool:
        """Return ``True`` if the engine looks usable.  Never raises."""
        return True


@dataclass(frozen=True)
class ScanPolicy:
    """Strict (fail-closed) or non-strict (fail-open) handling of scan errors.

    This is the only place that decides what an infrastructure failure
    means for the upload.
    """

    strict: bool = True

    def resolve(
        self,
        error: InfrastructureError,
        *,
        scanner: str,
        correlation_id: str | None = None,
    ) -> ScanVerdict:
        """Apply the policy to *error*.

        Returns:
            :attr:`ScanVerdict.CLEAN` in non-strict mode, after logging a
            warning.

        Raises:
            InfrastructureError: *error* itself in strict mode.
        """
        if self.strict:
            raise error
        logger.warning(
            json.dumps(
                {
                    "event": "scan_fail_open",
                    "scanner": scanner,
                    "reason": error.reason,
                    "correlation_id": correlation_id,
                }
            )
        )
        return ScanVerdict.CLEAN

"""Error taxonomy shared by the quarantine, scanning and validation layers.

Permanent errors (:class:`ValidationError`, :class:`MalwareDetectedError`,
:class:`IntegrityError`) must never be retried.  :class:`InfrastructureError`
is transient; its handling is governed by the strict / non-strict scan policy
and by the worker retry policy.

Messages are safe to surface to callers: they never embed filesystem paths.
"""
from __future__ import annotations


class UploadGuardError(Exception):
    """Base class for every error raised by UploadGuard."""


class ValidationError(UploadGuardError):
    """The upload violates the profile (size, MIME, dimensions, content)."""


class MalwareDetectedError(UploadGuardError):
    """A scanner or the content scan flagged the artifact as malicious.

    Attributes:
        scanner: Key of the scanner (or ``"content_scan"``) that flagged it.
        signature: Engine-specific signature name, when known.
    """

    def __init__(self, message: str = "Malicious content detected.", *, scanner: str = "", signature: str | None = None) -> None:
        super().__init__(message)
        self.scanner = scanner
        self.signature = signature


class IntegrityError(UploadGuardError):
    """The artifact's content hash changed while under our control.

    Always alert-worthy: it implies tampering or a concurrent writer.
    """

    def __init__(self, message: str = "Artifact integrity check failed.", *, expected: str | None = None, actual: str | None = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InfrastructureError(UploadGuardError):
    """An engine, process or storage dependency could not do its job.

    Attributes:
        reason: Machine-readable failure reason, e.g. ``"timeout"``.
        retryable: Whether retrying the same operation can succeed.
    """

    def __init__(self, message: str, *, reason: str = "unknown", retryable: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable


class ConfigurationError(InfrastructureError):
    """Deployment misconfiguration: binary not allowlisted, rules missing, etc."""

    def __init__(self, message: str, *, reason: str = "config") -> None:
        super().__init__(message, reason=reason, retryable=False)


#: Errors that end an upload permanently; workers must not retry these.
PERMANENT_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    MalwareDetectedError,
    IntegrityError,
)

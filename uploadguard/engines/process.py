"""Subprocess-backed scanner template.

:class:`ProcessScanner` implements everything that is common to command-line
engines (``clamdscan``, ``clamscan``, ``yara``):

1. the engine binary is canonicalized with ``realpath`` and must appear in the
   (canonicalized) allowlist and be executable;
2. the target must be a regular, non-symlink file inside the allowed base
   directory and no larger than ``max_file_bytes``;
3. configured arguments are filtered against the engine's allowlist and
   integer arguments are clamped to their ranges;
4. the artifact is fed through stdin, the command never sees its path;
5. the process runs under an absolute and an idle-output timeout and is killed
   when either expires;
6. exit code 0 means clean, 1 means infected, anything else is a failure.

Subclasses declare their allowlists and may override :meth:`ProcessScanner.command`
(e.g. to add a rules file) or :meth:`ProcessScanner.interpret`.

Usage::

    scanner = ClamAVScanner(allowed_base_path="/var/lib/uploadguard/quarantine")
    verdict = scanner.scan(token.path, ScanContext(correlation_id=cid))
"""
from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import re
import selectors
import stat
import subprocess
import time
from dataclasses import dataclass
from typing import BinaryIO, Iterator

from uploadguard.config import settings
from uploadguard.core import paths
from uploadguard.core.exceptions import ConfigurationError, InfrastructureError
from uploadguard.engines.base import ScanContext, Scanner, ScanVerdict

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_MAX_CAPTURE_BYTES = 64 * 1024
_PATH_RE = re.compile(r"(?:[A-Za-z]:)?[/\\](?:[^\s/\\]+[/\\])*[^\s/\\]*")


@dataclass(frozen=True)
class ProcessResult:
    """Exit status and (truncated) output of a finished scanner process."""

    returncode: int
    stdout: bytes
    stderr: bytes


def run_process(
    command: list[str],
    stdin: BinaryIO,
    *,
    timeout: float,
    idle_timeout: float,
) -> ProcessResult:
    """Run *command* with *stdin* as input under absolute and idle timeouts.

    The idle timer is reset whenever the process writes to stdout or stderr.
    Captured output is capped at 64 KiB per stream.

    Raises:
        InfrastructureError: ``reason="timeout"`` when either timeout
            expires (the process is killed first), ``reason="process_failed"``
            when the process cannot be started.
    """
    try:
        process = subprocess.Popen(
            command,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            close_fds=True,
            shell=False,
        )
    except OSError as exc:
        raise InfrastructureError(
            "Scanner process could not be started.",
            reason="process_failed",
            retryable=True,
        ) from exc

    buffers: dict[int, bytearray] = {}
    stdout_fd = process.stdout.fileno() if process.stdout else -1
    stderr_fd = process.stderr.fileno() if process.stderr else -1
    started = last_output = time.monotonic()
    with selectors.DefaultSelector() as selector:
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                buffers[stream.fileno()] = bytearray()
                selector.register(stream, selectors.EVENT_READ)
        try:
            while selector.get_map():
                now = time.monotonic()
                remaining = min(timeout - (now - started), idle_timeout - (now - last_output))
                if remaining <= 0:
                    raise _timeout(process)
                for key, _events in selector.select(timeout=remaining):
                    chunk = os.read(key.fd, _READ_SIZE)
                    if not chunk:
                        selector.unregister(key.fileobj)
                        continue
                    last_output = time.monotonic()
                    buffer = buffers[key.fd]
                    if len(buffer) < _MAX_CAPTURE_BYTES:
                        buffer.extend(chunk[: _MAX_CAPTURE_BYTES - len(buffer)])
            remaining = timeout - (time.monotonic() - started)
            try:
                returncode = process.wait(timeout=max(remaining, 0.01))
            except subprocess.TimeoutExpired:
                raise _timeout(process) from None
        finally:
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            if process.poll() is None:
                process.kill()
                process.wait()

    return ProcessResult(
        returncode=returncode,
        stdout=bytes(buffers.get(stdout_fd, b"")),
        stderr=bytes(buffers.get(stderr_fd, b"")),
    )


def _timeout(process: subprocess.Popen) -> InfrastructureError:
    process.kill()
    process.wait()
    return InfrastructureError("Scanner process timed out.", reason="timeout", retryable=True)


def validate_target(path: str, base_path: str, max_file_bytes: int) -> str:
    """Return the canonical scan target or raise.

    Raises:
        InfrastructureError: ``reason="input"`` for symlinks, missing or
            non-regular files and paths outside *base_path*;
            ``reason="limits"`` when the file is larger than *max_file_bytes*.
    """
    candidate = os.path.normpath(os.path.abspath(path))
    if not paths.is_within(candidate, base_path):
        raise InfrastructureError("Scan target is outside the allowed directory.", reason="input")
    try:
        info = os.lstat(candidate)
    except FileNotFoundError as exc:
        raise InfrastructureError("Scan target does not exist.", reason="input") from exc
    if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
        raise InfrastructureError("Scan target is not a regular file.", reason="input")
    if paths.has_symlink_component(candidate, base_path):
        raise InfrastructureError("Scan target crosses a symlink.", reason="input")
    if info.st_size > max_file_bytes:
        raise InfrastructureError("Scan target exceeds the scanner size limit.", reason="limits")
    return candidate


def output_digest(output: bytes) -> str | None:
    """SHA-1 of *output* with filesystem paths masked; ``None`` when empty.

    Raw engine output may echo paths and is never logged; the digest lets
    operators correlate identical failures.
    """
    text = output[:1000].decode("utf-8", errors="ignore")
    clean = _PATH_RE.sub("[PATH]", text).strip()
    return hashlib.sha1(clean.encode("utf-8")).hexdigest() if clean else None


class ProcessScanner(Scanner):
    """Template for scanners that run an external engine process.

    Class attributes:
        allowed_flags: Argument flags passed through verbatim.
        integer_arguments: ``{flag: (min, max)}``; ``max=None`` means
            ``max_file_bytes``.  Accepts ``--flag=N`` and ``--flag N``.

    Args:
        binary: Engine binary to execute.
        allowed_binaries: Allowlist of engine binaries.
        arguments: Configured engine arguments (sanitized before use).
        allowed_base_path: Directory scanned targets must live in.
            Defaults to ``settings.quarantine_root``.
        max_file_bytes: Largest target accepted.
        timeout_seconds: Absolute process timeout.
        idle_timeout_seconds: Idle-output process timeout.
    """

    allowed_flags: frozenset[str] = frozenset()
    integer_arguments: dict[str, tuple[int, int | None]] = {}

    def __init__(
        self,
        binary: str,
        allowed_binaries: list[str],
        arguments: list[str] | None = None,
        allowed_base_path: str | None = None,
        max_file_bytes: int | None = None,
        timeout_seconds: float | None = None,
        idle_timeout_seconds: float | None = None,
    ) -> None:
        self._binary = binary
        self._allowed_binaries = list(allowed_binaries)
        self._arguments = list(arguments or [])
        self._base_path = paths.canonical_root(allowed_base_path or settings.quarantine_root)
        self._max_file_bytes = max_file_bytes or settings.scan_max_file_bytes
        self._timeout = timeout_seconds or settings.scan_timeout_seconds
        self._idle_timeout = idle_timeout_seconds or settings.scan_idle_timeout_seconds

    # ------------------------------------------------------------------
    # Scanner interface
    # ------------------------------------------------------------------

    def scan(self, path: str, context: ScanContext) -> ScanVerdict:
        binary = self.resolve_binary()
        target = self.resolve_target(path)
        arguments = self.sanitize_arguments(self._arguments)

        with open(target, "rb") as handle, self.command(binary, arguments) as command:
            result = run_process(
                command,
                handle,
                timeout=self._timeout,
                idle_timeout=self._idle_timeout,
            )

        verdict = self.interpret(result)
        self._log_event(
            logging.WARNING if verdict is ScanVerdict.INFECTED else logging.INFO,
            "scan_result",
            context,
            result=verdict.value,
            exit_code=result.returncode,
            output_hash=output_digest(result.stdout),
        )
        return verdict

    def ping(self) -> bool:
        try:
            self.resolve_binary()
        except InfrastructureError:
            return False
        return True

    # ------------------------------------------------------------------
    # Template hooks
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def command(self, binary: str, arguments: list[str]) -> Iterator[list[str]]:
        """Yield the argv to execute; the trailing ``-`` selects stdin."""
        yield [binary, *arguments, "-"]

    def interpret(self, result: ProcessResult) -> ScanVerdict:
        """Map a finished process to a verdict."""
        if result.returncode == 0:
            return ScanVerdict.CLEAN
        if result.returncode == 1:
            return ScanVerdict.INFECTED
        logger.error(
            json.dumps(
                {
                    "event": "scan_process_failed",
                    "scanner": self.key,
                    "exit_code": result.returncode,
                    "output_hash": output_digest(result.stdout),
                    "stderr_hash": output_digest(result.stderr),
                }
            )
        )
        raise InfrastructureError(
            "Scanner process failed.", reason="process_failed", retryable=True
        )

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    def resolve_binary(self) -> str:
        """Return the canonical engine binary or raise :class:`ConfigurationError`."""
        if not self._binary:
            raise ConfigurationError("Scanner binary is not configured.", reason="binary")
        resolved = os.path.realpath(self._binary)
        allowed = {os.path.realpath(candidate) for candidate in self._allowed_binaries if candidate}
        if resolved not in allowed:
            raise ConfigurationError("Scanner binary is not allowlisted.", reason="binary")
        if not os.path.isfile(resolved) or not os.access(resolved, os.X_OK):
            raise ConfigurationError("Scanner binary is not executable.", reason="binary")
        return resolved

    def resolve_target(self, path: str) -> str:
        return validate_target(path, self._base_path, self._max_file_bytes)

    def sanitize_arguments(self, arguments: list[str]) -> list[str]:
        """Filter *arguments* against the allowlists; clamp integer values."""
        sanitized: list[str] = []
        index = 0
        while index < len(arguments):
            raw = str(arguments[index]).strip()
            index += 1
            if not raw:
                continue
            flag, _sep, inline_value = raw.partition("=")
            if flag in self.integer_arguments:
                value = inline_value
                if not _sep and index < len(arguments):
                    value = str(arguments[index]).strip()
                    index += 1
                clamped = self._clamp(flag, value)
                if clamped is not None:
                    sanitized.append(f"{flag}={clamped}")
                continue
            if raw in self.allowed_flags:
                if raw not in sanitized:
                    sanitized.append(raw)
                continue
            logger.warning(
                json.dumps({"event": "scan_argument_dropped", "scanner": self.key, "argument": flag})
            )
        return sanitized

    def _clamp(self, flag: str, value: str) -> int | None:
        low, high = self.integer_arguments[flag]
        upper = self._max_file_bytes if high is None else high
        try:
            number = int(value)
        except (TypeError, ValueError):
            logger.warning(
                json.dumps({"event": "scan_argument_dropped", "scanner": self.key, "argument": flag})
            )
            return None
        return max(low, min(number, upper))

    def _log_event(self, level: int, event: str, context: ScanContext, **fields: object) -> None:
        logger.log(
            level,
            json.dumps(
                {
                    "event": event,
                    "scanner": self.key,
                    "correlation_id": context.correlation_id,
                    "profile": context.profile,
                    **fields,
                }
            ),
        )

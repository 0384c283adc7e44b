"""Unit tests for uploadguard/engines/process.py and the ClamAV CLI scanner.

The engine binaries are replaced with small shell scripts written into
``tmp_path`` so exit codes, output and timing are fully controlled.
"""

from __future__ import annotations

import os
import stat

import pytest

from uploadguard.core.exceptions import ConfigurationError, InfrastructureError
from uploadguard.engines.base import ScanContext, ScanVerdict
from uploadguard.engines.clamav import ClamAVScanner
from uploadguard.engines.process import output_digest, validate_target


def _script(directory, name: str, body: str) -> str:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class TestValidateTarget:
    def test_accepts_regular_file(self, tmp_path):
        target = tmp_path / "a.bin"
        target.write_bytes(b"x")
        assert validate_target(str(target), str(tmp_path), 10) == str(target)

    def test_rejects_outside_base(self, tmp_path):
        base = tmp_path / "base"
        base.mkdir()
        target = tmp_path / "a.bin"
        target.write_bytes(b"x")
        with pytest.raises(InfrastructureError) as exc_info:
            validate_target(str(target), str(base), 10)
        assert exc_info.value.reason == "input"

    def test_rejects_symlink(self, tmp_path):
        real = tmp_path / "real.bin"
        real.write_bytes(b"x")
        link = tmp_path / "link.bin"
        os.symlink(str(real), str(link))
        with pytest.raises(InfrastructureError) as exc_info:
            validate_target(str(link), str(tmp_path), 10)
        assert exc_info.value.reason == "input"

    def test_rejects_missing_file(self, tmp_path):
        with pytest.raises(InfrastructureError) as exc_info:
            validate_target(str(tmp_path / "missing"), str(tmp_path), 10)
        assert exc_info.value.reason == "input"

    def test_rejects_oversized_file(self, tmp_path):
        target = tmp_path / "big.bin"
        target.write_bytes(b"x" * 11)
        with pytest.raises(InfrastructureError) as exc_info:
            validate_target(str(target), str(tmp_path), 10)
        assert exc_info.value.reason == "limits"


class TestOutputDigest:
    def test_paths_are_masked(self):
        assert output_digest(b"/tmp/a/x.bin: Eicar FOUND") == output_digest(b"/var/q/y.bin: Eicar FOUND")

    def test_empty_output(self):
        assert output_digest(b"   ") is None


class TestClamAVScanner:
    def setup_method(self):
        self.context = ScanContext(correlation_id="cid-1", profile="document")

    def _make_scanner(self, tmp_path, body: str, **kwargs) -> ClamAVScanner:
        binary = _script(tmp_path, "clamdscan", body)
        base = tmp_path / "quarantine"
        base.mkdir(exist_ok=True)
        options = {
            "binary": binary,
            "allowed_binaries": [binary],
            "arguments": ["--no-summary"],
            "allowed_base_path": str(base),
            "timeout_seconds": 5,
            "idle_timeout_seconds": 5,
        }
        options.update(kwargs)
        return ClamAVScanner(**options)

    def _target(self, tmp_path, content: bytes = b"payload") -> str:
        base = tmp_path / "quarantine"
        base.mkdir(exist_ok=True)
        target = base / "artifact.bin"
        target.write_bytes(content)
        return str(target)

    def test_exit_zero_is_clean(self, tmp_path):
        scanner = self._make_scanner(tmp_path, "cat > /dev/null\nexit 0")
        assert scanner.scan(self._target(tmp_path), self.context) is ScanVerdict.CLEAN

    def test_exit_one_is_infected(self, tmp_path):
        scanner = self._make_scanner(tmp_path, "cat > /dev/null\necho 'stream: Eicar FOUND'\nexit 1")
        assert scanner.scan(self._target(tmp_path), self.context) is ScanVerdict.INFECTED

    def test_other_exit_codes_are_failures(self, tmp_path):
        scanner = self._make_scanner(tmp_path, "echo 'cannot connect' >&2\nexit 2")
        with pytest.raises(InfrastructureError) as exc_info:
            scanner.scan(self._target(tmp_path), self.context)
        assert exc_info.value.reason == "process_failed"
        assert exc_info.value.retryable

    def test_content_arrives_on_stdin_and_path_is_not_passed(self, tmp_path):
        captured = tmp_path / "stdin.bin"
        argv = tmp_path / "argv.txt"
        scanner = self._make_scanner(
            tmp_path,
            f"cat > {captured}\nprintf '%s\\n' \"$@\" > {argv}\nexit 0",
        )
        target = self._target(tmp_path, b"exact bytes")
        scanner.scan(target, self.context)

        assert captured.read_bytes() == b"exact bytes"
        arguments = argv.read_text().splitlines()
        assert arguments[-1] == "-"
        assert target not in arguments

    def test_absolute_timeout_kills_process(self, tmp_path):
        scanner = self._make_scanner(
            tmp_path,
            "while true; do echo tick; sleep 0.1; done",
            timeout_seconds=0.5,
            idle_timeout_seconds=5,
        )
        with pytest.raises(InfrastructureError) as exc_info:
            scanner.scan(self._target(tmp_path), self.context)
        assert exc_info.value.reason == "timeout"

    def test_idle_timeout_kills_silent_process(self, tmp_path):
        scanner = self._make_scanner(
            tmp_path,
            "exec sleep 10",
            timeout_seconds=10,
            idle_timeout_seconds=0.3,
        )
        with pytest.raises(InfrastructureError) as exc_info:
            scanner.scan(self._target(tmp_path), self.context)
        assert exc_info.value.reason == "timeout"

    def test_binary_must_be_allowlisted(self, tmp_path):
        scanner = self._make_scanner(tmp_path, "exit 0", allowed_binaries=["/usr/bin/clamdscan-other"])
        with pytest.raises(ConfigurationError) as exc_info:
            scanner.scan(self._target(tmp_path), self.context)
        assert exc_info.value.reason == "binary"
        assert scanner.ping() is False

    def test_binary_must_be_executable(self, tmp_path):
        scanner = self._make_scanner(tmp_path, "exit 0")
        os.chmod(tmp_path / "clamdscan", 0o600)
        with pytest.raises(ConfigurationError):
            scanner.scan(self._target(tmp_path), self.context)

    def test_ping_with_valid_binary(self, tmp_path):
        assert self._make_scanner(tmp_path, "exit 0").ping() is True

    def test_target_outside_base_rejected_before_running(self, tmp_path):
        marker = tmp_path / "ran"
        scanner = self._make_scanner(tmp_path, f"touch {marker}\nexit 0")
        outside = tmp_path / "outside.bin"
        outside.write_bytes(b"x")
        with pytest.raises(InfrastructureError) as exc_info:
            scanner.scan(str(outside), self.context)
        assert exc_info.value.reason == "input"
        assert not marker.exists()


class TestArgumentSanitization:
    def _make_scanner(self, **kwargs) -> ClamAVScanner:
        return ClamAVScanner(
            binary="/usr/bin/clamdscan",
            allowed_binaries=["/usr/bin/clamdscan"],
            max_file_bytes=1000,
            **kwargs,
        )

    def test_allowed_flags_kept_once(self):
        scanner = self._make_scanner()
        assert scanner.sanitize_arguments(["--no-summary", "--no-summary", "--fdpass"]) == [
            "--no-summary",
            "--fdpass",
        ]

    def test_unknown_flags_dropped(self):
        scanner = self._make_scanner()
        assert scanner.sanitize_arguments(["--remove", "--move=/tmp", "--no-summary"]) == ["--no-summary"]

    def test_integers_are_clamped(self):
        scanner = self._make_scanner()
        sanitized = scanner.sanitize_arguments(
            ["--max-recursion=99", "--timeout", "0", "--max-filesize=999999"]
        )
        assert sanitized == ["--max-recursion=32", "--timeout=1", "--max-filesize=1000"]

    def test_non_numeric_integer_dropped(self):
        scanner = self._make_scanner()
        assert scanner.sanitize_arguments(["--timeout=soon"]) == []

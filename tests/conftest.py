"""Shared pytest configuration and fixtures for UploadGuard tests.

Sets environment variables before any uploadguard module is imported, so that
``uploadguard.config.get_settings()`` points every default root at a
throw-away directory and never needs a running Redis or scanner.
"""
from __future__ import annotations

import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="uploadguard-tests-")

# Set env vars before any uploadguard module is imported
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("QUARANTINE_ROOT", os.path.join(_TEST_ROOT, "quarantine"))
os.environ.setdefault("STORAGE_ROOT", os.path.join(_TEST_ROOT, "media"))
os.environ.setdefault("VALIDATION_WORK_DIR", os.path.join(_TEST_ROOT, "work"))
os.environ.setdefault("SCAN_ENABLED", "true")
os.environ.setdefault("ENVIRONMENT", "test")

import io  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from PIL import Image  # noqa: E402


@pytest.fixture
def redis_client():
    """A fresh in-memory Redis with string responses."""
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


def _image_bytes(
    width: int = 256,
    height: int = 256,
    fmt: str = "PNG",
) -> bytes:
    """Encode a noisy image so the compression ratio stays realistic."""
    noise = Image.effect_noise((width, height), 64).convert("RGB")
    buffer = io.BytesIO()
    noise.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    """Factory fixture: ``make_image(width, height, fmt)`` returns encoded bytes."""
    return _image_bytes


_MINIMAL_PDF = (
    b"%PDF-1.4\n"
    b"1 0 obj << /Type /Catalog /Pages 2 0 R >> endobj\n"
    b"2 0 obj << /Type /Pages /Kids [3 0 R] /Count 1 >> endobj\n"
    b"3 0 obj << /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >> endobj\n"
    b"xref\n0 4\n"
    b"0000000000 65535 f \n"
    b"0000000009 00000 n \n"
    b"0000000058 00000 n \n"
    b"0000000115 00000 n \n"
    b"trailer << /Size 4 /Root 1 0 R >>\n"
    b"startxref\n186\n%%EOF\n"
)


@pytest.fixture
def minimal_pdf() -> bytes:
    return _MINIMAL_PDF


# ---------------------------------------------------------------------------
# Orchestrator harness
# ---------------------------------------------------------------------------

from types import SimpleNamespace  # noqa: E402

from uploadguard.core.magic_bytes import MagicBytesValidator  # noqa: E402
from uploadguard.core.orchestrator import UploadOrchestrator  # noqa: E402
from uploadguard.core.scan_coordinator import ScanCoordinator  # noqa: E402
from uploadguard.core.validation import ValidationPipeline  # noqa: E402
from uploadguard.engines.base import ScanContext, ScanPolicy, Scanner, ScanVerdict  # noqa: E402
from uploadguard.services.quarantine import QuarantineStore  # noqa: E402
from uploadguard.services.storage import LocalArtifactStorage  # noqa: E402


class ScriptedScanner(Scanner):
    """Returns (or raises) scripted outcomes in order, repeating the last one."""

    key = "clamav"

    def __init__(self, outcomes=(ScanVerdict.CLEAN,)) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def scan(self, path: str, context: ScanContext) -> ScanVerdict:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def header_sniffer(path: str) -> str | None:
    """Stand-in for libmagic that recognises the formats the tests produce."""
    with open(path, "rb") as fh:
        head = fh.read(16)
    if head.startswith(b"\x89PNG"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"%PDF"):
        return "application/pdf"
    return "text/plain" if head else None


@pytest.fixture
def orchestrator_factory(tmp_path):
    """Build an :class:`UploadOrchestrator` over real stores in ``tmp_path``.

    Returns a namespace with ``orchestrator``, ``scanner``, ``quarantine``
    and ``storage``.
    """

    def _build(outcomes=(ScanVerdict.CLEAN,), *, dispatcher=None, debouncer=None, defer=False):
        storage = LocalArtifactStorage(root=str(tmp_path / "media"))
        quarantine = QuarantineStore(root=str(tmp_path / "quarantine"), promoted_root=storage.root)
        scanner = ScriptedScanner(outcomes)
        coordinator = ScanCoordinator(
            [scanner],
            policy=ScanPolicy(strict=True),
            enabled=True,
            retry_attempts=1,
            sleep=lambda seconds: None,
        )
        pipeline = ValidationPipeline(
            magic_validator=MagicBytesValidator(sniffer=header_sniffer),
            work_dir=str(tmp_path / "work"),
        )
        orchestrator = UploadOrchestrator(
            quarantine,
            coordinator,
            pipeline,
            storage,
            dispatcher=dispatcher,
            debouncer=debouncer,
            defer_processing=defer,
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            scanner=scanner,
            quarantine=quarantine,
            storage=storage,
            root=tmp_path,
        )

    return _build

"""Unit tests for uploadguard/config.py."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from uploadguard.config import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SCAN_ENABLED", raising=False)
        config = Settings(_env_file=None)
        assert config.quarantine_pending_ttl_hours == 24
        assert config.quarantine_failed_ttl_hours == 4
        assert config.debounce_lock_ttl_seconds == 60
        assert config.debounce_latest_ttl_seconds == 300
        assert config.readiness_max_retries == 50
        assert config.readiness_max_wait_seconds == 60

    def test_scanner_names_normalized(self):
        config = Settings(_env_file=None, scan_scanners=[" ClamAV ", "yara", ""])
        assert config.scan_scanners == ["clamav", "yara"]

    def test_unknown_scanner_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, scan_scanners=["avast"])

    def test_redis_url_scheme_checked(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, redis_url="http://localhost:6379")

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("QUARANTINE_MAX_BYTES", "1024")
        assert Settings(_env_file=None).quarantine_max_bytes == 1024

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

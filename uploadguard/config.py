"""Application configuration via Pydantic Settings.

All configuration is driven by environment variables. Every field carries a
safe default so workers, the API and the test-suite can start without a
``.env`` file; deployments override what they need.

Usage::

    from uploadguard.config import get_settings

    settings = get_settings()
    print(settings.quarantine_root)

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, pass explicit constructor arguments to the component under
test, or set the relevant environment variables before calling
``get_settings()`` for the first time.
"""
from __future__ import annotations

import functools

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_KNOWN_SCANNERS = frozenset({"clamav", "clamd", "yara"})


class Settings(BaseSettings):
    """UploadGuard application settings.

    Environment variables are read case-insensitively. A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Redis (debounce locks, scan circuit breaker, Celery broker)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis DSN, e.g. redis://localhost:6379/0",
    )

    # Quarantine store
    quarantine_root: str = Field(
        default="/var/lib/uploadguard/quarantine",
        description="Root directory for in-flight artifacts and their sidecars",
    )
    quarantine_max_bytes: int = Field(
        default=25 * 1024 * 1024,
        ge=1,
        description="Largest artifact accepted into quarantine",
    )
    quarantine_pending_ttl_hours: int = Field(
        default=24,
        ge=1,
        description="TTL for pending/scanning/clean artifacts before pruning",
    )
    quarantine_failed_ttl_hours: int = Field(
        default=4,
        ge=1,
        description="TTL for failed artifacts before pruning",
    )
    quarantine_stream_chunk_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Chunk size used when copying streams into quarantine",
    )
    quarantine_stream_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Wall-clock budget for copying one upload stream",
    )
    quarantine_prune_interval_seconds: int = Field(
        default=3600,
        ge=60,
        description="Beat interval for the TTL prune and sidecar cleanup tasks",
    )

    # Durable storage
    storage_root: str = Field(
        default="/var/lib/uploadguard/media",
        description="Root directory of promoted (durable) artifacts",
    )

    # Scanning
    scan_enabled: bool = Field(default=True, description="Master switch for AV scanning")
    scan_strict: bool = Field(
        default=True,
        description="Fail closed on scanner infrastructure errors (False = fail open)",
    )
    scan_scanners: list[str] = Field(
        default_factory=lambda: ["clamav"],
        description="Ordered scanner keys: clamav, clamd, yara",
    )
    scan_max_file_bytes: int = Field(
        default=25 * 1024 * 1024,
        ge=1,
        description="Largest artifact handed to a scanner",
    )
    scan_timeout_seconds: float = Field(default=5.0, gt=0, description="Absolute scanner timeout")
    scan_idle_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Abort a scanner that produces no output for this long",
    )
    scan_retry_attempts: int = Field(default=1, ge=1, le=10)
    scan_retry_backoff_ms: int = Field(default=200, ge=0)
    scan_retry_jitter_ms: int = Field(default=100, ge=0)
    scan_circuit_max_failures: int = Field(default=5, ge=1)
    scan_circuit_decay_seconds: int = Field(default=900, ge=1)
    scan_circuit_key: str = Field(default="uploadguard:scan:circuit")

    clamav_binary: str = Field(default="/usr/bin/clamdscan")
    clamav_allowed_binaries: list[str] = Field(
        default_factory=lambda: ["/usr/bin/clamdscan", "/usr/bin/clamscan"],
    )
    clamav_arguments: list[str] = Field(default_factory=lambda: ["--no-summary"])
    clamd_host: str = Field(default="clamav", description="clamd daemon host for INSTREAM scans")
    clamd_port: int = Field(default=3310, ge=1, le=65535)
    clamd_socket_path: str | None = Field(
        default=None, description="Unix socket of a local clamd; takes precedence over host and port"
    )

    yara_binary: str = Field(default="/usr/bin/yara")
    yara_allowed_binaries: list[str] = Field(default_factory=lambda: ["/usr/bin/yara"])
    yara_arguments: list[str] = Field(default_factory=lambda: ["--fast-scan"])
    yara_rules_path: str = Field(default="/etc/uploadguard/yara/rules.yar")
    yara_rules_base: str = Field(default="/etc/uploadguard/yara")
    yara_rules_hash_file: str = Field(default="/etc/uploadguard/yara/rules.sha256")
    yara_expected_hash: str = Field(default="", description="Fallback expected rules hash")

    # Validation pipeline
    validation_chunk_bytes: int = Field(default=128 * 1024, ge=4096)
    validation_overlap_bytes: int = Field(default=512, ge=64)
    validation_bomb_ratio_threshold: float = Field(
        default=100.0,
        gt=0,
        description="Reject images whose estimated decoded size / file size exceeds this",
    )
    validation_work_dir: str = Field(
        default="",
        description="Directory for snapshots and normalized outputs (empty = system temp)",
    )

    # Orchestration
    upload_defer_processing: bool = Field(
        default=False,
        description="Queue uploads for the background worker instead of processing inline",
    )
    debounce_lock_ttl_seconds: int = Field(default=60, ge=1)
    debounce_latest_ttl_seconds: int = Field(default=300, ge=1)
    readiness_max_retries: int = Field(default=50, ge=1)
    readiness_max_wait_seconds: int = Field(default=60, ge=1)
    readiness_check_interval_seconds: int = Field(default=5, ge=1)

    # Media serving
    media_allowed_paths: list[str] = Field(
        default_factory=lambda: [
            "tenants/{tenantId}/users/{userId}/avatars/",
            "tenants/{tenantId}/users/{userId}/avatars/*/conversions/",
            "tenants/{tenantId}/users/{userId}/documents/",
        ],
    )
    media_max_decode_passes: int = Field(default=3, ge=1, le=5)
    media_max_age_seconds: int = Field(default=86400, ge=0)

    # Environment
    environment: str = Field(
        default="production",
        description="Deployment environment: development, staging, or production",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode (never set True in production)",
    )

    @field_validator("scan_scanners")
    @classmethod
    def validate_scanners(cls, v: list[str]) -> list[str]:
        normalized = [s.strip().lower() for s in v if s.strip()]
        unknown = set(normalized) - _KNOWN_SCANNERS
        if unknown:
            raise ValueError(f"unknown scanners: {sorted(unknown)}")
        return normalized

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("redis_url must be a redis://, rediss:// or unix:// DSN")
        return v


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()


settings = get_settings()

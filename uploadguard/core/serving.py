"""Path guard for serving stored media to authenticated callers.

:class:`MediaPathGuard` decides whether a requested media path may be served
for a tenant.  The requested path is percent-decoded at most
``max_decode_passes`` times; encoded separators, NUL bytes, ``..`` segments
and paths that are still encoded after the last pass are rejected outright.
The normalized path must start with ``tenants/{tenant}/`` and match one of
the allowlist patterns, where:

* ``{tenantId}`` is the caller's tenant (matched literally);
* ``{userId}`` is a run of digits;
* ``*`` is exactly one path segment.

Denials are logged with a reason and never explain themselves to the caller;
the HTTP layer answers 404.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from urllib.parse import unquote

from uploadguard.config import settings
from uploadguard.core import paths

logger = logging.getLogger(__name__)

_ENCODED_SEPARATOR_RE = re.compile(r"%(?:2f|5c)", re.IGNORECASE)
_PERCENT_ESCAPE_RE = re.compile(r"%[0-9a-fA-F]{2}")


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    path: str | None = None
    reason: str | None = None


class MediaPathGuard:
    """Tenant-scoped allowlist check for media paths.

    Args:
        allowed_patterns: Allowlist patterns.  Defaults to
            ``settings.media_allowed_paths``.
        max_decode_passes: Percent-decoding passes before giving up.
    """

    def __init__(
        self,
        allowed_patterns: list[str] | None = None,
        max_decode_passes: int | None = None,
    ) -> None:
        self._patterns = list(
            allowed_patterns if allowed_patterns is not None else settings.media_allowed_paths
        )
        self._max_passes = max_decode_passes or settings.media_max_decode_passes

    def check(self, raw_path: str, tenant_id: str | None) -> GuardDecision:
        if not tenant_id:
            return self._deny("tenant_missing", raw_path, tenant_id)

        decoded = self._decode(raw_path)
        if decoded is None:
            return self._deny("invalid_encoding", raw_path, tenant_id)

        normalized = paths.normalize_separators(decoded)
        if paths.has_traversal(normalized):
            return self._deny("path_traversal", raw_path, tenant_id)
        relative = "/".join(paths.split_segments(normalized))

        if not relative.startswith(f"tenants/{tenant_id}/"):
            return self._deny("wrong_tenant_prefix", raw_path, tenant_id)
        if not any(regex.match(relative) for regex in self._compiled(tenant_id)):
            return self._deny("not_in_allowlist", raw_path, tenant_id)
        return GuardDecision(allowed=True, path=relative)

    def _decode(self, raw_path: str) -> str | None:
        current = raw_path
        for _pass in range(self._max_passes):
            if "\x00" in current or _ENCODED_SEPARATOR_RE.search(current):
                return None
            decoded = unquote(current)
            if decoded == current:
                return current
            current = decoded
        if "\x00" in current or _PERCENT_ESCAPE_RE.search(current):
            return None
        return current

    def _compiled(self, tenant_id: str) -> list[re.Pattern[str]]:
        compiled = []
        for pattern in self._patterns:
            prefix = pattern.strip("/") + "/"
            body = re.escape(prefix)
            body = body.replace(re.escape("{tenantId}"), re.escape(tenant_id))
            body = body.replace(re.escape("{userId}"), "[0-9]+")
            body = body.replace(re.escape("*"), "[^/]+")
            compiled.append(re.compile(f"^{body}.*$"))
        return compiled

    @staticmethod
    def _deny(reason: str, raw_path: str, tenant_id: str | None) -> GuardDecision:
        logger.warning(
            json.dumps(
                {
                    "event": "media_access_denied",
                    "reason": reason,
                    "tenant_id": tenant_id,
                    "path_length": len(raw_path or ""),
                }
            )
        )
        return GuardDecision(allowed=False, reason=reason)

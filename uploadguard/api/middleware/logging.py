"""Structured JSON request logging middleware for the UploadGuard API.

:class:`RequestLoggingMiddleware` records every HTTP request as one JSON log
line at ``INFO`` level with a correlation id, the caller's tenant (from the
``X-Tenant-ID`` header set by the upstream gateway), method, path, status
code and duration.

The correlation id comes from ``X-Correlation-ID`` (or ``X-Request-ID``) when
the caller sends a well-formed one, and is otherwise generated.  It is stored
on ``request.state.correlation_id`` so the upload route can hand it to the
orchestrator, and echoed in the ``X-Correlation-ID`` response header.

Log entry format::

    {
      "event": "http_request",
      "correlation_id": "550e8400-e29b-41d4-a716-446655440000",
      "tenant_id": "acme",
      "method": "POST",
      "path": "/v1/uploads/avatar",
      "status_code": 201,
      "duration_ms": 42.7
    }
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_CORRELATION_HEADERS: tuple[str, ...] = ("x-correlation-id", "x-request-id")

# Caller-supplied ids end up in log lines and quarantine records.
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Structured JSON per-request logging middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = self._extract_correlation_id(request)
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        log_entry = {
            "event": "http_request",
            "correlation_id": correlation_id,
            "tenant_id": request.headers.get("x-tenant-id") or None,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        logger.info(json.dumps(log_entry))

        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @staticmethod
    def _extract_correlation_id(request: Request) -> str:
        """Return the first well-formed correlation header, else a fresh UUID v4."""
        for header in _CORRELATION_HEADERS:
            value = request.headers.get(header, "").strip()
            if value and _CORRELATION_ID_RE.match(value):
                return value
        return str(uuid.uuid4())

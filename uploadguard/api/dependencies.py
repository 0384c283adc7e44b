"""Shared FastAPI dependencies."""

from __future__ import annotations

import redis
from starlette.requests import Request

from uploadguard.config import settings
from uploadguard.core.orchestrator import UploadOrchestrator


def get_orchestrator(request: Request) -> UploadOrchestrator:
    """Return the application's orchestrator, building it on first use."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        from uploadguard.workers.upload_worker import dispatch_upload

        client = getattr(request.app.state, "redis", None)
        if client is None:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            request.app.state.redis = client
        orchestrator = UploadOrchestrator.from_settings(client=client, dispatcher=dispatch_upload)
        request.app.state.orchestrator = orchestrator
    return orchestrator


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)

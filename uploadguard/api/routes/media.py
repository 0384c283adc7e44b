"""API route for serving promoted media.

Endpoints
---------
GET /media/{path}
    Serve a stored artifact to the tenant named by ``X-Tenant-ID``.  The path
    must pass :class:`~uploadguard.core.serving.MediaPathGuard`; any denial,
    and any missing file, is answered with the same ``404``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import FileResponse

from uploadguard.api.dependencies import get_orchestrator
from uploadguard.config import settings
from uploadguard.core.orchestrator import UploadOrchestrator
from uploadguard.core.serving import MediaPathGuard

router = APIRouter(prefix="/media", tags=["media"])

_guard = MediaPathGuard()


@router.get("/{path:path}")
async def serve_media(
    path: str,
    orchestrator: Annotated[UploadOrchestrator, Depends(get_orchestrator)],
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
) -> FileResponse:
    decision = _guard.check(path, x_tenant_id)
    if not decision.allowed or decision.path is None:
        raise HTTPException(status_code=404, detail="Not found.")

    storage = orchestrator.storage
    absolute = storage.absolute(decision.path)
    if absolute is None or not storage.exists(decision.path):
        raise HTTPException(status_code=404, detail="Not found.")

    return FileResponse(
        absolute,
        headers={
            "Cache-Control": f"private, max-age={settings.media_max_age_seconds}",
            "X-Content-Type-Options": "nosniff",
        },
    )

"""API route for submitting uploads.

Endpoints
---------
POST /v1/uploads/{profile}
    Multipart upload (field ``file``) for the named upload profile.  The
    caller's tenant and user come from the ``X-Tenant-ID`` and ``X-User-ID``
    headers set by the upstream gateway.  ``?defer=true`` queues the upload
    for the background worker.

    * ``201`` with the promoted artifact when processed inline;
    * ``202`` when queued;
    * ``404`` for an unknown profile;
    * ``400`` for malformed tenant/user headers;
    * ``422`` when the upload is rejected (validation, malware, integrity),
      always with the same generic message;
    * ``503`` when scanning or storage is unavailable.

Processing is synchronous file and subprocess work, so it runs in a worker
thread via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Annotated

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from uploadguard.api.dependencies import get_correlation_id, get_orchestrator
from uploadguard.core.exceptions import PERMANENT_ERRORS, UploadGuardError
from uploadguard.core.orchestrator import Owner, UploadAccepted, UploadOrchestrator
from uploadguard.core.profiles import get_profile
from uploadguard.schemas.upload import (
    ErrorResponse,
    UploadAcceptedResponse,
    UploadResultResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/uploads", tags=["uploads"])

_TENANT_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_USER_RE = re.compile(r"^[0-9]{1,20}$")

_REJECTED_MESSAGE = "The uploaded file was rejected."
_UNAVAILABLE_MESSAGE = "Upload processing is temporarily unavailable."


def _error(status_code: int, detail: str, correlation_id: str | None) -> JSONResponse:
    body = ErrorResponse(detail=detail, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post(
    "/{profile}",
    status_code=201,
    response_model=UploadResultResponse,
    responses={
        202: {"model": UploadAcceptedResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def create_upload(
    profile: str,
    file: Annotated[UploadFile, File(...)],
    x_tenant_id: Annotated[str, Header(alias="X-Tenant-ID")],
    x_user_id: Annotated[str, Header(alias="X-User-ID")],
    orchestrator: Annotated[UploadOrchestrator, Depends(get_orchestrator)],
    correlation_id: Annotated[str | None, Depends(get_correlation_id)],
    defer: Annotated[bool | None, Query()] = None,
):
    """Quarantine, scan, validate and publish one upload."""
    try:
        upload_profile = get_profile(profile)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown upload profile.") from None

    if not _TENANT_RE.match(x_tenant_id) or not _USER_RE.match(x_user_id):
        raise HTTPException(status_code=400, detail="Invalid tenant or user.")

    try:
        outcome = await asyncio.to_thread(
            orchestrator.upload,
            file.file,
            upload_profile,
            Owner(tenant_id=x_tenant_id, user_id=x_user_id),
            correlation_id,
            file.filename,
            defer,
        )
    except PERMANENT_ERRORS as exc:
        logger.info(
            json.dumps(
                {
                    "event": "upload_request_rejected",
                    "correlation_id": correlation_id,
                    "profile": profile,
                    "reason": type(exc).__name__,
                }
            )
        )
        return _error(422, _REJECTED_MESSAGE, correlation_id)
    except UploadGuardError as exc:
        logger.warning(
            json.dumps(
                {
                    "event": "upload_request_unavailable",
                    "correlation_id": correlation_id,
                    "profile": profile,
                    "reason": type(exc).__name__,
                }
            )
        )
        return _error(503, _UNAVAILABLE_MESSAGE, correlation_id)
    finally:
        await file.close()

    if isinstance(outcome, UploadAccepted):
        body = UploadAcceptedResponse.from_accepted(outcome)
        return JSONResponse(status_code=202, content=body.model_dump())
    return UploadResultResponse.from_result(outcome)

"""Pydantic schemas for the upload API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from uploadguard.core.orchestrator import UploadAccepted, UploadResult


class UploadResultResponse(BaseModel):
    """A promoted upload (``201 Created``)."""

    model_config = {"from_attributes": True}

    artifact_id: str
    path: str = Field(..., description="Storage-relative path, servable under /media/")
    profile: str
    mime_type: str
    size: int = Field(ge=0)
    sha256: str
    width: int | None = None
    height: int | None = None
    normalized: bool
    correlation_id: str
    quarantine_id: str

    @classmethod
    def from_result(cls, result: UploadResult) -> "UploadResultResponse":
        return cls.model_validate(result)


class UploadAcceptedResponse(BaseModel):
    """An upload queued for background processing (``202 Accepted``)."""

    model_config = {"from_attributes": True}

    status: Literal["queued"] = "queued"
    correlation_id: str
    quarantine_id: str

    @classmethod
    def from_accepted(cls, accepted: UploadAccepted) -> "UploadAcceptedResponse":
        return cls.model_validate(accepted)


class ErrorResponse(BaseModel):
    detail: str
    correlation_id: str | None = None

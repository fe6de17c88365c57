"""Billable writing tools: AI detection, plagiarism, humanizer, summarizer."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, get_optional_auth_context, get_principal
from routers.rate_limit import rate_limit
from services.credit_types import CreditErrorCode
from services.credits import Principal
from services.tools import (
    INVALID_INPUT,
    PROVIDER_ERROR,
    ToolOutcome,
    detect_ai,
    detect_plagiarism,
    humanize_text,
    summarize_text,
)

router = APIRouter()


_ERROR_STATUS = {
    CreditErrorCode.INSUFFICIENT_CREDITS.value: 402,
    CreditErrorCode.PLAN_GATE_BLOCKED.value: 403,
    INVALID_INPUT: 422,
    PROVIDER_ERROR: 502,
}


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def _url(value: Optional[HttpUrl]) -> Optional[str]:
    return str(value) if value else None


class SourceRequest(BaseModel):
    text: Optional[str] = Field(default=None, max_length=200000)
    file_url: Optional[HttpUrl] = None
    file_name: Optional[str] = Field(default=None, max_length=255)
    website_url: Optional[HttpUrl] = None

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)

    @model_validator(mode="after")
    def require_input(self):
        if not (self.text or self.file_url or self.website_url):
            raise ValueError("Provide text, a file, or a URL to analyze.")
        return self


class DetectRequest(SourceRequest):
    language: str = "auto"


class PlagiarismRequest(SourceRequest):
    excluded_sources: Optional[List[str]] = None
    language: Optional[str] = None
    country: Optional[str] = None


class HumanizeRequest(BaseModel):
    text: Optional[str] = Field(default=None, max_length=200000)
    file_url: Optional[HttpUrl] = None
    file_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)

    @model_validator(mode="after")
    def require_input(self):
        if not (self.text or self.file_url):
            raise ValueError("Provide text or a file to humanize.")
        return self


class SummarizeRequest(SourceRequest):
    length_percent: int = Field(default=50, ge=0, le=100)


def _respond(outcome: ToolOutcome) -> Dict[str, Any]:
    if outcome.success:
        return outcome.to_dict()
    status_code = _ERROR_STATUS.get(outcome.error_code or "", 400)
    raise HTTPException(
        status_code=status_code,
        detail={"error": outcome.error, "error_code": outcome.error_code},
    )


@router.post("/detect")
async def detect_ai_content(
    request: DetectRequest,
    _rate_limit: None = Depends(rate_limit("tools_detect", limit=60, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    outcome = await detect_ai(
        principal,
        db,
        text=request.text,
        file_url=_url(request.file_url),
        file_name=request.file_name,
        website_url=_url(request.website_url),
        language=request.language,
    )
    return _respond(outcome)


@router.post("/plagiarism")
async def check_plagiarism(
    request: PlagiarismRequest,
    _rate_limit: None = Depends(rate_limit("tools_plagiarism", limit=30, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    outcome = await detect_plagiarism(
        principal,
        db,
        text=request.text,
        file_url=_url(request.file_url),
        file_name=request.file_name,
        website_url=_url(request.website_url),
        excluded_sources=request.excluded_sources,
        language=request.language,
        country=request.country,
    )
    return _respond(outcome)


@router.post("/humanize")
async def humanize(
    request: HumanizeRequest,
    _rate_limit: None = Depends(rate_limit("tools_humanize", limit=60, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    outcome = await humanize_text(
        principal,
        db,
        text=request.text,
        file_url=_url(request.file_url),
        file_name=request.file_name,
    )
    return _respond(outcome)


@router.post("/summarize")
async def summarize(
    request: SummarizeRequest,
    _rate_limit: None = Depends(rate_limit("tools_summarize", limit=60, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    outcome = await summarize_text(
        principal,
        db,
        text=request.text,
        file_url=_url(request.file_url),
        file_name=request.file_name,
        website_url=_url(request.website_url),
        length_percent=request.length_percent,
    )
    return _respond(outcome)

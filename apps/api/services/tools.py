"""Billable tool handlers: gate, pre-check, provider call, deduction, usage record."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import uuid

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.detection import Detection
from services.credit_types import CreditCheckResult, PlanContext
from services.credits import Principal, check_gate, deduct, load_plan_context
from services.pricing import (
    count_words,
    detection_cost,
    estimate_words_from_chars,
    humanize_cost,
    plagiarism_charge,
    plagiarism_estimate,
    summarize_cost,
)
from services.providers import ProviderError
from services.providers import openrouter, winston

logger = logging.getLogger(__name__)


PROVIDER_ERROR = "PROVIDER_ERROR"
INVALID_INPUT = "INVALID_INPUT"
PREVIEW_CHARS = 200


class InputFetchError(ValueError):
    """Raised when a user-supplied file can't be used as text input."""


@dataclass
class ToolOutcome:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    credits_used: int = 0
    credits_left: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failed(cls, message: str, error_code: Optional[str] = None) -> "ToolOutcome":
        return cls(success=False, error=message, error_code=error_code)

    @classmethod
    def from_check(cls, check: CreditCheckResult) -> "ToolOutcome":
        code = check.error_code.value if check.error_code else None
        return cls(success=False, error=check.message, error_code=code)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload.update(
                {
                    "result": self.data,
                    "credits_used": self.credits_used,
                    "credits_left": self.credits_left,
                }
            )
        else:
            payload.update({"error": self.error, "error_code": self.error_code})
        return payload


def resolve_source_type(text: Optional[str], file_url: Optional[str], website_url: Optional[str]) -> str:
    if website_url:
        return "url"
    if file_url:
        return "file"
    return "text"


def _preview(
    source_type: str,
    text: Optional[str],
    file_name: Optional[str],
    file_url: Optional[str],
    website_url: Optional[str],
) -> Optional[str]:
    if source_type == "text":
        return (text or "")[:PREVIEW_CHARS] or None
    if source_type == "file":
        return file_name or file_url
    return website_url


def clean_excluded_sources(sources: Optional[List[str]]) -> List[str]:
    cleaned = []
    for source in sources or []:
        value = str(source or "").strip()
        if not value:
            continue
        candidate = value if value.startswith("http") else f"https://{value}"
        parsed = urlparse(candidate)
        if parsed.scheme in {"http", "https"} and "." in (parsed.hostname or ""):
            cleaned.append(value)
    return cleaned


async def fetch_file_text(file_url: str) -> str:
    """Download a user file; only text and JSON content is accepted."""
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS, follow_redirects=True) as client:
            response = await client.get(file_url)
    except httpx.HTTPError as exc:
        raise InputFetchError("We couldn't fetch the file.") from exc

    if response.status_code >= 400:
        raise InputFetchError("We couldn't fetch the file.")
    content_type = response.headers.get("content-type", "")
    if not content_type.startswith("text/") and "json" not in content_type:
        raise InputFetchError("Only text files are supported.")
    return response.text


def _insufficient_estimate(context: PlanContext, estimate: int) -> Optional[ToolOutcome]:
    if context.credits < estimate:
        return ToolOutcome.from_check(CreditCheckResult.insufficient())
    return None


async def _charge(
    principal: Principal,
    context: PlanContext,
    amount: int,
    db: AsyncSession,
    *,
    tool: str,
) -> CreditCheckResult:
    deduction = await deduct(principal, amount, db, plan=context.plan, reason=f"{tool} ({context.plan.id})")
    if not deduction.ok:
        # The provider call already happened and is not refunded upstream.
        logger.warning(
            "tool_charge_failed tool=%s user=%s guest=%s amount=%s",
            tool,
            principal.user_id,
            principal.is_guest,
            amount,
        )
    return deduction


async def _record_usage(
    principal: Principal,
    context: PlanContext,
    db: AsyncSession,
    **fields: Any,
) -> None:
    if not principal.user_id or context.is_guest or not context.plan.save_history:
        return
    try:
        db.add(Detection(id=str(uuid.uuid4()), user_id=principal.user_id, **fields))
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("usage_record_failed user=%s tool=%s", principal.user_id, fields.get("input_type"))


def _credits_left(deduction: CreditCheckResult, context: PlanContext) -> int:
    if deduction.credits_left is not None:
        return deduction.credits_left
    return context.credits


async def detect_ai(
    principal: Principal,
    db: AsyncSession,
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    website_url: Optional[str] = None,
    language: str = "auto",
) -> ToolOutcome:
    context = await load_plan_context(principal, db)
    source_type = resolve_source_type(text, file_url, website_url)
    gate = check_gate(context.plan, source_type, len(text or ""))
    if not gate.ok:
        return ToolOutcome.from_check(gate)

    estimate = 0
    if source_type == "text":
        estimate = detection_cost(count_words(text), context.plan)
    # Every charge is at least one credit.
    blocked = _insufficient_estimate(context, max(estimate, 1))
    if blocked:
        return blocked

    try:
        result = await winston.detect_ai_content(
            text=text if source_type == "text" else None,
            file_url=file_url,
            website_url=website_url,
            language=language,
        )
    except ProviderError as exc:
        logger.warning("detect_ai_failed source=%s: %s", source_type, exc)
        return ToolOutcome.failed("We couldn't analyze the text. Please try again.", PROVIDER_ERROR)

    if source_type == "text":
        charge = estimate
    else:
        fallback = detection_cost(estimate_words_from_chars(result.length), context.plan)
        charge = max(1, result.credits_used or fallback)

    deduction = await _charge(principal, context, charge, db, tool="detect")
    if not deduction.ok:
        return ToolOutcome.from_check(deduction)

    sentences = [
        {"text": sentence.text, "score": sentence.score, "length": sentence.length}
        for sentence in result.sentences
    ]
    await _record_usage(
        principal,
        context,
        db,
        source_type=source_type,
        input_type="detect",
        input_preview=_preview(source_type, text, file_name, file_url, website_url),
        raw_score=result.score,
        ai_score=max(0.0, 100.0 - result.score),
        length=result.length or (len(text) if text else None),
        sentence_count=len(sentences),
        sentences=sentences,
        attack_detected=result.attack_detected,
        readability_score=result.readability_score,
        credits_used=charge,
        credits_remaining=result.credits_remaining,
        version=result.version,
        language=result.language,
    )

    return ToolOutcome(
        success=True,
        data={
            "score": result.score,
            "ai_score": max(0.0, 100.0 - result.score),
            "sentences": sentences,
            "length": result.length,
            "readability_score": result.readability_score,
            "attack_detected": result.attack_detected,
            "version": result.version,
            "language": result.language,
        },
        credits_used=charge,
        credits_left=_credits_left(deduction, context),
    )


async def detect_plagiarism(
    principal: Principal,
    db: AsyncSession,
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    website_url: Optional[str] = None,
    excluded_sources: Optional[List[str]] = None,
    language: Optional[str] = None,
    country: Optional[str] = None,
) -> ToolOutcome:
    context = await load_plan_context(principal, db)
    source_type = resolve_source_type(text, file_url, website_url)
    gate = check_gate(context.plan, source_type, len(text or ""))
    if not gate.ok:
        return ToolOutcome.from_check(gate)

    estimate = 0
    if source_type == "text":
        estimate = plagiarism_estimate(count_words(text))
    # Every charge is at least one credit.
    blocked = _insufficient_estimate(context, max(estimate, 1))
    if blocked:
        return blocked

    try:
        result = await winston.detect_plagiarism(
            text=text or None,
            file_url=file_url,
            website_url=website_url,
            excluded_sources=clean_excluded_sources(excluded_sources) or None,
            language=language or "auto",
            country=country or "us",
        )
    except ProviderError as exc:
        logger.warning("detect_plagiarism_failed source=%s: %s", source_type, exc)
        return ToolOutcome.failed("We couldn't run the plagiarism check. Please try again.", PROVIDER_ERROR)

    charge = plagiarism_charge(estimate, result.credits_used)
    deduction = await _charge(principal, context, charge, db, tool="plagiarism")
    if not deduction.ok:
        return ToolOutcome.from_check(deduction)

    await _record_usage(
        principal,
        context,
        db,
        source_type=source_type,
        input_type="plagiarism",
        input_preview=_preview(source_type, text, file_name, file_url, website_url),
        raw_score=result.score,
        ai_score=result.score,
        length=len(text) if text else None,
        attack_detected=result.attack_detected,
        credits_used=charge,
        credits_remaining=result.credits_remaining,
        version=result.service,
        language=result.language,
    )

    return ToolOutcome(
        success=True,
        data={
            "score": result.score,
            "sources": result.sources,
            "attack_detected": result.attack_detected,
            "service": result.service,
            "language": result.language,
        },
        credits_used=charge,
        credits_left=_credits_left(deduction, context),
    )


async def humanize_text(
    principal: Principal,
    db: AsyncSession,
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
) -> ToolOutcome:
    context = await load_plan_context(principal, db)
    content = (text or "").strip()
    source_type = "text" if content else resolve_source_type(None, file_url, None)
    gate = check_gate(context.plan, source_type, len(content))
    if not gate.ok:
        return ToolOutcome.from_check(gate)

    if not content and file_url:
        try:
            content = (await fetch_file_text(file_url)).strip()
        except InputFetchError as exc:
            return ToolOutcome.failed(str(exc), INVALID_INPUT)
        gate = check_gate(context.plan, source_type, len(content))
        if not gate.ok:
            return ToolOutcome.from_check(gate)
    if not content:
        return ToolOutcome.failed("Add some text to humanize.", INVALID_INPUT)

    cost = humanize_cost(count_words(content))
    blocked = _insufficient_estimate(context, cost)
    if blocked:
        return blocked

    try:
        result = await openrouter.humanize(content)
    except ProviderError as exc:
        logger.warning("humanize_failed source=%s: %s", source_type, exc)
        return ToolOutcome.failed("We couldn't humanize the text. Please try again.", PROVIDER_ERROR)

    deduction = await _charge(principal, context, cost, db, tool="humanize")
    if not deduction.ok:
        return ToolOutcome.from_check(deduction)

    await _record_usage(
        principal,
        context,
        db,
        source_type=source_type,
        input_type="humanize",
        input_preview=_preview(source_type, content, file_name, file_url, None),
        length=len(content),
        credits_used=cost,
        credits_remaining=_credits_left(deduction, context),
    )

    return ToolOutcome(
        success=True,
        data={"output": result.output, "tokens": result.tokens},
        credits_used=cost,
        credits_left=_credits_left(deduction, context),
    )


async def summarize_text(
    principal: Principal,
    db: AsyncSession,
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    website_url: Optional[str] = None,
    length_percent: int = 50,
) -> ToolOutcome:
    context = await load_plan_context(principal, db)
    content = (text or "").strip()
    source_type = resolve_source_type(content, file_url, website_url)
    gate = check_gate(context.plan, source_type, len(content))
    if not gate.ok:
        return ToolOutcome.from_check(gate)

    if not content and file_url:
        try:
            content = (await fetch_file_text(file_url)).strip()
        except InputFetchError as exc:
            return ToolOutcome.failed(str(exc), INVALID_INPUT)
        gate = check_gate(context.plan, source_type, len(content))
        if not gate.ok:
            return ToolOutcome.from_check(gate)
    if not content and not website_url:
        return ToolOutcome.failed("Add some text to summarize.", INVALID_INPUT)

    cost = summarize_cost(len(content), url_only=not content and bool(website_url))
    blocked = _insufficient_estimate(context, cost)
    if blocked:
        return blocked

    try:
        result = await openrouter.summarize(content, website_url=website_url, length_percent=length_percent)
    except ProviderError as exc:
        logger.warning("summarize_failed source=%s: %s", source_type, exc)
        return ToolOutcome.failed("We couldn't summarize the text. Please try again.", PROVIDER_ERROR)

    deduction = await _charge(principal, context, cost, db, tool="summarize")
    if not deduction.ok:
        return ToolOutcome.from_check(deduction)

    await _record_usage(
        principal,
        context,
        db,
        source_type=source_type,
        input_type="summarize",
        input_preview=_preview(source_type, content, file_name, file_url, website_url),
        length=len(content) or None,
        credits_used=cost,
        credits_remaining=_credits_left(deduction, context),
    )

    return ToolOutcome(
        success=True,
        data={"summary": result.output, "tokens": result.tokens},
        credits_used=cost,
        credits_left=_credits_left(deduction, context),
    )

"""Winston AI client for AI-content detection and plagiarism checks."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from services.providers.types import (
    DetectionResult,
    DetectionSentence,
    PlagiarismResult,
    ProviderError,
)

logger = logging.getLogger(__name__)


def _require_api_key() -> str:
    api_key = (settings.WINSTON_API_KEY or "").strip()
    if not api_key:
        raise ProviderError("Winston API key is not configured")
    return api_key


def _source_payload(
    text: Optional[str],
    file_url: Optional[str],
    website_url: Optional[str],
) -> Dict[str, Any]:
    if website_url:
        return {"website": website_url}
    if file_url:
        return {"file": file_url}
    if text:
        return {"text": text}
    raise ProviderError("No input provided for Winston")


def normalize_sentences(raw: Any) -> List[DetectionSentence]:
    """Winston returns sentences as a list, a single object, or an index-keyed map."""
    if not raw:
        return []
    if isinstance(raw, dict):
        if isinstance(raw.get("text"), str) and isinstance(raw.get("score"), (int, float)):
            items: Sequence[Any] = [raw]
        else:
            items = list(raw.values())
    elif isinstance(raw, list):
        items = raw
    else:
        return []

    sentences = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            continue
        length = item.get("length")
        sentences.append(
            DetectionSentence(
                text=item["text"],
                score=float(item.get("score") or 0.0),
                length=int(length) if isinstance(length, (int, float)) else None,
            )
        )
    return sentences


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _post(url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    api_key = _require_api_key()
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )
    except httpx.HTTPError as exc:
        raise ProviderError(f"Winston request failed: {exc}") from exc

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.status_code >= 400:
        logger.error("winston_request_failed url=%s status=%s body=%s", url, response.status_code, data)
        raise ProviderError(f"Winston returned HTTP {response.status_code}")
    if not isinstance(data, dict):
        raise ProviderError("Winston returned an unexpected payload")
    return data


async def detect_ai_content(
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    website_url: Optional[str] = None,
    language: str = "auto",
    version: str = "latest",
) -> DetectionResult:
    payload = {"sentences": True, "language": language, "version": version}
    payload.update(_source_payload(text, file_url, website_url))
    data = await _post(settings.WINSTON_API_URL, payload)

    readability = data.get("readability_score")
    return DetectionResult(
        score=float(data.get("score") or 0.0),
        sentences=normalize_sentences(data.get("sentences")),
        length=_optional_int(data.get("length")),
        attack_detected=data.get("attack_detected") or None,
        readability_score=float(readability) if isinstance(readability, (int, float)) else None,
        credits_used=_optional_int(data.get("credits_used")),
        credits_remaining=_optional_int(data.get("credits_remaining")),
        version=data.get("version"),
        language=data.get("language"),
        raw=data,
    )


async def detect_plagiarism(
    *,
    text: Optional[str] = None,
    file_url: Optional[str] = None,
    website_url: Optional[str] = None,
    excluded_sources: Optional[List[str]] = None,
    language: str = "auto",
    country: str = "us",
) -> PlagiarismResult:
    payload: Dict[str, Any] = {"language": language, "country": country}
    payload.update(_source_payload(text, file_url, website_url))
    if excluded_sources:
        payload["excluded_sources"] = list(excluded_sources)
    data = await _post(settings.WINSTON_PLAGIARISM_URL, payload)

    result = data.get("result") or {}
    scan = data.get("scanInformation") or {}
    sources = data.get("sources") or []
    return PlagiarismResult(
        score=float(result.get("score") or 0.0),
        sources=[source for source in sources if isinstance(source, dict)],
        attack_detected=data.get("attackDetected") or None,
        credits_used=_optional_int(data.get("credits_used")),
        credits_remaining=_optional_int(data.get("credits_remaining")),
        service=scan.get("service"),
        language=scan.get("language"),
        raw=data,
    )

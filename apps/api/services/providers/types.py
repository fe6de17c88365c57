"""Provider response contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ProviderError(RuntimeError):
    """Raised when an upstream provider is unconfigured or returns an error."""


@dataclass(frozen=True)
class DetectionSentence:
    text: str
    score: float
    length: Optional[int] = None


@dataclass(frozen=True)
class DetectionResult:
    score: float
    sentences: List[DetectionSentence]
    length: Optional[int] = None
    attack_detected: Optional[Dict[str, Any]] = None
    readability_score: Optional[float] = None
    credits_used: Optional[int] = None
    credits_remaining: Optional[int] = None
    version: Optional[str] = None
    language: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlagiarismResult:
    score: float
    sources: List[Dict[str, Any]]
    attack_detected: Optional[Dict[str, Any]] = None
    credits_used: Optional[int] = None
    credits_remaining: Optional[int] = None
    service: Optional[str] = None
    language: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionResult:
    output: str
    tokens: Optional[int] = None

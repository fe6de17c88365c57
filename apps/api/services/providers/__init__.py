"""Upstream AI providers."""

from services.providers.types import (
    CompletionResult,
    DetectionResult,
    DetectionSentence,
    PlagiarismResult,
    ProviderError,
)

__all__ = [
    "CompletionResult",
    "DetectionResult",
    "DetectionSentence",
    "PlagiarismResult",
    "ProviderError",
]

"""Credit cost formulas for each billable tool."""

from __future__ import annotations

import math
from typing import Optional

from services.plan_policy import PlanPolicy


AVG_CHARS_PER_WORD = 5
PLAGIARISM_CREDITS_PER_WORD = 2
HUMANIZE_WORDS_PER_CREDIT = 2
SUMMARIZE_CHARS_PER_CREDIT = 100
SUMMARIZE_URL_FALLBACK_CHARS = 1000


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len(text.split())


def estimate_words_from_chars(chars: Optional[int]) -> int:
    if not chars or chars <= 0:
        return 0
    return max(1, _ceil_div(chars, AVG_CHARS_PER_WORD))


def detection_cost(word_count: int, plan: PlanPolicy) -> int:
    return max(1, math.ceil(max(word_count, 0) * plan.credits_per_word_detect))


def plagiarism_estimate(word_count: int) -> int:
    return max(1, max(word_count, 0) * PLAGIARISM_CREDITS_PER_WORD)


def plagiarism_charge(estimate: int, reported: Optional[int]) -> int:
    """Charge the larger of the local estimate and the provider-reported usage."""
    return max(1, int(estimate or 0), int(reported or 0))


def humanize_cost(word_count: int) -> int:
    return max(1, _ceil_div(max(word_count, 0), HUMANIZE_WORDS_PER_CREDIT))


def summarize_cost(char_count: int, url_only: bool = False) -> int:
    chars = char_count
    if chars <= 0 and url_only:
        chars = SUMMARIZE_URL_FALLBACK_CHARS
    return max(1, _ceil_div(max(chars, 0), SUMMARIZE_CHARS_PER_CREDIT))

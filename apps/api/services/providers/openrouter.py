"""OpenRouter chat completions for the humanizer and summarizer."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from config import settings
from services.providers.types import CompletionResult, ProviderError

logger = logging.getLogger(__name__)


HUMANIZER_SYSTEM_PROMPT = """
You are a seasoned ghostwriter and editor. Rewrite the text you are given so it reads
like natural human writing while staying suitable for essays, reports, and articles.

Rules:
- Keep the original meaning, facts, and main claims. Change the structure and wording.
- Vary sentence length: mix short, direct sentences with longer ones.
- Use active voice and plain, everyday vocabulary (grade 8-9 readability).
- Avoid filler, clichés, and stock transitions such as "Furthermore", "Moreover",
  "In conclusion", "It is important to note".
- Do not use em-dashes, and do not introduce lists with colons.
- Answer in the same language as the input and return only the rewritten text.
""".strip()

SUMMARIZER_SYSTEM_PROMPT = (
    "You summarize text in the same language as the input. Return a single concise, "
    "readable summary without bullet points unless asked, and without preambles or apologies. "
    "Adjust the length to the requested slider value (0 very short, 100 longer)."
)


def get_openrouter_client() -> AsyncOpenAI:
    api_key = (settings.OPENROUTER_API_KEY or "").strip()
    if not api_key:
        raise ProviderError("OpenRouter API key is not configured")

    headers: Dict[str, str] = {}
    if settings.OPENROUTER_SITE_URL:
        headers["HTTP-Referer"] = settings.OPENROUTER_SITE_URL
    if settings.OPENROUTER_SITE_NAME:
        headers["X-Title"] = settings.OPENROUTER_SITE_NAME

    return AsyncOpenAI(
        api_key=api_key,
        base_url=settings.OPENROUTER_BASE_URL,
        default_headers=headers or None,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        max_retries=0,
    )


async def _complete(system_prompt: str, user_content: str, temperature: float) -> CompletionResult:
    client = get_openrouter_client()
    try:
        response = await client.chat.completions.create(
            model=settings.OPENROUTER_MODEL,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
        )
    except OpenAIError as exc:
        logger.warning("openrouter_completion_failed model=%s: %s", settings.OPENROUTER_MODEL, exc)
        raise ProviderError(f"OpenRouter error: {exc}") from exc

    content = ""
    if response.choices:
        content = (response.choices[0].message.content or "").strip()
    if not content:
        raise ProviderError("OpenRouter returned an empty completion")
    tokens = response.usage.total_tokens if response.usage else None
    return CompletionResult(output=content, tokens=tokens)


async def humanize(text: str) -> CompletionResult:
    return await _complete(HUMANIZER_SYSTEM_PROMPT, text, temperature=0.7)


async def summarize(
    text: str,
    *,
    website_url: Optional[str] = None,
    length_percent: int = 50,
) -> CompletionResult:
    parts = []
    if website_url:
        parts.append(f"Reference URL (you may access it online): {website_url}")
    parts.append(f"Desired length (0-100): {length_percent}")
    if text:
        parts.append(f"Text to summarize:\n\n{text}")
    return await _complete(SUMMARIZER_SYSTEM_PROMPT, "\n\n".join(parts), temperature=0.3)

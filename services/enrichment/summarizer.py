"""
services/enrichment/summarizer.py
Short provider-facing summaries of a booking request via the Gemini REST API.

Skips (returns None) when no API key is configured or there is nothing to
summarize. Candidate models are tried in order; only a 404 moves on to the
next one. Anything else raises EnrichmentFailed, which callers record as a
flag and never treat as their own failure.
"""

import logging
from typing import Optional

import httpx

from config.settings import Settings, settings as default_settings
from shared.models.models import ServiceType
from shared.utils.errors import EnrichmentFailed
from services.booking.policy import provider_role_for

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "Summarize this {service} request in 2-4 short sentences for {audience}. "
    "Keep it professional and focused on key concerns.\n\nRequest:\n{text}"
)


def source_text(booking) -> str:
    """Description first, then the category the requester picked."""
    if ServiceType(booking.service_type) is ServiceType.POOJA:
        fallback = booking.pooja_type
    else:
        fallback = booking.problem_category
    return (booking.description or fallback or "").strip()


def build_prompt(text: str, service_type: ServiceType) -> str:
    service_type = ServiceType(service_type)
    role = provider_role_for(service_type).value
    article = "an" if role[0] in "aeiou" else "a"
    return PROMPT_TEMPLATE.format(
        service=service_type.value,
        audience=f"{article} {role}",
        text=text.strip(),
    )


def _extract_text(data) -> Optional[str]:
    """Pull candidates[0].content.parts[0].text; a malformed shape raises."""
    if not isinstance(data, dict):
        raise EnrichmentFailed("Summary response is not a JSON object")
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list):
        raise EnrichmentFailed("Summary response has malformed candidates")
    if not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        raise EnrichmentFailed("Summary response has a malformed candidate")
    content = first.get("content")
    if content is None:
        return None
    if not isinstance(content, dict):
        raise EnrichmentFailed("Summary response has malformed content")
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        raise EnrichmentFailed("Summary response has malformed parts")
    if not parts or not isinstance(parts[0], dict):
        return None
    text = parts[0].get("text")
    if not isinstance(text, str):
        return None
    return text.strip() or None


class SummaryClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or default_settings
        self.transport = transport

    @property
    def enabled(self) -> bool:
        key = self.settings.GEMINI_API_KEY
        return bool(key and key.strip())

    def _url(self, model: str) -> str:
        return f"{self.settings.GEMINI_API_BASE.rstrip('/')}/models/{model}:generateContent"

    async def summarize(self, text: Optional[str], service_type: ServiceType) -> Optional[str]:
        if not self.enabled or not text or not text.strip():
            logger.info("Summary skipped: no API key or empty request text")
            return None

        body = {
            "contents": [{"parts": [{"text": build_prompt(text, service_type)}]}],
            "generationConfig": {
                "maxOutputTokens": self.settings.GEMINI_MAX_OUTPUT_TOKENS,
                "temperature": self.settings.GEMINI_TEMPERATURE,
            },
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.settings.GEMINI_API_KEY.strip(),
        }

        async with httpx.AsyncClient(
            timeout=self.settings.GEMINI_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            for model in self.settings.gemini_models_list:
                try:
                    response = await client.post(self._url(model), json=body, headers=headers)
                except httpx.TimeoutException as e:
                    raise EnrichmentFailed(f"Summary request timed out on {model}") from e
                except httpx.HTTPError as e:
                    raise EnrichmentFailed(f"Summary request failed on {model}: {e}") from e

                if response.status_code == 404:
                    logger.warning(f"Summary model {model} unavailable, trying next")
                    continue
                if not response.is_success:
                    logger.warning(
                        f"Summary API error on {model}: {response.status_code} {response.text[:200]}"
                    )
                    raise EnrichmentFailed(f"Summary API returned {response.status_code}")

                try:
                    summary = _extract_text(response.json())
                except ValueError as e:
                    raise EnrichmentFailed(f"Unreadable summary response from {model}") from e
                if summary:
                    logger.info(f"Summary generated with {model} ({len(summary)} chars)")
                    return summary
                logger.warning(f"Summary model {model} returned no text, trying next")

        raise EnrichmentFailed("No summary returned by any model")

"""Экстракция события Social Five: AI (structured output) с fallback на правила."""
import asyncio
import json
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal, Protocol

from loguru import logger
from openai import APIError, AsyncOpenAI, RateLimitError
from pydantic import ValidationError

from src.ai.language import detect_language, has_english_marker
from src.ai.markdown import html_to_markdown
from src.ai.prompt import build_extraction_messages
from src.ai.rules import RulesExtractor, normalize_time, parse_loose_date
from src.ai.schemas import INTERACTION_MODES, LANGUAGE_PROFILES, SocialFiveEvent, is_placeholder
from src.ai.structured import json_schema_format, parse_structured
from src.ai.vibe import classify_interaction
from src.database import MAX_RETRY_AFTER_SECONDS, parse_retry_after

MAX_RETRIES = 2
DEFAULT_RETRY_AFTER = 5.0
FALLBACK_CONFIDENCE = 0.3
RULES_ONLY_CONFIDENCE = 0.5

_HHMM_RE = re.compile(r"^\d{2}:\d{2}$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class EventExtractor(Protocol):
    """Интерфейс экстрактора события из разметки detail-страницы."""

    method: str

    async def extract(
        self, markup: str, base_url: str, hints: dict[str, Any]
    ) -> SocialFiveEvent | None: ...


@dataclass
class ExtractionResult:
    event: SocialFiveEvent
    completeness_score: int
    confidence: float
    method: Literal["ai", "rules"]


def completeness_score(event: SocialFiveEvent) -> int:
    """Сколько из пяти полей Social Five заполнены корректно (0–5)."""
    score = 0
    if event.start_time and _HHMM_RE.match(event.start_time):
        score += 1
    if not is_placeholder(event.venue_name) and (event.street_address or event.city):
        score += 1
    if event.end_time or (event.estimated_duration_minutes or 0) > 0:
        score += 1
    if event.language_profile in LANGUAGE_PROFILES:
        score += 1
    if event.interaction_mode in INTERACTION_MODES:
        score += 1
    return score


def build_structured_address(event: SocialFiveEvent) -> dict[str, Any] | None:
    """Адрес для карты и геокодинга. None без площадки."""
    if is_placeholder(event.venue_name):
        return None
    return {
        "venue": event.venue_name,
        "street": event.street_address or None,
        "city": event.city or None,
        "postal_code": event.postal_code or None,
        "country": "Netherlands",
    }


def validate_and_enhance(
    event: SocialFiveEvent,
    detected_language: str,
    hints: dict[str, Any],
    today: date | None = None,
) -> SocialFiveEvent:
    """Нормализовать ответ модели: время HH:MM, дата из подсказки, язык, теги."""
    update: dict[str, Any] = {}

    if event.language_profile == "other" and detected_language != "other":
        update["language_profile"] = detected_language

    for field_name in ("start_time", "doors_open_time", "end_time"):
        value = getattr(event, field_name)
        if value is not None:
            update[field_name] = normalize_time(value)

    if not _ISO_DATE_RE.match(event.event_date or ""):
        parsed = parse_loose_date(hints.get("date"), today) or parse_loose_date(event.event_date, today)
        if parsed:
            update["event_date"] = parsed

    if event.interaction_mode not in INTERACTION_MODES:
        update["interaction_mode"] = classify_interaction(
            event.category, event.description or ""
        ).interaction_mode

    tags = list(dict.fromkeys(event.persona_tags))
    language = update.get("language_profile", event.language_profile)
    text = f"{event.title} {event.description or ''}"
    if (language in ("foreign", "mixed") or has_english_marker(text)) and "ExpatFriendly" not in tags:
        tags.append("ExpatFriendly")
    update["persona_tags"] = tags

    return event.model_copy(update=update)


class AIExtractor:
    """Экстракция через OpenAI chat.completions со strict json_schema."""

    method = "ai"

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o-mini",
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.client = client
        self.model = model
        self.max_retries = max_retries

    async def extract(
        self, markup: str, base_url: str, hints: dict[str, Any]
    ) -> SocialFiveEvent | None:
        markdown = html_to_markdown(markup, base_url)
        messages = build_extraction_messages(base_url, hints, markdown)

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format=json_schema_format(
                        "social_event_extraction", SocialFiveEvent
                    ),
                    temperature=0.1,
                    max_tokens=1024,
                )
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.warning(f"[enrichment] Rate limited, retries exhausted for {base_url}")
                    return None
                headers = e.response.headers if e.response is not None else None
                delay = parse_retry_after(headers)
                if delay is None:
                    delay = DEFAULT_RETRY_AFTER
                if delay > MAX_RETRY_AFTER_SECONDS:
                    logger.warning(f"[enrichment] OpenAI asks to wait {delay:.0f}s, falling back for {base_url}")
                    return None
                logger.warning(f"[enrichment] Rate limited, waiting {delay}s ({attempt + 1}/{self.max_retries})")
                await asyncio.sleep(delay)
                continue
            except APIError as e:
                logger.warning(f"[enrichment] OpenAI error for {base_url}: {e}")
                return None

            message = response.choices[0].message if response.choices else None
            if message is None or message.refusal or not message.content:
                logger.warning(f"[enrichment] Empty or refused response for {base_url}")
                return None
            try:
                event = parse_structured(message.content, SocialFiveEvent)
            except (ValidationError, json.JSONDecodeError) as e:
                logger.warning(f"[enrichment] Unparsable output for {base_url}: {e}")
                return None
            return validate_and_enhance(event, detect_language(markdown), hints)
        return None


class EnrichmentService:
    """Пробует экстракторы по порядку, первый непустой результат побеждает."""

    def __init__(self, extractors: list[EventExtractor]) -> None:
        if not extractors:
            raise ValueError("EnrichmentService needs at least one extractor")
        self.extractors = extractors

    @classmethod
    def create(
        cls, openai_client: AsyncOpenAI | None, model: str = "gpt-4o-mini"
    ) -> "EnrichmentService":
        extractors: list[EventExtractor] = []
        if openai_client is not None:
            extractors.append(AIExtractor(openai_client, model))
        extractors.append(RulesExtractor())
        return cls(extractors)

    @property
    def rules_only(self) -> bool:
        return all(e.method == "rules" for e in self.extractors)

    async def extract(
        self, markup: str, base_url: str, hints: dict[str, Any] | None = None
    ) -> ExtractionResult | None:
        hints = hints or {}
        for position, extractor in enumerate(self.extractors):
            try:
                event = await extractor.extract(markup, base_url, hints)
            except Exception as e:
                logger.error(f"[enrichment] {extractor.method} extractor crashed on {base_url}: {e}")
                continue
            if event is None:
                continue

            score = completeness_score(event)
            if extractor.method == "ai":
                confidence = score / 5
            elif self.rules_only:
                confidence = RULES_ONLY_CONFIDENCE
            else:
                confidence = FALLBACK_CONFIDENCE
            if position > 0:
                logger.info(f"[enrichment] {base_url}: fell back to {extractor.method} (score={score}/5)")
            return ExtractionResult(event, score, confidence, extractor.method)

        logger.warning(f"[enrichment] No extractor produced an event for {base_url}")
        return None

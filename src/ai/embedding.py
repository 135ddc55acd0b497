"""Генерация embedding для семантического поиска событий."""
from loguru import logger
from openai import AsyncOpenAI

from src.ai.schemas import SocialFiveEvent, is_placeholder

EMBEDDING_MODEL = "text-embedding-3-small"

_MODE_LABELS = {
    "high": "interactive, meet people",
    "medium": "social atmosphere",
    "low": "mostly listening",
    "passive": "watch and enjoy",
}


def build_embedding_text(event: SocialFiveEvent) -> str:
    """Построить структурированный текст события для embedding."""
    parts: list[str] = [event.title]
    if event.description:
        parts.append(event.description)

    details: list[str] = [f"Category: {event.category}"]
    if event.venue_name and not is_placeholder(event.venue_name):
        venue = event.venue_name
        if event.city:
            venue += f", {event.city}"
        details.append(f"Venue: {venue}")
    elif event.city:
        details.append(f"City: {event.city}")
    details.append(f"Date: {event.event_date} {event.start_time}" if event.start_time else f"Date: {event.event_date}")
    parts.append(". ".join(details) + ".")

    parts.append(f"Interaction: {_MODE_LABELS.get(event.interaction_mode, event.interaction_mode)}.")
    if event.persona_tags:
        parts.append(f"Good for: {', '.join(event.persona_tags)}.")
    if event.price_info:
        parts.append(f"Price: {event.price_info}.")

    return "\n".join(parts)


async def generate_embedding(
    client: AsyncOpenAI,
    text: str,
) -> list[float] | None:
    """Сгенерировать embedding-вектор через OpenAI API. None при ошибке."""
    try:
        response = await client.embeddings.create(
            model=EMBEDDING_MODEL,
            input=text,
        )
        return response.data[0].embedding
    except Exception as e:
        logger.error(f"[embedding] Ошибка генерации embedding: {e}")
        return None

"""Pydantic-схемы structured output: событие Social Five и предложение селекторов."""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from src.models.source import SelectorConfig

LanguageProfile = Literal["native", "foreign", "mixed", "other"]
InteractionMode = Literal["high", "medium", "low", "passive"]
Category = Literal[
    "MUSIC", "SOCIAL", "ACTIVE", "CULTURE", "FOOD", "NIGHTLIFE", "FAMILY", "CIVIC", "COMMUNITY",
]

LANGUAGE_PROFILES: tuple[str, ...] = ("native", "foreign", "mixed", "other")
INTERACTION_MODES: tuple[str, ...] = ("high", "medium", "low", "passive")

# Заглушки вместо реальных значений: такое событие нельзя писать в каталог
PLACEHOLDER_VALUES = frozenset({
    "unknown", "unknown event", "untitled", "tbd", "tba", "n/a", "nvt",
    "onbekend", "nader te bepalen", "nog niet bekend",
})


def is_placeholder(value: str | None) -> bool:
    """Пустое значение или заглушка вида 'TBD' / 'Unknown Event'."""
    if value is None:
        return True
    return " ".join(value.split()).lower().strip(" .-") in PLACEHOLDER_VALUES | {""}


class SocialFiveEvent(BaseModel):
    """Событие с пятью ключевыми «социальными» полями."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(description="Clean event title without venue name or date")
    description: str | None = Field(
        default=None, description="Event description, max 500 chars, keep key details",
    )
    event_date: str = Field(description="Event date in YYYY-MM-DD format")

    # 1. Начало и открытие дверей
    start_time: str | None = Field(
        default=None, description="Start of the main activity, HH:MM 24-hour, or null if the page does not say",
    )
    doors_open_time: str | None = Field(
        default=None, description="Doors/entry time if different from start_time, HH:MM or null",
    )

    # 2. Точный адрес
    venue_name: str | None = Field(
        default=None, description="Venue name, e.g. 'Paradiso', 'De Balie', or null if the page does not say",
    )
    street_address: str | None = Field(default=None, description="Street and number, e.g. 'Weteringschans 6-8'")
    city: str | None = Field(default=None, description="City name, e.g. 'Amsterdam'")
    postal_code: str | None = Field(default=None, description="Dutch postal code, e.g. '1017 SG'")

    # 3. Окончание / длительность
    end_time: str | None = Field(default=None, description="End time HH:MM 24-hour or null")
    estimated_duration_minutes: int | None = Field(
        default=None, description="Estimated duration in minutes when end_time is unknown",
    )

    # 4. Язык
    language_profile: LanguageProfile = Field(
        description="native=Dutch, foreign=English or other non-Dutch, mixed=both, other=unknown",
    )

    # 5. Режим взаимодействия
    interaction_mode: InteractionMode = Field(
        description="high=workshops/networking, medium=concerts/markets, "
        "low=talks/lectures, passive=movies/exhibitions",
    )

    category: Category = Field(description="Event category in UPPERCASE")
    persona_tags: list[str] = Field(
        default_factory=list,
        description="Persona fit tags: ExpatFriendly, FamilyFriendly, NightOwl, Curious, "
        "CultureVulture, Foodie, DateNight",
    )
    image_url: str | None = Field(default=None, description="Absolute URL of the event image")
    ticket_url: str | None = Field(default=None, description="Absolute URL to buy tickets")
    price_info: str | None = Field(default=None, description="Price as shown, e.g. '€15', 'Gratis'")


class SelectorProposal(BaseModel):
    """Предложение AI по исправлению CSS-селекторов источника."""
    model_config = ConfigDict(extra="forbid")

    event_card: str = Field(description="CSS selector matching each repeating event card")
    title: str = Field(description="Selector of the title, relative to the card")
    date: str = Field(description="Selector of the date, relative to the card")
    time: str | None = Field(default=None, description="Selector of the time or null")
    location: str | None = Field(default=None, description="Selector of the venue/location or null")
    link: str = Field(description="Selector of the detail <a> link, relative to the card")
    description: str | None = Field(default=None)
    image: str | None = Field(default=None)
    price: str | None = Field(default=None)
    reasoning: str = Field(description="Short explanation of what changed in the markup")
    confidence: float = Field(description="Self-reported confidence 0-1")

    def to_config(self) -> SelectorConfig:
        return SelectorConfig.model_validate(
            self.model_dump(exclude={"reasoning", "confidence"})
        )

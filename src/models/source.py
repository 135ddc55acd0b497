"""Pydantic-модели источника, конфигурации селекторов и rate-limit состояния."""
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FetchStrategy(StrEnum):
    """Стратегия загрузки страницы, по возрастанию стоимости."""

    STATIC = "static"
    HEADLESS_BROWSER = "headless-browser"
    ANTI_BOT_PROXY = "anti-bot-proxy"


class SourceTier(StrEnum):
    TIER_1_METROPOLIS = "tier_1_metropolis"
    TIER_2_REGIONAL = "tier_2_regional"
    TIER_3_HYPERLOCAL = "tier_3_hyperlocal"


class DiscoveryMethod(StrEnum):
    SERPER_SEARCH = "serper_search"
    API_WEBHOOK = "api_webhook"
    SEED_LIST = "seed_list"
    INTERNAL_LINK = "internal_link"
    SITEMAP = "sitemap"


# Приоритет элементов очереди по тиру источника
TIER_PRIORITY: dict[SourceTier, int] = {
    SourceTier.TIER_1_METROPOLIS: 80,
    SourceTier.TIER_2_REGIONAL: 60,
    SourceTier.TIER_3_HYPERLOCAL: 40,
}


class SelectorConfig(BaseModel):
    """CSS-селекторы полей события на странице источника.

    В БД хранится в camelCase (by_alias) — формат совместим с уже
    сохранёнными конфигами в sg_sources.extraction_config.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_card: str = Field(alias="eventCard")
    title: str
    date: str
    time: str | None = None
    location: str | None = None
    link: str
    description: str | None = None
    image: str | None = None
    price: str | None = None

    def to_db(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


REQUIRED_SELECTOR_FIELDS = ("event_card", "title", "link")


class RateLimitState(BaseModel):
    """Лимиты запросов к источнику."""

    requests_per_minute: int = 30
    max_concurrency: int = 2
    backoff_until: datetime | None = None
    # Минутное окно запросов, общее для всех воркеров
    window_started_at: datetime | None = None
    window_requests: int = 0


class Source(BaseModel):
    """Источник из таблицы sg_sources."""

    id: str
    name: str | None = None
    url: str
    domain: str | None = None
    city: str | None = None
    tier: SourceTier = SourceTier.TIER_3_HYPERLOCAL
    discovery_method: DiscoveryMethod | None = None
    fetch_strategy: FetchStrategy | None = None
    extraction_config: SelectorConfig | None = None
    config_version: int = 0
    reliability_score: float = 100.0
    consecutive_failures: int = 0
    total_events_extracted: int = 0
    expected_event_count: int | None = None
    enabled: bool = True
    quarantined: bool = False
    quarantine_reason: str | None = None
    rate_limit_state: RateLimitState = Field(default_factory=RateLimitState)
    health_version: int = 0
    last_content_hash: str | None = None

    @property
    def priority(self) -> int:
        return TIER_PRIORITY.get(self.tier, 50)

    def is_rate_limited(self, now: datetime) -> bool:
        backoff = self.rate_limit_state.backoff_until
        return backoff is not None and backoff > now

"""Конфигурация пайплайна из переменных окружения."""
import os
import socket
from functools import cached_property

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_comma(value: str) -> list[str]:
    """Парсит строку 'a,b,c' → ['a', 'b', 'c']."""
    if not value or not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _default_worker_id() -> str:
    """hostname:pid — уникален в пределах кластера воркеров."""
    return f"{socket.gethostname()}:{os.getpid()}"


class Settings(BaseSettings):
    """Настройки пайплайна — парсятся из env или .env файла."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Supabase
    supabase_url: str
    supabase_service_key: SecretStr

    # OpenAI (пустой ключ → AI-функции уходят в rules-fallback)
    openai_api_key: SecretStr = SecretStr("")
    extraction_model: str = "gpt-4o-mini"
    healer_model: str = "gpt-4o-mini"

    # Стратегии загрузки страниц
    fetch_timeout_seconds: float = 30.0
    browserless_url: str = "https://chrome.browserless.io"
    browserless_token: SecretStr = SecretStr("")
    scrapingbee_api_key: SecretStr = SecretStr("")

    # Геокодинг
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    nominatim_user_agent: str = "event-ingest-pipeline/0.1 (ops@example.org)"
    geocode_cache_days: int = 180

    # Circuit breaker
    cb_failure_threshold: int = 5
    cb_base_cooldown_minutes: int = 30
    cb_max_cooldown_minutes: int = 24 * 60

    # Selector healer
    healer_confidence_threshold: float = 0.7

    # Воркер
    worker_id: str = Field(default_factory=_default_worker_id)
    worker_poll_interval: int = 10
    worker_max_concurrent: int = 4
    stage_batch_size: int = 5
    claim_timeout_minutes: int = 15
    max_failure_count: int = 3
    crawl_interval_minutes: int = 60
    crawl_sources_limit: int = 20
    log_level: str = "INFO"

    # Discovery fan-out
    discovery_worker_url: str = ""
    discovery_max_workers: int = 5

    # API
    pipeline_api_key: SecretStr
    pipeline_port: int = Field(
        default=8001,
        validation_alias=AliasChoices("PIPELINE_PORT", "PORT"),
    )

    # Список стадий, которые забирает этот воркер (пусто → все рабочие стадии)
    worker_stages: str = ""

    @cached_property
    def worker_stages_list(self) -> list[str]:
        """Парсит WORKER_STAGES='fetching,extracting' → ['fetching', 'extracting']."""
        return _split_comma(self.worker_stages)

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key.get_secret_value())


def load_settings() -> Settings:
    """Создать Settings из переменных окружения (.env файла).

    Фабричная функция — обходит ограничение pyright, который не знает,
    что pydantic-settings заполняет обязательные поля из окружения.
    """
    return Settings.model_validate({})

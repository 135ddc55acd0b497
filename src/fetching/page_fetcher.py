"""Загрузка страниц с fallback по стратегиям и content-hash для change detection."""
import hashlib
import re
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel
from supabase import Client

from src.config import Settings
from src.database import run_in_thread, sanitize_error
from src.fetching.analyzer import detect_challenge
from src.fetching.strategies import (
    AntiBotProxyFetcher,
    FetchError,
    FetchOptions,
    HeadlessBrowserFetcher,
    PageFetcherStrategy,
    StaticFetcher,
)
from src.models.queue_item import FailureLevel
from src.models.source import FetchStrategy

RAW_PAGES_TABLE = "raw_pages"
MAX_STORED_HTML = 500_000

# Цепочка начинается с запрошенной стратегии и идёт к более дорогим
FALLBACK_CHAINS: dict[FetchStrategy, tuple[FetchStrategy, ...]] = {
    FetchStrategy.STATIC: (
        FetchStrategy.STATIC,
        FetchStrategy.HEADLESS_BROWSER,
        FetchStrategy.ANTI_BOT_PROXY,
    ),
    FetchStrategy.HEADLESS_BROWSER: (
        FetchStrategy.HEADLESS_BROWSER,
        FetchStrategy.ANTI_BOT_PROXY,
        FetchStrategy.STATIC,
    ),
    FetchStrategy.ANTI_BOT_PROXY: (
        FetchStrategy.ANTI_BOT_PROXY,
        FetchStrategy.HEADLESS_BROWSER,
    ),
}

# Тег, у которого name/id/property указывает на токен: его value/content меняется между загрузками
_VOLATILE_TAG_RE = re.compile(
    r"<[^>]*\b(?:name|id|property)\s*=\s*[\"'][^\"']*(?:csrf|token|nonce|session)[^\"']*[\"'][^>]*>",
    re.IGNORECASE,
)
_VOLATILE_VALUE_RE = re.compile(r"\b(value|content)\s*=\s*(\"[^\"]*\"|'[^']*')", re.IGNORECASE)
_VOLATILE_TOKEN_RE = re.compile(r"\b(csrf|token|nonce|timestamp|session)[^\"'\s]*", re.IGNORECASE)
_LONG_NUMBER_RE = re.compile(r"\d{13,}")
_ISO_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?")
_WHITESPACE_RE = re.compile(r"\s+")


class FetchResult(BaseModel):
    """Результат успешной загрузки."""

    markup: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    strategy_used: FetchStrategy
    duration_ms: int
    content_hash: str


def hash_content(markup: str) -> str:
    """
    sha256 разметки без волатильных токенов (csrf, session, таймстемпы).
    Одинаковая страница даёт одинаковый hash между загрузками.
    """
    normalized = _VOLATILE_TAG_RE.sub(
        lambda m: _VOLATILE_VALUE_RE.sub(lambda v: v.group(1) + '=""', m.group(0)), markup,
    )
    normalized = _VOLATILE_TOKEN_RE.sub("", normalized)
    normalized = _ISO_TIMESTAMP_RE.sub("", normalized)
    normalized = _LONG_NUMBER_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def classify_fetch_error(error: FetchError) -> FailureLevel:
    """Таймаут, 429, 5xx — transient. 401/403/anti-bot — systemic."""
    if error.timed_out or error.status_code is None:
        return FailureLevel.TRANSIENT
    if error.status_code == 429 or error.status_code >= 500:
        return FailureLevel.TRANSIENT
    if error.status_code in (401, 403, 451):
        return FailureLevel.SYSTEMIC
    return FailureLevel.TRANSIENT


class PageFetcher:
    """Загрузка URL с fallback: static → headless-browser → anti-bot-proxy."""

    def __init__(
        self,
        strategies: dict[FetchStrategy, PageFetcherStrategy],
        timeout: float = 30.0,
    ) -> None:
        self.strategies = strategies
        self.timeout = timeout

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "PageFetcher":
        strategies: dict[FetchStrategy, PageFetcherStrategy] = {
            FetchStrategy.STATIC: StaticFetcher(client),
            FetchStrategy.HEADLESS_BROWSER: HeadlessBrowserFetcher(
                client, settings.browserless_url, settings.browserless_token.get_secret_value(),
            ),
            FetchStrategy.ANTI_BOT_PROXY: AntiBotProxyFetcher(
                client, settings.scrapingbee_api_key.get_secret_value(),
            ),
        }
        return cls(strategies, timeout=settings.fetch_timeout_seconds)

    def chain_for(self, starting: FetchStrategy) -> list[FetchStrategy]:
        """Цепочка fallback без ненастроенных стратегий (нет токена)."""
        chain = []
        for strategy in FALLBACK_CHAINS[starting]:
            fetcher = self.strategies.get(strategy)
            if fetcher is not None and fetcher.configured:
                chain.append(strategy)
        return chain

    async def fetch(
        self,
        url: str,
        starting_strategy: FetchStrategy = FetchStrategy.STATIC,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """
        Пробовать стратегии по цепочке до первого успеха.
        Если упали все — поднимается ошибка первой попытки.
        """
        options = options or FetchOptions(timeout=self.timeout)
        chain = self.chain_for(starting_strategy)
        if not chain:
            raise FetchError(starting_strategy, "no configured fetch strategy")

        first_error: FetchError | None = None
        for position, strategy in enumerate(chain):
            fetcher = self.strategies[strategy]
            try:
                response = await fetcher.fetch(url, options)
                has_fallback = position < len(chain) - 1
                if has_fallback and detect_challenge(response.html):
                    raise FetchError(strategy, "anti-bot challenge page", status_code=403)
            except FetchError as e:
                logger.info(f"[fetcher] {url}: {strategy} failed: {sanitize_error(str(e))}")
                if first_error is None:
                    first_error = e
                continue

            if strategy != starting_strategy:
                logger.info(f"[fetcher] {url}: fell back {starting_strategy} → {strategy}")
            return FetchResult(
                markup=response.html,
                final_url=response.final_url,
                status_code=response.status_code,
                headers=response.headers,
                strategy_used=strategy,
                duration_ms=response.duration_ms,
                content_hash=hash_content(response.html),
            )

        logger.warning(f"[fetcher] {url}: all strategies failed ({', '.join(chain)})")
        raise first_error or FetchError(starting_strategy, "all strategies failed")


async def save_raw_page(db: Client, source_id: str, url: str, result: FetchResult) -> None:
    """Сохранить загруженную страницу — для истории и структурного анализа healer'а."""
    headers: dict[str, Any] = {
        k: v for k, v in result.headers.items()
        if k.lower() in ("content-type", "last-modified", "etag", "server")
    }
    await run_in_thread(
        db.table(RAW_PAGES_TABLE).insert({
            "source_id": source_id,
            "url": url,
            "final_url": result.final_url,
            "html": result.markup[:MAX_STORED_HTML].replace("\x00", ""),
            "content_hash": result.content_hash,
            "status_code": result.status_code,
            "headers": headers,
            "fetcher_used": result.strategy_used,
            "fetch_duration_ms": result.duration_ms,
        }).execute
    )


async def has_content_changed(db: Client, source_id: str, url: str, content_hash: str) -> bool:
    """Сравнить hash с последней сохранённой версией страницы."""
    result = await run_in_thread(
        db.table(RAW_PAGES_TABLE)
        .select("content_hash")
        .eq("source_id", source_id)
        .eq("url", url)
        .order("created_at", desc=True)
        .limit(1)
        .execute
    )
    if not result.data:
        return True
    return result.data[0]["content_hash"] != content_hash

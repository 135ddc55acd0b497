"""Краулер листингов: страница источника → карточки событий → элементы очереди.

Здесь работают селекторы источника, поэтому здесь же ловится
zero-yield: селекторы перестали находить карточки там, где они были.
"""
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel

from src.database import (
    create_queue_item_if_not_exists,
    list_crawlable_sources,
    note_source_rate_limited,
    recent_item_titles,
    record_source_failure,
    reserve_source_request,
    sanitize_error,
    update_source_crawl_state,
    utcnow,
)
from src.fetching.analyzer import analyze_markup, apply_recommendation, recommend_strategy
from src.fetching.page_fetcher import (
    FetchResult,
    classify_fetch_error,
    has_content_changed,
    save_raw_page,
)
from src.fetching.strategies import FetchError
from src.healing.structure import discover_event_links, extract_cards
from src.models.queue_item import FailureLevel
from src.models.source import FetchStrategy, SelectorConfig, Source
from src.pipeline.context import PipelineContext

DEFAULT_RATE_LIMIT_SECONDS = 60.0

CrawlStatus = Literal["skipped", "failed", "unchanged", "crawled"]


class CrawlResult(BaseModel):
    source_id: str
    status: CrawlStatus
    cards: int = 0
    enqueued: int = 0
    healed: bool = False
    reason: str | None = None


async def _fetch_listing(ctx: PipelineContext, source: Source) -> FetchResult | CrawlResult:
    strategy = source.fetch_strategy or FetchStrategy.STATIC
    await reserve_source_request(ctx.db, source.id)
    try:
        result = await ctx.fetcher.fetch(source.url, strategy)
    except FetchError as e:
        reason = sanitize_error(str(e))
        level = classify_fetch_error(e)
        await ctx.breaker.record_failure(source.id, reason)
        if e.status_code == 429:
            await note_source_rate_limited(
                ctx.db, source.id, e.retry_after or DEFAULT_RATE_LIMIT_SECONDS
            )
        await record_source_failure(ctx.db, source.id, level, reason)
        logger.warning(f"[crawler] Source {source.id}: listing fetch failed ({level}): {reason}")
        return CrawlResult(source_id=source.id, status="failed", reason=reason)

    await ctx.breaker.record_success(source.id)
    recommendation = recommend_strategy(strategy, analyze_markup(result.markup), result.strategy_used)
    await apply_recommendation(ctx.db, source.id, recommendation)
    return result


async def _heal(
    ctx: PipelineContext, source: Source, html: str
) -> tuple[SelectorConfig | None, str]:
    """Вернуть рабочий конфиг после лечения или причину отказа."""
    if ctx.healer is None:
        return None, "selector healer unavailable"
    titles = await recent_item_titles(ctx.db, source.id)
    result = await ctx.healer.heal(source, html, titles)
    if result.success and result.new_config is not None:
        return result.new_config, result.reasoning
    if result.success and result.old_config is not None:
        return result.old_config, result.reasoning
    return None, result.reasoning or "healer rejected proposal"


def _hints(card: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in card.items() if k != "url" and v}


async def crawl_source(ctx: PipelineContext, source: Source) -> CrawlResult:
    """Один проход по листингу источника."""
    if source.is_rate_limited(utcnow()):
        return CrawlResult(source_id=source.id, status="skipped", reason="rate limited")
    decision = await ctx.breaker.check(source.id)
    if not decision.allowed:
        logger.debug(f"[crawler] Source {source.id}: circuit {decision.state}, skipped")
        return CrawlResult(source_id=source.id, status="skipped", reason=f"circuit {decision.state}")

    fetched = await _fetch_listing(ctx, source)
    if isinstance(fetched, CrawlResult):
        return fetched

    changed = await has_content_changed(ctx.db, source.id, source.url, fetched.content_hash)
    await save_raw_page(ctx.db, source.id, source.url, fetched)
    if not changed:
        await update_source_crawl_state(ctx.db, source.id, content_hash=fetched.content_hash)
        logger.debug(f"[crawler] Source {source.id}: listing unchanged")
        return CrawlResult(source_id=source.id, status="unchanged")

    html = fetched.markup
    base_url = fetched.final_url or source.url
    healed = False
    config = source.extraction_config

    if config is not None:
        cards = extract_cards(html, config, base_url)
        if not cards and (source.expected_event_count or 0) > 0:
            logger.warning(
                f"[crawler] Source {source.id}: zero yield "
                f"(expected ~{source.expected_event_count}), healing selectors"
            )
            healed_config, reason = await _heal(ctx, source, html)
            if healed_config is None:
                await record_source_failure(ctx.db, source.id, FailureLevel.REPAIR_FAILURE, reason)
                return CrawlResult(source_id=source.id, status="failed", reason=reason)
            cards = extract_cards(html, healed_config, base_url)
            healed = True
    else:
        cards = discover_event_links(html, base_url)

    enqueued = 0
    if cards:
        for card in cards:
            item_id = await create_queue_item_if_not_exists(
                ctx.db, source.id, source.url, card["url"],
                priority=source.priority, hints=_hints(card),
            )
            if item_id:
                enqueued += 1
    elif config is None:
        # Листинг без ссылок на события: сама страница и есть событие
        if await create_queue_item_if_not_exists(ctx.db, source.id, source.url, None, source.priority):
            enqueued = 1

    await update_source_crawl_state(
        ctx.db, source.id,
        content_hash=fetched.content_hash,
        expected_event_count=len(cards) if cards else None,
    )
    logger.info(
        f"[crawler] Source {source.id}: {len(cards)} cards, {enqueued} new items"
        + (" (after healing)" if healed else "")
    )
    return CrawlResult(
        source_id=source.id, status="crawled", cards=len(cards), enqueued=enqueued, healed=healed,
    )


async def crawl_sources(ctx: PipelineContext, limit: int = 20) -> list[CrawlResult]:
    """Пройти по давно не скрапленным источникам. Ошибка одного не останавливает остальные."""
    results: list[CrawlResult] = []
    for source in await list_crawlable_sources(ctx.db, limit):
        try:
            results.append(await crawl_source(ctx, source))
        except Exception as e:
            logger.exception(f"[crawler] Source {source.id}: crawl crashed: {e}")
            results.append(
                CrawlResult(source_id=source.id, status="failed", reason=sanitize_error(str(e)))
            )
    return results

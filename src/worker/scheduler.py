"""APScheduler задачи обслуживания пайплайна."""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from src.ai.enrichment import build_structured_address
from src.database import (
    count_unresolved_failures,
    list_items_at_stage,
    move_item,
    recover_stale_claims,
    retry_failed_items,
)
from src.geo.geocoder import AddressQuery
from src.models.queue_item import Stage
from src.pipeline.context import PipelineContext
from src.pipeline.crawler import crawl_sources
from src.pipeline.errors import PipelineError
from src.worker.handlers import load_event

MAX_GEOCODE_ATTEMPTS = 3
FAILURE_ALERT_THRESHOLD = 50


async def run_crawl(ctx: PipelineContext) -> None:
    """Обойти листинги источников и поставить новые события в очередь."""
    results = await crawl_sources(ctx, ctx.settings.crawl_sources_limit)
    enqueued = sum(r.enqueued for r in results)
    failed = sum(1 for r in results if r.status == "failed")
    logger.info(f"[crawl] {len(results)} sources crawled, {enqueued} new items, {failed} failed")


async def recover_claims(ctx: PipelineContext) -> None:
    await recover_stale_claims(ctx.db, ctx.settings.claim_timeout_minutes)


async def retry_failed(ctx: PipelineContext) -> None:
    await retry_failed_items(ctx.db, ctx.settings.max_failure_count)


async def retry_geo_incomplete(ctx: PipelineContext, limit: int = 50) -> None:
    """
    Повторить геокодинг отложенных элементов. Найденные координаты
    возвращают элемент в deduplicating, после трёх попыток — карантин.
    """
    resolved = 0
    quarantined = 0
    for item in await list_items_at_stage(ctx.db, Stage.GEO_INCOMPLETE, limit):
        attempts = item.geocode_attempts + 1
        try:
            address = build_structured_address(load_event(item))
        except PipelineError as e:
            logger.warning(f"[geocode] Item {item.id}: {e}")
            address = None

        coords = None
        if address is not None:
            coords = await ctx.geocoder.resolve(AddressQuery.from_structured(address))

        if coords is not None:
            if await move_item(ctx.db, item.id, Stage.GEO_INCOMPLETE, Stage.DEDUPLICATING, {
                "lat": coords.lat, "lng": coords.lng,
                "geocode_status": coords.source, "geocode_attempts": attempts,
            }):
                resolved += 1
        elif attempts >= MAX_GEOCODE_ATTEMPTS:
            if await move_item(ctx.db, item.id, Stage.GEO_INCOMPLETE, Stage.QUARANTINED, {
                "geocode_status": "failed", "geocode_attempts": attempts,
                "last_failure_reason": f"Geocoding failed after {attempts} attempts",
            }):
                quarantined += 1
        else:
            await move_item(ctx.db, item.id, Stage.GEO_INCOMPLETE, Stage.GEO_INCOMPLETE, {
                "geocode_attempts": attempts,
            })

    if resolved or quarantined:
        logger.info(f"[geocode] geo_incomplete: resolved={resolved}, quarantined={quarantined}")


async def check_circuit_cooldowns(ctx: PipelineContext) -> None:
    ready = await ctx.breaker.check_cooldowns()
    if ready:
        logger.info(f"[circuit_breaker] Ready for a trial request: {', '.join(ready[:10])}")


async def alert_failure_backlog(ctx: PipelineContext) -> None:
    unresolved = await count_unresolved_failures(ctx.db)
    if unresolved > FAILURE_ALERT_THRESHOLD:
        logger.warning(
            f"[alert] {unresolved} unresolved pipeline failures "
            f"(threshold {FAILURE_ALERT_THRESHOLD})"
        )


def create_scheduler(ctx: PipelineContext) -> AsyncIOScheduler:
    """Создать и настроить APScheduler."""
    scheduler = AsyncIOScheduler(
        job_defaults={
            # Дефолтный misfire_grace_time=1с слишком мал для async job'ов:
            # при задержке event loop job'ы тихо пропускаются.
            "misfire_grace_time": None,
            "coalesce": True,
        }
    )

    scheduler.add_job(
        run_crawl,
        "interval",
        minutes=ctx.settings.crawl_interval_minutes,
        kwargs={"ctx": ctx},
        id="crawl_sources",
    )

    # Снять claim'ы умерших воркеров
    scheduler.add_job(
        recover_claims,
        "interval",
        minutes=5,
        kwargs={"ctx": ctx},
        id="recover_stale_claims",
    )

    scheduler.add_job(
        retry_failed,
        "interval",
        minutes=5,
        kwargs={"ctx": ctx},
        id="retry_failed_items",
    )

    scheduler.add_job(
        retry_geo_incomplete,
        "interval",
        hours=1,
        kwargs={"ctx": ctx},
        id="retry_geo_incomplete",
    )

    scheduler.add_job(
        check_circuit_cooldowns,
        "interval",
        minutes=5,
        kwargs={"ctx": ctx},
        id="check_circuit_cooldowns",
    )

    scheduler.add_job(
        alert_failure_backlog,
        "interval",
        minutes=15,
        kwargs={"ctx": ctx},
        id="alert_failure_backlog",
    )

    return scheduler

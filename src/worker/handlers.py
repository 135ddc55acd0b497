"""Обработчики стадий элемента очереди и цикл обработки одного элемента."""
import asyncio
import hashlib
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import ValidationError

from src.ai.embedding import build_embedding_text, generate_embedding
from src.ai.enrichment import build_structured_address
from src.ai.markdown import html_to_markdown
from src.ai.schemas import SocialFiveEvent, is_placeholder
from src.database import (
    EVENTS_TABLE,
    find_persisted_duplicate,
    get_source,
    insert_catalog_event,
    note_source_rate_limited,
    record_source_success,
    reserve_source_request,
    run_in_thread,
    sanitize_error,
    set_duplicate_of,
    update_source_strategy,
)
from src.fetching.analyzer import analyze_markup, apply_recommendation, recommend_strategy
from src.fetching.page_fetcher import (
    MAX_STORED_HTML,
    FetchResult,
    classify_fetch_error,
    save_raw_page,
)
from src.fetching.strategies import FetchError
from src.geo.geocoder import AddressQuery
from src.models.queue_item import HANDOFF_STAGES, FailureLevel, QueueItem, Stage
from src.models.source import FetchStrategy
from src.pipeline.context import PipelineContext
from src.pipeline.coordinator import NETWORK_STAGES
from src.pipeline.errors import (
    CircuitOpenError,
    PipelineError,
    SourceDriftError,
    SystemicError,
    TransientError,
)

# Локальные повторы только для стадий без обращения к источнику:
# сетевые отказы идут через circuit breaker и backoff очереди
LOCAL_TRANSIENT_RETRIES = 2
_LOCAL_RETRY_DELAY_SECONDS = 1.0
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DEFAULT_RATE_LIMIT_SECONDS = 60.0


@dataclass
class StageResult:
    """Куда элемент идёт дальше и что записать в строку очереди."""

    stage: Stage
    payload: dict[str, Any] = field(default_factory=dict)


StageHandler = Callable[[PipelineContext, QueueItem], Awaitable[StageResult]]


def event_fingerprint(event: SocialFiveEvent) -> str:
    """sha256 от названия, даты и площадки — отпечаток для дедупликации."""
    parts = [event.title, event.event_date, event.venue_name or ""]
    normalized = "|".join(re.sub(r"\s+", " ", p).strip().lower() for p in parts)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def load_event(item: QueueItem) -> SocialFiveEvent:
    """Событие, сохранённое стадией extracting."""
    raw = (item.extracted_data or {}).get("event")
    if not raw:
        raise SourceDriftError(f"Item {item.id} has no extracted event", "missing_event")
    try:
        return SocialFiveEvent.model_validate(raw)
    except ValidationError as e:
        raise SourceDriftError(f"Stored event is invalid: {e}", "invalid_event")


async def _ensure_gate(ctx: PipelineContext, item: QueueItem) -> None:
    """Проверить circuit, если он не был проверен при claim."""
    if item.gated:
        return
    decision = await ctx.breaker.check(item.source_id)
    if not decision.allowed:
        raise CircuitOpenError(f"Circuit {decision.state} for source {item.source_id}")
    item.gated = True
    item.trial = decision.trial


async def _fetch(
    ctx: PipelineContext, item: QueueItem, url: str, strategy: FetchStrategy
) -> FetchResult:
    """Загрузка с учётом circuit breaker. FetchError → исключение таксономии."""
    await reserve_source_request(ctx.db, item.source_id)
    try:
        result = await ctx.fetcher.fetch(url, strategy)
    except FetchError as e:
        reason = sanitize_error(str(e))
        await ctx.breaker.record_failure(item.source_id, reason)
        item.trial = False
        if e.status_code == 429:
            await note_source_rate_limited(
                ctx.db, item.source_id, e.retry_after or _DEFAULT_RATE_LIMIT_SECONDS
            )
        code = f"http_{e.status_code}" if e.status_code else ("timeout" if e.timed_out else "network")
        if classify_fetch_error(e) == FailureLevel.SYSTEMIC:
            raise SystemicError(reason, code)
        raise TransientError(reason, code)
    await ctx.breaker.record_success(item.source_id)
    item.trial = False
    return result


async def handle_discovered(ctx: PipelineContext, item: QueueItem) -> StageResult:
    return StageResult(Stage.ANALYZING)


async def handle_analyzing(ctx: PipelineContext, item: QueueItem) -> StageResult:
    """
    Выбрать стратегию загрузки. У источника без стратегии — пробная
    static-загрузка и рекомендация анализатора.
    """
    source = await get_source(ctx.db, item.source_id)
    if source is None:
        raise SystemicError(f"Source {item.source_id} not found", "source_missing")
    if source.quarantined or not source.enabled:
        raise SystemicError(f"Source {source.id} is disabled or quarantined", "source_disabled")
    if source.fetch_strategy is not None:
        return StageResult(Stage.AWAITING_FETCH)

    await _ensure_gate(ctx, item)
    sample = await _fetch(ctx, item, item.target_url, FetchStrategy.STATIC)
    recommendation = recommend_strategy(
        FetchStrategy.STATIC, analyze_markup(sample.markup), sample.strategy_used,
    )
    if not await apply_recommendation(ctx.db, source.id, recommendation):
        await update_source_strategy(ctx.db, source.id, sample.strategy_used)
    logger.info(
        f"[analyzer] Source {source.id}: strategy → {recommendation.strategy} "
        f"({', '.join(recommendation.reasons) or 'static fetch ok'})"
    )
    return StageResult(Stage.AWAITING_FETCH)


async def handle_awaiting_fetch(ctx: PipelineContext, item: QueueItem) -> StageResult:
    return StageResult(Stage.FETCHING)


async def handle_fetching(ctx: PipelineContext, item: QueueItem) -> StageResult:
    source = await get_source(ctx.db, item.source_id)
    if source is None:
        raise SystemicError(f"Source {item.source_id} not found", "source_missing")
    await _ensure_gate(ctx, item)
    result = await _fetch(ctx, item, item.target_url, source.fetch_strategy or FetchStrategy.STATIC)
    await save_raw_page(ctx.db, source.id, item.target_url, result)
    return StageResult(Stage.CLEANING, {
        "raw_html": result.markup[:MAX_STORED_HTML].replace("\x00", ""),
        "content_hash": result.content_hash,
    })


async def handle_cleaning(ctx: PipelineContext, item: QueueItem) -> StageResult:
    if not item.raw_html:
        raise TransientError(f"Item {item.id} has no raw html", "missing_html")
    markdown = html_to_markdown(item.raw_html, item.target_url)
    if not markdown.strip():
        raise SourceDriftError("Page has no readable content", "empty_content")
    return StageResult(Stage.EXTRACTING, {"cleaned_markdown": markdown})


async def handle_extracting(ctx: PipelineContext, item: QueueItem) -> StageResult:
    if not item.raw_html:
        raise TransientError(f"Item {item.id} has no raw html", "missing_html")
    result = await ctx.enrichment.extract(item.raw_html, item.target_url, item.hints)
    if result is None:
        raise TransientError("No extractor produced an event", "extraction_empty")
    return StageResult(Stage.VALIDATING, {
        "extracted_data": {
            "hints": item.hints,
            "event": result.event.model_dump(),
            "completeness_score": result.completeness_score,
            "confidence": result.confidence,
            "extraction_method": result.method,
        },
    })


async def handle_validating(ctx: PipelineContext, item: QueueItem) -> StageResult:
    event = load_event(item)
    if is_placeholder(event.title):
        raise SourceDriftError(f"Extracted event has no real title: {event.title!r}", "validation_failed")
    if is_placeholder(event.venue_name):
        raise SourceDriftError(f"Extracted event has no real venue: {event.venue_name!r}", "validation_failed")
    if not _ISO_DATE_RE.match(event.event_date or ""):
        raise SourceDriftError(f"Extracted event has no valid date: {event.event_date!r}", "validation_failed")
    return StageResult(Stage.ENRICHING)


async def handle_enriching(ctx: PipelineContext, item: QueueItem) -> StageResult:
    event = load_event(item)
    address = build_structured_address(event)
    attempts = item.geocode_attempts + 1
    if address is None:
        return StageResult(Stage.GEO_INCOMPLETE, {
            "geocode_status": "no_address", "geocode_attempts": attempts,
        })
    coords = await ctx.geocoder.resolve(AddressQuery.from_structured(address))
    if coords is None:
        logger.info(f"[geocode] Item {item.id}: unresolved, parked as geo_incomplete")
        return StageResult(Stage.GEO_INCOMPLETE, {
            "geocode_status": "failed", "geocode_attempts": attempts,
        })
    return StageResult(Stage.DEDUPLICATING, {
        "lat": coords.lat, "lng": coords.lng, "geocode_status": coords.source,
        "geocode_attempts": attempts,
    })


async def handle_deduplicating(ctx: PipelineContext, item: QueueItem) -> StageResult:
    event = load_event(item)
    fingerprint = event_fingerprint(event)
    duplicate = await find_persisted_duplicate(ctx.db, fingerprint, item.id)
    if duplicate is not None:
        canonical_id = duplicate.get("duplicate_of") or duplicate["id"]
        event_id = await set_duplicate_of(ctx.db, item.id, canonical_id)
        logger.info(f"[dedupe] Item {item.id} duplicates {canonical_id} (event {event_id})")
        return StageResult(Stage.INDEXED, {
            "event_fingerprint": fingerprint, "duplicate_of": canonical_id, "event_id": event_id,
        })
    return StageResult(Stage.READY_TO_PERSIST, {"event_fingerprint": fingerprint})


def build_catalog_row(item: QueueItem, event: SocialFiveEvent) -> dict[str, Any]:
    data = item.extracted_data or {}
    return {
        "title": event.title,
        "description": event.description,
        "category": event.category,
        "event_date": event.event_date,
        "start_time": event.start_time,
        "doors_open_time": event.doors_open_time,
        "end_time": event.end_time,
        "estimated_duration_minutes": event.estimated_duration_minutes,
        "venue_name": event.venue_name,
        "venue_address": event.street_address,
        "city": event.city,
        "postal_code": event.postal_code,
        "structured_address": build_structured_address(event),
        "lat": item.lat,
        "lng": item.lng,
        "language_profile": event.language_profile,
        "interaction_mode": event.interaction_mode,
        "persona_tags": event.persona_tags,
        "image_url": event.image_url,
        "ticket_url": event.ticket_url,
        "price_info": event.price_info,
        "source_id": item.source_id,
        "source_url": item.target_url,
        "content_hash": item.content_hash,
        "event_fingerprint": item.event_fingerprint,
        "completeness_score": data.get("completeness_score"),
        "extraction_method": data.get("extraction_method"),
    }


async def handle_ready_to_persist(ctx: PipelineContext, item: QueueItem) -> StageResult:
    if item.event_id:
        # Уже вставлено до падения воркера
        return StageResult(Stage.VECTORIZING)
    event = load_event(item)
    event_id = await insert_catalog_event(ctx.db, build_catalog_row(item, event))
    try:
        await record_source_success(ctx.db, item.source_id, events=1)
    except Exception as e:
        logger.error(f"[persist] Source health update failed for {item.source_id}: {e}")
    logger.info(f"[persist] Item {item.id} → event {event_id}")
    return StageResult(Stage.VECTORIZING, {"event_id": event_id})


async def handle_vectorizing(ctx: PipelineContext, item: QueueItem) -> StageResult:
    """Embedding не обязателен: без ключа или при ошибке событие всё равно индексируется."""
    if ctx.openai_client is None or not item.event_id:
        return StageResult(Stage.INDEXED)
    event = load_event(item)
    embedding = await generate_embedding(ctx.openai_client, build_embedding_text(event))
    if embedding is not None:
        try:
            await run_in_thread(
                ctx.db.table(EVENTS_TABLE)
                .update({"embedding": embedding})
                .eq("id", item.event_id)
                .execute
            )
        except Exception as e:
            logger.error(f"[embedding] Failed to save embedding for event {item.event_id}: {e}")
    return StageResult(Stage.INDEXED)


STAGE_HANDLERS: dict[Stage, StageHandler] = {
    Stage.DISCOVERED: handle_discovered,
    Stage.ANALYZING: handle_analyzing,
    Stage.AWAITING_FETCH: handle_awaiting_fetch,
    Stage.FETCHING: handle_fetching,
    Stage.CLEANING: handle_cleaning,
    Stage.EXTRACTING: handle_extracting,
    Stage.VALIDATING: handle_validating,
    Stage.ENRICHING: handle_enriching,
    Stage.DEDUPLICATING: handle_deduplicating,
    Stage.READY_TO_PERSIST: handle_ready_to_persist,
    Stage.VECTORIZING: handle_vectorizing,
}


def _apply_payload(item: QueueItem, payload: dict[str, Any]) -> None:
    for key, value in payload.items():
        if key in QueueItem.model_fields:
            setattr(item, key, value)


async def _fail(ctx: PipelineContext, item: QueueItem, error: PipelineError) -> Stage:
    try:
        return await ctx.coordinator.fail(item, error.failure_level, str(error), error.error_code)
    except Exception as e:
        # Claim протухнет и элемент подберёт recover_stale_claims
        logger.exception(f"[worker] Item {item.id}: failure bookkeeping failed: {e}")
        return item.stage


async def process_item(ctx: PipelineContext, item: QueueItem) -> Stage:
    """
    Провести claim'нутый элемент по стадиям до ближайшей handoff-стадии.
    Промежуточные стадии коммитятся checkpoint'ом, claim держится.
    Исключения наружу не выходят. Возвращает стадию, на которой остановился элемент.
    """
    try:
        return await _run_stages(ctx, item)
    finally:
        if item.trial:
            # Элемент ушёл без запроса к источнику: circuit ждёт исход пробы
            item.trial = False
            await ctx.breaker.release_trial(item.source_id)


async def _run_stages(ctx: PipelineContext, item: QueueItem) -> Stage:
    local_retries = 0
    while True:
        handler = STAGE_HANDLERS.get(item.stage)
        if handler is None:
            logger.warning(f"[worker] Item {item.id}: no handler for stage {item.stage}")
            return item.stage

        try:
            result = await handler(ctx, item)
        except CircuitOpenError as e:
            logger.info(f"[worker] Item {item.id}: {e}, releasing claim")
            try:
                await ctx.coordinator.release(item)
            except Exception as release_error:
                logger.error(f"[worker] Item {item.id}: release failed: {release_error}")
            return item.stage
        except TransientError as e:
            if item.stage not in NETWORK_STAGES and local_retries < LOCAL_TRANSIENT_RETRIES:
                local_retries += 1
                logger.info(
                    f"[worker] Item {item.id}: transient at {item.stage}, "
                    f"local retry {local_retries}/{LOCAL_TRANSIENT_RETRIES}: {e}"
                )
                await asyncio.sleep(_LOCAL_RETRY_DELAY_SECONDS * local_retries)
                continue
            return await _fail(ctx, item, e)
        except PipelineError as e:
            return await _fail(ctx, item, e)
        except Exception as e:
            logger.exception(f"[worker] Item {item.id}: unexpected error at {item.stage}: {e}")
            return await _fail(ctx, item, TransientError(sanitize_error(str(e)), "unexpected"))

        local_retries = 0
        try:
            if result.stage in HANDOFF_STAGES:
                moved = await ctx.coordinator.advance(item, result.stage, result.payload)
            else:
                moved = await ctx.coordinator.checkpoint(item, result.stage, result.payload)
        except Exception as e:
            logger.exception(f"[worker] Item {item.id}: commit of {result.stage} failed: {e}")
            return item.stage
        if not moved:
            return item.stage
        _apply_payload(item, result.payload)
        if result.stage in HANDOFF_STAGES:
            return result.stage

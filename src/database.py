"""Операции с Supabase для пайплайна: очередь, источники, журнал отказов."""
import asyncio
import re
from collections import Counter
from collections.abc import Callable, Collection, Mapping
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any

from loguru import logger
from postgrest.exceptions import APIError as PostgrestAPIError
from postgrest.types import CountMethod
from supabase import Client

from src.models.queue_item import FailureLevel, QueueItem, Stage
from src.models.source import FetchStrategy, RateLimitState, Source

QUEUE_TABLE = "sg_pipeline_queue"
SOURCES_TABLE = "sg_sources"
FAILURE_LOG_TABLE = "sg_failure_log"
EVENTS_TABLE = "events"

# Штраф к reliability_score источника по уровню отказа
_RELIABILITY_PENALTY: dict[FailureLevel, float] = {
    FailureLevel.TRANSIENT: 0.0,
    FailureLevel.SOURCE_DRIFT: 0.0,
    FailureLevel.REPAIR_FAILURE: 5.0,
    FailureLevel.SYSTEMIC: 5.0,
}
_RELIABILITY_RECOVERY = 2.0
SOURCE_QUARANTINE_AFTER = 5
_CAS_ATTEMPTS = 5
_MAX_DUPLICATE_CHAIN = 20
# Дольше в процессе не ждём: claim истечёт и элемент заберёт другой воркер
MAX_RETRY_AFTER_SECONDS = 60.0
_RATE_WINDOW = timedelta(minutes=1)


class ConcurrentUpdateError(Exception):
    """CAS-обновление не прошло за отведённое число попыток."""


async def run_in_thread(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Выполнить синхронный вызов Supabase в отдельном потоке."""
    return await asyncio.to_thread(func, *args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(UTC)


def sanitize_error(error: str) -> str:
    """Убрать потенциальные креденшалы из сообщения об ошибке."""
    error = re.sub(r"://[^@\s]+@", "://***:***@", error)
    return re.sub(r"(?i)\b(api_key|token|key)=[^&\s\"']+", r"\1=***", error)


def get_backoff_seconds(attempts: int) -> int:
    """
    Экспоненциальный backoff для retry.
    attempt 1 → 300с (5мин), attempt 2 → 900с (15мин), attempt 3 → 2700с (45мин).
    """
    return 300 * (3 ** max(0, attempts - 1))


def parse_retry_after(headers: Mapping[str, str] | None) -> float | None:
    """
    Retry-After в секундах: число или HTTP-дата.
    Нет заголовка или мусор → None.
    """
    value = headers.get("retry-after") if headers is not None else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return max(0.0, (moment - utcnow()).total_seconds())


def decide_failure_stage(level: FailureLevel, failure_count: int, max_failure_count: int) -> Stage:
    """
    Куда уходит элемент после отказа.
    transient/source_drift → failed (retry) пока failure_count < max, дальше quarantined.
    repair_failure/systemic → сразу quarantined (нужна ручная проверка).
    """
    if level in (FailureLevel.REPAIR_FAILURE, FailureLevel.SYSTEMIC):
        return Stage.QUARANTINED
    if failure_count >= max_failure_count:
        return Stage.QUARANTINED
    return Stage.FAILED


async def compare_and_swap(
    db: Client,
    table: str,
    key_column: str,
    key: str,
    mutate: Callable[[dict[str, Any]], dict[str, Any] | None],
    version_column: str = "version",
) -> dict[str, Any] | None:
    """
    Атомарный read-modify-write через оптимистичную блокировку.

    mutate получает текущую строку и возвращает изменения (или None — без записи).
    UPDATE проходит только если version не изменился с момента чтения,
    иначе перечитываем и пробуем снова. None — строки нет.
    """
    for _ in range(_CAS_ATTEMPTS):
        result = await run_in_thread(
            db.table(table).select("*").eq(key_column, key).limit(1).execute
        )
        if not result.data:
            return None
        row = result.data[0]
        changes = mutate(dict(row))
        if changes is None:
            return row

        version = row.get(version_column) or 0
        updated = await run_in_thread(
            db.table(table)
            .update({**changes, version_column: version + 1})
            .eq(key_column, key)
            .eq(version_column, version)
            .execute
        )
        if updated.data:
            return updated.data[0]
        logger.debug(f"[cas] {table}.{key} version conflict at v{version}, retrying")

    raise ConcurrentUpdateError(f"{table}.{key}: CAS failed after {_CAS_ATTEMPTS} attempts")


# ---------------------------------------------------------------------------
# Очередь
# ---------------------------------------------------------------------------


def _claim_filter(claim_timeout_minutes: int) -> str:
    """Элемент свободен: claim'а нет или он протух (воркер умер)."""
    threshold = (utcnow() - timedelta(minutes=claim_timeout_minutes)).isoformat()
    return f"worker_id.is.null,claimed_at.lt.{threshold}"


async def fetch_claim_candidates(
    db: Client,
    stage: Stage,
    limit: int,
    claim_timeout_minutes: int,
    max_failure_count: int,
) -> list[QueueItem]:
    """Кандидаты на claim: свободные элементы стадии, priority DESC, created_at ASC."""
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("*")
        .eq("stage", stage)
        .lt("failure_count", max_failure_count)
        .or_(_claim_filter(claim_timeout_minutes))
        .order("priority", desc=True)
        .order("created_at", desc=False)
        .limit(limit)
        .execute
    )
    return [QueueItem.model_validate(row) for row in result.data]


async def try_claim_item(
    db: Client,
    item_id: str,
    stage: Stage,
    worker_id: str,
    claim_timeout_minutes: int,
) -> QueueItem | None:
    """
    Атомарно забрать элемент: UPDATE ... WHERE id=? AND stage=? AND (свободен).
    Вернёт None, если другой воркер успел раньше.
    """
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .update({"worker_id": worker_id, "claimed_at": utcnow().isoformat()})
        .eq("id", item_id)
        .eq("stage", stage)
        .or_(_claim_filter(claim_timeout_minutes))
        .execute
    )
    if not result.data:
        return None
    return QueueItem.model_validate(result.data[0])


async def advance_item(
    db: Client,
    item_id: str,
    next_stage: Stage,
    payload: dict[str, Any] | None = None,
    worker_id: str | None = None,
) -> bool:
    """
    Перевести элемент на next_stage и снять claim.
    payload мержится поверх строки (None-значения пропускаются).
    С worker_id — только если claim всё ещё наш; False если claim потерян.
    """
    data: dict[str, Any] = {
        k: v for k, v in (payload or {}).items() if v is not None
    }
    data.update({
        "stage": next_stage,
        "stage_updated_at": utcnow().isoformat(),
        "worker_id": None,
        "claimed_at": None,
    })
    query = db.table(QUEUE_TABLE).update(data).eq("id", item_id)
    if worker_id is not None:
        query = query.eq("worker_id", worker_id)
    result = await run_in_thread(query.execute)
    if not result.data:
        logger.warning(f"[queue] Item {item_id}: claim lost before advance to {next_stage}")
        return False
    return True


async def checkpoint_item(
    db: Client,
    item_id: str,
    stage: Stage,
    worker_id: str,
    payload: dict[str, Any] | None = None,
) -> bool:
    """Закоммитить промежуточную стадию, сохранив (и продлив) claim."""
    data: dict[str, Any] = {
        k: v for k, v in (payload or {}).items() if v is not None
    }
    now = utcnow().isoformat()
    data.update({"stage": stage, "stage_updated_at": now, "claimed_at": now})
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .update(data)
        .eq("id", item_id)
        .eq("worker_id", worker_id)
        .execute
    )
    if not result.data:
        logger.warning(f"[queue] Item {item_id}: claim lost at checkpoint {stage}")
        return False
    return True


async def record_item_failure(
    db: Client,
    item: QueueItem,
    level: FailureLevel,
    error_message: str,
    error_code: str | None = None,
    max_failure_count: int = 3,
) -> Stage:
    """
    Записать отказ: строка в sg_failure_log + bookkeeping элемента.
    Возвращает стадию, в которую ушёл элемент (failed/quarantined).
    """
    safe_error = sanitize_error(error_message)
    failure_count = item.failure_count + 1
    outcome = decide_failure_stage(level, failure_count, max_failure_count)
    now = utcnow()

    await run_in_thread(
        db.table(FAILURE_LOG_TABLE).insert({
            "queue_item_id": item.id,
            "source_id": item.source_id,
            "stage": item.stage,
            "failure_level": level,
            "error_code": error_code,
            "error_message": safe_error,
            "retry_count": item.failure_count,
            "resolved": False,
        }).execute
    )

    update: dict[str, Any] = {
        "stage": outcome,
        "failure_level": level,
        "failure_count": failure_count,
        "last_failure_at": now.isoformat(),
        "last_failure_reason": safe_error,
        "failed_at_stage": item.stage,
        "worker_id": None,
        "claimed_at": None,
        "next_retry_at": None,
    }
    if outcome == Stage.FAILED:
        backoff = get_backoff_seconds(failure_count)
        update["next_retry_at"] = (now + timedelta(seconds=backoff)).isoformat()
        logger.info(
            f"[queue] Item {item.id} failed at {item.stage} ({level}), "
            f"retry in {backoff}s ({failure_count}/{max_failure_count})"
        )
    else:
        logger.error(f"[queue] Item {item.id} quarantined at {item.stage} ({level}): {safe_error}")

    await run_in_thread(
        db.table(QUEUE_TABLE).update(update).eq("id", item.id).execute
    )
    return outcome


async def recover_stale_claims(db: Client, claim_timeout_minutes: int = 15) -> int:
    """
    Снять протухшие claim'ы (воркер умер между стадиями).
    Стадия не меняется — элемент продолжит с последней закоммиченной.
    """
    threshold = (utcnow() - timedelta(minutes=claim_timeout_minutes)).isoformat()
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .update({"worker_id": None, "claimed_at": None})
        .not_.is_("worker_id", "null")
        .lt("claimed_at", threshold)
        .execute
    )
    recovered = len(result.data or [])
    if recovered:
        logger.warning(f"[queue] Recovered {recovered} stale claims (>{claim_timeout_minutes}min)")
    return recovered


async def retry_failed_items(
    db: Client, max_failure_count: int = 3, limit: int = 100
) -> tuple[int, int]:
    """
    Вернуть failed элементы с истёкшим backoff на стадию, где они упали.
    Исчерпавшие попытки — в quarantined. Возвращает (requeued, quarantined).
    """
    now = utcnow().isoformat()
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("id, failure_count, failed_at_stage")
        .eq("stage", Stage.FAILED)
        .or_(f"next_retry_at.is.null,next_retry_at.lte.{now}")
        .limit(limit)
        .execute
    )

    requeued = 0
    quarantined = 0
    for row in result.data:
        if row.get("failure_count", 0) >= max_failure_count:
            update: dict[str, Any] = {"stage": Stage.QUARANTINED}
            quarantined += 1
        else:
            update = {
                "stage": row.get("failed_at_stage") or Stage.DISCOVERED,
                "next_retry_at": None,
            }
            requeued += 1
        # stage=failed: элемент мог уже вернуть другой воркер
        await run_in_thread(
            db.table(QUEUE_TABLE)
            .update({**update, "stage_updated_at": now})
            .eq("id", row["id"])
            .eq("stage", Stage.FAILED)
            .execute
        )

    if requeued or quarantined:
        logger.info(f"[queue] Failed items: requeued={requeued}, quarantined={quarantined}")
    return requeued, quarantined


async def create_queue_item_if_not_exists(
    db: Client,
    source_id: str,
    source_url: str,
    detail_url: str | None,
    priority: int = 50,
    hints: dict[str, Any] | None = None,
) -> str | None:
    """
    Идемпотентно создать элемент очереди по (source_id, detail_url).
    Гонку двух краулеров закрывает уникальный индекс — 23505 = уже есть.
    """
    query = db.table(QUEUE_TABLE).select("id").eq("source_id", source_id)
    if detail_url is None:
        query = query.is_("detail_url", "null")
    else:
        query = query.eq("detail_url", detail_url)
    existing = await run_in_thread(query.limit(1).execute)
    if existing.data:
        return None

    row: dict[str, Any] = {
        "source_id": source_id,
        "source_url": source_url,
        "detail_url": detail_url,
        "stage": Stage.DISCOVERED,
        "priority": priority,
        "failure_count": 0,
        "created_at": utcnow().isoformat(),
    }
    if hints:
        row["extracted_data"] = {"hints": hints}
    try:
        result = await run_in_thread(db.table(QUEUE_TABLE).insert(row).execute)
    except PostgrestAPIError as e:
        if e.code == "23505":
            return None
        raise
    return result.data[0]["id"] if result.data else None


async def list_items_at_stage(db: Client, stage: Stage, limit: int = 50) -> list[QueueItem]:
    """Неclaim'нутые элементы стадии (для фоновых задач планировщика)."""
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("*")
        .eq("stage", stage)
        .is_("worker_id", "null")
        .order("priority", desc=True)
        .limit(limit)
        .execute
    )
    return [QueueItem.model_validate(row) for row in result.data]


async def move_item(
    db: Client,
    item_id: str,
    from_stage: Stage,
    to_stage: Stage,
    payload: dict[str, Any] | None = None,
) -> bool:
    """Перевести неclaim'нутый элемент, только если он всё ещё на from_stage."""
    data: dict[str, Any] = dict(payload or {})
    data.update({"stage": to_stage, "stage_updated_at": utcnow().isoformat()})
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .update(data)
        .eq("id", item_id)
        .eq("stage", from_stage)
        .is_("worker_id", "null")
        .execute
    )
    return bool(result.data)


async def recent_item_titles(db: Client, source_id: str, limit: int = 10) -> list[str]:
    """Заголовки последних событий источника: образец для healer'а."""
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("extracted_data")
        .eq("source_id", source_id)
        .not_.is_("extracted_data", "null")
        .order("created_at", desc=True)
        .limit(limit)
        .execute
    )
    titles: list[str] = []
    for row in result.data:
        data = row.get("extracted_data") or {}
        title = (data.get("event") or {}).get("title") or (data.get("hints") or {}).get("title")
        if title:
            titles.append(str(title))
    return titles


async def find_persisted_duplicate(
    db: Client, fingerprint: str, exclude_id: str
) -> dict[str, Any] | None:
    """Найти уже сохранённый в каталог элемент с тем же отпечатком события."""
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("id, event_id, duplicate_of")
        .eq("event_fingerprint", fingerprint)
        .neq("id", exclude_id)
        .not_.is_("event_id", "null")
        .limit(1)
        .execute
    )
    return result.data[0] if result.data else None


async def set_duplicate_of(db: Client, item_id: str, canonical_id: str) -> str:
    """
    Пометить item дубликатом canonical. Цепочка duplicate_of идёт к
    канонической сохранённой записи и не должна замыкаться.
    Возвращает event_id канонической записи.
    """
    if item_id == canonical_id:
        raise ValueError(f"Item {item_id} cannot duplicate itself")

    current = canonical_id
    event_id: str | None = None
    seen: set[str] = set()
    for _ in range(_MAX_DUPLICATE_CHAIN):
        result = await run_in_thread(
            db.table(QUEUE_TABLE)
            .select("id, duplicate_of, event_id")
            .eq("id", current)
            .limit(1)
            .execute
        )
        if not result.data:
            raise ValueError(f"Canonical item {current} not found")
        row = result.data[0]
        if event_id is None:
            event_id = row.get("event_id")
        seen.add(current)
        parent = row.get("duplicate_of")
        if parent is None:
            break
        if parent == item_id or parent in seen:
            raise ValueError(f"duplicate_of cycle via {current} → {parent}")
        current = parent
    else:
        raise ValueError(f"duplicate_of chain from {canonical_id} is too long")

    if event_id is None:
        raise ValueError(f"Canonical item {canonical_id} is not persisted yet")

    await run_in_thread(
        db.table(QUEUE_TABLE)
        .update({"duplicate_of": canonical_id, "event_id": event_id})
        .eq("id", item_id)
        .execute
    )
    return event_id


async def insert_catalog_event(db: Client, row: dict[str, Any]) -> str:
    """Записать полностью провалидированное событие в каталог."""
    result = await run_in_thread(db.table(EVENTS_TABLE).insert(row).execute)
    return result.data[0]["id"]


async def get_pipeline_stats(db: Client) -> dict[str, int]:
    """Количество элементов на каждой стадии."""
    stats: dict[str, int] = {}
    for stage in Stage:
        result = await run_in_thread(
            db.table(QUEUE_TABLE)
            .select("id", count=CountMethod.exact)
            .eq("stage", stage)
            .limit(1)
            .execute
        )
        stats[stage.value] = result.count or 0
    return stats


async def count_unresolved_failures(db: Client) -> int:
    result = await run_in_thread(
        db.table(FAILURE_LOG_TABLE)
        .select("id", count=CountMethod.exact)
        .eq("resolved", False)
        .limit(1)
        .execute
    )
    return result.count or 0


# ---------------------------------------------------------------------------
# Источники
# ---------------------------------------------------------------------------


async def get_source(db: Client, source_id: str) -> Source | None:
    result = await run_in_thread(
        db.table(SOURCES_TABLE).select("*").eq("id", source_id).limit(1).execute
    )
    if not result.data:
        return None
    return Source.model_validate(result.data[0])


async def get_sources(db: Client, source_ids: list[str]) -> dict[str, Source]:
    """Источники по списку id (одним запросом)."""
    if not source_ids:
        return {}
    result = await run_in_thread(
        db.table(SOURCES_TABLE).select("*").in_("id", source_ids).execute
    )
    return {row["id"]: Source.model_validate(row) for row in result.data}


async def list_crawlable_sources(db: Client, limit: int = 20) -> list[Source]:
    """Включённые источники вне карантина, давно не скрапленные — первыми."""
    result = await run_in_thread(
        db.table(SOURCES_TABLE)
        .select("*")
        .eq("enabled", True)
        .eq("quarantined", False)
        .order("last_successful_scrape", desc=False, nullsfirst=True)
        .limit(limit)
        .execute
    )
    return [Source.model_validate(row) for row in result.data]


async def update_source_strategy(db: Client, source_id: str, strategy: FetchStrategy) -> None:
    await run_in_thread(
        db.table(SOURCES_TABLE)
        .update({"fetch_strategy": strategy})
        .eq("id", source_id)
        .execute
    )


async def update_source_crawl_state(
    db: Client,
    source_id: str,
    content_hash: str | None = None,
    expected_event_count: int | None = None,
) -> None:
    data: dict[str, Any] = {"last_crawled_at": utcnow().isoformat()}
    if content_hash is not None:
        data["last_content_hash"] = content_hash
    if expected_event_count is not None:
        data["expected_event_count"] = expected_event_count
    await run_in_thread(
        db.table(SOURCES_TABLE).update(data).eq("id", source_id).execute
    )


async def record_source_success(db: Client, source_id: str, events: int = 0) -> None:
    """Успех источника: сброс счётчика отказов, восстановление reliability."""

    def mutate(row: dict[str, Any]) -> dict[str, Any]:
        score = float(row.get("reliability_score") or 0)
        return {
            "consecutive_failures": 0,
            "reliability_score": min(100.0, score + _RELIABILITY_RECOVERY),
            "total_events_extracted": (row.get("total_events_extracted") or 0) + events,
            "last_successful_scrape": utcnow().isoformat(),
        }

    await compare_and_swap(db, SOURCES_TABLE, "id", source_id, mutate, "health_version")


async def record_source_failure(
    db: Client, source_id: str, level: FailureLevel, reason: str
) -> bool:
    """
    Отказ источника: штраф reliability по уровню, счётчик подряд идущих отказов.
    Возвращает True, если источник ушёл в карантин.
    """
    safe_reason = sanitize_error(reason)
    quarantined = False

    def mutate(row: dict[str, Any]) -> dict[str, Any]:
        nonlocal quarantined
        changes: dict[str, Any] = {
            "last_failure_at": utcnow().isoformat(),
            "last_failure_reason": safe_reason,
        }
        if level == FailureLevel.TRANSIENT:
            return changes

        score = float(row.get("reliability_score") or 0)
        consecutive = (row.get("consecutive_failures") or 0) + 1
        changes["reliability_score"] = max(0.0, score - _RELIABILITY_PENALTY[level])
        changes["consecutive_failures"] = consecutive
        if (
            consecutive >= SOURCE_QUARANTINE_AFTER
            and level in (FailureLevel.REPAIR_FAILURE, FailureLevel.SYSTEMIC)
            and not row.get("quarantined")
        ):
            changes["quarantined"] = True
            changes["quarantine_reason"] = f"{consecutive} consecutive failures: {safe_reason}"
            changes["quarantined_at"] = utcnow().isoformat()
            quarantined = True
        return changes

    await compare_and_swap(db, SOURCES_TABLE, "id", source_id, mutate, "health_version")
    if quarantined:
        logger.error(f"[sources] Source {source_id} quarantined: {safe_reason}")
    return quarantined


async def note_source_rate_limited(db: Client, source_id: str, retry_after_seconds: float) -> None:
    """Источник ответил 429 — не трогаем его до backoff_until."""
    until = (utcnow() + timedelta(seconds=retry_after_seconds)).isoformat()

    def mutate(row: dict[str, Any]) -> dict[str, Any]:
        state = dict(row.get("rate_limit_state") or {})
        state["backoff_until"] = until
        return {"rate_limit_state": state}

    await compare_and_swap(db, SOURCES_TABLE, "id", source_id, mutate, "health_version")
    logger.info(f"[sources] Source {source_id} rate-limited until {until}")


async def unquarantine_source(db: Client, source_id: str) -> dict[str, Any] | None:
    """Вернуть источник из карантина вручную. None — источника нет."""

    def mutate(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "quarantined": False,
            "quarantine_reason": None,
            "quarantined_at": None,
            "consecutive_failures": 0,
        }

    row = await compare_and_swap(db, SOURCES_TABLE, "id", source_id, mutate, "health_version")
    if row is not None:
        logger.info(f"[sources] Source {source_id} released from quarantine")
    return row


async def reserve_source_request(db: Client, source_id: str) -> None:
    """
    Учесть запрос к источнику в минутном окне.
    Окно заполнено до requests_per_minute → backoff_until до конца окна,
    gate не отдаёт элементы источника, пока окно не закончится.
    """
    now = utcnow()

    def mutate(row: dict[str, Any]) -> dict[str, Any]:
        raw = dict(row.get("rate_limit_state") or {})
        state = RateLimitState.model_validate(raw)
        if state.window_started_at is None or now - state.window_started_at >= _RATE_WINDOW:
            started, count = now, 1
        else:
            started, count = state.window_started_at, state.window_requests + 1
        raw["window_started_at"] = started.isoformat()
        raw["window_requests"] = count
        if count >= state.requests_per_minute:
            until = started + _RATE_WINDOW
            if state.backoff_until is None or state.backoff_until < until:
                raw["backoff_until"] = until.isoformat()
                logger.info(f"[sources] Source {source_id}: {count} requests this minute, paused until {until}")
        return {"rate_limit_state": raw}

    try:
        await compare_and_swap(db, SOURCES_TABLE, "id", source_id, mutate, "health_version")
    except Exception as e:
        logger.error(f"[sources] Request accounting failed for {source_id}: {sanitize_error(str(e))}")


async def count_network_claims(
    db: Client,
    source_ids: list[str],
    stages: Collection[Stage],
    claim_timeout_minutes: int,
) -> Counter[str]:
    """Сколько живых claim'ов на сетевых стадиях держит каждый источник."""
    threshold = (utcnow() - timedelta(minutes=claim_timeout_minutes)).isoformat()
    result = await run_in_thread(
        db.table(QUEUE_TABLE)
        .select("source_id")
        .in_("source_id", source_ids)
        .in_("stage", list(stages))
        .gte("claimed_at", threshold)
        .execute
    )
    return Counter(row["source_id"] for row in result.data)

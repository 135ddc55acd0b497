"""Координатор стадий: claim / advance / checkpoint / fail поверх sg_pipeline_queue."""
from typing import Any

from loguru import logger
from supabase import Client

from src.config import Settings
from src.database import (
    advance_item,
    checkpoint_item,
    count_network_claims,
    fetch_claim_candidates,
    get_sources,
    record_item_failure,
    record_source_failure,
    try_claim_item,
    utcnow,
)
from src.models.queue_item import FailureLevel, QueueItem, Stage, is_valid_transition
from src.models.source import Source
from src.pipeline.circuit_breaker import CircuitBreaker

# Стадии, на которых воркер обращается к источнику по сети
NETWORK_STAGES = frozenset({Stage.ANALYZING, Stage.AWAITING_FETCH, Stage.FETCHING})

# Кандидатов берём с запасом: часть отсеется gate'ом или уйдёт другим воркерам
_CANDIDATE_MULTIPLIER = 3


class StageCoordinator:
    """Атомарный захват элементов очереди и переходы по стадиям."""

    def __init__(self, db: Client, breaker: CircuitBreaker, settings: Settings) -> None:
        self.db = db
        self.breaker = breaker
        self.settings = settings

    async def _gate_sources(self, stage: Stage, source_ids: list[str]) -> tuple[dict[str, int], set[str]]:
        """
        Сколько элементов можно забрать по каждому источнику и какие
        источники отдали пробу HALF_OPEN.
        Карантин — 0 на любой стадии. На сетевых стадиях ещё rate-limit (0),
        max_concurrency минус уже занятые слоты, открытый circuit (0),
        только что перешедший в HALF_OPEN — ровно 1 (проба).
        """
        sources: dict[str, Source] = await get_sources(self.db, source_ids)
        network = stage in NETWORK_STAGES
        active = (
            await count_network_claims(
                self.db, source_ids, NETWORK_STAGES, self.settings.claim_timeout_minutes
            )
            if network else None
        )
        now = utcnow()
        quota: dict[str, int] = {}
        trials: set[str] = set()
        for source_id in source_ids:
            source = sources.get(source_id)
            if source is None or source.quarantined or not source.enabled:
                quota[source_id] = 0
                continue
            if active is None:
                quota[source_id] = -1  # без ограничения
                continue
            if source.is_rate_limited(now):
                quota[source_id] = 0
                continue
            free = source.rate_limit_state.max_concurrency - active[source_id]
            if free <= 0:
                logger.debug(f"[coordinator] Source {source_id} skipped: {active[source_id]} requests in flight")
                quota[source_id] = 0
                continue
            decision = await self.breaker.check(source_id)
            if not decision.allowed:
                logger.debug(f"[coordinator] Source {source_id} skipped: circuit {decision.state}")
                quota[source_id] = 0
            elif decision.trial:
                quota[source_id] = 1
                trials.add(source_id)
            else:
                quota[source_id] = free
        return quota, trials

    async def claim(self, stage: Stage, batch_size: int, worker_id: str) -> list[QueueItem]:
        """
        Забрать до batch_size элементов стадии.
        Каждый элемент клеймится отдельным условным UPDATE — при гонке
        воркеров элемент достаётся ровно одному.
        """
        candidates = await fetch_claim_candidates(
            self.db,
            stage,
            limit=batch_size * _CANDIDATE_MULTIPLIER,
            claim_timeout_minutes=self.settings.claim_timeout_minutes,
            max_failure_count=self.settings.max_failure_count,
        )
        if not candidates:
            return []

        source_ids = list(dict.fromkeys(c.source_id for c in candidates))
        quota, trials = await self._gate_sources(stage, source_ids)

        claimed: list[QueueItem] = []
        for candidate in candidates:
            if len(claimed) >= batch_size:
                break
            remaining = quota.get(candidate.source_id, 0)
            if remaining == 0:
                continue
            item = await try_claim_item(
                self.db,
                candidate.id,
                stage,
                worker_id,
                self.settings.claim_timeout_minutes,
            )
            if item is None:
                continue
            item.gated = stage in NETWORK_STAGES
            if candidate.source_id in trials:
                item.trial = True
                trials.discard(candidate.source_id)
            claimed.append(item)
            if remaining > 0:
                quota[candidate.source_id] = remaining - 1

        # Пробный запрос, не доставшийся ни одному элементу, возвращаем circuit
        for source_id in trials:
            await self.breaker.release_trial(source_id)

        if claimed:
            logger.debug(f"[coordinator] {worker_id} claimed {len(claimed)} items at {stage}")
        return claimed

    async def advance(
        self,
        item: QueueItem,
        next_stage: Stage,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Перевести элемент дальше и снять claim."""
        if not is_valid_transition(item.stage, next_stage):
            raise ValueError(f"Invalid transition {item.stage} → {next_stage} for item {item.id}")
        ok = await advance_item(self.db, item.id, next_stage, payload, worker_id=item.worker_id)
        if ok:
            item.stage = next_stage
            item.worker_id = None
        return ok

    async def checkpoint(
        self,
        item: QueueItem,
        next_stage: Stage,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Закоммитить промежуточную стадию, не отпуская claim."""
        if not is_valid_transition(item.stage, next_stage):
            raise ValueError(f"Invalid transition {item.stage} → {next_stage} for item {item.id}")
        if item.worker_id is None:
            raise ValueError(f"Item {item.id} is not claimed")
        ok = await checkpoint_item(self.db, item.id, next_stage, item.worker_id, payload)
        if ok:
            item.stage = next_stage
        return ok

    async def release(self, item: QueueItem) -> bool:
        """Отпустить claim без смены стадии (источник сейчас недоступен)."""
        ok = await advance_item(self.db, item.id, item.stage, worker_id=item.worker_id)
        if ok:
            item.worker_id = None
        return ok

    async def fail(
        self,
        item: QueueItem,
        level: FailureLevel,
        message: str,
        error_code: str | None = None,
    ) -> Stage:
        """Записать отказ элемента и обновить здоровье источника."""
        outcome = await record_item_failure(
            self.db,
            item,
            level,
            message,
            error_code=error_code,
            max_failure_count=self.settings.max_failure_count,
        )
        item.stage = outcome
        item.worker_id = None

        try:
            await record_source_failure(self.db, item.source_id, level, message)
        except Exception as e:
            logger.error(f"[coordinator] Source health update failed for {item.source_id}: {e}")
        return outcome

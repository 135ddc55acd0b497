"""Pydantic-модель элемента очереди пайплайна и машина стадий."""
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Stage(StrEnum):
    """Стадия элемента в sg_pipeline_queue."""

    DISCOVERED = "discovered"
    ANALYZING = "analyzing"
    AWAITING_FETCH = "awaiting_fetch"
    FETCHING = "fetching"
    CLEANING = "cleaning"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    ENRICHING = "enriching"
    DEDUPLICATING = "deduplicating"
    READY_TO_PERSIST = "ready_to_persist"
    VECTORIZING = "vectorizing"
    INDEXED = "indexed"
    GEO_INCOMPLETE = "geo_incomplete"
    QUARANTINED = "quarantined"
    FAILED = "failed"


class FailureLevel(StrEnum):
    """Уровень отказа — определяет политику retry/карантина."""

    TRANSIENT = "transient"
    SOURCE_DRIFT = "source_drift"
    REPAIR_FAILURE = "repair_failure"
    SYSTEMIC = "systemic"


MAIN_PATH: tuple[Stage, ...] = (
    Stage.DISCOVERED,
    Stage.ANALYZING,
    Stage.AWAITING_FETCH,
    Stage.FETCHING,
    Stage.CLEANING,
    Stage.EXTRACTING,
    Stage.VALIDATING,
    Stage.ENRICHING,
    Stage.DEDUPLICATING,
    Stage.READY_TO_PERSIST,
    Stage.VECTORIZING,
    Stage.INDEXED,
)

TERMINAL_STAGES = frozenset({Stage.INDEXED, Stage.QUARANTINED})

# На этих стадиях воркер отпускает claim, дальше элемент забирает любой воркер
HANDOFF_STAGES = frozenset({
    Stage.AWAITING_FETCH,
    Stage.READY_TO_PERSIST,
    Stage.GEO_INCOMPLETE,
    Stage.FAILED,
}) | TERMINAL_STAGES

# Стадии, из которых воркер забирает элементы в работу.
# Промежуточные стадии тоже claimable: после падения воркера
# элемент продолжает с последней закоммиченной стадии.
CLAIMABLE_STAGES: tuple[Stage, ...] = tuple(
    s for s in MAIN_PATH if s not in TERMINAL_STAGES
)

# Разрешённые переходы помимо шага по MAIN_PATH
_SIDE_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.VALIDATING: frozenset({Stage.GEO_INCOMPLETE}),
    Stage.ENRICHING: frozenset({Stage.GEO_INCOMPLETE}),
    Stage.DEDUPLICATING: frozenset({Stage.INDEXED}),  # дубликат канонической записи
    Stage.GEO_INCOMPLETE: frozenset({Stage.DEDUPLICATING, Stage.QUARANTINED}),
}


def next_stage(stage: Stage) -> Stage:
    """Следующая стадия основного пути. ValueError для терминальных/боковых."""
    if stage not in MAIN_PATH or stage in TERMINAL_STAGES:
        raise ValueError(f"Stage {stage} has no successor on the main path")
    return MAIN_PATH[MAIN_PATH.index(stage) + 1]


def is_valid_transition(current: Stage, target: Stage) -> bool:
    """Проверить переход current → target по машине стадий."""
    if current in TERMINAL_STAGES:
        return False
    # Отказ и карантин допустимы из любой нетерминальной стадии
    if target in (Stage.FAILED, Stage.QUARANTINED):
        return True
    if current == Stage.FAILED:
        # Retry возвращает элемент на стадию, где он упал
        return target in CLAIMABLE_STAGES
    if current in MAIN_PATH and current not in TERMINAL_STAGES:
        if next_stage(current) == target:
            return True
    return target in _SIDE_TRANSITIONS.get(current, frozenset())


class QueueItem(BaseModel):
    """Элемент из таблицы sg_pipeline_queue."""

    id: str
    source_id: str
    source_url: str
    detail_url: str | None = None
    stage: Stage = Stage.DISCOVERED
    priority: int = 50
    raw_html: str | None = None
    cleaned_markdown: str | None = None
    extracted_data: dict[str, Any] | None = None
    content_hash: str | None = None
    failure_count: int = 0
    last_failure_reason: str | None = None
    failed_at_stage: Stage | None = None
    next_retry_at: datetime | None = None
    worker_id: str | None = None
    claimed_at: datetime | None = None
    lat: float | None = None
    lng: float | None = None
    geocode_status: str | None = None
    geocode_attempts: int = 0
    duplicate_of: str | None = None
    event_fingerprint: str | None = None
    event_id: str | None = None
    created_at: datetime | None = None
    # Не хранится в БД: circuit источника уже проверен при claim
    gated: bool = Field(default=False, exclude=True)
    # Элемент несёт единственный пробный запрос HALF_OPEN своего источника
    trial: bool = Field(default=False, exclude=True)

    @property
    def target_url(self) -> str:
        """URL страницы события (detail), иначе листинг источника."""
        return self.detail_url or self.source_url

    @property
    def hints(self) -> dict[str, Any]:
        """Подсказки из карточки листинга, сохранённые краулером."""
        data = self.extracted_data or {}
        hints = data.get("hints")
        return hints if isinstance(hints, dict) else {}

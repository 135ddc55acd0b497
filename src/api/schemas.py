"""Pydantic-схемы для управляющего API пайплайна."""
from pydantic import BaseModel, Field, field_validator


class DiscoveryRunRequest(BaseModel):
    """Запрос на прогон discovery по муниципалитетам."""

    min_population: int = Field(default=100_000, ge=0)
    max_municipalities: int | None = Field(default=None, ge=1)
    municipalities: list[str] | None = Field(default=None, max_length=500)
    trigger_workers: bool = True
    batch_id: str | None = None

    @field_validator("municipalities")
    @classmethod
    def clean_names(cls, v: list[str] | None) -> list[str] | None:
        """Убрать пустые и повторяющиеся названия."""
        if v is None:
            return None
        cleaned: list[str] = []
        seen: set[str] = set()
        for name in v:
            name = name.strip()
            if name and name.lower() not in seen:
                cleaned.append(name)
                seen.add(name.lower())
        return cleaned or None


class OpenCircuit(BaseModel):
    source_id: str
    state: str
    cooldown_until: str | None = None
    consecutive_opens: int = 0


class HealthResponse(BaseModel):
    """Ответ healthcheck."""

    status: str  # "ok" | "degraded"
    stages: dict[str, int]
    open_circuits: list[OpenCircuit]
    fail_open_count: int


class CircuitSummary(BaseModel):
    source_id: str
    state: str
    failure_count: int
    consecutive_opens: int
    cooldown_until: str | None = None
    cooldown_remaining_seconds: float | None = None
    last_failure_reason: str | None = None


class QuarantineResponse(BaseModel):
    source_id: str
    quarantined: bool
    consecutive_failures: int
    reliability_score: float | None = None


class RollbackResponse(BaseModel):
    source_id: str
    rolled_back: bool
    config: dict | None = None

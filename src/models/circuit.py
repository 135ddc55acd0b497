"""Pydantic-модель состояния circuit breaker источника."""
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerState(BaseModel):
    """Строка circuit_breaker_state (1:1 с источником).

    version — токен оптимистичной блокировки: каждая запись идёт через
    UPDATE ... WHERE version = <прочитанная>.
    """

    source_id: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    consecutive_opens: int = 0
    cooldown_until: datetime | None = None
    opened_at: datetime | None = None
    half_open_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    version: int = 0

"""Per-source circuit breaker поверх таблицы circuit_breaker_state.

CLOSED → (failure_threshold отказов) → OPEN → (cooldown истёк, первый
is_allowed) → HALF_OPEN → успех → CLOSED / отказ → OPEN с удвоенным cooldown.

Состояние разделяется воркерами из разных процессов, поэтому каждый
переход — один CAS по колонке version. Переходы — чистые функции,
запись — compare_and_swap.

Если хранилище недоступно, is_allowed пропускает запрос (fail-open) и
пишет об этом CRITICAL и считает такие пропуски в fail_open_count.
"""
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger
from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.database import ConcurrentUpdateError, compare_and_swap, run_in_thread, sanitize_error
from src.models.circuit import CircuitBreakerState, CircuitState

CB_TABLE = "circuit_breaker_state"


@dataclass(frozen=True)
class CircuitConfig:
    failure_threshold: int = 5
    base_cooldown: timedelta = timedelta(minutes=30)
    max_cooldown: timedelta = timedelta(hours=24)
    # Пробный запрос, не отчитавшийся за это время, считается потерянным
    trial_timeout: timedelta = timedelta(minutes=15)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    state: CircuitState
    trial: bool = False  # этот вызов получил единственный пробный запрос HALF_OPEN
    fail_open: bool = False


def compute_cooldown(consecutive_opens: int, config: CircuitConfig) -> timedelta:
    """min(max_cooldown, base × 2^consecutive_opens)."""
    cooldown = config.base_cooldown * (2 ** consecutive_opens)
    return min(cooldown, config.max_cooldown)


def _open(state: CircuitBreakerState, now: datetime, config: CircuitConfig) -> CircuitBreakerState:
    cooldown = compute_cooldown(state.consecutive_opens, config)
    return state.model_copy(update={
        "state": CircuitState.OPEN,
        "opened_at": now,
        "cooldown_until": now + cooldown,
        "half_open_at": None,
    })


def apply_failure(
    state: CircuitBreakerState, now: datetime, reason: str, config: CircuitConfig
) -> CircuitBreakerState:
    """Переход по отказу."""
    updated = state.model_copy(update={
        "failure_count": state.failure_count + 1,
        "last_failure_at": now,
        "last_failure_reason": reason,
    })
    if state.state == CircuitState.HALF_OPEN:
        # Проба не прошла: снова OPEN, следующий cooldown длиннее
        updated = updated.model_copy(update={"consecutive_opens": state.consecutive_opens + 1})
        return _open(updated, now, config)
    if state.state == CircuitState.CLOSED and updated.failure_count >= config.failure_threshold:
        return _open(updated, now, config)
    return updated


def apply_success(state: CircuitBreakerState) -> CircuitBreakerState:
    """Переход по успеху. Из HALF_OPEN — полный сброс в CLOSED."""
    if state.state == CircuitState.HALF_OPEN:
        return state.model_copy(update={
            "state": CircuitState.CLOSED,
            "failure_count": 0,
            "success_count": 0,
            "consecutive_opens": 0,
            "cooldown_until": None,
            "opened_at": None,
            "half_open_at": None,
        })
    if state.state == CircuitState.CLOSED:
        return state.model_copy(update={
            "failure_count": 0,
            "success_count": state.success_count + 1,
        })
    # OPEN: запоздалый ответ на запрос, начатый до открытия, состояние не меняет
    return state


def evaluate_gate(
    state: CircuitBreakerState, now: datetime, config: CircuitConfig
) -> tuple[GateDecision, CircuitBreakerState | None]:
    """Решение is_allowed и новое состояние (None — без изменений)."""
    if state.state == CircuitState.CLOSED:
        return GateDecision(True, CircuitState.CLOSED), None

    if state.state == CircuitState.OPEN:
        if state.cooldown_until is not None and now < state.cooldown_until:
            return GateDecision(False, CircuitState.OPEN), None
        trial_state = state.model_copy(update={
            "state": CircuitState.HALF_OPEN,
            "cooldown_until": None,
            "half_open_at": now,
        })
        return GateDecision(True, CircuitState.HALF_OPEN, trial=True), trial_state

    # HALF_OPEN: проба уже в полёте
    if state.half_open_at is not None and now - state.half_open_at >= config.trial_timeout:
        retrial = state.model_copy(update={"half_open_at": now})
        return GateDecision(True, CircuitState.HALF_OPEN, trial=True), retrial
    return GateDecision(False, CircuitState.HALF_OPEN), None


def return_trial(state: CircuitBreakerState, now: datetime) -> CircuitBreakerState | None:
    """
    Пробный запрос так и не ушёл к источнику (claim проигран, работа не
    потребовала сети): HALF_OPEN → OPEN с уже истёкшим cooldown, чтобы
    следующий check снова выдал пробу. consecutive_opens не растёт.
    """
    if state.state != CircuitState.HALF_OPEN:
        return None
    return state.model_copy(update={
        "state": CircuitState.OPEN,
        "cooldown_until": now,
        "half_open_at": None,
    })


def _to_row(state: CircuitBreakerState) -> dict[str, Any]:
    data = state.model_dump(mode="json", exclude={"source_id", "version"})
    data["updated_at"] = datetime.now(UTC).isoformat()
    return data


class CircuitBreaker:
    """Gate доступности источников, общий для всех воркеров."""

    def __init__(
        self,
        db: Client,
        config: CircuitConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.config = config or CircuitConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        # Сколько раз gate пропустил запрос из-за недоступного хранилища
        self.fail_open_count = 0

    async def _ensure_row(self, source_id: str) -> None:
        """Создать строку CLOSED. Проигравший гонку вставки просто перечитает."""
        try:
            await run_in_thread(
                self.db.table(CB_TABLE).insert({
                    "source_id": source_id,
                    "state": CircuitState.CLOSED,
                    "failure_count": 0,
                    "success_count": 0,
                    "consecutive_opens": 0,
                    "version": 0,
                }).execute
            )
        except PostgrestAPIError as e:
            if e.code != "23505":
                raise

    async def _transition(
        self,
        source_id: str,
        fn: Callable[[CircuitBreakerState], tuple[Any, CircuitBreakerState | None]],
    ) -> Any:
        """CAS-цикл: прочитать состояние, применить fn, записать при изменении."""
        outcome: Any = None

        def mutate(row: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal outcome
            state = CircuitBreakerState.model_validate(row)
            outcome, new_state = fn(state)
            if new_state is None:
                return None
            return _to_row(new_state)

        row = await compare_and_swap(self.db, CB_TABLE, "source_id", source_id, mutate)
        if row is None:
            await self._ensure_row(source_id)
            row = await compare_and_swap(self.db, CB_TABLE, "source_id", source_id, mutate)
        return outcome

    async def check(self, source_id: str) -> GateDecision:
        """is_allowed с подробностями (проба HALF_OPEN, fail-open)."""
        now = self._clock()
        try:
            decision = await self._transition(
                source_id, lambda s: evaluate_gate(s, now, self.config)
            )
        except ConcurrentUpdateError:
            # Пробу получил другой воркер, переводивший этот circuit одновременно
            logger.debug(f"[circuit_breaker] Source {source_id}: contended transition, denied")
            return GateDecision(False, CircuitState.HALF_OPEN)
        except Exception as e:
            self.fail_open_count += 1
            logger.critical(
                f"[circuit_breaker] FAIL-OPEN for source {source_id}: state store "
                f"unreachable ({sanitize_error(str(e))}); request allowed without "
                f"circuit protection (fail_open_count={self.fail_open_count})"
            )
            return GateDecision(True, CircuitState.CLOSED, fail_open=True)

        if decision is None:
            # Строку создали, но прочитать не удалось: считаем её новой CLOSED
            return GateDecision(True, CircuitState.CLOSED)
        if decision.trial:
            logger.info(f"[circuit_breaker] Source {source_id}: OPEN → HALF_OPEN, trial request allowed")
        return decision

    async def is_allowed(self, source_id: str) -> bool:
        return (await self.check(source_id)).allowed

    async def record_success(self, source_id: str) -> None:
        def fn(state: CircuitBreakerState) -> tuple[CircuitState, CircuitBreakerState | None]:
            new_state = apply_success(state)
            return state.state, (None if new_state == state else new_state)

        try:
            previous = await self._transition(source_id, fn)
        except Exception as e:
            logger.error(f"[circuit_breaker] record_success({source_id}) failed: {sanitize_error(str(e))}")
            return
        if previous == CircuitState.HALF_OPEN:
            logger.info(f"[circuit_breaker] Source {source_id}: HALF_OPEN → CLOSED")

    async def record_failure(self, source_id: str, reason: str) -> CircuitState:
        """Записать отказ. Возвращает новое состояние circuit."""
        now = self._clock()
        safe_reason = sanitize_error(reason)[:500]

        def fn(state: CircuitBreakerState) -> tuple[CircuitBreakerState, CircuitBreakerState]:
            new_state = apply_failure(state, now, safe_reason, self.config)
            return new_state, new_state

        try:
            new_state: CircuitBreakerState | None = await self._transition(source_id, fn)
        except Exception as e:
            logger.error(f"[circuit_breaker] record_failure({source_id}) failed: {sanitize_error(str(e))}")
            return CircuitState.CLOSED
        if new_state is None:
            return CircuitState.CLOSED
        if new_state.state == CircuitState.OPEN and new_state.opened_at == now:
            logger.warning(
                f"[circuit_breaker] Source {source_id}: circuit OPEN until "
                f"{new_state.cooldown_until} (opens={new_state.consecutive_opens}, "
                f"reason={safe_reason})"
            )
        return new_state.state

    async def release_trial(self, source_id: str) -> None:
        """Вернуть неиспользованный пробный запрос HALF_OPEN."""
        now = self._clock()

        def fn(state: CircuitBreakerState) -> tuple[bool, CircuitBreakerState | None]:
            new_state = return_trial(state, now)
            return new_state is not None, new_state

        try:
            returned = await self._transition(source_id, fn)
        except Exception as e:
            logger.error(f"[circuit_breaker] release_trial({source_id}) failed: {sanitize_error(str(e))}")
            return
        if returned:
            logger.info(f"[circuit_breaker] Source {source_id}: trial request unused, HALF_OPEN → OPEN")

    async def reset(self, source_id: str) -> None:
        """Принудительно закрыть circuit (ручное вмешательство)."""

        def fn(state: CircuitBreakerState) -> tuple[None, CircuitBreakerState]:
            return None, CircuitBreakerState(source_id=source_id, version=state.version)

        await self._transition(source_id, fn)
        logger.info(f"[circuit_breaker] Source {source_id}: reset to CLOSED")

    async def get_state(self, source_id: str) -> CircuitBreakerState | None:
        result = await run_in_thread(
            self.db.table(CB_TABLE).select("*").eq("source_id", source_id).limit(1).execute
        )
        if not result.data:
            return None
        return CircuitBreakerState.model_validate(result.data[0])

    async def get_summary(self, source_id: str) -> dict[str, Any]:
        """Сводка для API: состояние, счётчики, оставшийся cooldown."""
        state = await self.get_state(source_id) or CircuitBreakerState(source_id=source_id)
        remaining = None
        if state.state == CircuitState.OPEN and state.cooldown_until is not None:
            remaining = max(0.0, (state.cooldown_until - self._clock()).total_seconds())
        return {
            "source_id": source_id,
            "state": state.state,
            "failure_count": state.failure_count,
            "consecutive_opens": state.consecutive_opens,
            "cooldown_until": state.cooldown_until.isoformat() if state.cooldown_until else None,
            "cooldown_remaining_seconds": remaining,
            "last_failure_reason": state.last_failure_reason,
        }

    async def list_open_circuits(self) -> list[CircuitBreakerState]:
        result = await run_in_thread(
            self.db.table(CB_TABLE)
            .select("*")
            .in_("state", [CircuitState.OPEN, CircuitState.HALF_OPEN])
            .execute
        )
        return [CircuitBreakerState.model_validate(row) for row in result.data]

    async def check_cooldowns(self) -> list[str]:
        """Источники, у которых cooldown истёк — готовы к пробе."""
        now = self._clock()
        ready = [
            s.source_id for s in await self.list_open_circuits()
            if s.state == CircuitState.OPEN
            and s.cooldown_until is not None
            and s.cooldown_until <= now
        ]
        if ready:
            logger.info(f"[circuit_breaker] {len(ready)} circuits ready for a trial request")
        return ready

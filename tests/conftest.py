"""Общие фикстуры и хелперы тестов: in-memory Supabase, настройки, контекст пайплайна."""
import copy
import threading
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from postgrest.exceptions import APIError as PostgrestAPIError

# Уникальные индексы, которые код пайплайна ожидает от БД
UNIQUE_KEYS: dict[str, tuple[tuple[str, ...], ...]] = {
    "sg_pipeline_queue": (("source_id", "detail_url"),),
    "circuit_breaker_state": (("source_id",),),
    "sg_selector_configs": (("source_id", "version"),),
    "sg_geocode_cache": (("address_key",),),
}


def _comparable(value: Any) -> Any:
    """ISO-строки сравниваются как datetime, остальное как есть."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return value


def _compare(left: Any, right: Any, op: str) -> bool:
    if left is None or right is None:
        return False
    a, b = _comparable(left), _comparable(right)
    if type(a) is not type(b) and not (isinstance(a, (int, float)) and isinstance(b, (int, float))):
        a, b = str(left), str(right)
    if op == "lt":
        return a < b
    if op == "lte":
        return a <= b
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    raise ValueError(op)


def _parse_literal(raw: str) -> Any:
    if raw == "null":
        return None
    if raw in ("true", "false"):
        return raw == "true"
    return raw


def _or_condition(expression: str):
    """Разобрать 'worker_id.is.null,claimed_at.lt.2026-...' в предикат."""
    clauses = []
    for part in expression.split(","):
        column, op, raw = part.split(".", 2)
        clauses.append((column, op, _parse_literal(raw)))

    def predicate(row: dict[str, Any]) -> bool:
        for column, op, value in clauses:
            current = row.get(column)
            if op == "is" and current is value:
                return True
            if op == "eq" and current is not None and str(current) == str(value):
                return True
            if op == "neq" and current is not None and str(current) != str(value):
                return True
            if op in ("lt", "lte", "gt", "gte") and _compare(current, value, op):
                return True
        return False

    return predicate


class FakeResponse:
    def __init__(self, data: list[dict[str, Any]], count: int | None = None) -> None:
        self.data = data
        self.count = count


class FakeQuery:
    """Цепочка postgrest-builder'а поверх словарей FakeSupabase."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self._db = db
        self._table = table
        self._op = "select"
        self._columns: list[str] | None = None
        self._payload: Any = None
        self._on_conflict: tuple[str, ...] = ()
        self._filters: list[Any] = []
        self._orders: list[tuple[str, bool, bool | None]] = []
        self._limit: int | None = None
        self._count = False
        self._negate = False

    # --- операции ---

    def select(self, columns: str = "*", count: Any = None) -> "FakeQuery":
        self._op = "select"
        cols = [c.strip() for c in columns.split(",") if c.strip()]
        self._columns = None if cols == ["*"] else cols
        self._count = count is not None
        return self

    def insert(self, rows: Any) -> "FakeQuery":
        self._op = "insert"
        self._payload = rows
        return self

    def update(self, data: dict[str, Any]) -> "FakeQuery":
        self._op = "update"
        self._payload = data
        return self

    def upsert(self, rows: Any, on_conflict: str = "") -> "FakeQuery":
        self._op = "upsert"
        self._payload = rows
        self._on_conflict = tuple(c.strip() for c in on_conflict.split(",") if c.strip())
        return self

    def delete(self) -> "FakeQuery":
        self._op = "delete"
        return self

    # --- фильтры ---

    def _add(self, predicate: Any) -> "FakeQuery":
        if self._negate:
            self._negate = False
            self._filters.append(lambda row, p=predicate: not p(row))
        else:
            self._filters.append(predicate)
        return self

    @property
    def not_(self) -> "FakeQuery":
        self._negate = True
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: row.get(column) is not None and row.get(column) == value)

    def neq(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: row.get(column) is not None and row.get(column) != value)

    def is_(self, column: str, value: str) -> "FakeQuery":
        expected = _parse_literal(value)
        return self._add(lambda row: row.get(column) is expected)

    def in_(self, column: str, values: list[Any]) -> "FakeQuery":
        allowed = list(values)
        return self._add(lambda row: row.get(column) in allowed)

    def lt(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: _compare(row.get(column), value, "lt"))

    def lte(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: _compare(row.get(column), value, "lte"))

    def gt(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: _compare(row.get(column), value, "gt"))

    def gte(self, column: str, value: Any) -> "FakeQuery":
        return self._add(lambda row: _compare(row.get(column), value, "gte"))

    def or_(self, expression: str) -> "FakeQuery":
        return self._add(_or_condition(expression))

    def order(self, column: str, desc: bool = False, nullsfirst: bool | None = None) -> "FakeQuery":
        self._orders.append((column, desc, nullsfirst))
        return self

    def limit(self, size: int) -> "FakeQuery":
        self._limit = size
        return self

    # --- выполнение ---

    def _matches(self, row: dict[str, Any]) -> bool:
        return all(f(row) for f in self._filters)

    def _sorted(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for column, desc, nullsfirst in reversed(self._orders):
            # Postgres: ASC ставит NULL последними, DESC первыми
            nulls_first = desc if nullsfirst is None else nullsfirst
            if desc:
                null_rank = 1 if nulls_first else -1
            else:
                null_rank = -1 if nulls_first else 1

            def key(row: dict[str, Any], column: str = column, null_rank: int = null_rank) -> Any:
                value = row.get(column)
                if value is None:
                    return (null_rank, 0)
                value = _comparable(value)
                if isinstance(value, datetime):
                    value = value.timestamp()
                return (0, value)

            rows = sorted(rows, key=key, reverse=desc)
        return rows

    def execute(self) -> FakeResponse:
        return self._db._execute(self)


class FakeSupabase:
    """
    Потокобезопасная in-memory замена supabase.Client.
    Условные UPDATE (eq/or_ фильтры) атомарны — как одна SQL-команда.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.broken: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self._clock = datetime.now(UTC)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def seed(self, name: str, *rows: dict[str, Any]) -> list[dict[str, Any]]:
        """Положить строки напрямую (с id/created_at по умолчанию)."""
        with self._lock:
            return [copy.deepcopy(self._store(name, row)) for row in rows]

    def break_table(self, name: str, error: Exception | None = None) -> None:
        """Все запросы к таблице падают — имитация недоступного хранилища."""
        self.broken[name] = error or ConnectionError(f"connection to {name} refused")

    def _next_timestamp(self) -> str:
        self._clock += timedelta(microseconds=1)
        return self._clock.isoformat()

    def _store(self, name: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", self._next_timestamp())
        self._check_unique(name, stored)
        self.rows(name).append(stored)
        return stored

    def _check_unique(self, name: str, row: dict[str, Any], ignore: dict[str, Any] | None = None) -> None:
        for columns in UNIQUE_KEYS.get(name, ()):
            key = tuple(row.get(c) for c in columns)
            for existing in self.rows(name):
                if existing is ignore:
                    continue
                if tuple(existing.get(c) for c in columns) == key:
                    raise PostgrestAPIError({
                        "message": f"duplicate key value violates unique constraint on {name}{columns}",
                        "code": "23505",
                        "hint": None,
                        "details": None,
                    })

    def _execute(self, query: FakeQuery) -> FakeResponse:
        self.calls.append((query._table, query._op))
        if query._table in self.broken:
            raise self.broken[query._table]

        with self._lock:
            table = self.rows(query._table)
            payload = query._payload

            if query._op == "insert":
                rows = payload if isinstance(payload, list) else [payload]
                # Вставка пачкой атомарна: сначала проверяем все строки
                inserted = []
                snapshot = list(table)
                try:
                    for row in rows:
                        inserted.append(copy.deepcopy(self._store(query._table, row)))
                except PostgrestAPIError:
                    self.tables[query._table] = snapshot
                    raise
                return FakeResponse(inserted)

            if query._op == "upsert":
                rows = payload if isinstance(payload, list) else [payload]
                result = []
                for row in rows:
                    existing = None
                    if query._on_conflict:
                        key = tuple(row.get(c) for c in query._on_conflict)
                        existing = next(
                            (r for r in table if tuple(r.get(c) for c in query._on_conflict) == key),
                            None,
                        )
                    if existing is not None:
                        existing.update(copy.deepcopy(row))
                        result.append(copy.deepcopy(existing))
                    else:
                        result.append(copy.deepcopy(self._store(query._table, row)))
                return FakeResponse(result)

            matched = [row for row in table if query._matches(row)]

            if query._op == "update":
                matched = self._sorted_limited(query, matched)
                for row in matched:
                    candidate = {**row, **copy.deepcopy(payload)}
                    self._check_unique(query._table, candidate, ignore=row)
                    row.update(copy.deepcopy(payload))
                return FakeResponse([copy.deepcopy(r) for r in matched])

            if query._op == "delete":
                self.tables[query._table] = [r for r in table if r not in matched]
                return FakeResponse([copy.deepcopy(r) for r in matched])

            total = len(matched)
            matched = self._sorted_limited(query, matched)
            if query._columns is not None:
                matched = [{c: r.get(c) for c in query._columns} for r in matched]
            return FakeResponse(
                [copy.deepcopy(r) for r in matched],
                count=total if query._count else None,
            )

    @staticmethod
    def _sorted_limited(query: FakeQuery, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        rows = query._sorted(rows)
        if query._limit is not None:
            rows = rows[:query._limit]
        return rows


def make_settings(**overrides: Any):
    """Создать настоящий Settings без .env и с тестовыми ключами."""
    from src.config import Settings

    values: dict[str, Any] = {
        "supabase_url": "https://test.supabase.co",
        "supabase_service_key": "service-key",
        "pipeline_api_key": "sk-test-key",
        "worker_id": "worker-test",
        "worker_stages": "",
        "discovery_worker_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_source(db: FakeSupabase, **fields: Any) -> dict[str, Any]:
    """Вставить источник со значениями по умолчанию."""
    row: dict[str, Any] = {
        "name": "Paradiso",
        "url": "https://www.paradiso.nl/agenda",
        "domain": "paradiso.nl",
        "city": "Amsterdam",
        "tier": "tier_1_metropolis",
        "fetch_strategy": "static",
        "extraction_config": None,
        "config_version": 0,
        "reliability_score": 100.0,
        "consecutive_failures": 0,
        "total_events_extracted": 0,
        "expected_event_count": None,
        "enabled": True,
        "quarantined": False,
        "rate_limit_state": {},
        "health_version": 0,
        "last_successful_scrape": None,
    }
    row.update(fields)
    return db.seed("sg_sources", row)[0]


def make_queue_item(db: FakeSupabase, source_id: str, **fields: Any) -> dict[str, Any]:
    """Вставить элемент очереди со значениями по умолчанию."""
    row: dict[str, Any] = {
        "source_id": source_id,
        "source_url": "https://www.paradiso.nl/agenda",
        "detail_url": f"https://www.paradiso.nl/agenda/{uuid.uuid4().hex[:8]}",
        "stage": "discovered",
        "priority": 50,
        "failure_count": 0,
        "worker_id": None,
        "claimed_at": None,
        "geocode_attempts": 0,
    }
    row.update(fields)
    return db.seed("sg_pipeline_queue", row)[0]


EVENT_DATA: dict[str, Any] = {
    "title": "Jazz Night",
    "description": "Live jazz with the house band",
    "event_date": "2026-11-20",
    "start_time": "20:30",
    "doors_open_time": "20:00",
    "venue_name": "Paradiso",
    "street_address": "Weteringschans 6-8",
    "city": "Amsterdam",
    "postal_code": "1017 SG",
    "end_time": "23:00",
    "estimated_duration_minutes": None,
    "language_profile": "native",
    "interaction_mode": "medium",
    "category": "MUSIC",
    "persona_tags": ["NightOwl"],
    "image_url": None,
    "ticket_url": None,
    "price_info": "€15",
}


def make_event(**overrides: Any):
    from src.ai.schemas import SocialFiveEvent

    return SocialFiveEvent.model_validate({**EVENT_DATA, **overrides})


def make_context(db: FakeSupabase, settings=None, **overrides: Any):
    """PipelineContext на FakeSupabase с моками сетевых зависимостей."""
    from src.pipeline.circuit_breaker import CircuitBreaker
    from src.pipeline.context import PipelineContext
    from src.pipeline.coordinator import StageCoordinator

    settings = settings or make_settings()
    breaker = overrides.pop("breaker", None) or CircuitBreaker(db)
    values: dict[str, Any] = {
        "db": db,
        "settings": settings,
        "breaker": breaker,
        "coordinator": StageCoordinator(db, breaker, settings),
        "fetcher": MagicMock(fetch=AsyncMock()),
        "enrichment": MagicMock(extract=AsyncMock()),
        "geocoder": MagicMock(resolve=AsyncMock(return_value=None)),
        "healer": None,
        "openai_client": None,
    }
    values.update(overrides)
    return PipelineContext(**values)


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def settings():
    return make_settings()

"""Тесты обработчиков стадий и process_item."""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.ai.enrichment import ExtractionResult
from src.fetching.page_fetcher import FetchResult, hash_content
from src.fetching.strategies import FetchError
from src.geo.geocoder import Coordinates
from src.models.circuit import CircuitState
from src.models.queue_item import QueueItem, Stage
from src.models.source import FetchStrategy
from src.pipeline.circuit_breaker import CircuitBreaker, CircuitConfig
from src.pipeline.errors import SourceDriftError
from src.worker import handlers
from src.worker.handlers import event_fingerprint, load_event, process_item
from tests.conftest import EVENT_DATA, make_context, make_event, make_queue_item, make_source

DETAIL_PAGE = """
<html><body><main>
<h1>Jazz Night</h1>
<p>Vrijdag 20 november 2026, aanvang 20:30 uur in Paradiso, Weteringschans 6-8, Amsterdam.</p>
</main></body></html>
"""


def _fetched(markup: str = DETAIL_PAGE) -> FetchResult:
    return FetchResult(
        markup=markup,
        final_url="https://www.paradiso.nl/agenda/jazz-night",
        status_code=200,
        headers={"content-type": "text/html", "set-cookie": "x=1"},
        strategy_used=FetchStrategy.STATIC,
        duration_ms=80,
        content_hash=hash_content(markup),
    )


def _extracted(**overrides) -> ExtractionResult:
    return ExtractionResult(make_event(**overrides), 5, 1.0, "ai")


async def _claim(ctx, db, stage: Stage, source: dict | None = None, **fields) -> QueueItem:
    source = source or make_source(db)
    make_queue_item(db, source["id"], stage=stage, **fields)
    items = await ctx.coordinator.claim(stage, 1, ctx.settings.worker_id)
    assert len(items) == 1
    return items[0]


def _row(db) -> dict:
    return db.rows("sg_pipeline_queue")[0]


@pytest.fixture
def sleep(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    mock = AsyncMock()
    monkeypatch.setattr(handlers.asyncio, "sleep", mock)
    return mock


class TestHelpers:
    """Тесты отпечатка и загрузки события."""

    def test_fingerprint_ignores_case_and_spacing(self) -> None:
        a = make_event(title="Jazz  Night", venue_name="PARADISO")
        b = make_event(title="jazz night ", venue_name="Paradiso")
        assert event_fingerprint(a) == event_fingerprint(b)

    def test_fingerprint_differs_by_date(self) -> None:
        assert event_fingerprint(make_event()) != event_fingerprint(make_event(event_date="2026-11-21"))

    def test_load_event_without_data(self) -> None:
        item = QueueItem(id="i1", source_id="s1", source_url="https://x.nl/")
        with pytest.raises(SourceDriftError):
            load_event(item)


class TestProcessItem:
    """Тесты process_item: проход стадий до handoff."""

    async def test_discovered_stops_at_awaiting_fetch(self, db) -> None:
        ctx = make_context(db)
        item = await _claim(ctx, db, Stage.DISCOVERED)

        final = await process_item(ctx, item)

        assert final == Stage.AWAITING_FETCH
        row = _row(db)
        assert row["stage"] == "awaiting_fetch"
        assert row["worker_id"] is None
        ctx.fetcher.fetch.assert_not_awaited()

    async def test_analyzing_samples_source_without_strategy(self, db) -> None:
        ctx = make_context(db)
        source = make_source(db, fetch_strategy=None)
        ctx.fetcher.fetch.return_value = _fetched()
        item = await _claim(ctx, db, Stage.ANALYZING, source=source)

        final = await process_item(ctx, item)

        assert final == Stage.AWAITING_FETCH
        assert db.rows("sg_sources")[0]["fetch_strategy"] == "static"
        ctx.fetcher.fetch.assert_awaited_once()

    async def test_fetch_to_ready_to_persist(self, db) -> None:
        """Загрузка → очистка → экстракция → геокодинг → дедупликация."""
        ctx = make_context(db)
        ctx.fetcher.fetch.return_value = _fetched()
        ctx.enrichment.extract.return_value = _extracted()
        ctx.geocoder.resolve.return_value = Coordinates(52.3621, 4.8836, "registry", "Paradiso")
        item = await _claim(ctx, db, Stage.AWAITING_FETCH, extracted_data={"hints": {"date": "20 nov"}})

        final = await process_item(ctx, item)

        assert final == Stage.READY_TO_PERSIST
        row = _row(db)
        assert row["worker_id"] is None
        assert "Jazz Night" in row["raw_html"]
        assert "Jazz Night" in row["cleaned_markdown"]
        assert row["extracted_data"]["event"]["title"] == "Jazz Night"
        assert row["extracted_data"]["hints"] == {"date": "20 nov"}
        assert row["lat"] == pytest.approx(52.3621)
        assert row["geocode_status"] == "registry"
        assert row["event_fingerprint"] == event_fingerprint(make_event())
        assert db.rows("raw_pages")[0]["headers"] == {"content-type": "text/html"}
        assert ctx.enrichment.extract.await_args.args[2] == {"date": "20 nov"}

    async def test_unresolved_address_parks_item(self, db, sleep) -> None:
        """Пустая экстракция ретраится локально, нерешённый адрес — geo_incomplete."""
        ctx = make_context(db)
        ctx.enrichment.extract.side_effect = [None, _extracted()]
        item = await _claim(ctx, db, Stage.EXTRACTING, raw_html=DETAIL_PAGE)

        final = await process_item(ctx, item)

        assert final == Stage.GEO_INCOMPLETE
        sleep.assert_awaited_once_with(1.0)
        row = _row(db)
        assert row["geocode_status"] == "failed"
        assert row["geocode_attempts"] == 1

    async def test_invalid_date_is_source_drift(self, db) -> None:
        ctx = make_context(db)
        ctx.enrichment.extract.return_value = _extracted(event_date="vrijdag")
        item = await _claim(ctx, db, Stage.EXTRACTING, raw_html=DETAIL_PAGE)

        final = await process_item(ctx, item)

        assert final == Stage.FAILED
        row = _row(db)
        assert row["failed_at_stage"] == "validating"
        assert row["failure_level"] == "source_drift"
        assert db.rows("sg_failure_log")[0]["error_code"] == "validation_failed"

    @pytest.mark.parametrize("overrides", [
        {"title": "Unknown Event"},
        {"title": ""},
        {"venue_name": "TBD"},
        {"venue_name": None},
    ])
    async def test_placeholder_event_never_reaches_catalog(self, db, overrides) -> None:
        ctx = make_context(db)
        ctx.enrichment.extract.return_value = _extracted(**overrides)
        item = await _claim(ctx, db, Stage.EXTRACTING, raw_html=DETAIL_PAGE)

        final = await process_item(ctx, item)

        assert final == Stage.FAILED
        assert _row(db)["failed_at_stage"] == "validating"
        assert _row(db)["failure_level"] == "source_drift"
        assert db.rows("events") == []
        ctx.geocoder.resolve.assert_not_awaited()

    async def test_rules_record_without_title_is_rejected(self, db) -> None:
        """Страница, где нашлась только дата, не проходит валидацию."""
        from src.ai.rules import RulesExtractor

        ctx = make_context(db)
        event = RulesExtractor().extract_sync("<p>15 november 2030</p>", "https://x.nl/", {})
        ctx.enrichment.extract.return_value = ExtractionResult(event, 2, 0.5, "rules")
        item = await _claim(ctx, db, Stage.EXTRACTING, raw_html="<p>15 november 2030</p>")

        assert await process_item(ctx, item) == Stage.FAILED
        assert db.rows("events") == []

    async def test_duplicate_points_to_canonical(self, db) -> None:
        ctx = make_context(db)
        source = make_source(db)
        canonical = make_queue_item(
            db, source["id"], stage="indexed", event_id="evt-1",
            event_fingerprint=event_fingerprint(make_event()),
        )
        item = await _claim(ctx, db, Stage.DEDUPLICATING, source=source, extracted_data={"event": EVENT_DATA})

        final = await process_item(ctx, item)

        assert final == Stage.INDEXED
        row = next(r for r in db.rows("sg_pipeline_queue") if r["id"] == item.id)
        assert row["duplicate_of"] == canonical["id"]
        assert row["event_id"] == "evt-1"
        assert db.rows("events") == []

    async def test_persist_and_index(self, db) -> None:
        ctx = make_context(db)
        source = make_source(db, consecutive_failures=2)
        item = await _claim(
            ctx, db, Stage.READY_TO_PERSIST, source=source,
            extracted_data={"event": EVENT_DATA, "completeness_score": 5, "extraction_method": "ai"},
            lat=52.3621, lng=4.8836, event_fingerprint="abc",
        )

        final = await process_item(ctx, item)

        assert final == Stage.INDEXED
        event = db.rows("events")[0]
        assert event["title"] == "Jazz Night"
        assert event["lat"] == pytest.approx(52.3621)
        assert event["structured_address"]["city"] == "Amsterdam"
        assert event["extraction_method"] == "ai"
        assert _row(db)["event_id"] == event["id"]
        source_row = db.rows("sg_sources")[0]
        assert source_row["consecutive_failures"] == 0
        assert source_row["total_events_extracted"] == 1

    async def test_persisted_item_is_not_inserted_twice(self, db) -> None:
        ctx = make_context(db)
        item = await _claim(
            ctx, db, Stage.READY_TO_PERSIST, extracted_data={"event": EVENT_DATA}, event_id="evt-9",
        )

        assert await process_item(ctx, item) == Stage.INDEXED
        assert db.rows("events") == []

    async def test_fetch_error_feeds_breaker(self, db) -> None:
        """5xx на сетевой стадии без локальных повторов: failed + отказ в circuit."""
        ctx = make_context(db)
        ctx.fetcher.fetch.side_effect = FetchError(FetchStrategy.STATIC, "HTTP 503", status_code=503)
        item = await _claim(ctx, db, Stage.FETCHING)

        final = await process_item(ctx, item)

        assert final == Stage.FAILED
        assert ctx.fetcher.fetch.await_count == 1
        state = await ctx.breaker.get_state(item.source_id)
        assert state is not None and state.failure_count == 1
        assert db.rows("sg_failure_log")[0]["error_code"] == "http_503"

    async def test_forbidden_is_systemic(self, db) -> None:
        ctx = make_context(db)
        ctx.fetcher.fetch.side_effect = FetchError(FetchStrategy.STATIC, "HTTP 403", status_code=403)
        item = await _claim(ctx, db, Stage.FETCHING)

        assert await process_item(ctx, item) == Stage.QUARANTINED
        assert db.rows("sg_sources")[0]["consecutive_failures"] == 1

    async def test_open_circuit_releases_claim(self, db) -> None:
        """Элемент не проверен gate'ом при claim: открытый circuit отпускает его без отказа."""
        breaker = CircuitBreaker(db, CircuitConfig(failure_threshold=1))
        ctx = make_context(db, breaker=breaker)
        source = make_source(db, fetch_strategy=None)
        await breaker.record_failure(source["id"], "HTTP 503")
        item = await _claim(ctx, db, Stage.DISCOVERED, source=source)

        final = await process_item(ctx, item)

        assert final == Stage.ANALYZING
        row = _row(db)
        assert row["stage"] == "analyzing"
        assert row["worker_id"] is None
        assert row["failure_count"] == 0
        ctx.fetcher.fetch.assert_not_awaited()

    async def test_unused_trial_goes_back_to_circuit(self, db) -> None:
        """Стратегия уже известна: analyzing без сети не держит circuit в HALF_OPEN."""
        breaker = CircuitBreaker(db, CircuitConfig(failure_threshold=1, base_cooldown=timedelta(0)))
        ctx = make_context(db, breaker=breaker)
        source = make_source(db)
        await breaker.record_failure(source["id"], "HTTP 503")
        item = await _claim(ctx, db, Stage.ANALYZING, source=source)
        assert item.trial is True

        assert await process_item(ctx, item) == Stage.AWAITING_FETCH

        ctx.fetcher.fetch.assert_not_awaited()
        assert item.trial is False
        state = await breaker.get_state(source["id"])
        assert state is not None and state.state == CircuitState.OPEN
        assert (await breaker.check(source["id"])).trial is True

    async def test_successful_trial_closes_circuit(self, db, sleep) -> None:
        breaker = CircuitBreaker(db, CircuitConfig(failure_threshold=1, base_cooldown=timedelta(0)))
        ctx = make_context(db, breaker=breaker)
        ctx.fetcher.fetch.return_value = _fetched()
        ctx.enrichment.extract.return_value = None
        source = make_source(db)
        await breaker.record_failure(source["id"], "HTTP 503")
        item = await _claim(ctx, db, Stage.FETCHING, source=source)

        await process_item(ctx, item)

        state = await breaker.get_state(source["id"])
        assert state is not None and state.state == CircuitState.CLOSED

    async def test_fetch_counts_against_request_window(self, db) -> None:
        ctx = make_context(db)
        ctx.fetcher.fetch.side_effect = FetchError(FetchStrategy.STATIC, "HTTP 503", status_code=503)
        item = await _claim(ctx, db, Stage.FETCHING)

        await process_item(ctx, item)

        assert db.rows("sg_sources")[0]["rate_limit_state"]["window_requests"] == 1

    async def test_unexpected_error_is_recorded(self, db) -> None:
        ctx = make_context(db)
        ctx.enrichment.extract.side_effect = RuntimeError("boom")
        item = await _claim(ctx, db, Stage.EXTRACTING, raw_html=DETAIL_PAGE)

        assert await process_item(ctx, item) == Stage.FAILED
        assert db.rows("sg_failure_log")[0]["error_code"] == "unexpected"

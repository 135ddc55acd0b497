"""Тесты геокодера: реестр, кэш, Nominatim, rate limit."""
from unittest.mock import AsyncMock

import httpx
import pytest

from src.geo import geocoder
from src.geo.geocoder import AddressQuery, GeocodeResolver

KLOMP = AddressQuery(venue="Buurthuis De Klomp", street="Dorpsstraat 12", postal_code="1234 AB", city="Ergens")
FOUND = [{"lat": "52.7012", "lon": "6.1934", "display_name": "Dorpsstraat 12, Ergens"}]


@pytest.fixture
def sleep(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    mock = AsyncMock()
    monkeypatch.setattr(geocoder.asyncio, "sleep", mock)
    return mock


def _resolver(db, handler, **kwargs) -> tuple[GeocodeResolver, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    kwargs.setdefault("min_interval", 0.0)
    return GeocodeResolver(db, client, **kwargs), requests


class TestAddressQuery:
    """Тесты AddressQuery."""

    def test_from_text(self) -> None:
        query = AddressQuery.from_text("Paradiso, Weteringschans 6-8, Amsterdam")
        assert query.venue == "Paradiso"
        assert query.street == "Weteringschans 6-8"
        assert query.city == "Amsterdam"

    def test_from_text_single_part(self) -> None:
        query = AddressQuery.from_text("Paradiso")
        assert query.venue == "Paradiso"
        assert query.city is None

    def test_cache_key_is_case_insensitive(self) -> None:
        a = AddressQuery(venue="Paradiso", city="Amsterdam")
        b = AddressQuery(venue=" PARADISO", city="amsterdam ")
        assert a.cache_key == b.cache_key == "paradiso|||amsterdam|nl"

    def test_search_text(self) -> None:
        assert KLOMP.search_text() == "Buurthuis De Klomp, Dorpsstraat 12, 1234 AB, Ergens, NL"
        assert KLOMP.search_text(with_street=False) == "Buurthuis De Klomp, Ergens, NL"


class TestGeocodeResolver:
    """Тесты GeocodeResolver.resolve."""

    async def test_registry_hit_skips_network(self, db, sleep) -> None:
        resolver, requests = _resolver(db, lambda r: httpx.Response(500))

        coords = await resolver.resolve("Paradiso, Amsterdam")

        assert coords is not None and coords.source == "registry"
        assert requests == []

    async def test_nominatim_then_cache(self, db, sleep) -> None:
        resolver, requests = _resolver(db, lambda r: httpx.Response(200, json=FOUND))

        first = await resolver.resolve(KLOMP)
        second = await resolver.resolve(KLOMP)

        assert first is not None and first.source == "nominatim"
        assert first.lat == pytest.approx(52.7012)
        assert second is not None and second.source == "cache"
        assert len(requests) == 1
        assert requests[0].headers["User-Agent"] == "event-ingest-pipeline/0.1"
        row = db.rows("sg_geocode_cache")[0]
        assert row["address_key"] == KLOMP.cache_key
        assert row["hit_count"] == 1

    async def test_expired_cache_is_ignored(self, db, sleep) -> None:
        db.seed("sg_geocode_cache", {
            "address_key": KLOMP.cache_key, "lat": 1.0, "lng": 1.0,
            "expires_at": "2020-01-01T00:00:00+00:00", "hit_count": 7,
        })
        resolver, requests = _resolver(db, lambda r: httpx.Response(200, json=FOUND))

        coords = await resolver.resolve(KLOMP)

        assert coords is not None and coords.source == "nominatim"
        assert db.rows("sg_geocode_cache")[0]["lat"] == pytest.approx(52.7012)

    async def test_rate_limit_waits_retry_after(self, db, sleep) -> None:
        responses = iter([httpx.Response(429, headers={"Retry-After": "3"}), httpx.Response(200, json=FOUND)])
        resolver, requests = _resolver(db, lambda r: next(responses))

        coords = await resolver.resolve(KLOMP)

        assert coords is not None
        assert len(requests) == 2
        sleep.assert_any_await(3.0)

    async def test_long_retry_after_is_not_awaited(self, db, sleep) -> None:
        """Nominatim просит ждать 2 часа — не висим на claim, элемент уйдёт в geo_incomplete."""
        resolver, requests = _resolver(db, lambda r: httpx.Response(429, headers={"Retry-After": "7200"}))

        assert await resolver.resolve(KLOMP) is None
        assert all(call.args[0] <= geocoder.MAX_RETRY_AFTER_SECONDS for call in sleep.await_args_list)
        assert len(requests) == 2

    async def test_falls_back_to_venue_and_city(self, db, sleep) -> None:
        """Полный адрес не нашёлся — пробуем 'площадка, город'."""
        def handler(request: httpx.Request) -> httpx.Response:
            if "Dorpsstraat" in request.url.params["q"]:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=FOUND)

        resolver, requests = _resolver(db, handler)
        coords = await resolver.resolve(KLOMP)

        assert coords is not None
        assert [r.url.params["q"] for r in requests] == [
            KLOMP.search_text(), KLOMP.search_text(with_street=False),
        ]

    async def test_server_errors_exhaust_attempts(self, db, sleep) -> None:
        resolver, requests = _resolver(db, lambda r: httpx.Response(503), max_attempts=3)

        assert await resolver.resolve(AddressQuery(venue="Onbekend", street="Laan 1")) is None
        assert len(requests) == 3
        assert db.rows("sg_geocode_cache") == []

    async def test_client_error_stops_immediately(self, db, sleep) -> None:
        resolver, requests = _resolver(db, lambda r: httpx.Response(403))

        assert await resolver.resolve(AddressQuery(venue="Onbekend", street="Laan 1")) is None
        assert len(requests) == 1

    async def test_network_error_returns_none(self, db, sleep) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("dns failure", request=request)

        resolver, requests = _resolver(db, handler, max_attempts=2)
        assert await resolver.resolve(AddressQuery(venue="Onbekend", street="Laan 1")) is None
        assert len(requests) == 2

    async def test_cache_outage_does_not_block_geocoding(self, db, sleep) -> None:
        db.break_table("sg_geocode_cache")
        resolver, _ = _resolver(db, lambda r: httpx.Response(200, json=FOUND))

        coords = await resolver.resolve(KLOMP)
        assert coords is not None and coords.source == "nominatim"

    async def test_short_query_skipped(self, db, sleep) -> None:
        resolver, requests = _resolver(db, lambda r: httpx.Response(200, json=FOUND))
        assert await resolver.resolve(AddressQuery(country="")) is None
        assert requests == []

    async def test_requests_are_spaced(self, db, sleep) -> None:
        """Второй запрос ждёт остаток интервала в одну секунду."""
        resolver, _ = _resolver(db, lambda r: httpx.Response(200, json=FOUND), min_interval=1.0)

        await resolver.resolve(KLOMP)
        await resolver.resolve(AddressQuery(venue="Onbekend", street="Laan 1", city="Ergens"))

        waits = [c.args[0] for c in sleep.await_args_list]
        assert len(waits) == 1
        assert 0 < waits[0] <= 1.0

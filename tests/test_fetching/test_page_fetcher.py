"""Тесты PageFetcher: fallback-цепочки, hash, классификация ошибок."""
import pytest

from src.fetching.page_fetcher import (
    PageFetcher,
    classify_fetch_error,
    has_content_changed,
    hash_content,
    save_raw_page,
)
from src.fetching.strategies import FetchError, FetchOptions, RawResponse
from src.models.queue_item import FailureLevel
from src.models.source import FetchStrategy

CHALLENGE = "<html><head><title>Just a moment...</title></head><body></body></html>"


class _Stub:
    """Стратегия с заранее заданными ответами."""

    def __init__(self, strategy: FetchStrategy, outcome, configured: bool = True) -> None:
        self.strategy = strategy
        self.outcome = outcome
        self._configured = configured
        self.calls = 0

    @property
    def configured(self) -> bool:
        return self._configured

    async def fetch(self, url: str, options: FetchOptions) -> RawResponse:
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return RawResponse(
            html=self.outcome, final_url=url, status_code=200, headers={}, duration_ms=5,
        )


def _fetcher(static, headless, proxy) -> PageFetcher:
    return PageFetcher({
        FetchStrategy.STATIC: static,
        FetchStrategy.HEADLESS_BROWSER: headless,
        FetchStrategy.ANTI_BOT_PROXY: proxy,
    })


class TestChain:
    """Тесты цепочек fallback."""

    def test_skips_unconfigured(self) -> None:
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, "a"),
            _Stub(FetchStrategy.HEADLESS_BROWSER, "b", configured=False),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, "c"),
        )
        assert fetcher.chain_for(FetchStrategy.STATIC) == [FetchStrategy.STATIC, FetchStrategy.ANTI_BOT_PROXY]
        assert fetcher.chain_for(FetchStrategy.ANTI_BOT_PROXY) == [FetchStrategy.ANTI_BOT_PROXY]

    async def test_first_success_wins(self) -> None:
        headless = _Stub(FetchStrategy.HEADLESS_BROWSER, "b")
        fetcher = _fetcher(_Stub(FetchStrategy.STATIC, "<p>static</p>"), headless, _Stub(FetchStrategy.ANTI_BOT_PROXY, "c"))

        result = await fetcher.fetch("https://x.nl/")
        assert result.strategy_used == FetchStrategy.STATIC
        assert result.content_hash == hash_content("<p>static</p>")
        assert headless.calls == 0

    async def test_falls_back_on_error(self) -> None:
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, FetchError(FetchStrategy.STATIC, "HTTP 503", status_code=503)),
            _Stub(FetchStrategy.HEADLESS_BROWSER, "<p>rendered</p>"),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, "c"),
        )
        result = await fetcher.fetch("https://x.nl/")
        assert result.strategy_used == FetchStrategy.HEADLESS_BROWSER

    async def test_forbidden_static_falls_back_to_headless(self) -> None:
        static = _Stub(FetchStrategy.STATIC, FetchError(FetchStrategy.STATIC, "HTTP 403", status_code=403))
        proxy = _Stub(FetchStrategy.ANTI_BOT_PROXY, "c")
        fetcher = _fetcher(static, _Stub(FetchStrategy.HEADLESS_BROWSER, "<p>rendered</p>"), proxy)

        result = await fetcher.fetch("https://x.nl/", FetchStrategy.STATIC)

        assert result.strategy_used == FetchStrategy.HEADLESS_BROWSER
        assert static.calls == 1
        assert proxy.calls == 0

    async def test_challenge_page_triggers_fallback(self) -> None:
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, CHALLENGE),
            _Stub(FetchStrategy.HEADLESS_BROWSER, CHALLENGE),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, "<p>real content</p>"),
        )
        result = await fetcher.fetch("https://x.nl/")
        assert result.strategy_used == FetchStrategy.ANTI_BOT_PROXY

    async def test_challenge_on_last_strategy_is_returned(self) -> None:
        """Последней стратегии не к чему откатываться — отдаём что есть."""
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, "x", configured=False),
            _Stub(FetchStrategy.HEADLESS_BROWSER, "x", configured=False),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, CHALLENGE),
        )
        result = await fetcher.fetch("https://x.nl/", FetchStrategy.ANTI_BOT_PROXY)
        assert result.markup == CHALLENGE

    async def test_raises_first_error_when_all_fail(self) -> None:
        first = FetchError(FetchStrategy.STATIC, "HTTP 403", status_code=403)
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, first),
            _Stub(FetchStrategy.HEADLESS_BROWSER, FetchError(FetchStrategy.HEADLESS_BROWSER, "timeout", timed_out=True)),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, FetchError(FetchStrategy.ANTI_BOT_PROXY, "HTTP 500", status_code=500)),
        )
        with pytest.raises(FetchError) as exc:
            await fetcher.fetch("https://x.nl/")
        assert exc.value is first

    async def test_no_configured_strategy(self) -> None:
        fetcher = PageFetcher({})
        with pytest.raises(FetchError):
            await fetcher.fetch("https://x.nl/")


class TestHashContent:
    """Тесты hash_content."""

    def test_ignores_volatile_tokens(self) -> None:
        a = '<a href="/tickets?csrf=abc123">Jazz</a><span>2026-10-19T12:00:00Z</span>'
        b = '<a href="/tickets?csrf=zz9">Jazz</a><span>2026-10-20T08:30:00Z</span>'
        assert hash_content(a) == hash_content(b)

    @pytest.mark.parametrize("template", [
        '<form><input type="hidden" name="csrf_token" value="{}"><p>Jazz</p></form>',
        '<head><meta name="csrf-token" content="{}"></head><p>Jazz</p>',
        "<input value='{}' id='session-nonce' type='hidden'><p>Jazz</p>",
    ])
    def test_ignores_token_attribute_values(self, template: str) -> None:
        """Значение токена в value/content соседнего атрибута не влияет на hash."""
        assert hash_content(template.format("a1b2c3d4")) == hash_content(template.format("zz99yy88"))

    def test_ordinary_input_values_still_count(self) -> None:
        a = '<input type="hidden" name="event_id" value="101">'
        b = '<input type="hidden" name="event_id" value="202">'
        assert hash_content(a) != hash_content(b)

    def test_ignores_whitespace(self) -> None:
        assert hash_content("<p>Jazz</p>\n\n  <p>Rock</p>") == hash_content("<p>Jazz</p> <p>Rock</p>")

    def test_content_change_changes_hash(self) -> None:
        assert hash_content("<p>Jazz</p>") != hash_content("<p>Rock</p>")


class TestClassifyFetchError:
    """Тесты classify_fetch_error."""

    @pytest.mark.parametrize("error, level", [
        (FetchError(FetchStrategy.STATIC, "t", timed_out=True), FailureLevel.TRANSIENT),
        (FetchError(FetchStrategy.STATIC, "net"), FailureLevel.TRANSIENT),
        (FetchError(FetchStrategy.STATIC, "HTTP 429", status_code=429), FailureLevel.TRANSIENT),
        (FetchError(FetchStrategy.STATIC, "HTTP 502", status_code=502), FailureLevel.TRANSIENT),
        (FetchError(FetchStrategy.STATIC, "HTTP 403", status_code=403), FailureLevel.SYSTEMIC),
        (FetchError(FetchStrategy.STATIC, "HTTP 401", status_code=401), FailureLevel.SYSTEMIC),
    ])
    def test_levels(self, error: FetchError, level: FailureLevel) -> None:
        assert classify_fetch_error(error) == level


class TestRawPages:
    """Тесты сохранения страниц и change detection."""

    async def test_change_detection(self, db) -> None:
        fetcher = _fetcher(
            _Stub(FetchStrategy.STATIC, "<p>v1</p>"),
            _Stub(FetchStrategy.HEADLESS_BROWSER, "x"),
            _Stub(FetchStrategy.ANTI_BOT_PROXY, "x"),
        )
        url = "https://x.nl/agenda"
        result = await fetcher.fetch(url)

        assert await has_content_changed(db, "src-1", url, result.content_hash) is True
        await save_raw_page(db, "src-1", url, result)
        assert await has_content_changed(db, "src-1", url, result.content_hash) is False
        assert await has_content_changed(db, "src-1", url, hash_content("<p>v2</p>")) is True

        row = db.rows("raw_pages")[0]
        assert row["fetcher_used"] == FetchStrategy.STATIC
        assert row["html"] == "<p>v1</p>"

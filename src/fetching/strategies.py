"""Стратегии загрузки страниц: static / headless-browser / anti-bot-proxy."""
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from src.database import parse_retry_after
from src.models.source import FetchStrategy

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "nl-NL,nl;q=0.9,en;q=0.8",
}
SCRAPINGBEE_ENDPOINT = "https://app.scrapingbee.com/api/v1/"


class FetchError(Exception):
    """Ошибка одной попытки загрузки (таймаут, не-2xx, сеть)."""

    def __init__(
        self,
        strategy: FetchStrategy,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        timed_out: bool = False,
    ) -> None:
        self.strategy = strategy
        self.status_code = status_code
        self.retry_after = retry_after
        self.timed_out = timed_out
        super().__init__(f"[{strategy}] {message}")


@dataclass
class FetchOptions:
    timeout: float = 30.0
    wait_for_selector: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class RawResponse:
    """Ответ стратегии до нормализации в FetchResult."""

    html: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    duration_ms: int


class PageFetcherStrategy(Protocol):
    """Интерфейс стратегии загрузки."""

    strategy: FetchStrategy

    @property
    def configured(self) -> bool: ...

    async def fetch(self, url: str, options: FetchOptions) -> RawResponse: ...


def _check_status(strategy: FetchStrategy, response: httpx.Response, status_code: int) -> None:
    if 200 <= status_code < 300:
        return
    raise FetchError(
        strategy,
        f"HTTP {status_code}",
        status_code=status_code,
        retry_after=parse_retry_after(response.headers) if status_code == 429 else None,
    )


async def _send(
    strategy: FetchStrategy,
    client: httpx.AsyncClient,
    request: httpx.Request,
    timeout: float,
) -> tuple[httpx.Response, int]:
    """Отправить запрос с таймаутом, сетевые ошибки → FetchError."""
    started = time.monotonic()
    try:
        response = await client.send(request, follow_redirects=True)
    except httpx.TimeoutException:
        raise FetchError(strategy, f"timeout after {timeout}s", timed_out=True)
    except httpx.HTTPError as e:
        raise FetchError(strategy, f"network error: {e}")
    return response, int((time.monotonic() - started) * 1000)


class StaticFetcher:
    """Обычный HTTP GET."""

    strategy = FetchStrategy.STATIC

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @property
    def configured(self) -> bool:
        return True

    async def fetch(self, url: str, options: FetchOptions) -> RawResponse:
        request = self.client.build_request(
            "GET", url, headers={**DEFAULT_HEADERS, **options.headers}, timeout=options.timeout,
        )
        response, duration_ms = await _send(self.strategy, self.client, request, options.timeout)
        _check_status(self.strategy, response, response.status_code)
        return RawResponse(
            html=response.text,
            final_url=str(response.url),
            status_code=response.status_code,
            headers=dict(response.headers),
            duration_ms=duration_ms,
        )


class HeadlessBrowserFetcher:
    """JS-рендеринг через Browserless /content."""

    strategy = FetchStrategy.HEADLESS_BROWSER

    def __init__(self, client: httpx.AsyncClient, base_url: str, token: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.token = token

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def fetch(self, url: str, options: FetchOptions) -> RawResponse:
        body: dict = {
            "url": url,
            "gotoOptions": {"waitUntil": "networkidle2", "timeout": int(options.timeout * 1000)},
        }
        if options.wait_for_selector:
            body["waitForSelector"] = {"selector": options.wait_for_selector, "timeout": 10000}
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/content",
            params={"token": self.token},
            json=body,
            timeout=options.timeout,
        )
        response, duration_ms = await _send(self.strategy, self.client, request, options.timeout)
        _check_status(self.strategy, response, response.status_code)
        return RawResponse(
            html=response.text,
            final_url=url,
            status_code=response.status_code,
            headers=dict(response.headers),
            duration_ms=duration_ms,
        )


class AntiBotProxyFetcher:
    """Рендеринг + premium/residential прокси через ScrapingBee."""

    strategy = FetchStrategy.ANTI_BOT_PROXY

    def __init__(self, client: httpx.AsyncClient, api_key: str) -> None:
        self.client = client
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def fetch(self, url: str, options: FetchOptions) -> RawResponse:
        params = {
            "api_key": self.api_key,
            "url": url,
            "render_js": "true",
            "premium_proxy": "true",
            "country_code": "nl",
        }
        if options.wait_for_selector:
            params["wait_for"] = options.wait_for_selector
        request = self.client.build_request(
            "GET", SCRAPINGBEE_ENDPOINT, params=params, timeout=options.timeout,
        )
        response, duration_ms = await _send(self.strategy, self.client, request, options.timeout)
        _check_status(self.strategy, response, response.status_code)

        # ScrapingBee отдаёт 200 даже если целевой сайт ответил ошибкой
        initial = response.headers.get("spb-initial-status-code")
        status_code = int(initial) if initial and initial.isdigit() else response.status_code
        _check_status(self.strategy, response, status_code)
        return RawResponse(
            html=response.text,
            final_url=response.headers.get("spb-resolved-url", url),
            status_code=status_code,
            headers=dict(response.headers),
            duration_ms=duration_ms,
        )

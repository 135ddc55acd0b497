"""Геокодинг адресов: реестр площадок → кэш в БД → Nominatim.

Nominatim разрешает не больше одного запроса в секунду, поэтому все
запросы резолвера идут через общий lock с минимальным интервалом.
Любая ошибка геокодинга возвращает None, исключения наружу не уходят.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

import httpx
from loguru import logger
from supabase import Client

from src.config import Settings
from src.database import (
    MAX_RETRY_AFTER_SECONDS,
    parse_retry_after,
    run_in_thread,
    sanitize_error,
    utcnow,
)
from src.geo.venue_registry import lookup_venue

GEOCODE_CACHE_TABLE = "sg_geocode_cache"
DEFAULT_COUNTRY = "NL"
MIN_REQUEST_INTERVAL = 1.0
MAX_ATTEMPTS = 3
DEFAULT_RETRY_AFTER = 5.0


@dataclass
class AddressQuery:
    venue: str | None = None
    street: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country: str = DEFAULT_COUNTRY

    @classmethod
    def from_text(cls, text: str) -> "AddressQuery":
        """Свободная строка 'Venue, City' → запрос. Последняя часть считается городом."""
        parts = [p.strip() for p in text.split(",") if p.strip()]
        if len(parts) >= 2:
            return cls(venue=parts[0], street=", ".join(parts[1:-1]) or None, city=parts[-1])
        return cls(venue=parts[0] if parts else None)

    @classmethod
    def from_structured(cls, address: dict[str, Any]) -> "AddressQuery":
        return cls(
            venue=address.get("venue"),
            street=address.get("street"),
            postal_code=address.get("postal_code"),
            city=address.get("city"),
        )

    @property
    def cache_key(self) -> str:
        parts = [self.venue, self.street, self.postal_code, self.city, self.country or DEFAULT_COUNTRY]
        return "|".join((p or "").strip().lower() for p in parts)

    def search_text(self, with_street: bool = True) -> str:
        if with_street:
            parts = [self.venue, self.street, self.postal_code, self.city, self.country]
        else:
            parts = [self.venue, self.city, self.country]
        return ", ".join(p.strip() for p in parts if p and p.strip())


@dataclass
class Coordinates:
    lat: float
    lng: float
    source: Literal["registry", "cache", "nominatim"]
    display_name: str = ""


class GeocodeResolver:
    def __init__(
        self,
        db: Client,
        client: httpx.AsyncClient,
        endpoint: str = "https://nominatim.openstreetmap.org/search",
        user_agent: str = "event-ingest-pipeline/0.1",
        cache_days: int = 180,
        min_interval: float = MIN_REQUEST_INTERVAL,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.db = db
        self.client = client
        self.endpoint = endpoint
        self.user_agent = user_agent
        self.cache_days = cache_days
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self._rate_lock = asyncio.Lock()
        self._last_request: float | None = None

    @classmethod
    def from_settings(cls, db: Client, client: httpx.AsyncClient, settings: Settings) -> "GeocodeResolver":
        return cls(
            db,
            client,
            endpoint=settings.nominatim_url,
            user_agent=settings.nominatim_user_agent,
            cache_days=settings.geocode_cache_days,
        )

    async def resolve(self, address: str | AddressQuery) -> Coordinates | None:
        query = AddressQuery.from_text(address) if isinstance(address, str) else address

        venue = lookup_venue(query.venue, query.city)
        if venue is not None:
            logger.debug(f"[geocode] Registry hit: {query.venue} → {venue.name}")
            return Coordinates(venue.lat, venue.lng, "registry", venue.name)

        text = query.search_text()
        if len(text) < 3:
            logger.warning("[geocode] Query too short, skipping")
            return None

        cached = await self._check_cache(query.cache_key)
        if cached is not None:
            return cached

        result = await self._search_with_retry(text)
        if result is None and query.city:
            fallback = query.search_text(with_street=False)
            if fallback != text:
                logger.info(f"[geocode] Trying fallback: {fallback}")
                result = await self._search_with_retry(fallback)

        if result is None:
            logger.warning(f"[geocode] All attempts failed for: {text}")
            return None

        await self._save_cache(query.cache_key, text, result)
        return result

    async def _throttle(self) -> None:
        async with self._rate_lock:
            now = time.monotonic()
            if self._last_request is not None:
                wait = self.min_interval - (now - self._last_request)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _search_with_retry(self, text: str) -> Coordinates | None:
        for attempt in range(1, self.max_attempts + 1):
            await self._throttle()
            try:
                response = await self.client.get(
                    self.endpoint,
                    params={"q": text, "format": "json", "limit": 1, "addressdetails": 1},
                    headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                    timeout=10.0,
                )
            except httpx.HTTPError as e:
                logger.warning(f"[geocode] Attempt {attempt} failed: {sanitize_error(str(e))}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(2 ** (attempt - 1))
                continue

            if response.status_code == 429:
                wait = parse_retry_after(response.headers)
                if wait is None:
                    wait = DEFAULT_RETRY_AFTER
                if wait > MAX_RETRY_AFTER_SECONDS:
                    logger.warning(f"[geocode] Nominatim asks to wait {wait:.0f}s, giving up for now")
                    return None
                logger.warning(f"[geocode] Nominatim rate limited, waiting {wait}s")
                await asyncio.sleep(wait)
                continue
            if response.status_code >= 500:
                logger.warning(f"[geocode] Nominatim HTTP {response.status_code} (attempt {attempt})")
                if attempt < self.max_attempts:
                    await asyncio.sleep(2 ** (attempt - 1))
                continue
            if response.status_code != 200:
                logger.error(f"[geocode] Nominatim HTTP {response.status_code} for: {text}")
                return None

            try:
                results = response.json()
                if not results:
                    logger.info(f"[geocode] No results for: {text}")
                    return None
                first = results[0]
                return Coordinates(
                    lat=float(first["lat"]),
                    lng=float(first["lon"]),
                    source="nominatim",
                    display_name=first.get("display_name", ""),
                )
            except (ValueError, KeyError, IndexError, TypeError) as e:
                logger.error(f"[geocode] Unexpected Nominatim payload for {text}: {e}")
                return None
        return None

    async def _check_cache(self, key: str) -> Coordinates | None:
        try:
            result = await run_in_thread(
                self.db.table(GEOCODE_CACHE_TABLE)
                .select("lat, lng, display_name, hit_count")
                .eq("address_key", key)
                .gt("expires_at", utcnow().isoformat())
                .limit(1)
                .execute
            )
            if not result.data:
                return None
            row = result.data[0]
            await run_in_thread(
                self.db.table(GEOCODE_CACHE_TABLE)
                .update({
                    "hit_count": (row.get("hit_count") or 0) + 1,
                    "last_hit_at": utcnow().isoformat(),
                })
                .eq("address_key", key)
                .execute
            )
        except Exception as e:
            logger.error(f"[geocode] Cache lookup failed: {sanitize_error(str(e))}")
            return None
        logger.debug(f"[geocode] Cache hit: {key}")
        return Coordinates(row["lat"], row["lng"], "cache", row.get("display_name") or "")

    async def _save_cache(self, key: str, text: str, coords: Coordinates) -> None:
        now = utcnow()
        try:
            await run_in_thread(
                self.db.table(GEOCODE_CACHE_TABLE)
                .upsert(
                    {
                        "address_key": key,
                        "original_query": text,
                        "lat": coords.lat,
                        "lng": coords.lng,
                        "display_name": coords.display_name,
                        "expires_at": (now + timedelta(days=self.cache_days)).isoformat(),
                        "hit_count": 0,
                        "last_hit_at": now.isoformat(),
                    },
                    on_conflict="address_key",
                )
                .execute
            )
        except Exception as e:
            logger.error(f"[geocode] Cache write failed: {sanitize_error(str(e))}")


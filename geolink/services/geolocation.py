"""Visitor geolocation: IP -> (country code, city).

Lookup order is fast cache (Redis), then the durable cache table, then the
external IP-intelligence provider. The resolver never raises: any failure
on the way degrades to ``UNKNOWN_LOCATION``, which is not a valid ISO code
and therefore cannot match a geo-rule. Failed lookups are not cached.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Protocol

import httpx

from ..exceptions import CacheUnavailable, UpstreamError, UpstreamTimeout
from ..observability import CACHE_HITS, CACHE_MISSES, GEO_LOOKUPS

logger = logging.getLogger(__name__)

FAST_CACHE_PREFIX = "geolocation:"


class GeoLocation(NamedTuple):
    country_code: str
    city: str


UNKNOWN_LOCATION = GeoLocation("UNKNOWN", "Unknown")


@dataclass
class DurableGeoEntry:
    location: GeoLocation
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class FastCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ex: Optional[int] = None): ...
    async def delete(self, key: str): ...


class DurableGeoStore(Protocol):
    async def find_by_ip(self, ip: str) -> Optional[DurableGeoEntry]: ...
    async def upsert(self, ip: str, location: GeoLocation, expires_at: datetime): ...


class GeoProvider(Protocol):
    async def lookup(self, ip: str) -> GeoLocation: ...


class IpInfoProvider:
    """ipinfo.io lookup. Raises UpstreamTimeout / UpstreamError."""

    def __init__(self, client: httpx.AsyncClient, token: str = "", timeout: float = 3.0):
        self.client = client
        self.token = token
        self.timeout = timeout

    async def lookup(self, ip: str) -> GeoLocation:
        try:
            # Hard bound on the whole exchange, not just per socket phase.
            return await asyncio.wait_for(self._fetch(ip), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise UpstreamTimeout(f"ipinfo lookup for {ip!r} timed out") from e

    async def _fetch(self, ip: str) -> GeoLocation:
        params = {"token": self.token} if self.token else None
        try:
            response = await self.client.get(f"/{ip}/json", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            raise
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamError(f"ipinfo lookup for {ip!r} failed: {e}") from e

        if not isinstance(data, dict):
            raise UpstreamError(f"ipinfo returned a non-object for {ip!r}")
        country = data.get("country")
        if not isinstance(country, str) or len(country) != 2:
            raise UpstreamError(f"ipinfo returned no country for {ip!r}")
        city = data.get("city") or UNKNOWN_LOCATION.city
        return GeoLocation(country.upper(), city)


class GeoCache:
    """Two independent best-effort tiers: fast key-value and durable table."""

    def __init__(self, fast: FastCache, durable: DurableGeoStore, fast_ttl: int, durable_ttl: timedelta):
        self.fast = fast
        self.durable = durable
        self.fast_ttl = fast_ttl
        self.durable_ttl = durable_ttl

    async def get_fast(self, ip: str) -> Optional[GeoLocation]:
        raw = await self.fast.get(f"{FAST_CACHE_PREFIX}{ip}")
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return GeoLocation(data["country_code"], data["city"])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding malformed fast geo cache entry for {ip}")
            return None

    async def set_fast(self, ip: str, location: GeoLocation):
        value = json.dumps({"country_code": location.country_code, "city": location.city})
        await self.fast.set(f"{FAST_CACHE_PREFIX}{ip}", value, ex=self.fast_ttl)

    async def get_durable(self, ip: str, now: datetime) -> Optional[GeoLocation]:
        try:
            entry = await self.durable.find_by_ip(ip)
        except CacheUnavailable as e:
            logger.warning(f"{e}: {e.__cause__}")
            return None
        if entry is None or not entry.is_valid(now):
            return None
        return entry.location

    async def set_durable(self, ip: str, location: GeoLocation, now: datetime):
        try:
            await self.durable.upsert(ip, location, now + self.durable_ttl)
        except CacheUnavailable as e:
            logger.warning(f"{e}: {e.__cause__}")


class GeolocationResolver:
    def __init__(self, cache: GeoCache, provider: GeoProvider):
        self.cache = cache
        self.provider = provider
        self._inflight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    async def resolve_location(self, ip: str) -> GeoLocation:
        try:
            return await self._resolve(ip)
        except Exception:
            logger.exception(f"Geolocation failed for {ip!r}")
            return UNKNOWN_LOCATION

    async def _resolve(self, ip: str) -> GeoLocation:
        location = await self.cache.get_fast(ip)
        if location is not None:
            CACHE_HITS.labels(cache="geo_fast").inc()
            return location
        CACHE_MISSES.labels(cache="geo_fast").inc()

        now = datetime.now(timezone.utc)
        location = await self.cache.get_durable(ip, now)
        if location is not None:
            CACHE_HITS.labels(cache="geo_durable").inc()
            await self.cache.set_fast(ip, location)
            return location
        CACHE_MISSES.labels(cache="geo_durable").inc()

        # Concurrent misses for the same IP share one provider call.
        task = self._inflight.get(ip)
        if task is None:
            # Owned by the resolver so a cancelled caller cannot cancel or
            # decide the lookup for the others.
            task = asyncio.create_task(self._lookup(ip, now))
            self._inflight[ip] = task
            task.add_done_callback(lambda t: self._forget(ip, t))
        return await asyncio.shield(task)

    def _forget(self, ip: str, task: asyncio.Task):
        if self._inflight.get(ip) is task:
            del self._inflight[ip]

    async def _lookup(self, ip: str, now: datetime) -> GeoLocation:
        try:
            location = await self.provider.lookup(ip)
        except UpstreamTimeout as e:
            GEO_LOOKUPS.labels(result="timeout").inc()
            logger.warning(f"Geolocation provider timed out: {e}")
            return UNKNOWN_LOCATION
        except UpstreamError as e:
            GEO_LOOKUPS.labels(result="error").inc()
            logger.warning(f"Geolocation provider failed: {e}")
            return UNKNOWN_LOCATION
        GEO_LOOKUPS.labels(result="ok").inc()

        self._spawn(self.cache.set_durable(ip, location, now))
        await self.cache.set_fast(ip, location)
        return location

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self):
        """Wait for in-flight lookups and outstanding durable-cache writes."""
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

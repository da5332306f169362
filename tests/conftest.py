import asyncio
import pytest
from datetime import timedelta
from typing import AsyncGenerator, Optional
from httpx import AsyncClient, ASGITransport

from geolink.main import app
from geolink.dependencies import get_redirector, get_link_cache
from geolink.exceptions import CacheUnavailable, PersistenceError, UpstreamError
from geolink.schemas import LinkSnapshot, RuleSnapshot
from geolink.services.geolocation import DurableGeoEntry, GeoCache, GeoLocation, GeolocationResolver
from geolink.services.link_cache import LinkCache
from geolink.services.redirector import Redirector
from geolink.services.visit_recorder import VisitRecorder

DE_IP = "85.214.132.117"
FR_IP = "90.84.0.1"


class InMemoryCache:
    """Stand-in for RedisClient."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.writes: list[str] = []

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self.writes.append(key)
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, key: str):
        self.data.pop(key, None)


class FakeLinkStore:
    def __init__(self):
        self.links: dict[str, LinkSnapshot] = {}
        self.lookups: list[str] = []

    def add(self, link: LinkSnapshot):
        self.links[link.short_code] = link

    async def find_active_by_short_code(self, short_code: str) -> Optional[LinkSnapshot]:
        self.lookups.append(short_code)
        link = self.links.get(short_code)
        if link is None or not link.active:
            return None
        return link


class FakeVisitStore:
    def __init__(self):
        self.visits: list[dict] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.pending = 0

    async def insert(self, link_id, ip, location, rule_id):
        if self.gate is not None:
            self.pending += 1
            await self.gate.wait()
            self.pending -= 1
        if self.fail:
            raise PersistenceError(f"Could not record visit for link {link_id}")
        self.visits.append({
            "link_id": link_id,
            "ip": ip,
            "country": location.country_code,
            "city": location.city,
            "rule_id": rule_id,
        })


class FakeGeoCacheStore:
    def __init__(self):
        self.entries = {}
        self.upserts: list[str] = []
        self.fail = False

    async def find_by_ip(self, ip: str):
        if self.fail:
            raise CacheUnavailable(f"Durable geo cache read failed for {ip}")
        return self.entries.get(ip)

    async def upsert(self, ip, location, expires_at):
        if self.fail:
            raise CacheUnavailable(f"Durable geo cache write failed for {ip}")
        self.upserts.append(ip)
        self.entries[ip] = DurableGeoEntry(location=location, expires_at=expires_at)


class FakeGeoProvider:
    def __init__(self, locations: dict[str, GeoLocation]):
        self.locations = locations
        self.calls: list[str] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def lookup(self, ip: str) -> GeoLocation:
        self.calls.append(ip)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if ip not in self.locations:
            raise UpstreamError(f"no data for {ip!r}")
        return self.locations[ip]


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()

@pytest.fixture
def link_store() -> FakeLinkStore:
    return FakeLinkStore()

@pytest.fixture
def visit_store() -> FakeVisitStore:
    return FakeVisitStore()

@pytest.fixture
def geo_store() -> FakeGeoCacheStore:
    return FakeGeoCacheStore()

@pytest.fixture
def provider() -> FakeGeoProvider:
    return FakeGeoProvider({
        DE_IP: GeoLocation("DE", "Berlin"),
        FR_IP: GeoLocation("FR", "Paris"),
    })

@pytest.fixture
def geolocation(cache, geo_store, provider) -> GeolocationResolver:
    geo_cache = GeoCache(cache, geo_store, fast_ttl=86400, durable_ttl=timedelta(days=7))
    return GeolocationResolver(geo_cache, provider)

@pytest.fixture
def link_cache(cache, link_store) -> LinkCache:
    return LinkCache(cache, link_store, ttl=300)

@pytest.fixture
async def visit_recorder(visit_store) -> AsyncGenerator[VisitRecorder, None]:
    recorder = VisitRecorder(visit_store, max_pending=100)
    recorder.start()
    yield recorder
    await recorder.stop()

@pytest.fixture
def redirector(link_cache, geolocation, visit_recorder) -> Redirector:
    return Redirector(link_cache, geolocation, visit_recorder)

@pytest.fixture
def merchant_link(link_store) -> LinkSnapshot:
    link = LinkSnapshot(
        id=1,
        short_code="abc",
        base_url="merchant.com/a",
        active=True,
        rules=[RuleSnapshot(id=10, redirect_url="merchant.de/a", countries=["DE"])],
    )
    link_store.add(link)
    return link

@pytest.fixture
async def client(redirector, link_cache) -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not run the lifespan, so nothing touches Postgres
    # or Redis; the redirect path runs entirely on the fakes above.
    app.dependency_overrides[get_redirector] = lambda: redirector
    app.dependency_overrides[get_link_cache] = lambda: link_cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()

import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from ..observability import CACHE_HITS, CACHE_MISSES
from ..schemas import LinkSnapshot
from .geolocation import FastCache

logger = logging.getLogger(__name__)

LINK_CACHE_PREFIX = "link:"

def link_cache_key(short_code: str) -> str:
    return f"{LINK_CACHE_PREFIX}{short_code}"

class LinkStore(Protocol):
    async def find_active_by_short_code(self, short_code: str) -> Optional[LinkSnapshot]: ...

class LinkCache:
    """Cache-aside lookup of active links by short code.

    Not-found results are never cached, so a link created right after a
    failed lookup is visible on the next request.
    """

    def __init__(self, cache: FastCache, store: LinkStore, ttl: int):
        self.cache = cache
        self.store = store
        self.ttl = ttl

    async def get_active_link_by_code(self, short_code: str) -> Optional[LinkSnapshot]:
        key = link_cache_key(short_code)
        cached = await self.cache.get(key)
        if cached is not None:
            try:
                link = LinkSnapshot.model_validate_json(cached)
            except ValidationError:
                logger.warning(f"Discarding malformed link cache entry for {short_code}")
            else:
                CACHE_HITS.labels(cache="link").inc()
                return link
        CACHE_MISSES.labels(cache="link").inc()

        link = await self.store.find_active_by_short_code(short_code)
        if link is None:
            return None
        await self.cache.set(key, link.model_dump_json(), ex=self.ttl)
        return link

    async def invalidate(self, short_code: str):
        await self.cache.delete(link_cache_key(short_code))

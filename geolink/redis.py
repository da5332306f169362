import logging
import redis.asyncio as redis
from typing import Optional

logger = logging.getLogger(__name__)

class RedisClient:
    """Best-effort Redis handle: read errors are misses, write errors are dropped."""

    def __init__(self, url: str):
        self.url = url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        self.client = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True
        )
        try:
            await self.client.ping()
        except redis.RedisError as e:
            # Keep the client; it reconnects lazily once Redis is back.
            logger.warning(f"Redis not reachable at startup: {e}")

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def get(self, key: str) -> Optional[str]:
        if not self.client:
            return None
        try:
            return await self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET {key} failed: {e}")
            return None

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        if not self.client:
            return
        try:
            await self.client.set(key, value, ex=ex)
        except redis.RedisError as e:
            logger.warning(f"Redis SET {key} failed: {e}")

    async def delete(self, key: str):
        if not self.client:
            return
        try:
            await self.client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Redis DEL {key} failed: {e}")

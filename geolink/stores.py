"""Database-backed stores used by the redirect path.

Each store opens its own short-lived session from a session factory so it
can be shared by concurrent requests and by background workers. SQLAlchemy
errors are re-raised as the matching geolink error category.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import crud
from .exceptions import CacheUnavailable, PersistenceError
from .models import LinkVisit
from .schemas import LinkSnapshot
from .services.geolocation import GeoLocation, DurableGeoEntry

logger = logging.getLogger(__name__)


class SqlLinkStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_active_by_short_code(self, short_code: str) -> Optional[LinkSnapshot]:
        async with self.session_factory() as db:
            link = await crud.get_active_link_by_short_code(db, short_code)
            if link is None:
                return None
            return LinkSnapshot.model_validate(link)


class SqlVisitStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, link_id: int, ip: str, location: GeoLocation, rule_id: Optional[int]):
        visit = LinkVisit(
            link_id=link_id,
            ip=ip,
            country=location.country_code,
            city=location.city,
            rule_id=rule_id,
        )
        try:
            async with self.session_factory() as db:
                await crud.create_visit(db, visit)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not record visit for link {link_id}") from e


class SqlGeoCacheStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_ip(self, ip: str) -> Optional[DurableGeoEntry]:
        try:
            async with self.session_factory() as db:
                row = await crud.get_ip_geo_cache(db, ip)
        except SQLAlchemyError as e:
            raise CacheUnavailable(f"Durable geo cache read failed for {ip}") from e
        if row is None:
            return None
        return DurableGeoEntry(
            location=GeoLocation(row.country_code, row.city),
            expires_at=row.expires_at,
        )

    async def upsert(self, ip: str, location: GeoLocation, expires_at: datetime):
        try:
            async with self.session_factory() as db:
                await crud.upsert_ip_geo_cache(db, ip, location.country_code, location.city, expires_at)
        except SQLAlchemyError as e:
            raise CacheUnavailable(f"Durable geo cache write failed for {ip}") from e

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import selectinload
from .models import Link, GeoRule, LinkVisit, IpGeoCache
from typing import Optional
from datetime import datetime

# Link CRUD
async def create_link(db: AsyncSession, link: Link) -> Link:
    db.add(link)
    await db.commit()
    return await get_link_by_id(db, link.id)

async def get_link_by_short_code(db: AsyncSession, short_code: str) -> Optional[Link]:
    result = await db.execute(select(Link).where(Link.short_code == short_code))
    return result.scalar_one_or_none()

async def get_active_link_by_short_code(db: AsyncSession, short_code: str) -> Optional[Link]:
    result = await db.execute(
        select(Link)
        .options(selectinload(Link.rules))
        .where(Link.short_code == short_code, Link.active.is_(True))
    )
    return result.scalar_one_or_none()

async def get_link_by_id(db: AsyncSession, link_id: int, project_id: Optional[int] = None) -> Optional[Link]:
    stmt = select(Link).options(selectinload(Link.rules)).where(Link.id == link_id)
    if project_id is not None:
        stmt = stmt.where(Link.project_id == project_id)
    # populate_existing so rules changed in this session are reloaded
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()

async def list_links(db: AsyncSession, project_id: int, page: int, limit: int) -> tuple[list[Link], int]:
    total = await db.scalar(select(func.count()).select_from(Link).where(Link.project_id == project_id))
    result = await db.execute(
        select(Link)
        .options(selectinload(Link.rules))
        .where(Link.project_id == project_id)
        .order_by(Link.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0

async def update_link(db: AsyncSession, link: Link, values: dict) -> Link:
    for field, value in values.items():
        setattr(link, field, value)
    await db.commit()
    return await get_link_by_id(db, link.id)

async def delete_link(db: AsyncSession, link: Link):
    await db.delete(link)
    await db.commit()

# GeoRule CRUD
async def get_rule(db: AsyncSession, rule_id: int, project_id: int) -> Optional[GeoRule]:
    result = await db.execute(
        select(GeoRule)
        .join(Link, GeoRule.link_id == Link.id)
        .options(selectinload(GeoRule.link))
        .where(GeoRule.id == rule_id, Link.project_id == project_id)
    )
    return result.scalar_one_or_none()

async def create_rule(db: AsyncSession, rule: GeoRule) -> GeoRule:
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return rule

async def update_rule(db: AsyncSession, rule: GeoRule, redirect_url: str, countries: list[str]) -> GeoRule:
    rule.redirect_url = redirect_url
    rule.countries = countries
    await db.commit()
    await db.refresh(rule)
    return rule

async def delete_rule(db: AsyncSession, rule: GeoRule):
    await db.delete(rule)
    await db.commit()

# Visits (append-only)
async def create_visit(db: AsyncSession, visit: LinkVisit):
    db.add(visit)
    await db.commit()

# Durable geolocation cache
async def get_ip_geo_cache(db: AsyncSession, ip: str) -> Optional[IpGeoCache]:
    result = await db.execute(select(IpGeoCache).where(IpGeoCache.ip == ip))
    return result.scalar_one_or_none()

async def upsert_ip_geo_cache(db: AsyncSession, ip: str, country_code: str, city: str, expires_at: datetime):
    stmt = insert(IpGeoCache).values(
        ip=ip, country_code=country_code, city=city, expires_at=expires_at
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[IpGeoCache.ip],
        set_={
            "country_code": stmt.excluded.country_code,
            "city": stmt.excluded.city,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": func.now(),
        },
    )
    await db.execute(stmt)
    await db.commit()

from fastapi import APIRouter, Depends, HTTPException, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
import logging
import math
from typing import Optional

from ...database import get_db
from ...dependencies import get_link_cache
from ...schemas import (
    LinkCreate, LinkUpdate, LinkResponse, LinkPage, RuleCreate, RuleResponse, ShortCodeAvailability,
)
from ...models import Link, GeoRule
from ...crud import (
    create_link, get_link_by_short_code, get_link_by_id, list_links, update_link, delete_link,
    get_rule, create_rule, update_rule, delete_rule,
)
from ...services.link_cache import LinkCache
from ...utils import generate_random_code
from ...config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

def require_project(x_project_id: Optional[int] = Header(None, alias="X-Project-Id")) -> int:
    if x_project_id is None:
        raise HTTPException(status_code=400, detail="Project ID is required (X-Project-Id header)")
    return x_project_id

def to_response(link: Link) -> LinkResponse:
    response = LinkResponse.model_validate(link)
    response.short_url = f"{settings.BASE_URL}/{link.short_code}"
    return response

async def get_owned_link(db: AsyncSession, link_id: int, project_id: int) -> Link:
    link = await get_link_by_id(db, link_id, project_id)
    if not link:
        raise HTTPException(status_code=404, detail="Link not found or not authorized")
    return link

@router.get("/links", response_model=LinkPage)
async def get_links(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db)
):
    links, total = await list_links(db, project_id, page, limit)
    return LinkPage(
        links=[to_response(link) for link in links],
        page=page,
        total_pages=math.ceil(total / limit),
    )

@router.post("/links", response_model=LinkResponse, status_code=status.HTTP_201_CREATED)
async def shorten_link(
    link_in: LinkCreate,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db)
):
    # 1. Pick short_code
    if link_in.short_code:
        short_code = link_in.short_code
        if await get_link_by_short_code(db, short_code):
            raise HTTPException(status_code=409, detail="Short code already in use")
    else:
        # Retry loop for random collision
        for _ in range(5):
            short_code = generate_random_code(settings.SHORT_CODE_LENGTH)
            if not await get_link_by_short_code(db, short_code):
                break
        else:
            raise HTTPException(status_code=500, detail="Could not generate unique code")

    # 2. Save link and its rules, preserving rule order
    new_link = Link(
        name=link_in.name,
        short_code=short_code,
        base_url=link_in.base_url,
        active=True,
        project_id=project_id,
        rules=[GeoRule(redirect_url=r.redirect_url, countries=r.countries) for r in link_in.rules],
    )

    try:
        created_link = await create_link(db, new_link)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Short code already in use")

    logger.info(f"Created link {created_link.id} with {len(created_link.rules)} rules", extra={"short_code": short_code})
    return to_response(created_link)

@router.get("/links/check-short-code/{short_code}", response_model=ShortCodeAvailability)
async def check_short_code(
    short_code: str,
    db: AsyncSession = Depends(get_db)
):
    existing = await get_link_by_short_code(db, short_code)
    return ShortCodeAvailability(short_code=short_code, available=existing is None)

@router.get("/links/{link_id}", response_model=LinkResponse)
async def get_link(
    link_id: int,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db)
):
    return to_response(await get_owned_link(db, link_id, project_id))

@router.put("/links/{link_id}", response_model=LinkResponse)
async def edit_link(
    link_id: int,
    link_in: LinkUpdate,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db),
    link_cache: LinkCache = Depends(get_link_cache)
):
    link = await get_owned_link(db, link_id, project_id)
    updated = await update_link(db, link, link_in.model_dump(exclude_unset=True, exclude_none=True))

    # Invalidate Cache
    await link_cache.invalidate(updated.short_code)
    return to_response(updated)

@router.delete("/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_link(
    link_id: int,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db),
    link_cache: LinkCache = Depends(get_link_cache)
):
    link = await get_owned_link(db, link_id, project_id)
    short_code = link.short_code
    await delete_link(db, link)

    await link_cache.invalidate(short_code)
    return None

@router.post("/links/{link_id}/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def add_rule(
    link_id: int,
    rule_in: RuleCreate,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db),
    link_cache: LinkCache = Depends(get_link_cache)
):
    link = await get_owned_link(db, link_id, project_id)
    rule = await create_rule(db, GeoRule(link_id=link.id, redirect_url=rule_in.redirect_url, countries=rule_in.countries))

    await link_cache.invalidate(link.short_code)
    return rule

@router.put("/links/rules/{rule_id}", response_model=RuleResponse)
async def edit_rule(
    rule_id: int,
    rule_in: RuleCreate,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db),
    link_cache: LinkCache = Depends(get_link_cache)
):
    rule = await get_rule(db, rule_id, project_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found or not authorized")
    short_code = rule.link.short_code
    rule = await update_rule(db, rule, rule_in.redirect_url, rule_in.countries)

    await link_cache.invalidate(short_code)
    return rule

@router.delete("/links/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_rule(
    rule_id: int,
    project_id: int = Depends(require_project),
    db: AsyncSession = Depends(get_db),
    link_cache: LinkCache = Depends(get_link_cache)
):
    rule = await get_rule(db, rule_id, project_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found or not authorized")
    short_code = rule.link.short_code
    await delete_rule(db, rule)

    await link_cache.invalidate(short_code)
    return None

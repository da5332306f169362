import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from fastapi import FastAPI, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
import httpx

from .api.v1 import links
from .config import settings
from .database import AsyncSessionLocal, create_tables
from .dependencies import get_redirector
from .logging_config import setup_logging
from .observability import PrometheusMiddleware, metrics_endpoint
from .redis import RedisClient
from .services.geolocation import GeoCache, GeolocationResolver, IpInfoProvider
from .services.link_cache import LinkCache
from .services.redirector import Redirector, RedirectOutcome
from .services.visit_recorder import VisitRecorder
from .stores import SqlGeoCacheStore, SqlLinkStore, SqlVisitStore
from .utils import get_client_ip

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    await create_tables()
    redis_client = RedisClient(settings.REDIS_URL)
    await redis_client.connect()
    http_client = httpx.AsyncClient(base_url=settings.IPINFO_URL, headers={"Accept": "application/json"})

    link_cache = LinkCache(redis_client, SqlLinkStore(AsyncSessionLocal), ttl=settings.LINK_CACHE_TTL)
    geo_cache = GeoCache(
        fast=redis_client,
        durable=SqlGeoCacheStore(AsyncSessionLocal),
        fast_ttl=settings.GEO_FAST_CACHE_TTL,
        durable_ttl=timedelta(days=settings.GEO_DURABLE_CACHE_DAYS),
    )
    provider = IpInfoProvider(http_client, token=settings.IPINFO_TOKEN, timeout=settings.GEO_LOOKUP_TIMEOUT)
    geolocation = GeolocationResolver(geo_cache, provider)
    visits = VisitRecorder(
        SqlVisitStore(AsyncSessionLocal),
        max_pending=settings.VISIT_QUEUE_SIZE,
        workers=settings.VISIT_WORKERS,
    )
    visits.start()

    app.state.link_cache = link_cache
    app.state.redirector = Redirector(link_cache, geolocation, visits)
    yield
    # Shutdown logic
    await visits.stop()
    await geolocation.drain()
    await http_client.aclose()
    await redis_client.close()

setup_logging()

app = FastAPI(
    title="geolink",
    description="Short links with country-based redirection",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(PrometheusMiddleware)

app.add_route("/metrics", metrics_endpoint)

app.include_router(links.router, prefix="/v1")

NOT_FOUND_PAGE = """<!DOCTYPE html>
<html><head><meta charset="UTF-8"><title>Link not found</title></head>
<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">
    <h1>404 - Link not found</h1>
    <p>This short link does not exist or has been deactivated.</p>
</body></html>
"""

@app.get("/health")
async def health():
    return {"status": "ok"}

@app.get("/{short_code}")
async def redirect_to_url(
    request: Request,
    short_code: str,
    redirector: Redirector = Depends(get_redirector),
):
    result = await redirector.handle_redirect(short_code, get_client_ip(request))

    if result.outcome is RedirectOutcome.REDIRECT:
        return RedirectResponse(url=result.url, status_code=301)

    if result.outcome is RedirectOutcome.NOT_FOUND:
        return HTMLResponse(NOT_FOUND_PAGE, status_code=404)

    error = {}
    if not settings.is_production and result.error is not None:
        error = {
            "type": type(result.error).__name__,
            "message": str(result.error),
            "stack": "".join(traceback.format_exception(result.error)),
        }
    return JSONResponse(
        status_code=500,
        content={
            "message": "An unexpected error occurred",
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )

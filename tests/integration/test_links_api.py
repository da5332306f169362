import os
import uuid
import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport

from geolink.main import app

# These run against the real Postgres/Redis from DATABASE_URL / REDIS_URL
# (e.g. docker compose) and are opt-in.
pytestmark = pytest.mark.skipif(
    os.environ.get("GEOLINK_INTEGRATION") != "1",
    reason="set GEOLINK_INTEGRATION=1 to run against Postgres and Redis",
)

@pytest.fixture
async def live_client() -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport skips lifespan events, so enter the lifespan explicitly
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c

@pytest.fixture
def project_headers() -> dict:
    return {"X-Project-Id": str(uuid.uuid4().int % 1_000_000)}

def unique_code() -> str:
    return f"it-{uuid.uuid4().hex[:10]}"

@pytest.mark.asyncio
async def test_create_and_get_link(live_client: AsyncClient, project_headers):
    code = unique_code()
    payload = {
        "name": "Spring promo",
        "base_url": "merchant.com/a",
        "short_code": code,
        "rules": [{"redirect_url": "merchant.de/a", "countries": ["de"]}],
    }

    response = await live_client.post("/v1/links", json=payload, headers=project_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["short_code"] == code
    assert data["short_url"].endswith(f"/{code}")
    assert data["rules"][0]["countries"] == ["DE"]

    response = await live_client.get(f"/v1/links/{data['id']}", headers=project_headers)
    assert response.status_code == 200
    assert response.json()["name"] == "Spring promo"

    # other projects cannot see it
    response = await live_client.get(f"/v1/links/{data['id']}", headers={"X-Project-Id": "0"})
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_project_header_is_required(live_client: AsyncClient):
    response = await live_client.post("/v1/links", json={"name": "x", "base_url": "merchant.com"})
    assert response.status_code == 400

@pytest.mark.asyncio
async def test_duplicate_short_code(live_client: AsyncClient, project_headers):
    code = unique_code()
    payload = {"name": "dup", "base_url": "merchant.com", "short_code": code}

    assert (await live_client.post("/v1/links", json=payload, headers=project_headers)).status_code == 201
    assert (await live_client.post("/v1/links", json=payload, headers=project_headers)).status_code == 409

    response = await live_client.get(f"/v1/links/check-short-code/{code}")
    assert response.json() == {"short_code": code, "available": False}

@pytest.mark.asyncio
async def test_generated_short_code_and_listing(live_client: AsyncClient, project_headers):
    for i in range(3):
        response = await live_client.post(
            "/v1/links", json={"name": f"link {i}", "base_url": "merchant.com"}, headers=project_headers
        )
        assert response.status_code == 201
        assert len(response.json()["short_code"]) == 7

    response = await live_client.get("/v1/links?page=1&limit=2", headers=project_headers)
    assert response.status_code == 200
    body = response.json()
    assert len(body["links"]) == 2
    assert body["total_pages"] == 2

@pytest.mark.asyncio
async def test_deactivate_stops_redirect(live_client: AsyncClient, project_headers):
    code = unique_code()
    response = await live_client.post(
        "/v1/links", json={"name": "promo", "base_url": "merchant.com/a", "short_code": code}, headers=project_headers
    )
    link_id = response.json()["id"]

    response = await live_client.get(f"/{code}")
    assert response.status_code == 301
    assert response.headers["location"] == "https://merchant.com/a"

    response = await live_client.put(f"/v1/links/{link_id}", json={"active": False}, headers=project_headers)
    assert response.status_code == 200
    assert response.json()["active"] is False

    response = await live_client.get(f"/{code}")
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_rule_sub_resource(live_client: AsyncClient, project_headers):
    code = unique_code()
    response = await live_client.post(
        "/v1/links", json={"name": "rules", "base_url": "merchant.com", "short_code": code}, headers=project_headers
    )
    link_id = response.json()["id"]

    response = await live_client.post(
        f"/v1/links/{link_id}/rules",
        json={"redirect_url": "merchant.fr", "countries": ["FR"]},
        headers=project_headers,
    )
    assert response.status_code == 201
    rule_id = response.json()["id"]

    response = await live_client.put(
        f"/v1/links/rules/{rule_id}",
        json={"redirect_url": "merchant.be", "countries": ["BE", "FR"]},
        headers=project_headers,
    )
    assert response.status_code == 200
    assert response.json()["countries"] == ["BE", "FR"]

    response = await live_client.delete(f"/v1/links/rules/{rule_id}", headers=project_headers)
    assert response.status_code == 204

    response = await live_client.get(f"/v1/links/{link_id}", headers=project_headers)
    assert response.json()["rules"] == []

    response = await live_client.delete(f"/v1/links/{link_id}", headers=project_headers)
    assert response.status_code == 204
    assert (await live_client.get(f"/{code}")).status_code == 404

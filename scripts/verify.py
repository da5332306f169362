import httpx
import asyncio
import sys
import uuid

BASE_URL = "http://localhost:8000"
PROJECT_ID = "1"

# A public IP that geolocates to Germany, sent as X-Forwarded-For
GERMAN_IP = "85.214.132.117"

async def run_verification():
    print(f"🚀  Starting Verification against {BASE_URL}...\n")

    async with httpx.AsyncClient(base_url=BASE_URL, timeout=10.0) as client:
        # 1. Health Check
        print("1. [Health] Checking /health...")
        try:
            resp = await client.get("/health")
            if resp.status_code == 200 and resp.json() == {"status": "ok"}:
                print("   ✅  Health Check Passed")
            else:
                print(f"   ❌  Health Check Failed: {resp.text}")
                return 1
        except httpx.HTTPError as e:
            print(f"   ❌  Connection Error: {e}")
            return 1

        # 2. Create Link with a German rule
        print("\n2. [API] Creating geo-targeted link...")
        code = f"verify-{uuid.uuid4().hex[:6]}"
        payload = {
            "name": "verify",
            "base_url": "www.example.com",
            "short_code": code,
            "rules": [{"redirect_url": "www.example.de", "countries": ["DE"]}],
        }
        headers = {"X-Project-Id": PROJECT_ID}

        resp = await client.post("/v1/links", json=payload, headers=headers)
        if resp.status_code == 201:
            link = resp.json()
            print(f"   ✅  Created: {link['short_url']}")
        else:
            print(f"   ❌  Create Failed: {resp.status_code} {resp.text}")
            return 1

        # 3. Verify geo redirect
        print("\n3. [Redirect] Visitor from Germany...")
        resp = await client.get(f"/{code}", headers={"X-Forwarded-For": GERMAN_IP})
        if resp.status_code == 301 and resp.headers.get("location") == "https://www.example.de":
            print(f"   ✅  Redirected to {resp.headers['location']}")
        else:
            print(f"   ⚠️  Got {resp.status_code} -> {resp.headers.get('location')} (is IPINFO_TOKEN set?)")

        # 4. Verify fallback
        print("\n4. [Redirect] Visitor from a private network...")
        resp = await client.get(f"/{code}", headers={"X-Forwarded-For": "10.0.0.1"})
        if resp.status_code == 301 and resp.headers.get("location") == "https://www.example.com":
            print(f"   ✅  Fell back to {resp.headers['location']}")
        else:
            print(f"   ❌  Fallback Failed: {resp.status_code} {resp.headers.get('location')}")

        # 5. Deactivate and expect 404
        print("\n5. [API] Deactivating link...")
        await client.put(f"/v1/links/{link['id']}", json={"active": False}, headers=headers)
        resp = await client.get(f"/{code}")
        if resp.status_code == 404:
            print("   ✅  Deactivated link returns 404")
        else:
            print(f"   ❌  Expected 404, got {resp.status_code}")

        await client.delete(f"/v1/links/{link['id']}", headers=headers)

        # 6. Metrics
        print("\n6. [Observability] Verifying Metrics...")
        resp = await client.get("/metrics")
        if resp.status_code == 200 and "redirect_total" in resp.text:
            print("   ✅  Metrics Endpoint Exposed")
        else:
            print(f"   ❌  Metrics Failed: {resp.status_code}")

    print("\n✨ Verification Complete!")
    return 0

if __name__ == "__main__":
    sys.exit(asyncio.run(run_verification()))

from __future__ import annotations

import os
import sys
import uuid

import httpx


def _assert_ok(response: httpx.Response, *, label: str) -> None:
    if response.status_code >= 400:
        raise RuntimeError(f"{label} failed: HTTP {response.status_code} body={response.text}")


def main() -> None:
    base_url = os.environ.get("API_BASE_URL", "http://localhost:8000")
    api_key = os.environ.get("SMOKE_API_KEY")
    if not api_key:
        raise RuntimeError("SMOKE_API_KEY is required (see scripts/bootstrap_workspace.py)")
    email = os.environ.get("SMOKE_EMAIL", "smoke-shopper@example.com")
    anonymous_id = f"smoke-{uuid.uuid4().hex[:12]}"
    headers = {"x-api-key": api_key}

    with httpx.Client(base_url=base_url, timeout=20.0, headers=headers) as client:
        health = client.get("/healthz")
        _assert_ok(health, label="GET /healthz")
        print("ok: GET /healthz")

        ready = client.get("/readyz")
        _assert_ok(ready, label="GET /readyz")
        print("ok: GET /readyz")

        track = client.post(
            "/v1/server-track",
            json={
                "event_type": "track",
                "event_name": "Product Viewed",
                "anonymous_id": anonymous_id,
                "properties": {"product_id": "smoke-sku", "category": "smoke"},
            },
        )
        _assert_ok(track, label="POST /v1/server-track")
        print("ok: POST /v1/server-track")

        identified = client.post(
            "/v1/identify",
            json={"anonymous_id": anonymous_id, "email": email, "traits": {"source": "smoke"}},
        )
        _assert_ok(identified, label="POST /v1/identify")
        identity = identified.json()
        print("ok: POST /v1/identify")

        destinations = client.get("/ops/destinations")
        _assert_ok(destinations, label="GET /ops/destinations")
        print("ok: GET /ops/destinations")

        print(
            "smoke complete: "
            f"identity={identity['unified_user_id']} merged={identity['identity_merged']} "
            f"jobs={identity['sync_jobs_created']}"
        )


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # noqa: BLE001
        print(f"smoke failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

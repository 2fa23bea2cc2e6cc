from __future__ import annotations

from fastapi.testclient import TestClient

from identitysync.main import create_app


def test_healthz_ok() -> None:
    app = create_app()
    client = TestClient(app)
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_readyz_pings_store() -> None:
    client = TestClient(create_app())
    res = client.get("/readyz")
    assert res.status_code == 200
    assert res.json() == {"status": "ready"}
    assert res.headers.get("x-request-id")
    assert res.headers.get("x-content-type-options") == "nosniff"

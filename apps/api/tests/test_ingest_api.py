from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from identitysync.core.security import hash_api_key
from identitysync.main import create_app
from identitysync.models.enums import ApiKeyScope


def _client() -> TestClient:
    return TestClient(create_app())


def _email() -> str:
    return f"shopper-{uuid.uuid4().hex[:8]}@example.com"


def test_identify_creates_identity(make_api_key) -> None:
    key = make_api_key(ApiKeyScope.identify)
    res = _client().post(
        "/v1/identify",
        json={"anonymous_id": "a-1", "email": _email(), "traits": {"first_name": "Ada"}},
        headers={"x-api-key": key},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["is_new_user"] is True
    assert body["identity_merged"] is False
    assert body["sync_jobs_created"] == 0


def test_identify_without_identifiers_is_rejected(make_api_key) -> None:
    key = make_api_key()
    res = _client().post("/v1/identify", json={"traits": {"a": 1}}, headers={"x-api-key": key})
    assert res.status_code == 400


def test_oversized_traits_are_rejected(make_api_key) -> None:
    key = make_api_key()
    res = _client().post(
        "/v1/identify",
        json={"email": _email(), "traits": {"blob": "x" * 20_000}},
        headers={"x-api-key": key},
    )
    assert res.status_code == 413


def test_missing_and_unknown_keys_are_unauthorized() -> None:
    client = _client()
    assert client.post("/v1/identify", json={"email": _email()}).status_code == 401
    res = client.post("/v1/identify", json={"email": _email()}, headers={"x-api-key": "isk_nope"})
    assert res.status_code == 401


def test_scope_and_revocation_are_enforced(db_session, make_api_key) -> None:
    client = _client()
    identify_only = make_api_key(ApiKeyScope.identify)
    res = client.post(
        "/v1/server-track",
        json={"event_type": "track", "event_name": "Page View", "anonymous_id": "a-2"},
        headers={"x-api-key": identify_only},
    )
    assert res.status_code == 403

    expired = make_api_key(expires_at=datetime.now(UTC) - timedelta(minutes=1))
    res = client.post("/v1/identify", json={"email": _email()}, headers={"x-api-key": expired})
    assert res.status_code == 403

    revoked = make_api_key()
    db_session.execute(
        text("UPDATE api_keys SET revoked_at = now() WHERE key_hash = :h"),
        {"h": hash_api_key(revoked)},
    )
    db_session.commit()
    res = client.post("/v1/identify", json={"email": _email()}, headers={"x-api-key": revoked})
    assert res.status_code == 403


def test_server_track_is_idempotent_on_message_id(make_api_key) -> None:
    key = make_api_key(ApiKeyScope.track)
    client = _client()
    payload = {
        "event_type": "track",
        "event_name": "Product Viewed",
        "anonymous_id": f"anon-{uuid.uuid4().hex[:8]}",
        "message_id": f"msg-{uuid.uuid4().hex}",
        "properties": {"product_id": "p1"},
    }
    first = client.post("/v1/server-track", json=payload, headers={"x-api-key": key})
    second = client.post("/v1/server-track", json=payload, headers={"x-api-key": key})

    assert first.status_code == 200, first.text
    assert second.status_code == 200, second.text
    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True
    assert second.json()["event_id"] == first.json()["event_id"]
    assert second.json()["unified_user_id"] == first.json()["unified_user_id"]


def test_server_track_falls_back_to_fingerprint(make_api_key) -> None:
    key = make_api_key(ApiKeyScope.track)
    res = _client().post(
        "/v1/server-track",
        json={
            "event_type": "page",
            "event_name": "Homepage",
            "client_ip": "198.51.100.20",
            "user_agent": "Mozilla/5.0",
        },
        headers={"x-api-key": key},
    )
    assert res.status_code == 200, res.text
    assert res.json()["fingerprint_used"] is True


def test_server_track_rejects_naive_timestamps(make_api_key) -> None:
    key = make_api_key(ApiKeyScope.track)
    res = _client().post(
        "/v1/server-track",
        json={
            "event_type": "track",
            "event_name": "Page View",
            "anonymous_id": "a-3",
            "timestamp": "2026-01-01T10:00:00",
        },
        headers={"x-api-key": key},
    )
    assert res.status_code == 422


def test_checkout_event_forces_checkout_abandoned_sync(db_session, workspace, make_api_key, make_destination) -> None:
    key = make_api_key(ApiKeyScope.track)
    destination = make_destination()
    res = _client().post(
        "/v1/server-track",
        json={
            "event_type": "track",
            "event_name": "Begin Checkout",
            "email": _email(),
            "properties": {"checkout_id": f"chk-{uuid.uuid4().hex[:8]}", "total": 42.5},
        },
        headers={"x-api-key": key},
    )
    assert res.status_code == 200, res.text
    body = res.json()

    computed = db_session.execute(
        text("SELECT computed FROM users_unified WHERE id = :id"),
        {"id": body["unified_user_id"]},
    ).scalar_one()
    assert computed["drop_off_stage"] == "checkout_abandoned"
    assert computed["intent_score"] == 25

    jobs = (
        db_session.execute(
            text(
                """
                SELECT job_type::text AS job_type, status::text AS status, payload, event_id
                FROM sync_jobs
                WHERE unified_user_id = :id AND destination_id = :dest
                ORDER BY job_type
                """
            ),
            {"id": body["unified_user_id"], "dest": str(destination.id)},
        )
        .mappings()
        .all()
    )
    assert [j["job_type"] for j in jobs] == ["event_track", "profile_upsert"]
    profile = jobs[1]
    assert profile["status"] == "pending"
    assert profile["payload"]["reasons"] == ["checkout_abandoned"]
    assert str(jobs[0]["event_id"]) == body["event_id"]

    status = db_session.execute(
        text("SELECT status::text FROM events WHERE id = :id"), {"id": body["event_id"]}
    ).scalar_one()
    assert status == "processed"


@pytest.mark.parametrize("event_name", ["Add to Cart", "Begin Checkout", "Order Completed"])
def test_transaction_events_need_a_caller_identifier(event_name, make_api_key) -> None:
    key = make_api_key(ApiKeyScope.track)
    res = _client().post(
        "/v1/server-track",
        json={
            "event_type": "track",
            "event_name": event_name,
            "properties": {"total": 10},
            "client_ip": "10.0.0.1",
            "user_agent": "shop-backend/1.0",
        },
        headers={"x-api-key": key},
    )
    assert res.status_code == 400, res.text


def test_orders_from_one_backend_are_kept_apart_by_order_id(db_session, workspace, make_api_key) -> None:
    key = make_api_key(ApiKeyScope.track)
    client = _client()

    def _order(order_id: str, total: float) -> dict:
        res = client.post(
            "/v1/server-track",
            json={
                "event_type": "track",
                "event_name": "Order Completed",
                "order_id": order_id,
                "properties": {"total": total},
                "client_ip": "10.0.0.1",
                "user_agent": "shop-backend/1.0",
            },
            headers={"x-api-key": key},
        )
        assert res.status_code == 200, res.text
        return res.json()

    first_id = f"ord-{uuid.uuid4().hex[:8]}"
    first = _order(first_id, 10)
    second = _order(f"ord-{uuid.uuid4().hex[:8]}", 99)
    resent = _order(first_id, 10)

    assert first["duplicate"] is False
    assert second["duplicate"] is False
    assert first["event_id"] != second["event_id"]
    assert resent["duplicate"] is True
    assert resent["event_id"] == first["event_id"]

    stored = db_session.execute(
        text("SELECT properties FROM events WHERE id = :id"), {"id": first["event_id"]}
    ).scalar_one()
    assert stored["order_id"] == first_id
    assert stored["total"] == 10


def test_signal_failure_keeps_the_event_as_failed(db_session, make_api_key, monkeypatch) -> None:
    from identitysync.services.ingest import ingestor

    def boom(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        raise RuntimeError("signal store unavailable")

    monkeypatch.setattr(ingestor, "apply_event_to_identity", boom)
    key = make_api_key(ApiKeyScope.track)
    res = _client().post(
        "/v1/server-track",
        json={"event_type": "track", "event_name": "Product Viewed", "anonymous_id": f"a-{uuid.uuid4().hex[:8]}"},
        headers={"x-api-key": key},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["duplicate"] is False

    status = db_session.execute(
        text("SELECT status::text FROM events WHERE id = :id"), {"id": body["event_id"]}
    ).scalar_one()
    assert status == "failed"

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import text

from identitysync.models.enums import DropOffStage, SyncReason
from identitysync.services.identity.resolver import Identifiers, resolve
from identitysync.services.signals.computer import EventKind
from identitysync.services.signals.traits import ComputedTraits
from identitysync.services.sync.scheduler import (
    TriggerContext,
    decide_forced_reason,
    schedule_if_needed,
    schedule_outstanding,
)


def _identity(db_session, workspace, *, email: bool = True):  # noqa: ANN001
    ids = Identifiers(
        anonymous_id=f"anon-{uuid.uuid4().hex[:8]}",
        email=f"s-{uuid.uuid4().hex[:8]}@example.com" if email else None,
    )
    res = resolve(db_session, workspace_id=workspace.id, identifiers=ids, source="test")
    db_session.commit()
    return res.unified_user_id


def _set_computed(db_session, uid, computed: dict, *, updated_at: datetime | None = None) -> None:  # noqa: ANN001
    db_session.execute(
        text(
            """
            UPDATE users_unified
            SET computed = CAST(:computed AS jsonb),
                updated_at = COALESCE(:updated_at, now())
            WHERE id = :id
            """
        ),
        {"id": str(uid), "computed": json.dumps(computed), "updated_at": updated_at},
    )
    db_session.commit()


def _profile_jobs(db_session, uid) -> list[dict]:  # noqa: ANN001
    rows = (
        db_session.execute(
            text(
                """
                SELECT id, status::text AS status, payload
                FROM sync_jobs
                WHERE unified_user_id = :id AND job_type = 'profile_upsert'
                ORDER BY created_at ASC
                """
            ),
            {"id": str(uid)},
        )
        .mappings()
        .all()
    )
    return [dict(r) for r in rows]


def test_forced_reason_priority() -> None:
    checkout = ComputedTraits(drop_off_stage=DropOffStage.checkout_abandoned, intent_score=90)
    assert decide_forced_reason(checkout, event_kind=EventKind.cart_add) == SyncReason.checkout_abandoned

    cart = ComputedTraits(drop_off_stage=DropOffStage.cart_abandoned, intent_score=55)
    assert decide_forced_reason(cart, event_kind=EventKind.cart_add) == SyncReason.cart_high_intent
    assert decide_forced_reason(cart, event_kind=None) == SyncReason.cart_abandoned

    browsing = ComputedTraits(drop_off_stage=DropOffStage.engaged, intent_score=35)
    assert decide_forced_reason(browsing, event_kind=EventKind.product_view) == SyncReason.product_high_intent
    assert decide_forced_reason(browsing, event_kind=EventKind.page) == SyncReason.first_sync

    synced = ComputedTraits(
        drop_off_stage=DropOffStage.checkout_abandoned,
        flags={"checkout_abandoned_synced": True, "first_sync_completed": True},
    )
    assert decide_forced_reason(synced, event_kind=None) is None


def test_identity_without_email_is_never_scheduled(db_session, workspace, make_destination) -> None:
    make_destination()
    uid = _identity(db_session, workspace, email=False)
    assert schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test")) == []


def test_workspace_without_enabled_destination_is_not_scheduled(db_session, workspace, make_destination) -> None:
    make_destination(enabled=False)
    uid = _identity(db_session, workspace)
    assert schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test")) == []


def test_first_sync_then_forced_reason_folds_into_pending_job(db_session, workspace, make_destination) -> None:
    make_destination()
    uid = _identity(db_session, workspace)

    created = schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test"))
    db_session.commit()
    assert len(created) == 1
    assert _profile_jobs(db_session, uid)[0]["payload"]["reasons"] == ["first_sync"]

    _set_computed(db_session, uid, {"drop_off_stage": "checkout_abandoned", "intent_score": 25})
    again = schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test"))
    db_session.commit()

    assert again == []
    jobs = _profile_jobs(db_session, uid)
    assert len(jobs) == 1
    assert jobs[0]["payload"]["reasons"] == ["first_sync", "checkout_abandoned"]


def test_event_trigger_adds_one_event_job_per_event(db_session, workspace, make_destination) -> None:
    make_destination()
    uid = _identity(db_session, workspace)
    event_id = uuid.uuid4()
    db_session.execute(
        text(
            """
            INSERT INTO events (id, workspace_id, unified_user_id, event_type, event_name, source, status)
            VALUES (:id, :ws, :uid, 'track', 'Begin Checkout', 'test', 'processed')
            """
        ),
        {"id": str(event_id), "ws": str(workspace.id), "uid": str(uid)},
    )
    db_session.commit()

    trigger = TriggerContext(source="ingest", event_id=event_id, event_type="track", event_name="Begin Checkout")
    first = schedule_if_needed(db_session, unified_user_id=uid, trigger=trigger)
    second = schedule_if_needed(db_session, unified_user_id=uid, trigger=trigger)
    db_session.commit()

    assert len(first) == 2
    assert second == []
    count = db_session.execute(
        text("SELECT count(*) FROM sync_jobs WHERE event_id = :id"), {"id": str(event_id)}
    ).scalar_one()
    assert count == 1


def test_opportunistic_sync_needs_recent_change(db_session, workspace, make_destination) -> None:
    make_destination()
    uid = _identity(db_session, workspace)
    computed = {"drop_off_stage": "browsing", "flags": {"first_sync_completed": True}}

    _set_computed(db_session, uid, computed, updated_at=datetime.now(UTC) - timedelta(days=2))
    assert schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test")) == []

    _set_computed(db_session, uid, computed)
    created = schedule_if_needed(db_session, unified_user_id=uid, trigger=TriggerContext(source="test"))
    db_session.commit()
    assert len(created) == 1
    assert _profile_jobs(db_session, uid)[0]["payload"]["reasons"] == ["opportunistic"]


def test_schedule_outstanding_skips_identities_with_open_jobs(db_session, workspace, make_destination) -> None:
    make_destination()
    uid = _identity(db_session, workspace)

    schedule_outstanding(db_session)
    db_session.commit()
    assert len(_profile_jobs(db_session, uid)) == 1

    schedule_outstanding(db_session)
    db_session.commit()
    assert len(_profile_jobs(db_session, uid)) == 1

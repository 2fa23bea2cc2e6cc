from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.logs import log_json, worker_logger
from identitysync.services.signals.computer import (
    EventInput,
    EventKind,
    apply_event,
    decay_intent,
    derive_signals,
    event_names_for,
    event_types_for,
    next_drop_off_stage,
    order_value,
    recompute_from_history,
)
from identitysync.services.signals.traits import ComputedTraits

HISTORY_WINDOW = timedelta(days=30)

_ORDER_NAMES = event_names_for(EventKind.order)
_ORDER_TYPES = event_types_for(EventKind.order)


def _json_dumps(payload: dict) -> str:
    import json

    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _lock_identity(session: Session, *, unified_user_id: UUID) -> dict | None:
    row = (
        session.execute(
            text(
                """
                SELECT id, workspace_id, computed, last_seen_at
                FROM users_unified
                WHERE id = :id
                FOR UPDATE
                """
            ),
            {"id": str(unified_user_id)},
        )
        .mappings()
        .fetchone()
    )
    return dict(row) if row is not None else None


def _write_traits(session: Session, *, unified_user_id: UUID, traits: ComputedTraits) -> None:
    session.execute(
        text(
            """
            UPDATE users_unified
            SET computed = CAST(:computed AS jsonb),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(unified_user_id), "computed": _json_dumps(traits.dump())},
    )


def apply_event_to_identity(
    session: Session,
    *,
    unified_user_id: UUID,
    event: EventInput,
    now: datetime | None = None,
) -> ComputedTraits | None:
    settings = get_settings()
    row = _lock_identity(session, unified_user_id=unified_user_id)
    if row is None:
        return None

    current = ComputedTraits.load(row["computed"])
    updated = apply_event(
        current,
        event,
        now=now or datetime.now(UTC),
        engaged_threshold=settings.ENGAGED_INTENT_THRESHOLD,
    )
    _write_traits(session, unified_user_id=unified_user_id, traits=updated)
    refresh_predictive_signals(
        session,
        workspace_id=UUID(str(row["workspace_id"])),
        unified_user_id=unified_user_id,
        traits=updated,
    )
    return updated


def recompute(
    session: Session,
    *,
    unified_user_id: UUID,
    now: datetime | None = None,
) -> ComputedTraits | None:
    settings = get_settings()
    now = now or datetime.now(UTC)
    row = _lock_identity(session, unified_user_id=unified_user_id)
    if row is None:
        return None

    history = (
        session.execute(
            text(
                """
                SELECT event_type, event_name, properties, event_time
                FROM events
                WHERE unified_user_id = :id
                  AND event_time >= :since
                ORDER BY event_time ASC, created_at ASC
                """
            ),
            {"id": str(unified_user_id), "since": now - HISTORY_WINDOW},
        )
        .mappings()
        .all()
    )
    orders = (
        session.execute(
            text(
                """
                SELECT properties
                FROM events
                WHERE unified_user_id = :id
                  AND (
                    lower(event_type) = ANY(CAST(:order_types AS text[]))
                    OR lower(replace(replace(event_name, '_', ' '), '-', ' ')) = ANY(CAST(:order_names AS text[]))
                  )
                """
            ),
            {"id": str(unified_user_id), "order_types": _ORDER_TYPES, "order_names": _ORDER_NAMES},
        )
        .scalars()
        .all()
    )

    base = ComputedTraits.load(row["computed"])
    updated = recompute_from_history(
        base,
        [
            EventInput(
                event_type=h["event_type"],
                event_name=h["event_name"],
                properties=h["properties"] or {},
                occurred_at=h["event_time"],
            )
            for h in history
        ],
        lifetime_orders=len(orders),
        lifetime_value=sum(order_value(p or {}) for p in orders),
        last_seen_at=row["last_seen_at"],
        now=now,
        engaged_threshold=settings.ENGAGED_INTENT_THRESHOLD,
        decay_factor=settings.INTENT_DECAY_PER_DAY,
    )
    _write_traits(session, unified_user_id=unified_user_id, traits=updated)
    refresh_predictive_signals(
        session,
        workspace_id=UUID(str(row["workspace_id"])),
        unified_user_id=unified_user_id,
        traits=updated,
    )
    return updated


def recompute_stale(session: Session, *, now: datetime | None = None) -> int:
    settings = get_settings()
    now = now or datetime.now(UTC)
    ids = (
        session.execute(
            text(
                """
                SELECT id
                FROM users_unified
                WHERE last_seen_at >= :active_since
                  AND (
                    computed->>'computed_at' IS NULL
                    OR (computed->>'computed_at')::timestamptz < :stale_before
                  )
                ORDER BY last_seen_at DESC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
                """
            ),
            {
                "active_since": now - timedelta(days=7),
                "stale_before": now - timedelta(seconds=settings.RECOMPUTE_STALE_AFTER_SECONDS),
                "limit": settings.RECOMPUTE_BATCH_SIZE,
            },
        )
        .scalars()
        .all()
    )
    for unified_user_id in ids:
        recompute(session, unified_user_id=UUID(str(unified_user_id)), now=now)
    return len(ids)


def decay_inactive(session: Session, *, now: datetime | None = None, limit: int = 500) -> int:
    settings = get_settings()
    now = now or datetime.now(UTC)
    rows = (
        session.execute(
            text(
                """
                SELECT id, computed, last_seen_at
                FROM users_unified
                WHERE last_seen_at < :inactive_before
                  AND (
                    (
                      COALESCE((computed->>'intent_score')::int, 0) > 0
                      AND (
                        computed->>'intent_decayed_at' IS NULL
                        OR (computed->>'intent_decayed_at')::timestamptz <= :inactive_before
                      )
                    )
                    OR computed->>'recency_days' IS NULL
                    OR (computed->>'recency_days')::int
                       < floor(extract(epoch FROM (:now - last_seen_at)) / 86400)
                  )
                ORDER BY last_seen_at ASC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
                """
            ),
            {"inactive_before": now - timedelta(days=1), "now": now, "limit": limit},
        )
        .mappings()
        .all()
    )

    changed = 0
    for row in rows:
        before = ComputedTraits.load(row["computed"])
        after = decay_intent(
            before,
            last_seen_at=row["last_seen_at"],
            now=now,
            factor=settings.INTENT_DECAY_PER_DAY,
        )
        if after == before:
            continue
        after.drop_off_stage = next_drop_off_stage(
            after, None, engaged_threshold=settings.ENGAGED_INTENT_THRESHOLD
        )
        _write_traits(session, unified_user_id=UUID(str(row["id"])), traits=after)
        changed += 1
    return changed


@dataclass
class AbandonmentResult:
    cart: list[UUID] = field(default_factory=list)
    checkout: list[UUID] = field(default_factory=list)


def detect_abandonments(session: Session, *, now: datetime | None = None, limit: int = 500) -> AbandonmentResult:
    """Mark identities whose cart or checkout went quiet past the threshold.

    Each funnel entry is reported once: the `*_abandon_detected_at` marker is
    cleared again only by a purchase.
    """
    settings = get_settings()
    now = now or datetime.now(UTC)
    result = AbandonmentResult()

    rows = (
        session.execute(
            text(
                """
                SELECT id, workspace_id, computed,
                  (
                    computed->>'checkout_started_at' IS NOT NULL
                    AND computed->>'checkout_abandon_detected_at' IS NULL
                    AND (computed->>'checkout_started_at')::timestamptz < :checkout_before
                  ) AS checkout_due
                FROM users_unified
                WHERE COALESCE((computed->>'orders_count')::int, 0) = 0
                  AND (
                    (
                      computed->>'checkout_started_at' IS NOT NULL
                      AND computed->>'checkout_abandon_detected_at' IS NULL
                      AND (computed->>'checkout_started_at')::timestamptz < :checkout_before
                    )
                    OR (
                      computed->>'last_cart_at' IS NOT NULL
                      AND computed->>'cart_abandon_detected_at' IS NULL
                      AND computed->>'checkout_started_at' IS NULL
                      AND (computed->>'last_cart_at')::timestamptz < :cart_before
                    )
                  )
                ORDER BY updated_at ASC
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
                """
            ),
            {
                "cart_before": now - timedelta(minutes=settings.CART_ABANDON_AFTER_MINUTES),
                "checkout_before": now - timedelta(minutes=settings.CHECKOUT_ABANDON_AFTER_MINUTES),
                "limit": limit,
            },
        )
        .mappings()
        .all()
    )

    for row in rows:
        unified_user_id = UUID(str(row["id"]))
        traits = ComputedTraits.load(row["computed"])
        if row["checkout_due"]:
            traits.checkout_abandon_detected_at = now
            if traits.checkout_abandoned_at is None:
                traits.checkout_abandoned_at = now
            result.checkout.append(unified_user_id)
        else:
            traits.cart_abandon_detected_at = now
            if traits.cart_abandoned_at is None:
                traits.cart_abandoned_at = now
            result.cart.append(unified_user_id)
        traits.drop_off_stage = next_drop_off_stage(
            traits, None, engaged_threshold=settings.ENGAGED_INTENT_THRESHOLD
        )
        traits.computed_at = now
        _write_traits(session, unified_user_id=unified_user_id, traits=traits)
        refresh_predictive_signals(
            session,
            workspace_id=UUID(str(row["workspace_id"])),
            unified_user_id=unified_user_id,
            traits=traits,
        )

    if rows:
        log_json(
            worker_logger,
            "signals.abandonment.detected",
            cart=len(result.cart),
            checkout=len(result.checkout),
        )
    return result


def refresh_predictive_signals(
    session: Session,
    *,
    workspace_id: UUID,
    unified_user_id: UUID,
    traits: ComputedTraits,
) -> None:
    signals = derive_signals(traits)
    for signal in signals:
        session.execute(
            text(
                """
                INSERT INTO predictive_signals (
                  workspace_id, unified_user_id, signal_type, confidence, payload, computed_at
                )
                VALUES (:workspace_id, :unified_user_id, :signal_type, :confidence, CAST(:payload AS jsonb), now())
                ON CONFLICT (workspace_id, unified_user_id, signal_type)
                DO UPDATE SET confidence = EXCLUDED.confidence,
                              payload = EXCLUDED.payload,
                              computed_at = EXCLUDED.computed_at
                """
            ),
            {
                "workspace_id": str(workspace_id),
                "unified_user_id": str(unified_user_id),
                "signal_type": signal.signal_type,
                "confidence": signal.confidence,
                "payload": _json_dumps(signal.payload),
            },
        )

    session.execute(
        text(
            """
            DELETE FROM predictive_signals
            WHERE unified_user_id = :unified_user_id
              AND NOT (signal_type = ANY(CAST(:keep AS text[])))
            """
        ),
        {"unified_user_id": str(unified_user_id), "keep": [s.signal_type for s in signals]},
    )

"""Decide whether an identity needs a destination sync and enqueue it.

Forced reasons are checked in a fixed priority order; the first match wins.
Identities without a primary email are never enqueued.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.logs import api_logger, log_json
from identitysync.models.enums import DropOffStage, SyncJobType, SyncReason
from identitysync.services.signals.computer import CART_KINDS, EventKind, classify_event
from identitysync.services.signals.traits import ComputedTraits
from identitysync.worker.queue import enqueue_sync_job

CART_INTENT_THRESHOLD = 50
PRODUCT_INTENT_THRESHOLD = 30

FORCED_PRIORITY: tuple[SyncReason, ...] = (
    SyncReason.checkout_abandoned,
    SyncReason.cart_high_intent,
    SyncReason.cart_abandoned,
    SyncReason.product_high_intent,
    SyncReason.first_sync,
)


@dataclass(frozen=True)
class TriggerContext:
    source: str
    event_id: UUID | None = None
    event_type: str | None = None
    event_name: str | None = None

    @property
    def event_kind(self) -> EventKind | None:
        if self.event_type is None and self.event_name is None:
            return None
        return classify_event(self.event_type, self.event_name)


def decide_forced_reason(traits: ComputedTraits, *, event_kind: EventKind | None) -> SyncReason | None:
    flags = traits.flags
    if traits.drop_off_stage == DropOffStage.checkout_abandoned and not flags.checkout_abandoned_synced:
        return SyncReason.checkout_abandoned
    if event_kind in CART_KINDS and traits.intent_score >= CART_INTENT_THRESHOLD and not flags.cart_synced:
        return SyncReason.cart_high_intent
    if traits.drop_off_stage == DropOffStage.cart_abandoned and not flags.cart_abandoned_synced:
        return SyncReason.cart_abandoned
    if (
        event_kind == EventKind.product_view
        and traits.intent_score >= PRODUCT_INTENT_THRESHOLD
        and not flags.product_view_synced
    ):
        return SyncReason.product_high_intent
    if not flags.first_sync_completed:
        return SyncReason.first_sync
    return None


def schedule_if_needed(
    session: Session,
    *,
    unified_user_id: UUID,
    trigger: TriggerContext,
    now: datetime | None = None,
) -> list[UUID]:
    settings = get_settings()
    now = now or datetime.now(UTC)

    # Read through SQL: the ORM copy may predate the signal writes of this transaction.
    identity = (
        session.execute(
            text(
                """
                SELECT id, workspace_id, primary_email, computed, updated_at
                FROM users_unified
                WHERE id = :id
                """
            ),
            {"id": str(unified_user_id)},
        )
        .mappings()
        .fetchone()
    )
    if identity is None or not identity["primary_email"]:
        return []

    workspace_id = UUID(str(identity["workspace_id"]))
    destination_ids = [
        UUID(str(d))
        for d in session.execute(
            text(
                """
                SELECT id
                FROM destinations
                WHERE workspace_id = :workspace_id AND enabled = true
                ORDER BY created_at ASC
                """
            ),
            {"workspace_id": str(workspace_id)},
        )
        .scalars()
        .all()
    ]
    if not destination_ids:
        return []

    traits = ComputedTraits.load(identity["computed"])
    reason = decide_forced_reason(traits, event_kind=trigger.event_kind)
    if reason is None:
        window_start = now - timedelta(seconds=settings.OPPORTUNISTIC_SYNC_WINDOW_SECONDS)
        if identity["updated_at"] is None or identity["updated_at"] < window_start:
            return []
        reason = SyncReason.opportunistic

    created: list[UUID] = []
    for destination_id in destination_ids:
        job_id = _ensure_profile_job(
            session,
            workspace_id=workspace_id,
            destination_id=destination_id,
            unified_user_id=unified_user_id,
            reason=reason,
            trigger=trigger,
        )
        if job_id is not None:
            created.append(job_id)

        if trigger.event_id is not None:
            job_id = enqueue_sync_job(
                session=session,
                workspace_id=workspace_id,
                destination_id=destination_id,
                unified_user_id=unified_user_id,
                job_type=SyncJobType.event_track,
                event_id=trigger.event_id,
                payload={"reasons": [reason.value], "trigger": trigger.source},
                dedupe_key=f"event_track:{destination_id}:{trigger.event_id}",
            )
            if job_id is not None:
                created.append(job_id)

    if created:
        log_json(
            api_logger,
            "sync.scheduled",
            unified_user_id=str(unified_user_id),
            reason=reason.value,
            trigger=trigger.source,
            jobs=len(created),
        )
    return created


def _ensure_profile_job(
    session: Session,
    *,
    workspace_id: UUID,
    destination_id: UUID,
    unified_user_id: UUID,
    reason: SyncReason,
    trigger: TriggerContext,
) -> UUID | None:
    open_jobs = (
        session.execute(
            text(
                """
                SELECT id, status
                FROM sync_jobs
                WHERE unified_user_id = :unified_user_id
                  AND destination_id = :destination_id
                  AND job_type = 'profile_upsert'
                  AND status IN ('pending', 'running')
                ORDER BY created_at ASC
                """
            ),
            {"unified_user_id": str(unified_user_id), "destination_id": str(destination_id)},
        )
        .mappings()
        .all()
    )
    pending = next((j for j in open_jobs if j["status"] == "pending"), None)

    if pending is not None:
        if reason.forced:
            # Fold the reason into the queued job so its flag is set on delivery.
            session.execute(
                text(
                    """
                    UPDATE sync_jobs
                    SET payload = jsonb_set(
                          payload,
                          '{reasons}',
                          COALESCE(payload->'reasons', '[]'::jsonb) || to_jsonb(CAST(:reason AS text))
                        ),
                        updated_at = now()
                    WHERE id = :id
                      AND status = 'pending'
                      AND NOT (COALESCE(payload->'reasons', '[]'::jsonb) ? :reason)
                    """
                ),
                {"id": str(pending["id"]), "reason": reason.value},
            )
        return None
    if open_jobs and not reason.forced:
        return None

    return enqueue_sync_job(
        session=session,
        workspace_id=workspace_id,
        destination_id=destination_id,
        unified_user_id=unified_user_id,
        job_type=SyncJobType.profile_upsert,
        payload={"reasons": [reason.value], "trigger": trigger.source},
    )


def schedule_outstanding(session: Session, *, now: datetime | None = None, limit: int = 500) -> int:
    """Pick up identified profiles that changed or still owe a forced sync.

    At most one profile job per identity per opportunistic window is created
    here, so a destination that keeps failing is not flooded.
    """
    settings = get_settings()
    now = now or datetime.now(UTC)
    since = now - timedelta(seconds=settings.OPPORTUNISTIC_SYNC_WINDOW_SECONDS)

    ids = (
        session.execute(
            text(
                """
                SELECT u.id
                FROM users_unified u
                WHERE u.primary_email IS NOT NULL
                  AND EXISTS (
                    SELECT 1 FROM destinations d
                    WHERE d.workspace_id = u.workspace_id AND d.enabled = true
                  )
                  AND (
                    u.updated_at >= :since
                    OR COALESCE((u.computed->'flags'->>'first_sync_completed')::boolean, false) = false
                    OR (
                      u.computed->>'drop_off_stage' = 'checkout_abandoned'
                      AND COALESCE((u.computed->'flags'->>'checkout_abandoned_synced')::boolean, false) = false
                    )
                    OR (
                      u.computed->>'drop_off_stage' = 'cart_abandoned'
                      AND COALESCE((u.computed->'flags'->>'cart_abandoned_synced')::boolean, false) = false
                    )
                  )
                  AND NOT EXISTS (
                    SELECT 1 FROM sync_jobs j
                    WHERE j.unified_user_id = u.id
                      AND j.job_type = 'profile_upsert'
                      AND (j.status IN ('pending', 'running') OR j.created_at >= :since)
                  )
                ORDER BY u.updated_at DESC
                LIMIT :limit
                """
            ),
            {"since": since, "limit": limit},
        )
        .scalars()
        .all()
    )

    created = 0
    for unified_user_id in ids:
        created += len(
            schedule_if_needed(
                session,
                unified_user_id=UUID(str(unified_user_id)),
                trigger=TriggerContext(source="maintenance"),
                now=now,
            )
        )
    return created

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings


def link_prior_events(session: Session, *, unified_user_id: UUID) -> int:
    """Attach earlier events carrying one of the identity's anonymous ids.

    Events already owned by another identity that legitimately holds the same
    anonymous id are left alone.
    """
    rows = session.execute(
        text(
            """
            UPDATE events AS e
            SET unified_user_id = u.id
            FROM users_unified AS u
            WHERE u.id = :id
              AND e.workspace_id = u.workspace_id
              AND e.anonymous_id = ANY(u.anonymous_ids)
              AND e.unified_user_id IS DISTINCT FROM u.id
              AND NOT EXISTS (
                SELECT 1
                FROM users_unified AS owner
                WHERE owner.id = e.unified_user_id
                  AND e.anonymous_id = ANY(owner.anonymous_ids)
              )
            RETURNING e.id
            """
        ),
        {"id": str(unified_user_id)},
    ).fetchall()
    return len(rows)


def backfill_recently_identified(session: Session, *, now: datetime | None = None, limit: int = 200) -> int:
    settings = get_settings()
    now = now or datetime.now(UTC)
    ids = (
        session.execute(
            text(
                """
                SELECT u.id
                FROM users_unified AS u
                WHERE u.primary_email IS NOT NULL
                  AND u.updated_at >= :since
                  AND cardinality(u.anonymous_ids) > 0
                  AND EXISTS (
                    SELECT 1
                    FROM events AS e
                    WHERE e.workspace_id = u.workspace_id
                      AND e.anonymous_id = ANY(u.anonymous_ids)
                      AND e.unified_user_id IS NULL
                  )
                ORDER BY u.updated_at DESC
                LIMIT :limit
                """
            ),
            {"since": now - timedelta(hours=settings.BACKFILL_LOOKBACK_HOURS), "limit": limit},
        )
        .scalars()
        .all()
    )
    return sum(link_prior_events(session, unified_user_id=UUID(str(i))) for i in ids)

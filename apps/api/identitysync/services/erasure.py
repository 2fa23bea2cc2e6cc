from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.logs import api_logger, log_json


@dataclass(frozen=True)
class ErasureResult:
    unified_user_id: UUID
    identities_deleted: int
    events_anonymized: int
    sync_jobs_deleted: int
    signals_deleted: int


class IdentityNotFoundError(LookupError):
    pass


def erase_identity(session: Session, *, workspace_id: UUID, unified_user_id: UUID) -> ErasureResult:
    """Forget a person. Events stay for aggregate counts but lose every link to them.

    Runs inside the caller's transaction; nothing is committed here.
    """
    params = {"workspace_id": str(workspace_id), "id": str(unified_user_id)}
    owner = session.execute(
        text(
            """
            SELECT id, anonymous_ids
            FROM users_unified
            WHERE workspace_id = :workspace_id AND id = :id
            FOR UPDATE
            """
        ),
        params,
    ).mappings().first()
    if owner is None:
        raise IdentityNotFoundError(str(unified_user_id))

    identities = session.execute(
        text("DELETE FROM identities WHERE unified_user_id = :id RETURNING id"),
        params,
    ).fetchall()
    events = session.execute(
        text(
            """
            UPDATE events
            SET unified_user_id = NULL,
                anonymous_id = NULL,
                context = '{}'::jsonb
            WHERE workspace_id = :workspace_id
              AND (
                unified_user_id = :id
                OR anonymous_id = ANY(CAST(:anonymous_ids AS text[]))
              )
            RETURNING id
            """
        ),
        {**params, "anonymous_ids": list(owner["anonymous_ids"] or [])},
    ).fetchall()
    jobs = session.execute(
        text("DELETE FROM sync_jobs WHERE unified_user_id = :id RETURNING id"),
        params,
    ).fetchall()
    signals = session.execute(
        text("DELETE FROM predictive_signals WHERE unified_user_id = :id RETURNING id"),
        params,
    ).fetchall()
    session.execute(text("DELETE FROM users_unified WHERE id = :id"), params)

    log_json(
        api_logger,
        "identity.erased",
        workspace_id=str(workspace_id),
        unified_user_id=str(unified_user_id),
        events_anonymized=len(events),
    )
    return ErasureResult(
        unified_user_id=unified_user_id,
        identities_deleted=len(identities),
        events_anonymized=len(events),
        sync_jobs_deleted=len(jobs),
        signals_deleted=len(signals),
    )

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.models.enums import SyncJobType


def enqueue_sync_job(
    *,
    session: Session,
    workspace_id: UUID,
    destination_id: UUID,
    unified_user_id: UUID,
    job_type: SyncJobType,
    payload: dict,
    event_id: UUID | None = None,
    dedupe_key: str | None = None,
    scheduled_at: datetime | None = None,
    max_attempts: int | None = None,
) -> UUID | None:
    sql = text(
        """
        INSERT INTO sync_jobs (
          workspace_id,
          destination_id,
          unified_user_id,
          event_id,
          job_type,
          status,
          attempts,
          max_attempts,
          payload,
          dedupe_key,
          scheduled_at,
          created_at,
          updated_at
        )
        VALUES (
          :workspace_id,
          :destination_id,
          :unified_user_id,
          :event_id,
          CAST(:job_type AS sync_job_type),
          'pending',
          0,
          :max_attempts,
          CAST(:payload AS jsonb),
          :dedupe_key,
          COALESCE(:scheduled_at, now()),
          now(),
          now()
        )
        ON CONFLICT DO NOTHING
        RETURNING id
        """
    )
    res = session.execute(
        sql,
        {
            "workspace_id": str(workspace_id),
            "destination_id": str(destination_id),
            "unified_user_id": str(unified_user_id),
            "event_id": str(event_id) if event_id else None,
            "job_type": job_type.value,
            "max_attempts": max_attempts or get_settings().SYNC_MAX_ATTEMPTS,
            "payload": _json_dumps(payload),
            "dedupe_key": dedupe_key,
            "scheduled_at": scheduled_at,
        },
    ).fetchone()
    if res is None:
        return None
    return UUID(str(res[0]))


def _json_dumps(payload: dict) -> str:
    import json

    return json.dumps(payload, separators=(",", ":"), sort_keys=True)

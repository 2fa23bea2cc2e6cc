from __future__ import annotations

from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.deps import WorkspaceContext, require_scope
from identitysync.core.http import get_http_client
from identitysync.db.session import get_session
from identitysync.models.enums import ApiKeyScope
from identitysync.schemas.ops import (
    DestinationHealthItem,
    DestinationHealthResponse,
    ErasureResponse,
    FailedSyncJobsResponse,
    IdentityResponse,
    MaintenanceRunResponse,
    SyncDrainResponse,
    SyncReplayResponse,
)
from identitysync.services.erasure import IdentityNotFoundError, erase_identity
from identitysync.services.maintenance import run_maintenance
from identitysync.worker.runner import drain_sync_jobs

router = APIRouter(prefix="/ops", tags=["ops"])

require_ops = require_scope(ApiKeyScope.ops)


@router.post("/maintenance/run", response_model=MaintenanceRunResponse)
def maintenance_run(
    _: WorkspaceContext = Depends(require_ops),
    http_client: httpx.Client = Depends(get_http_client),
) -> MaintenanceRunResponse:
    summary = run_maintenance(http_client=http_client)
    return MaintenanceRunResponse(
        started_at=summary.started_at,
        steps=summary.steps,
        errors=summary.errors,
    )


@router.post("/sync/drain", response_model=SyncDrainResponse)
def sync_drain(
    limit: int = Query(default=50, ge=1, le=500),
    _: WorkspaceContext = Depends(require_ops),
    http_client: httpx.Client = Depends(get_http_client),
) -> SyncDrainResponse:
    summary = drain_sync_jobs(http_client=http_client, limit=limit, worker_id="ops-drain")
    return SyncDrainResponse(**summary.as_dict())


@router.get("/sync/failed", response_model=FailedSyncJobsResponse)
def sync_failed_list(
    limit: int = Query(default=50, ge=1, le=200),
    ctx: WorkspaceContext = Depends(require_ops),
    session: Session = Depends(get_session),
) -> FailedSyncJobsResponse:
    rows = (
        session.execute(
            text(
                """
            SELECT
              id,
              job_type,
              status,
              unified_user_id,
              destination_id,
              event_id,
              attempts,
              max_attempts,
              last_error,
              scheduled_at,
              updated_at,
              payload
            FROM sync_jobs
            WHERE workspace_id = :workspace_id
              AND status = 'failed'
            ORDER BY updated_at DESC, id DESC
            LIMIT :limit
            """
            ),
            {"workspace_id": str(ctx.workspace_id), "limit": limit},
        )
        .mappings()
        .all()
    )
    return FailedSyncJobsResponse(
        items=[
            {
                "id": row["id"],
                "job_type": row["job_type"],
                "status": row["status"],
                "unified_user_id": row["unified_user_id"],
                "destination_id": row["destination_id"],
                "event_id": row["event_id"],
                "attempts": row["attempts"],
                "max_attempts": row["max_attempts"],
                "last_error": row["last_error"],
                "scheduled_at": row["scheduled_at"],
                "updated_at": row["updated_at"],
                "payload": row["payload"] or {},
            }
            for row in rows
        ]
    )


@router.post("/sync/{job_id}/replay", response_model=SyncReplayResponse)
def sync_job_replay(
    job_id: UUID,
    ctx: WorkspaceContext = Depends(require_ops),
    session: Session = Depends(get_session),
) -> SyncReplayResponse:
    row = (
        session.execute(
            text(
                """
            SELECT id
            FROM sync_jobs
            WHERE id = :id
              AND workspace_id = :workspace_id
              AND status = 'failed'
            FOR UPDATE
            """
            ),
            {"id": str(job_id), "workspace_id": str(ctx.workspace_id)},
        )
        .mappings()
        .first()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failed sync job not found")

    session.execute(
        text(
            """
            UPDATE sync_jobs
            SET status = 'pending',
                attempts = 0,
                scheduled_at = now(),
                started_at = NULL,
                completed_at = NULL,
                locked_by = NULL,
                outcome = NULL,
                last_error = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job_id)},
    )
    session.commit()
    return SyncReplayResponse(status="pending", job_id=job_id)


@router.get("/destinations", response_model=DestinationHealthResponse)
def destinations_health(
    ctx: WorkspaceContext = Depends(require_ops),
    session: Session = Depends(get_session),
) -> DestinationHealthResponse:
    rows = (
        session.execute(
            text(
                """
            SELECT
              d.id,
              d.type,
              d.name,
              d.enabled,
              d.encrypted_credentials IS NOT NULL AS has_credentials,
              d.last_sync_at,
              d.last_error,
              d.last_engagement_poll_at,
              COUNT(j.id) FILTER (WHERE j.status = 'pending') AS pending_jobs,
              COUNT(j.id) FILTER (WHERE j.status = 'running') AS running_jobs,
              COUNT(j.id) FILTER (WHERE j.status = 'failed') AS failed_jobs
            FROM destinations d
            LEFT JOIN sync_jobs j ON j.destination_id = d.id
            WHERE d.workspace_id = :workspace_id
            GROUP BY d.id
            ORDER BY d.created_at ASC
            """
            ),
            {"workspace_id": str(ctx.workspace_id)},
        )
        .mappings()
        .all()
    )
    return DestinationHealthResponse(
        items=[
            DestinationHealthItem(
                destination_id=row["id"],
                type=str(row["type"]),
                name=row["name"],
                enabled=row["enabled"],
                has_credentials=row["has_credentials"],
                last_sync_at=row["last_sync_at"],
                last_error=row["last_error"],
                last_engagement_poll_at=row["last_engagement_poll_at"],
                pending_jobs=int(row["pending_jobs"]),
                running_jobs=int(row["running_jobs"]),
                failed_jobs=int(row["failed_jobs"]),
            )
            for row in rows
        ]
    )


@router.get("/identities/{unified_user_id}", response_model=IdentityResponse)
def identity_get(
    unified_user_id: UUID,
    ctx: WorkspaceContext = Depends(require_ops),
    session: Session = Depends(get_session),
) -> IdentityResponse:
    row = (
        session.execute(
            text(
                """
            SELECT id, primary_email, emails, phone, customer_ids, anonymous_ids,
                   traits, computed, first_seen_at, last_seen_at, last_synced_at
            FROM users_unified
            WHERE id = :id AND workspace_id = :workspace_id
            """
            ),
            {"id": str(unified_user_id), "workspace_id": str(ctx.workspace_id)},
        )
        .mappings()
        .first()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identity not found")

    signals = session.execute(
        text(
            """
            SELECT signal_type, confidence
            FROM predictive_signals
            WHERE unified_user_id = :id
            ORDER BY signal_type ASC
            """
        ),
        {"id": str(unified_user_id)},
    ).all()
    return IdentityResponse(
        id=row["id"],
        primary_email=row["primary_email"],
        emails=list(row["emails"] or []),
        phone=row["phone"],
        customer_ids=list(row["customer_ids"] or []),
        anonymous_ids=list(row["anonymous_ids"] or []),
        traits=row["traits"] or {},
        computed=row["computed"] or {},
        predictive_signals={s[0]: float(s[1]) for s in signals},
        first_seen_at=row["first_seen_at"],
        last_seen_at=row["last_seen_at"],
        last_synced_at=row["last_synced_at"],
    )


@router.delete("/identities/{unified_user_id}", response_model=ErasureResponse)
def identity_erase(
    unified_user_id: UUID,
    ctx: WorkspaceContext = Depends(require_ops),
    session: Session = Depends(get_session),
) -> ErasureResponse:
    try:
        result = erase_identity(session, workspace_id=ctx.workspace_id, unified_user_id=unified_user_id)
    except IdentityNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identity not found") from e

    session.commit()
    return ErasureResponse(
        unified_user_id=result.unified_user_id,
        identities_deleted=result.identities_deleted,
        events_anonymized=result.events_anonymized,
        sync_jobs_deleted=result.sync_jobs_deleted,
        signals_deleted=result.signals_deleted,
    )

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class MaintenanceRunResponse(BaseModel):
    started_at: datetime
    steps: dict[str, Any]
    errors: list[str]


class SyncDrainResponse(BaseModel):
    claimed: int
    synced: int
    blocked: int
    skipped: int
    retried: int
    failed: int


class FailedSyncJobItem(BaseModel):
    id: UUID
    job_type: str
    status: str
    unified_user_id: UUID
    destination_id: UUID
    event_id: UUID | None
    attempts: int
    max_attempts: int
    last_error: str | None
    scheduled_at: datetime
    updated_at: datetime
    payload: dict[str, Any]


class FailedSyncJobsResponse(BaseModel):
    items: list[FailedSyncJobItem]


class SyncReplayResponse(BaseModel):
    status: str
    job_id: UUID


class DestinationHealthItem(BaseModel):
    destination_id: UUID
    type: str
    name: str
    enabled: bool
    has_credentials: bool
    last_sync_at: datetime | None
    last_error: str | None
    last_engagement_poll_at: datetime | None
    pending_jobs: int
    running_jobs: int
    failed_jobs: int


class DestinationHealthResponse(BaseModel):
    items: list[DestinationHealthItem]


class IdentityResponse(BaseModel):
    id: UUID
    primary_email: str | None
    emails: list[str]
    phone: str | None
    customer_ids: list[str]
    anonymous_ids: list[str]
    traits: dict[str, Any]
    computed: dict[str, Any]
    predictive_signals: dict[str, float]
    first_seen_at: datetime
    last_seen_at: datetime
    last_synced_at: datetime | None


class ErasureResponse(BaseModel):
    unified_user_id: UUID
    identities_deleted: int
    events_anonymized: int
    sync_jobs_deleted: int
    signals_deleted: int

from __future__ import annotations

import httpx
from sqlalchemy.orm import Session

from identitysync.models.enums import SyncJobType, SyncOutcome
from identitysync.worker.jobs.sync_delivery import deliver_sync_job


def handle_job(*, session: Session, job: dict, http_client: httpx.Client) -> SyncOutcome:
    job_type = SyncJobType(job["job_type"])
    if job_type in {SyncJobType.profile_upsert, SyncJobType.event_track}:
        return deliver_sync_job(session=session, job=job, http_client=http_client)

    raise NotImplementedError(f"Job type not implemented: {job_type.value}")

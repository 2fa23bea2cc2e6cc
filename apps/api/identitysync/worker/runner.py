from __future__ import annotations

import logging
import socket
import time
from dataclasses import asdict, dataclass
from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.http import build_destination_client
from identitysync.core.logs import log_json, worker_logger
from identitysync.core.metrics import observe_sync_job
from identitysync.db.session import get_sessionmaker
from identitysync.models.enums import SyncOutcome
from identitysync.services.maintenance import run_maintenance
from identitysync.worker.errors import PermanentJobError
from identitysync.worker.handlers import handle_job

STALE_JOB_ERROR = "job exceeded processing deadline"


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_seconds: float = 1.0
    maintenance_interval_seconds: float = 300.0
    batch_size: int = 50
    job_deadline_seconds: float = 60.0
    worker_id: str = socket.gethostname()

    @classmethod
    def from_settings(cls) -> WorkerConfig:
        settings = get_settings()
        return cls(
            poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
            maintenance_interval_seconds=settings.MAINTENANCE_INTERVAL_SECONDS,
            batch_size=settings.SYNC_BATCH_SIZE,
            job_deadline_seconds=settings.SYNC_JOB_DEADLINE_SECONDS,
        )


@dataclass
class DrainSummary:
    claimed: int = 0
    synced: int = 0
    blocked: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0

    def record(self, outcome: str) -> None:
        self.claimed += 1
        if outcome == SyncOutcome.synced.value:
            self.synced += 1
        elif outcome == SyncOutcome.blocked.value:
            self.blocked += 1
        elif outcome == "retry":
            self.retried += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def run_worker_forever(config: WorkerConfig) -> None:
    last_maintenance: float | None = None
    with build_destination_client() as http_client:
        while True:
            requeue_stale_running(deadline_seconds=config.job_deadline_seconds)
            summary = drain_sync_jobs(
                http_client=http_client,
                limit=config.batch_size,
                worker_id=config.worker_id,
                deadline_seconds=config.job_deadline_seconds,
            )

            now = time.monotonic()
            if last_maintenance is None or now - last_maintenance >= config.maintenance_interval_seconds:
                run_maintenance(http_client=http_client)
                last_maintenance = now

            if summary.claimed == 0:
                time.sleep(config.poll_interval_seconds)


def drain_sync_jobs(
    *,
    http_client: httpx.Client,
    limit: int,
    worker_id: str | None = None,
    deadline_seconds: float | None = None,
) -> DrainSummary:
    """Process up to `limit` due jobs, oldest first.

    No new job is claimed once `deadline_seconds` have elapsed since the batch
    started; a job already in flight is bounded by the HTTP client timeout.
    """
    worker_id = worker_id or socket.gethostname()
    if deadline_seconds is None:
        deadline_seconds = get_settings().SYNC_JOB_DEADLINE_SECONDS

    started = time.monotonic()
    summary = DrainSummary()
    while summary.claimed < max(0, limit):
        if time.monotonic() - started >= deadline_seconds:
            break
        outcome = run_one_job(http_client=http_client, worker_id=worker_id)
        if outcome is None:
            break
        summary.record(outcome)

    if summary.claimed:
        log_json(worker_logger, "sync.drain.completed", worker_id=worker_id, **summary.as_dict())
    return summary


def run_one_job(*, http_client: httpx.Client, worker_id: str) -> str | None:
    # Claim in its own transaction so the running mark is visible before any external call.
    session = get_sessionmaker()()
    try:
        job = _claim_next_job(session=session, worker_id=worker_id)
        session.commit()
    finally:
        session.close()
    if job is None:
        return None

    job_id = UUID(str(job["id"]))
    session = get_sessionmaker()()
    try:
        try:
            outcome = handle_job(session=session, job=job, http_client=http_client)
        except PermanentJobError as e:
            session.rollback()
            label = _mark_failed(session=session, job=job, error=str(e), permanent=True)
        except Exception as e:
            session.rollback()
            worker_logger.exception("sync job %s raised", job_id)
            label = _mark_failed(session=session, job=job, error=str(e) or type(e).__name__, permanent=False)
        else:
            _mark_succeeded(session=session, job=job, outcome=outcome)
            label = outcome.value

        session.commit()
    finally:
        session.close()

    observe_sync_job(job_type=str(job["job_type"]), outcome=_metric_outcome(label))
    log_json(
        worker_logger,
        "sync.job.finished",
        job_id=str(job_id),
        job_type=str(job["job_type"]),
        attempts=int(job["attempts"]),
        outcome=label,
    )
    return label


def requeue_stale_running(*, deadline_seconds: float) -> int:
    """Return jobs abandoned by a crashed worker to the queue, or fail them when out of attempts."""
    session = get_sessionmaker()()
    try:
        rows = (
            session.execute(
                text(
                    """
                    WITH stale AS (
                      UPDATE sync_jobs
                      SET status = CASE
                            WHEN attempts >= max_attempts THEN CAST('failed' AS sync_job_status)
                            ELSE CAST('pending' AS sync_job_status)
                          END,
                          outcome = CASE WHEN attempts >= max_attempts THEN 'failed' ELSE outcome END,
                          completed_at = CASE WHEN attempts >= max_attempts THEN now() ELSE NULL END,
                          last_error = :error,
                          locked_by = NULL,
                          scheduled_at = now(),
                          updated_at = now()
                      WHERE status = 'running'
                        AND started_at < now() - make_interval(secs => :deadline_seconds)
                      RETURNING id, destination_id, status
                    ),
                    failed_destinations AS (
                      UPDATE destinations
                      SET last_error = :error,
                          updated_at = now()
                      WHERE id IN (SELECT destination_id FROM stale WHERE status = 'failed')
                      RETURNING id
                    )
                    SELECT id, status::text AS status FROM stale
                    """
                ),
                {"deadline_seconds": float(deadline_seconds), "error": STALE_JOB_ERROR},
            )
            .mappings()
            .all()
        )
        session.commit()
    finally:
        session.close()

    if rows:
        log_json(
            worker_logger,
            "sync.job.requeued_stale",
            level=logging.WARNING,
            count=len(rows),
            failed=sum(1 for r in rows if r["status"] == "failed"),
        )
    return len(rows)


def _claim_next_job(*, session: Session, worker_id: str) -> dict | None:
    sql = text(
        """
        WITH next_job AS (
          SELECT id
          FROM sync_jobs
          WHERE status = 'pending'
            AND scheduled_at <= now()
            AND attempts < max_attempts
          ORDER BY scheduled_at ASC, created_at ASC
          FOR UPDATE SKIP LOCKED
          LIMIT 1
        )
        UPDATE sync_jobs
        SET status = 'running',
            attempts = attempts + 1,
            started_at = now(),
            locked_by = :worker_id,
            updated_at = now()
        WHERE id IN (SELECT id FROM next_job)
        RETURNING id, workspace_id, destination_id, unified_user_id, event_id,
                  job_type, payload, attempts, max_attempts
        """
    )
    row = session.execute(sql, {"worker_id": worker_id}).mappings().fetchone()
    if row is None:
        return None
    return dict(row)


def _mark_succeeded(*, session: Session, job: dict, outcome: SyncOutcome) -> None:
    session.execute(
        text(
            """
            UPDATE sync_jobs
            SET status = 'completed',
                outcome = :outcome,
                last_error = NULL,
                locked_by = NULL,
                completed_at = now(),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job["id"]), "outcome": outcome.value},
    )
    if outcome in {SyncOutcome.synced, SyncOutcome.blocked}:
        session.execute(
            text(
                """
                UPDATE destinations
                SET last_sync_at = now(),
                    last_error = NULL,
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {"id": str(job["destination_id"])},
        )


def _mark_failed(*, session: Session, job: dict, error: str, permanent: bool) -> str:
    attempts = int(job["attempts"])
    max_attempts = int(job["max_attempts"])

    if permanent or attempts >= max_attempts:
        session.execute(
            text(
                """
                UPDATE sync_jobs
                SET status = 'failed',
                    outcome = 'failed',
                    last_error = :error,
                    locked_by = NULL,
                    completed_at = now(),
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {"id": str(job["id"]), "error": error},
        )
        session.execute(
            text(
                """
                UPDATE destinations
                SET last_error = :error,
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {"id": str(job["destination_id"]), "error": error},
        )
        log_json(
            worker_logger,
            "sync.job.failed",
            level=logging.WARNING,
            job_id=str(job["id"]),
            attempts=attempts,
            permanent=permanent,
            error=error,
        )
        return "failed"

    backoff_minutes = 2**attempts
    session.execute(
        text(
            """
            UPDATE sync_jobs
            SET status = 'pending',
                last_error = :error,
                locked_by = NULL,
                scheduled_at = now() + make_interval(mins => :backoff_minutes),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job["id"]), "error": error, "backoff_minutes": backoff_minutes},
    )
    return "retry"


def _metric_outcome(label: str) -> str:
    if label in {
        SyncOutcome.skipped_no_email.value,
        SyncOutcome.skipped_identity_missing.value,
        SyncOutcome.skipped_unchanged.value,
    }:
        return "skipped"
    return label

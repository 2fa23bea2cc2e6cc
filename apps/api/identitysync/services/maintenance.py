"""Periodic maintenance pass.

Each step runs in its own session and transaction. A failing step is logged,
counted and reported in the summary; the remaining steps still run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.logs import log_json, worker_logger
from identitysync.core.metrics import observe_maintenance_failure
from identitysync.db.session import get_sessionmaker
from identitysync.services.identity.backfill import backfill_recently_identified
from identitysync.services.ingest.ingestor import record_derived_event
from identitysync.services.signals.store import decay_inactive, detect_abandonments, recompute_stale
from identitysync.services.sync.engagement import poll_engagement
from identitysync.services.sync.mapping import CART_ABANDONED_EVENT, CHECKOUT_ABANDONED_EVENT
from identitysync.services.sync.scheduler import TriggerContext, schedule_if_needed, schedule_outstanding


@dataclass
class MaintenanceSummary:
    started_at: datetime
    steps: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


def run_maintenance(*, http_client: httpx.Client, now: datetime | None = None) -> MaintenanceSummary:
    now = now or datetime.now(UTC)
    summary = MaintenanceSummary(started_at=now)

    steps: list[tuple[str, Callable[[Session], Any]]] = [
        ("abandonment", lambda s: _detect_and_emit_abandonments(s, now=now)),
        ("decay", lambda s: decay_inactive(s, now=now)),
        ("recompute", lambda s: recompute_stale(s, now=now)),
        ("backfill", lambda s: backfill_recently_identified(s, now=now)),
        ("engagement", lambda s: _engagement_step(s, http_client=http_client, now=now)),
        ("schedule", lambda s: schedule_outstanding(s, now=now)),
    ]
    for name, step in steps:
        session = get_sessionmaker()()
        try:
            result = step(session)
            session.commit()
            summary.steps[name] = result
            if isinstance(result, dict):
                summary.errors.extend(f"{name}: {err}" for err in result.get("errors") or [])
        except Exception as e:
            session.rollback()
            worker_logger.exception("maintenance step %s failed", name)
            log_json(
                worker_logger,
                "maintenance.step.failed",
                level=logging.WARNING,
                step=name,
                error=str(e),
            )
            observe_maintenance_failure(step=name)
            summary.steps[name] = None
            summary.errors.append(f"{name}: {e}")
        finally:
            session.close()

    log_json(
        worker_logger,
        "maintenance.completed",
        steps=summary.steps,
        errors=len(summary.errors),
    )
    return summary


def _engagement_step(session: Session, *, http_client: httpx.Client, now: datetime) -> dict:
    result = poll_engagement(session, http_client=http_client, now=now)
    # A failing destination is rolled back on its own; the others still commit.
    return {
        "destinations": result.destinations,
        "imported": result.imported,
        "duplicates": result.duplicates,
        "unmatched": result.unmatched,
        "errors": result.errors,
    }


def _detect_and_emit_abandonments(session: Session, *, now: datetime) -> dict:
    found = detect_abandonments(session, now=now)
    jobs = 0
    for event_name, ids in ((CHECKOUT_ABANDONED_EVENT, found.checkout), (CART_ABANDONED_EVENT, found.cart)):
        for unified_user_id in ids:
            jobs += _emit_abandonment(session, unified_user_id=unified_user_id, event_name=event_name, now=now)
    return {"cart": len(found.cart), "checkout": len(found.checkout), "sync_jobs_created": jobs}


def _emit_abandonment(session: Session, *, unified_user_id: UUID, event_name: str, now: datetime) -> int:
    workspace_id = session.execute(
        text("SELECT workspace_id FROM users_unified WHERE id = :id"),
        {"id": str(unified_user_id)},
    ).scalar()
    if workspace_id is None:
        return 0

    slug = event_name.lower().replace(" ", "_")
    event_id = record_derived_event(
        session,
        workspace_id=UUID(str(workspace_id)),
        unified_user_id=unified_user_id,
        event_type="derived",
        event_name=event_name,
        properties={},
        occurred_at=now,
        source="engine",
        dedupe_key=f"derived:{slug}:{unified_user_id}:{now.date().isoformat()}",
    )
    return len(
        schedule_if_needed(
            session,
            unified_user_id=unified_user_id,
            trigger=TriggerContext(
                source="abandonment",
                event_id=event_id,
                event_type="derived",
                event_name=event_name,
            ),
            now=now,
        )
    )

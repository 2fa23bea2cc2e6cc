"""Fold destination-side engagement (opens, clicks, subscribes) back into computed traits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.crypto import open_credentials
from identitysync.core.logs import log_json, worker_logger
from identitysync.models.enums import DestinationType
from identitysync.services.identity.resolver import normalize_email
from identitysync.services.ingest.ingestor import record_derived_event
from identitysync.services.signals.computer import INTENT_WEIGHTS, EventInput
from identitysync.services.signals.store import apply_event_to_identity
from identitysync.services.sync.klaviyo import (
    ENGAGEMENT_METRICS,
    KlaviyoEngagementEvent,
    list_engagement_events,
)
from identitysync.services.sync.scheduler import TriggerContext, schedule_if_needed

MAX_PAGES_PER_POLL = 20


@dataclass
class EngagementSummary:
    destinations: int = 0
    imported: int = 0
    duplicates: int = 0
    unmatched: int = 0
    errors: list[str] = field(default_factory=list)


def poll_engagement(
    session: Session,
    *,
    http_client: httpx.Client,
    now: datetime | None = None,
) -> EngagementSummary:
    settings = get_settings()
    now = now or datetime.now(UTC)
    summary = EngagementSummary()

    destinations = (
        session.execute(
            text(
                """
                SELECT id, workspace_id, encrypted_credentials, last_engagement_poll_at
                FROM destinations
                WHERE enabled = true
                  AND type = :type
                  AND encrypted_credentials IS NOT NULL
                ORDER BY created_at ASC
                """
            ),
            {"type": DestinationType.klaviyo.value},
        )
        .mappings()
        .all()
    )

    for destination in destinations:
        summary.destinations += 1
        since = destination["last_engagement_poll_at"] or (
            now - timedelta(minutes=settings.ENGAGEMENT_POLL_LOOKBACK_MINUTES)
        )
        try:
            with session.begin_nested():
                _poll_destination(
                    session,
                    http_client=http_client,
                    destination=destination,
                    since=since,
                    now=now,
                    summary=summary,
                )
                session.execute(
                    text(
                        """
                        UPDATE destinations
                        SET last_engagement_poll_at = :now,
                            updated_at = now()
                        WHERE id = :id
                        """
                    ),
                    {"id": str(destination["id"]), "now": now},
                )
        except Exception as e:
            worker_logger.exception("engagement poll failed for destination %s", destination["id"])
            log_json(
                worker_logger,
                "engagement.poll.failed",
                level=logging.WARNING,
                destination_id=str(destination["id"]),
                error=str(e),
            )
            summary.errors.append(f"{destination['id']}: {e}")

    return summary


def _poll_destination(
    session: Session,
    *,
    http_client: httpx.Client,
    destination: dict,
    since: datetime,
    now: datetime,
    summary: EngagementSummary,
) -> None:
    credentials = open_credentials(
        blob=bytes(destination["encrypted_credentials"]),
        destination_id=str(destination["id"]),
    )
    api_key = str(credentials.get("api_key") or "")
    if not api_key:
        raise ValueError("destination credentials missing api_key")

    workspace_id = UUID(str(destination["workspace_id"]))
    page_url: str | None = None
    for _ in range(MAX_PAGES_PER_POLL):
        page = list_engagement_events(http_client, api_key=api_key, since=since, page_url=page_url)
        for item in page.events:
            _import_event(session, workspace_id=workspace_id, item=item, now=now, summary=summary)
        if not page.next_url:
            break
        page_url = page.next_url


def _import_event(
    session: Session,
    *,
    workspace_id: UUID,
    item: KlaviyoEngagementEvent,
    now: datetime,
    summary: EngagementSummary,
) -> None:
    email = normalize_email(item.email)
    if item.metric_name not in ENGAGEMENT_METRICS or email is None:
        return

    unified_user_id = session.execute(
        text(
            """
            SELECT id
            FROM users_unified
            WHERE workspace_id = :workspace_id
              AND (primary_email = CAST(:email AS citext) OR :email = ANY(emails))
            ORDER BY created_at ASC
            LIMIT 1
            """
        ),
        {"workspace_id": str(workspace_id), "email": email},
    ).scalar()
    if unified_user_id is None:
        # Only known profiles are enriched; the destination's list is not an identity source.
        summary.unmatched += 1
        return
    unified_user_id = UUID(str(unified_user_id))

    occurred_at = item.occurred_at or now
    event_id = record_derived_event(
        session,
        workspace_id=workspace_id,
        unified_user_id=unified_user_id,
        event_type="email",
        event_name=item.metric_name,
        properties=item.properties,
        occurred_at=occurred_at,
        source="klaviyo",
        dedupe_key=f"klaviyo:{item.id}",
    )
    if event_id is None:
        summary.duplicates += 1
        return

    event = EventInput(
        event_type="email",
        event_name=item.metric_name,
        properties=item.properties,
        occurred_at=occurred_at,
    )
    apply_event_to_identity(session, unified_user_id=unified_user_id, event=event, now=now)
    summary.imported += 1

    if INTENT_WEIGHTS.get(event.kind, 0) > 0:
        schedule_if_needed(
            session,
            unified_user_id=unified_user_id,
            trigger=TriggerContext(source="engagement", event_type="email", event_name=item.metric_name),
            now=now,
        )

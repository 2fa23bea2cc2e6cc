from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.logs import api_logger, log_json
from identitysync.core.metrics import observe_event_ingested
from identitysync.models.enums import EventStatus
from identitysync.services.identity.backfill import link_prior_events
from identitysync.services.identity.resolver import Identifiers, ResolveResult, resolve
from identitysync.services.ingest.validation import (
    MissingIdentifierError,
    compute_dedupe_key,
    ensure_bounded,
    fingerprint,
    transaction_id,
)
from identitysync.services.signals.computer import EventInput, EventKind, classify_event
from identitysync.services.signals.store import apply_event_to_identity
from identitysync.services.sync.scheduler import TriggerContext, schedule_if_needed

TRANSACTION_KINDS = frozenset(
    {
        EventKind.cart_add,
        EventKind.cart_view,
        EventKind.cart_remove,
        EventKind.checkout,
        EventKind.order,
    }
)


@dataclass(frozen=True)
class TrackInput:
    event_type: str
    event_name: str
    properties: dict[str, Any] = field(default_factory=dict)
    identifiers: Identifiers = field(default_factory=Identifiers)
    session_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    source: str = "server"
    occurred_at: datetime | None = None
    message_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestResult:
    event_id: UUID
    unified_user_id: UUID | None
    duplicate: bool
    is_new_user: bool = False
    identity_merged: bool = False
    fingerprint_used: bool = False
    events_linked: int = 0
    sync_jobs_created: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IdentifyResult:
    unified_user_id: UUID
    is_new_user: bool
    identity_merged: bool
    events_linked: int
    sync_jobs_created: int
    errors: list[str] = field(default_factory=list)


def identify(
    session: Session,
    *,
    workspace_id: UUID,
    identifiers: Identifiers,
    traits: dict[str, Any] | None = None,
    source: str = "api",
) -> IdentifyResult:
    ensure_bounded(traits, field="traits")
    if identifiers.normalized().is_empty():
        raise MissingIdentifierError("At least one identifier is required")

    resolved = resolve(
        session,
        workspace_id=workspace_id,
        identifiers=identifiers,
        source=source,
        traits=traits,
    )
    events_linked = _link_if_identified(session, resolved)

    errors: list[str] = []
    jobs = _schedule(
        session,
        resolved=resolved,
        trigger=TriggerContext(source="identify"),
        errors=errors,
    )
    return IdentifyResult(
        unified_user_id=resolved.unified_user_id,
        is_new_user=resolved.is_new,
        identity_merged=resolved.merged,
        events_linked=events_linked,
        sync_jobs_created=len(jobs),
        errors=errors,
    )


def ingest_event(session: Session, *, workspace_id: UUID, event: TrackInput) -> IngestResult:
    ensure_bounded(event.properties, field="properties")
    occurred_at = event.occurred_at or datetime.now(UTC)
    properties = event.properties or {}

    identifiers = event.identifiers.normalized()
    kind = classify_event(event.event_type, event.event_name)
    # Checked against caller-supplied ids only; a derived fingerprint does not count.
    if (
        kind in TRANSACTION_KINDS
        and transaction_id(properties) is None
        and identifiers.anonymous_id is None
        and identifiers.email is None
        and identifiers.customer_id is None
    ):
        raise MissingIdentifierError(
            "Cart, checkout and order events need a transaction id "
            "(checkout_id, cart_token, order_id) or an anonymous_id, email or customer_id"
        )

    fingerprint_used = False
    if identifiers.anonymous_id is None:
        fp = fingerprint(client_ip=event.client_ip, user_agent=event.user_agent)
        if fp is not None:
            identifiers = Identifiers(
                anonymous_id=fp,
                email=identifiers.email,
                customer_id=identifiers.customer_id,
                phone=identifiers.phone,
            )
            fingerprint_used = True

    if identifiers.is_empty():
        raise MissingIdentifierError("At least one identifier or client_ip is required")

    dedupe_key = event.message_id or compute_dedupe_key(
        workspace_id=str(workspace_id),
        event_name=event.event_name,
        properties=properties,
        anonymous_id=identifiers.anonymous_id,
        session_id=event.session_id,
        occurred_at=occurred_at,
    )

    event_id = _insert_event(
        session,
        workspace_id=workspace_id,
        event=event,
        anonymous_id=identifiers.anonymous_id,
        occurred_at=occurred_at,
        dedupe_key=dedupe_key,
    )
    if event_id is None:
        existing = _find_by_dedupe_key(session, workspace_id=workspace_id, dedupe_key=dedupe_key)
        observe_event_ingested(duplicate=True)
        return IngestResult(
            event_id=UUID(str(existing["id"])),
            unified_user_id=(
                UUID(str(existing["unified_user_id"])) if existing["unified_user_id"] else None
            ),
            duplicate=True,
            fingerprint_used=fingerprint_used,
        )
    observe_event_ingested(duplicate=False)

    resolved = resolve(
        session,
        workspace_id=workspace_id,
        identifiers=identifiers,
        source=event.source,
    )
    session.execute(
        text("UPDATE events SET unified_user_id = :uid WHERE id = :id"),
        {"uid": str(resolved.unified_user_id), "id": str(event_id)},
    )
    events_linked = _link_if_identified(session, resolved)

    errors: list[str] = []
    status = EventStatus.processed
    try:
        with session.begin_nested():
            apply_event_to_identity(
                session,
                unified_user_id=resolved.unified_user_id,
                event=EventInput(
                    event_type=event.event_type,
                    event_name=event.event_name,
                    properties=properties,
                    occurred_at=occurred_at,
                ),
            )
    except Exception as e:
        api_logger.exception("signal computation failed for event %s", event_id)
        errors.append(f"signals: {e}")
        status = EventStatus.failed

    jobs = _schedule(
        session,
        resolved=resolved,
        trigger=TriggerContext(
            source="ingest",
            event_id=event_id,
            event_type=event.event_type,
            event_name=event.event_name,
        ),
        errors=errors,
    )

    session.execute(
        text(
            """
            UPDATE events
            SET status = CAST(:status AS event_status),
                processed_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(event_id), "status": status.value},
    )

    log_json(
        api_logger,
        "event.ingested",
        workspace_id=str(workspace_id),
        event_id=str(event_id),
        unified_user_id=str(resolved.unified_user_id),
        event_name=event.event_name,
        merged=resolved.merged,
        events_linked=events_linked,
        sync_jobs_created=len(jobs),
        errors=len(errors),
    )
    return IngestResult(
        event_id=event_id,
        unified_user_id=resolved.unified_user_id,
        duplicate=False,
        is_new_user=resolved.is_new,
        identity_merged=resolved.merged,
        fingerprint_used=fingerprint_used,
        events_linked=events_linked,
        sync_jobs_created=len(jobs),
        errors=errors,
    )


def record_derived_event(
    session: Session,
    *,
    workspace_id: UUID,
    unified_user_id: UUID,
    event_type: str,
    event_name: str,
    properties: dict[str, Any],
    occurred_at: datetime,
    source: str,
    dedupe_key: str,
) -> UUID | None:
    """Store an event the engine observed itself; returns None when already recorded."""
    event_id = _insert_event(
        session,
        workspace_id=workspace_id,
        event=TrackInput(
            event_type=event_type,
            event_name=event_name,
            properties=properties,
            source=source,
        ),
        anonymous_id=None,
        occurred_at=occurred_at,
        dedupe_key=dedupe_key,
    )
    if event_id is None:
        return None
    session.execute(
        text(
            """
            UPDATE events
            SET unified_user_id = :uid,
                status = 'processed',
                processed_at = now()
            WHERE id = :id
            """
        ),
        {"uid": str(unified_user_id), "id": str(event_id)},
    )
    return event_id


def _link_if_identified(session: Session, resolved: ResolveResult) -> int:
    if not (resolved.merged or resolved.email_attached or resolved.promoted):
        return 0
    return link_prior_events(session, unified_user_id=resolved.unified_user_id)


def _schedule(
    session: Session,
    *,
    resolved: ResolveResult,
    trigger: TriggerContext,
    errors: list[str],
) -> list[UUID]:
    if resolved.primary_email is None:
        return []
    try:
        with session.begin_nested():
            return schedule_if_needed(
                session, unified_user_id=resolved.unified_user_id, trigger=trigger
            )
    except Exception as e:
        api_logger.exception("sync scheduling failed for identity %s", resolved.unified_user_id)
        log_json(
            api_logger,
            "sync.schedule.failed",
            level=logging.WARNING,
            unified_user_id=str(resolved.unified_user_id),
            error=str(e),
        )
        errors.append(f"sync: {e}")
        return []


def _insert_event(
    session: Session,
    *,
    workspace_id: UUID,
    event: TrackInput,
    anonymous_id: str | None,
    occurred_at: datetime,
    dedupe_key: str,
) -> UUID | None:
    row = session.execute(
        text(
            """
            INSERT INTO events (
              workspace_id,
              anonymous_id,
              session_id,
              event_type,
              event_name,
              properties,
              context,
              source,
              dedupe_key,
              status,
              event_time
            )
            VALUES (
              :workspace_id,
              :anonymous_id,
              :session_id,
              :event_type,
              :event_name,
              CAST(:properties AS jsonb),
              CAST(:context AS jsonb),
              :source,
              :dedupe_key,
              'pending',
              :event_time
            )
            ON CONFLICT (workspace_id, dedupe_key) WHERE dedupe_key IS NOT NULL DO NOTHING
            RETURNING id
            """
        ),
        {
            "workspace_id": str(workspace_id),
            "anonymous_id": anonymous_id,
            "session_id": event.session_id,
            "event_type": event.event_type,
            "event_name": event.event_name,
            "properties": _json_dumps(event.properties or {}),
            "context": _json_dumps(
                {**(event.context or {}), "client_ip": event.client_ip, "user_agent": event.user_agent}
            ),
            "source": event.source,
            "dedupe_key": dedupe_key,
            "event_time": occurred_at,
        },
    ).fetchone()
    if row is None:
        return None
    return UUID(str(row[0]))


def _find_by_dedupe_key(session: Session, *, workspace_id: UUID, dedupe_key: str) -> dict:
    row = (
        session.execute(
            text(
                """
                SELECT id, unified_user_id
                FROM events
                WHERE workspace_id = :workspace_id AND dedupe_key = :dedupe_key
                """
            ),
            {"workspace_id": str(workspace_id), "dedupe_key": dedupe_key},
        )
        .mappings()
        .one()
    )
    return dict(row)


def _json_dumps(payload: dict) -> str:
    import json

    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)

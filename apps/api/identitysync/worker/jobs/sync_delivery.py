from __future__ import annotations

from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.crypto import open_credentials
from identitysync.models.enums import DestinationType, EventStatus, SyncJobType, SyncOutcome, SyncReason
from identitysync.services.signals.computer import EventKind, classify_event, order_value
from identitysync.services.signals.traits import FLAG_FOR_REASON, ComputedTraits
from identitysync.services.sync.klaviyo import KlaviyoApiError, track_event, upsert_profile
from identitysync.services.sync.mapping import build_profile_properties, metric_name_for
from identitysync.worker.errors import PermanentJobError


def deliver_sync_job(*, session: Session, job: dict, http_client: httpx.Client) -> SyncOutcome:
    destination_id = UUID(str(job["destination_id"]))
    api_key = _destination_api_key(session=session, destination_id=destination_id)

    identity = (
        session.execute(
            text(
                """
                SELECT id, primary_email, phone, customer_ids, anonymous_ids,
                       traits, computed, first_seen_at, last_seen_at, synced_snapshot
                FROM users_unified
                WHERE id = :id
                """
            ),
            {"id": str(job["unified_user_id"])},
        )
        .mappings()
        .first()
    )
    if identity is None:
        return SyncOutcome.skipped_identity_missing
    # Never create an unaddressable profile downstream.
    if not identity["primary_email"]:
        return SyncOutcome.skipped_no_email

    computed = ComputedTraits.load(identity["computed"])
    properties = build_profile_properties(identity=identity, computed=computed)
    external_id = str(identity["id"])
    unchanged = identity["synced_snapshot"] == properties

    if not unchanged:
        try:
            upsert_profile(
                http_client,
                api_key=api_key,
                email=identity["primary_email"],
                external_id=external_id,
                phone=identity["phone"],
                properties=properties,
            )
        except KlaviyoApiError as e:
            if e.permanent:
                raise PermanentJobError(f"Klaviyo rejected credentials ({e.status_code}): {e}") from e
            raise

    _mark_profile_synced(
        session=session,
        unified_user_id=identity["id"],
        reasons=_reasons(job.get("payload") or {}),
        snapshot=properties,
    )

    if SyncJobType(job["job_type"]) != SyncJobType.event_track or job.get("event_id") is None:
        return SyncOutcome.skipped_unchanged if unchanged else SyncOutcome.synced

    event = (
        session.execute(
            text(
                """
                SELECT id, event_type, event_name, properties, event_time
                FROM events
                WHERE id = :id
                """
            ),
            {"id": str(job["event_id"])},
        )
        .mappings()
        .first()
    )
    if event is None:
        return SyncOutcome.synced

    metric_name = metric_name_for(event["event_type"], event["event_name"])
    if metric_name is None:
        return SyncOutcome.blocked

    event_props = dict(event["properties"] or {})
    value = None
    if classify_event(event["event_type"], event["event_name"]) == EventKind.order:
        value = order_value(event_props)
    try:
        track_event(
            http_client,
            api_key=api_key,
            metric_name=metric_name,
            email=identity["primary_email"],
            external_id=external_id,
            properties=event_props,
            occurred_at=event["event_time"],
            unique_id=str(event["id"]),
            value=value,
        )
    except KlaviyoApiError as e:
        if e.permanent:
            raise PermanentJobError(f"Klaviyo rejected credentials ({e.status_code}): {e}") from e
        raise

    session.execute(
        text("UPDATE events SET status = CAST(:status AS event_status) WHERE id = :id"),
        {"id": str(event["id"]), "status": EventStatus.synced.value},
    )
    return SyncOutcome.synced


def _destination_api_key(*, session: Session, destination_id: UUID) -> str:
    destination = (
        session.execute(
            text(
                """
                SELECT id, type, enabled, encrypted_credentials
                FROM destinations
                WHERE id = :id
                """
            ),
            {"id": str(destination_id)},
        )
        .mappings()
        .first()
    )
    if destination is None:
        raise PermanentJobError("destination is missing")
    if not destination["enabled"]:
        raise PermanentJobError("destination is disabled")
    if destination["type"] != DestinationType.klaviyo.value:
        raise PermanentJobError(f"unsupported destination type: {destination['type']}")
    if destination["encrypted_credentials"] is None:
        raise PermanentJobError("destination has no credentials")

    try:
        credentials = open_credentials(
            blob=bytes(destination["encrypted_credentials"]),
            destination_id=str(destination_id),
        )
    except Exception as e:  # noqa: BLE001
        raise PermanentJobError("destination credentials could not be decrypted") from e

    api_key = credentials.get("api_key")
    if not api_key:
        raise PermanentJobError("destination credentials missing api_key")
    return str(api_key)


def _reasons(payload: dict) -> list[SyncReason]:
    raw = payload.get("reasons") or []
    out: list[SyncReason] = []
    for value in raw:
        try:
            out.append(SyncReason(value))
        except ValueError:
            continue
    return out


def _mark_profile_synced(
    *,
    session: Session,
    unified_user_id: UUID,
    reasons: list[SyncReason],
    snapshot: dict,
) -> None:
    flags = {"first_sync_completed": True}
    for reason in reasons:
        flag = FLAG_FOR_REASON.get(reason)
        if flag is not None:
            flags[flag] = True

    # Merge flags in place; signal writers may have updated other keys meanwhile.
    # updated_at is left alone so a sync does not look like fresh activity.
    session.execute(
        text(
            """
            UPDATE users_unified
            SET computed = jsonb_set(
                  computed,
                  '{flags}',
                  COALESCE(computed->'flags', '{}'::jsonb) || CAST(:flags AS jsonb)
                ),
                synced_snapshot = CAST(:snapshot AS jsonb),
                last_synced_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(unified_user_id), "flags": _json_dumps(flags), "snapshot": _json_dumps(snapshot)},
    )


def _json_dumps(payload: dict) -> str:
    import json

    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)

"""Find-or-create the unified identity behind a set of observed identifiers.

Resolution priority is email > customer id > anonymous id. A per-(workspace,
email) advisory lock serializes concurrent resolutions of the same address for
the rest of the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from identitysync.core.logs import api_logger, log_json
from identitysync.models.enums import IdentityType
from identitysync.models.identity import UnifiedIdentity
from identitysync.services.identity.merge import merge_identities
from identitysync.services.ingest.validation import MissingIdentifierError


@dataclass(frozen=True)
class Identifiers:
    anonymous_id: str | None = None
    email: str | None = None
    customer_id: str | None = None
    phone: str | None = None

    def normalized(self) -> Identifiers:
        return Identifiers(
            anonymous_id=_clean(self.anonymous_id),
            email=normalize_email(self.email),
            customer_id=_clean(self.customer_id),
            phone=_clean(self.phone),
        )

    def is_empty(self) -> bool:
        return not (self.anonymous_id or self.email or self.customer_id or self.phone)


@dataclass(frozen=True)
class ResolveResult:
    unified_user_id: UUID
    is_new: bool
    merged: bool
    merged_from: UUID | None
    promoted: bool
    email_attached: bool
    primary_email: str | None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def normalize_email(value: str | None) -> str | None:
    cleaned = _clean(value)
    return cleaned.lower() if cleaned else None


def _union(existing: list[str] | None, value: str | None) -> list[str]:
    current = list(existing or [])
    if value is not None and value not in current:
        current.append(value)
    return current


def _can_stitch(anon: UnifiedIdentity, *, email_match: bool) -> bool:
    if anon.primary_email is not None or anon.emails:
        return False
    # Two different customer ids only merge on the strength of an email match.
    return email_match or not anon.customer_ids


def _advisory_lock(session: Session, *, key: str) -> None:
    session.execute(text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"), {"key": key})


def _find_one(session: Session, *, workspace_id: UUID, clause) -> UnifiedIdentity | None:
    return (
        session.execute(
            select(UnifiedIdentity)
            .where(UnifiedIdentity.workspace_id == workspace_id, clause)
            .order_by(UnifiedIdentity.created_at.asc())
            .limit(1)
            .with_for_update()
        )
        .scalars()
        .first()
    )


def _find_by_email(session: Session, *, workspace_id: UUID, email: str) -> UnifiedIdentity | None:
    owner = _find_one(
        session, workspace_id=workspace_id, clause=UnifiedIdentity.primary_email == email
    )
    if owner is not None:
        return owner
    return _find_one(session, workspace_id=workspace_id, clause=UnifiedIdentity.emails.any(email))


def resolve(
    session: Session,
    *,
    workspace_id: UUID,
    identifiers: Identifiers,
    source: str,
    traits: dict | None = None,
    now: datetime | None = None,
) -> ResolveResult:
    ids = identifiers.normalized()
    if ids.is_empty():
        raise MissingIdentifierError("At least one identifier is required")
    now = now or datetime.now(UTC)

    if ids.email:
        _advisory_lock(session, key=f"email:{workspace_id}:{ids.email}")
    if ids.anonymous_id:
        _advisory_lock(session, key=f"anon:{workspace_id}:{ids.anonymous_id}")

    by_email = (
        _find_by_email(session, workspace_id=workspace_id, email=ids.email) if ids.email else None
    )
    by_customer = (
        _find_one(
            session,
            workspace_id=workspace_id,
            clause=UnifiedIdentity.customer_ids.any(ids.customer_id),
        )
        if ids.customer_id
        else None
    )
    by_anon = (
        _find_one(
            session,
            workspace_id=workspace_id,
            clause=UnifiedIdentity.anonymous_ids.any(ids.anonymous_id),
        )
        if ids.anonymous_id
        else None
    )

    keep = by_email or by_customer or by_anon
    merged_from: UUID | None = None

    if by_customer is not None and by_email is not None and by_customer.id != by_email.id:
        # Two identified records disagree; keep the email owner and leave the other alone.
        log_json(
            api_logger,
            "identity.resolve.customer_id_conflict",
            level=logging.WARNING,
            workspace_id=str(workspace_id),
            email_identity_id=str(by_email.id),
            customer_identity_id=str(by_customer.id),
        )
        ids = replace(ids, customer_id=None)

    if by_anon is not None and keep is not None and by_anon.id != keep.id:
        if _can_stitch(by_anon, email_match=keep is by_email):
            merged_from = by_anon.id
            merge_identities(session, keep=keep, lose=by_anon, now=now)
        else:
            # Shared device: the anonymous id already belongs to another known person.
            log_json(
                api_logger,
                "identity.resolve.anonymous_id_owned",
                level=logging.WARNING,
                workspace_id=str(workspace_id),
                keep_identity_id=str(keep.id),
                owner_identity_id=str(by_anon.id),
            )
            ids = replace(ids, anonymous_id=None)

    is_new = keep is None
    promoted = False
    if keep is None:
        keep = UnifiedIdentity(
            workspace_id=workspace_id,
            primary_email=ids.email,
            emails=[ids.email] if ids.email else [],
            phone=ids.phone,
            customer_ids=[ids.customer_id] if ids.customer_id else [],
            anonymous_ids=[ids.anonymous_id] if ids.anonymous_id else [],
            traits=dict(traits or {}),
            computed={},
            first_seen_at=now,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(keep)
    else:
        if ids.email and keep.primary_email is None:
            keep.primary_email = ids.email
            promoted = merged_from is None
        keep.emails = _union(keep.emails, ids.email)
        keep.customer_ids = _union(keep.customer_ids, ids.customer_id)
        keep.anonymous_ids = _union(keep.anonymous_ids, ids.anonymous_id)
        if ids.phone and keep.phone is None:
            keep.phone = ids.phone
        if traits:
            keep.traits = {**(keep.traits or {}), **traits}
        keep.last_seen_at = now
        keep.updated_at = now
    session.flush()

    _record_links(session, workspace_id=workspace_id, unified_user_id=keep.id, ids=ids, source=source)

    if is_new:
        log_json(api_logger, "identity.created", workspace_id=str(workspace_id), identity_id=str(keep.id))
    elif promoted:
        log_json(api_logger, "identity.promoted", workspace_id=str(workspace_id), identity_id=str(keep.id))

    return ResolveResult(
        unified_user_id=keep.id,
        is_new=is_new,
        merged=merged_from is not None,
        merged_from=merged_from,
        promoted=promoted,
        email_attached=bool(ids.email) and by_email is None,
        primary_email=keep.primary_email,
    )


def _record_links(
    session: Session,
    *,
    workspace_id: UUID,
    unified_user_id: UUID,
    ids: Identifiers,
    source: str,
) -> None:
    pairs = [
        (IdentityType.anonymous_id, ids.anonymous_id),
        (IdentityType.email, ids.email),
        (IdentityType.customer_id, ids.customer_id),
        (IdentityType.phone, ids.phone),
    ]
    for identity_type, value in pairs:
        if not value:
            continue
        session.execute(
            text(
                """
                INSERT INTO identities (
                  workspace_id, unified_user_id, identity_type, identity_value, source, confidence
                )
                VALUES (
                  :workspace_id, :unified_user_id, CAST(:identity_type AS identity_type),
                  :identity_value, :source, 1.0
                )
                ON CONFLICT (workspace_id, identity_type, identity_value) DO NOTHING
                """
            ),
            {
                "workspace_id": str(workspace_id),
                "unified_user_id": str(unified_user_id),
                "identity_type": identity_type.value,
                "identity_value": value,
                "source": source,
            },
        )

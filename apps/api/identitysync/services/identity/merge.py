from __future__ import annotations

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.logs import api_logger, log_json
from identitysync.core.metrics import observe_identity_merge
from identitysync.models.identity import UnifiedIdentity
from identitysync.services.signals.computer import merge_traits
from identitysync.services.signals.traits import ComputedTraits

# Tables whose rows follow the surviving identity. Order matters only for readability.
_REASSIGN_SQL = (
    "UPDATE events SET unified_user_id = :keep WHERE unified_user_id = :lose",
    "UPDATE identities SET unified_user_id = :keep WHERE unified_user_id = :lose",
    "UPDATE sync_jobs SET unified_user_id = :keep, updated_at = now() WHERE unified_user_id = :lose",
    """
    DELETE FROM predictive_signals AS loser
    USING predictive_signals AS winner
    WHERE loser.unified_user_id = :lose
      AND winner.unified_user_id = :keep
      AND winner.workspace_id = loser.workspace_id
      AND winner.signal_type = loser.signal_type
    """,
    "UPDATE predictive_signals SET unified_user_id = :keep WHERE unified_user_id = :lose",
)


def _union(a: list[str] | None, b: list[str] | None) -> list[str]:
    out = list(a or [])
    for item in b or []:
        if item not in out:
            out.append(item)
    return out


def merge_identities(
    session: Session,
    *,
    keep: UnifiedIdentity,
    lose: UnifiedIdentity,
    now: datetime,
) -> None:
    """Fold ``lose`` into ``keep`` and delete it.

    Runs inside the caller's transaction, so a failure anywhere rolls back every
    reassignment together with the delete. Both rows must already be locked.
    """
    if keep.id == lose.id:
        return

    settings = get_settings()
    params = {"keep": str(keep.id), "lose": str(lose.id)}
    lose_id = lose.id

    merged_traits = merge_traits(
        ComputedTraits.load(keep.computed),
        ComputedTraits.load(lose.computed),
        lose_id=str(lose_id),
        now=now,
        engaged_threshold=settings.ENGAGED_INTENT_THRESHOLD,
    )
    anonymous_ids = _union(keep.anonymous_ids, lose.anonymous_ids)
    emails = _union(keep.emails, lose.emails)
    customer_ids = _union(keep.customer_ids, lose.customer_ids)
    inherited_email = lose.primary_email if keep.primary_email is None else None

    session.flush()
    for sql in _REASSIGN_SQL:
        session.execute(text(sql), params)

    keep_phone = keep.phone or lose.phone
    keep_traits = {**(lose.traits or {}), **(keep.traits or {})}
    first_seen_at = min(keep.first_seen_at, lose.first_seen_at)
    last_seen_at = max(keep.last_seen_at, lose.last_seen_at)

    # The loser must be gone before its primary email can move over.
    session.delete(lose)
    session.flush()

    keep.anonymous_ids = anonymous_ids
    keep.emails = emails
    keep.customer_ids = customer_ids
    keep.phone = keep_phone
    keep.traits = keep_traits
    keep.computed = merged_traits.dump()
    keep.first_seen_at = first_seen_at
    keep.last_seen_at = last_seen_at
    keep.updated_at = now
    if inherited_email is not None:
        keep.primary_email = inherited_email
    session.flush()

    observe_identity_merge()
    log_json(
        api_logger,
        "identity.merged",
        workspace_id=str(keep.workspace_id),
        keep_identity_id=str(keep.id),
        merged_identity_id=str(lose_id),
        anonymous_ids=len(anonymous_ids),
    )

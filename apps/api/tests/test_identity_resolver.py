from __future__ import annotations

import threading
import uuid

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from identitysync.services.identity.resolver import Identifiers, resolve
from identitysync.services.ingest.ingestor import TrackInput, identify, ingest_event
from identitysync.services.ingest.validation import MissingIdentifierError


def _anon() -> str:
    return f"anon-{uuid.uuid4().hex[:10]}"


def _email() -> str:
    return f"user-{uuid.uuid4().hex[:8]}@example.com"


def _identity(db_session, identity_id) -> dict | None:  # noqa: ANN001
    row = (
        db_session.execute(
            text(
                """
                SELECT id, primary_email, emails, customer_ids, anonymous_ids
                FROM users_unified
                WHERE id = :id
                """
            ),
            {"id": str(identity_id)},
        )
        .mappings()
        .first()
    )
    return dict(row) if row is not None else None


def _event_owners(db_session, event_ids) -> set:  # noqa: ANN001
    rows = db_session.execute(
        text("SELECT unified_user_id FROM events WHERE id = ANY(CAST(:ids AS uuid[]))"),
        {"ids": [str(i) for i in event_ids]},
    ).scalars()
    return {str(r) for r in rows}


def test_resolve_creates_anonymous_identity_and_reuses_it(db_session, workspace) -> None:
    anon = _anon()
    first = resolve(db_session, workspace_id=workspace.id, identifiers=Identifiers(anonymous_id=anon), source="web")
    second = resolve(db_session, workspace_id=workspace.id, identifiers=Identifiers(anonymous_id=anon), source="web")
    db_session.commit()

    assert first.is_new is True
    assert second.is_new is False
    assert first.unified_user_id == second.unified_user_id
    assert first.primary_email is None

    links = db_session.execute(
        text("SELECT identity_type::text FROM identities WHERE unified_user_id = :id"),
        {"id": str(first.unified_user_id)},
    ).scalars().all()
    assert links == ["anonymous_id"]


def test_resolve_requires_an_identifier(db_session, workspace) -> None:
    with pytest.raises(MissingIdentifierError):
        resolve(db_session, workspace_id=workspace.id, identifiers=Identifiers(email="  "), source="web")


def test_identify_promotes_anonymous_identity_in_place(db_session, workspace) -> None:
    anon = _anon()
    email = _email()
    event = ingest_event(
        db_session,
        workspace_id=workspace.id,
        event=TrackInput(
            event_type="track",
            event_name="Product Viewed",
            properties={"product_id": "p1"},
            identifiers=Identifiers(anonymous_id=anon),
        ),
    )
    db_session.commit()

    result = identify(
        db_session,
        workspace_id=workspace.id,
        identifiers=Identifiers(anonymous_id=anon, email=email.upper()),
        traits={"first_name": "Ada"},
    )
    db_session.commit()

    assert result.unified_user_id == event.unified_user_id
    assert result.is_new_user is False
    assert result.identity_merged is False

    row = _identity(db_session, result.unified_user_id)
    assert row["primary_email"] == email
    assert list(row["anonymous_ids"]) == [anon]


def test_late_identity_stitching_moves_history(db_session, workspace) -> None:
    email = _email()
    anon = _anon()
    known = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=email))
    db_session.commit()

    event_ids = []
    for name in ("Page View", "Product Viewed"):
        res = ingest_event(
            db_session,
            workspace_id=workspace.id,
            event=TrackInput(
                event_type="track",
                event_name=name,
                identifiers=Identifiers(anonymous_id=anon),
                message_id=f"msg-{uuid.uuid4().hex}",
            ),
        )
        event_ids.append(res.event_id)
        anon_identity_id = res.unified_user_id
    db_session.commit()
    assert anon_identity_id != known.unified_user_id

    result = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(anonymous_id=anon, email=email))
    db_session.commit()

    assert result.identity_merged is True
    assert result.unified_user_id == known.unified_user_id
    assert _identity(db_session, anon_identity_id) is None
    assert _event_owners(db_session, event_ids) == {str(known.unified_user_id)}

    survivor = _identity(db_session, known.unified_user_id)
    assert anon in survivor["anonymous_ids"]

    computed = db_session.execute(
        text("SELECT computed FROM users_unified WHERE id = :id"),
        {"id": str(known.unified_user_id)},
    ).scalar_one()
    assert computed["merged_from"] == [str(anon_identity_id)]


def test_email_is_unique_per_workspace(db_session, workspace) -> None:
    email = _email()
    a = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=email))
    b = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=f"  {email.title()} "))
    db_session.commit()

    assert a.unified_user_id == b.unified_user_id
    count = db_session.execute(
        text("SELECT count(*) FROM users_unified WHERE workspace_id = :ws AND primary_email = :email"),
        {"ws": str(workspace.id), "email": email},
    ).scalar_one()
    assert count == 1


def test_customer_id_conflict_keeps_email_owner(db_session, workspace) -> None:
    email_a = _email()
    email_b = _email()
    a = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=email_a))
    b = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=email_b, customer_id="cust-1"))
    db_session.commit()

    result = identify(
        db_session,
        workspace_id=workspace.id,
        identifiers=Identifiers(email=email_a, customer_id="cust-1"),
    )
    db_session.commit()

    assert result.unified_user_id == a.unified_user_id
    assert result.identity_merged is False
    assert list(_identity(db_session, a.unified_user_id)["customer_ids"]) == []
    assert list(_identity(db_session, b.unified_user_id)["customer_ids"]) == ["cust-1"]


def test_shared_device_does_not_merge_two_known_people(db_session, workspace) -> None:
    anon = _anon()
    first = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(anonymous_id=anon, email=_email()))
    second_email = _email()
    second = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=second_email))
    db_session.commit()

    result = identify(
        db_session,
        workspace_id=workspace.id,
        identifiers=Identifiers(anonymous_id=anon, email=second_email),
    )
    db_session.commit()

    assert result.unified_user_id == second.unified_user_id
    assert result.identity_merged is False
    assert _identity(db_session, first.unified_user_id) is not None
    assert anon not in _identity(db_session, second.unified_user_id)["anonymous_ids"]


def test_concurrent_identify_for_one_email_creates_one_identity(workspace) -> None:
    from identitysync.db.session import get_sessionmaker

    email = _email()
    workspace_id = workspace.id
    barrier = threading.Barrier(2)
    results: list = []
    errors: list[BaseException] = []

    def _identify(anon: str) -> None:
        session = get_sessionmaker()()
        try:
            barrier.wait(timeout=10)
            res = identify(session, workspace_id=workspace_id, identifiers=Identifiers(anonymous_id=anon, email=email))
            session.commit()
            results.append(res.unified_user_id)
        except BaseException as e:  # noqa: BLE001
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=_identify, args=(_anon(),)) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert len(results) == 2
    assert results[0] == results[1]

    session = get_sessionmaker()()
    try:
        count = session.execute(
            text("SELECT count(*) FROM users_unified WHERE workspace_id = :ws AND primary_email = :email"),
            {"ws": str(workspace_id), "email": email},
        ).scalar_one()
    finally:
        session.close()
    assert count == 1


def test_failed_merge_leaves_both_identities_untouched(db_session, workspace, monkeypatch) -> None:
    from identitysync.services.identity import merge

    email = _email()
    anon = _anon()
    known = identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(email=email))
    tracked = ingest_event(
        db_session,
        workspace_id=workspace.id,
        event=TrackInput(
            event_type="track",
            event_name="Product Viewed",
            identifiers=Identifiers(anonymous_id=anon),
            message_id=f"msg-{uuid.uuid4().hex}",
        ),
    )
    db_session.commit()
    anon_identity_id = tracked.unified_user_id

    # Fail after events and links have already been moved over.
    monkeypatch.setattr(merge, "_REASSIGN_SQL", merge._REASSIGN_SQL[:2] + ("SELECT 1 / 0",))
    with pytest.raises(DBAPIError):
        identify(db_session, workspace_id=workspace.id, identifiers=Identifiers(anonymous_id=anon, email=email))
    db_session.rollback()

    loser = _identity(db_session, anon_identity_id)
    assert loser is not None
    assert list(loser["anonymous_ids"]) == [anon]
    assert _event_owners(db_session, [tracked.event_id]) == {str(anon_identity_id)}

    survivor = _identity(db_session, known.unified_user_id)
    assert anon not in (survivor["anonymous_ids"] or [])
    links = db_session.execute(
        text("SELECT count(*) FROM identities WHERE unified_user_id = :id AND identity_value = :anon"),
        {"id": str(known.unified_user_id), "anon": anon},
    ).scalar_one()
    assert links == 0

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from identitysync.core.deps import WorkspaceContext, require_scope
from identitysync.core.middleware import client_ip
from identitysync.db.session import get_session
from identitysync.models.enums import ApiKeyScope
from identitysync.schemas.ingest import (
    IdentifyRequest,
    IdentifyResponse,
    ServerTrackRequest,
    ServerTrackResponse,
)
from identitysync.services.identity.resolver import Identifiers
from identitysync.services.ingest.ingestor import TrackInput, identify, ingest_event
from identitysync.services.ingest.validation import MissingIdentifierError, PayloadTooLargeError

router = APIRouter(prefix="/v1", tags=["ingest"])


@router.post("/identify", response_model=IdentifyResponse)
def identify_endpoint(
    payload: IdentifyRequest,
    ctx: WorkspaceContext = Depends(require_scope(ApiKeyScope.identify)),
    session: Session = Depends(get_session),
) -> IdentifyResponse:
    try:
        result = identify(
            session,
            workspace_id=ctx.workspace_id,
            identifiers=Identifiers(
                anonymous_id=payload.anonymous_id,
                email=payload.email,
                customer_id=payload.user_id,
                phone=payload.phone,
            ),
            traits=payload.traits,
        )
    except PayloadTooLargeError as e:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(e)) from e
    except MissingIdentifierError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    session.commit()
    return IdentifyResponse(
        unified_user_id=result.unified_user_id,
        is_new_user=result.is_new_user,
        identity_merged=result.identity_merged,
        events_linked=result.events_linked,
        sync_jobs_created=result.sync_jobs_created,
    )


@router.post("/server-track", response_model=ServerTrackResponse)
def server_track_endpoint(
    payload: ServerTrackRequest,
    request: Request,
    ctx: WorkspaceContext = Depends(require_scope(ApiKeyScope.track)),
    session: Session = Depends(get_session),
) -> ServerTrackResponse:
    try:
        result = ingest_event(
            session,
            workspace_id=ctx.workspace_id,
            event=TrackInput(
                event_type=payload.event_type,
                event_name=payload.event_name,
                properties=payload.merged_properties(),
                identifiers=Identifiers(
                    anonymous_id=payload.anonymous_id,
                    email=payload.email,
                    customer_id=payload.customer_id,
                    phone=payload.phone,
                ),
                session_id=payload.session_id,
                client_ip=payload.client_ip or client_ip(request),
                user_agent=payload.user_agent or request.headers.get("user-agent"),
                source=payload.source or "server",
                occurred_at=payload.timestamp,
                message_id=payload.message_id,
            ),
        )
    except PayloadTooLargeError as e:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(e)) from e
    except MissingIdentifierError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    session.commit()
    return ServerTrackResponse(
        event_id=result.event_id,
        unified_user_id=result.unified_user_id,
        is_new_user=result.is_new_user,
        identity_merged=result.identity_merged,
        duplicate=result.duplicate,
        fingerprint_used=result.fingerprint_used,
        events_linked=result.events_linked,
    )

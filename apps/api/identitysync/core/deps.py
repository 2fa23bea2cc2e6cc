from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from identitysync.core.config import get_settings
from identitysync.core.security import hash_api_key
from identitysync.db.session import get_session
from identitysync.models.enums import ApiKeyScope
from identitysync.models.workspace import ApiKey, Workspace


@dataclass(frozen=True)
class WorkspaceContext:
    workspace: Workspace
    api_key: ApiKey

    @property
    def workspace_id(self):
        return self.workspace.id

    @property
    def scopes(self) -> set[str]:
        return set(self.api_key.scopes or [])


def require_api_key(
    request: Request,
    session: Session = Depends(get_session),
) -> WorkspaceContext:
    settings = get_settings()
    raw = request.headers.get(settings.API_KEY_HEADER)
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key required")

    api_key = (
        session.execute(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw.strip())))
        .scalars()
        .first()
    )
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    now = datetime.now(UTC)
    if api_key.revoked_at is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="API key revoked")
    if api_key.expires_at is not None and api_key.expires_at <= now:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="API key expired")

    workspace = session.get(Workspace, api_key.workspace_id)
    if workspace is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Workspace missing")

    api_key.last_used_at = now
    return WorkspaceContext(workspace=workspace, api_key=api_key)


def require_scope(scope: ApiKeyScope):
    def _dep(ctx: WorkspaceContext = Depends(require_api_key)) -> WorkspaceContext:
        if scope.value not in ctx.scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"API key lacks the '{scope.value}' scope",
            )
        return ctx

    return _dep

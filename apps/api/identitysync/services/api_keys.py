from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from identitysync.core.logs import api_logger, log_json
from identitysync.core.security import hash_api_key, new_api_key
from identitysync.models.enums import ApiKeyScope
from identitysync.models.workspace import ApiKey


def create_api_key(
    *,
    session: Session,
    workspace_id: UUID,
    name: str,
    scopes: list[ApiKeyScope],
    expires_at: datetime | None = None,
) -> tuple[str, ApiKey]:
    """Mint a key; the raw value is returned once and only its HMAC is stored."""
    label = name.strip()
    if not label:
        raise ValueError("API key name is required")
    if not scopes:
        raise ValueError("At least one scope is required")

    raw = new_api_key()
    api_key = ApiKey(
        workspace_id=workspace_id,
        name=label,
        key_hash=hash_api_key(raw),
        scopes=sorted({ApiKeyScope(s).value for s in scopes}),
        expires_at=expires_at,
    )
    session.add(api_key)
    session.flush()

    log_json(
        api_logger,
        "api_key.created",
        workspace_id=str(workspace_id),
        api_key_id=str(api_key.id),
        scopes=api_key.scopes,
    )
    return raw, api_key

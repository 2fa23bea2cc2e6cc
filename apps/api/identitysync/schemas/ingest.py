from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class IdentifyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    anonymous_id: str | None = Field(default=None, max_length=255)
    user_id: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    traits: dict[str, Any] | None = None


class IdentifyResponse(BaseModel):
    unified_user_id: UUID
    is_new_user: bool
    identity_merged: bool
    events_linked: int
    sync_jobs_created: int


class ServerTrackRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(min_length=1, max_length=100)
    event_name: str = Field(min_length=1, max_length=255)
    properties: dict[str, Any] | None = None
    anonymous_id: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=320)
    customer_id: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=64)
    session_id: str | None = Field(default=None, max_length=255)
    client_ip: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None, max_length=1024)
    source: str | None = Field(default=None, max_length=64)
    timestamp: datetime | None = None
    message_id: str | None = Field(default=None, max_length=255)
    checkout_id: str | None = Field(default=None, max_length=255)
    cart_token: str | None = Field(default=None, max_length=255)
    order_id: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _aware_timestamp(self) -> ServerTrackRequest:
        if self.timestamp is not None and self.timestamp.tzinfo is None:
            raise ValueError("timestamp must include a timezone offset")
        return self

    def merged_properties(self) -> dict[str, Any]:
        """Properties with the top-level transaction ids folded in; top-level wins."""
        merged = dict(self.properties or {})
        for key in ("checkout_id", "cart_token", "order_id"):
            value = getattr(self, key)
            if value:
                merged[key] = value
        return merged


class ServerTrackResponse(BaseModel):
    event_id: UUID
    unified_user_id: UUID | None
    is_new_user: bool
    identity_merged: bool
    duplicate: bool
    fingerprint_used: bool
    events_linked: int

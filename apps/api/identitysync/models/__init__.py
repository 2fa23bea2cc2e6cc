from __future__ import annotations

from identitysync.models.base import Base as Base  # noqa: F401
from identitysync.models.enums import (  # noqa: F401
    ApiKeyScope,
    DestinationType,
    DropOffStage,
    EventStatus,
    IdentityType,
    SyncJobStatus,
    SyncJobType,
    SyncOutcome,
    SyncReason,
)
from identitysync.models.events import Event  # noqa: F401
from identitysync.models.identity import IdentityLink, PredictiveSignal, UnifiedIdentity  # noqa: F401
from identitysync.models.sync import Destination, SyncJob  # noqa: F401
from identitysync.models.workspace import ApiKey, Workspace  # noqa: F401

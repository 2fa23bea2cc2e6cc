from __future__ import annotations

import enum


class ApiKeyScope(enum.StrEnum):
    identify = "identify"
    track = "track"
    ops = "ops"


class IdentityType(enum.StrEnum):
    anonymous_id = "anonymous_id"
    email = "email"
    customer_id = "customer_id"
    phone = "phone"


class EventStatus(enum.StrEnum):
    pending = "pending"
    processed = "processed"
    failed = "failed"
    synced = "synced"


class DestinationType(enum.StrEnum):
    klaviyo = "klaviyo"


class SyncJobType(enum.StrEnum):
    profile_upsert = "profile_upsert"
    event_track = "event_track"


class SyncJobStatus(enum.StrEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class SyncOutcome(enum.StrEnum):
    synced = "synced"
    blocked = "blocked"
    skipped_no_email = "skipped_no_email"
    skipped_identity_missing = "skipped_identity_missing"
    skipped_unchanged = "skipped_unchanged"


class DropOffStage(enum.StrEnum):
    browsing = "browsing"
    engaged = "engaged"
    cart_abandoned = "cart_abandoned"
    checkout_abandoned = "checkout_abandoned"
    purchased = "purchased"


class SyncReason(enum.StrEnum):
    checkout_abandoned = "checkout_abandoned"
    cart_high_intent = "cart_high_intent"
    cart_abandoned = "cart_abandoned"
    product_high_intent = "product_high_intent"
    first_sync = "first_sync"
    opportunistic = "opportunistic"
    replay = "replay"

    @property
    def forced(self) -> bool:
        return self not in {SyncReason.opportunistic, SyncReason.replay}

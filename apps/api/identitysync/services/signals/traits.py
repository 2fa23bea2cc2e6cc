from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from identitysync.models.enums import DropOffStage, SyncReason


class SyncFlags(BaseModel):
    """Idempotence markers owned by the sync worker.

    The signal computer carries these through untouched.
    """

    model_config = ConfigDict(extra="allow")

    checkout_abandoned_synced: bool = False
    cart_synced: bool = False
    cart_abandoned_synced: bool = False
    product_view_synced: bool = False
    first_sync_completed: bool = False


# Reason -> flag the worker sets once a sync for that reason lands.
FLAG_FOR_REASON: dict[SyncReason, str] = {
    SyncReason.checkout_abandoned: "checkout_abandoned_synced",
    SyncReason.cart_high_intent: "cart_synced",
    SyncReason.cart_abandoned: "cart_abandoned_synced",
    SyncReason.product_high_intent: "product_view_synced",
    SyncReason.first_sync: "first_sync_completed",
}

# Set once, then left alone until a purchase clears the funnel.
STICKY_TIMESTAMPS = (
    "last_product_viewed_at",
    "last_cart_at",
    "checkout_started_at",
    "cart_abandoned_at",
    "checkout_abandoned_at",
    "cart_abandon_detected_at",
    "checkout_abandon_detected_at",
)

MAX_TRACKED_IDS = 200


class ComputedTraits(BaseModel):
    # Unknown keys survive a load/dump cycle so older or newer writers don't lose data.
    model_config = ConfigDict(extra="allow")

    intent_score: int = 0
    drop_off_stage: DropOffStage | None = None
    frequency_score: int = 0
    depth_score: int = 0
    recency_days: int | None = None

    session_count_30d: int = 0
    product_views_7d: int = 0
    atc_7d: int = 0
    unique_products_viewed: int = 0
    unique_categories_viewed: int = 0
    viewed_product_ids: list[str] = Field(default_factory=list)
    viewed_categories: list[str] = Field(default_factory=list)
    category_views_30d: dict[str, int] = Field(default_factory=dict)
    top_category_30d: str | None = None

    email_opens_30d: int = 0
    email_clicks_30d: int = 0
    email_engagement_score: int = 0
    is_subscribed: bool | None = None
    last_engagement_event: str | None = None
    last_engagement_event_at: datetime | None = None

    orders_count: int = 0
    lifetime_value: float = 0.0

    last_product_viewed_at: datetime | None = None
    last_cart_at: datetime | None = None
    checkout_started_at: datetime | None = None
    cart_abandoned_at: datetime | None = None
    checkout_abandoned_at: datetime | None = None
    order_completed_at: datetime | None = None
    # Set by the background detector once no follow-on event arrived in time.
    cart_abandon_detected_at: datetime | None = None
    checkout_abandon_detected_at: datetime | None = None

    last_event_name: str | None = None
    last_event_type: str | None = None
    last_event_at: datetime | None = None
    computed_at: datetime | None = None
    intent_decayed_at: datetime | None = None

    merged_from: list[str] = Field(default_factory=list)
    merged_at: datetime | None = None

    flags: SyncFlags = Field(default_factory=SyncFlags)

    @classmethod
    def load(cls, raw: dict | None) -> ComputedTraits:
        return cls.model_validate(raw or {})

    def dump(self) -> dict:
        return self.model_dump(mode="json")

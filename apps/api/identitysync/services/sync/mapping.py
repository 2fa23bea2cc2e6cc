"""What the destination receives: profile properties and allow-listed events."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from identitysync.services.signals.computer import EventKind, classify_event, normalize_event_name
from identitysync.services.signals.traits import ComputedTraits

PROPERTY_PREFIX = "sf_"

METRIC_FOR_KIND: dict[EventKind, str] = {
    EventKind.cart_add: "SF Added to Cart",
    EventKind.checkout: "SF Started Checkout",
    EventKind.order: "SF Placed Order",
}

# Emitted by the abandonment detector rather than by clients.
DERIVED_EVENT_METRICS: dict[str, str] = {
    "cart abandoned": "SF Cart Abandoned",
    "checkout abandoned": "SF Checkout Abandoned",
}

CART_ABANDONED_EVENT = "Cart Abandoned"
CHECKOUT_ABANDONED_EVENT = "Checkout Abandoned"

_COMPUTED_FIELDS = (
    "intent_score",
    "frequency_score",
    "depth_score",
    "email_engagement_score",
    "recency_days",
    "top_category_30d",
    "drop_off_stage",
    "product_views_7d",
    "atc_7d",
    "unique_products_viewed",
    "unique_categories_viewed",
    "session_count_30d",
    "last_product_viewed_at",
    "last_cart_at",
    "checkout_started_at",
    "cart_abandoned_at",
    "checkout_abandoned_at",
    "order_completed_at",
    "lifetime_value",
    "orders_count",
    "last_event_name",
    "computed_at",
)


def metric_name_for(event_type: str | None, event_name: str | None) -> str | None:
    """Destination metric for an event, or None when it stays profile-only."""
    derived = DERIVED_EVENT_METRICS.get(normalize_event_name(event_name or ""))
    if derived is not None:
        return derived
    return METRIC_FOR_KIND.get(classify_event(event_type, event_name))


def build_profile_properties(*, identity: Mapping[str, Any], computed: ComputedTraits) -> dict[str, Any]:
    """Every fixed key is always present, null or not, so the destination schema stays stable."""
    props: dict[str, Any] = {}
    for key, value in (identity.get("traits") or {}).items():
        props[f"{PROPERTY_PREFIX}{key}"] = _jsonable(value)

    dumped = computed.model_dump(mode="json")
    fixed: dict[str, Any] = {
        "unified_user_id": str(identity["id"]),
        "first_seen_at": _jsonable(identity.get("first_seen_at")),
        "last_seen_at": _jsonable(identity.get("last_seen_at")),
        "customer_ids": list(identity.get("customer_ids") or []),
        "anonymous_id_count": len(identity.get("anonymous_ids") or []),
    }
    for field in _COMPUTED_FIELDS:
        fixed[field] = dumped.get(field)

    props.update({f"{PROPERTY_PREFIX}{k}": v for k, v in fixed.items()})
    return props


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value

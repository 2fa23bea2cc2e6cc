"""Behavioral signal derivation.

Everything in this module is pure: callers load the current computed bag,
pass it through these functions and persist the result. Store access lives in
`identitysync.services.signals.store`.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from identitysync.models.enums import DropOffStage
from identitysync.services.signals.traits import (
    MAX_TRACKED_IDS,
    STICKY_TIMESTAMPS,
    ComputedTraits,
)

INTENT_MIN = 0
INTENT_MAX = 100
DEFAULT_ENGAGED_THRESHOLD = 30
DEFAULT_DECAY_PER_DAY = 0.95


class EventKind(enum.StrEnum):
    page = "page"
    product_view = "product_view"
    cart_add = "cart_add"
    cart_view = "cart_view"
    cart_remove = "cart_remove"
    checkout = "checkout"
    order = "order"
    session = "session"
    email_open = "email_open"
    email_click = "email_click"
    email_received = "email_received"
    subscribe = "subscribe"
    unsubscribe = "unsubscribe"
    sms_click = "sms_click"
    other = "other"


INTENT_WEIGHTS: dict[EventKind, int] = {
    EventKind.page: 1,
    EventKind.product_view: 5,
    EventKind.cart_view: 10,
    EventKind.cart_add: 15,
    EventKind.cart_remove: -5,
    EventKind.checkout: 25,
    EventKind.email_open: 3,
    EventKind.email_click: 5,
    EventKind.subscribe: 2,
    EventKind.sms_click: 4,
}

CART_KINDS = frozenset({EventKind.cart_add, EventKind.cart_view})
EMAIL_KINDS = frozenset(
    {
        EventKind.email_open,
        EventKind.email_click,
        EventKind.email_received,
        EventKind.subscribe,
        EventKind.unsubscribe,
        EventKind.sms_click,
    }
)

_NAME_KINDS: dict[str, EventKind] = {
    "page view": EventKind.page,
    "page viewed": EventKind.page,
    "pageview": EventKind.page,
    "product viewed": EventKind.product_view,
    "product view": EventKind.product_view,
    "viewed product": EventKind.product_view,
    "view item": EventKind.product_view,
    "add to cart": EventKind.cart_add,
    "added to cart": EventKind.cart_add,
    "product added": EventKind.cart_add,
    "cart viewed": EventKind.cart_view,
    "view cart": EventKind.cart_view,
    "remove from cart": EventKind.cart_remove,
    "removed from cart": EventKind.cart_remove,
    "product removed": EventKind.cart_remove,
    "begin checkout": EventKind.checkout,
    "checkout started": EventKind.checkout,
    "started checkout": EventKind.checkout,
    "initiate checkout": EventKind.checkout,
    "purchase": EventKind.order,
    "order completed": EventKind.order,
    "order placed": EventKind.order,
    "placed order": EventKind.order,
    "checkout completed": EventKind.order,
    "session start": EventKind.session,
    "session started": EventKind.session,
    "opened email": EventKind.email_open,
    "clicked email": EventKind.email_click,
    "received email": EventKind.email_received,
    "subscribed to list": EventKind.subscribe,
    "unsubscribed": EventKind.unsubscribe,
    "unsubscribed from list": EventKind.unsubscribe,
    "clicked sms": EventKind.sms_click,
}

_TYPE_KINDS: dict[str, EventKind] = {
    "page": EventKind.page,
    "product": EventKind.product_view,
    "product_view": EventKind.product_view,
    "cart": EventKind.cart_add,
    "cart_add": EventKind.cart_add,
    "checkout": EventKind.checkout,
    "order": EventKind.order,
    "purchase": EventKind.order,
    "session": EventKind.session,
}


def normalize_event_name(name: str) -> str:
    return " ".join(name.replace("_", " ").replace("-", " ").lower().split())


def classify_event(event_type: str | None, event_name: str | None) -> EventKind:
    kind = _NAME_KINDS.get(normalize_event_name(event_name or ""))
    if kind is not None:
        return kind
    return _TYPE_KINDS.get((event_type or "").strip().lower(), EventKind.other)


def event_names_for(kind: EventKind) -> list[str]:
    return sorted(name for name, k in _NAME_KINDS.items() if k == kind)


def event_types_for(kind: EventKind) -> list[str]:
    return sorted(t for t, k in _TYPE_KINDS.items() if k == kind)


def clamp_intent(value: float) -> int:
    return int(max(INTENT_MIN, min(INTENT_MAX, round(value))))


def next_drop_off_stage(
    traits: ComputedTraits,
    kind: EventKind | None,
    *,
    engaged_threshold: int = DEFAULT_ENGAGED_THRESHOLD,
) -> DropOffStage:
    if kind == EventKind.order or traits.orders_count > 0:
        return DropOffStage.purchased
    if kind == EventKind.checkout:
        return DropOffStage.checkout_abandoned
    if kind in CART_KINDS:
        return DropOffStage.cart_abandoned
    if traits.checkout_abandoned_at is not None:
        return DropOffStage.checkout_abandoned
    if traits.cart_abandoned_at is not None:
        return DropOffStage.cart_abandoned
    if traits.intent_score >= engaged_threshold:
        return DropOffStage.engaged
    return DropOffStage.browsing


@dataclass(frozen=True)
class EventInput:
    event_type: str
    event_name: str
    properties: dict[str, Any]
    occurred_at: datetime

    @property
    def kind(self) -> EventKind:
        return classify_event(self.event_type, self.event_name)


def apply_event(
    traits: ComputedTraits,
    event: EventInput,
    *,
    now: datetime,
    engaged_threshold: int = DEFAULT_ENGAGED_THRESHOLD,
) -> ComputedTraits:
    t = traits.model_copy(deep=True)
    kind = event.kind
    props = event.properties or {}

    if kind == EventKind.order:
        t.intent_score = INTENT_MAX
    else:
        t.intent_score = clamp_intent(t.intent_score + INTENT_WEIGHTS.get(kind, 0))

    if kind == EventKind.product_view:
        t.product_views_7d += 1
        t.depth_score = min(100, t.depth_score + 3)
        if t.last_product_viewed_at is None:
            t.last_product_viewed_at = now
        _track_product(t, props)
    elif kind in CART_KINDS:
        if kind == EventKind.cart_add:
            t.atc_7d += 1
        if t.last_cart_at is None:
            t.last_cart_at = now
    elif kind == EventKind.checkout:
        if t.checkout_started_at is None:
            t.checkout_started_at = now
    elif kind == EventKind.order:
        t.orders_count += 1
        t.lifetime_value = round(t.lifetime_value + order_value(props), 2)
        t.order_completed_at = now
        for field in STICKY_TIMESTAMPS:
            setattr(t, field, None)
    elif kind == EventKind.session:
        t.session_count_30d += 1
        t.frequency_score = min(100, t.session_count_30d * 10)
    elif kind in EMAIL_KINDS:
        _apply_engagement(t, kind, event_name=event.event_name, now=now)

    stage = next_drop_off_stage(t, kind, engaged_threshold=engaged_threshold)
    if stage == DropOffStage.checkout_abandoned and t.checkout_abandoned_at is None:
        t.checkout_abandoned_at = now
    if stage == DropOffStage.cart_abandoned and t.cart_abandoned_at is None:
        t.cart_abandoned_at = now
    t.drop_off_stage = stage

    t.last_event_name = event.event_name
    t.last_event_type = event.event_type
    t.last_event_at = event.occurred_at
    t.recency_days = 0
    t.computed_at = now
    return t


def _track_product(t: ComputedTraits, props: dict[str, Any]) -> None:
    product_id = props.get("product_id") or props.get("sku") or props.get("id")
    if product_id is not None:
        pid = str(product_id)
        if pid not in t.viewed_product_ids:
            t.viewed_product_ids = (t.viewed_product_ids + [pid])[-MAX_TRACKED_IDS:]
            t.unique_products_viewed += 1

    category = props.get("category") or props.get("product_type")
    if category:
        cat = str(category)
        if cat not in t.viewed_categories:
            t.viewed_categories = (t.viewed_categories + [cat])[-MAX_TRACKED_IDS:]
            t.unique_categories_viewed += 1
        t.category_views_30d[cat] = t.category_views_30d.get(cat, 0) + 1
        t.top_category_30d = top_category(t.category_views_30d)


def _apply_engagement(t: ComputedTraits, kind: EventKind, *, event_name: str, now: datetime) -> None:
    if kind == EventKind.email_open:
        t.email_opens_30d += 1
    elif kind == EventKind.email_click:
        t.email_clicks_30d += 1
    elif kind == EventKind.subscribe:
        t.is_subscribed = True
    elif kind == EventKind.unsubscribe:
        t.is_subscribed = False
    t.email_engagement_score = min(100, t.email_engagement_score + INTENT_WEIGHTS.get(kind, 0))
    t.last_engagement_event = event_name
    t.last_engagement_event_at = now


def top_category(category_views: dict[str, int]) -> str | None:
    if not category_views:
        return None
    # Ties break alphabetically so replays are deterministic.
    return min(category_views.items(), key=lambda kv: (-kv[1], kv[0]))[0]


def order_value(props: dict[str, Any]) -> float:
    for key in ("total", "value", "revenue", "total_price"):
        raw = props.get(key)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            continue
    return 0.0


def decay_intent(
    traits: ComputedTraits,
    *,
    last_seen_at: datetime,
    now: datetime,
    factor: float = DEFAULT_DECAY_PER_DAY,
) -> ComputedTraits:
    t = traits.model_copy(deep=True)
    t.recency_days = max(0, (now - last_seen_at).days)

    anchor = max(last_seen_at, t.intent_decayed_at or last_seen_at)
    days = math.floor((now - anchor).total_seconds() / 86400)
    if days >= 1 and t.intent_score > 0:
        # Floor so small scores reach zero instead of rounding back up.
        t.intent_score = clamp_intent(math.floor(t.intent_score * (factor**days)))
        t.intent_decayed_at = anchor + timedelta(days=days)
    return t


def recompute_from_history(
    base: ComputedTraits,
    events: Iterable[EventInput],
    *,
    lifetime_orders: int,
    lifetime_value: float,
    last_seen_at: datetime,
    now: datetime,
    engaged_threshold: int = DEFAULT_ENGAGED_THRESHOLD,
    decay_factor: float = DEFAULT_DECAY_PER_DAY,
) -> ComputedTraits:
    """Rebuild the windowed traits from the last 30 days of events.

    Rolling counters restart from zero, so anything that fell out of the window
    drops away. Flags, merge bookkeeping and unknown keys carry over from `base`.
    """
    carried = {k: v for k, v in (base.model_extra or {}).items()}
    t = ComputedTraits(
        flags=base.flags.model_copy(deep=True),
        merged_from=list(base.merged_from),
        merged_at=base.merged_at,
        is_subscribed=base.is_subscribed,
        **carried,
    )

    seen_kind: EventKind | None = None
    week_ago = now - timedelta(days=7)
    product_views_7d = 0
    atc_7d = 0
    for event in sorted(events, key=lambda e: e.occurred_at):
        t = apply_event(t, event, now=event.occurred_at, engaged_threshold=engaged_threshold)
        seen_kind = event.kind
        if event.occurred_at >= week_ago:
            if seen_kind == EventKind.product_view:
                product_views_7d += 1
            elif seen_kind == EventKind.cart_add:
                atc_7d += 1

    t.product_views_7d = product_views_7d
    t.atc_7d = atc_7d
    t.orders_count = max(lifetime_orders, 0)
    t.lifetime_value = round(max(lifetime_value, 0.0), 2)

    # Windowed replay must not forget a stage that was already recorded.
    for field in STICKY_TIMESTAMPS:
        prior = getattr(base, field)
        if prior is None or getattr(t, field) is not None:
            continue
        if t.order_completed_at is not None and t.order_completed_at >= prior:
            continue
        setattr(t, field, prior)
    if t.order_completed_at is None:
        t.order_completed_at = base.order_completed_at

    t = decay_intent(t, last_seen_at=last_seen_at, now=now, factor=decay_factor)
    t.drop_off_stage = next_drop_off_stage(t, None, engaged_threshold=engaged_threshold)
    t.computed_at = now
    return t


_SUMMED = (
    "session_count_30d",
    "product_views_7d",
    "atc_7d",
    "email_opens_30d",
    "email_clicks_30d",
    "orders_count",
)
_MAXED = ("intent_score", "frequency_score", "depth_score", "email_engagement_score")


def merge_traits(
    keep: ComputedTraits,
    lose: ComputedTraits,
    *,
    lose_id: str,
    now: datetime,
    engaged_threshold: int = DEFAULT_ENGAGED_THRESHOLD,
) -> ComputedTraits:
    t = keep.model_copy(deep=True)
    for field in _MAXED:
        setattr(t, field, max(getattr(keep, field), getattr(lose, field)))
    for field in _SUMMED:
        setattr(t, field, getattr(keep, field) + getattr(lose, field))
    t.lifetime_value = round(keep.lifetime_value + lose.lifetime_value, 2)

    t.viewed_product_ids = _union(keep.viewed_product_ids, lose.viewed_product_ids)
    t.viewed_categories = _union(keep.viewed_categories, lose.viewed_categories)
    t.unique_products_viewed = max(
        len(t.viewed_product_ids), keep.unique_products_viewed, lose.unique_products_viewed
    )
    t.unique_categories_viewed = max(
        len(t.viewed_categories), keep.unique_categories_viewed, lose.unique_categories_viewed
    )
    views = dict(keep.category_views_30d)
    for cat, n in lose.category_views_30d.items():
        views[cat] = views.get(cat, 0) + n
    t.category_views_30d = views
    t.top_category_30d = top_category(views)

    for field in (*STICKY_TIMESTAMPS, "last_engagement_event_at"):
        if getattr(t, field) is None:
            setattr(t, field, getattr(lose, field))
    t.order_completed_at = _latest(keep.order_completed_at, lose.order_completed_at)
    t.last_event_at = _latest(keep.last_event_at, lose.last_event_at)
    if t.is_subscribed is None:
        t.is_subscribed = lose.is_subscribed
    if t.recency_days is None or (lose.recency_days is not None and lose.recency_days < t.recency_days):
        t.recency_days = lose.recency_days

    t.merged_from = _union(keep.merged_from, [*lose.merged_from, lose_id])
    t.merged_at = now
    t.drop_off_stage = next_drop_off_stage(t, None, engaged_threshold=engaged_threshold)
    t.computed_at = now
    return t


def _union(a: list[str], b: list[str]) -> list[str]:
    out = list(a)
    for item in b:
        if item not in out:
            out.append(item)
    return out[-MAX_TRACKED_IDS:]


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass(frozen=True)
class DerivedSignal:
    signal_type: str
    confidence: float
    payload: dict[str, Any]


def derive_signals(traits: ComputedTraits) -> list[DerivedSignal]:
    out: list[DerivedSignal] = []
    if traits.intent_score >= 50:
        out.append(
            DerivedSignal("high_intent", round(traits.intent_score / 100, 2), {"intent_score": traits.intent_score})
        )
    if traits.drop_off_stage == DropOffStage.checkout_abandoned:
        out.append(
            DerivedSignal(
                "checkout_abandoned",
                0.85,
                {"checkout_abandoned_at": _iso(traits.checkout_abandoned_at)},
            )
        )
    elif traits.drop_off_stage == DropOffStage.cart_abandoned:
        out.append(
            DerivedSignal("cart_abandoned", 0.7, {"cart_abandoned_at": _iso(traits.cart_abandoned_at)})
        )
    if traits.orders_count >= 2:
        out.append(
            DerivedSignal(
                "repeat_buyer",
                min(1.0, 0.5 + 0.1 * traits.orders_count),
                {"orders_count": traits.orders_count, "lifetime_value": traits.lifetime_value},
            )
        )
    return out


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from identitysync.models.enums import DropOffStage
from identitysync.services.signals.computer import (
    EventInput,
    EventKind,
    apply_event,
    classify_event,
    decay_intent,
    derive_signals,
    merge_traits,
    recompute_from_history,
)
from identitysync.services.signals.traits import ComputedTraits

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _event(name: str, *, event_type: str = "track", at: datetime = NOW, **props) -> EventInput:  # noqa: ANN003
    return EventInput(event_type=event_type, event_name=name, properties=props, occurred_at=at)


def test_classify_event_by_name_then_type() -> None:
    assert classify_event("track", "Add to Cart") == EventKind.cart_add
    assert classify_event("track", "checkout_started") == EventKind.checkout
    assert classify_event("track", "Order Completed") == EventKind.order
    assert classify_event("page", "Homepage") == EventKind.page
    assert classify_event("track", "Something Custom") == EventKind.other


def test_product_view_accumulates_intent_and_catalog_counters() -> None:
    traits = ComputedTraits()
    traits = apply_event(traits, _event("Product Viewed", product_id="p1", category="shoes"), now=NOW)
    traits = apply_event(traits, _event("Product Viewed", product_id="p1", category="shoes"), now=NOW)
    traits = apply_event(traits, _event("Product Viewed", product_id="p2", category="hats"), now=NOW)

    assert traits.intent_score == 15
    assert traits.product_views_7d == 3
    assert traits.unique_products_viewed == 2
    assert traits.unique_categories_viewed == 2
    assert traits.top_category_30d == "shoes"
    assert traits.last_product_viewed_at == NOW
    assert traits.drop_off_stage == DropOffStage.browsing


def test_checkout_marks_stage_and_abandonment_timestamp() -> None:
    traits = apply_event(ComputedTraits(), _event("Begin Checkout", checkout_id="c1"), now=NOW)
    assert traits.drop_off_stage == DropOffStage.checkout_abandoned
    assert traits.checkout_started_at == NOW
    assert traits.checkout_abandoned_at == NOW

    later = NOW + timedelta(minutes=5)
    traits = apply_event(traits, _event("Begin Checkout", checkout_id="c1", at=later), now=later)
    assert traits.checkout_abandoned_at == NOW


def test_order_sets_max_intent_and_clears_funnel() -> None:
    traits = apply_event(ComputedTraits(), _event("Add to Cart"), now=NOW)
    traits = apply_event(traits, _event("Begin Checkout"), now=NOW)
    traits = apply_event(traits, _event("Purchase", total="59.90"), now=NOW)

    assert traits.intent_score == 100
    assert traits.orders_count == 1
    assert traits.lifetime_value == 59.9
    assert traits.drop_off_stage == DropOffStage.purchased
    assert traits.checkout_abandoned_at is None
    assert traits.cart_abandoned_at is None
    assert traits.order_completed_at == NOW


def test_cart_remove_never_drops_below_zero() -> None:
    traits = apply_event(ComputedTraits(), _event("Remove from Cart"), now=NOW)
    assert traits.intent_score == 0


def test_intent_stays_bounded_for_large_histories() -> None:
    events = [_event("Begin Checkout", at=NOW - timedelta(minutes=i)) for i in range(200)]
    traits = recompute_from_history(
        ComputedTraits(),
        events,
        lifetime_orders=0,
        lifetime_value=0.0,
        last_seen_at=NOW,
        now=NOW,
    )
    assert 0 <= traits.intent_score <= 100
    assert traits.intent_score == 100


def test_recompute_keeps_flags_and_unknown_keys() -> None:
    base = ComputedTraits.load(
        {
            "flags": {"first_sync_completed": True, "cart_synced": True},
            "custom_marker": "keep-me",
            "checkout_abandoned_at": (NOW - timedelta(days=40)).isoformat(),
        }
    )
    traits = recompute_from_history(
        base,
        [_event("Page View", at=NOW - timedelta(hours=1))],
        lifetime_orders=0,
        lifetime_value=0.0,
        last_seen_at=NOW - timedelta(hours=1),
        now=NOW,
    )
    assert traits.flags.first_sync_completed is True
    assert traits.flags.cart_synced is True
    assert traits.model_extra["custom_marker"] == "keep-me"
    assert traits.checkout_abandoned_at == NOW - timedelta(days=40)
    assert traits.drop_off_stage == DropOffStage.checkout_abandoned


def test_decay_applies_per_full_inactive_day() -> None:
    traits = ComputedTraits(intent_score=80)
    decayed = decay_intent(traits, last_seen_at=NOW - timedelta(days=3, hours=5), now=NOW, factor=0.95)
    assert decayed.intent_score == 68
    assert decayed.recency_days == 3

    again = decay_intent(decayed, last_seen_at=NOW - timedelta(days=3, hours=5), now=NOW, factor=0.95)
    assert again.intent_score == 68


def test_decay_reaches_zero_for_small_scores() -> None:
    traits = ComputedTraits(intent_score=1)
    decayed = decay_intent(traits, last_seen_at=NOW - timedelta(days=1), now=NOW, factor=0.95)
    assert decayed.intent_score == 0


def test_merge_traits_combines_both_sides() -> None:
    keep = ComputedTraits(
        intent_score=20,
        session_count_30d=2,
        viewed_product_ids=["p1"],
        flags={"first_sync_completed": True},
    )
    lose = ComputedTraits(
        intent_score=45,
        session_count_30d=3,
        viewed_product_ids=["p1", "p2"],
        cart_abandoned_at=NOW - timedelta(hours=2),
        flags={"cart_synced": True},
    )
    merged = merge_traits(keep, lose, lose_id="lose-id", now=NOW)

    assert merged.intent_score == 45
    assert merged.session_count_30d == 5
    assert merged.viewed_product_ids == ["p1", "p2"]
    assert merged.cart_abandoned_at == NOW - timedelta(hours=2)
    assert merged.drop_off_stage == DropOffStage.cart_abandoned
    assert merged.flags.first_sync_completed is True
    assert merged.flags.cart_synced is False
    assert merged.merged_from == ["lose-id"]
    assert merged.merged_at == NOW


def test_derive_signals() -> None:
    traits = ComputedTraits(
        intent_score=70,
        drop_off_stage=DropOffStage.checkout_abandoned,
        checkout_abandoned_at=NOW,
        orders_count=0,
    )
    assert {s.signal_type for s in derive_signals(traits)} == {"high_intent", "checkout_abandoned"}

    buyer = ComputedTraits(orders_count=3, lifetime_value=120.0, drop_off_stage=DropOffStage.purchased)
    assert [s.signal_type for s in derive_signals(buyer)] == ["repeat_buyer"]

from datetime import timedelta

import pytest
from pymongo.errors import PyMongoError

import listings
import orders
import promotions
from conftest import NOW, make_shipping_info
from errors import InsufficientStock, InvalidTransition, NotFound
from schemas import (
    CartLine,
    CheckoutRequest,
    ListingCreate,
    ListingTerms,
    Order,
    OrderStatus,
    PromotionCreate,
)

S = OrderStatus


def _order(status=S.pending) -> Order:
    return Order(
        id="o1",
        buyer_id="b1",
        items=[],
        shipping_info=make_shipping_info(),
        subtotal=0,
        shipping=0,
        tax=0,
        total=0,
        status=status,
        status_updated_at=NOW,
    )


@pytest.mark.parametrize("current, target", [
    (S.pending, S.processing),
    (S.processing, S.shipped),
    (S.shipped, S.delivered),
    (S.pending, S.cancelled),
    (S.pending, S.failed),
    (S.processing, S.cancelled),
    (S.processing, S.failed),
])
def test_allowed_transitions(current, target):
    later = NOW + timedelta(hours=1)
    moved = orders.advance(_order(current), target, later)
    assert moved.status == target.value
    assert moved.status_updated_at == later


@pytest.mark.parametrize("current, target", [
    (S.pending, S.shipped),
    (S.pending, S.delivered),
    (S.processing, S.pending),
    (S.shipped, S.processing),
    (S.shipped, S.cancelled),
    (S.delivered, S.failed),
    (S.cancelled, S.processing),
    (S.failed, S.pending),
    (S.pending, S.pending),
])
def test_rejected_transitions(current, target):
    order = _order(current)
    with pytest.raises(InvalidTransition):
        orders.advance(order, target, NOW)
    assert order.status == current.value


def test_terminal_states():
    assert orders.TERMINAL == {S.delivered, S.failed, S.cancelled}


def test_timeline_marks_reached_steps():
    tracking = orders.build_timeline(_order(S.shipped))
    assert [step.status for step in tracking.steps] == list(orders.LIFECYCLE)
    assert [step.reached for step in tracking.steps] == [True, True, True, False]
    assert [step.current for step in tracking.steps] == [False, False, True, False]
    assert tracking.steps[2].timestamp == NOW
    assert tracking.steps[0].timestamp is None
    assert tracking.error is None


def test_timeline_for_cancelled_order():
    tracking = orders.build_timeline(_order(S.cancelled))
    assert tracking.steps == []
    assert tracking.error


# Checkout


@pytest.fixture
def stocked(db):
    listings.create_listing(db, ListingCreate(product_id="p1", seller_id="s1", price=100, stock=5, origin_city="Tunis"))
    listings.create_listing(db, ListingCreate(product_id="p2", seller_id="s2", price=20, stock=1, origin_city="Sfax"))
    return db


def _checkout(db, *lines, delivery_method="standard", governorate="Ariana"):
    request = CheckoutRequest(
        buyer_id="b1",
        items=[CartLine(product_id=p, seller_id=s, quantity=q) for p, s, q in lines],
        shipping_info=make_shipping_info(governorate),
        delivery_method=delivery_method,
    )
    return orders.create_order(db, request, NOW)


def test_checkout_freezes_prices_and_totals(stocked):
    order = _checkout(stocked, ("p1", "s1", 2), ("p2", "s2", 1))

    assert order.id
    assert [i.unit_price for i in order.items] == [100.0, 20.0]
    assert order.subtotal == 220.00
    assert order.shipping == 0.00
    assert order.tax == 41.80
    assert order.total == 261.80
    assert round(order.subtotal + order.shipping + order.tax, 2) == order.total
    assert order.status == "pending"
    assert order.status_updated_at == NOW
    assert listings.get_listing(stocked, "p1", "s1").stock == 3
    assert listings.get_listing(stocked, "p2", "s2").stock == 0


def test_small_order_pays_standard_shipping(stocked):
    order = _checkout(stocked, ("p2", "s2", 1))
    assert order.shipping == 5.99
    assert order.tax == 3.80
    assert order.total == 29.79


def test_delivery_estimate_per_seller(stocked):
    order = _checkout(stocked, ("p1", "s1", 1), ("p2", "s2", 1))
    estimates = {d.seller_id: d for d in order.deliveries}
    assert estimates["s1"].shipping_days == 2
    assert estimates["s2"].shipping_days == 3
    assert estimates["s1"].estimated_delivery_date == NOW + timedelta(days=3)


def test_order_keeps_price_after_listing_changes(stocked):
    """Later price or promotion changes never touch a placed order"""
    promotion = promotions.create_promotion(stocked, PromotionCreate(
        name="Week deal", discount_rate=25, start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(days=1), applicable_product_ids=["p1"],
    ))
    listings.activate_promotion(stocked, "p1", "s1", promotion.id, NOW)
    order = _checkout(stocked, ("p1", "s1", 1))
    assert order.items[0].unit_price == listings.get_effective_price(stocked, "p1", "s1", NOW).final_price == 75.00
    assert order.items[0].listing.promotion_id == promotion.id

    listings.update_terms(stocked, "p1", "s1", ListingTerms(price=150), NOW)
    listings.deactivate_promotion(stocked, "p1", "s1", NOW)

    stored = orders.get_order(stocked, order.id)
    assert stored.items[0].unit_price == 75.00
    assert stored.items[0].listing.base_price == 100.00


def test_failed_checkout_releases_reserved_stock(stocked):
    with pytest.raises(InsufficientStock):
        _checkout(stocked, ("p1", "s1", 2), ("p2", "s2", 2))
    assert listings.get_listing(stocked, "p1", "s1").stock == 5
    assert listings.get_listing(stocked, "p2", "s2").stock == 1
    assert orders.list_orders(stocked) == []


def test_listing_removed_mid_checkout_releases_stock(stocked, monkeypatch):
    """A listing deleted after pricing gives back what was already reserved"""
    adjust_stock = listings.adjust_stock

    def remove_then_adjust(db, product_id, seller_id, delta, now):
        if product_id == "p2" and delta < 0:
            listings.remove_listing(db, product_id, seller_id)
        return adjust_stock(db, product_id, seller_id, delta, now)

    monkeypatch.setattr(listings, "adjust_stock", remove_then_adjust)
    with pytest.raises(NotFound):
        _checkout(stocked, ("p1", "s1", 2), ("p2", "s2", 1))
    assert listings.get_listing(stocked, "p1", "s1").stock == 5
    assert orders.list_orders(stocked) == []


def test_failed_order_insert_releases_stock(stocked, monkeypatch):
    def refuse_insert(*args, **kwargs):
        raise PyMongoError("write refused")

    monkeypatch.setattr(orders, "create_document", refuse_insert)
    with pytest.raises(PyMongoError):
        _checkout(stocked, ("p1", "s1", 2), ("p2", "s2", 1))
    assert listings.get_listing(stocked, "p1", "s1").stock == 5
    assert listings.get_listing(stocked, "p2", "s2").stock == 1



def test_checkout_unknown_listing(stocked):
    with pytest.raises(NotFound):
        _checkout(stocked, ("p9", "s1", 1))


def test_advance_stored_order(stocked):
    order = _checkout(stocked, ("p1", "s1", 1))
    later = NOW + timedelta(hours=3)
    moved = orders.advance_order_status(stocked, order.id, "processing", later)
    assert moved.status == "processing"
    assert moved.status_updated_at == later

    with pytest.raises(InvalidTransition):
        orders.advance_order_status(stocked, order.id, "delivered", later)
    assert orders.get_order(stocked, order.id).status == "processing"


def test_list_orders_by_status(stocked):
    first = _checkout(stocked, ("p1", "s1", 1))
    _checkout(stocked, ("p1", "s1", 1))
    orders.advance_order_status(stocked, first.id, "cancelled", NOW)
    assert [o.id for o in orders.list_orders(stocked, status="cancelled")] == [first.id]
    assert len(orders.list_orders(stocked, buyer_id="b1")) == 2


def test_unknown_order(db):
    with pytest.raises(NotFound):
        orders.get_tracking(db, "64b7f0c2a1b2c3d4e5f60718")

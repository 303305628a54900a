"""
Checkout and the order status lifecycle.

Orders move forward along pending -> processing -> shipped -> delivered.
While still pending or processing they may instead end as failed or
cancelled. Prices, shipping and totals are frozen when the order is created.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

import listings
from config import HANDLING_DAYS, TAX_RATE
from database import ORDERS, create_document, parse_object_id, serialize
from errors import InvalidTransition, MarketplaceError, NotFound
from pricing import round2, to_decimal
from schemas import (
    CheckoutRequest,
    DeliveryEstimate,
    ListingSnapshot,
    Order,
    OrderItem,
    OrderStatus,
    OrderTracking,
    TimelineStep,
)
from shipping import estimate_days, shipping_fee

logger = logging.getLogger(__name__)

LIFECYCLE: Tuple[OrderStatus, ...] = (
    OrderStatus.pending,
    OrderStatus.processing,
    OrderStatus.shipped,
    OrderStatus.delivered,
)

TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = MappingProxyType({
    OrderStatus.pending: frozenset({OrderStatus.processing, OrderStatus.failed, OrderStatus.cancelled}),
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.failed, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.failed: frozenset(),
    OrderStatus.cancelled: frozenset(),
})

TERMINAL: FrozenSet[OrderStatus] = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

STEP_TEXT: Mapping[OrderStatus, Tuple[str, str]] = MappingProxyType({
    OrderStatus.pending: ("Order placed", "We received your order and are waiting for the seller to confirm it."),
    OrderStatus.processing: ("Processing", "The seller is preparing your items for shipment."),
    OrderStatus.shipped: ("Shipped", "Your package is on its way."),
    OrderStatus.delivered: ("Delivered", "Your package has been delivered."),
})

ERROR_TEXT: Mapping[OrderStatus, str] = MappingProxyType({
    OrderStatus.failed: "This order could not be completed.",
    OrderStatus.cancelled: "This order was cancelled.",
})


def can_transition(current: str, target: str) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def advance(order: Order, target: str, now: datetime) -> Order:
    if not can_transition(order.status, target):
        raise InvalidTransition(
            f"Cannot move order {order.id} from {order.status} to {OrderStatus(target).value}",
            field="status",
        )
    return order.model_copy(update={"status": OrderStatus(target).value, "status_updated_at": now})


def build_timeline(order: Order) -> OrderTracking:
    status = OrderStatus(order.status)
    tracking = OrderTracking(
        order_id=order.id,
        status=status,
        status_updated_at=order.status_updated_at,
        payment_status=order.payment_status,
        deliveries=order.deliveries,
    )
    if status not in LIFECYCLE:
        tracking.error = ERROR_TEXT[status]
        return tracking

    position = LIFECYCLE.index(status)
    for index, step in enumerate(LIFECYCLE):
        title, description = STEP_TEXT[step]
        tracking.steps.append(TimelineStep(
            status=step,
            title=title,
            description=description,
            reached=index <= position,
            current=index == position,
            timestamp=order.status_updated_at if index == position else None,
        ))
    return tracking


def compute_totals(items: List[OrderItem], delivery_method: str) -> Dict[str, float]:
    subtotal = round2(sum((to_decimal(i.line_total) for i in items), Decimal(0)))
    shipping = round2(shipping_fee(subtotal, delivery_method))
    tax = round2(subtotal * TAX_RATE)
    return {
        "subtotal": float(subtotal),
        "shipping": float(shipping),
        "tax": float(tax),
        "total": float(subtotal + shipping + tax),
    }


def estimate_deliveries(items: List[OrderItem], to_city: str, placed_at: datetime) -> List[DeliveryEstimate]:
    estimates: Dict[str, DeliveryEstimate] = {}
    for item in items:
        seller_id = item.listing.seller_id
        if seller_id in estimates:
            continue
        days = estimate_days(item.listing.origin_city, to_city)
        estimates[seller_id] = DeliveryEstimate(
            seller_id=seller_id,
            from_city=item.listing.origin_city,
            to_city=to_city,
            shipping_days=days,
            estimated_delivery_date=placed_at + timedelta(days=days + HANDLING_DAYS),
        )
    return list(estimates.values())


def _snapshot_items(db: Database, request: CheckoutRequest, now: datetime) -> List[OrderItem]:
    items = []
    for line in request.items:
        listing = listings.get_listing(db, line.product_id, line.seller_id)
        pricing = listings.price_listing(db, listing, now)
        snapshot = ListingSnapshot(
            product_id=listing.product_id,
            seller_id=listing.seller_id,
            base_price=pricing.base_price,
            discount_rate=pricing.discount_rate,
            promotion_id=pricing.promotion_id,
            warranty=listing.warranty,
            origin_city=listing.origin_city,
        )
        items.append(OrderItem(
            listing=snapshot,
            quantity=line.quantity,
            unit_price=pricing.final_price,
            line_total=float(round2(to_decimal(pricing.final_price) * line.quantity)),
        ))
    return items


def _release_stock(db: Database, items: List[OrderItem], now: datetime) -> None:
    for item in reversed(items):
        logger.warning("Releasing %d of %s/%s after failed checkout",
                       item.quantity, item.listing.product_id, item.listing.seller_id)
        try:
            listings.adjust_stock(db, item.listing.product_id, item.listing.seller_id, item.quantity, now)
        except NotFound:
            logger.warning("Listing %s/%s is gone, nothing to release",
                           item.listing.product_id, item.listing.seller_id)


def _reserve_stock(db: Database, items: List[OrderItem], now: datetime) -> None:
    reserved: List[OrderItem] = []
    try:
        for item in items:
            listings.adjust_stock(db, item.listing.product_id, item.listing.seller_id, -item.quantity, now)
            reserved.append(item)
    except MarketplaceError:
        _release_stock(db, reserved, now)
        raise


def create_order(db: Database, request: CheckoutRequest, now: datetime) -> Order:
    items = _snapshot_items(db, request, now)
    _reserve_stock(db, items, now)

    try:
        order = Order(
            buyer_id=request.buyer_id,
            items=items,
            shipping_info=request.shipping_info,
            deliveries=estimate_deliveries(items, request.shipping_info.address.governorate, now),
            status=OrderStatus.pending,
            status_updated_at=now,
            payment_method=request.payment_method,
            delivery_method=request.delivery_method,
            created_at=now,
            updated_at=now,
            **compute_totals(items, request.delivery_method),
        )
        order_id = create_document(db, ORDERS, order)
    except Exception:
        _release_stock(db, items, now)
        raise
    logger.info("Order %s placed by %s: %d items, total %.2f",
                order_id, order.buyer_id, len(items), order.total)
    return order.model_copy(update={"id": order_id})


def get_order(db: Database, order_id: str) -> Order:
    doc = db[ORDERS].find_one({"_id": parse_object_id(order_id, "Order")})
    if not doc:
        raise NotFound(f"Order {order_id} not found", field="order_id")
    return Order(**serialize(doc))


def list_orders(db: Database, status: Optional[str] = None, buyer_id: Optional[str] = None) -> List[Order]:
    query = {}
    if status:
        query["status"] = OrderStatus(status).value
    if buyer_id:
        query["buyer_id"] = buyer_id
    return [Order(**serialize(doc)) for doc in db[ORDERS].find(query).sort("created_at", -1)]


def get_tracking(db: Database, order_id: str) -> OrderTracking:
    return build_timeline(get_order(db, order_id))


def advance_order_status(db: Database, order_id: str, target: str, now: datetime) -> Order:
    order = get_order(db, order_id)
    try:
        updated = advance(order, target, now)
    except InvalidTransition:
        logger.warning("Rejected status change of order %s: %s -> %s", order_id, order.status, target)
        raise

    # the write only lands if nobody moved the order since we read it
    doc = db[ORDERS].find_one_and_update(
        {"_id": parse_object_id(order_id, "Order"), "status": order.status},
        {"$set": {"status": updated.status, "status_updated_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = get_order(db, order_id)
        raise InvalidTransition(
            f"Order {order_id} moved to {current.status} while updating to {updated.status}",
            field="status",
        )
    logger.info("Order %s moved %s -> %s", order_id, order.status, updated.status)
    return Order(**serialize(doc))

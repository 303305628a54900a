"""
Promotion lifecycle.

A listing points at no more than one active promotion by id. Whether that
promotion still applies is decided on every read from its dates and its
administrative switch, so expired promotions need no cleanup job.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import LISTINGS, PROMOTIONS, create_document, parse_object_id, serialize
from errors import InvalidPromotionState, NotFound
from schemas import Listing, Promotion, PromotionCreate, PromotionParticipation

logger = logging.getLogger(__name__)


def in_window(promotion: Promotion, now: datetime) -> bool:
    return promotion.start_date <= now <= promotion.end_date


def in_scope(promotion: Promotion, listing: Listing) -> bool:
    return (
        listing.product_id in promotion.applicable_product_ids
        or listing.key in promotion.applicable_listing_ids
    )


def resolve_active_promotion(
    listing: Listing, promotion: Optional[Promotion], now: datetime
) -> Optional[Promotion]:
    """Return the listing's active promotion if it applies at ``now``."""
    if promotion is None or listing.active_promotion_id is None:
        return None
    if promotion.id != listing.active_promotion_id:
        return None
    if not promotion.is_active or not in_window(promotion, now):
        return None
    if not in_scope(promotion, listing):
        return None
    return promotion


def activate(listing: Listing, promotion: Promotion, now: datetime) -> Listing:
    if not promotion.is_active:
        raise InvalidPromotionState(
            f"Promotion {promotion.id} is switched off", field="promotion_id"
        )
    if not in_window(promotion, now):
        raise InvalidPromotionState(
            f"Promotion {promotion.id} is not running at {now.isoformat()}",
            field="promotion_id",
        )
    if not in_scope(promotion, listing):
        raise InvalidPromotionState(
            f"Promotion {promotion.id} does not apply to listing {listing.key}",
            field="promotion_id",
        )

    participations = [
        PromotionParticipation(promotion_id=p.promotion_id, is_active=p.promotion_id == promotion.id)
        for p in listing.promotions
    ]
    if not any(p.promotion_id == promotion.id for p in participations):
        participations.append(PromotionParticipation(promotion_id=promotion.id, is_active=True))
    return listing.model_copy(
        update={"active_promotion_id": promotion.id, "promotions": participations}
    )


def deactivate(listing: Listing) -> Listing:
    participations = [
        PromotionParticipation(promotion_id=p.promotion_id, is_active=False)
        for p in listing.promotions
    ]
    return listing.model_copy(update={"active_promotion_id": None, "promotions": participations})


def validate_window(start_date: datetime, end_date: datetime) -> None:
    if start_date >= end_date:
        raise InvalidPromotionState("End date must be after start date", field="end_date")


# Storage


def _scope_filter(product_ids: Iterable[str], listing_ids: Iterable[str]) -> Optional[dict]:
    clauses = []
    product_ids = list(product_ids)
    if product_ids:
        clauses.append({"product_id": {"$in": product_ids}})
    for key in listing_ids:
        product_id, _, seller_id = key.partition(":")
        clauses.append({"product_id": product_id, "seller_id": seller_id})
    if not clauses:
        return None
    return {"$or": clauses}


def _attach_participation(db: Database, promotion_id: str, query: Optional[dict]) -> int:
    if query is None:
        return 0
    result = db[LISTINGS].update_many(
        {**query, "promotions.promotion_id": {"$ne": promotion_id}},
        {"$push": {"promotions": {"promotion_id": promotion_id, "is_active": False}}},
    )
    return result.modified_count


def create_promotion(db: Database, payload: PromotionCreate) -> Promotion:
    validate_window(payload.start_date, payload.end_date)
    promotion = Promotion(**payload.model_dump())
    promotion_id = create_document(db, PROMOTIONS, promotion)
    attached = _attach_participation(
        db,
        promotion_id,
        _scope_filter(promotion.applicable_product_ids, promotion.applicable_listing_ids),
    )
    logger.info("Created promotion %s (%s%%), offered to %d listings",
                promotion_id, promotion.discount_rate, attached)
    return get_promotion(db, promotion_id)


def get_promotion(db: Database, promotion_id: str) -> Promotion:
    doc = db[PROMOTIONS].find_one({"_id": parse_object_id(promotion_id, "Promotion")})
    if not doc:
        raise NotFound(f"Promotion {promotion_id} not found", field="promotion_id")
    return Promotion(**serialize(doc))


def find_promotion(db: Database, promotion_id: Optional[str]) -> Optional[Promotion]:
    """Like get_promotion, but a dangling reference yields None."""
    if promotion_id is None:
        return None
    try:
        return get_promotion(db, promotion_id)
    except NotFound:
        return None


def list_promotions(db: Database, now: datetime, active_only: bool = False) -> List[Promotion]:
    promotions = [
        Promotion(**serialize(doc)) for doc in db[PROMOTIONS].find({}).sort("start_date", 1)
    ]
    if active_only:
        promotions = [p for p in promotions if p.is_active and in_window(p, now)]
    return promotions


def set_promotion_enabled(db: Database, promotion_id: str, enabled: bool, now: datetime) -> Promotion:
    doc = db[PROMOTIONS].find_one_and_update(
        {"_id": parse_object_id(promotion_id, "Promotion")},
        {"$set": {"is_active": enabled, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound(f"Promotion {promotion_id} not found", field="promotion_id")
    logger.info("Promotion %s switched %s", promotion_id, "on" if enabled else "off")
    return Promotion(**serialize(doc))


def add_products(db: Database, promotion_id: str, product_ids: List[str], now: datetime) -> Promotion:
    if not product_ids:
        raise InvalidPromotionState("Product IDs array is required", field="product_ids")
    doc = db[PROMOTIONS].find_one_and_update(
        {"_id": parse_object_id(promotion_id, "Promotion")},
        {
            "$addToSet": {"applicable_product_ids": {"$each": product_ids}},
            "$set": {"updated_at": now},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound(f"Promotion {promotion_id} not found", field="promotion_id")
    _attach_participation(db, promotion_id, _scope_filter(product_ids, ()))
    return Promotion(**serialize(doc))


def remove_products(db: Database, promotion_id: str, product_ids: List[str], now: datetime) -> Promotion:
    doc = db[PROMOTIONS].find_one_and_update(
        {"_id": parse_object_id(promotion_id, "Promotion")},
        {
            "$pull": {"applicable_product_ids": {"$in": product_ids}},
            "$set": {"updated_at": now},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound(f"Promotion {promotion_id} not found", field="promotion_id")
    scope = {"product_id": {"$in": product_ids}}
    db[LISTINGS].update_many(
        {**scope, "active_promotion_id": promotion_id},
        {"$set": {"active_promotion_id": None, "updated_at": now}},
    )
    db[LISTINGS].update_many(scope, {"$pull": {"promotions": {"promotion_id": promotion_id}}})
    logger.info("Removed %d products from promotion %s", len(product_ids), promotion_id)
    return Promotion(**serialize(doc))

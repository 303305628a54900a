"""
Seller listings stored in the ``listing`` collection, keyed by product and seller.
"""
import logging
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import promotions
from database import LISTINGS, PROMOTIONS, create_document
from errors import InsufficientStock, InvalidListingUpdate, InvalidPrice, InvalidPromotionState, NotFound
from pricing import apply_terms, dedupe_tags, effective_price, validate_price
from schemas import (
    EffectivePrice,
    Listing,
    ListingCreate,
    ListingTerms,
    ListingView,
    PromotionParticipation,
    listing_key,
)

logger = logging.getLogger(__name__)


def _key(product_id: str, seller_id: str) -> dict:
    return {"product_id": product_id, "seller_id": seller_id}


def create_listing(db: Database, payload: ListingCreate) -> Listing:
    if payload.price < 0:
        raise InvalidPrice("Price cannot be negative", field="price")
    price = validate_price(payload.price)
    if payload.stock < 0:
        raise InvalidListingUpdate("Stock cannot be negative", field="stock")

    if db[LISTINGS].find_one(_key(payload.product_id, payload.seller_id)):
        raise InvalidListingUpdate(
            f"Seller {payload.seller_id} already lists product {payload.product_id}",
            field="seller_id",
        )

    # pick up promotions that already cover this product
    offered = db[PROMOTIONS].find(
        {"$or": [{"applicable_product_ids": payload.product_id},
                 {"applicable_listing_ids": listing_key(payload.product_id, payload.seller_id)}]},
        {"_id": 1},
    )
    listing = Listing(
        product_id=payload.product_id,
        seller_id=payload.seller_id,
        price=float(price),
        stock=payload.stock,
        warranty=payload.warranty,
        tags=dedupe_tags(payload.tags),
        origin_city=payload.origin_city,
        promotions=[PromotionParticipation(promotion_id=str(doc["_id"])) for doc in offered],
    )
    try:
        create_document(db, LISTINGS, listing)
    except DuplicateKeyError:
        raise InvalidListingUpdate(
            f"Seller {payload.seller_id} already lists product {payload.product_id}",
            field="seller_id",
        )
    logger.info("Seller %s listed product %s at %s (stock %d)",
                listing.seller_id, listing.product_id, listing.price, listing.stock)
    return get_listing(db, listing.product_id, listing.seller_id)


def get_listing(db: Database, product_id: str, seller_id: str) -> Listing:
    doc = db[LISTINGS].find_one(_key(product_id, seller_id))
    if not doc:
        raise NotFound(f"Seller {seller_id} does not list product {product_id}", field="seller_id")
    return Listing(**doc)


def product_listings(db: Database, product_id: str, now: datetime) -> List[ListingView]:
    listings = [Listing(**doc) for doc in db[LISTINGS].find({"product_id": product_id})]
    return [ListingView(listing=l, pricing=price_listing(db, l, now)) for l in listings]


def seller_listings(db: Database, seller_id: str) -> List[Listing]:
    return [Listing(**doc) for doc in db[LISTINGS].find({"seller_id": seller_id})]


def remove_listing(db: Database, product_id: str, seller_id: str) -> None:
    result = db[LISTINGS].delete_one(_key(product_id, seller_id))
    if result.deleted_count == 0:
        raise NotFound(f"Seller {seller_id} does not list product {product_id}", field="seller_id")
    logger.info("Seller %s removed listing for product %s", seller_id, product_id)


def price_listing(db: Database, listing: Listing, now: datetime) -> EffectivePrice:
    promotion = promotions.find_promotion(db, listing.active_promotion_id)
    return effective_price(listing, now, promotion)


def get_effective_price(db: Database, product_id: str, seller_id: str, now: datetime) -> EffectivePrice:
    return price_listing(db, get_listing(db, product_id, seller_id), now)


def adjust_stock(db: Database, product_id: str, seller_id: str, delta: int, now: datetime) -> Listing:
    """Apply ``delta`` to the stored stock, refusing to go below zero.

    The stock check and the write are a single conditional update, so
    concurrent purchases of the last unit cannot both succeed.
    """
    query = _key(product_id, seller_id)
    if delta < 0:
        query["stock"] = {"$gte": -delta}
    doc = db[LISTINGS].find_one_and_update(
        query,
        {"$inc": {"stock": delta}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = get_listing(db, product_id, seller_id)
        logger.warning("Stock of %s/%s is %d, cannot apply %+d",
                       product_id, seller_id, current.stock, delta)
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}: have {current.stock}, need {-delta}",
            field="stock",
        )
    logger.info("Stock of %s/%s adjusted by %+d to %d", product_id, seller_id, delta, doc["stock"])
    return Listing(**doc)


def update_terms(db: Database, product_id: str, seller_id: str, terms: ListingTerms, now: datetime) -> Listing:
    updated = apply_terms(get_listing(db, product_id, seller_id), terms)

    # stock is an absolute count here, so it is set rather than adjusted
    fields = {
        name: getattr(updated, name)
        for name in ("price", "stock", "warranty", "tags", "origin_city")
        if getattr(terms, name) is not None
    }
    fields["updated_at"] = now
    doc = db[LISTINGS].find_one_and_update(
        _key(product_id, seller_id),
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise NotFound(f"Seller {seller_id} does not list product {product_id}", field="seller_id")
    logger.info("Updated terms of %s/%s: %s", product_id, seller_id,
                ", ".join(sorted(terms.model_dump(exclude_none=True))))
    return Listing(**doc)


def _clear_active_flags(db: Database, product_id: str, seller_id: str, keep: Optional[str] = None) -> None:
    # one positional write per flagged participation; the array is never rewritten
    flagged = {"is_active": True}
    if keep is not None:
        flagged["promotion_id"] = {"$ne": keep}
    query = {**_key(product_id, seller_id), "promotions": {"$elemMatch": flagged}}
    while db[LISTINGS].update_one(query, {"$set": {"promotions.$.is_active": False}}).modified_count:
        pass


def activate_promotion(
    db: Database, product_id: str, seller_id: str, promotion_id: str, now: datetime
) -> Listing:
    listing = get_listing(db, product_id, seller_id)
    promotion = promotions.get_promotion(db, promotion_id)
    try:
        promotions.activate(listing, promotion, now)
    except InvalidPromotionState:
        logger.warning("Refused promotion %s on %s", promotion_id, listing.key)
        raise

    key = _key(product_id, seller_id)
    db[LISTINGS].update_one(
        {**key, "promotions.promotion_id": {"$ne": promotion_id}},
        {"$push": {"promotions": PromotionParticipation(promotion_id=promotion_id).model_dump()}},
    )
    # last activation wins; the listing never holds two active promotions
    db[LISTINGS].update_one(
        {**key, "promotions": {"$elemMatch": {"promotion_id": promotion_id}}},
        {"$set": {
            "promotions.$.is_active": True,
            "active_promotion_id": promotion_id,
            "updated_at": now,
        }},
    )
    _clear_active_flags(db, product_id, seller_id, keep=promotion_id)
    logger.info("Activated promotion %s on %s", promotion_id, listing.key)
    return get_listing(db, product_id, seller_id)


def deactivate_promotion(db: Database, product_id: str, seller_id: str, now: datetime) -> Listing:
    listing = get_listing(db, product_id, seller_id)
    db[LISTINGS].update_one(
        _key(product_id, seller_id),
        {"$set": {"active_promotion_id": None, "updated_at": now}},
    )
    _clear_active_flags(db, product_id, seller_id)
    logger.info("Deactivated promotion %s on %s", listing.active_promotion_id, listing.key)
    return get_listing(db, product_id, seller_id)

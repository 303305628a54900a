"""
Listing price rules.

Prices are kept at cent precision; every computation goes through Decimal
and rounds half-up to two places.
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Union

from errors import InvalidListingUpdate, InvalidPrice
from promotions import resolve_active_promotion
from schemas import EffectivePrice, Listing, ListingTerms, Promotion

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[int, float, Decimal, str]


def to_decimal(value: Number) -> Decimal:
    return Decimal(str(value))


def round2(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_price(price: Number, field: str = "price") -> Decimal:
    """Reject amounts that are not finite or carry more than two decimals."""
    try:
        amount = to_decimal(price)
        if not amount.is_finite():
            raise InvalidPrice(f"{price!r} is not a valid amount", field=field)
        # amounts beyond the decimal context precision cannot be quantized
        cents = amount.quantize(CENT)
    except (InvalidOperation, ValueError):
        raise InvalidPrice(f"{price!r} is not a valid amount", field=field)
    if amount != cents:
        raise InvalidPrice(f"{price} has more than two decimal places", field=field)
    return amount


def effective_price(listing: Listing, now: datetime, promotion: Optional[Promotion] = None) -> EffectivePrice:
    """Price a buyer pays right now.

    ``promotion`` is the document referenced by ``listing.active_promotion_id``;
    it only counts if it still resolves as active at ``now``.
    """
    active = resolve_active_promotion(listing, promotion, now)
    base = round2(listing.price)
    rate = to_decimal(active.discount_rate) if active else Decimal(0)
    final = round2(base * (1 - rate / HUNDRED))
    if final == base:
        # a discount that rounds away to nothing is no discount
        rate = Decimal(0)
    return EffectivePrice(
        base_price=float(base),
        discount_rate=float(rate),
        final_price=float(final),
        has_discount=rate > 0,
        promotion_id=active.id if active else None,
    )


def dedupe_tags(tags: List[str]) -> List[str]:
    return list(dict.fromkeys(tag for tag in tags if tag))


def apply_terms(listing: Listing, terms: ListingTerms) -> Listing:
    """Validate a partial update and return the updated listing.

    Stock is an absolute count and replaces the stored one.
    """
    changes = terms.model_dump(exclude_none=True)
    if not changes:
        raise InvalidListingUpdate(
            "At least one field (price, stock, warranty, tags, origin_city) must be provided"
        )
    if "price" in changes:
        if changes["price"] < 0:
            raise InvalidListingUpdate("Price cannot be negative", field="price")
        changes["price"] = float(validate_price(changes["price"]))
    if "stock" in changes and changes["stock"] < 0:
        raise InvalidListingUpdate("Stock cannot be negative", field="stock")
    if "tags" in changes:
        changes["tags"] = dedupe_tags(changes["tags"])
    return Listing.model_validate({**listing.model_dump(), **changes})

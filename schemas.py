"""
Database Schemas for the Marketplace

Each top-level Pydantic model represents a MongoDB collection (see the names
in database.py); the others are embedded documents or request payloads.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Datetimes read back from the store without tzinfo are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StoredModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @field_validator("*", mode="after")
    @classmethod
    def utc_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# Listings collection


class Warranty(str, Enum):
    none = ""
    one_year = "1 year"
    two_years = "2 years"
    three_years = "3 years"
    lifetime = "lifetime"


class PromotionParticipation(StoredModel):
    promotion_id: str
    is_active: bool = False


class Listing(StoredModel):
    product_id: str
    seller_id: str
    price: float = Field(ge=0)
    stock: int = Field(ge=0)
    warranty: Warranty = Warranty.none
    tags: List[str] = []
    origin_city: Optional[str] = None
    promotions: List[PromotionParticipation] = []
    active_promotion_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return listing_key(self.product_id, self.seller_id)

    @property
    def available(self) -> bool:
        return self.stock > 0


def listing_key(product_id: str, seller_id: str) -> str:
    return f"{product_id}:{seller_id}"


class ListingCreate(BaseModel):
    product_id: str = Field(..., min_length=1)
    seller_id: str = Field(..., min_length=1)
    price: float
    stock: int
    warranty: Warranty = Warranty.none
    tags: List[str] = []
    origin_city: Optional[str] = None


class ListingTerms(BaseModel):
    price: Optional[float] = None
    stock: Optional[int] = None
    warranty: Optional[Warranty] = None
    tags: Optional[List[str]] = None
    origin_city: Optional[str] = None


class EffectivePrice(BaseModel):
    base_price: float
    discount_rate: float
    final_price: float
    has_discount: bool
    promotion_id: Optional[str] = None


class ListingView(BaseModel):
    listing: Listing
    pricing: EffectivePrice


# Promotions collection


class Promotion(StoredModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    discount_rate: float = Field(ge=0, le=100)
    start_date: datetime
    end_date: datetime
    # administrative switch, independent of the date window
    is_active: bool = True
    applicable_product_ids: List[str] = []
    # "product_id:seller_id" keys for promotions scoped to single listings
    applicable_listing_ids: List[str] = []
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PromotionCreate(StoredModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    discount_rate: float = Field(ge=0, le=100)
    start_date: datetime
    end_date: datetime
    applicable_product_ids: List[str] = []
    applicable_listing_ids: List[str] = []
    created_by: Optional[str] = None


# Orders collection


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    failed = "failed"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    cod = "cod"
    credit = "credit"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class DeliveryMethod(str, Enum):
    standard = "standard"
    express = "express"
    pickup = "pickup"


class Address(StoredModel):
    street: str
    apartment: Optional[str] = None
    city: str
    postal_code: Optional[str] = None
    governorate: str
    delivery_instructions: Optional[str] = None


class ShippingInfo(StoredModel):
    first_name: str
    last_name: str
    phone: str
    email: EmailStr
    address: Address


class ListingSnapshot(StoredModel):
    """Listing terms as they were when the order was placed."""

    product_id: str
    seller_id: str
    base_price: float
    discount_rate: float = 0
    promotion_id: Optional[str] = None
    warranty: str = ""
    origin_city: Optional[str] = None


class OrderItem(StoredModel):
    listing: ListingSnapshot
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    line_total: float = Field(ge=0)


class DeliveryEstimate(StoredModel):
    seller_id: str
    from_city: Optional[str] = None
    to_city: str
    shipping_days: int
    estimated_delivery_date: datetime


class Order(StoredModel):
    id: Optional[str] = None
    buyer_id: str
    items: List[OrderItem]
    shipping_info: ShippingInfo
    deliveries: List[DeliveryEstimate] = []
    subtotal: float = Field(ge=0)
    shipping: float = Field(ge=0)
    tax: float = Field(ge=0)
    total: float = Field(ge=0)
    status: OrderStatus = OrderStatus.pending
    status_updated_at: datetime
    payment_method: PaymentMethod = PaymentMethod.cod
    payment_status: PaymentStatus = PaymentStatus.pending
    delivery_method: DeliveryMethod = DeliveryMethod.standard
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartLine(BaseModel):
    product_id: str
    seller_id: str
    quantity: int = Field(ge=1)


class CheckoutRequest(BaseModel):
    buyer_id: str = Field(..., min_length=1)
    items: List[CartLine] = Field(..., min_length=1)
    shipping_info: ShippingInfo
    payment_method: PaymentMethod = PaymentMethod.cod
    delivery_method: DeliveryMethod = DeliveryMethod.standard


class TimelineStep(BaseModel):
    status: OrderStatus
    title: str
    description: str
    reached: bool
    current: bool = False
    timestamp: Optional[datetime] = None


class OrderTracking(BaseModel):
    order_id: str
    status: OrderStatus
    status_updated_at: datetime
    payment_status: PaymentStatus
    steps: List[TimelineStep] = []
    error: Optional[str] = None
    deliveries: List[DeliveryEstimate] = []

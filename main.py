import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database

import listings
import orders
import promotions
from config import CORS_ORIGINS, LOG_LEVEL, PORT
from database import ensure_indexes, get_db
from errors import MarketplaceError
from schemas import (
    CheckoutRequest,
    EffectivePrice,
    Listing,
    ListingCreate,
    ListingTerms,
    ListingView,
    Order,
    OrderStatus,
    OrderTracking,
    Promotion,
    PromotionCreate,
)
from shipping import estimate_days, find_city_group

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("marketplace")


def get_now() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    yield


app = FastAPI(title="Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    logger.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.reason)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def root():
    return {"message": "Marketplace Backend Running"}


# Listings (seller-facing)
@app.post("/listings", response_model=Listing, status_code=201)
def create_listing(payload: ListingCreate, db: Database = Depends(get_db)):
    return listings.create_listing(db, payload)


@app.get("/listings/{product_id}/{seller_id}", response_model=Listing)
def get_listing(product_id: str, seller_id: str, db: Database = Depends(get_db)):
    return listings.get_listing(db, product_id, seller_id)


@app.patch("/listings/{product_id}/{seller_id}", response_model=Listing)
def update_listing(product_id: str, seller_id: str, terms: ListingTerms,
                   db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.update_terms(db, product_id, seller_id, terms, now)


@app.delete("/listings/{product_id}/{seller_id}")
def delete_listing(product_id: str, seller_id: str, db: Database = Depends(get_db)):
    listings.remove_listing(db, product_id, seller_id)
    return {"status": "deleted"}


class StockChange(BaseModel):
    delta: int


@app.post("/listings/{product_id}/{seller_id}/stock", response_model=Listing)
def adjust_stock(product_id: str, seller_id: str, payload: StockChange,
                 db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.adjust_stock(db, product_id, seller_id, payload.delta, now)


@app.get("/listings/{product_id}/{seller_id}/price", response_model=EffectivePrice)
def listing_price(product_id: str, seller_id: str,
                  db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.get_effective_price(db, product_id, seller_id, now)


class ActivatePayload(BaseModel):
    promotion_id: str


@app.post("/listings/{product_id}/{seller_id}/promotion", response_model=Listing)
def activate_promotion(product_id: str, seller_id: str, payload: ActivatePayload,
                       db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.activate_promotion(db, product_id, seller_id, payload.promotion_id, now)


@app.delete("/listings/{product_id}/{seller_id}/promotion", response_model=Listing)
def deactivate_promotion(product_id: str, seller_id: str,
                         db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.deactivate_promotion(db, product_id, seller_id, now)


@app.get("/products/{product_id}/listings", response_model=List[ListingView])
def product_listings(product_id: str, db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return listings.product_listings(db, product_id, now)


@app.get("/sellers/{seller_id}/listings", response_model=List[Listing])
def seller_listings(seller_id: str, db: Database = Depends(get_db)):
    return listings.seller_listings(db, seller_id)


# Promotions
@app.post("/promotions", response_model=Promotion, status_code=201)
def create_promotion(payload: PromotionCreate, db: Database = Depends(get_db)):
    return promotions.create_promotion(db, payload)


@app.get("/promotions", response_model=List[Promotion])
def list_promotions(active_only: bool = False, db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return promotions.list_promotions(db, now, active_only=active_only)


@app.get("/promotions/{promotion_id}", response_model=Promotion)
def get_promotion(promotion_id: str, db: Database = Depends(get_db)):
    return promotions.get_promotion(db, promotion_id)


class PromotionSwitch(BaseModel):
    is_active: bool


@app.put("/promotions/{promotion_id}/status", response_model=Promotion)
def switch_promotion(promotion_id: str, payload: PromotionSwitch,
                     db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return promotions.set_promotion_enabled(db, promotion_id, payload.is_active, now)


class PromotionProducts(BaseModel):
    product_ids: List[str]


@app.post("/promotions/{promotion_id}/products", response_model=Promotion)
def add_promotion_products(promotion_id: str, payload: PromotionProducts,
                           db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return promotions.add_products(db, promotion_id, payload.product_ids, now)


@app.delete("/promotions/{promotion_id}/products", response_model=Promotion)
def remove_promotion_products(promotion_id: str, payload: PromotionProducts,
                              db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return promotions.remove_products(db, promotion_id, payload.product_ids, now)


# Orders (buyer-facing)
@app.post("/orders", response_model=Order, status_code=201)
def create_order(payload: CheckoutRequest, db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return orders.create_order(db, payload, now)


@app.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, db: Database = Depends(get_db)):
    return orders.get_order(db, order_id)


@app.get("/orders/{order_id}/tracking", response_model=OrderTracking)
def order_tracking(order_id: str, db: Database = Depends(get_db)):
    return orders.get_tracking(db, order_id)


# Orders admin
@app.get("/admin/orders", response_model=List[Order])
def admin_list_orders(status: Optional[OrderStatus] = None, buyer_id: Optional[str] = None,
                      db: Database = Depends(get_db)):
    return orders.list_orders(db, status=status, buyer_id=buyer_id)


class StatusChange(BaseModel):
    status: OrderStatus


@app.put("/admin/orders/{order_id}/status", response_model=Order)
def admin_change_status(order_id: str, payload: StatusChange,
                        db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    return orders.advance_order_status(db, order_id, payload.status, now)


# Shipping
@app.get("/shipping/estimate")
def shipping_estimate(origin: Optional[str] = None, destination: Optional[str] = None):
    return {
        "origin": origin,
        "destination": destination,
        "origin_group": find_city_group(origin),
        "destination_group": find_city_group(destination),
        "days": estimate_days(origin, destination),
    }


# Simple health and db test
@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {str(e)}"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)

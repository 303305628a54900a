from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app, get_now
from schemas import Address, Listing, Promotion, ShippingInfo

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    database = mongomock.MongoClient().marketplace
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_now] = lambda: NOW
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_listing(**overrides) -> Listing:
    fields = dict(product_id="p1", seller_id="s1", price=100.00, stock=5, origin_city="Tunis")
    fields.update(overrides)
    return Listing(**fields)


def make_promotion(**overrides) -> Promotion:
    fields = dict(
        id="promo1",
        name="Summer sale",
        discount_rate=25,
        start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(days=1),
        applicable_product_ids=["p1"],
    )
    fields.update(overrides)
    return Promotion(**fields)


def make_shipping_info(governorate: str = "Ariana") -> ShippingInfo:
    return ShippingInfo(
        first_name="Amira",
        last_name="Ben Salah",
        phone="+21620000000",
        email="amira@example.com",
        address=Address(street="12 Rue de Marseille", city=governorate, governorate=governorate),
    )

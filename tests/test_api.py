from datetime import timedelta

from conftest import NOW

SHIPPING_INFO = {
    "first_name": "Amira",
    "last_name": "Ben Salah",
    "phone": "+21620000000",
    "email": "amira@example.com",
    "address": {"street": "12 Rue de Marseille", "city": "Tunis", "governorate": "Tunis"},
}


def _create_listing(client, **overrides):
    body = {"product_id": "p1", "seller_id": "s1", "price": 100.0, "stock": 2, "origin_city": "Tunis"}
    body.update(overrides)
    return client.post("/listings", json=body)


def _create_promotion(client, **overrides):
    body = {
        "name": "Summer",
        "discount_rate": 25,
        "start_date": (NOW - timedelta(days=1)).isoformat(),
        "end_date": (NOW + timedelta(days=1)).isoformat(),
        "applicable_product_ids": ["p1"],
    }
    body.update(overrides)
    return client.post("/promotions", json=body)


def test_root(client):
    assert client.get("/").json() == {"message": "Marketplace Backend Running"}


def test_listing_lifecycle(client):
    res = _create_listing(client)
    assert res.status_code == 201
    assert res.json()["stock"] == 2

    res = client.patch("/listings/p1/s1", json={"price": 80.0, "tags": ["a", "a", "b"]})
    assert res.status_code == 200
    assert res.json()["tags"] == ["a", "b"]

    res = client.get("/listings/p1/s1/price")
    assert res.json() == {
        "base_price": 80.0,
        "discount_rate": 0.0,
        "final_price": 80.0,
        "has_discount": False,
        "promotion_id": None,
    }


def test_errors_are_structured(client):
    res = _create_listing(client, price=10.555)
    assert res.status_code == 422
    assert res.json()["kind"] == "InvalidPrice"
    assert res.json()["field"] == "price"

    res = _create_listing(client, price=1e27)
    assert res.status_code == 422
    assert res.json()["kind"] == "InvalidPrice"

    res = client.get("/listings/p1/nobody")
    assert res.status_code == 404
    assert res.json()["kind"] == "NotFound"


def test_stock_cannot_go_negative(client):
    _create_listing(client)
    assert client.post("/listings/p1/s1/stock", json={"delta": -2}).json()["stock"] == 0
    res = client.post("/listings/p1/s1/stock", json={"delta": -1})
    assert res.status_code == 409
    assert res.json()["kind"] == "InsufficientStock"


def test_promotion_activation_flow(client):
    _create_listing(client)
    promotion_id = _create_promotion(client).json()["id"]

    res = client.post("/listings/p1/s1/promotion", json={"promotion_id": promotion_id})
    assert res.status_code == 200
    assert res.json()["active_promotion_id"] == promotion_id

    views = client.get("/products/p1/listings").json()
    assert views[0]["pricing"]["final_price"] == 75.0

    res = client.delete("/listings/p1/s1/promotion")
    assert res.json()["active_promotion_id"] is None
    assert client.get("/listings/p1/s1/price").json()["final_price"] == 100.0


def test_upcoming_promotion_cannot_be_activated(client):
    _create_listing(client)
    promotion_id = _create_promotion(
        client,
        start_date=(NOW + timedelta(days=2)).isoformat(),
        end_date=(NOW + timedelta(days=3)).isoformat(),
    ).json()["id"]
    res = client.post("/listings/p1/s1/promotion", json={"promotion_id": promotion_id})
    assert res.status_code == 409
    assert res.json()["kind"] == "InvalidPromotionState"
    assert client.get("/promotions", params={"active_only": True}).json() == []


def test_order_and_tracking(client):
    _create_listing(client)
    res = client.post("/orders", json={
        "buyer_id": "b1",
        "items": [{"product_id": "p1", "seller_id": "s1", "quantity": 1}],
        "shipping_info": SHIPPING_INFO,
        "payment_method": "cod",
        "delivery_method": "express",
    })
    assert res.status_code == 201
    order = res.json()
    assert order["subtotal"] == 100.0
    assert order["shipping"] == 9.99
    assert order["tax"] == 19.0
    assert order["total"] == 128.99
    assert order["deliveries"][0]["shipping_days"] == 1

    tracking = client.get(f"/orders/{order['id']}/tracking").json()
    assert [s["reached"] for s in tracking["steps"]] == [True, False, False, False]

    res = client.put(f"/admin/orders/{order['id']}/status", json={"status": "delivered"})
    assert res.status_code == 409
    assert res.json()["kind"] == "InvalidTransition"

    res = client.put(f"/admin/orders/{order['id']}/status", json={"status": "processing"})
    assert res.json()["status"] == "processing"

    res = client.put(f"/admin/orders/{order['id']}/status", json={"status": "cancelled"})
    tracking = client.get(f"/orders/{order['id']}/tracking").json()
    assert tracking["status"] == "cancelled"
    assert tracking["steps"] == []
    assert tracking["error"]

    assert [o["id"] for o in client.get("/admin/orders", params={"status": "cancelled"}).json()] == [order["id"]]


def test_unknown_order_id(client):
    res = client.get("/orders/not-an-id")
    assert res.status_code == 404


def test_shipping_estimate(client):
    res = client.get("/shipping/estimate", params={"origin": "Tunis", "destination": "Ariana"})
    assert res.json()["days"] == 2
    assert res.json()["origin_group"] == "TunisMetro"
    assert client.get("/shipping/estimate").json()["days"] == 3


def test_promotion_dates_without_offset_are_utc(client):
    res = _create_promotion(client, start_date="2025-06-01T00:00:00", end_date="2025-06-30T00:00:00Z")
    assert res.status_code == 201
    assert res.json()["start_date"].startswith("2025-06-01T00:00:00")

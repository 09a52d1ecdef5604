from datetime import datetime, timedelta, timezone

import pytest
from bson.objectid import ObjectId

import orders
from conftest import ADDRESS, make_product
from database import db


def stock_of(product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["count_in_stock"]


def order_body(*items, payment_method="COD"):
    return {
        "orderItems": [{"product": pid, "qty": qty} for pid, qty in items],
        "shippingAddress": ADDRESS,
        "paymentMethod": payment_method,
    }


@pytest.mark.parametrize(
    "items_price, tax, shipping, total",
    [
        (900, 90.0, 100, 1090.0),
        (1000, 100.0, 100, 1200.0),
        (1200, 120.0, 0, 1320.0),
        (600, 60.0, 100, 760.0),
        (0.05, 0.01, 100, 100.06),
    ],
)
def test_compute_prices(items_price, tax, shipping, total):
    prices = orders.compute_prices(items_price)
    assert prices.tax_price == tax
    assert prices.shipping_price == shipping
    assert prices.total_price == total


def test_place_order_scenario(client, user):
    pid = make_product(price=300, stock=5, image="lamp.jpg")
    res = client.post("/orders", json=order_body((pid, 2)), headers=user["headers"])
    assert res.status_code == 201
    order = res.json()
    assert order["userId"] == user["id"]
    assert order["itemsPrice"] == 600
    assert order["taxPrice"] == 60.0
    assert order["shippingPrice"] == 100
    assert order["totalPrice"] == 760.0
    assert order["isPaid"] is False
    assert order["isDelivered"] is False
    assert order["shippingAddress"]["postalCode"] == "560001"
    assert order["orderItems"] == [
        {"product": pid, "name": "Desk Lamp", "qty": 2, "price": 300, "image": "lamp.jpg"}
    ]
    assert stock_of(pid) == 3


def test_place_order_ignores_client_price(client, user):
    pid = make_product(price=300, stock=5)
    body = order_body((pid, 1))
    body["orderItems"][0]["price"] = 1
    body["orderItems"][0]["name"] = "Cheap Lamp"
    order = client.post("/orders", json=body, headers=user["headers"]).json()
    assert order["itemsPrice"] == 300
    assert order["orderItems"][0]["name"] == "Desk Lamp"


def test_snapshot_survives_price_change(client, user):
    pid = make_product(price=300, stock=5)
    order = client.post("/orders", json=order_body((pid, 1)), headers=user["headers"]).json()
    db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"price": 999, "name": "Renamed"}})
    fetched = client.get(f"/orders/{order['id']}", headers=user["headers"]).json()
    assert fetched["orderItems"][0]["price"] == 300
    assert fetched["orderItems"][0]["name"] == "Desk Lamp"


def test_place_order_decrements_each_product(client, user):
    lamp = make_product(price=300, stock=5)
    mug = make_product(name="Mug", price=150, stock=10)
    res = client.post("/orders", json=order_body((lamp, 1), (mug, 4)), headers=user["headers"])
    assert res.status_code == 201
    assert res.json()["itemsPrice"] == 900
    assert stock_of(lamp) == 4
    assert stock_of(mug) == 6


def test_empty_cart(client, user):
    res = client.post("/orders", json=order_body(), headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "No order items"


def test_unknown_product(client, user):
    res = client.post("/orders", json=order_body((str(ObjectId()), 1)), headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Product not found"
    malformed = client.post("/orders", json=order_body(("not-an-id", 1)), headers=user["headers"])
    assert malformed.status_code == 400
    assert malformed.json()["detail"] == "Product not found"


def test_insufficient_stock_changes_nothing(client, user):
    lamp = make_product(price=300, stock=5)
    mug = make_product(name="Mug", price=150, stock=1)
    res = client.post("/orders", json=order_body((lamp, 2), (mug, 3)), headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Insufficient stock"
    assert db["order"].count_documents({}) == 0
    assert stock_of(lamp) == 5
    assert stock_of(mug) == 1


def test_repeated_product_lines_are_checked_together(client, user):
    pid = make_product(stock=3)
    res = client.post("/orders", json=order_body((pid, 2), (pid, 2)), headers=user["headers"])
    assert res.status_code == 400
    assert stock_of(pid) == 3


def test_lost_reservation_releases_earlier_ones(client, user, monkeypatch):
    lamp = make_product(price=300, stock=5)
    mug = make_product(name="Mug", price=150, stock=5)
    real_reserve = orders.reserve_stock

    def reserve(product_id, qty):
        # another checkout drained the mug between the check and the reservation
        if str(product_id) == mug:
            db["product"].update_one({"_id": product_id}, {"$set": {"count_in_stock": 0}})
        return real_reserve(product_id, qty)

    monkeypatch.setattr(orders, "reserve_stock", reserve)
    res = client.post("/orders", json=order_body((lamp, 2), (mug, 1)), headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Insufficient stock"
    assert stock_of(lamp) == 5
    assert db["order"].count_documents({}) == 0


def test_reserve_stock_is_conditional():
    pid = ObjectId(make_product(stock=2))
    assert orders.reserve_stock(pid, 2) is True
    assert orders.reserve_stock(pid, 1) is False
    assert stock_of(str(pid)) == 0


def test_placeholder_payment_method_rejected(client, user):
    pid = make_product()
    res = client.post("/orders", json=order_body((pid, 1), payment_method="Card"), headers=user["headers"])
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment method not available"
    assert stock_of(pid) == 5


def test_order_requires_auth(client):
    pid = make_product()
    assert client.post("/orders", json=order_body((pid, 1))).status_code == 401


def test_my_orders_newest_first(client, user, other_user):
    pid = make_product(stock=10)
    first = client.post("/orders", json=order_body((pid, 1)), headers=user["headers"]).json()
    second = client.post("/orders", json=order_body((pid, 2)), headers=user["headers"]).json()
    client.post("/orders", json=order_body((pid, 1)), headers=other_user["headers"])
    db["order"].update_one(
        {"_id": ObjectId(first["id"])},
        {"$set": {"created_at": datetime.now(timezone.utc) - timedelta(hours=1)}},
    )
    res = client.get("/orders/my", headers=user["headers"])
    assert res.status_code == 200
    assert [o["id"] for o in res.json()] == [second["id"], first["id"]]


def test_get_order_owner_admin_and_stranger(client, user, other_user, admin):
    pid = make_product()
    order = client.post("/orders", json=order_body((pid, 1)), headers=user["headers"]).json()
    url = f"/orders/{order['id']}"
    assert client.get(url, headers=user["headers"]).status_code == 200
    assert client.get(url, headers=admin["headers"]).status_code == 200
    stranger = client.get(url, headers=other_user["headers"])
    assert stranger.status_code == 403


def test_get_order_not_found(client, user):
    assert client.get(f"/orders/{ObjectId()}", headers=user["headers"]).status_code == 404
    assert client.get("/orders/nope", headers=user["headers"]).status_code == 404


def test_pay_and_deliver(client, user, admin):
    pid = make_product()
    order = client.post("/orders", json=order_body((pid, 1)), headers=user["headers"]).json()
    paid = client.put(
        f"/orders/{order['id']}/pay",
        json={"id": "pay_1", "status": "COMPLETED", "emailAddress": "asha@example.com"},
        headers=user["headers"],
    )
    assert paid.status_code == 200
    assert paid.json()["isPaid"] is True
    assert paid.json()["paidAt"]
    assert paid.json()["paymentResult"]["emailAddress"] == "asha@example.com"

    denied = client.put(f"/orders/{order['id']}/deliver", headers=user["headers"])
    assert denied.status_code == 403
    delivered = client.put(f"/orders/{order['id']}/deliver", headers=admin["headers"])
    assert delivered.status_code == 200
    assert delivered.json()["isDelivered"] is True
    assert delivered.json()["totalPrice"] == order["totalPrice"]


def test_pay_foreign_order_forbidden(client, user, other_user):
    pid = make_product()
    order = client.post("/orders", json=order_body((pid, 1)), headers=user["headers"]).json()
    res = client.put(f"/orders/{order['id']}/pay", headers=other_user["headers"])
    assert res.status_code == 403


def test_admin_lists_all_orders(client, user, other_user, admin):
    pid = make_product(stock=10)
    client.post("/orders", json=order_body((pid, 1)), headers=user["headers"])
    client.post("/orders", json=order_body((pid, 1)), headers=other_user["headers"])
    assert len(client.get("/orders", headers=admin["headers"]).json()) == 2
    assert client.get("/orders", headers=user["headers"]).status_code == 403


def test_failed_insert_releases_stock_and_propagates(client, user, monkeypatch):
    pid = make_product(price=300, stock=5)

    def broken_insert(collection_name, data):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(orders, "create_document", broken_insert)
    with pytest.raises(RuntimeError, match="insert failed"):
        client.post("/orders", json=order_body((pid, 2)), headers=user["headers"])
    assert stock_of(pid) == 5
    assert db["order"].count_documents({}) == 0

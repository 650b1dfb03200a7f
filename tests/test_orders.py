import pytest

import orders
from tests.conftest import SHIPPING_ADDRESS, auth


@pytest.fixture
def market(make_user, make_item):
    seller, buyer = make_user("Seller"), make_user("Buyer")
    book = make_item(seller, title="Thermodynamics - Cengel", price=100, quantity=5, image_url="https://img.example/cengel.jpg")
    notes = make_item(seller, title="Fluid Mechanics Notes", price=200, category="Notes")
    return seller, buyer, book, notes


def place_order(client, buyer, *items, headers=None):
    payload = {
        "items": [{"item_id": i["id"], "quantity": 1} for i in items],
        "shipping_address": SHIPPING_ADDRESS,
    }
    return client.post("/api/orders", json=payload, headers={**auth(buyer), **(headers or {})})


def set_status(client, user, order, status):
    return client.put(f"/api/orders/{order['id']}/status", json={"status": status}, headers=auth(user))


def test_order_snapshots_items_and_totals(client, market):
    seller, buyer, book, notes = market
    res = place_order(client, buyer, book, notes)
    assert res.status_code == 201
    order = res.json()
    assert order["total_amount"] == 300
    assert len(order["items"]) == 2
    assert order["status"] == "Pending"
    assert order["seller_action"] == "pending"
    assert order["payment_method"] == "Cash on Delivery"
    assert order["seller_ids"] == [seller["id"]]
    assert "idempotency_key" not in order
    titles = {line["item_id"]: line["item_snapshot"]["title"] for line in order["items"]}
    assert titles == {book["id"]: book["title"], notes["id"]: notes["title"]}

    # later edits to the listing do not leak into the order
    client.put(f"/api/items/{book['id']}", json={"title": "Renamed", "price": 999}, headers=auth(seller))
    stored = client.get(f"/api/orders/{order['id']}", headers=auth(buyer)).json()
    line = next(l for l in stored["items"] if l["item_id"] == book["id"])
    assert line["item_snapshot"]["title"] == "Thermodynamics - Cengel"
    assert line["item_snapshot"]["image_url"] == "https://img.example/cengel.jpg"
    assert line["price"] == 100
    assert stored["total_amount"] == 300


def test_seller_is_notified_of_new_orders(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    notes = client.get("/api/notifications", headers=auth(seller)).json()
    assert notes[0]["type"] == "new_order"
    assert notes[0]["related_order_id"] == order["id"]


def test_seller_reject_is_terminal(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()

    res = client.put(f"/api/orders/{order['id']}/reject", json={"reason": "out of stock"}, headers=auth(seller))
    assert res.status_code == 200
    body = res.json()
    assert body["seller_action"] == "rejected"
    assert body["status"] == "Cancelled"
    assert body["rejection_reason"] == "out of stock"

    res = client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller))
    assert res.status_code == 409
    assert set_status(client, seller, order, "Processing").status_code == 409


def test_reject_requires_reason(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    res = client.put(f"/api/orders/{order['id']}/reject", json={"reason": "   "}, headers=auth(seller))
    assert res.status_code == 400


def test_only_sellers_on_the_order_decide(client, market, make_user):
    seller, buyer, book, _ = market
    other_seller = make_user()
    order = place_order(client, buyer, book).json()
    assert client.put(f"/api/orders/{order['id']}/accept", headers=auth(buyer)).status_code == 403
    assert client.put(f"/api/orders/{order['id']}/accept", headers=auth(other_seller)).status_code == 403
    res = client.put(f"/api/orders/{order['id']}/reject", json={"reason": "nope"}, headers=auth(other_seller))
    assert res.status_code == 403


def test_full_lifecycle_never_regresses(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()

    # cannot progress before the seller accepts
    assert set_status(client, seller, order, "Processing").status_code == 409

    res = client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller))
    assert res.json()["status"] == "Pending"
    assert res.json()["seller_action"] == "accepted"

    for status in ("Processing", "Shipped", "Delivered"):
        res = set_status(client, seller, order, status)
        assert res.status_code == 200, res.text
        assert res.json()["status"] == status

    for status in ("Processing", "Shipped", "Cancelled", "Delivered"):
        assert set_status(client, seller, order, status).status_code == 409
    assert client.put(f"/api/orders/{order['id']}/cancel", headers=auth(buyer)).status_code == 409

    buyer_notes = [n["type"] for n in client.get("/api/notifications", headers=auth(buyer)).json()]
    assert buyer_notes.count("order_status") == 3
    assert "order_accepted" in buyer_notes


def test_pending_is_not_a_target(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    assert set_status(client, seller, order, "Pending").status_code == 400


def test_buyer_cannot_advance_shipment(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller))
    assert set_status(client, buyer, order, "Processing").status_code == 403


def test_buyer_cancels_while_pending(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    res = client.put(f"/api/orders/{order['id']}/cancel", json={"reason": "found it cheaper"}, headers=auth(buyer))
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "Cancelled"
    assert body["seller_action"] == "pending"
    assert body["cancelled_by"] == "buyer"
    assert body["cancel_reason"] == "found it cheaper"
    assert client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller)).status_code == 409

    seller_notes = [n["type"] for n in client.get("/api/notifications", headers=auth(seller)).json()]
    assert "order_cancelled" in seller_notes


def test_buyer_cancels_while_processing_but_not_after_shipping(client, market):
    seller, buyer, book, notes = market
    first = place_order(client, buyer, book).json()
    client.put(f"/api/orders/{first['id']}/accept", headers=auth(seller))
    set_status(client, seller, first, "Processing")
    res = client.put(f"/api/orders/{first['id']}/cancel", headers=auth(buyer))
    assert res.status_code == 200
    assert res.json()["seller_action"] == "accepted"

    second = place_order(client, buyer, notes).json()
    client.put(f"/api/orders/{second['id']}/accept", headers=auth(seller))
    set_status(client, seller, second, "Processing")
    set_status(client, seller, second, "Shipped")
    assert client.put(f"/api/orders/{second['id']}/cancel", headers=auth(buyer)).status_code == 409


def test_seller_cannot_cancel_before_deciding(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    assert client.put(f"/api/orders/{order['id']}/cancel", headers=auth(seller)).status_code == 403


def test_idempotency_key_returns_the_same_order(client, market, db):
    _, buyer, book, _ = market
    first = place_order(client, buyer, book, headers={"Idempotency-Key": "checkout-1"})
    second = place_order(client, buyer, book, headers={"Idempotency-Key": "checkout-1"})
    assert first.status_code == second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert db["order"].count_documents({}) == 1

    third = place_order(client, buyer, book, headers={"Idempotency-Key": "checkout-2"})
    assert third.json()["id"] != first.json()["id"]


def test_orders_without_keys_are_independent(client, market, db):
    _, buyer, book, _ = market
    place_order(client, buyer, book)
    place_order(client, buyer, book)
    assert db["order"].count_documents({}) == 2


def test_order_validation(client, market):
    seller, buyer, book, _ = market
    assert place_order(client, seller, book).status_code == 400
    assert place_order(client, buyer).status_code == 400

    client.put(f"/api/items/{book['id']}", json={"status": "Sold"}, headers=auth(seller))
    assert place_order(client, buyer, book).status_code == 400

    payload = {"items": [{"item_id": book["id"]}], "shipping_address": {**SHIPPING_ADDRESS, "phone": "123"}}
    assert client.post("/api/orders", json=payload, headers=auth(buyer)).status_code == 400


def test_duplicate_cart_lines_are_merged(client, market):
    _, buyer, book, _ = market
    payload = {
        "items": [{"item_id": book["id"], "quantity": 1}, {"item_id": book["id"], "quantity": 2}],
        "shipping_address": SHIPPING_ADDRESS,
    }
    order = client.post("/api/orders", json=payload, headers=auth(buyer)).json()
    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert order["total_amount"] == 300


def test_check_availability(client, market):
    seller, _, book, notes = market
    client.put(f"/api/items/{notes['id']}", json={"status": "Reserved"}, headers=auth(seller))
    res = client.post(
        "/api/orders/check-availability",
        json={"items": [{"item_id": book["id"]}, {"item_id": notes["id"]}, {"item_id": "65f1c0ffee0000000000beef"}]},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["all_available"] is False
    assert [i["available"] for i in body["items"]] == [True, False, False]
    assert body["items"][2]["reason"] == "Item not found"


def test_order_visibility(client, market, make_user, admin):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    assert client.get(f"/api/orders/{order['id']}", headers=auth(seller)).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=auth(admin)).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=auth(make_user())).status_code == 403


def test_buyer_and_seller_listings(client, market):
    seller, buyer, book, notes = market
    first = place_order(client, buyer, book).json()
    second = place_order(client, buyer, notes).json()
    client.put(f"/api/orders/{second['id']}/accept", headers=auth(seller))

    assert {o["id"] for o in client.get("/api/orders/my", headers=auth(buyer)).json()} == {first["id"], second["id"]}
    assert client.get("/api/orders/my", headers=auth(seller)).json() == []

    pending_action = client.get("/api/orders/seller?status=pending_action", headers=auth(seller)).json()
    assert [o["id"] for o in pending_action] == [first["id"]]
    assert len(client.get("/api/orders/seller?status=Pending", headers=auth(seller)).json()) == 2
    assert client.get("/api/orders/seller?status=Lost", headers=auth(seller)).status_code == 400


def test_seller_stats_count_delivered_revenue(client, market):
    seller, buyer, book, notes = market
    delivered = place_order(client, buyer, book).json()
    place_order(client, buyer, notes)
    client.put(f"/api/orders/{delivered['id']}/accept", headers=auth(seller))
    for status in ("Processing", "Shipped", "Delivered"):
        set_status(client, seller, delivered, status)

    stats = client.get("/api/orders/seller/stats", headers=auth(seller)).json()
    assert stats["total"] == 2
    assert stats["delivered"] == 1
    assert stats["pending"] == 1
    assert stats["pending_action"] == 1
    assert stats["revenue"] == 100


def test_admin_can_move_and_cancel_orders(client, market, admin):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    # the accept decision belongs to the seller alone
    assert client.put(f"/api/orders/{order['id']}/accept", headers=auth(admin)).status_code == 403

    client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller))
    res = client.put(f"/api/admin/orders/{order['id']}/status", json={"status": "Processing"}, headers=auth(admin))
    assert res.json()["status"] == "Processing"
    res = client.put(f"/api/admin/orders/{order['id']}/status", json={"status": "Cancelled"}, headers=auth(admin))
    assert res.json()["status"] == "Cancelled"
    assert res.json()["cancelled_by"] == "admin"

    listed = client.get("/api/admin/orders?status=Cancelled", headers=auth(admin)).json()
    assert [o["id"] for o in listed] == [order["id"]]


def stock(client, seller, item):
    return client.get(f"/api/items/{item['id']}", headers=auth(seller)).json()


def test_single_copy_can_only_be_sold_once(client, market, make_user, make_item):
    seller, buyer, _, _ = market
    other_buyer = make_user()
    only_copy = make_item(seller, title="Signed lab manual")

    assert place_order(client, buyer, only_copy).status_code == 201
    item = stock(client, seller, only_copy)
    assert item["quantity"] == 0
    assert item["status"] == "Sold"
    assert only_copy["id"] not in {i["id"] for i in client.get("/api/items").json()}

    res = place_order(client, other_buyer, only_copy)
    assert res.status_code == 400


def test_cannot_order_more_than_in_stock(client, market, db):
    seller, buyer, book, _ = market
    payload = {"items": [{"item_id": book["id"], "quantity": 6}], "shipping_address": SHIPPING_ADDRESS}
    res = client.post("/api/orders", json=payload, headers=auth(buyer))
    assert res.status_code == 400
    assert "5" in res.json()["message"]
    assert stock(client, seller, book)["quantity"] == 5
    assert db["order"].count_documents({}) == 0


def test_stock_is_taken_per_unit(client, market):
    seller, buyer, book, _ = market
    payload = {"items": [{"item_id": book["id"], "quantity": 2}], "shipping_address": SHIPPING_ADDRESS}
    assert client.post("/api/orders", json=payload, headers=auth(buyer)).status_code == 201
    item = stock(client, seller, book)
    assert item["quantity"] == 3
    assert item["status"] == "Available"


def test_cancel_and_reject_put_stock_back(client, market, make_item):
    seller, buyer, _, _ = market
    only_copy = make_item(seller, title="Drafter")

    order = place_order(client, buyer, only_copy).json()
    client.put(f"/api/orders/{order['id']}/cancel", headers=auth(buyer))
    item = stock(client, seller, only_copy)
    assert item["quantity"] == 1
    assert item["status"] == "Available"

    order = place_order(client, buyer, only_copy).json()
    assert stock(client, seller, only_copy)["status"] == "Sold"
    client.put(f"/api/orders/{order['id']}/reject", json={"reason": "lost it"}, headers=auth(seller))
    item = stock(client, seller, only_copy)
    assert item["quantity"] == 1
    assert item["status"] == "Available"


def test_delivered_orders_keep_their_stock(client, market):
    seller, buyer, book, _ = market
    order = place_order(client, buyer, book).json()
    client.put(f"/api/orders/{order['id']}/accept", headers=auth(seller))
    for status in ("Processing", "Shipped", "Delivered"):
        set_status(client, seller, order, status)
    assert stock(client, seller, book)["quantity"] == 4


def test_failed_checkout_releases_earlier_lines(client, market, db, monkeypatch):
    seller, buyer, book, notes = market
    take = orders.reserve_stock

    # notes sell out to someone else between validation and reservation
    monkeypatch.setattr(orders, "reserve_stock", lambda item_id, n: item_id != notes["id"] and take(item_id, n))
    res = place_order(client, buyer, book, notes)
    assert res.status_code == 400
    assert "sold out" in res.json()["message"]
    assert stock(client, seller, book)["quantity"] == 5
    assert db["order"].count_documents({}) == 0


def test_check_availability_counts_stock(client, market):
    _, _, book, _ = market
    res = client.post("/api/orders/check-availability", json={"items": [{"item_id": book["id"], "quantity": 6}]})
    body = res.json()
    assert body["all_available"] is False
    assert body["items"][0]["in_stock"] == 5
    assert body["items"][0]["reason"] == "Only 5 left in stock"

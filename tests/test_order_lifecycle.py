from __future__ import annotations

import pytest


@pytest.fixture
def milk(make_product, tenant_a):
    return make_product(tenant_a["id"], name="Milk", price="10.00")


def _create_order(merchant, product_id: int, **overrides):
    payload = {
        "customer": {"phone": "0100", "name": "Mona", "address": "12 Nile St"},
        "items": [{"product_id": product_id, "quantity": 2}],
        "delivery_fee": "5.00",
    }
    payload.update(overrides)
    resp = merchant.post("/orders", json=payload)
    assert resp.status_code == 201, resp.json()
    return resp.json()["data"]


def test_create_order_prices_lines_and_allocates_customer(merchant_a, milk, tenant_a):
    order = _create_order(merchant_a, milk["id"])

    assert order["status"] == "draft"
    assert order["pricing_mode"] == "auto"
    assert order["subtotal"] == 20.0
    assert order["total"] == 25.0
    assert order["tenant"] == {"id": tenant_a["id"], "name": "Alpha Market", "slug": "alpha-market"}
    assert order["customer"]["code"] == 1
    assert len(order["public_token"]) >= 20
    [item] = order["items"]
    assert item["title"] == "Milk"
    assert item["replacement_decision_status"] == "none"


def test_create_order_notifies_after_commit(merchant_a, milk, notifier):
    _create_order(merchant_a, milk["id"])
    assert notifier.keys() == ["merchant_new_order", "customer_order_confirmed", "customer_welcome"]
    assert notifier.sent[0][1] == "+201000000001"
    assert notifier.sent[1][1] == "0100"

    _create_order(merchant_a, milk["id"])
    assert notifier.keys()[3:] == ["merchant_new_order", "customer_order_confirmed"]


def test_public_order_creation_by_slug(client, milk):
    resp = client.post(
        "/orders/alpha-market",
        json={"customer": {"phone": "0199"}, "items": [{"product_id": milk["id"]}]},
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["total"] == 10.0

    missing = client.post("/orders/no-such-store", json={"customer": {"phone": "0199"}})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "TENANT_NOT_FOUND"


def test_public_order_creation_rejects_reserved_segments(client, tenant_a):
    resp = client.post("/orders/day-close", json={"customer": {"phone": "0199"}})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "TENANT_UNRESOLVED"

    batch_path = client.post("/orders/tracking", json={"customer": {"phone": "0199"}})
    assert batch_path.status_code == 400


def test_manual_total_survives_line_repricing(merchant_a, milk):
    order = _create_order(merchant_a, milk["id"], total="50")
    assert order["pricing_mode"] == "manual"
    assert order["total"] == 50.0
    assert order["subtotal"] == 20.0

    item_id = order["items"][0]["id"]
    resp = merchant_a.patch(f"/orders/items/{item_id}/price", json={"total_price": "30"})
    assert resp.status_code == 200
    updated = resp.json()["data"]
    assert updated["subtotal"] == 30.0
    assert updated["total"] == 50.0
    assert updated["items"][0]["unit_price"] == 15.0


def test_auto_total_follows_line_repricing_and_fee(merchant_a, milk):
    order = _create_order(merchant_a, milk["id"])
    item_id = order["items"][0]["id"]

    repriced = merchant_a.patch(f"/orders/items/{item_id}/price", json={"total_price": "18.50"}).json()["data"]
    assert repriced["subtotal"] == 18.5
    assert repriced["total"] == 23.5

    fee = merchant_a.patch(f"/orders/{order['id']}", json={"delivery_fee": "0"}).json()["data"]
    assert fee["total"] == 18.5

    manual = merchant_a.patch(f"/orders/{order['id']}", json={"total": "17"}).json()["data"]
    assert manual["pricing_mode"] == "manual"
    assert manual["total"] == 17.0


def test_line_price_must_be_positive(merchant_a, milk):
    order = _create_order(merchant_a, milk["id"])
    resp = merchant_a.patch(f"/orders/items/{order['items'][0]['id']}/price", json={"total_price": "0"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_status_walks_forward_and_notifies(merchant_a, milk, notifier):
    order = _create_order(merchant_a, milk["id"])
    notifier.sent.clear()

    for status in ("confirmed", "out_for_delivery", "completed"):
        resp = merchant_a.patch(f"/orders/{order['id']}", json={"status": status})
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == status

    assert notifier.keys() == ["customer_order_confirmed", "customer_out_for_delivery", "customer_order_delivered"]


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ((), "completed"),
        ((), "out_for_delivery"),
        (("confirmed", "out_for_delivery"), "cancelled"),
        (("cancelled",), "confirmed"),
        ((), "rejected_by_customer"),
    ],
)
def test_invalid_transitions_are_rejected_without_side_effects(merchant_a, milk, notifier, path, target):
    order = _create_order(merchant_a, milk["id"])
    for status in path:
        assert merchant_a.patch(f"/orders/{order['id']}", json={"status": status}).status_code == 200
    notifier.sent.clear()

    resp = merchant_a.patch(f"/orders/{order['id']}", json={"status": target, "notes": "ignored"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "ORDER_STATUS_TRANSITION_INVALID"
    assert notifier.sent == []
    current = merchant_a.get(f"/orders/{order['id']}").json()["data"]
    assert current["notes"] is None


def test_pricing_is_frozen_once_out_for_delivery(merchant_a, milk):
    order = _create_order(merchant_a, milk["id"])
    merchant_a.patch(f"/orders/{order['id']}", json={"status": "confirmed"})
    merchant_a.patch(f"/orders/{order['id']}", json={"status": "out_for_delivery"})

    total = merchant_a.patch(f"/orders/{order['id']}", json={"total": "1"})
    assert total.status_code == 409
    assert total.json()["error"]["code"] == "ORDER_STATE_CONFLICT"
    line = merchant_a.patch(f"/orders/items/{order['items'][0]['id']}/price", json={"total_price": "1"})
    assert line.status_code == 409


def test_customer_can_reject_through_tracking_token(client, merchant_a, milk, notifier):
    order = _create_order(merchant_a, milk["id"])
    notifier.sent.clear()

    resp = client.patch(f"/orders/tracking/{order['public_token']}/reject", json={"reason": " changed my mind "})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "rejected_by_customer"
    assert data["customer_rejection_reason"] == "changed my mind"
    assert data["customer_rejected_at"]
    assert notifier.keys() == ["merchant_order_rejected_by_customer"]

    again = client.patch(f"/orders/tracking/{order['public_token']}/reject", json={})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ORDER_STATE_CONFLICT"


def test_tracking_view_hides_internal_ids(client, merchant_a, milk):
    order = _create_order(merchant_a, milk["id"])
    resp = client.get(f"/orders/tracking/{order['public_token']}")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert "id" not in data and "tenant_id" not in data and "customer_id" not in data
    assert data["customer"] == {"name": "Mona"}
    assert data["tenant"] == {"name": "Alpha Market", "slug": "alpha-market"}
    assert all("tenant_id" not in item for item in data["items"])


def test_list_orders_by_business_date(merchant_a, milk):
    order = _create_order(merchant_a, milk["id"])
    today = merchant_a.get("/orders").json()["data"]
    assert [row["id"] for row in today] == [order["id"]]
    assert merchant_a.get("/orders", params={"date": "2001-01-01"}).json()["data"] == []


def test_customer_stats_follow_orders(merchant_a, milk):
    _create_order(merchant_a, milk["id"])
    _create_order(merchant_a, milk["id"])
    [customer] = merchant_a.get("/customers").json()["data"]
    assert customer["order_count"] == 2
    assert customer["first_order_at"] <= customer["last_order_at"]
    single = merchant_a.get(f"/customers/{customer['id']}")
    assert single.json()["data"]["phone"] == "0100"


def test_unknown_product_fails_the_whole_order(merchant_a, milk, database):
    resp = merchant_a.post(
        "/orders",
        json={"customer": {"phone": "0100"}, "items": [{"product_id": milk["id"]}, {"product_id": 999}]},
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "PRODUCT_NOT_FOUND"
    assert database.count_rows("orders") == 0
    assert database.count_rows("customers") == 0

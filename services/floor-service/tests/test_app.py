from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from floor_service.app import create_app, get_cache, get_connection_factory


@pytest.fixture()
def client(connection_factory, cache):
    app = create_app(init_database=False)
    app.dependency_overrides[get_connection_factory] = lambda: connection_factory
    app.dependency_overrides[get_cache] = lambda: cache
    with TestClient(app) as test_client:
        yield test_client


def create_order(client, **overrides):
    payload = {
        "table_number": 7,
        "guests_count": 2,
        "server_id": "server-1",
        "food_items": [
            {"guest_number": 1, "items": [{"item_id": "food-pasta", "price": 0.5}]},
            {"guest_number": 2, "items": [{"item_id": "food-pizza", "discount": 50}]},
        ],
        "drink_items": [{"guest_number": 2, "items": [{"item_id": "drink-wine"}]}],
    }
    payload.update(overrides)
    response = client.post("/orders", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def ids(groups):
    return [item["id"] for group in groups for item in group["items"]]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_fetch_order(client):
    created = create_order(client)

    assert created["total_amount"] == 22.5
    assert created["food_items"][0]["items"][0]["price"] == 10.0
    assert created["food_items"][1]["items"][0]["final_price"] == 6.0

    response = client.get(f"/orders/{created['id']}")
    assert response.status_code == 200
    assert response.json()["drink_items"][0]["items"][0]["name"] == "Wine"


def test_list_orders_by_status(client):
    create_order(client)
    create_order(client, status="SERVED")

    response = client.get("/orders", params={"status": "SERVED"})

    body = response.json()
    assert response.status_code == 200
    assert body["total_count"] == 1
    assert body["orders"][0]["status"] == "SERVED"
    assert body["price_range"] == {"min": 22.5, "max": 22.5}


def test_validation_errors_map_to_400(client):
    response = client.post(
        "/orders",
        json={
            "table_number": 1,
            "guests_count": 1,
            "food_items": [{"guest_number": 1, "items": [{"item_id": "food-ghost"}]}],
        },
    )

    assert response.status_code == 400
    assert response.json()["context"] == "OrdersService"


def test_missing_order_maps_to_404(client):
    response = client.get("/orders/missing")

    assert response.status_code == 404
    assert response.json()["detail"] == "Order missing not found"


def test_update_items_and_properties(client):
    created = create_order(client)

    added = client.post(
        f"/orders/{created['id']}/items",
        json={
            "food_items": [{"guest_number": 1, "items": [{"item_id": "food-soup"}]}],
            "expected_version": created["version"],
        },
    )
    assert added.status_code == 200
    assert added.json()["total_amount"] == 29.75

    stale = client.patch(
        f"/orders/{created['id']}",
        json={"tip": 3, "expected_version": created["version"]},
    )
    assert stale.status_code == 409

    patched = client.patch(f"/orders/{created['id']}", json={"tip": 3, "comments": "birthday"})
    assert patched.status_code == 200
    assert patched.json()["tip"] == 3.0
    assert patched.json()["comments"] == "birthday"


def test_print_call_and_delete_guard(client):
    created = create_order(client)
    food_ids = ids(created["food_items"])

    printed = client.post(f"/orders/{created['id']}/print", json={"ids": food_ids})
    assert printed.status_code == 200
    assert printed.json()["message"].endswith("have been printed")

    called = client.post(f"/orders/{created['id']}/call", json={"ids": food_ids})
    assert called.status_code == 200

    assert client.post(f"/orders/{created['id']}/print", json={"ids": []}).status_code == 422
    assert client.delete(f"/orders/{created['id']}").status_code == 409


def test_delete_order(client):
    created = create_order(client)

    assert client.delete(f"/orders/{created['id']}").status_code == 204
    assert client.get(f"/orders/{created['id']}").status_code == 404


def test_payment_lifecycle(client):
    created = create_order(client)

    response = client.post(
        "/payments",
        json={
            "order_id": created["id"],
            "food_item_ids": ids(created["food_items"]),
            "drink_item_ids": ids(created["drink_items"]),
        },
    )
    assert response.status_code == 201
    payment = response.json()
    assert payment["status"] == "PENDING"
    assert payment["total_amount"] == 25.88

    again = client.post(
        "/payments",
        json={"order_id": created["id"], "drink_item_ids": ids(created["drink_items"])},
    )
    assert again.status_code == 400

    completed = client.post(f"/payments/{payment['id']}/complete")
    assert completed.json()["status"] == "PAID"
    assert client.get(f"/orders/{created['id']}").json()["status"] == "COMPLETED"

    refunded = client.post(f"/payments/{payment['id']}/refund", json={"reason": "overcharged"})
    assert refunded.json()["status"] == "REFUNDED"
    assert client.get(f"/orders/{created['id']}").json()["status"] == "READY_TO_PAY"

    refunds = client.get(f"/payments/{payment['id']}/refunds").json()
    assert [refund["reason"] for refund in refunds] == ["overcharged"]

    listed = client.get("/payments", params={"order_id": created["id"], "status": "REFUNDED"})
    assert listed.json()["total_count"] == 1


def test_cancel_payment(client):
    created = create_order(client)
    payment = client.post(
        "/payments",
        json={"order_id": created["id"], "drink_item_ids": ids(created["drink_items"])},
    ).json()

    cancelled = client.post(f"/payments/{payment['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"

    assert client.post(f"/payments/{payment['id']}/cancel").status_code == 409
    assert client.get("/payments/pay-missing").status_code == 404

"""Tests for fulfillment.presentation.api."""

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from fulfillment.application.process_webhook import PaymentWebhookProcessor, compute_signature
from fulfillment.domain.models import OrderStatus
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.main import app
from fulfillment.presentation.api import get_payment_provider, get_unit_of_work, get_webhook_processor

SECRET = "whsec_api"
BASE = "/api/stores/store-1"


@pytest.fixture
def client(db, session_factory, payment_provider):
    db.add_product("p1", "100", stock=5)
    db.add_offer("ten", "Percentage Off", {"percentage": 10})

    app.dependency_overrides[get_unit_of_work] = lambda: UnitOfWork(session_factory)
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    app.dependency_overrides[get_webhook_processor] = lambda: PaymentWebhookProcessor(
        UnitOfWork(session_factory), payment_provider, SECRET
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def place_order(client, quantity=2):
    response = client.post(f"{BASE}/orders", json={
        "customer_id": "customer-1",
        "items": [{"product_id": "p1", "quantity": quantity}]
    })
    assert response.status_code == 201, response.text
    return response.json()


def send_webhook(client, body, secret=SECRET):
    raw = json.dumps(body).encode()
    return client.post(
        "/api/payments/webhook",
        content=raw,
        headers={"Content-Type": "application/json", "X-Payment-Signature": compute_signature(raw, secret)}
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestPriceCart:
    def test_price(self, client):
        response = client.post(f"{BASE}/cart/price", json={"items": [{"product_id": "p1", "quantity": 3}]})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["total_discount"]) == Decimal("30.00")
        assert data["applied_offers"][0]["offer_type"] == "Percentage Off"
        assert Decimal(data["final_items"][0]["final_price"]) == Decimal("90.00")

    def test_unknown_product(self, client):
        response = client.post(f"{BASE}/cart/price", json={"items": [{"product_id": "nope", "quantity": 1}]})
        assert response.status_code == 400

    def test_negative_quantity(self, client):
        response = client.post(f"{BASE}/cart/price", json={"items": [{"product_id": "p1", "quantity": -1}]})
        assert response.status_code == 400


class TestOrders:
    def test_create(self, client, db):
        order = place_order(client)

        assert order["status"] == OrderStatus.PAYMENT_PENDING.value
        assert Decimal(order["total"]) == Decimal("180.00")
        assert db.product("p1").reserved_stock == 2

    def test_insufficient_stock(self, client):
        response = client.post(f"{BASE}/orders", json={
            "customer_id": "customer-1",
            "items": [{"product_id": "p1", "quantity": 6}]
        })
        assert response.status_code == 409

    def test_empty_items(self, client):
        response = client.post(f"{BASE}/orders", json={"customer_id": "customer-1", "items": []})
        assert response.status_code == 422

    def test_get(self, client):
        order = place_order(client)

        response = client.get(f"{BASE}/orders/{order['id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == order["id"]
        assert data["items"][0]["product_id"] == "p1"
        assert Decimal(data["items"][0]["discount_applied"]) == Decimal("20.00")

    def test_get_from_other_store(self, client):
        order = place_order(client)
        assert client.get(f"/api/stores/store-2/orders/{order['id']}").status_code == 404

    def test_status_history(self, client):
        order = place_order(client)

        response = client.get(f"{BASE}/orders/{order['id']}/status-history")
        assert response.status_code == 200
        assert [entry["status"] for entry in response.json()] == ["CREATED", "PAYMENT_PENDING"]


class TestUpdateStatus:
    def test_cancel(self, client, db):
        order = place_order(client)

        response = client.patch(
            f"{BASE}/orders/{order['id']}/status",
            json={"new_status": "CANCELLED", "note": "Отмена покупателем"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (5, 0)

    def test_invalid_transition(self, client):
        order = place_order(client)
        response = client.patch(f"{BASE}/orders/{order['id']}/status", json={"new_status": "SHIPPED"})
        assert response.status_code == 409

    def test_unknown_order(self, client):
        response = client.patch(f"{BASE}/orders/missing/status", json={"new_status": "CANCELLED"})
        assert response.status_code == 404

    def test_unknown_status(self, client):
        order = place_order(client)
        response = client.patch(f"{BASE}/orders/{order['id']}/status", json={"new_status": "LOST"})
        assert response.status_code == 422


class TestPaymentWebhook:
    def test_captured(self, client, db):
        order = place_order(client)
        body = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": order["payment_ref"], "amount": 18000}}}
        }

        response = send_webhook(client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        assert OrderStatus(db.order(order["id"]).status) == OrderStatus.PAYMENT_RECEIVED

    def test_invalid_signature(self, client, db):
        order = place_order(client)
        body = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": order["payment_ref"]}}}
        }

        response = send_webhook(client, body, secret="wrong")

        assert response.status_code == 400
        assert OrderStatus(db.order(order["id"]).status) == OrderStatus.PAYMENT_PENDING

    def test_missing_signature(self, client):
        response = client.post("/api/payments/webhook", content=b'{"event": "payment.captured", "payload": {}}')
        assert response.status_code == 400

    def test_unknown_reference_acknowledged(self, client):
        body = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_unknown"}}}
        }
        assert send_webhook(client, body).status_code == 200

    def test_secret_not_configured(self, client, session_factory, payment_provider, db):
        order = place_order(client)
        app.dependency_overrides[get_webhook_processor] = lambda: PaymentWebhookProcessor(
            UnitOfWork(session_factory), payment_provider, ""
        )
        body = {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": order["payment_ref"]}}}
        }

        response = send_webhook(client, body, secret="")

        assert response.status_code == 500
        assert OrderStatus(db.order(order["id"]).status) == OrderStatus.PAYMENT_PENDING

import json

import pytest

from core.errors import InsufficientBalance
from models.enums import OrderStatus, PaymentStatus, PayoutStatus
from models.order import Order
from models.payout import Payout
from services import moneroo, payments
from services import orders as order_service
from services import payouts as payout_service


def _signed(payload: dict, secret: str = "whsec-test"):
    body = json.dumps(payload).encode()
    return body, {"X-Moneroo-Signature": moneroo.compute_signature(body, secret), "Content-Type": "application/json"}


def _payment_event(order_id, status="success", amount=90, reference="py_abc"):
    return {
        "event": f"payment.{status}",
        "data": {
            "id": reference,
            "status": status,
            "amount": amount,
            "currency": "XOF",
            "metadata": {"order_id": str(order_id)},
        },
    }


@pytest.fixture
def order_body(store, make_product, shipping_address):
    product = make_product(price=5000, quantity=10)
    return {
        "store_id": store.id,
        "items": [{"product_id": product.id, "quantity": 2}],
        "shipping_address": shipping_address,
    }


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestOrderRoutes:
    def test_requires_bearer_token(self, client, order_body):
        assert client.post("/orders/", json=order_body).status_code == 401
        response = client.post("/orders/", json=order_body, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_create_and_read(self, client, customer, order_body, auth_headers):
        response = client.post("/orders/", json=order_body, headers=auth_headers(customer))
        assert response.status_code == 201
        created = response.json()
        assert created["order_number"] == "PM-2026-0001"
        assert created["total_amount"] == 10_000
        assert created["currency"] == "XOF"

        response = client.get(f"/orders/{created['order_id']}", headers=auth_headers(customer))
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["commission_amount"] == 500
        assert body["items"][0]["quantity"] == 2

    def test_error_mapping(self, client, customer, other_customer, order_body, auth_headers):
        order_body["items"][0]["quantity"] = 50
        response = client.post("/orders/", json=order_body, headers=auth_headers(customer))
        assert response.status_code == 409
        assert "stock" in response.json()["detail"].lower()

        order_body["items"][0]["quantity"] = 1
        order_id = client.post("/orders/", json=order_body, headers=auth_headers(customer)).json()["order_id"]
        assert client.get(f"/orders/{order_id}", headers=auth_headers(other_customer)).status_code == 403
        assert client.get("/orders/999", headers=auth_headers(customer)).status_code == 404

        response = client.post(f"/orders/{order_id}/status", json={"status": "shipped"}, headers=auth_headers(customer))
        assert response.status_code == 403

    def test_invalid_body(self, client, customer, order_body, auth_headers):
        del order_body["shipping_address"]
        assert client.post("/orders/", json=order_body, headers=auth_headers(customer)).status_code == 422

    def test_vendor_flow_and_timeline(self, db, client, customer, vendor, place_order, make_product, auth_headers):
        order = place_order([(make_product(), None, 1)])
        order.status = OrderStatus.PAID
        order.payment_status = PaymentStatus.PAID
        db.commit()

        response = client.post(f"/orders/{order.id}/status", json={"status": "processing"}, headers=auth_headers(vendor))
        assert response.status_code == 200
        response = client.post(f"/orders/{order.id}/tracking", json={"tracking_number": "DHL123", "carrier": "DHL"}, headers=auth_headers(vendor))
        assert response.json()["tracking_number"] == "DHL123"
        response = client.post(f"/orders/{order.id}/status", json={"status": "delivered"}, headers=auth_headers(vendor))
        assert response.status_code == 409

        client.post(f"/orders/{order.id}/status", json={"status": "shipped"}, headers=auth_headers(vendor))
        response = client.post(f"/orders/{order.id}/confirm-delivery", headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["status"] == "delivered"

        timeline = client.get(f"/orders/{order.id}/timeline", headers=auth_headers(customer)).json()
        assert [e["type"] for e in timeline] == ["created", "processing", "tracking_updated", "shipped", "delivered"]

    def test_cancel_without_body(self, client, customer, place_order, make_product, auth_headers):
        product = make_product(quantity=4)
        order = place_order([(product, None, 4)])
        response = client.post(f"/orders/{order.id}/cancel", headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert product.quantity == 4


class TestWebhook:
    def test_payment_success_is_applied_once(self, db, client, store, place_order, make_product):
        order = place_order([(make_product(price=9000), None, 1)])
        body, headers = _signed(_payment_event(order.id))

        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "payment_confirmed"}
        assert order.status == OrderStatus.PAID
        assert order.payment_reference == "py_abc"
        assert store.pending_balance == 8550

        again = client.post("/payments/webhook", content=body, headers=headers)
        assert again.status_code == 200
        assert store.pending_balance == 8550

    def test_payment_failure(self, client, place_order, make_product):
        product = make_product(quantity=2)
        order = place_order([(product, None, 2)])
        body, headers = _signed(_payment_event(order.id, status="failed"))

        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.json()["action"] == "payment_failed"
        assert order.status == OrderStatus.CANCELLED
        assert product.quantity == 2

    def test_missing_signature(self, client):
        body, _ = _signed(_payment_event(1))
        response = client.post("/payments/webhook", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 401

    def test_bad_signature(self, client, place_order, make_product):
        order = place_order([(make_product(), None, 1)])
        body, headers = _signed(_payment_event(order.id), secret="someone-else")
        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.status_code == 401
        assert order.status == OrderStatus.PENDING

    def test_malformed_payload(self, client):
        body = b"not json"
        headers = {"X-Moneroo-Signature": moneroo.compute_signature(body, "whsec-test")}
        assert client.post("/payments/webhook", content=body, headers=headers).status_code == 400

        body, headers = _signed({"event": "payment.success"})
        assert client.post("/payments/webhook", content=body, headers=headers).status_code == 400

    def test_unknown_order_is_acknowledged(self, client):
        body, headers = _signed(_payment_event(404))
        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"received": True, "action": "ignored"}

    def test_success_for_cancelled_order_is_acknowledged(self, db, client, store, customer_actor, place_order, make_product):
        order = place_order([(make_product(), None, 1)])
        order_service.cancel_order(db, customer_actor, order.id, "Changed my mind")
        body, headers = _signed(_payment_event(order.id))

        response = client.post("/payments/webhook", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["action"] == "ignored"
        assert order.status == OrderStatus.CANCELLED
        assert store.pending_balance == 0

    def test_other_errors_ask_for_retry(self, client, monkeypatch, place_order, make_product):
        def overdrawn(*args, **kwargs):
            raise InsufficientBalance("Balance would go negative")

        monkeypatch.setattr(payments, "confirm_payment", overdrawn)
        order = place_order([(make_product(), None, 1)])
        body, headers = _signed(_payment_event(order.id))
        assert client.post("/payments/webhook", content=body, headers=headers).status_code == 500

    def test_unroutable_and_refund_events_are_ignored(self, client):
        body, headers = _signed({"event": "payment.success", "data": {"id": "x", "status": "success"}})
        assert client.post("/payments/webhook", content=body, headers=headers).json()["action"] == "ignored"

        refund = {"event": "payment.success", "data": {"status": "success", "metadata": {"type": "refund", "order_id": "1"}}}
        body, headers = _signed(refund)
        assert client.post("/payments/webhook", content=body, headers=headers).json()["action"] == "ignored"

    def test_payout_events(self, db, client, store, vendor_actor, fund_store):
        fund_store(store, 50_000)
        payout_id = payout_service.request_payout(
            db, vendor_actor, 20_000, "mobile_money", {"phone_number": "+221770000001"}
        )["payout_id"]

        event = {"event": "payout.failed", "data": {"id": "po_1", "status": "failed", "metadata": {"payout_id": str(payout_id)}}}
        body, headers = _signed(event)
        assert client.post("/payments/webhook", content=body, headers=headers).json()["action"] == "payout_failed"
        assert db.get(Payout, payout_id).status == PayoutStatus.FAILED
        assert store.balance == 50_000


class TestPayoutRoutes:
    def test_request_list_and_ledger(self, client, vendor, store, fund_store, auth_headers, queued_payouts):
        fund_store(store, 100_000)
        payload = {
            "amount": 100_000,
            "payout_method": "mobile_money",
            "payout_details": {"phone_number": "+221770000001", "provider": "orange"},
        }
        response = client.post("/payouts/", json=payload, headers=auth_headers(vendor))
        assert response.status_code == 201
        assert response.json()["net_amount"] == 99_000
        assert len(queued_payouts) == 1

        payouts = client.get("/payouts/", headers=auth_headers(vendor)).json()
        assert [p["status"] for p in payouts] == ["pending"]

        ledger_view = client.get("/payouts/ledger", headers=auth_headers(vendor)).json()
        assert ledger_view["balance"] == 0
        assert ledger_view["discrepancies"] == []
        assert [t["type"] for t in ledger_view["transactions"]] == ["payout", "credit"]

    def test_overdraft_is_a_conflict(self, client, vendor, store, auth_headers):
        payload = {"amount": 5000, "payout_method": "paypal", "payout_details": {"account_name": "Fatou"}}
        response = client.post("/payouts/", json=payload, headers=auth_headers(vendor))
        assert response.status_code == 409

    def test_customer_has_no_store(self, client, customer, auth_headers):
        assert client.get("/payouts/", headers=auth_headers(customer)).status_code == 404


class TestReturnRoutes:
    def test_full_return_flow(self, db, client, customer, vendor, store, place_order, deliver_order, make_product, fund_store, auth_headers):
        product = make_product(price=4000, quantity=5)
        order = deliver_order(place_order([(product, None, 1)]))
        fund_store(store, 10_000)

        payload = {
            "order_id": order.id,
            "items": [{"product_id": product.id, "quantity": 1}],
            "reason": "Colour differs from the photo",
            "reason_category": "not_as_described",
        }
        response = client.post("/returns/", json=payload, headers=auth_headers(customer))
        assert response.status_code == 201
        return_id = response.json()["id"]
        assert response.json()["refund_amount"] == 4000

        assert client.post(f"/returns/{return_id}/approve", headers=auth_headers(customer)).status_code == 403
        assert client.post(f"/returns/{return_id}/approve", headers=auth_headers(vendor)).json()["status"] == "approved"
        assert client.post(f"/returns/{return_id}/receive", headers=auth_headers(vendor)).json()["status"] == "received"

        response = client.post(f"/returns/{return_id}/refund", headers=auth_headers(vendor))
        assert response.json() == {"return_id": return_id, "refund_amount": 4000, "order_refunded": True}
        assert db.get(Order, order.id).status == OrderStatus.REFUNDED

    def test_reject_requires_reason(self, client, customer, vendor, place_order, deliver_order, make_product, auth_headers):
        product = make_product()
        order = deliver_order(place_order([(product, None, 1)]))
        payload = {"order_id": order.id, "items": [{"product_id": product.id, "quantity": 1}], "reason": "Broken"}
        return_id = client.post("/returns/", json=payload, headers=auth_headers(customer)).json()["id"]

        assert client.post(f"/returns/{return_id}/reject", json={"reason": " "}, headers=auth_headers(vendor)).status_code == 400
        response = client.post(f"/returns/{return_id}/reject", json={"reason": "Outside policy"}, headers=auth_headers(vendor))
        assert response.json()["status"] == "rejected"

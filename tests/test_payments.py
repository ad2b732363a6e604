"""Tests for payment initialization, verification and webhooks."""

import hashlib
import hmac
import json
import time

import pytest
import requests

import config
import payments
from errors import InvalidInputError, PaymentProviderError, UnauthorizedError
from payments import PaystackClient, PaymentVerification, to_minor_units

from .conftest import line, place, stock_of

SECRET = "sk_test_secret"


@pytest.fixture
def order(client, customer, make_product):
    product = make_product()
    return place(client, customer, line(product, 3)).json()["data"]["order"]


def verify(client, user, reference):
    return client.post("/api/v1/orders/verify-payment", json={"reference": reference}, headers=user["headers"])


def initialize(client, user, order):
    response = client.post(f"/api/v1/orders/{order['id']}/initialize-payment", headers=user["headers"])
    return response.json()["data"]["reference"]


def payment_notes(db):
    return list(db["notification"].find({"title": {"$in": ["Payment Received", "Payment Confirmed"]}}))


class TestVerifyPayment:
    def test_successful_payment_moves_order_to_processing(self, client, db, customer, provider, make_product):
        product = make_product()
        order = place(client, customer, line(product, 3)).json()["data"]["order"]
        reference = order["payment"]["reference"]
        provider.set_result(reference, amount=to_minor_units(order["total"]))

        response = verify(client, customer, reference)

        assert response.status_code == 200
        paid = response.json()["data"]["order"]
        assert paid["status"] == "processing"
        assert paid["payment"]["status"] == "completed"
        assert paid["payment"]["transaction_id"] == "4099260516"
        assert paid["payment"]["paid_at"] is not None
        assert stock_of(db, product) == 2

    def test_failed_payment_leaves_order_pending(self, client, customer, provider, order):
        reference = order["payment"]["reference"]
        provider.set_result(reference, status="failed")

        paid = verify(client, customer, reference).json()["data"]["order"]

        assert paid["status"] == "pending"
        assert paid["payment"]["status"] == "failed"

    def test_failed_payment_can_be_retried(self, client, customer, provider, order):
        reference = order["payment"]["reference"]
        provider.set_result(reference, status="abandoned")
        verify(client, customer, reference)
        provider.set_result(reference)

        paid = verify(client, customer, reference).json()["data"]["order"]

        assert paid["payment"]["status"] == "completed"
        assert paid["status"] == "processing"

    def test_verification_is_idempotent(self, client, db, admin, customer, provider, order):
        reference = order["payment"]["reference"]

        first = verify(client, customer, reference).json()["data"]["order"]
        second = verify(client, customer, reference).json()["data"]["order"]

        assert first["status"] == second["status"] == "processing"
        assert first["payment"]["paid_at"] == second["payment"]["paid_at"]
        assert provider.verify_calls == [reference]
        titles = sorted(n["title"] for n in payment_notes(db))
        assert titles == ["Payment Confirmed", "Payment Received"]

    def test_amount_mismatch_is_a_failed_payment(self, client, customer, provider, order):
        reference = order["payment"]["reference"]
        provider.set_result(reference, amount=100)

        paid = verify(client, customer, reference).json()["data"]["order"]

        assert paid["payment"]["status"] == "failed"
        assert paid["status"] == "pending"

    def test_unknown_reference(self, client, customer):
        response = verify(client, customer, "no-such-reference")

        assert response.status_code == 404
        assert response.json()["message"] == "Order not found"

    def test_other_customer_cannot_verify(self, client, other_customer, provider, order):
        response = verify(client, other_customer, order["payment"]["reference"])

        assert response.status_code == 403
        assert provider.verify_calls == []

    def test_staff_can_verify(self, client, admin, order):
        response = verify(client, admin, order["payment"]["reference"])

        assert response.status_code == 200

    def test_cancelled_order_keeps_its_status(self, client, db, customer, provider, order):
        client.patch(f"/api/v1/orders/{order['id']}/cancel", headers=customer["headers"])

        paid = verify(client, customer, order["payment"]["reference"]).json()["data"]["order"]

        assert paid["status"] == "cancelled"
        assert paid["payment"]["status"] == "completed"

    def test_provider_outage_is_a_bad_gateway(self, client, customer, provider, order, monkeypatch):
        def down(reference):
            raise PaymentProviderError("Payment service error")

        monkeypatch.setattr(provider, "verify", down)

        response = verify(client, customer, order["payment"]["reference"])

        assert response.status_code == 502
        assert response.json()["statusCode"] == 502


class TestInitializePayment:
    def test_returns_checkout_details(self, client, db, customer, provider, order):
        response = client.post(f"/api/v1/orders/{order['id']}/initialize-payment", headers=customer["headers"])

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["reference"].startswith(f"ORD-{order['id']}-")
        assert data["authorizationUrl"].endswith(data["reference"])
        assert data["accessCode"] == "access_test"
        assert provider.initialized[0]["amount"] == order["total"]
        assert provider.initialized[0]["metadata"]["orderNumber"] == order["order_number"]
        stored = db["order"].find_one({"order_number": order["order_number"]})
        assert stored["payment"]["reference"] == data["reference"]
        assert stored["payment"]["status"] == "processing"
        assert stored["payment"]["references"] == [order["payment"]["reference"], data["reference"]]

    def test_first_checkout_session_still_verifies(self, client, db, customer, order):
        first = initialize(client, customer, order)
        time.sleep(0.002)
        second = initialize(client, customer, order)
        assert first != second

        response = verify(client, customer, first)

        assert response.status_code == 200
        paid = response.json()["data"]["order"]
        assert paid["payment"]["status"] == "completed"
        assert paid["status"] == "processing"
        assert client.post(f"/api/v1/orders/{order['id']}/initialize-payment",
                           headers=customer["headers"]).status_code == 400

    def test_paid_order_cannot_be_paid_again(self, client, customer, order):
        verify(client, customer, order["payment"]["reference"])

        response = client.post(f"/api/v1/orders/{order['id']}/initialize-payment", headers=customer["headers"])

        assert response.status_code == 400
        assert response.json()["message"] == "Order has already been paid"

    def test_only_owner_can_pay(self, client, other_customer, order):
        response = client.post(f"/api/v1/orders/{order['id']}/initialize-payment",
                               headers=other_customer["headers"])

        assert response.status_code == 403


class TestWebhook:
    @pytest.fixture(autouse=True)
    def secret(self, monkeypatch):
        monkeypatch.setattr(config, "PAYSTACK_SECRET_KEY", SECRET)

    def post(self, client, event, secret=SECRET):
        body = json.dumps(event).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
        return client.post(
            "/api/v1/payments/webhook",
            content=body,
            headers={"x-paystack-signature": signature, "Content-Type": "application/json"},
        )

    def test_charge_success_completes_payment(self, client, db, order):
        event = {"event": "charge.success", "data": {
            "reference": order["payment"]["reference"], "status": "success", "id": 77,
            "amount": to_minor_units(order["total"]),
        }}

        response = self.post(client, event)

        assert response.status_code == 200
        assert response.json()["data"]["handled"] is True
        stored = db["order"].find_one({"order_number": order["order_number"]})
        assert stored["status"] == "processing"
        assert stored["payment"]["transaction_id"] == "77"

    def test_charge_for_earlier_checkout_session(self, client, db, customer, order):
        first = initialize(client, customer, order)
        time.sleep(0.002)
        initialize(client, customer, order)
        event = {"event": "charge.success", "data": {
            "reference": first, "status": "success", "id": 78, "amount": to_minor_units(order["total"]),
        }}

        response = self.post(client, event)

        assert response.json()["data"]["handled"] is True
        stored = db["order"].find_one({"order_number": order["order_number"]})
        assert stored["status"] == "processing"
        assert stored["payment"]["status"] == "completed"

    def test_bad_signature_is_rejected(self, client, db, order):
        event = {"event": "charge.success", "data": {"reference": order["payment"]["reference"], "status": "success"}}

        response = self.post(client, event, secret="wrong")

        assert response.status_code == 401
        stored = db["order"].find_one({"order_number": order["order_number"]})
        assert stored["payment"]["status"] == "pending"

    def test_other_events_are_ignored(self, client, order):
        event = {"event": "transfer.success", "data": {"reference": order["payment"]["reference"]}}

        response = self.post(client, event)

        assert response.status_code == 200
        assert response.json()["data"]["handled"] is False

    def test_unknown_reference_is_ignored(self, client):
        event = {"event": "charge.success", "data": {"reference": "nope", "status": "success"}}

        assert self.post(client, event).json()["data"]["handled"] is False


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code
        self.ok = status_code < 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


class TestPaystackClient:
    def test_initialize_sends_amount_in_kobo(self):
        session = FakeSession(FakeResponse({"status": True, "data": {"reference": "r1"}}))
        client = PaystackClient("sk", callback_url="http://shop/orders/verify", session=session)

        data = client.initialize("ada@example.com", 7500.5, "r1")

        method, url, kwargs = session.calls[0]
        assert data == {"reference": "r1"}
        assert method == "POST"
        assert url == "https://api.paystack.co/transaction/initialize"
        assert kwargs["json"]["amount"] == 750050
        assert kwargs["json"]["callback_url"] == "http://shop/orders/verify?reference=r1"
        assert kwargs["headers"]["Authorization"] == "Bearer sk"

    def test_verify_parses_transaction(self):
        session = FakeSession(FakeResponse({"status": True, "data": {
            "reference": "r1", "status": "success", "id": 123, "amount": 750000,
        }}))

        result = PaystackClient("sk", session=session).verify("r1")

        assert result == PaymentVerification(reference="r1", status="success", transaction_id="123", amount=750000)
        assert result.succeeded

    def test_network_error(self):
        session = FakeSession(error=requests.ConnectionError("refused"))

        with pytest.raises(PaymentProviderError):
            PaystackClient("sk", session=session).verify("r1")

    def test_invalid_json(self):
        session = FakeSession(FakeResponse(ValueError("not json")))

        with pytest.raises(PaymentProviderError):
            PaystackClient("sk", session=session).verify("r1")

    def test_rejected_request(self):
        session = FakeSession(FakeResponse({"status": False, "message": "Transaction reference not found"}, 400))

        with pytest.raises(InvalidInputError, match="Transaction reference not found"):
            PaystackClient("sk", session=session).verify("r1")


class TestSignature:
    def test_missing_secret_rejects_everything(self):
        with pytest.raises(UnauthorizedError):
            payments.verify_signature(b"{}", "abc", secret="")

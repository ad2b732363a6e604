"""Pytest fixtures for the store API tests."""

import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import catalog
from database import get_db, object_id
from payments import PaymentVerification, get_payment_provider
from schemas import Product, RegisterRequest, Role

_slugs = itertools.count(1)


class FakePaystack:
    """Stands in for PaystackClient; results are set per reference."""

    def __init__(self):
        self.results = {}
        self.verify_calls = []
        self.initialized = []

    def set_result(self, reference, status="success", amount=None, transaction_id="4099260516"):
        self.results[reference] = PaymentVerification(
            reference=reference, status=status, transaction_id=transaction_id, amount=amount,
        )

    def initialize(self, email, amount, reference, metadata=None):
        self.initialized.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        return {
            "authorization_url": f"https://checkout.paystack.com/{reference}",
            "access_code": "access_test",
            "reference": reference,
        }

    def verify(self, reference):
        self.verify_calls.append(reference)
        if reference not in self.results:
            self.set_result(reference)
        return self.results[reference]


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    return mongomock.MongoClient().db


@pytest.fixture
def provider():
    return FakePaystack()


@pytest.fixture
def client(db, provider):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email, role=Role.CUSTOMER, password="secret123"):
    """Create a user and log in; the returned dict carries auth headers."""
    payload = RegisterRequest(first_name="Ada", last_name="Obi", email=email, password=password)
    auth._create_user(db, payload, role)
    token, user = auth.login(db, email, password)
    user["headers"] = {"Authorization": f"Bearer {token}"}
    return user


@pytest.fixture
def customer(db):
    return make_user(db, "ada@example.com")


@pytest.fixture
def other_customer(db):
    return make_user(db, "bola@example.com")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@folastore.com", Role.ADMIN)


@pytest.fixture
def make_product(db):
    def factory(**overrides):
        data = {
            "name": "Swiss Voile Lace",
            "slug": f"swiss-voile-lace-{next(_slugs)}",
            "description": "Soft cotton voile lace",
            "base_price": 2000,
            "status": "active",
            "featured_image": "https://img.example.com/lace.jpg",
            "variants": [
                {"sku": f"SVL-GLD-{next(_slugs)}", "color": "Gold", "color_hex": "#FFD700", "stock": 5},
            ],
        }
        data.update(overrides)
        return catalog.create_product(db, Product(**data))
    return factory


def address(**overrides):
    data = {
        "first_name": "Ada",
        "last_name": "Obi",
        "email": "ada@example.com",
        "phone": "+2348000000000",
        "address": "12 Marina Road",
        "city": "Lagos",
        "state": "Lagos",
        "postal_code": "100001",
        "country": "Nigeria",
    }
    data.update(overrides)
    return data


def line(product, quantity, color="Gold", sku=None):
    variant = {"sku": sku} if sku else {"color": color}
    return {"product": product["id"], "variant": variant, "quantity": quantity}


def order_body(*lines, **extra):
    body = {"items": list(lines), "shipping_address": address()}
    body.update(extra)
    return body


def place(client, user, *lines, **extra):
    return client.post("/api/v1/orders", json=order_body(*lines, **extra), headers=user["headers"])


def stock_of(db, product, sku=None):
    doc = db["product"].find_one({"_id": object_id(product["id"])})
    if sku is None:
        return doc["variants"][0]["stock"]
    return next(v["stock"] for v in doc["variants"] if v["sku"] == sku)

"""Pytest fixtures for the Maison Darin API tests."""

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_token, hash_password
from config import Settings, get_settings
from database import ensure_indexes, get_db
from paypal import CurrencyConverter
from schemas import LocalizedText, Product


class FakePayPalClient:
    """Scripted stand-in for PayPalClient that records every call."""

    def __init__(self):
        self.created = []
        self.captures = []
        self.lookups = []
        self.create_error = None
        self.capture_error = None
        self.capture_status = "COMPLETED"

    def _order(self, token, status):
        return {
            "id": token,
            "status": status,
            "purchase_units": [{
                "payments": {"captures": [{"id": f"CAP-{token}", "amount": {"currency_code": "USD", "value": "27.00"}}]},
            }],
        }

    def create_order(self, reference_id, custom_id, amount, currency, description):
        if self.create_error:
            raise self.create_error
        token = f"PAYPAL-{len(self.created) + 1}"
        self.created.append({
            "token": token,
            "reference_id": reference_id,
            "custom_id": custom_id,
            "amount": amount,
            "currency": currency,
        })
        return {
            "id": token,
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{token}"},
                {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={token}"},
            ],
        }

    def capture_order(self, token):
        self.captures.append(token)
        if self.capture_error:
            raise self.capture_error
        return self._order(token, self.capture_status)

    def get_order(self, token):
        self.lookups.append(token)
        return self._order(token, "COMPLETED")


@pytest.fixture
def db():
    """Fresh in-memory database with production indexes."""
    database = mongomock.MongoClient()["maison_darin_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        paypal_enabled=True,
        paypal_client_id="test-client-id",
        paypal_client_secret="test-client-secret",
        exchange_rate_url=None,
    )


@pytest.fixture
def paypal_client():
    return FakePayPalClient()


@pytest.fixture
def client(db, settings, paypal_client):
    """TestClient wired to the in-memory database and fake PayPal."""
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_paypal_client] = lambda: paypal_client
    main.app.dependency_overrides[main.get_currency_converter] = lambda: CurrencyConverter(settings)
    main.public_rate_limit.reset()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def make(price=100.0, stock=10, name="Rose Oud", **extra):
        doc = Product(
            name=LocalizedText(en=name, ar="ورد عود"),
            price=price,
            stock=stock,
            category="oriental",
        ).model_dump()
        doc.update(extra)
        return str(db["product"].insert_one(doc).inserted_id)
    return make


def make_user(db, email, role):
    user = {"email": email, "password_hash": hash_password("secret123"), "role": role, "is_active": True}
    user["_id"] = db["user"].insert_one(user).inserted_id
    return user


@pytest.fixture
def admin_headers(db, settings):
    user = make_user(db, "admin@maisondarin.com", "admin")
    return {"Authorization": f"Bearer {create_token(user, settings)}"}


@pytest.fixture
def customer_headers(db, settings):
    user = make_user(db, "shopper@example.com", "customer")
    return {"Authorization": f"Bearer {create_token(user, settings)}"}


def customer_info(**overrides):
    info = {
        "firstName": "Layla",
        "lastName": "Haddad",
        "email": "layla@example.com",
        "phone": "+966 50 123 4567",
        "address": "12 King Fahd Road",
        "city": "Riyadh",
        "postalCode": "12211",
        "country": "Saudi Arabia",
    }
    info.update(overrides)
    return info

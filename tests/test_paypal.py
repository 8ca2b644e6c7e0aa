"""Tests for PayPal checkout, the REST client and currency conversion."""

import pytest
import requests
from bson import ObjectId

from conftest import customer_info
from errors import PaymentProviderError, ValidationError
from orders import OrderService
from paypal import CurrencyConverter, PayPalCheckout, PayPalClient
from schemas import PayPalOrderRequest


def paypal_payload(product, quantity=1, amount=100.0, **extra):
    payload = {
        "amount": amount,
        "currency": "SAR",
        "orderData": {
            "items": [{"product": product, "quantity": quantity}],
            "customerInfo": customer_info(),
        },
    }
    payload.update(extra)
    return payload


def paypal_order(api, product, quantity=1, amount=100.0, **extra):
    return api.post("/api/paypal/orders", json=paypal_payload(product, quantity, amount, **extra))


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.body = body
        self.text = str(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self.request("get", url, **kwargs)


TOKEN = FakeResponse(200, {"access_token": "A21AA-token", "expires_in": 32400})


class TestConfig:
    def test_enabled(self, client):
        data = client.get("/api/paypal/config").json()
        assert data == {"enabled": True, "client_id": "test-client-id", "currency": "USD", "environment": "sandbox"}

    def test_disabled(self, client, settings):
        settings.paypal_enabled = False
        assert client.get("/api/paypal/config").json() == {"enabled": False}


class TestCreate:
    def test_creates_local_and_provider_orders(self, client, db, paypal_client, make_product):
        product = make_product(price=100.0, stock=3)
        response = paypal_order(client, product)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "PAYPAL-1"
        assert data["approve_url"].endswith("token=PAYPAL-1")
        assert data["currency_info"]["currency"] == "USD"
        assert data["currency_info"]["amount"] == 27.0

        local = db["order"].find_one({"_id": ObjectId(data["local_order_id"])})
        assert local["paypal_order_id"] == "PAYPAL-1"
        assert local["payment_method"] == "paypal"
        assert local["payment_status"] == "pending"
        assert stock_of(db, product) == 2
        assert paypal_client.created[0]["reference_id"] == local["order_number"]

    def test_amount_must_match_cart(self, client, db, paypal_client, make_product):
        product = make_product(price=100.0, stock=3)
        response = paypal_order(client, product, amount=50.0)

        assert response.status_code == 400
        assert paypal_client.created == []
        assert stock_of(db, product) == 3

    def test_foreign_currency_rejected(self, client, make_product):
        response = paypal_order(client, make_product(), currency="EUR")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_paypal_disabled(self, client, settings, make_product):
        settings.paypal_enabled = False
        assert paypal_order(client, make_product()).status_code == 400

    def test_provider_failure_cancels_local_order(self, client, db, paypal_client, make_product):
        paypal_client.create_error = PaymentProviderError("Invalid request", "INVALID_REQUEST", {"http_status": 422})
        product = make_product(price=100.0, stock=3)
        response = paypal_order(client, product)

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "PAYMENT_PROVIDER_ERROR"
        assert error["details"]["provider_code"] == "INVALID_REQUEST"
        order = db["order"].find_one({})
        assert order["order_status"] == "cancelled"
        assert order["status_history"][-1]["changed_by"] == "system"
        assert stock_of(db, product) == 3

    def test_unexpected_failure_cancels_local_order(self, db, settings, paypal_client, make_product):
        class BrokenConverter(CurrencyConverter):
            def convert(self, amount, source, target):
                raise RuntimeError("rate table corrupted")

        product = make_product(price=100.0, stock=3)
        checkout = PayPalCheckout(db, settings, OrderService(db, settings), paypal_client, BrokenConverter(settings))

        with pytest.raises(RuntimeError):
            checkout.create(PayPalOrderRequest(**paypal_payload(product)))

        order = db["order"].find_one({})
        assert order["order_status"] == "cancelled"
        assert stock_of(db, product) == 3
        assert paypal_client.created == []


class TestCapture:
    def test_capture_completes_order(self, client, db, make_product):
        product = make_product(price=100.0, stock=3)
        created = paypal_order(client, product).json()

        response = client.post(f"/api/paypal/orders/{created['id']}/capture")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "COMPLETED"
        assert data["capture_id"] == "CAP-PAYPAL-1"
        assert data["order_status"] == "confirmed"
        assert data["payment_status"] == "completed"

        order = db["order"].find_one({"_id": ObjectId(created["local_order_id"])})
        assert order["payment_details"]["paypal_capture_id"] == "CAP-PAYPAL-1"
        assert order["payment_details"]["currency_info"]["currency"] == "USD"
        assert [h["changed_by"] for h in order["status_history"][-2:]] == ["paypal", "paypal"]

    def test_capture_is_idempotent(self, client, db, paypal_client, make_product):
        product = make_product(price=100.0, stock=3)
        created = paypal_order(client, product).json()

        first = client.post(f"/api/paypal/orders/{created['id']}/capture").json()
        second = client.post(f"/api/paypal/orders/{created['id']}/capture").json()

        assert first == second
        assert paypal_client.captures == ["PAYPAL-1"]
        assert db["order"].count_documents({}) == 1
        assert stock_of(db, product) == 2

    def test_incomplete_capture_changes_nothing(self, client, db, paypal_client, make_product):
        paypal_client.capture_status = "PAYER_ACTION_REQUIRED"
        created = paypal_order(client, make_product()).json()

        response = client.post(f"/api/paypal/orders/{created['id']}/capture")
        assert response.status_code == 502
        assert response.json()["error"]["details"]["provider_status"] == "PAYER_ACTION_REQUIRED"

        order = db["order"].find_one({})
        assert order["payment_status"] == "pending"
        assert order["order_status"] == "pending"

    def test_already_captured_is_reconciled(self, client, paypal_client, make_product):
        created = paypal_order(client, make_product()).json()
        paypal_client.capture_error = PaymentProviderError("Order already captured", "ORDER_ALREADY_CAPTURED")

        response = client.post(f"/api/paypal/orders/{created['id']}/capture")
        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"
        assert paypal_client.lookups == ["PAYPAL-1"]

    def test_provider_error_propagates(self, client, db, paypal_client, make_product):
        created = paypal_order(client, make_product()).json()
        paypal_client.capture_error = PaymentProviderError("Instrument declined", "INSTRUMENT_DECLINED")

        response = client.post(f"/api/paypal/orders/{created['id']}/capture")
        assert response.status_code == 502
        assert db["order"].find_one({})["payment_status"] == "pending"

    def test_unknown_token(self, client, paypal_client):
        response = client.post("/api/paypal/orders/UNKNOWN-TOKEN/capture")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ORDER_NOT_FOUND"
        assert paypal_client.captures == []

    def test_cancelled_order_cannot_be_captured(self, client, paypal_client, make_product):
        created = paypal_order(client, make_product()).json()
        client.post(f"/api/paypal/orders/{created['id']}/cancel")

        response = client.post(f"/api/paypal/orders/{created['id']}/capture")
        assert response.status_code == 400
        assert paypal_client.captures == []

    def test_cancel_during_capture_wins(self, client, db, settings, paypal_client, make_product):
        product = make_product(price=100.0, stock=3)
        created = paypal_order(client, product).json()
        capture = paypal_client.capture_order

        def cancel_then_capture(token):
            OrderService(db, settings).cancel(created["local_order_id"], "Customer called", actor="admin@maisondarin.com")
            return capture(token)

        paypal_client.capture_order = cancel_then_capture
        response = client.post(f"/api/paypal/orders/{created['id']}/capture")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"
        order = db["order"].find_one({"_id": ObjectId(created["local_order_id"])})
        assert order["order_status"] == "cancelled"
        assert order["payment_status"] != "completed"
        assert order.get("paypal_capture_id") is None
        assert stock_of(db, product) == 3
        assert paypal_client.captures == ["PAYPAL-1"]


class TestCancel:
    def test_buyer_cancel_restores_stock(self, client, db, make_product):
        product = make_product(stock=3)
        created = paypal_order(client, product).json()

        response = client.post(f"/api/paypal/orders/{created['id']}/cancel")
        assert response.status_code == 200
        assert response.json()["order"]["order_status"] == "cancelled"
        assert stock_of(db, product) == 3

    def test_paid_order_cannot_be_cancelled(self, client, make_product):
        created = paypal_order(client, make_product()).json()
        client.post(f"/api/paypal/orders/{created['id']}/capture")

        response = client.post(f"/api/paypal/orders/{created['id']}/cancel")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"


class TestPayPalClient:
    def test_token_is_cached(self, settings):
        session = FakeSession(
            TOKEN,
            FakeResponse(200, {"id": "ORDER-1", "status": "COMPLETED"}),
            FakeResponse(200, {"id": "ORDER-1", "status": "COMPLETED"}),
        )
        paypal = PayPalClient(settings, session=session)

        paypal.capture_order("ORDER-1")
        paypal.get_order("ORDER-1")

        urls = [url for _, url, _ in session.calls]
        assert urls == [
            "https://api-m.sandbox.paypal.com/v1/oauth2/token",
            "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORDER-1/capture",
            "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORDER-1",
        ]
        capture_headers = session.calls[1][2]["headers"]
        assert capture_headers["Authorization"] == "Bearer A21AA-token"
        assert capture_headers["PayPal-Request-Id"] == "capture-ORDER-1"
        assert session.calls[1][2]["timeout"] == settings.paypal_timeout

    def test_create_order_payload(self, settings):
        session = FakeSession(TOKEN, FakeResponse(201, {"id": "ORDER-2", "status": "CREATED"}))
        PayPalClient(settings, session=session).create_order("MD-20240101-ABCDEF", "local-id", 27.0, "USD", "Order")

        body = session.calls[1][2]["json"]
        unit = body["purchase_units"][0]
        assert body["intent"] == "CAPTURE"
        assert unit["amount"] == {"currency_code": "USD", "value": "27.00"}
        assert unit["reference_id"] == "MD-20240101-ABCDEF"
        assert session.calls[1][2]["headers"]["PayPal-Request-Id"] == "create-MD-20240101-ABCDEF"

    def test_error_response(self, settings):
        session = FakeSession(TOKEN, FakeResponse(422, {
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "ORDER_ALREADY_CAPTURED", "description": "Order already captured."}],
        }))

        with pytest.raises(PaymentProviderError) as exc:
            PayPalClient(settings, session=session).capture_order("ORDER-1")

        assert exc.value.provider_code == "ORDER_ALREADY_CAPTURED"
        assert exc.value.details == {"http_status": 422, "provider_code": "ORDER_ALREADY_CAPTURED"}

    def test_network_error(self, settings):
        session = FakeSession(requests.ConnectionError("connection refused"))

        with pytest.raises(PaymentProviderError) as exc:
            PayPalClient(settings, session=session).access_token()
        assert exc.value.provider_code == "NETWORK_ERROR"

    def test_live_environment(self, settings):
        settings.paypal_environment = "live"
        assert settings.paypal_base_url == "https://api-m.paypal.com"


class TestCurrencyConverter:
    def test_same_currency(self, settings):
        result = CurrencyConverter(settings).convert(100.0, "sar", "SAR")
        assert result["amount"] == 100.0
        assert result["converted"] is False

    def test_fallback_table(self, settings):
        result = CurrencyConverter(settings).convert(250.0, "SAR", "USD")
        assert result["amount"] == 67.5
        assert result["rate"] == 0.27
        assert result["converted"] is True

    def test_live_rates_are_cached(self, settings):
        settings.exchange_rate_url = "https://rates.example/{base}"
        session = FakeSession(FakeResponse(200, {"rates": {"USD": 0.2667, "EUR": 0.245}}))
        converter = CurrencyConverter(settings, session=session)

        assert converter.convert(100.0, "SAR", "USD")["amount"] == 26.67
        assert converter.convert(100.0, "SAR", "EUR")["amount"] == 24.5
        assert len(session.calls) == 1
        assert session.calls[0][1] == "https://rates.example/SAR"

    def test_rate_service_down_uses_fallback(self, settings):
        settings.exchange_rate_url = "https://rates.example/{base}"
        session = FakeSession(FakeResponse(503, {"error": "unavailable"}))
        result = CurrencyConverter(settings, session=session).convert(100.0, "SAR", "USD")
        assert result["amount"] == 27.0

    def test_unsupported_currency(self, settings):
        with pytest.raises(ValidationError):
            CurrencyConverter(settings).convert(100.0, "JPY", "USD")

"""Tests for order creation and the order/payment status machine."""

import re

import pytest
from bson import ObjectId

from conftest import customer_info
from errors import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderNumberExhaustedError,
    ValidationError,
)
from orders import OrderService, generate_order_number
from schemas import OrderCreateRequest


def order_request(items, payment_method="card", **extra):
    payload = {
        "items": [{"product": product, "quantity": quantity} for product, quantity in items],
        "customerInfo": customer_info(),
        "paymentMethod": payment_method,
    }
    payload.update(extra)
    return OrderCreateRequest(**payload)


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


@pytest.fixture
def service(db, settings):
    return OrderService(db, settings)


class TestOrderNumber:
    def test_format(self):
        assert re.match(r"^MD-\d{8}-[A-Z0-9]{6}$", generate_order_number())

    def test_uses_given_date(self):
        from datetime import datetime
        assert generate_order_number(datetime(2024, 3, 9)).startswith("MD-20240309-")


class TestCreateOrder:
    def test_creates_pending_order_and_reserves_stock(self, db, service, make_product):
        product = make_product(price=120.0, stock=5)
        order = service.create_order(order_request([(product, 2)]))

        assert order["order_status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["total"] == 240.0
        assert order["currency"] == "SAR"
        assert order["items"][0]["product_name"] == "Rose Oud"
        assert order["items"][0]["price"] == 120.0
        assert order["customer_info"]["first_name"] == "Layla"
        assert order["status_history"][0]["to_status"] == "pending"
        assert stock_of(db, product) == 3

    def test_price_is_snapshotted(self, db, service, make_product):
        product = make_product(price=50.0)
        order = service.create_order(order_request([(product, 1)]))
        db["product"].update_one({"_id": ObjectId(product)}, {"$set": {"price": 80.0}})

        assert service.get_order(order["id"])["items"][0]["price"] == 50.0

    def test_duplicate_lines_are_merged(self, db, service, make_product):
        product = make_product(stock=5)
        order = service.create_order(order_request([(product, 1), (product, 2)]))

        assert len(order["items"]) == 1
        assert order["items"][0]["quantity"] == 3
        assert stock_of(db, product) == 2

    def test_insufficient_stock_leaves_everything_untouched(self, db, service, make_product):
        plenty = make_product(stock=10)
        scarce = make_product(stock=1, name="Amber Musk")

        with pytest.raises(InsufficientStockError) as exc:
            service.create_order(order_request([(plenty, 2), (scarce, 2)]))

        assert exc.value.details == {"product": scarce, "requested": 2, "available": 1}
        assert stock_of(db, plenty) == 10
        assert stock_of(db, scarce) == 1
        assert db["order"].count_documents({}) == 0

    def test_stock_lost_after_load_is_released(self, db, service, make_product, monkeypatch):
        first = make_product(stock=5)
        second = make_product(stock=5, name="Amber Musk")
        load = service._load_products

        def load_then_sell_second(quantities):
            products = load(quantities)
            db["product"].update_one({"_id": ObjectId(second)}, {"$set": {"stock": 1}})
            return products

        monkeypatch.setattr(service, "_load_products", load_then_sell_second)
        with pytest.raises(InsufficientStockError) as exc:
            service.create_order(order_request([(first, 2), (second, 2)]))

        assert exc.value.details == {"product": second, "requested": 2, "available": 1}
        assert stock_of(db, first) == 5
        assert stock_of(db, second) == 1
        assert db["order"].count_documents({}) == 0

    def test_unknown_product(self, service):
        with pytest.raises(InsufficientStockError) as exc:
            service.create_order(order_request([(str(ObjectId()), 1)]))
        assert exc.value.available == 0

    def test_selling_out_marks_product_out_of_stock(self, db, service, make_product):
        product = make_product(stock=2)
        service.create_order(order_request([(product, 2)]))

        assert db["product"].find_one({"_id": ObjectId(product)})["in_stock"] is False
        with pytest.raises(InsufficientStockError):
            service.create_order(order_request([(product, 1)]))

    def test_client_total_must_match(self, db, service, make_product):
        product = make_product(price=100.0, stock=5)
        with pytest.raises(ValidationError):
            service.create_order(order_request([(product, 2)], total=150.0))
        assert stock_of(db, product) == 5

    def test_client_total_within_tolerance(self, service, make_product):
        product = make_product(price=100.0)
        order = service.create_order(order_request([(product, 2)], total=200.005))
        assert order["total"] == 200.0

    def test_disabled_payment_method(self, settings, service, make_product):
        settings.payment_methods["mobile_wallet"].enabled = False
        with pytest.raises(ValidationError):
            service.create_order(order_request([(make_product(), 1)], payment_method="mobile_wallet"))

    def test_payment_method_limits(self, settings, service, make_product):
        settings.payment_methods["cash_on_delivery"].max_amount = 150.0
        with pytest.raises(ValidationError) as exc:
            service.create_order(order_request([(make_product(price=100.0), 2)], payment_method="cash_on_delivery"))
        assert exc.value.details["max_amount"] == 150.0

    def test_fee_is_recorded(self, settings, service, make_product):
        settings.payment_methods["card"].percentage_fee = 2.5
        order = service.create_order(order_request([(make_product(price=100.0), 1)]))
        assert order["payment_fee"] == 2.5
        assert order["total"] == 100.0

    def test_pre_authorized_method_completes_payment(self, settings, service, make_product):
        settings.payment_methods["card"].pre_authorized = True
        order = service.create_order(order_request([(make_product(), 1)]))
        assert order["payment_status"] == "completed"
        assert order["order_status"] == "pending"

    def test_reference_exhaustion_releases_stock(self, db, settings, make_product):
        product = make_product(stock=5)
        service = OrderService(db, settings, number_generator=lambda: "MD-20240101-AAAAAA")
        service.create_order(order_request([(product, 1)]))

        with pytest.raises(OrderNumberExhaustedError):
            service.create_order(order_request([(product, 1)]))

        assert stock_of(db, product) == 4
        assert db["order"].count_documents({}) == 1


class TestTransitions:
    @pytest.fixture
    def product(self, make_product):
        return make_product(stock=10)

    @pytest.fixture
    def order(self, service, product):
        return service.create_order(order_request([(product, 3)]))

    def test_confirm(self, service, order):
        confirmed = service.confirm(order["id"], actor="admin@maisondarin.com")
        assert confirmed["order_status"] == "confirmed"
        assert confirmed["status_history"][-1]["from_status"] == "pending"
        assert confirmed["status_history"][-1]["changed_by"] == "admin@maisondarin.com"

    def test_confirm_twice_is_rejected(self, service, order):
        service.confirm(order["id"])
        with pytest.raises(InvalidTransitionError):
            service.confirm(order["id"])

    def test_cancel_releases_stock_once(self, db, service, product, order):
        cancelled = service.cancel(order["id"], reason="Customer changed mind")

        assert cancelled["order_status"] == "cancelled"
        assert cancelled["stock_reserved"] is False
        assert stock_of(db, product) == 10
        with pytest.raises(InvalidTransitionError):
            service.cancel(order["id"])
        assert stock_of(db, product) == 10

    def test_cancel_restores_in_stock_flag(self, db, service, make_product):
        product = make_product(stock=1)
        order = service.create_order(order_request([(product, 1)]))
        service.cancel(order["id"])
        assert db["product"].find_one({"_id": ObjectId(product)})["in_stock"] is True

    def test_cancel_delivered_order_is_rejected(self, db, service, product, order):
        service.update_status(order["id"], order_status="delivered")
        with pytest.raises(InvalidTransitionError):
            service.cancel(order["id"])
        assert stock_of(db, product) == 7

    def test_cancel_paid_order_refunds(self, service, order):
        service.update_status(order["id"], payment_status="completed")
        cancelled = service.cancel(order["id"])
        assert cancelled["payment_status"] == "refunded"
        fields = [entry["field"] for entry in cancelled["status_history"]]
        assert fields[-2:] == ["order_status", "payment_status"]

    def test_refund_requires_completed_payment(self, service, order):
        with pytest.raises(InvalidTransitionError):
            service.refund(order["id"])
        service.update_status(order["id"], payment_status="completed")
        assert service.refund(order["id"], reason="Damaged bottle")["payment_status"] == "refunded"

    def test_override_records_history(self, db, service, product, order):
        updated = service.update_status(order["id"], order_status="shipped", actor="admin@maisondarin.com")

        entry = updated["status_history"][-1]
        assert updated["order_status"] == "shipped"
        assert entry["from_status"] == "pending"
        assert entry["reason"] == "manual override"
        assert stock_of(db, product) == 7

    def test_override_needs_a_status(self, service, order):
        with pytest.raises(ValidationError):
            service.update_status(order["id"])

    def test_override_rejects_unknown_status(self, service, order):
        with pytest.raises(ValidationError):
            service.update_status(order["id"], order_status="lost")

    def test_unknown_order(self, service):
        with pytest.raises(OrderNotFoundError):
            service.confirm(str(ObjectId()))
        with pytest.raises(OrderNotFoundError):
            service.get_order("not-an-id")


class TestQueries:
    def test_list_filters_and_paginates(self, service, make_product):
        product = make_product(stock=50)
        orders = [service.create_order(order_request([(product, 1)])) for _ in range(3)]
        service.confirm(orders[0]["id"])

        page = service.list_orders(page=1, limit=2)
        assert len(page["items"]) == 2
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["total_pages"] == 2
        assert page["pagination"]["has_next"] is True

        confirmed = service.list_orders(order_status="confirmed")
        assert [o["id"] for o in confirmed["items"]] == [orders[0]["id"]]

    def test_search_by_order_number(self, service, make_product):
        product = make_product(stock=5)
        order = service.create_order(order_request([(product, 1)]))
        service.create_order(order_request([(product, 1)]))

        result = service.list_orders(search=order["order_number"])
        assert [o["order_number"] for o in result["items"]] == [order["order_number"]]

    def test_get_by_number(self, service, make_product):
        order = service.create_order(order_request([(make_product(), 1)]))
        assert service.get_order_by_number(order["order_number"])["id"] == order["id"]
        with pytest.raises(OrderNotFoundError):
            service.get_order_by_number("MD-00000000-XXXXXX")

    def test_stats(self, service, make_product):
        product = make_product(price=100.0, stock=10)
        paid = service.create_order(order_request([(product, 2)]))
        service.create_order(order_request([(product, 1)]))
        service.update_status(paid["id"], payment_status="completed")

        stats = service.stats()
        assert stats["total_orders"] == 2
        assert stats["by_payment_status"]["completed"] == 1
        assert stats["by_order_status"]["pending"] == 2
        assert stats["revenue"] == 200.0

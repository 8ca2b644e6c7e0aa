"""
PayPal checkout: create a provider order for a local order, then capture it.

Capture is idempotent per PayPal token. The local order carries a unique
paypal_order_id, stock is reserved once when the local order is created, and
the capture write is guarded on the payment still being uncompleted.
"""
import logging
import time
from typing import Any, Dict, Optional

import requests
from pymongo import ReturnDocument
from pymongo.database import Database

from config import Settings
from database import to_object_id, utc_now
from errors import InvalidTransitionError, OrderNotFoundError, PaymentProviderError, ValidationError
from orders import OrderService, history_entry
from schemas import OrderCreateRequest, OrderStatus, PaymentMethod, PaymentStatus, PayPalOrderRequest

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"


class PayPalClient:
    """Thin wrapper over the PayPal REST API (Orders v2)."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.settings.paypal_base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.settings.paypal_timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("PayPal %s %s failed: %s", method.upper(), path, e)
            raise PaymentProviderError(f"Could not reach PayPal: {e}", "NETWORK_ERROR")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if not response.ok:
            details = body.get("details") or []
            first = details[0] if details else {}
            provider_code = first.get("issue") or body.get("name") or body.get("error")
            message = first.get("description") or body.get("message") or body.get("error_description") or "PayPal request failed"
            logger.warning("PayPal %s %s returned %s: %s", method.upper(), path, response.status_code, provider_code)
            raise PaymentProviderError(message, provider_code, {"http_status": response.status_code})
        return body

    def access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        body = self._request(
            "post",
            "/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json", "Accept-Language": "en_US"},
        )
        token = body.get("access_token")
        if not token:
            raise PaymentProviderError("PayPal did not return an access token", "NO_ACCESS_TOKEN")
        self._token = token
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return token

    def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.access_token()}",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def create_order(self, reference_id: str, custom_id: str, amount: float, currency: str, description: str) -> Dict[str, Any]:
        payload = {
            "intent": "CAPTURE",
            "application_context": {
                "brand_name": self.settings.paypal_brand_name,
                "locale": "en-US",
                "landing_page": "BILLING",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": self.settings.paypal_return_url,
                "cancel_url": self.settings.paypal_cancel_url,
            },
            "purchase_units": [{
                "reference_id": reference_id,
                "custom_id": custom_id,
                "description": description,
                "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
            }],
        }
        return self._request("post", "/v2/checkout/orders", json=payload, headers=self._headers(f"create-{reference_id}"))

    def capture_order(self, token: str) -> Dict[str, Any]:
        return self._request("post", f"/v2/checkout/orders/{token}/capture", headers=self._headers(f"capture-{token}"))

    def get_order(self, token: str) -> Dict[str, Any]:
        return self._request("get", f"/v2/checkout/orders/{token}", headers=self._headers())


class CurrencyConverter:
    """Converts the display currency to the currency PayPal settles in."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self._cache: Dict[str, Any] = {}

    def _fallback(self, base: str) -> Dict[str, float]:
        table = self.settings.fallback_rates
        if base not in table:
            raise ValidationError(f"Currency {base} is not supported")
        return {code: rate / table[base] for code, rate in table.items()}

    def rates(self, base: str) -> Dict[str, float]:
        cached = self._cache.get(base)
        if cached and time.monotonic() - cached[0] < self.settings.exchange_rate_ttl:
            return cached[1]
        if not self.settings.exchange_rate_url:
            return self._fallback(base)
        try:
            response = self.session.get(self.settings.exchange_rate_url.format(base=base), timeout=5)
            response.raise_for_status()
            rates = {code: float(rate) for code, rate in response.json()["rates"].items()}
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning("Exchange rates for %s unavailable, using fallback table: %s", base, e)
            return self._fallback(base)
        self._cache[base] = (time.monotonic(), rates)
        return rates

    def convert(self, amount: float, source: str, target: str) -> Dict[str, Any]:
        source, target = source.upper(), target.upper()
        if source == target:
            rate = 1.0
        else:
            rate = self.rates(source).get(target)
            if not rate:
                raise ValidationError(f"No exchange rate from {source} to {target}")
        return {
            "original_amount": amount,
            "original_currency": source,
            "amount": round(amount * rate, 2),
            "currency": target,
            "rate": rate,
            "converted": source != target,
        }


class PayPalCheckout:
    def __init__(self, db: Database, settings: Settings, orders: OrderService, client: PayPalClient, converter: CurrencyConverter):
        self.settings = settings
        self.orders = orders
        self.client = client
        self.converter = converter
        self.collection = db["order"]

    def public_config(self) -> Dict[str, Any]:
        if not self.settings.paypal_configured:
            return {"enabled": False}
        return {
            "enabled": True,
            "client_id": self.settings.paypal_client_id,
            "currency": self.settings.paypal_currency,
            "environment": self.settings.paypal_environment,
        }

    def create(self, req: PayPalOrderRequest, actor: Optional[str] = None) -> Dict[str, Any]:
        if not self.settings.paypal_configured:
            raise ValidationError("PayPal is not available")
        currency = (req.currency or self.settings.site_currency).upper()
        if currency != self.settings.site_currency:
            raise ValidationError(f"Amounts must be given in {self.settings.site_currency}, got {currency}")

        local = self.orders.create_order(OrderCreateRequest(
            items=req.order_data.items,
            customer_info=req.order_data.customer_info,
            payment_method=PaymentMethod.paypal,
            total=req.amount,
            notes=req.order_data.notes,
        ), actor)

        try:
            conversion = self.converter.convert(local["total"], currency, self.settings.paypal_currency)
            result = self.client.create_order(
                reference_id=local["order_number"],
                custom_id=local["id"],
                amount=conversion["amount"],
                currency=conversion["currency"],
                description=f"{self.settings.paypal_brand_name} - Order {local['order_number']}",
            )
            if not result.get("id"):
                raise PaymentProviderError("PayPal did not return an order id", "NO_ORDER_ID")
            paypal_order_id = result["id"]
            self.collection.update_one(
                {"_id": to_object_id(local["id"])},
                {"$set": {
                    "paypal_order_id": paypal_order_id,
                    "payment_details": {"currency_info": conversion},
                    "updated_at": utc_now(),
                }},
            )
            approve_url = next(
                (link.get("href") for link in result.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
                None,
            )
        except Exception as e:
            logger.warning("PayPal order creation failed for %s: %s", local["order_number"], e)
            self.orders.cancel(local["id"], "PayPal order creation failed", actor="system")
            raise

        logger.info("PayPal order %s created for %s (%.2f %s)", paypal_order_id, local["order_number"], conversion["amount"], conversion["currency"])
        return {
            "success": True,
            "id": paypal_order_id,
            "approve_url": approve_url,
            "local_order_id": local["id"],
            "local_order_number": local["order_number"],
            "currency_info": conversion,
        }

    def _capture_response(self, order: dict) -> Dict[str, Any]:
        return {
            "success": True,
            "status": COMPLETED,
            "order_id": order["paypal_order_id"],
            "local_order_id": str(order["_id"]),
            "local_order_number": order["order_number"],
            "capture_id": order.get("paypal_capture_id"),
            "order_status": order["order_status"],
            "payment_status": order["payment_status"],
        }

    def capture(self, token: str) -> Dict[str, Any]:
        order = self.collection.find_one({"paypal_order_id": token})
        if order is None:
            raise OrderNotFoundError(token)
        if order["payment_status"] == PaymentStatus.completed.value:
            logger.info("Capture for %s replayed, order %s already paid", token, order["order_number"])
            return self._capture_response(order)
        if order["order_status"] == OrderStatus.cancelled.value:
            raise InvalidTransitionError(order["order_status"], OrderStatus.confirmed.value, "Order was cancelled before payment")

        try:
            result = self.client.capture_order(token)
        except PaymentProviderError as e:
            if e.provider_code != "ORDER_ALREADY_CAPTURED":
                raise
            # captured earlier but never recorded locally: reconcile from the provider's view
            result = self.client.get_order(token)

        status = result.get("status")
        if status != COMPLETED:
            logger.warning("PayPal capture for %s returned status %s", token, status)
            raise PaymentProviderError(
                f"Payment was not completed (status {status})",
                status,
                {"provider_status": status, "paypal_order_id": token},
            )

        captures = ((result.get("purchase_units") or [{}])[0].get("payments") or {}).get("captures") or [{}]
        capture = captures[0]
        capture_id = capture.get("id") or result.get("id")
        changes: Dict[str, Any] = {
            "payment_status": PaymentStatus.completed.value,
            "paypal_capture_id": capture_id,
            "payment_details": dict(
                order.get("payment_details") or {},
                paypal_order_id=token,
                paypal_capture_id=capture_id,
                capture_time=utc_now(),
                amount=capture.get("amount"),
            ),
            "updated_at": utc_now(),
        }
        history = [history_entry("payment_status", order["payment_status"], PaymentStatus.completed.value, "paypal", f"Captured {capture_id}")]
        if order["order_status"] == OrderStatus.pending.value:
            changes["order_status"] = OrderStatus.confirmed.value
            history.append(history_entry("order_status", OrderStatus.pending.value, OrderStatus.confirmed.value, "paypal", "Payment captured"))

        updated = self.collection.find_one_and_update(
            {
                "_id": order["_id"],
                "paypal_order_id": token,
                "order_status": order["order_status"],
                "payment_status": {"$ne": PaymentStatus.completed.value},
            },
            {"$set": changes, "$push": {"status_history": {"$each": history}}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            latest = self.collection.find_one({"_id": order["_id"]})
            if latest["payment_status"] != PaymentStatus.completed.value:
                # funds were taken but the order moved underneath us
                logger.error(
                    "PayPal order %s captured (%s) but local order %s is now %s; the payment needs a refund",
                    token, capture_id, latest["order_number"], latest["order_status"],
                )
                raise InvalidTransitionError(
                    latest["order_status"], OrderStatus.confirmed.value,
                    "Order changed while the payment was being captured",
                )
            updated = latest
        logger.info("PayPal order %s captured (%s), local order %s", token, capture_id, updated["order_number"])
        return self._capture_response(updated)

    def cancel(self, token: str) -> Dict[str, Any]:
        order = self.collection.find_one({"paypal_order_id": token})
        if order is None:
            raise OrderNotFoundError(token)
        if order["payment_status"] != PaymentStatus.pending.value:
            raise InvalidTransitionError(order["payment_status"], OrderStatus.cancelled.value, "Only unpaid PayPal orders can be cancelled")
        cancelled = self.orders.cancel(str(order["_id"]), "PayPal checkout cancelled by buyer", actor="customer")
        return {"success": True, "order": cancelled}


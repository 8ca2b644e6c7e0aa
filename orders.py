"""
Order checkout and the order/payment status machine.

Stock is reserved with one conditional update per product
(decrement only while stock covers the quantity), so concurrent checkouts
cannot oversell. A reservation that cannot be followed by a persisted order
is released again before the error propagates.
"""
import logging
import re
import secrets
import string
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from config import Settings
from database import as_utc, insert_with_reference, paginate, parse_sort, serialize_doc, to_object_id, utc_now
from errors import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from schemas import (
    LocalizedText,
    Order,
    OrderCreateRequest,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    StatusChange,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
TOTAL_TOLERANCE = 0.01
SORTABLE_FIELDS = ["created_at", "updated_at", "total", "order_number", "order_status", "payment_status"]


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"MD-{now:%Y%m%d}-{suffix}"


def history_entry(field: str, from_status: Optional[str], to_status: str, actor: Optional[str], reason: Optional[str] = None) -> Dict[str, Any]:
    return StatusChange(
        field=field,
        from_status=from_status,
        to_status=to_status,
        changed_at=utc_now(),
        changed_by=actor,
        reason=reason,
    ).model_dump()


def localized_name(product: dict, fallback: str) -> LocalizedText:
    """Product name as stored, or the fallback when the catalog entry has no bilingual name."""
    name = product.get("name")
    if isinstance(name, str) and name:
        return LocalizedText(en=name)
    if not isinstance(name, dict):
        name = {}
    return LocalizedText(en=name.get("en") or fallback, ar=name.get("ar") or "")


class OrderService:
    def __init__(self, db: Database, settings: Settings, number_generator=generate_order_number):
        self.db = db
        self.settings = settings
        self.orders = db["order"]
        self.products = db["product"]
        self.number_generator = number_generator

    # Creation

    def create_order(self, req: OrderCreateRequest, actor: Optional[str] = None) -> Dict[str, Any]:
        quantities = self._merge_lines(req)
        products = self._load_products(quantities)

        items: List[OrderItem] = []
        for product_id, quantity in quantities.items():
            product = products[product_id]
            price = float(product["price"])
            images = product.get("images") or []
            items.append(OrderItem(
                product_id=product_id,
                product_name=localized_name(product, product_id).en,
                product_image=images[0] if images else None,
                price=price,
                quantity=quantity,
                subtotal=round(price * quantity, 2),
            ))
        total = round(sum(item.subtotal for item in items), 2)

        if req.total is not None and abs(req.total - total) > TOTAL_TOLERANCE:
            raise ValidationError(
                "Order total does not match calculated total",
                {"submitted": req.total, "calculated": total},
            )

        method = self.settings.payment_methods.get(req.payment_method)
        if method is None or not method.enabled:
            raise ValidationError(f"Payment method {req.payment_method} is not available")
        if total < method.min_amount or (method.max_amount is not None and total > method.max_amount):
            raise ValidationError(
                f"Order total {total:.2f} is outside the limits for {req.payment_method}",
                {"min_amount": method.min_amount, "max_amount": method.max_amount},
            )

        payment_status = PaymentStatus.completed if method.pre_authorized else PaymentStatus.pending
        order = Order(
            order_number="pending",
            items=items,
            subtotal=total,
            total=total,
            payment_fee=method.fee_for(total),
            currency=self.settings.site_currency,
            customer_info=req.customer_info,
            payment_method=req.payment_method,
            payment_status=payment_status,
            notes=req.notes,
            status_history=[
                StatusChange(field="order_status", to_status=OrderStatus.pending.value, changed_at=utc_now(), changed_by=actor or "customer", reason="Order placed"),
            ],
        )

        self._reserve_stock(items, products)
        doc = order.model_dump()
        now = utc_now()
        doc["created_at"] = now
        doc["updated_at"] = now
        try:
            insert_with_reference(self.db, "order", doc, "order_number", self.number_generator)
        except Exception:
            self._release_stock(items)
            raise

        logger.info("Order %s created: %d items, total %.2f, method %s", doc["order_number"], len(items), total, req.payment_method)
        return serialize_doc(doc)

    def _merge_lines(self, req: OrderCreateRequest) -> Dict[str, int]:
        quantities: Dict[str, int] = {}
        for line in req.items:
            quantities[line.product] = quantities.get(line.product, 0) + line.quantity
        return quantities

    def _load_products(self, quantities: Dict[str, int]) -> Dict[str, dict]:
        products = {}
        for product_id, quantity in quantities.items():
            oid = to_object_id(product_id)
            product = self.products.find_one({"_id": oid}) if oid else None
            if product is None:
                raise InsufficientStockError(product_id, quantity, 0)
            available = int(product.get("stock", 0)) if product.get("in_stock", True) else 0
            if available < quantity:
                raise InsufficientStockError(product_id, quantity, available, localized_name(product, product_id).en)
            products[product_id] = product
        return products

    def _reserve_stock(self, items: List[OrderItem], products: Dict[str, dict]) -> None:
        reserved: List[OrderItem] = []
        for item in items:
            oid = to_object_id(item.product_id)
            result = self.products.find_one_and_update(
                {"_id": oid, "in_stock": {"$ne": False}, "stock": {"$gte": item.quantity}},
                {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": utc_now()}},
                return_document=ReturnDocument.AFTER,
            )
            if result is None:
                self._release_stock(reserved)
                current = self.products.find_one({"_id": oid}) or {}
                raise InsufficientStockError(item.product_id, item.quantity, int(current.get("stock", 0)), item.product_name)
            if result["stock"] <= 0:
                self.products.update_one({"_id": oid, "stock": {"$lte": 0}}, {"$set": {"in_stock": False}})
            reserved.append(item)

    def _release_stock(self, items) -> None:
        for item in items:
            product_id = item["product_id"] if isinstance(item, dict) else item.product_id
            quantity = item["quantity"] if isinstance(item, dict) else item.quantity
            oid = to_object_id(product_id)
            if oid is None:
                continue
            try:
                result = self.products.update_one({"_id": oid}, {"$inc": {"stock": quantity}, "$set": {"in_stock": True, "updated_at": utc_now()}})
            except Exception:
                logger.exception("Failed to release %d units of %s", quantity, product_id)
                continue
            if result.matched_count == 0:
                logger.warning("Product %s vanished before %d units could be released", product_id, quantity)

    # Queries

    def _find(self, order_id: str) -> dict:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return serialize_doc(self._find(order_id))

    def get_order_by_number(self, order_number: str) -> Dict[str, Any]:
        order = self.orders.find_one({"order_number": order_number})
        if order is None:
            raise OrderNotFoundError(order_number)
        return serialize_doc(order)

    def list_orders(
        self,
        page: int = 1,
        limit: int = 10,
        order_status: Optional[str] = None,
        payment_status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if order_status:
            query["order_status"] = order_status
        if payment_status:
            query["payment_status"] = payment_status
        if start_date or end_date:
            query["created_at"] = {}
            if start_date:
                query["created_at"]["$gte"] = as_utc(start_date)
            if end_date:
                query["created_at"]["$lte"] = as_utc(end_date)
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"order_number": {"$regex": pattern, "$options": "i"}},
                {"customer_info.email": {"$regex": pattern, "$options": "i"}},
            ]
        return paginate(self.orders, query, page, limit, parse_sort(sort, SORTABLE_FIELDS))

    def stats(self) -> Dict[str, Any]:
        by_order_status = {s.value: self.orders.count_documents({"order_status": s.value}) for s in OrderStatus}
        by_payment_status = {s.value: self.orders.count_documents({"payment_status": s.value}) for s in PaymentStatus}
        revenue = sum(o["total"] for o in self.orders.find({"payment_status": PaymentStatus.completed.value}, {"total": 1}))
        return {
            "total_orders": self.orders.count_documents({}),
            "by_order_status": by_order_status,
            "by_payment_status": by_payment_status,
            "revenue": round(revenue, 2),
        }

    # Transitions

    def _transition(self, order_id: str, guard: Dict[str, Any], changes: Dict[str, Any], history: List[dict]) -> Optional[dict]:
        """Apply changes only while the guard still matches; None when it no longer does."""
        oid = to_object_id(order_id)
        if oid is None:
            raise OrderNotFoundError(order_id)
        changes = dict(changes, updated_at=utc_now())
        return self.orders.find_one_and_update(
            dict(guard, _id=oid),
            {"$set": changes, "$push": {"status_history": {"$each": history}}},
            return_document=ReturnDocument.AFTER,
        )

    def confirm(self, order_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
        updated = self._transition(
            order_id,
            {"order_status": OrderStatus.pending.value},
            {"order_status": OrderStatus.confirmed.value},
            [history_entry("order_status", OrderStatus.pending.value, OrderStatus.confirmed.value, actor)],
        )
        if updated is None:
            current = self._find(order_id)
            logger.warning("Refused to confirm order %s in status %s", current["order_number"], current["order_status"])
            raise InvalidTransitionError(current["order_status"], OrderStatus.confirmed.value, "Only pending orders can be confirmed")
        logger.info("Order %s confirmed", updated["order_number"])
        return serialize_doc(updated)

    def cancel(self, order_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Dict[str, Any]:
        current = self._find(order_id)
        status = current["order_status"]
        if status in (OrderStatus.delivered.value, OrderStatus.cancelled.value):
            raise InvalidTransitionError(status, OrderStatus.cancelled.value, f"Order cannot be cancelled in status {status}")

        changes: Dict[str, Any] = {"order_status": OrderStatus.cancelled.value, "stock_reserved": False}
        history = [history_entry("order_status", status, OrderStatus.cancelled.value, actor, reason)]
        if current["payment_status"] == PaymentStatus.completed.value:
            changes["payment_status"] = PaymentStatus.refunded.value
            history.append(history_entry("payment_status", PaymentStatus.completed.value, PaymentStatus.refunded.value, actor, reason))
        if reason:
            changes["notes"] = f"Cancelled: {reason}"

        # guard on the exact state we read so a concurrent cancel cannot release stock twice
        updated = self._transition(
            order_id,
            {"order_status": status, "payment_status": current["payment_status"]},
            changes,
            history,
        )
        if updated is None:
            latest = self._find(order_id)
            raise InvalidTransitionError(latest["order_status"], OrderStatus.cancelled.value, "Order changed while cancelling, retry")

        if current.get("stock_reserved", False):
            self._release_stock(current["items"])
        logger.info("Order %s cancelled%s", updated["order_number"], f": {reason}" if reason else "")
        return serialize_doc(updated)

    def refund(self, order_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Dict[str, Any]:
        updated = self._transition(
            order_id,
            {"payment_status": PaymentStatus.completed.value},
            {"payment_status": PaymentStatus.refunded.value},
            [history_entry("payment_status", PaymentStatus.completed.value, PaymentStatus.refunded.value, actor, reason)],
        )
        if updated is None:
            current = self._find(order_id)
            raise InvalidTransitionError(
                current["payment_status"],
                PaymentStatus.refunded.value,
                "Only orders with a completed payment can be refunded",
            )
        logger.info("Order %s refunded", updated["order_number"])
        return serialize_doc(updated)

    def update_status(
        self,
        order_id: str,
        order_status: Optional[str] = None,
        payment_status: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Administrative override: sets either status to any legal value.

        Only the enums are enforced, not the transition graph, and stock is
        left alone; use cancel() for a stock-aware cancellation.
        """
        if order_status is None and payment_status is None:
            raise ValidationError("orderStatus or paymentStatus is required")
        if order_status is not None and order_status not in {s.value for s in OrderStatus}:
            raise ValidationError(f"Invalid order status: {order_status}")
        if payment_status is not None and payment_status not in {s.value for s in PaymentStatus}:
            raise ValidationError(f"Invalid payment status: {payment_status}")

        current = self._find(order_id)
        reason = reason or "manual override"
        changes: Dict[str, Any] = {}
        history = []
        if order_status is not None:
            changes["order_status"] = order_status
            history.append(history_entry("order_status", current["order_status"], order_status, actor, reason))
        if payment_status is not None:
            changes["payment_status"] = payment_status
            history.append(history_entry("payment_status", current["payment_status"], payment_status, actor, reason))

        updated = self._transition(order_id, {}, changes, history)
        logger.info("Order %s status overridden by %s: %s", updated["order_number"], actor, changes)
        return serialize_doc(updated)

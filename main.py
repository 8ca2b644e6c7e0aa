import logging
import sys
import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import actor_of, authenticate, create_token, require_admin, seed_admin
from config import Settings, get_settings
from database import db, ensure_indexes, get_db
from errors import AppError, RateLimitError, UnauthorizedError
from intake import ContactMessageService, SampleRequestService
from orders import OrderService
from paypal import CurrencyConverter, PayPalCheckout, PayPalClient
from schemas import (
    AssignRequest,
    ContactCategory,
    ContactMessageRequest,
    ContactStatus,
    ContactStatusUpdate,
    NoteRequest,
    OrderCreateRequest,
    OrderStatus,
    OrderStatusUpdate,
    PaymentStatus,
    PayPalOrderRequest,
    ReasonPayload,
    ResponseRequest,
    SampleRequestCreate,
    SampleStatus,
    SampleStatusUpdate,
    SourceDetails,
    SpamRequest,
)

logger = logging.getLogger("maison_darin")


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(h, "_maison_darin", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    handler._maison_darin = True
    root.addHandler(handler)
    root.setLevel(level.upper())


settings = get_settings()
setup_logging(settings.log_level)

# App init
app = FastAPI(title="Maison Darin API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope

def error_response(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in e.get("loc", ()) if part != "body"), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    return error_response(400, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return error_response(exc.status_code, code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "INTERNAL_ERROR", "Internal server error")


# Rate limiting for public submissions

class RateLimiter:
    """Sliding window of request timestamps per client IP."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_prune = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_prune = time.monotonic()

    def _prune(self, now: float, window: float) -> None:
        for key in [k for k, hits in self._hits.items() if not hits or now - hits[-1] > window]:
            del self._hits[key]

    def __call__(self, request: Request, settings: Settings = Depends(get_settings)) -> None:
        key = client_ip(request, settings) or "unknown"
        now = time.monotonic()
        window = settings.public_rate_window
        with self._lock:
            if now - self._last_prune > window:
                self._prune(now, window)
                self._last_prune = now
            hits = self._hits[key]
            while hits and now - hits[0] > window:
                hits.popleft()
            if len(hits) >= settings.public_rate_limit:
                raise RateLimitError("Too many requests, please try again later")
            hits.append(now)

    def __len__(self) -> int:
        return len(self._hits)


public_rate_limit = RateLimiter()


def client_ip(request: Request, settings: Settings) -> Optional[str]:
    """Socket peer, or the nearest untrusted X-Forwarded-For hop when the peer is a trusted proxy."""
    peer = request.client.host if request.client else None
    trusted = set(settings.trusted_proxies)
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def source_details(request: Request, settings: Settings) -> SourceDetails:
    return SourceDetails(
        ip_address=client_ip(request, settings),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
    )


# Service wiring

@lru_cache()
def get_paypal_client() -> PayPalClient:
    return PayPalClient(get_settings())


@lru_cache()
def get_currency_converter() -> CurrencyConverter:
    return CurrencyConverter(get_settings())


def get_order_service(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> OrderService:
    return OrderService(db, settings)


def get_paypal_checkout(
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    orders: OrderService = Depends(get_order_service),
    client: PayPalClient = Depends(get_paypal_client),
    converter: CurrencyConverter = Depends(get_currency_converter),
) -> PayPalCheckout:
    return PayPalCheckout(db, settings, orders, client, converter)


def get_contact_service(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> ContactMessageService:
    return ContactMessageService(db, settings)


def get_sample_service(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> SampleRequestService:
    return SampleRequestService(db, settings)


# Request models

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# Routes
@app.get("/")
def root():
    return {"message": "Maison Darin API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/auth/login")
def login(req: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = authenticate(db, req.email, req.password)
    if not user:
        raise UnauthorizedError("Invalid credentials")
    token = create_token(user, settings)
    return {"token": token, "user": {"id": str(user["_id"]), "email": user["email"], "role": user.get("role")}}


# Payment methods
@app.get("/api/payment-methods")
def list_payment_methods(settings: Settings = Depends(get_settings)):
    return [
        dict(method.model_dump(exclude={"enabled"}), name=name)
        for name, method in settings.payment_methods.items()
        if method.enabled
    ]


# Orders
@app.post("/api/orders", status_code=201, dependencies=[Depends(public_rate_limit)])
def create_order(req: OrderCreateRequest, orders: OrderService = Depends(get_order_service)):
    return orders.create_order(req)


@app.get("/api/orders/track/{order_number}")
def track_order(order_number: str, orders: OrderService = Depends(get_order_service)):
    order = orders.get_order_by_number(order_number)
    return {
        key: order.get(key)
        for key in ("order_number", "order_status", "payment_status", "total", "currency", "items", "created_at")
    }


@app.get("/api/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="orderStatus"),
    payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    sort: Optional[str] = None,
    orders: OrderService = Depends(get_order_service),
    admin=Depends(require_admin),
):
    return orders.list_orders(
        page=page,
        limit=limit,
        order_status=order_status.value if order_status else None,
        payment_status=payment_status.value if payment_status else None,
        start_date=start_date,
        end_date=end_date,
        search=search,
        sort=sort,
    )


@app.get("/api/orders/stats")
def order_stats(orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.stats()


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.get_order(order_id)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.update_status(
        order_id,
        order_status=payload.order_status,
        payment_status=payload.payment_status,
        reason=payload.reason,
        actor=actor_of(admin),
    )


@app.put("/api/orders/{order_id}/confirm")
def confirm_order(order_id: str, orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.confirm(order_id, actor=actor_of(admin))


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[ReasonPayload] = None, orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.cancel(order_id, reason=payload.reason if payload else None, actor=actor_of(admin))


@app.put("/api/orders/{order_id}/refund")
def refund_order(order_id: str, payload: Optional[ReasonPayload] = None, orders: OrderService = Depends(get_order_service), admin=Depends(require_admin)):
    return orders.refund(order_id, reason=payload.reason if payload else None, actor=actor_of(admin))


# PayPal
@app.get("/api/paypal/config")
def paypal_config(checkout: PayPalCheckout = Depends(get_paypal_checkout)):
    return checkout.public_config()


@app.post("/api/paypal/orders", dependencies=[Depends(public_rate_limit)])
def create_paypal_order(req: PayPalOrderRequest, checkout: PayPalCheckout = Depends(get_paypal_checkout)):
    return checkout.create(req)


@app.post("/api/paypal/orders/{token}/capture")
def capture_paypal_order(token: str, checkout: PayPalCheckout = Depends(get_paypal_checkout)):
    return checkout.capture(token)


@app.post("/api/paypal/orders/{token}/cancel")
def cancel_paypal_order(token: str, checkout: PayPalCheckout = Depends(get_paypal_checkout)):
    return checkout.cancel(token)


# Contact messages
@app.post("/api/contact", status_code=201, dependencies=[Depends(public_rate_limit)])
def submit_contact(req: ContactMessageRequest, request: Request, settings: Settings = Depends(get_settings), contact: ContactMessageService = Depends(get_contact_service)):
    message = contact.submit(req, source_details(request, settings))
    return {
        "success": True,
        "id": message["id"],
        "message_number": message["message_number"],
        "status": message["status"],
    }


@app.get("/api/contact")
def list_contact_messages(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[ContactStatus] = None,
    category: Optional[ContactCategory] = None,
    include_spam: bool = Query(False, alias="includeSpam"),
    search: Optional[str] = None,
    sort: Optional[str] = None,
    contact: ContactMessageService = Depends(get_contact_service),
    admin=Depends(require_admin),
):
    return contact.list(
        page=page,
        limit=limit,
        status=status.value if status else None,
        category=category.value if category else None,
        include_spam=include_spam,
        search=search,
        sort=sort,
    )


@app.get("/api/contact/stats")
def contact_stats(contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.stats()


@app.get("/api/contact/{message_id}")
def get_contact_message(message_id: str, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.get(message_id)


@app.put("/api/contact/{message_id}/status")
def update_contact_status(message_id: str, payload: ContactStatusUpdate, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.transition(message_id, payload.status, actor_of(admin), payload.reason)


@app.post("/api/contact/{message_id}/notes")
def add_contact_note(message_id: str, payload: NoteRequest, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.add_note(message_id, payload.note, actor_of(admin), payload.is_internal)


@app.put("/api/contact/{message_id}/assign")
def assign_contact_message(message_id: str, payload: AssignRequest, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.assign(message_id, payload.user_id, actor_of(admin))


@app.post("/api/contact/{message_id}/responses")
def respond_to_contact_message(message_id: str, payload: ResponseRequest, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.add_response(message_id, payload.message, actor_of(admin), payload.method)


@app.put("/api/contact/{message_id}/spam")
def mark_contact_spam(message_id: str, payload: Optional[SpamRequest] = None, contact: ContactMessageService = Depends(get_contact_service), admin=Depends(require_admin)):
    return contact.mark_spam(message_id, actor_of(admin), payload.reasons if payload else None)


# Sample requests
@app.post("/api/samples/request", status_code=201, dependencies=[Depends(public_rate_limit)])
def submit_sample_request(req: SampleRequestCreate, request: Request, settings: Settings = Depends(get_settings), samples: SampleRequestService = Depends(get_sample_service)):
    sample = samples.submit(req, source_details(request, settings))
    return {
        "success": True,
        "id": sample["id"],
        "request_number": sample["request_number"],
        "status": sample["status"],
        "is_duplicate": sample["is_duplicate"],
    }


@app.get("/api/samples")
def list_sample_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[SampleStatus] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    samples: SampleRequestService = Depends(get_sample_service),
    admin=Depends(require_admin),
):
    return samples.list(page=page, limit=limit, status=status.value if status else None, search=search, sort=sort)


@app.get("/api/samples/stats")
def sample_stats(samples: SampleRequestService = Depends(get_sample_service), admin=Depends(require_admin)):
    return samples.stats()


@app.get("/api/samples/{request_id}")
def get_sample_request(request_id: str, samples: SampleRequestService = Depends(get_sample_service), admin=Depends(require_admin)):
    return samples.get(request_id)


@app.put("/api/samples/{request_id}/status")
def update_sample_status(request_id: str, payload: SampleStatusUpdate, samples: SampleRequestService = Depends(get_sample_service), admin=Depends(require_admin)):
    return samples.transition(request_id, payload.status, actor_of(admin), payload.reason, payload.tracking_number)


@app.post("/api/samples/{request_id}/notes")
def add_sample_note(request_id: str, payload: NoteRequest, samples: SampleRequestService = Depends(get_sample_service), admin=Depends(require_admin)):
    return samples.add_note(request_id, payload.note, actor_of(admin), payload.is_internal)


@app.on_event("startup")
def prepare_database():
    try:
        ensure_indexes(db)
        seed_admin(db, settings)
    except Exception:
        logger.exception("Database preparation failed; continuing without it")


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

"""Application errors, rendered by the central handler in main.py."""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for all API errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404


class OrderNotFoundError(NotFoundError):
    """Raised when an order id, number or PayPal token matches no order."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class InvalidTransitionError(AppError):
    """Raised when a status change breaks the business rules."""

    code = "INVALID_TRANSITION"
    status_code = 400

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Invalid status transition from {current} to {target}",
            {"current": current, "target": target},
        )


class InsufficientStockError(AppError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400

    def __init__(self, product_id: str, requested: int, available: int, name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or product_id
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}",
            {"product": product_id, "requested": requested, "available": available},
        )


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(AppError):
    code = "FORBIDDEN"
    status_code = 403


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429


class PaymentProviderError(AppError):
    """Raised when PayPal rejects a call or cannot be reached."""

    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        provider_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider_code = provider_code
        details = dict(details or {})
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, details or None)


class OrderNumberExhaustedError(AppError):
    code = "ORDER_NUMBER_EXHAUSTED"
    status_code = 500

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique reference after {attempts} attempts")

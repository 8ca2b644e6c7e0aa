"""
Runtime configuration for the Maison Darin API.

Settings are read once from the environment (a local .env file is honoured)
and handed to services through FastAPI dependencies.
"""
import os
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


PAYMENT_METHODS = ["paypal", "card", "bank_transfer", "cash_on_delivery", "mobile_wallet"]

FALLBACK_RATES: Dict[str, float] = {
    "SAR": 1.0,
    "USD": 0.27,
    "EUR": 0.24,
    "GBP": 0.21,
}


class PaymentMethodConfig(BaseModel):
    """Storefront-facing configuration of a single payment method."""
    display_name: str
    description: Optional[str] = None
    enabled: bool = True
    pre_authorized: bool = False
    min_amount: float = Field(0, ge=0)
    max_amount: Optional[float] = Field(None, ge=0)
    fixed_fee: float = Field(0, ge=0)
    percentage_fee: float = Field(0, ge=0, le=100)

    def fee_for(self, amount: float) -> float:
        return round(self.fixed_fee + amount * self.percentage_fee / 100, 2)


def default_payment_methods() -> Dict[str, PaymentMethodConfig]:
    return {
        "paypal": PaymentMethodConfig(display_name="PayPal", description="Pay securely with PayPal"),
        "card": PaymentMethodConfig(display_name="Credit / Debit Card"),
        "bank_transfer": PaymentMethodConfig(display_name="Bank Transfer"),
        "cash_on_delivery": PaymentMethodConfig(display_name="Cash on Delivery"),
        "mobile_wallet": PaymentMethodConfig(display_name="Mobile Wallet"),
    }


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "maison_darin"

    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    cors_origins: List[str] = ["*"]
    trusted_proxies: List[str] = Field(default_factory=list)
    log_level: str = "INFO"

    site_currency: str = "SAR"
    payment_methods: Dict[str, PaymentMethodConfig] = Field(default_factory=default_payment_methods)

    paypal_enabled: bool = False
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_environment: str = "sandbox"
    paypal_currency: str = "USD"
    paypal_timeout: float = 15.0
    paypal_brand_name: str = "Maison Darin"
    paypal_return_url: str = "http://localhost:8080/payment/return"
    paypal_cancel_url: str = "http://localhost:8080/checkout/cancel"

    exchange_rate_url: Optional[str] = "https://api.exchangerate-api.com/v4/latest/{base}"
    exchange_rate_ttl: int = 3600
    fallback_rates: Dict[str, float] = Field(default_factory=lambda: dict(FALLBACK_RATES))

    duplicate_window_days: int = 30
    spam_threshold: int = 70
    contact_hourly_limit: int = 50
    contact_daily_limit: int = 100

    public_rate_limit: int = 100
    public_rate_window: int = 15 * 60

    @property
    def paypal_configured(self) -> bool:
        return self.paypal_enabled and bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return default
    return [v.strip() for v in value.split(",") if v.strip()]


def load_settings() -> Settings:
    """Build Settings from environment variables, falling back to defaults."""
    load_dotenv()
    defaults = Settings()
    methods = default_payment_methods()
    # PAYMENT_METHODS_DISABLED=card,mobile_wallet switches methods off without code changes
    for name in _env_list("PAYMENT_METHODS_DISABLED", []):
        if name in methods:
            methods[name].enabled = False
    for name in _env_list("PAYMENT_METHODS_PREAUTHORIZED", []):
        if name in methods:
            methods[name].pre_authorized = True

    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        database_name=os.getenv("DATABASE_NAME", defaults.database_name),
        jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
        jwt_expire_hours=int(os.getenv("JWT_EXPIRE_HOURS", defaults.jwt_expire_hours)),
        admin_email=os.getenv("ADMIN_EMAIL"),
        admin_password=os.getenv("ADMIN_PASSWORD"),
        cors_origins=_env_list("CORS_ORIGINS", defaults.cors_origins),
        trusted_proxies=_env_list("TRUSTED_PROXIES", []),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        site_currency=os.getenv("SITE_CURRENCY", defaults.site_currency),
        payment_methods=methods,
        paypal_enabled=_env_bool("PAYPAL_ENABLED"),
        paypal_client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
        paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET", ""),
        paypal_environment=os.getenv("PAYPAL_ENVIRONMENT", defaults.paypal_environment),
        paypal_currency=os.getenv("PAYPAL_CURRENCY", defaults.paypal_currency),
        paypal_timeout=float(os.getenv("PAYPAL_TIMEOUT", defaults.paypal_timeout)),
        paypal_brand_name=os.getenv("PAYPAL_BRAND_NAME", defaults.paypal_brand_name),
        paypal_return_url=os.getenv("PAYPAL_RETURN_URL", defaults.paypal_return_url),
        paypal_cancel_url=os.getenv("PAYPAL_CANCEL_URL", defaults.paypal_cancel_url),
        exchange_rate_url=os.getenv("EXCHANGE_RATE_URL", defaults.exchange_rate_url) or None,
        exchange_rate_ttl=int(os.getenv("EXCHANGE_RATE_TTL", defaults.exchange_rate_ttl)),
        duplicate_window_days=int(os.getenv("DUPLICATE_WINDOW_DAYS", defaults.duplicate_window_days)),
        spam_threshold=int(os.getenv("SPAM_THRESHOLD", defaults.spam_threshold)),
        contact_hourly_limit=int(os.getenv("CONTACT_HOURLY_LIMIT", defaults.contact_hourly_limit)),
        contact_daily_limit=int(os.getenv("CONTACT_DAILY_LIMIT", defaults.contact_daily_limit)),
        public_rate_limit=int(os.getenv("PUBLIC_RATE_LIMIT", defaults.public_rate_limit)),
        public_rate_window=int(os.getenv("PUBLIC_RATE_WINDOW", defaults.public_rate_window)),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()

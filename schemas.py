"""
Database Schemas for the Maison Darin storefront

Each Pydantic model maps to a MongoDB collection (lowercased class name).

Collections:
- product
- order
- contactmessage
- samplerequest
- user

Request payloads accept camelCase or snake_case keys; documents are stored in
snake_case.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator
from pydantic.alias_generators import to_camel


PHONE_PATTERN = r"^[\+]?[0-9\s\-\(\)]{7,20}$"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class CamelModel(Document):
    model_config = ConfigDict(use_enum_values=True, alias_generator=to_camel, populate_by_name=True)


# Enums

class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class PaymentMethod(str, Enum):
    paypal = "paypal"
    card = "card"
    bank_transfer = "bank_transfer"
    cash_on_delivery = "cash_on_delivery"
    mobile_wallet = "mobile_wallet"


class ContactStatus(str, Enum):
    new = "new"
    read = "read"
    in_progress = "in_progress"
    resolved = "resolved"
    closed = "closed"


class ContactCategory(str, Enum):
    general_inquiry = "general_inquiry"
    product_question = "product_question"
    order_support = "order_support"
    sample_request = "sample_request"
    partnership = "partnership"
    complaint = "complaint"
    compliment = "compliment"
    technical_support = "technical_support"
    wholesale_inquiry = "wholesale_inquiry"
    media_press = "media_press"
    other = "other"


class SampleStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"


class Priority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class Language(str, Enum):
    en = "en"
    ar = "ar"


class ProductCategory(str, Enum):
    floral = "floral"
    oriental = "oriental"
    fresh = "fresh"
    woody = "woody"
    citrus = "citrus"
    gourmand = "gourmand"


class Role(str, Enum):
    admin = "admin"
    customer = "customer"


# Shared sub-documents

class LocalizedText(Document):
    en: str
    ar: str = ""


class StatusChange(Document):
    """One append-only audit entry; `field` names the status that moved."""
    field: str = "status"
    from_status: Optional[str] = None
    to_status: str
    changed_at: datetime
    changed_by: Optional[str] = None
    reason: Optional[str] = None


class AdminNote(Document):
    note: str = Field(..., max_length=500)
    added_by: str
    added_at: datetime
    is_internal: bool = True


class SourceDetails(Document):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None


# Collections

class User(Document):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Login email")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Role.customer
    is_active: bool = True


class Product(Document):
    """
    Products collection schema
    Collection name: "product"

    Owned by the catalog; orders only read it and adjust stock.
    """
    name: LocalizedText
    description: Optional[LocalizedText] = None
    price: float = Field(..., ge=0, description="Price in the site currency")
    stock: int = Field(0, ge=0, description="Units in stock")
    in_stock: bool = True
    category: ProductCategory
    images: List[str] = Field(default_factory=list)


class OrderItem(Document):
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price snapshot")
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)


class CustomerInfo(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    total: float = Field(..., ge=0, description="Sum of line subtotals")
    payment_fee: float = Field(0, ge=0, description="Method fee, informational only")
    currency: str = "SAR"
    customer_info: CustomerInfo
    payment_method: PaymentMethod
    order_status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    stock_reserved: bool = True
    status_history: List[StatusChange] = Field(default_factory=list)
    paypal_capture_id: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None


class ContactCustomer(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    company: Optional[str] = Field(None, max_length=100)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


class ContactResponse(Document):
    message: str = Field(..., max_length=2000)
    sent_by: str
    sent_at: datetime
    method: str = "email"


class ContactMessage(Document):
    """
    Contact messages collection schema
    Collection name: "contactmessage"
    """
    message_number: str
    customer_info: ContactCustomer
    subject: str
    message: str
    category: ContactCategory = ContactCategory.general_inquiry
    priority: Priority = Priority.normal
    preferred_language: Language = Language.en
    status: ContactStatus = ContactStatus.new
    assigned_to: Optional[str] = None
    admin_notes: List[AdminNote] = Field(default_factory=list)
    responses: List[ContactResponse] = Field(default_factory=list)
    status_history: List[StatusChange] = Field(default_factory=list)
    duplicate_hash: str
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    spam_score: int = Field(0, ge=0, le=100)
    is_spam: bool = False
    spam_reasons: List[str] = Field(default_factory=list)
    source_details: SourceDetails = Field(default_factory=SourceDetails)


class SampleAddress(CamelModel):
    street: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)


class SampleCustomer(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: SampleAddress

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


class RequestedSample(Document):
    product_id: str
    product_name: LocalizedText
    quantity: int = Field(..., ge=1, le=5)
    sample_size: str = "2ml"


class ShippingInfo(Document):
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class SampleRequest(Document):
    """
    Sample requests collection schema
    Collection name: "samplerequest"
    """
    request_number: str
    customer_info: SampleCustomer
    requested_products: List[RequestedSample]
    message: Optional[str] = None
    preferred_language: Language = Language.en
    priority: Priority = Priority.normal
    status: SampleStatus = SampleStatus.pending
    admin_notes: List[AdminNote] = Field(default_factory=list)
    status_history: List[StatusChange] = Field(default_factory=list)
    shipping_info: ShippingInfo = Field(default_factory=ShippingInfo)
    duplicate_hash: str
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    source_details: SourceDetails = Field(default_factory=SourceDetails)


# Request payloads

class OrderItemRequest(CamelModel):
    product: str = Field(..., min_length=1, description="Product id")
    quantity: int = Field(..., ge=1, le=100)


class OrderCreateRequest(CamelModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    customer_info: CustomerInfo
    payment_method: PaymentMethod
    total: Optional[float] = Field(None, ge=0, description="Client total, verified server side")
    notes: Optional[str] = Field(None, max_length=1000)


class PayPalOrderData(CamelModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    customer_info: CustomerInfo
    notes: Optional[str] = Field(None, max_length=1000)


class PayPalOrderRequest(CamelModel):
    amount: float = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    order_data: PayPalOrderData


class OrderStatusUpdate(CamelModel):
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    reason: Optional[str] = Field(None, max_length=200)


class ReasonPayload(CamelModel):
    reason: Optional[str] = Field(None, max_length=200)


class ContactMessageRequest(CamelModel):
    customer_info: ContactCustomer
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    category: ContactCategory = ContactCategory.general_inquiry
    priority: Priority = Priority.normal
    preferred_language: Language = Language.en


class SampleItemRequest(CamelModel):
    product: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=5)
    sample_size: str = Field("2ml", pattern=r"^(1ml|2ml|5ml)$")


class SampleRequestCreate(CamelModel):
    customer_info: SampleCustomer
    requested_products: List[SampleItemRequest] = Field(..., min_length=1, max_length=10)
    message: Optional[str] = Field(None, max_length=1000)
    preferred_language: Language = Language.en


class ContactStatusUpdate(CamelModel):
    status: ContactStatus
    reason: Optional[str] = Field(None, max_length=200)


class SampleStatusUpdate(CamelModel):
    status: SampleStatus
    reason: Optional[str] = Field(None, max_length=200)
    tracking_number: Optional[str] = Field(None, max_length=100)


class NoteRequest(CamelModel):
    note: str = Field(..., min_length=1, max_length=500)
    is_internal: bool = True


class AssignRequest(CamelModel):
    user_id: str = Field(..., min_length=1)


class ResponseRequest(CamelModel):
    message: str = Field(..., min_length=1, max_length=2000)
    method: str = Field("email", pattern=r"^(email|phone|internal)$")


class SpamRequest(CamelModel):
    reasons: List[str] = Field(default_factory=list)

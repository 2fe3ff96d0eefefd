# schemas/checkout_models.py
# ============================================================================
# STOREFRONT CHECKOUT CORE v1.0 — DOMAIN + API SCHEMAS
# ============================================================================
# Orders, order-item snapshots, collaborator aggregates, gateway webhook
# envelope and the request/response models of the checkout API.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Any, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED})


class ReconciliationOutcome(str, Enum):
    """What a confirmation signal did to its order."""
    PAID = "paid"
    CANCELLED = "cancelled"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"
    HELD_FOR_REVIEW = "held_for_review"
    IGNORED = "ignored"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    GATEWAY_ORDER_CREATED = "gateway_order.created"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_ALREADY_PROCESSED = "payment.already_processed"
    SIGNATURE_INVALID = "signature.invalid"
    STOCK_OVERSOLD = "stock.oversold"
    STOCK_SHORTFALL = "stock.shortfall"


# ============================================================================
# SECTION 2: MONEY
# ============================================================================

# ISO 4217 minor-unit exponents that differ from the usual 2
CURRENCY_EXPONENTS: Dict[str, int] = {
    "JPY": 0, "KRW": 0, "VND": 0, "CLP": 0, "ISK": 0, "UGX": 0,
    "BHD": 3, "KWD": 3, "OMR": 3, "JOD": 3, "TND": 3,
}


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the gateway's integer minor units."""
    scale = Decimal(10) ** currency_exponent(currency)
    return int((Decimal(amount) * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


# ============================================================================
# SECTION 3: COLLABORATOR AGGREGATES
# ============================================================================

class User(BaseModel):
    """Account record owned by the authentication service."""
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    mobile_number: Optional[str] = None


class Product(BaseModel):
    """Catalog product; referenced by orders, never owned by them."""
    id: int
    name: str
    price: Decimal
    currency: str = "INR"
    stock_qty: int = Field(default=0, ge=0)
    active: bool = True
    images: List[str] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class CartItem(BaseModel):
    product: Product
    quantity: int = Field(ge=1)
    unit_price_snapshot: Optional[Decimal] = None

    @property
    def unit_price(self) -> Decimal:
        if self.unit_price_snapshot is not None:
            return self.unit_price_snapshot
        return self.product.price

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    id: Optional[int] = None
    user_id: int
    items: List[CartItem] = Field(default_factory=list)


class Address(BaseModel):
    id: int
    user_id: int
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    zip: Optional[str] = None
    country: str
    phone: Optional[str] = None
    is_default: bool = False

    def format(self) -> str:
        """Render the multi-line shipping label frozen onto an order."""
        text = self.line1
        if self.line2 and self.line2.strip():
            text += f", {self.line2}"
        text += f"\n{self.city}"
        if self.state and self.state.strip():
            text += f", {self.state}"
        if self.zip and self.zip.strip():
            text += f" - {self.zip}"
        text += f"\n{self.country}"
        if self.phone and self.phone.strip():
            text += f"\nPhone: {self.phone}"
        return text


# ============================================================================
# SECTION 4: ORDER LEDGER ENTITIES
# ============================================================================

class IllegalTransitionError(ValueError):
    """An order in a terminal status was asked to change status again."""


TRANSITION_FIELDS = ("status", "payment_id", "paid_at", "failure_reason")


class OrderItem(BaseModel):
    """Immutable copy of a cart line at order-creation time."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    product_id: int
    name: str
    unit_price: Decimal
    unit_price_minor: int
    quantity: int = Field(ge=1)
    image_url: Optional[str] = None

    @computed_field
    @property
    def subtotal_minor(self) -> int:
        return self.unit_price_minor * self.quantity

    @classmethod
    def snapshot(cls, item: CartItem, currency: str) -> "OrderItem":
        product = item.product
        return cls(
            product_id=product.id,
            name=product.name,
            unit_price=item.unit_price,
            unit_price_minor=to_minor_units(item.unit_price, currency),
            quantity=item.quantity,
            image_url=product.images[0] if product.images else None,
        )


class Order(BaseModel):
    """Core order entity and the single source of truth for payment state."""
    id: Optional[int] = None
    user_id: int
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    items: List[OrderItem] = Field(default_factory=list)

    total_minor: int
    currency: str

    status: OrderStatus = OrderStatus.PENDING
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    shipping_address: Optional[str] = None
    address_id: Optional[int] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return from_minor_units(self.total_minor, self.currency)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_fields(self) -> Dict[str, Any]:
        """Columns a status transition writes, for a guarded update."""
        return {name: getattr(self, name) for name in TRANSITION_FIELDS}

    def mark_paid(self, payment_id: str, paid_at: datetime) -> "Order":
        if self.status != OrderStatus.PENDING:
            raise IllegalTransitionError(f"Order {self.id} is {self.status.value}, cannot mark paid")
        return self.model_copy(update={
            "status": OrderStatus.PAID,
            "payment_id": payment_id,
            "paid_at": paid_at,
            "updated_at": paid_at,
        })

    def mark_cancelled(self, reason: Optional[str] = None) -> "Order":
        if self.status != OrderStatus.PENDING:
            raise IllegalTransitionError(f"Order {self.id} is {self.status.value}, cannot cancel")
        return self.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "failure_reason": reason,
            "updated_at": utcnow(),
        })


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "webhook", "product"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "client"


# ============================================================================
# SECTION 5: GATEWAY WEBHOOK ENVELOPE
# ============================================================================

class WebhookPaymentError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    code: Optional[str] = None
    description: Optional[str] = None


class WebhookPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    order_id: str
    status: Optional[str] = None
    error_description: Optional[str] = None
    error: Optional[WebhookPaymentError] = None

    @property
    def failure_description(self) -> str:
        if self.error_description:
            return self.error_description
        if self.error and self.error.description:
            return self.error.description
        return "Payment failed"


class WebhookPaymentWrapper(BaseModel):
    model_config = ConfigDict(extra="ignore")
    entity: WebhookPaymentEntity


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    payment: Optional[WebhookPaymentWrapper] = None


class WebhookEnvelope(BaseModel):
    """Server-to-server event pushed by the gateway."""
    model_config = ConfigDict(extra="ignore")
    event: str
    payload: WebhookPayload = Field(default_factory=WebhookPayload)

    @property
    def payment_entity(self) -> Optional[WebhookPaymentEntity]:
        return self.payload.payment.entity if self.payload.payment else None


# ============================================================================
# SECTION 6: API MODELS
# ============================================================================

class CreateOrderRequest(BaseModel):
    address_id: Optional[int] = None


class PaymentPrefill(BaseModel):
    name: str = ""
    email: str = ""
    contact: str = ""


class CreateOrderResult(BaseModel):
    """Everything the client needs to open the gateway's checkout widget."""
    gateway_order_id: str
    amount_minor: int
    currency: str
    key_id: str
    internal_order_id: int
    test_mode: bool
    prefill: PaymentPrefill


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class VerifyPaymentResult(BaseModel):
    success: bool
    order_id: int
    message: str


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: Optional[ReconciliationOutcome] = None


class OrderView(BaseModel):
    """Client-facing order projection."""
    id: int
    status: OrderStatus
    total_amount: Decimal
    total_minor: int
    currency: str
    items: List[OrderItem]
    shipping_address: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderView":
        return cls(
            id=order.id,
            status=order.status,
            total_amount=order.total_amount,
            total_minor=order.total_minor,
            currency=order.currency,
            items=order.items,
            shipping_address=order.shipping_address,
            paid_at=order.paid_at,
            created_at=order.created_at,
        )


class ErrorResponse(BaseModel):
    success: bool = False
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

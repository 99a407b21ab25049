"""
Pydantic models for carts, orders and payments: domain records, requests, and responses.

Domain records are frozen. A state change produces a new record through
``transition`` so every status move is checked against the transition tables below.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from evmarket.exceptions import InvalidRequestError, InvalidStateError

# Namespace for deterministic cart line ids
LINE_NAMESPACE = uuid.UUID("6f1c2b0e-8a4d-4d3e-9b57-2f0c9e5d7a11")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ItemKind(str, Enum):
    VEHICLE = "VEHICLE"
    ACCESSORY = "ACCESSORY"


class VehicleStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    PENDING = "PENDING"
    SOLD = "SOLD"


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PAID = "PAID"
    CANCELED = "CANCELED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PLACED: frozenset({OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({OrderStatus.CANCELED}),
    OrderStatus.CANCELED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.APPROVED, PaymentStatus.DENIED}),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.DENIED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def parse_kind(value) -> ItemKind:
    """Coerce a client-supplied item kind, rejecting anything unsupported"""
    if isinstance(value, ItemKind):
        return value
    try:
        return ItemKind(str(value).upper())
    except ValueError:
        raise InvalidRequestError(f"Unsupported item kind: {value}")


# Catalog records

class Vehicle(BaseModel):
    """Catalog view of a vehicle listing"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Vehicle identifier")
    name: str = Field("", description="Display name")
    price: Decimal = Field(..., ge=0, description="Current listing price")
    status: VehicleStatus = Field(VehicleStatus.AVAILABLE, description="Availability")


class Accessory(BaseModel):
    """Catalog view of an accessory"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Accessory identifier")
    name: str = Field("", description="Display name")
    price: Decimal = Field(..., ge=0, description="Current price")


# Cart

class CartItem(BaseModel):
    """Cart line; at most one per (kind, referenced_id)"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Line identifier")
    kind: ItemKind = Field(..., description="VEHICLE or ACCESSORY")
    referenced_id: str = Field(..., description="Vehicle or accessory identifier")
    unit_price: Decimal = Field(..., ge=0, description="Catalog price captured at insertion")
    quantity: int = Field(..., ge=1, description="Item quantity")

    @model_validator(mode="after")
    def vehicles_are_single_units(self) -> "CartItem":
        if self.kind == ItemKind.VEHICLE and self.quantity != 1:
            raise ValueError("Vehicle lines always have quantity 1")
        return self

    @staticmethod
    def line_id(kind: ItemKind, referenced_id: str) -> str:
        return str(uuid.uuid5(LINE_NAMESPACE, f"{kind.value}:{referenced_id}"))

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    """A user's cart. One per user, created lazily."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Cart identifier")
    user_id: str = Field(..., description="Owning user")
    items: Tuple[CartItem, ...] = Field(default_factory=tuple)

    def find_item(self, item_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def find_line(self, kind: ItemKind, referenced_id: str) -> Optional[CartItem]:
        return self.find_item(CartItem.line_id(kind, referenced_id))

    def with_item(self, item: CartItem) -> "Cart":
        """Replace the line with the same id, or append it"""
        if self.find_item(item.id) is None:
            return self.model_copy(update={"items": self.items + (item,)})
        items = tuple(item if existing.id == item.id else existing for existing in self.items)
        return self.model_copy(update={"items": items})

    def without_item(self, item_id: str) -> "Cart":
        items = tuple(item for item in self.items if item.id != item_id)
        return self.model_copy(update={"items": items})

    def cleared(self) -> "Cart":
        return self.model_copy(update={"items": ()})

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def total_price(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))


# Orders

class OrderItem(BaseModel):
    """Frozen snapshot of a purchased line"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: ItemKind
    referenced_id: str
    unit_price: Decimal
    quantity: int = Field(..., ge=1)
    line_total: Decimal


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Order identifier")
    user_id: str
    status: OrderStatus = OrderStatus.PLACED
    total_price: Decimal
    items: Tuple[OrderItem, ...]
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def vehicle_ids(self) -> List[str]:
        return [item.referenced_id for item in self.items if item.kind == ItemKind.VEHICLE]

    def transition(self, status: OrderStatus) -> "Order":
        if status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Order {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status, "updated_at": utcnow()})


# Payments

class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Payment identifier")
    user_id: str
    order_id: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str
    transaction_id: str = Field(default_factory=new_id)
    failure_reason: Optional[str] = None
    billing_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def transition(self, status: PaymentStatus, failure_reason: Optional[str] = None) -> "Payment":
        if status not in PAYMENT_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Payment {self.id} cannot move from {self.status.value} to {status.value}"
            )
        update = {"status": status, "updated_at": utcnow()}
        if failure_reason is not None:
            update["failure_reason"] = failure_reason
        return self.model_copy(update=update)


class PaymentSession(BaseModel):
    """Cart pinned by begin-payment, consumed once by commit"""
    model_config = ConfigDict(frozen=True)

    cart_id: str
    cart_checksum: str
    created_at: datetime = Field(default_factory=utcnow)


# Requests

class CartItemRequest(BaseModel):
    """Request model for adding items to a cart"""
    kind: str = Field(..., description="VEHICLE or ACCESSORY")
    referenced_id: str = Field(..., description="Vehicle or accessory identifier")
    quantity: int = Field(1, description="Requested quantity (vehicles are always 1)")
    unit_price: Optional[Decimal] = Field(None, description="Ignored; the catalog price is used")


class UpdateQuantityRequest(BaseModel):
    """Request model for changing a cart line quantity"""
    quantity: int = Field(..., ge=0, description="New quantity; 0 removes the line")


class OrderItemRequest(BaseModel):
    kind: str = Field(..., description="VEHICLE or ACCESSORY")
    referenced_id: str = Field(..., description="Vehicle or accessory identifier")
    quantity: int = Field(1, description="Requested quantity (vehicles are always 1)")


class CreateOrderRequest(BaseModel):
    """Request model for creating an order from an explicit item list"""
    items: List[OrderItemRequest] = Field(default_factory=list)


class PaymentRequest(BaseModel):
    """Payment details. Card data is validated but never stored."""
    payment_method: str = Field(..., min_length=1, description="e.g. CREDIT_CARD")
    card_holder_name: Optional[str] = None
    card_number: Optional[str] = None
    expiry_date: Optional[str] = None
    cvv: Optional[str] = None
    address: Optional[str] = Field(None, description="Billing address")

    @field_validator("card_number")
    @classmethod
    def validate_card_number(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        digits = v.replace(" ", "").replace("-", "")
        if not digits.isdigit():
            raise ValueError("Card number must contain only digits")
        return digits


# Responses

class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    cart_id: str
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: Decimal = Decimal("0")

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            cart_id=cart.id,
            user_id=cart.user_id,
            items=list(cart.items),
            total_items=cart.total_items,
            total_price=cart.total_price,
        )


class PaymentSessionResponse(BaseModel):
    cart_id: str
    cart_checksum: str
    expires_in_seconds: int


class PaymentResponse(BaseModel):
    id: str
    user_id: str
    order_id: str
    amount: Decimal
    status: PaymentStatus
    payment_method: str
    transaction_id: str
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    message: str

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        messages = {
            PaymentStatus.PENDING: "Payment pending",
            PaymentStatus.APPROVED: "Payment approved",
            PaymentStatus.DENIED: "Payment denied",
            PaymentStatus.REFUNDED: "Payment refunded",
        }
        return cls(
            **payment.model_dump(exclude={"billing_address"}),
            message=messages[payment.status],
        )

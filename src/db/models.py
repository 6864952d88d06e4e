# provide dataclass models

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, Optional

CENT = Decimal("0.01")

# units sold by weight or volume accept fractional quantities
FRACTIONAL_UNITS = frozenset({"kg", "g", "l", "ml"})


def to_money(value) -> Decimal:
    """Round to cents, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SUPPLIER = "supplier"


# highest priority first, used to pick the default active role
ROLE_PRECEDENCE = (Role.SELLER, Role.SUPPLIER, Role.BUYER)


class OrderStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


@dataclass(frozen=True)
class Session:
    token: str
    identity_id: str
    email: str
    expires_at: Optional[datetime] = None


class SessionEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    session: Optional[Session] = None


@dataclass(frozen=True)
class Profile:
    identity_id: str
    display_name: str
    is_buyer: bool = True
    is_seller: bool = False
    is_supplier: bool = False

    def has_role(self, role: Role) -> bool:
        return {
            Role.BUYER: self.is_buyer,
            Role.SELLER: self.is_seller,
            Role.SUPPLIER: self.is_supplier,
        }[Role(role)]

    def default_role(self) -> Role:
        for role in ROLE_PRECEDENCE:
            if self.has_role(role):
                return role
        return Role.BUYER


@dataclass(frozen=True)
class Product:
    id: str
    vendor_id: Optional[str]
    name: str
    category: str
    unit_price: Decimal
    unit_type: str = "unit"
    stock_quantity: int = 0
    is_active: bool = True

    def snapshot(self) -> "ProductSnapshot":
        return ProductSnapshot(
            id=self.id,
            name=self.name,
            vendor_id=self.vendor_id,
            unit_price=self.unit_price,
            unit_type=self.unit_type,
        )


@dataclass(frozen=True)
class ProductSnapshot:
    """Product fields captured when an item is put in the cart."""

    id: str
    name: str
    vendor_id: Optional[str]
    unit_price: Decimal
    unit_type: str = "unit"

    @property
    def allows_fractions(self) -> bool:
        return self.unit_type.lower() in FRACTIONAL_UNITS


@dataclass(frozen=True)
class CartItem:
    product: ProductSnapshot
    quantity: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.product.unit_price * self.quantity


@dataclass(frozen=True)
class Order:
    id: str
    customer_id: str
    vendor_id: str
    total_price: Decimal
    status: OrderStatus
    shipping_address: str
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderLineItem:
    order_id: str
    product_id: str
    quantity: Decimal
    price_at_purchase: Decimal  # unit price at time of order


@dataclass
class CheckoutIntent:
    """Durable record of a checkout that has not finished yet."""

    key: str
    customer_id: str
    shipping_address: str
    fingerprint: str
    committed: Dict[str, str] = field(default_factory=dict)  # vendor_id -> order id

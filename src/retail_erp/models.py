"""Immutable domain records shared by the ledgers and the sale processor.

Every record is a frozen dataclass. Invariants are enforced in
``__post_init__`` so a record that exists is always valid; state changes are
expressed by building a new record with :func:`dataclasses.replace`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple, Union

from .constants import MONEY_QUANTUM, MovementType, PaymentMethod, PaymentStatus


ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, str, float]) -> Decimal:
    """Normalize a numeric value into a two-place :class:`~decimal.Decimal`.

    Floats are routed through ``str`` so that ``8.99`` becomes
    ``Decimal("8.99")`` rather than its binary approximation.
    """

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@dataclass(frozen=True)
class Product:
    """Catalog entry whose ``quantity`` is owned by the stock ledger."""

    product_id: str
    name: str
    sale_price: Decimal
    cost_price: Decimal = ZERO
    quantity: int = 0
    min_quantity: int = 0
    is_active: bool = True
    expiration_date: Optional[date] = None

    def __post_init__(self) -> None:
        _require(bool(self.product_id), "Product id is required")
        _require(bool(self.name and self.name.strip()), "Product name is required")
        object.__setattr__(self, "sale_price", to_money(self.sale_price))
        object.__setattr__(self, "cost_price", to_money(self.cost_price))
        _require(self.sale_price >= ZERO, "Sale price cannot be negative")
        _require(self.cost_price >= ZERO, "Cost price cannot be negative")
        _require(self.quantity >= 0, "Quantity cannot be negative")
        _require(self.min_quantity >= 0, "Minimum quantity cannot be negative")

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.min_quantity


@dataclass(frozen=True)
class Client:
    """Customer that may buy on store credit up to ``credit_limit``."""

    client_id: str
    name: str
    credit_limit: Decimal = ZERO
    current_debt: Decimal = ZERO
    is_active: bool = True

    def __post_init__(self) -> None:
        _require(bool(self.client_id), "Client id is required")
        _require(bool(self.name and self.name.strip()), "Client name is required")
        object.__setattr__(self, "credit_limit", to_money(self.credit_limit))
        object.__setattr__(self, "current_debt", to_money(self.current_debt))
        _require(self.credit_limit >= ZERO, "Credit limit cannot be negative")
        _require(self.current_debt >= ZERO, "Current debt cannot be negative")

    @property
    def available_credit(self) -> Decimal:
        return max(ZERO, self.credit_limit - self.current_debt)


@dataclass(frozen=True)
class SaleItem:
    """Line of a sale; name and price are snapshots taken at sale time."""

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    discount: Decimal = ZERO

    def __post_init__(self) -> None:
        _require(bool(self.product_id), "Product id is required")
        _require(self.quantity > 0, "Quantity must be greater than zero")
        object.__setattr__(self, "unit_price", to_money(self.unit_price))
        object.__setattr__(self, "discount", to_money(self.discount))
        _require(self.unit_price >= ZERO, "Unit price cannot be negative")
        _require(self.discount >= ZERO, "Discount cannot be negative")
        _require(self.discount <= self.gross_total, "Discount cannot exceed the item subtotal")

    @property
    def gross_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    @property
    def total(self) -> Decimal:
        return self.gross_total - self.discount


@dataclass(frozen=True)
class Sale:
    """Point-of-sale transaction.

    Items and totals never change after creation; the only transitions are
    ``PENDING -> PAID`` and ``PENDING | PAID -> CANCELLED``.
    """

    user_id: str
    items: Tuple[SaleItem, ...]
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    discount: Decimal = ZERO
    client_id: Optional[str] = None
    notes: Optional[str] = None
    sale_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _require(bool(self.user_id), "Operator id is required")
        object.__setattr__(self, "items", tuple(self.items))
        _require(len(self.items) > 0, "A sale needs at least one item")
        object.__setattr__(self, "discount", to_money(self.discount))
        _require(self.discount >= ZERO, "Discount cannot be negative")
        _require(self.discount <= self.subtotal, "Discount cannot exceed the subtotal")
        if self.payment_method is PaymentMethod.STORE_CREDIT:
            _require(bool(self.client_id), "Store-credit sale requires a registered client")

    @property
    def subtotal(self) -> Decimal:
        return sum((item.total for item in self.items), ZERO)

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount

    @property
    def total_units(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def discount_percentage(self) -> Decimal:
        if self.subtotal == ZERO:
            return ZERO
        return to_money(self.discount / self.subtotal * 100)

    @property
    def is_store_credit(self) -> bool:
        return self.payment_method is PaymentMethod.STORE_CREDIT

    @property
    def is_cancelled(self) -> bool:
        return self.payment_status is PaymentStatus.CANCELLED

    def with_status(self, status: PaymentStatus) -> "Sale":
        return replace(self, payment_status=status)


@dataclass(frozen=True)
class StockMovement:
    """Append-only audit record of a single stock quantity change."""

    product_id: str
    movement_type: MovementType
    quantity: int
    reason: Optional[str] = None
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    sale_id: Optional[str] = None
    user_id: Optional[str] = None
    movement_id: Optional[str] = None
    timestamp: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        _require(bool(self.product_id), "Product id is required for a movement")
        _require(isinstance(self.movement_type, MovementType), "Unknown movement type")
        _require(self.quantity > 0, "Quantity must be greater than zero")
        if self.unit_price is not None:
            object.__setattr__(self, "unit_price", to_money(self.unit_price))
            if self.total_price is None:
                object.__setattr__(self, "total_price", to_money(self.unit_price * self.quantity))
        if self.total_price is not None:
            object.__setattr__(self, "total_price", to_money(self.total_price))

    @property
    def stock_impact(self) -> int:
        """Signed quantity delta for inflow/outflow types, ``0`` for adjustments.

        Adjustments record a counted quantity rather than a delta.
        """

        if self.movement_type in (MovementType.ENTRY, MovementType.RETURN):
            return self.quantity
        if self.movement_type in (MovementType.EXIT, MovementType.LOSS):
            return -self.quantity
        return 0


__all__ = [
    "ZERO",
    "to_money",
    "Product",
    "Client",
    "SaleItem",
    "Sale",
    "StockMovement",
]

"""Enumerations shared across the retail ERP modules.

Centralises domain constants so that the repositories, the ledgers, the sale
processor and the CLI rely on a single source of truth for payment and stock
movement kinds.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

MONEY_QUANTUM = Decimal("0.01")


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "CASH"
    CARD = "CARD"
    PIX = "PIX"
    STORE_CREDIT = "STORE_CREDIT"


class PaymentStatus(str, Enum):
    """Enumerate the lifecycle states of a sale."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class MovementType(str, Enum):
    """Enumerate the kinds of entries recorded in the stock movement log."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    LOSS = "LOSS"


class MissingProductPolicy(str, Enum):
    """How a cancellation treats an item whose product no longer exists."""

    SKIP = "skip"
    FAIL = "fail"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    CLIENTS = "Clients"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    STOCK_MOVEMENTS = "StockMovements"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "PaymentMethod",
    "PaymentStatus",
    "MovementType",
    "MissingProductPolicy",
    "SheetName",
]

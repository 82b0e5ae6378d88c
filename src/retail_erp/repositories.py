"""Repository contracts consumed by the ledgers and the sale processor.

The core depends only on the :class:`typing.Protocol` classes below. Two
implementations ship with the package: the thread-safe in-memory stores in
this module, and the workbook-backed stores in :mod:`retail_erp.data_manager`.

Counter updates are conditional: ``update_quantity`` and ``update_debt``
accept the value the caller last read and raise
:class:`~retail_erp.errors.ConcurrentUpdateError` when the stored value has
moved on.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, runtime_checkable

from . import log
from .constants import PaymentStatus
from .errors import ConcurrentUpdateError, EntityNotFoundError, InvalidEntityStateError
from .models import Client, Product, Sale, StockMovement, to_money


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``S20251030120000123456-1a2b3c``.

    The timestamp keeps identifiers in chronological order; the random suffix
    prevents collisions between writers sharing a microsecond.
    """

    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


@runtime_checkable
class ProductRepository(Protocol):
    def find_by_id(self, product_id: str) -> Optional[Product]: ...

    def update_quantity(
        self, product_id: str, new_quantity: int, *, expected_quantity: Optional[int] = None
    ) -> None: ...

    def save(self, product: Product) -> Product: ...

    def list_all(self) -> List[Product]: ...


@runtime_checkable
class ClientRepository(Protocol):
    def find_by_id(self, client_id: str) -> Optional[Client]: ...

    def update_debt(
        self, client_id: str, new_debt: Decimal, *, expected_debt: Optional[Decimal] = None
    ) -> None: ...

    def save(self, client: Client) -> Client: ...

    def list_all(self) -> List[Client]: ...


@runtime_checkable
class SaleRepository(Protocol):
    def create(self, sale: Sale) -> Sale: ...

    def find_by_id(self, sale_id: str) -> Optional[Sale]: ...

    def cancel(self, sale_id: str) -> Sale: ...

    def mark_paid(self, sale_id: str) -> Sale: ...

    def discard(self, sale_id: str) -> None: ...

    def list_all(self) -> List[Sale]: ...


@runtime_checkable
class StockMovementRepository(Protocol):
    def create(self, movement: StockMovement) -> StockMovement: ...

    def discard(self, movement_id: str) -> None: ...

    def list_all(self) -> List[StockMovement]: ...

    def list_by_product(self, product_id: str) -> List[StockMovement]: ...


def check_sale_transition(sale: Sale, target: PaymentStatus) -> None:
    """Validate a status transition shared by every sale repository.

    Raises:
        InvalidEntityStateError: If ``sale`` may not move to ``target``.
    """

    if sale.payment_status is PaymentStatus.CANCELLED:
        operation = "cancel" if target is PaymentStatus.CANCELLED else "settle"
        raise InvalidEntityStateError("sale", operation, "sale already cancelled")
    if target is PaymentStatus.PAID and sale.payment_status is not PaymentStatus.PENDING:
        raise InvalidEntityStateError("sale", "settle", f"sale is {sale.payment_status.value}")


class InMemoryProductRepository:
    """Dictionary-backed product store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, Product] = {}

    def find_by_id(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._rows.get(product_id)

    def update_quantity(
        self, product_id: str, new_quantity: int, *, expected_quantity: Optional[int] = None
    ) -> None:
        with self._lock:
            current = self._rows.get(product_id)
            if current is None:
                raise EntityNotFoundError("product", product_id)
            if expected_quantity is not None and current.quantity != expected_quantity:
                raise ConcurrentUpdateError("product", product_id, expected_quantity, current.quantity)
            self._rows[product_id] = replace(current, quantity=new_quantity)

    def save(self, product: Product) -> Product:
        with self._lock:
            self._rows[product.product_id] = product
        return product

    def delete(self, product_id: str) -> None:
        with self._lock:
            self._rows.pop(product_id, None)

    def list_all(self) -> List[Product]:
        with self._lock:
            return list(self._rows.values())


class InMemoryClientRepository:
    """Dictionary-backed client store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, Client] = {}

    def find_by_id(self, client_id: str) -> Optional[Client]:
        with self._lock:
            return self._rows.get(client_id)

    def update_debt(
        self, client_id: str, new_debt: Decimal, *, expected_debt: Optional[Decimal] = None
    ) -> None:
        with self._lock:
            current = self._rows.get(client_id)
            if current is None:
                raise EntityNotFoundError("client", client_id)
            if expected_debt is not None and current.current_debt != to_money(expected_debt):
                raise ConcurrentUpdateError("client", client_id, expected_debt, current.current_debt)
            self._rows[client_id] = replace(current, current_debt=new_debt)

    def save(self, client: Client) -> Client:
        with self._lock:
            self._rows[client.client_id] = client
        return client

    def list_all(self) -> List[Client]:
        with self._lock:
            return list(self._rows.values())


class InMemorySaleRepository:
    """Dictionary-backed sale store preserving insertion order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, Sale] = {}

    def create(self, sale: Sale) -> Sale:
        created_at = sale.created_at or datetime.now(UTC)
        stored = replace(
            sale,
            sale_id=sale.sale_id or generate_id("S", when=created_at),
            created_at=created_at,
        )
        with self._lock:
            self._rows[stored.sale_id] = stored
        return stored

    def find_by_id(self, sale_id: str) -> Optional[Sale]:
        with self._lock:
            return self._rows.get(sale_id)

    def _transition(self, sale_id: str, target: PaymentStatus) -> Sale:
        with self._lock:
            current = self._rows.get(sale_id)
            if current is None:
                raise EntityNotFoundError("sale", sale_id)
            check_sale_transition(current, target)
            updated = current.with_status(target)
            self._rows[sale_id] = updated
            return updated

    def cancel(self, sale_id: str) -> Sale:
        return self._transition(sale_id, PaymentStatus.CANCELLED)

    def mark_paid(self, sale_id: str) -> Sale:
        return self._transition(sale_id, PaymentStatus.PAID)

    def discard(self, sale_id: str) -> None:
        with self._lock:
            if self._rows.pop(sale_id, None) is not None:
                log.warning("Discarded sale '%s' during rollback", sale_id)

    def list_all(self) -> List[Sale]:
        with self._lock:
            return list(self._rows.values())


class InMemoryStockMovementRepository:
    """Append-only list of stock movements."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: List[StockMovement] = []

    def create(self, movement: StockMovement) -> StockMovement:
        timestamp = movement.timestamp or datetime.now(UTC)
        stored = replace(
            movement,
            movement_id=movement.movement_id or generate_id("M", when=timestamp),
            timestamp=timestamp,
        )
        with self._lock:
            self._rows.append(stored)
        return stored

    def discard(self, movement_id: str) -> None:
        with self._lock:
            self._rows = [row for row in self._rows if row.movement_id != movement_id]
        log.warning("Discarded stock movement '%s' during rollback", movement_id)

    def list_all(self) -> List[StockMovement]:
        with self._lock:
            return list(self._rows)

    def list_by_product(self, product_id: str) -> List[StockMovement]:
        with self._lock:
            return [row for row in self._rows if row.product_id == product_id]


__all__ = [
    "generate_id",
    "check_sale_transition",
    "ProductRepository",
    "ClientRepository",
    "SaleRepository",
    "StockMovementRepository",
    "InMemoryProductRepository",
    "InMemoryClientRepository",
    "InMemorySaleRepository",
    "InMemoryStockMovementRepository",
]

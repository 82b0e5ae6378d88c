"""Stock and credit ledgers.

Each function here owns one consistency-critical counter: product quantity
(together with its append-only movement log) or client debt. Callers must
hold the entity lock from :class:`~retail_erp.unit_of_work.KeyedLocks` and
pass the active :class:`~retail_erp.unit_of_work.UnitOfWork`; every write is
conditional on the value just read and registers its own compensation.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from . import log
from .constants import MovementType
from .errors import CreditLimitExceededError, EntityNotFoundError, InsufficientStockError, InvalidEntityStateError
from .models import ZERO, Client, Product, StockMovement, to_money
from .repositories import ClientRepository, ProductRepository, StockMovementRepository
from .unit_of_work import UnitOfWork


def require_product(products: ProductRepository, product_id: str) -> Product:
    """Resolve a product or raise :class:`EntityNotFoundError`."""

    product = products.find_by_id(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise EntityNotFoundError("product", product_id)
    return product


def require_client(clients: ClientRepository, client_id: str) -> Client:
    """Resolve a client or raise :class:`EntityNotFoundError`."""

    client = clients.find_by_id(client_id)
    if client is None:
        log.warning("Client lookup failed for id '%s'", client_id)
        raise EntityNotFoundError("client", client_id)
    return client


def require_available(product: Product, requested: int) -> None:
    """Reject a withdrawal larger than the quantity on hand."""

    if requested > product.quantity:
        log.warning(
            "Insufficient stock for '%s': available=%s requested=%s",
            product.product_id,
            product.quantity,
            requested,
        )
        raise InsufficientStockError(product.name, product.quantity, requested)


def resulting_quantity(product: Product, movement_type: MovementType, quantity: int) -> int:
    """Compute the quantity a product will hold after a movement.

    ``ADJUSTMENT`` records a physical count, so ``quantity`` replaces the
    current value instead of being added to it.

    Raises:
        InsufficientStockError: If an outflow exceeds the quantity on hand.
    """

    if movement_type in (MovementType.ENTRY, MovementType.RETURN):
        return product.quantity + quantity
    if movement_type in (MovementType.EXIT, MovementType.LOSS):
        require_available(product, quantity)
        return product.quantity - quantity
    if movement_type is MovementType.ADJUSTMENT:
        return quantity
    raise ValueError(f"Unsupported movement type: {movement_type}")


def move_stock(
    products: ProductRepository,
    movements: StockMovementRepository,
    uow: UnitOfWork,
    *,
    product_id: str,
    movement_type: MovementType,
    quantity: int,
    reason: Optional[str] = None,
    unit_price: Optional[Decimal] = None,
    total_price: Optional[Decimal] = None,
    sale_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> StockMovement:
    """Apply a quantity change and append the matching movement record.

    Returns:
        StockMovement: The persisted movement.

    Raises:
        EntityNotFoundError: If the product does not exist.
        InsufficientStockError: If an outflow exceeds the quantity on hand.
        ConcurrentUpdateError: If the stored quantity changed since it was read.
    """

    product = require_product(products, product_id)
    # Validate the record before touching the counter.
    draft = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity=quantity,
        reason=reason,
        unit_price=unit_price,
        total_price=total_price,
        sale_id=sale_id,
        user_id=user_id,
    )
    previous = product.quantity
    new_quantity = resulting_quantity(product, movement_type, quantity)

    products.update_quantity(product_id, new_quantity, expected_quantity=previous)
    uow.on_rollback(
        f"restore quantity of product {product_id}",
        lambda: products.update_quantity(product_id, previous, expected_quantity=new_quantity),
    )

    movement = movements.create(draft)
    uow.on_rollback(
        f"discard movement {movement.movement_id}",
        lambda: movements.discard(movement.movement_id),
    )
    log.info(
        "Recorded %s movement '%s' for product '%s' (quantity=%s, stock %s -> %s)",
        movement_type.value,
        movement.movement_id,
        product_id,
        quantity,
        previous,
        new_quantity,
    )
    return movement


def check_credit(client: Client, amount: Decimal) -> Decimal:
    """Return the debt ``client`` would carry after charging ``amount``.

    A client with a zero credit limit cannot buy on store credit at all, not
    even a sale whose total is zero.

    Raises:
        InvalidEntityStateError: If the client is inactive.
        CreditLimitExceededError: If the client has no credit limit, or the
            resulting debt would exceed it.
    """

    if not client.is_active:
        log.warning("Rejected store credit for inactive client '%s'", client.client_id)
        raise InvalidEntityStateError("client", "charge", "client is inactive")

    projected = client.current_debt + to_money(amount)
    if client.credit_limit == ZERO or projected > client.credit_limit:
        log.warning(
            "Credit limit exceeded for client '%s': limit=%s attempted=%s",
            client.client_id,
            client.credit_limit,
            projected,
        )
        raise CreditLimitExceededError(client.name, client.credit_limit, projected)
    return projected


def charge_credit(clients: ClientRepository, uow: UnitOfWork, *, client_id: str, amount: Decimal) -> Client:
    """Increase a client's debt by ``amount`` within the credit limit."""

    client = require_client(clients, client_id)
    previous = client.current_debt
    new_debt = check_credit(client, amount)
    clients.update_debt(client_id, new_debt, expected_debt=previous)
    uow.on_rollback(
        f"restore debt of client {client_id}",
        lambda: clients.update_debt(client_id, previous, expected_debt=new_debt),
    )
    log.info("Charged %s to client '%s' (debt %s -> %s)", amount, client_id, previous, new_debt)
    return require_client(clients, client_id)


def release_credit(clients: ClientRepository, uow: UnitOfWork, *, client_id: str, amount: Decimal) -> Client:
    """Decrease a client's debt by ``amount``, never going below zero."""

    client = require_client(clients, client_id)
    previous = client.current_debt
    new_debt = max(ZERO, previous - to_money(amount))
    if new_debt == ZERO and previous < to_money(amount):
        log.warning(
            "Debt release for client '%s' clamped at zero (debt=%s, amount=%s)",
            client_id,
            previous,
            amount,
        )
    clients.update_debt(client_id, new_debt, expected_debt=previous)
    uow.on_rollback(
        f"restore debt of client {client_id}",
        lambda: clients.update_debt(client_id, previous, expected_debt=new_debt),
    )
    log.info("Released %s from client '%s' (debt %s -> %s)", amount, client_id, previous, new_debt)
    return require_client(clients, client_id)


__all__ = [
    "require_product",
    "require_client",
    "require_available",
    "resulting_quantity",
    "move_stock",
    "check_credit",
    "charge_credit",
    "release_credit",
]

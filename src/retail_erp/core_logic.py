"""Business logic layer for the retail ERP.

This module hosts the sale processor: it turns typed commands into
coordinated changes across the stock ledger, the stock movement log, the
credit ledger, and the sale store. Every public operation follows the same
shape:

1. acquire the per-entity locks the command touches,
2. validate against freshly read state (no writes yet),
3. run the writes inside :func:`~retail_erp.unit_of_work.transaction` so a
   failure part-way through is compensated before the error reaches the
   caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MissingProductPolicy, MovementType, PaymentMethod, PaymentStatus
from .errors import (
    BusinessRuleViolation,
    EntityNotFoundError,
    InactiveProductError,
    InvalidEntityStateError,
    PreconditionViolation,
)
from .ledgers import (
    charge_credit,
    check_credit,
    move_stock,
    release_credit,
    require_available,
    require_client,
    require_product,
)
from .models import ZERO, Client, Product, Sale, SaleItem, StockMovement, to_money
from .repositories import (
    ClientRepository,
    InMemoryClientRepository,
    InMemoryProductRepository,
    InMemorySaleRepository,
    InMemoryStockMovementRepository,
    ProductRepository,
    SaleRepository,
    StockMovementRepository,
)
from .unit_of_work import KeyedLocks, client_key, product_key, sale_key, transaction


@dataclass(frozen=True)
class RuntimeContext:
    """Repositories, settings, and locks shared by every business operation."""

    products: ProductRepository
    clients: ClientRepository
    sales: SaleRepository
    movements: StockMovementRepository
    settings: Optional[data_manager.ConfigSettings] = None
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)
    missing_product_policy: MissingProductPolicy = MissingProductPolicy.SKIP
    locks: KeyedLocks = field(default_factory=KeyedLocks, repr=False, compare=False)


@dataclass(frozen=True)
class SaleItemCommand:
    """One requested line of a sale."""

    product_id: str
    quantity: int
    discount: Decimal = ZERO


@dataclass(frozen=True)
class CreateSaleCommand:
    """User intent for registering a point-of-sale transaction."""

    user_id: str
    items: Sequence[SaleItemCommand]
    payment_method: PaymentMethod
    client_id: Optional[str] = None
    discount: Decimal = ZERO
    notes: Optional[str] = None


@dataclass(frozen=True)
class SettleSaleCommand:
    """User intent for recording payment of a pending store-credit sale."""

    sale_id: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockMovementCommand:
    """User intent for a direct stock operation outside of a sale."""

    product_id: str
    movement_type: MovementType
    quantity: int
    reason: Optional[str] = None
    unit_price: Optional[Decimal] = None
    user_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Context management
# ---------------------------------------------------------------------------


def build_memory_context(
    *, missing_product_policy: MissingProductPolicy = MissingProductPolicy.SKIP
) -> RuntimeContext:
    """Assemble a context over fresh in-memory repositories."""

    return RuntimeContext(
        products=InMemoryProductRepository(),
        clients=InMemoryClientRepository(),
        sales=InMemorySaleRepository(),
        movements=InMemoryStockMovementRepository(),
        missing_product_policy=missing_product_policy,
    )


def build_workbook_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Assemble a context whose repositories share one open workbook."""

    store = data_manager.WorkbookStore(workbook)
    return RuntimeContext(
        products=data_manager.WorkbookProductRepository(store),
        clients=data_manager.WorkbookClientRepository(store),
        sales=data_manager.WorkbookSaleRepository(store),
        movements=data_manager.WorkbookStockMovementRepository(store),
        settings=settings,
        workbook=workbook,
        missing_product_policy=settings.missing_product_policy,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_workbook_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings is None:
        return
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    In-memory contexts have nothing to persist and are left untouched.
    """
    if context.workbook is None or context.settings is None:
        log.debug("Context has no workbook; nothing to persist")
        return
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Raises:
        RuntimeError: If the context is not backed by a workbook.
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    if context.settings is None:
        raise RuntimeError("Only workbook-backed contexts can be refreshed")
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_workbook_context(context.settings, workbook)


# ---------------------------------------------------------------------------
# Catalog and queries
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, product: Product) -> Product:
    """Register ``product`` in the catalog, rejecting duplicate ids."""

    with context.locks.hold(product_key(product.product_id)):
        if context.products.find_by_id(product.product_id) is not None:
            raise BusinessRuleViolation(f"Product '{product.product_id}' already exists")
        saved = context.products.save(product)
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return saved


def add_client(context: RuntimeContext, client: Client) -> Client:
    """Register ``client``, rejecting duplicate ids."""

    with context.locks.hold(client_key(client.client_id)):
        if context.clients.find_by_id(client.client_id) is not None:
            raise BusinessRuleViolation(f"Client '{client.client_id}' already exists")
        saved = context.clients.save(client)
    log.info("Added client '%s' (%s)", client.client_id, client.name)
    return saved


def get_product(context: RuntimeContext, product_id: str) -> Product:
    return require_product(context.products, product_id)


def get_client(context: RuntimeContext, client_id: str) -> Client:
    return require_client(context.clients, client_id)


def get_sale(context: RuntimeContext, sale_id: str) -> Sale:
    """Resolve a sale by id.

    Raises:
        EntityNotFoundError: If the sale does not exist.
    """
    sale = context.sales.find_by_id(sale_id)
    if sale is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise EntityNotFoundError("sale", sale_id)
    return sale


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def list_sales(
    context: RuntimeContext,
    *,
    status: Optional[PaymentStatus] = None,
    client_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Sale]:
    """Return sales in creation order, optionally filtered.

    ``since`` is inclusive and ``until`` exclusive; naive datetimes are read
    as UTC. Sales without a creation time never match a date filter.
    """

    sales = context.sales.list_all()
    if status is not None:
        sales = [sale for sale in sales if sale.payment_status is status]
    if client_id is not None:
        sales = [sale for sale in sales if sale.client_id == client_id]
    if since is not None or until is not None:
        lower = _as_utc(since) if since is not None else None
        upper = _as_utc(until) if until is not None else None
        sales = [
            sale
            for sale in sales
            if sale.created_at is not None
            and (lower is None or _as_utc(sale.created_at) >= lower)
            and (upper is None or _as_utc(sale.created_at) < upper)
        ]
    return sales


def list_stock_movements(
    context: RuntimeContext,
    *,
    product_id: Optional[str] = None,
    movement_type: Optional[MovementType] = None,
) -> List[StockMovement]:
    """Return the movement log in append order, optionally filtered."""

    if product_id is not None:
        movements = context.movements.list_by_product(product_id)
    else:
        movements = context.movements.list_all()
    if movement_type is not None:
        movements = [movement for movement in movements if movement.movement_type is movement_type]
    return movements


def list_low_stock_products(context: RuntimeContext) -> List[Product]:
    """Return active products at or below their minimum quantity."""

    return [product for product in context.products.list_all() if product.is_active and product.is_low_stock]


def calculate_outstanding_debts(context: RuntimeContext) -> Dict[str, Decimal]:
    """Map client id to current debt for every client that owes money."""

    debts = {client.client_id: client.current_debt for client in context.clients.list_all() if client.current_debt > ZERO}
    log.debug("Calculated outstanding debts for %d clients", len(debts))
    return debts


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def resolve_sale_client(context: RuntimeContext, command: CreateSaleCommand) -> Optional[Client]:
    """Resolve the command's client and enforce the store-credit requirement.

    Raises:
        EntityNotFoundError: If a client id is given but unknown.
        PreconditionViolation: If a store-credit sale has no client.
    """
    client = get_client(context, command.client_id) if command.client_id else None
    if command.payment_method is PaymentMethod.STORE_CREDIT and client is None:
        log.warning("Rejected store-credit sale without a client")
        raise PreconditionViolation("store-credit sale requires a registered client")
    return client


def build_sale_items(context: RuntimeContext, requests: Sequence[SaleItemCommand]) -> Tuple[SaleItem, ...]:
    """Validate requested lines and snapshot product names and prices.

    Several lines for the same product are checked against their combined
    quantity, so splitting a request cannot oversell.

    Raises:
        EntityNotFoundError: If a product does not exist.
        InactiveProductError: If a product is deactivated.
        InsufficientStockError: If the requested units exceed the stock.
        BusinessRuleViolation: If a line discount exceeds the line subtotal.
    """
    resolved: Dict[str, Product] = {}
    requested: Dict[str, int] = {}
    items: List[SaleItem] = []

    for request in requests:
        require_positive_quantity(request.quantity)
        discount = to_money(request.discount)
        require_nonnegative_money(discount)

        product = resolved.get(request.product_id)
        if product is None:
            product = get_product(context, request.product_id)
            resolved[request.product_id] = product
        if not product.is_active:
            log.warning("Attempted sale on inactive product '%s'", product.product_id)
            raise InactiveProductError(product.name)

        requested[product.product_id] = requested.get(product.product_id, 0) + request.quantity
        require_available(product, requested[product.product_id])

        gross = to_money(product.sale_price * request.quantity)
        if discount > gross:
            log.warning(
                "Item discount %s exceeds subtotal %s for product '%s'",
                discount,
                gross,
                product.product_id,
            )
            raise BusinessRuleViolation(
                f"Discount {discount} exceeds the subtotal {gross} for '{product.name}'"
            )

        items.append(
            SaleItem(
                product_id=product.product_id,
                product_name=product.name,
                quantity=request.quantity,
                unit_price=product.sale_price,
                discount=discount,
            )
        )

    return tuple(items)


def _require_open(sale: Sale, operation: str) -> None:
    if sale.is_cancelled:
        log.warning("Cannot %s sale '%s': already cancelled", operation, sale.sale_id)
        raise InvalidEntityStateError("sale", operation, "sale already cancelled")


# ---------------------------------------------------------------------------
# Sale processor
# ---------------------------------------------------------------------------


def create_sale(context: RuntimeContext, command: CreateSaleCommand) -> Sale:
    """Validate and record a sale across stock, movement, and credit ledgers.

    The product and client locks are held from the first read until the last
    write, so concurrent sales of the same product cannot both pass the stock
    check. All validation happens before the first write; the writes (sale
    record, per-item stock withdrawal and ``EXIT`` movement, debt increase)
    succeed or fail together.

    Args:
        context (RuntimeContext): Runtime context providing the repositories.
        command (CreateSaleCommand): Structured intent describing the sale.

    Returns:
        Sale: The persisted sale, ``PENDING`` for store credit and ``PAID``
            otherwise.

    Raises:
        EntityNotFoundError: If the client or a product is unknown.
        PreconditionViolation: If the sale has no items or no operator, or a
            store-credit sale has no client.
        InactiveProductError: If a product is deactivated.
        InsufficientStockError: If the stock cannot cover a product.
        CreditLimitExceededError: If the client's debt would pass the limit.
        BusinessRuleViolation: If a discount exceeds its subtotal.
        TransactionRolledBack: If a write failed and was compensated.
    """
    if not command.items:
        raise PreconditionViolation("A sale needs at least one item")
    if not command.user_id:
        raise PreconditionViolation("A sale needs an operator")
    if not isinstance(command.payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.payment_method}")

    keys = [product_key(request.product_id) for request in command.items]
    if command.client_id:
        keys.append(client_key(command.client_id))

    with context.locks.hold(*keys):
        client = resolve_sale_client(context, command)
        items = build_sale_items(context, command.items)

        subtotal = sum((item.total for item in items), ZERO)
        sale_discount = to_money(command.discount)
        require_nonnegative_money(sale_discount)
        if sale_discount > subtotal:
            log.warning("Sale discount %s exceeds subtotal %s", sale_discount, subtotal)
            raise BusinessRuleViolation(f"Discount {sale_discount} exceeds the subtotal {subtotal}")
        total = subtotal - sale_discount

        store_credit = command.payment_method is PaymentMethod.STORE_CREDIT
        if store_credit:
            check_credit(client, total)
        status = PaymentStatus.PENDING if store_credit else PaymentStatus.PAID

        draft = Sale(
            user_id=command.user_id,
            client_id=command.client_id,
            items=items,
            discount=sale_discount,
            payment_method=command.payment_method,
            payment_status=status,
            notes=command.notes,
        )

        with transaction("create sale") as uow:
            sale = context.sales.create(draft)
            uow.on_rollback(f"discard sale {sale.sale_id}", lambda: context.sales.discard(sale.sale_id))

            for item in sale.items:
                move_stock(
                    context.products,
                    context.movements,
                    uow,
                    product_id=item.product_id,
                    movement_type=MovementType.EXIT,
                    quantity=item.quantity,
                    reason=f"Sale #{sale.sale_id}",
                    unit_price=item.unit_price,
                    total_price=item.total,
                    sale_id=sale.sale_id,
                    user_id=sale.user_id,
                )

            if store_credit:
                charge_credit(context.clients, uow, client_id=client.client_id, amount=sale.total)

    log.info(
        "Recorded sale '%s' (%s, %s, items=%d, total=%s)",
        sale.sale_id,
        sale.payment_method.value,
        sale.payment_status.value,
        len(sale.items),
        sale.total,
    )
    return sale


def cancel_sale(context: RuntimeContext, sale_id: str) -> Sale:
    """Cancel a sale and reverse its effects on stock and credit.

    Every item is returned to stock with a ``RETURN`` movement. A pending
    store-credit sale also releases its total from the client's debt, clamped
    at zero. A store-credit sale already settled through :func:`settle_sale`
    had its total released at settlement, so cancelling it returns the stock
    but leaves the debt unchanged.

    Items whose product was deleted after the sale follow
    ``context.missing_product_policy``: ``SKIP`` logs a warning and moves on,
    ``FAIL`` aborts before any write.

    Raises:
        EntityNotFoundError: If the sale is unknown, or a product is missing
            under the ``FAIL`` policy.
        InvalidEntityStateError: If the sale is already cancelled.
        TransactionRolledBack: If a write failed and was compensated.
    """
    sale = get_sale(context, sale_id)
    _require_open(sale, "cancel")

    keys = [sale_key(sale_id)] + [product_key(item.product_id) for item in sale.items]
    if sale.client_id:
        keys.append(client_key(sale.client_id))

    with context.locks.hold(*keys):
        # Re-read under the sale lock; a concurrent cancel may have won.
        sale = get_sale(context, sale_id)
        _require_open(sale, "cancel")

        restock: List[SaleItem] = []
        for item in sale.items:
            if context.products.find_by_id(item.product_id) is not None:
                restock.append(item)
                continue
            if context.missing_product_policy is MissingProductPolicy.FAIL:
                log.error("Cannot cancel sale '%s': product '%s' no longer exists", sale_id, item.product_id)
                raise EntityNotFoundError("product", item.product_id)
            log.warning(
                "Skipping restock of %s unit(s) for deleted product '%s' while cancelling sale '%s'",
                item.quantity,
                item.product_id,
                sale_id,
            )

        release_debt = (
            sale.is_store_credit
            and sale.client_id is not None
            and sale.payment_status is PaymentStatus.PENDING
        )
        if release_debt and context.clients.find_by_id(sale.client_id) is None:
            log.warning("Client '%s' of sale '%s' no longer exists; debt not released", sale.client_id, sale_id)
            release_debt = False

        with transaction(f"cancel sale {sale_id}") as uow:
            for item in restock:
                move_stock(
                    context.products,
                    context.movements,
                    uow,
                    product_id=item.product_id,
                    movement_type=MovementType.RETURN,
                    quantity=item.quantity,
                    reason=f"Cancellation of sale #{sale_id}",
                    unit_price=item.unit_price,
                    total_price=item.total,
                    sale_id=sale_id,
                )

            if release_debt:
                release_credit(context.clients, uow, client_id=sale.client_id, amount=sale.total)

            cancelled = context.sales.cancel(sale_id)

    log.info("Cancelled sale '%s' (restocked %d of %d items)", sale_id, len(restock), len(sale.items))
    return cancelled


def settle_sale(context: RuntimeContext, command: SettleSaleCommand) -> Sale:
    """Record payment of a pending store-credit sale.

    The sale moves to ``PAID`` and its total is released from the client's
    debt, clamped at zero.

    Raises:
        EntityNotFoundError: If the sale or its client is unknown.
        InvalidEntityStateError: If the sale is not a pending store-credit sale.
        TransactionRolledBack: If a write failed and was compensated.
    """
    sale = get_sale(context, command.sale_id)
    keys = [sale_key(command.sale_id)]
    if sale.client_id:
        keys.append(client_key(sale.client_id))

    with context.locks.hold(*keys):
        sale = get_sale(context, command.sale_id)
        _require_open(sale, "settle")
        if not sale.is_store_credit:
            log.warning("Cannot settle sale '%s': paid by %s", sale.sale_id, sale.payment_method.value)
            raise InvalidEntityStateError("sale", "settle", "only store-credit sales are settled later")
        if sale.payment_status is not PaymentStatus.PENDING:
            log.warning("Cannot settle sale '%s': status is %s", sale.sale_id, sale.payment_status.value)
            raise InvalidEntityStateError("sale", "settle", f"sale is {sale.payment_status.value}")

        with transaction(f"settle sale {sale.sale_id}") as uow:
            release_credit(context.clients, uow, client_id=sale.client_id, amount=sale.total)
            paid = context.sales.mark_paid(sale.sale_id)

    log.info(
        "Settled sale '%s' for client '%s' (amount=%s, notes=%s)",
        paid.sale_id,
        paid.client_id,
        paid.total,
        command.notes,
    )
    return paid


def record_stock_movement(context: RuntimeContext, command: StockMovementCommand) -> StockMovement:
    """Apply a direct stock operation and log it.

    ``ENTRY`` and ``RETURN`` add units, ``EXIT`` and ``LOSS`` remove them, and
    ``ADJUSTMENT`` overwrites the quantity with a physical count.

    Raises:
        EntityNotFoundError: If the product is unknown.
        InsufficientStockError: If an outflow exceeds the stock.
        ValueError: If quantity or price validations fail.
        TransactionRolledBack: If a write failed and was compensated.
    """
    require_positive_quantity(command.quantity)
    if command.unit_price is not None:
        require_nonnegative_money(to_money(command.unit_price))

    with context.locks.hold(product_key(command.product_id)):
        with transaction(f"{command.movement_type.value.lower()} {command.product_id}") as uow:
            movement = move_stock(
                context.products,
                context.movements,
                uow,
                product_id=command.product_id,
                movement_type=command.movement_type,
                quantity=command.quantity,
                reason=command.reason,
                unit_price=command.unit_price,
                user_id=command.user_id,
            )
    return movement


__all__ = [
    "RuntimeContext",
    "SaleItemCommand",
    "CreateSaleCommand",
    "SettleSaleCommand",
    "StockMovementCommand",
    "build_memory_context",
    "build_workbook_context",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "add_product",
    "add_client",
    "get_product",
    "get_client",
    "get_sale",
    "list_sales",
    "list_stock_movements",
    "list_low_stock_products",
    "calculate_outstanding_debts",
    "create_sale",
    "cancel_sale",
    "settle_sale",
    "record_stock_movement",
]

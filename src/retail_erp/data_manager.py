"""Data access layer for the retail ERP workbook.

This module provides low-level helpers that read from and write to the
master ``.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Repositories: workbook-backed implementations of the contracts declared in
   :mod:`retail_erp.repositories`, one sheet per record type.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import MissingProductPolicy, MovementType, PaymentMethod, PaymentStatus, SheetName
from .errors import ConcurrentUpdateError, EntityNotFoundError
from .models import Client, Product, Sale, SaleItem, StockMovement, to_money
from .repositories import check_sale_transition, generate_id


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CLIENTS_SHEET = SheetName.CLIENTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
STOCK_MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_operator_id: str
    missing_product_policy: MissingProductPolicy = MissingProductPolicy.SKIP


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` paths are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback. The
    optional ``[Sales] MissingProductOnCancel`` entry accepts ``skip`` or
    ``fail``.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``MissingProductOnCancel`` holds an unknown value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_operator = parser.get("Defaults", "DefaultOperator")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    policy_raw = parser.get("Sales", "MissingProductOnCancel", fallback=MissingProductPolicy.SKIP.value)
    try:
        policy = MissingProductPolicy(policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Invalid MissingProductOnCancel value: {policy_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_operator_id=default_operator,
        missing_product_policy=policy,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Map header titles of ``sheet_name`` to 1-based column indices."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield raw value tuples for every non-empty data row of a sheet."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def update_cells(workbook: Workbook, sheet_name: str, row_index: int, field_values: Dict[str, Any]) -> None:
    """Write ``field_values`` into the named columns of one row.

    Raises:
        KeyError: If any referenced column cannot be found.
    """

    columns = header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field_name, value in field_values.items():
        if field_name not in columns:
            raise KeyError(f"Unknown {sheet_name} field: {field_name}")
        sheet.cell(row=row_index, column=columns[field_name], value=value)


def _decimal(raw: object, default: str = "0.00") -> Decimal:
    return to_money(Decimal(str(raw))) if raw is not None else Decimal(default)


def _optional_decimal(raw: object) -> Optional[Decimal]:
    return to_money(Decimal(str(raw))) if raw is not None else None


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _parse_datetime(raw: object) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _parse_date(raw: object) -> Optional[date]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def serialize_product(record: Product) -> list[object]:
    """Convert a product into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.sale_price,
        record.cost_price,
        record.quantity,
        record.min_quantity,
        record.is_active,
        record.expiration_date.isoformat() if record.expiration_date else None,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw ``Products`` row into a :class:`Product`.

    Identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric ids.
    """

    product_id, name, sale_price, cost_price, quantity, min_quantity, is_active, expiration = raw_row[:8]
    return Product(
        product_id=str(product_id),
        name=str(name),
        sale_price=_decimal(sale_price),
        cost_price=_decimal(cost_price),
        quantity=int(quantity or 0),
        min_quantity=int(min_quantity or 0),
        is_active=bool(is_active),
        expiration_date=_parse_date(expiration),
    )


def serialize_client(record: Client) -> list[object]:
    """Convert a client into the ``Clients`` column ordering."""

    return [record.client_id, record.name, record.credit_limit, record.current_debt, record.is_active]


def deserialize_client(raw_row: Sequence[object]) -> Client:
    """Convert a raw ``Clients`` row into a :class:`Client`."""

    client_id, name, credit_limit, current_debt, is_active = raw_row[:5]
    return Client(
        client_id=str(client_id),
        name=str(name),
        credit_limit=_decimal(credit_limit),
        current_debt=_decimal(current_debt),
        is_active=bool(is_active),
    )


def serialize_sale(record: Sale) -> list[object]:
    """Convert a sale header into the ``Sales`` column ordering.

    Totals are denormalized for spreadsheet readers; they are recomputed from
    the items when the sale is loaded back.
    """

    return [
        record.sale_id,
        record.created_at.isoformat() if record.created_at else None,
        record.client_id,
        record.user_id,
        record.payment_method.value,
        record.payment_status.value,
        record.subtotal,
        record.discount,
        record.total,
        record.notes,
    ]


def serialize_sale_item(sale_id: str, line_no: int, item: SaleItem) -> list[object]:
    """Convert a sale item into the ``SaleItems`` column ordering."""

    return [
        sale_id,
        line_no,
        item.product_id,
        item.product_name,
        item.quantity,
        item.unit_price,
        item.discount,
        item.total,
    ]


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItem:
    """Convert a raw ``SaleItems`` row into a :class:`SaleItem`."""

    _, _, product_id, product_name, quantity, unit_price, discount, _ = raw_row[:8]
    return SaleItem(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=int(quantity),
        unit_price=_decimal(unit_price),
        discount=_decimal(discount),
    )


def deserialize_sale(raw_row: Sequence[object], items: Sequence[SaleItem]) -> Sale:
    """Convert a raw ``Sales`` row plus its items into a :class:`Sale`."""

    sale_id, created_at, client_id, user_id, method, status, _, discount, _, notes = raw_row[:10]
    return Sale(
        sale_id=str(sale_id),
        created_at=_parse_datetime(created_at),
        client_id=_optional_str(client_id),
        user_id=str(user_id),
        payment_method=PaymentMethod(str(method)),
        payment_status=PaymentStatus(str(status)),
        discount=_decimal(discount),
        notes=_optional_str(notes),
        items=tuple(items),
    )


def serialize_movement(record: StockMovement) -> list[object]:
    """Convert a movement into the ``StockMovements`` column ordering."""

    return [
        record.movement_id,
        record.timestamp.isoformat() if record.timestamp else None,
        record.product_id,
        record.movement_type.value,
        record.quantity,
        record.reason,
        record.unit_price,
        record.total_price,
        record.sale_id,
        record.user_id,
    ]


def deserialize_movement(raw_row: Sequence[object]) -> StockMovement:
    """Convert a raw ``StockMovements`` row into a :class:`StockMovement`."""

    (
        movement_id,
        timestamp,
        product_id,
        movement_type,
        quantity,
        reason,
        unit_price,
        total_price,
        sale_id,
        user_id,
    ) = raw_row[:10]
    return StockMovement(
        movement_id=_optional_str(movement_id),
        timestamp=_parse_datetime(timestamp),
        product_id=str(product_id),
        movement_type=MovementType(str(movement_type)),
        quantity=int(quantity),
        reason=_optional_str(reason),
        unit_price=_optional_decimal(unit_price),
        total_price=_optional_decimal(total_price),
        sale_id=_optional_str(sale_id),
        user_id=_optional_str(user_id),
    )


class WorkbookStore:
    """Shared handle guarding one workbook across the sheet repositories.

    ``openpyxl`` worksheets are not thread-safe, so every sheet access goes
    through the same re-entrant lock.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self.lock = threading.RLock()


class WorkbookProductRepository:
    """Product repository backed by the ``Products`` sheet."""

    def __init__(self, store: WorkbookStore) -> None:
        self._store = store

    def find_by_id(self, product_id: str) -> Optional[Product]:
        with self._store.lock:
            for raw in iter_sheet_rows(self._store.workbook, PRODUCTS_SHEET):
                if str(raw[0]) == product_id:
                    return deserialize_product(raw)
        return None

    def update_quantity(
        self, product_id: str, new_quantity: int, *, expected_quantity: Optional[int] = None
    ) -> None:
        if new_quantity < 0:
            raise ValueError("Quantity cannot be negative")
        with self._store.lock:
            workbook = self._store.workbook
            row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
            if row_index is None:
                raise EntityNotFoundError("product", product_id)
            if expected_quantity is not None:
                column = header_map(workbook, PRODUCTS_SHEET)["Quantity"]
                stored = int(workbook[PRODUCTS_SHEET].cell(row=row_index, column=column).value or 0)
                if stored != expected_quantity:
                    raise ConcurrentUpdateError("product", product_id, expected_quantity, stored)
            update_cells(workbook, PRODUCTS_SHEET, row_index, {"Quantity": new_quantity})

    def save(self, product: Product) -> Product:
        with self._store.lock:
            workbook = self._store.workbook
            row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product.product_id)
            if row_index is None:
                workbook[PRODUCTS_SHEET].append(serialize_product(product))
            else:
                columns = list(header_map(workbook, PRODUCTS_SHEET))
                update_cells(workbook, PRODUCTS_SHEET, row_index, dict(zip(columns, serialize_product(product))))
        return product

    def list_all(self) -> List[Product]:
        with self._store.lock:
            return [deserialize_product(raw) for raw in iter_sheet_rows(self._store.workbook, PRODUCTS_SHEET)]


class WorkbookClientRepository:
    """Client repository backed by the ``Clients`` sheet."""

    def __init__(self, store: WorkbookStore) -> None:
        self._store = store

    def find_by_id(self, client_id: str) -> Optional[Client]:
        with self._store.lock:
            for raw in iter_sheet_rows(self._store.workbook, CLIENTS_SHEET):
                if str(raw[0]) == client_id:
                    return deserialize_client(raw)
        return None

    def update_debt(
        self, client_id: str, new_debt: Decimal, *, expected_debt: Optional[Decimal] = None
    ) -> None:
        new_debt = to_money(new_debt)
        if new_debt < 0:
            raise ValueError("Current debt cannot be negative")
        with self._store.lock:
            workbook = self._store.workbook
            row_index = locate_row(workbook, CLIENTS_SHEET, "ClientID", client_id)
            if row_index is None:
                raise EntityNotFoundError("client", client_id)
            if expected_debt is not None:
                column = header_map(workbook, CLIENTS_SHEET)["CurrentDebt"]
                stored = _decimal(workbook[CLIENTS_SHEET].cell(row=row_index, column=column).value)
                if stored != to_money(expected_debt):
                    raise ConcurrentUpdateError("client", client_id, expected_debt, stored)
            update_cells(workbook, CLIENTS_SHEET, row_index, {"CurrentDebt": new_debt})

    def save(self, client: Client) -> Client:
        with self._store.lock:
            workbook = self._store.workbook
            row_index = locate_row(workbook, CLIENTS_SHEET, "ClientID", client.client_id)
            if row_index is None:
                workbook[CLIENTS_SHEET].append(serialize_client(client))
            else:
                columns = list(header_map(workbook, CLIENTS_SHEET))
                update_cells(workbook, CLIENTS_SHEET, row_index, dict(zip(columns, serialize_client(client))))
        return client

    def list_all(self) -> List[Client]:
        with self._store.lock:
            return [deserialize_client(raw) for raw in iter_sheet_rows(self._store.workbook, CLIENTS_SHEET)]


class WorkbookSaleRepository:
    """Sale repository spanning the ``Sales`` and ``SaleItems`` sheets."""

    def __init__(self, store: WorkbookStore) -> None:
        self._store = store

    def _items_by_sale(self) -> Dict[str, List[SaleItem]]:
        grouped: Dict[str, List[tuple[int, SaleItem]]] = {}
        for raw in iter_sheet_rows(self._store.workbook, SALE_ITEMS_SHEET):
            grouped.setdefault(str(raw[0]), []).append((int(raw[1] or 0), deserialize_sale_item(raw)))
        return {sale_id: [item for _, item in sorted(rows, key=lambda pair: pair[0])] for sale_id, rows in grouped.items()}

    def create(self, sale: Sale) -> Sale:
        created_at = sale.created_at or datetime.now(UTC)
        stored = replace(
            sale,
            sale_id=sale.sale_id or generate_id("S", when=created_at),
            created_at=created_at,
        )
        with self._store.lock:
            workbook = self._store.workbook
            workbook[SALES_SHEET].append(serialize_sale(stored))
            items_sheet = workbook[SALE_ITEMS_SHEET]
            for line_no, item in enumerate(stored.items, start=1):
                items_sheet.append(serialize_sale_item(stored.sale_id, line_no, item))
        return stored

    def find_by_id(self, sale_id: str) -> Optional[Sale]:
        with self._store.lock:
            for raw in iter_sheet_rows(self._store.workbook, SALES_SHEET):
                if str(raw[0]) == sale_id:
                    return deserialize_sale(raw, self._items_by_sale().get(sale_id, []))
        return None

    def _transition(self, sale_id: str, target: PaymentStatus) -> Sale:
        with self._store.lock:
            current = self.find_by_id(sale_id)
            if current is None:
                raise EntityNotFoundError("sale", sale_id)
            check_sale_transition(current, target)
            row_index = locate_row(self._store.workbook, SALES_SHEET, "SaleID", sale_id)
            update_cells(self._store.workbook, SALES_SHEET, row_index, {"PaymentStatus": target.value})
            return current.with_status(target)

    def cancel(self, sale_id: str) -> Sale:
        return self._transition(sale_id, PaymentStatus.CANCELLED)

    def mark_paid(self, sale_id: str) -> Sale:
        return self._transition(sale_id, PaymentStatus.PAID)

    def discard(self, sale_id: str) -> None:
        with self._store.lock:
            workbook = self._store.workbook
            row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id)
            if row_index is not None:
                workbook[SALES_SHEET].delete_rows(row_index)
            items_sheet = workbook[SALE_ITEMS_SHEET]
            # Walk bottom-up so deleting rows does not shift pending indices.
            for row_idx in range(items_sheet.max_row, 1, -1):
                if items_sheet.cell(row=row_idx, column=1).value == sale_id:
                    items_sheet.delete_rows(row_idx)
        log.warning("Discarded sale '%s' during rollback", sale_id)

    def list_all(self) -> List[Sale]:
        with self._store.lock:
            items = self._items_by_sale()
            return [
                deserialize_sale(raw, items.get(str(raw[0]), []))
                for raw in iter_sheet_rows(self._store.workbook, SALES_SHEET)
            ]


class WorkbookStockMovementRepository:
    """Append-only movement log backed by the ``StockMovements`` sheet."""

    def __init__(self, store: WorkbookStore) -> None:
        self._store = store

    def create(self, movement: StockMovement) -> StockMovement:
        timestamp = movement.timestamp or datetime.now(UTC)
        stored = replace(
            movement,
            movement_id=movement.movement_id or generate_id("M", when=timestamp),
            timestamp=timestamp,
        )
        with self._store.lock:
            self._store.workbook[STOCK_MOVEMENTS_SHEET].append(serialize_movement(stored))
        return stored

    def discard(self, movement_id: str) -> None:
        with self._store.lock:
            row_index = locate_row(self._store.workbook, STOCK_MOVEMENTS_SHEET, "MovementID", movement_id)
            if row_index is not None:
                self._store.workbook[STOCK_MOVEMENTS_SHEET].delete_rows(row_index)
        log.warning("Discarded stock movement '%s' during rollback", movement_id)

    def list_all(self) -> List[StockMovement]:
        with self._store.lock:
            return [deserialize_movement(raw) for raw in iter_sheet_rows(self._store.workbook, STOCK_MOVEMENTS_SHEET)]

    def list_by_product(self, product_id: str) -> List[StockMovement]:
        return [movement for movement in self.list_all() if movement.product_id == product_id]

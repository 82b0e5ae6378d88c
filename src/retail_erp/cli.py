"""Command-line entry points for the retail ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Reports are rendered here as plain text; the business layer only
returns records.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import MovementType, PaymentMethod, PaymentStatus
from .errors import BusinessRuleViolation, TransientError
from .models import Client, Product


SubParsers = argparse._SubParsersAction
ArgumentsHook = Callable[[argparse.ArgumentParser], None]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="retail-cli",
        description="Command-line tools for the retail ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _spec(name: str, help_text: str, execute: Callable[..., int], arguments: Optional[ArgumentsHook] = None) -> CommandSpec:
    """Bundle ``arguments`` into a registrar that adds the ``name`` sub-parser."""

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        sub = action.add_parser(name, help=help_text, description=help_text)
        if arguments is not None:
            arguments(sub)
        sub.set_defaults(command=name)
        return sub

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _register_all(subparsers: SubParsers, specs: Iterable[CommandSpec]) -> Dict[str, CommandSpec]:
    registered: Dict[str, CommandSpec] = {}
    for spec in specs:
        spec.register(subparsers)
        registered[spec.name] = spec
    return registered


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and stock movements."""
    return _register_all(
        subparsers,
        [
            _spec("add-product", "Register a new product in the Products sheet.", run_add_product, _add_product_arguments),
            _spec("add-client", "Register a new client in the Clients sheet.", run_add_client, _add_client_arguments),
            _spec("sale", "Record a sale of one or more products.", run_sale, _sale_arguments),
            _spec("cancel-sale", "Cancel a sale, returning its items to stock.", run_cancel_sale, _sale_id_argument),
            _spec("settle-sale", "Record payment of a pending store-credit sale.", run_settle_sale, _settle_arguments),
            _spec("stock-move", "Record a stock entry, exit, adjustment, return, or loss.", run_stock_move, _stock_move_arguments),
        ],
    )


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    return _register_all(
        subparsers,
        [
            _spec("stock", "Show stock levels per product.", run_stock_report, _stock_arguments),
            _spec("movements", "Show the stock movement log.", run_movements_report, _movements_arguments),
            _spec("debts", "Show clients with an outstanding balance.", run_debts_report),
            _spec("sales", "Show recorded sales.", run_sales_report, _sales_arguments),
        ],
    )


def _add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--product-name", required=True)
    parser.add_argument("--sale-price", required=True)
    parser.add_argument("--cost-price", default="0")
    parser.add_argument("--quantity", type=int, default=0)
    parser.add_argument("--min-quantity", type=int, default=0)
    parser.add_argument("--inactive", action="store_true", help="Create the product already deactivated.")


def _add_client_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client-id", required=True)
    parser.add_argument("--client-name", required=True)
    parser.add_argument("--credit-limit", default="0")
    parser.add_argument("--inactive", action="store_true", help="Create the client already deactivated.")


def _sale_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QUANTITY[:DISCOUNT]",
        help="Sale line; repeat for several products.",
    )
    parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], required=True)
    parser.add_argument("--client-id", default=None)
    parser.add_argument("--user-id", default=None, help="Operator id (defaults to [Defaults] DefaultOperator).")
    parser.add_argument("--discount", default="0")
    parser.add_argument("--notes", default=None)


def _sale_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sale-id", required=True)


def _settle_arguments(parser: argparse.ArgumentParser) -> None:
    _sale_id_argument(parser)
    parser.add_argument("--notes", default=None)


def _stock_move_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--type", dest="movement_type", choices=[member.value for member in MovementType], required=True)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--unit-price", default=None)
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--reason", default=None)


def _stock_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--low", action="store_true", help="Only show products at or below their minimum.")


def _movements_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", default=None)


def _sales_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--status", choices=[member.value for member in PaymentStatus], default=None)
    parser.add_argument("--since", type=datetime.fromisoformat, default=None, help="ISO date or datetime, inclusive (UTC).")
    parser.add_argument("--until", type=datetime.fromisoformat, default=None, help="ISO date or datetime, exclusive (UTC).")
    parser.add_argument("--client-id", default=None)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_operator(context: core_logic.RuntimeContext, user_id: Optional[str]) -> Optional[str]:
    """Fall back to the configured default operator when none is given."""
    if user_id:
        return user_id
    if context.settings is not None:
        return context.settings.default_operator_id
    return None


def parse_item(raw: str) -> core_logic.SaleItemCommand:
    """Parse ``PRODUCT_ID:QUANTITY[:DISCOUNT]`` into a sale line.

    Raises:
        ValueError: If the value is malformed.
    """
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise ValueError(f"Invalid item '{raw}': expected PRODUCT_ID:QUANTITY[:DISCOUNT]")
    discount = Decimal(parts[2]) if len(parts) == 3 else Decimal("0")
    return core_logic.SaleItemCommand(product_id=parts[0], quantity=int(parts[1]), discount=discount)


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a product record."""
    return Product(
        product_id=args.product_id,
        name=args.product_name,
        sale_price=Decimal(args.sale_price),
        cost_price=Decimal(args.cost_price),
        quantity=args.quantity,
        min_quantity=args.min_quantity,
        is_active=not getattr(args, "inactive", False),
    )


def translate_add_client(args: argparse.Namespace) -> Client:
    """Translate CLI args into a client record."""
    return Client(
        client_id=args.client_id,
        name=args.client_name,
        credit_limit=Decimal(args.credit_limit),
        is_active=not getattr(args, "inactive", False),
    )


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CreateSaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.CreateSaleCommand(
        user_id=resolve_operator(context, args.user_id) or "",
        items=[parse_item(raw) for raw in args.items],
        payment_method=PaymentMethod(args.payment_method),
        client_id=args.client_id,
        discount=Decimal(args.discount),
        notes=args.notes,
    )


def translate_settle_sale(args: argparse.Namespace) -> core_logic.SettleSaleCommand:
    """Translate CLI args into a settlement command object."""
    return core_logic.SettleSaleCommand(sale_id=args.sale_id, notes=args.notes)


def translate_stock_move(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.StockMovementCommand:
    """Translate CLI args into a stock movement command object."""
    return core_logic.StockMovementCommand(
        product_id=args.product_id,
        movement_type=MovementType(args.movement_type),
        quantity=args.quantity,
        reason=args.reason,
        unit_price=Decimal(args.unit_price) if args.unit_price is not None else None,
        user_id=resolve_operator(context, args.user_id),
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Added product {product.product_id} ({product.name})")
    return 0


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-client workflow in the BLL."""
    client = core_logic.add_client(context, translate_add_client(args))
    print(f"Added client {client.client_id} ({client.name})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.create_sale(context, translate_sale(context, args))
    print(f"Recorded sale {sale.sale_id}: total {sale.total} ({sale.payment_status.value})")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancellation workflow via the BLL."""
    sale = core_logic.cancel_sale(context, args.sale_id)
    print(f"Cancelled sale {sale.sale_id}")
    return 0


def run_settle_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the BLL."""
    sale = core_logic.settle_sale(context, translate_settle_sale(args))
    print(f"Settled sale {sale.sale_id}: {sale.total}")
    return 0


def run_stock_move(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a direct stock movement via the BLL."""
    movement = core_logic.record_stock_movement(context, translate_stock_move(context, args))
    print(f"Recorded {movement.movement_type.value} {movement.movement_id} for {movement.product_id}")
    return 0


def format_stock_report(products: Sequence[Product]) -> List[str]:
    lines = [f"{'ProductID':<12} {'Name':<24} {'Qty':>6} {'Min':>6}  Status"]
    for product in products:
        status = "LOW" if product.is_low_stock else "ok"
        if not product.is_active:
            status = "inactive"
        lines.append(
            f"{product.product_id:<12} {product.name:<24} {product.quantity:>6} {product.min_quantity:>6}  {status}"
        )
    return lines


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if getattr(args, "low", False):
        products = core_logic.list_low_stock_products(context)
    else:
        products = context.products.list_all()
    for line in format_stock_report(products):
        print(line)
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock movement log report."""
    for movement in core_logic.list_stock_movements(context, product_id=args.product_id):
        timestamp = movement.timestamp.isoformat() if movement.timestamp else ""
        impact = "=" if movement.movement_type is MovementType.ADJUSTMENT else f"{movement.stock_impact:+d}"
        print(
            f"{timestamp} {movement.movement_id} {movement.product_id} "
            f"{movement.movement_type.value} {impact} {movement.reason or ''}".rstrip()
        )
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outstanding debts reporting workflow."""
    debts = core_logic.calculate_outstanding_debts(context)
    if not debts:
        print("No outstanding debts.")
        return 0
    for client_id, debt in sorted(debts.items()):
        client = core_logic.get_client(context, client_id)
        print(f"{client_id:<12} {client.name:<24} debt {debt:>10} available {client.available_credit:>10}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales listing workflow."""
    status = PaymentStatus(args.status) if args.status else None
    sales = core_logic.list_sales(
        context,
        status=status,
        client_id=args.client_id,
        since=getattr(args, "since", None),
        until=getattr(args, "until", None),
    )
    for sale in sales:
        print(
            f"{sale.sale_id} {sale.payment_method.value:<12} {sale.payment_status.value:<9} "
            f"units {sale.total_units:>4} total {sale.total:>10} (discount {sale.discount_percentage}%)"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, TransientError):
        log.error("%s (safe to retry)", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Iterable, Mapping

import pytest

from retail_erp import cli, core_logic
from retail_erp.constants import MovementType, PaymentMethod, PaymentStatus
from retail_erp.errors import BusinessRuleViolation, ConcurrentUpdateError, TransactionRolledBack


WRITE_COMMANDS = {
    "add-product",
    "add-client",
    "sale",
    "cancel-sale",
    "settle-sale",
    "stock-move",
}

READ_COMMANDS = {
    "stock",
    "movements",
    "debts",
    "sales",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "retail-cli"
    assert "retail" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every read and write sub-command."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def test_sale_command_accepts_repeated_items():
    """The sale parser should collect every --item occurrence."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    namespace = parser.parse_args(
        [
            "sale",
            "--item",
            "P1:3",
            "--item",
            "P2:1:0.50",
            "--payment-method",
            "STORE_CREDIT",
            "--client-id",
            "C1",
            "--discount",
            "1.00",
        ]
    )
    assert namespace.command == "sale"
    assert namespace.items == ["P1:3", "P2:1:0.50"]
    assert namespace.payment_method == "STORE_CREDIT"
    assert namespace.client_id == "C1"
    assert namespace.user_id is None


def test_sale_command_rejects_unknown_payment_method():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--item", "P1:1", "--payment-method", "BARTER"])


def test_stock_move_command_parses_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    namespace = parser.parse_args(
        ["stock-move", "--product-id", "P1", "--type", "ENTRY", "--quantity", "12", "--unit-price", "2.50"]
    )
    assert namespace.movement_type == "ENTRY"
    assert namespace.quantity == 12
    assert namespace.unit_price == "2.50"


def test_add_product_command_parses_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    namespace = parser.parse_args(
        ["add-product", "--product-id", "P1", "--product-name", "Soda", "--sale-price", "8.99", "--inactive"]
    )
    assert namespace.product_id == "P1"
    assert namespace.sale_price == "8.99"
    assert namespace.quantity == 0
    assert namespace.inactive is True


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(memory_context, command_table_entry):
    name, spec = command_table_entry
    args = argparse.Namespace(command=name)
    assert cli.dispatch_command(memory_context, args, {name: spec}) == 0
    assert spec.execute.__dict__.get("called") is True


def test_dispatch_command_handles_unknown_commands(memory_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(memory_context, argparse.Namespace(command="nope"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("P1:3", core_logic.SaleItemCommand("P1", 3, Decimal("0"))),
        ("P2:1:0.50", core_logic.SaleItemCommand("P2", 1, Decimal("0.50"))),
    ],
)
def test_parse_item(raw, expected):
    assert cli.parse_item(raw) == expected


@pytest.mark.parametrize("raw", ["P1", ":3", "P1:3:1:2", "P1:three"])
def test_parse_item_rejects_malformed_values(raw):
    with pytest.raises(ValueError):
        cli.parse_item(raw)


def test_translate_sale_falls_back_to_default_operator(runtime_context):
    """Without --user-id the configured DefaultOperator records the sale."""

    args = argparse.Namespace(
        items=["P1:2"],
        payment_method="CASH",
        client_id=None,
        user_id=None,
        discount="0",
        notes="walk-in",
    )
    command = cli.translate_sale(runtime_context, args)

    assert command.user_id == "U-DEFAULT"
    assert command.payment_method is PaymentMethod.CASH
    assert command.items == [core_logic.SaleItemCommand("P1", 2, Decimal("0"))]
    assert command.notes == "walk-in"


def test_translate_stock_move_builds_command(memory_context):
    args = argparse.Namespace(
        product_id="P1", movement_type="LOSS", quantity=2, unit_price=None, user_id="U7", reason="Broken"
    )
    command = cli.translate_stock_move(memory_context, args)
    assert command == core_logic.StockMovementCommand("P1", MovementType.LOSS, 2, "Broken", None, "U7")


def test_translate_add_product_builds_record():
    args = argparse.Namespace(
        product_id="P1",
        product_name="Soda",
        sale_price="8.99",
        cost_price="5",
        quantity=10,
        min_quantity=2,
        inactive=False,
    )
    product = cli.translate_add_product(args)
    assert product.sale_price == Decimal("8.99")
    assert product.quantity == 10
    assert product.is_active is True


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_sale_invokes_bll(seeded_context, capsys):
    args = argparse.Namespace(
        items=["P1:3"], payment_method="CASH", client_id=None, user_id="U1", discount="0", notes=None
    )
    assert cli.run_sale(seeded_context, args) == 0
    assert "26.97" in capsys.readouterr().out
    assert seeded_context.products.find_by_id("P1").quantity == 7


def test_run_cancel_sale_invokes_bll(seeded_context):
    sale = core_logic.create_sale(
        seeded_context,
        core_logic.CreateSaleCommand("U1", [core_logic.SaleItemCommand("P1", 1)], PaymentMethod.PIX),
    )

    assert cli.run_cancel_sale(seeded_context, argparse.Namespace(sale_id=sale.sale_id)) == 0
    assert core_logic.get_sale(seeded_context, sale.sale_id).payment_status is PaymentStatus.CANCELLED
    assert seeded_context.products.find_by_id("P1").quantity == 10


def test_run_reports_render_rows(seeded_context, capsys):
    core_logic.create_sale(
        seeded_context,
        core_logic.CreateSaleCommand(
            "U1", [core_logic.SaleItemCommand("P1", 1)], PaymentMethod.STORE_CREDIT, client_id="C2"
        ),
    )

    assert cli.run_stock_report(seeded_context, argparse.Namespace(low=True)) == 0
    assert cli.run_movements_report(seeded_context, argparse.Namespace(product_id="P1")) == 0
    assert cli.run_debts_report(seeded_context, argparse.Namespace()) == 0
    assert cli.run_sales_report(seeded_context, argparse.Namespace(status="PENDING", client_id=None)) == 0

    out = capsys.readouterr().out
    assert "Chips" in out and "LOW" in out
    assert "EXIT -1" in out
    assert "C2" in out and "8.99" in out
    assert "PENDING" in out


def test_sales_report_date_window(seeded_context, capsys):
    """--since/--until parse ISO dates and narrow the sales listing."""

    sale = core_logic.create_sale(
        seeded_context, core_logic.CreateSaleCommand("U1", [core_logic.SaleItemCommand("P1", 1)], PaymentMethod.CASH)
    )
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    upcoming = parser.parse_args(["sales", "--since", "2999-01-01"])
    assert upcoming.since.year == 2999
    capsys.readouterr()
    assert cli.run_sales_report(seeded_context, upcoming) == 0
    assert sale.sale_id not in capsys.readouterr().out

    past = parser.parse_args(["sales", "--since", "2000-01-01", "--until", "2999-01-01"])
    assert cli.run_sales_report(seeded_context, past) == 0
    assert sale.sale_id in capsys.readouterr().out


def test_run_debts_report_without_debts(memory_context, capsys):
    assert cli.run_debts_report(memory_context, argparse.Namespace()) == 0
    assert "No outstanding debts." in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (BusinessRuleViolation("invalid"), 2),
        (FileNotFoundError("missing"), 3),
        (ConcurrentUpdateError("product", "P1", 5, 2), 4),
        (TransactionRolledBack("create sale", OSError("disk")), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should surface permission problems as RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


def test_load_runtime_context_checks_schema(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    exit_code = cli.main(["sale"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["persisted"] is runtime_context
    assert called["args"].command == "sale"


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["sale"]) == 2


def test_main_reports_missing_configuration(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    assert cli.main(["stock"]) == 3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]

"""Shared pytest fixtures and utilities for retail ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from retail_erp import cli, constants, core_logic  # noqa: E402
from retail_erp.models import Client, Product  # noqa: E402
from retail_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR_ID = "U-DEFAULT"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultOperator = {default_operator_id}\n\n"
    "[Sales]\n"
    "MissingProductOnCancel = {missing_product_policy}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_operator_id: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_operator_id: str = DEFAULT_OPERATOR_ID,
        missing_product_policy: str = "skip",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_operator_id=default_operator_id,
                missing_product_policy=missing_product_policy,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_operator_id=default_operator_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------


def seed_catalog(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Register the reference products and clients used across tests.

    * ``P1`` Soda, 8.99, 10 units on hand.
    * ``P2`` Chips, 4.50, 5 units on hand, minimum 5.
    * ``P3`` Discontinued, inactive.
    * ``C1`` Ana, limit 500.00, debt 450.00.
    * ``C2`` Bruno, limit 1000.00, no debt.
    """

    core_logic.add_product(
        context,
        Product("P1", "Soda", Decimal("8.99"), cost_price=Decimal("5.00"), quantity=10, min_quantity=2),
    )
    core_logic.add_product(context, Product("P2", "Chips", Decimal("4.50"), quantity=5, min_quantity=5))
    core_logic.add_product(context, Product("P3", "Discontinued", Decimal("2.00"), quantity=3, is_active=False))
    core_logic.add_client(context, Client("C1", "Ana", credit_limit=Decimal("500.00"), current_debt=Decimal("450.00")))
    core_logic.add_client(context, Client("C2", "Bruno", credit_limit=Decimal("1000.00")))
    return context


@pytest.fixture
def memory_context() -> core_logic.RuntimeContext:
    """Return an empty context over in-memory repositories."""

    return core_logic.build_memory_context()


@pytest.fixture
def seeded_context(memory_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Return an in-memory context holding the reference catalog."""

    return seed_catalog(memory_context)


@pytest.fixture
def seeded_runtime_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Return a workbook-backed context holding the reference catalog."""

    return seed_catalog(runtime_context)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="retail-cli", description="Retail CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]

"""Bootstrap for the retail ERP master workbook.

Run as ``retail-setup`` (or ``python -m retail_erp.setup_excel``) to create
an empty workbook at the ``DataFile`` location named in ``config.ini``. The
same helpers are used by the test fixtures to build throwaway workbooks.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import log
from .constants import SheetName
from .data_manager import CONFIG_FILE_NAME, find_config_file, parse_settings, read_config

# Header order is the row layout the data_manager (de)serializers expect.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: (
        "ProductID", "ProductName", "SalePrice", "CostPrice",
        "Quantity", "MinQuantity", "IsActive", "ExpirationDate",
    ),
    SheetName.CLIENTS.value: (
        "ClientID", "ClientName", "CreditLimit", "CurrentDebt", "IsActive",
    ),
    SheetName.SALES.value: (
        "SaleID", "CreatedAt", "ClientID", "UserID", "PaymentMethod",
        "PaymentStatus", "Subtotal", "Discount", "Total", "Notes",
    ),
    SheetName.SALE_ITEMS.value: (
        "SaleID", "LineNo", "ProductID", "ProductName",
        "Quantity", "UnitPrice", "Discount", "Total",
    ),
    SheetName.STOCK_MOVEMENTS.value: (
        "MovementID", "Timestamp", "ProductID", "MovementType", "Quantity",
        "Reason", "UnitPrice", "TotalPrice", "SaleID", "UserID",
    ),
}

MIN_COLUMN_WIDTH = 12


def build_master_workbook(
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    *,
    store_name: Optional[str] = None,
) -> openpyxl.Workbook:
    """Return an in-memory workbook with one bold, frozen header row per sheet."""

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    header_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.append(list(columns))
        for cell in worksheet[1]:
            cell.font = header_font
            width = max(MIN_COLUMN_WIDTH, len(str(cell.value)) + 2)
            worksheet.column_dimensions[get_column_letter(cell.column)].width = width
        worksheet.freeze_panes = "A2"

    if store_name:
        workbook.properties.title = store_name
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    store_name: Optional[str] = None,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write a fresh master workbook to ``destination`` and return its path.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Master workbook already exists: {target}")

    target.parent.mkdir(parents=True, exist_ok=True)
    build_master_workbook(sheet_columns, store_name=store_name).save(target)
    log.info("Created master workbook with %d sheet(s) at %s", len(sheet_columns), target)
    return target


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by the ``DataFile`` entry of ``config.ini``.

    Without ``config_path`` the file is searched upward from the working
    directory. Relative ``DataFile`` entries resolve against the config
    file's own directory.
    """

    resolved = find_config_file(config_path).expanduser().resolve()
    settings = parse_settings(read_config(resolved), base_path=resolved.parent)
    return create_master_workbook(settings.data_file, store_name=settings.store_name, overwrite=overwrite)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="retail-setup",
        description="Create the empty retail ERP master workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Path to {CONFIG_FILE_NAME} (default: search upward from the working directory)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace the workbook if it already exists.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``retail-setup``; returns a process exit code."""

    args = build_parser().parse_args(argv)

    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except FileExistsError as exc:
        log.error("%s", exc)
        print(f"[ERROR] {exc}\nPass --force to replace it.", file=sys.stderr)
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        log.error("Invalid setup configuration: %s", exc)
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 3 if isinstance(exc, FileNotFoundError) else 1
    except OSError as exc:
        log.error("Unable to write master workbook: %s", exc)
        print(f"[ERROR] Unable to write workbook: {exc}", file=sys.stderr)
        return 1

    print(f"Master workbook ready at {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())

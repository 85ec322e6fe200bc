"""Utility for initializing the stock ledger master workbook.

The module doubles as a script (``stock-ledger-setup``) and as a library used
by tests or other tooling, so the workbook bootstrap logic stays consistent
regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, LOW_STOCK_THRESHOLD_KEY, SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CATEGORIES.value: [
        "CategoryID",
        "CategoryName",
    ],
    SheetName.ITEMS.value: [
        "ItemID",
        "ItemName",
        "CategoryID",
        "Quantity",
        "Price",
        "Image",
        "Notes",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "DateTime",
        "ItemID",
        "ItemNameSnapshot",
        "QtySold",
        "PriceEach",
        "Discount",
        "TotalAmount",
        "Notes",
    ],
    SheetName.SETTINGS.value: [
        "Key",
        "Value",
    ],
}


def create_master_workbook(
    destination: Path,
    *,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Every sheet receives a bold header row and the ``Settings`` sheet is
    seeded with the low stock threshold. When ``overwrite`` is ``False`` (the
    default) this function raises ``FileExistsError`` if the target already
    exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook[SheetName.SETTINGS.value].append([LOW_STOCK_THRESHOLD_KEY, low_stock_threshold])

    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini`` using its default threshold."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_master_workbook(
        settings.data_file,
        low_stock_threshold=settings.default_low_stock_threshold,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the stock ledger data file")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())

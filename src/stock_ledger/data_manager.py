"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the master
workbook. Business rules belong in :mod:`stock_ledger.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and durably persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   removing individual rows on the ``Categories``, ``Items``,
   ``Transactions`` and ``Settings`` sheets.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, MONEY_QUANTUM, SheetName


CONFIG_FILE_NAME = "config.ini"
CATEGORIES_SHEET = SheetName.CATEGORIES.value
ITEMS_SHEET = SheetName.ITEMS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
SETTINGS_SHEET = SheetName.SETTINGS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``Categories`` sheet."""

    category_id: str
    category_name: str


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    item_name: str
    category_id: str
    quantity: int
    price: Decimal
    image: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    timestamp_iso: str
    item_id: str
    item_name_snapshot: str
    qty_sold: int
    price_each: Decimal
    discount: Decimal
    total_amount: Decimal
    notes: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return ``explicit_path`` or the nearest ``config.ini`` above the cwd.

    An explicit path is trusted as given; :func:`read_config` reports it if it
    is missing. The search checks the working directory first and then each
    parent in turn.

    Raises:
        FileNotFoundError: If neither the working directory nor any parent
            holds a ``config.ini``.
    """

    if explicit_path:
        return Path(explicit_path)

    start = Path.cwd()
    for directory in (start, *start.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate

    raise FileNotFoundError(f"No {CONFIG_FILE_NAME} found in {start} or any parent directory")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.
            Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` (or the
    current working directory) and resolved. ``[Defaults] LowStockThreshold``
    is optional and falls back to ``DEFAULT_LOW_STOCK_THRESHOLD``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``LowStockThreshold`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    threshold = parser.getint(
        "Defaults",
        "LowStockThreshold",
        fallback=DEFAULT_LOW_STOCK_THRESHOLD,
    )
    if threshold < 0:
        raise ValueError(f"LowStockThreshold must be zero or positive, got {threshold}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_low_stock_threshold=threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Durably persist the workbook at ``destination``.

    The workbook is first written to a hidden staging file beside the
    destination and then moved over it with :func:`os.replace`, so the file on
    disk is always either the previous or the new version. Parent directories
    are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.

    Raises:
        OSError: If the staging file cannot be written or moved into place.
            The staging file is removed before the error propagates.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.stem}.saving{dest.suffix}")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_categories(workbook: Workbook) -> Iterable[CategoryRow]:
    """Iterate over category records stored on the ``Categories`` worksheet."""

    for raw in _iter_sheet(workbook, CATEGORIES_SHEET):
        yield deserialize_category(raw)


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over the ``Items`` worksheet and yield typed records.

    Header and completely empty rows are ignored. Remaining rows are converted
    into :class:`ItemRow` instances via :func:`deserialize_item`.
    """

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Rows come back in sheet order, which is the order they were appended.
    Monetary columns become :class:`~decimal.Decimal` instances and blank
    notes stay ``None``.
    """

    for raw in _iter_sheet(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def read_settings(workbook: Workbook) -> Dict[str, str]:
    """Return the ``Settings`` sheet as a ``{key: value}`` mapping of strings."""

    settings: Dict[str, str] = {}
    for raw in _iter_sheet(workbook, SETTINGS_SHEET):
        key, value = raw[0], raw[1]
        if key is None:
            continue
        settings[str(key)] = "" if value is None else str(value)
    return settings


def write_setting(workbook: Workbook, key: str, value: object) -> None:
    """Insert or overwrite a single ``Settings`` row identified by ``key``."""

    row_index = locate_row(workbook, SETTINGS_SHEET, "Key", key)
    sheet = workbook[SETTINGS_SHEET]
    if row_index is None:
        sheet.append([key, value])
    else:
        sheet.cell(row=row_index, column=2, value=value)


def append_category(workbook: Workbook, record: CategoryRow) -> None:
    """Append a category record to the ``Categories`` worksheet."""

    workbook[CATEGORIES_SHEET].append(serialize_category(record))


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization so Excel receives the exact decimal text.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def update_category(workbook: Workbook, category_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing category.

    Raises:
        KeyError: If the category or any referenced column cannot be found.
    """

    _update_row(workbook, CATEGORIES_SHEET, "CategoryID", category_id, field_values)


def update_item(workbook: Workbook, item_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing item.

    The function locates the row whose ``ItemID`` matches ``item_id``,
    validates that each requested field exists in the header row, and then
    writes the provided values into the corresponding cells. Only the
    specified fields are modified.

    Args:
        workbook (Workbook): Workbook containing the items sheet.
        item_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    _update_row(workbook, ITEMS_SHEET, "ItemID", item_id, field_values)


def delete_category(workbook: Workbook, category_id: str) -> None:
    """Remove the category row identified by ``category_id``.

    Raises:
        KeyError: If no row carries the identifier.
    """

    _delete_row(workbook, CATEGORIES_SHEET, "CategoryID", category_id)


def delete_item(workbook: Workbook, item_id: str) -> None:
    """Remove the item row identified by ``item_id``.

    Raises:
        KeyError: If no row carries the identifier.
    """

    _delete_row(workbook, ITEMS_SHEET, "ItemID", item_id)


def clear_transactions(workbook: Workbook) -> int:
    """Delete every data row of the ``Transactions`` sheet, keeping the header.

    Returns:
        int: Number of worksheet rows removed.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    removed = max(sheet.max_row - 1, 0)
    if removed:
        sheet.delete_rows(2, removed)
    return removed


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    header_cells = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, field_values: dict[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def _delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index, 1)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Return the worksheet row number whose ``key_column`` equals ``key_value``.

    Identifiers are unique per sheet, so the first match wins. Row numbers
    are 1-based and start at 2 because row 1 holds the header.

    Raises:
        KeyError: If ``key_column`` is not a header of ``sheet_name``.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"{sheet_name} has no column {key_column!r}")

    offset = header_map[key_column] - 1
    rows = workbook[sheet_name].iter_rows(min_row=2, values_only=True)
    for row_number, values in enumerate(rows, start=2):
        if values[offset] == key_value:
            return row_number
    return None


def serialize_category(record: CategoryRow) -> list[object]:
    """Return ``[CategoryID, CategoryName]``."""

    return [record.category_id, record.category_name]


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[ItemID, ItemName, CategoryID, Quantity, Price, Image,
        Notes]``.
    """

    return [
        record.item_id,
        record.item_name,
        record.category_id,
        record.quantity,
        record.price,
        record.image,
        record.notes,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the transaction sheet column order."""

    return [
        record.transaction_id,
        record.timestamp_iso,
        record.item_id,
        record.item_name_snapshot,
        record.qty_sold,
        record.price_each,
        record.discount,
        record.total_amount,
        record.notes,
    ]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    # Cells come back as doubles; cents restore the exact stored amount.
    amount = Decimal(str(raw)) if raw is not None else Decimal(default)
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _to_optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw worksheet row into a :class:`CategoryRow`."""

    category_id, category_name = raw_row[0], raw_row[1]
    return CategoryRow(category_id=str(category_id), category_name=str(category_name))


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record.

    Excel hands numbers back as ``int`` or ``float``; quantities are coerced
    to ``int`` and prices go through ``str`` into :class:`~decimal.Decimal`,
    rounded to cents, so values such as ``9.99`` survive unchanged.
    """

    item_id, item_name, category_id, quantity_raw, price_raw, image, notes = raw_row[:7]
    return ItemRow(
        item_id=str(item_id),
        item_name=str(item_name),
        category_id=str(category_id),
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        price=_to_decimal(price_raw),
        image=_to_optional_text(image),
        notes=_to_optional_text(notes),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record."""

    (
        transaction_id,
        timestamp_iso,
        item_id,
        item_name_snapshot,
        qty_sold_raw,
        price_each_raw,
        discount_raw,
        total_amount_raw,
        notes,
    ) = raw_row[:9]

    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        item_id=str(item_id) if item_id is not None else "",
        item_name_snapshot=str(item_name_snapshot) if item_name_snapshot is not None else "",
        qty_sold=int(qty_sold_raw) if qty_sold_raw is not None else 0,
        price_each=_to_decimal(price_each_raw),
        discount=_to_decimal(discount_raw),
        total_amount=_to_decimal(total_amount_raw),
        notes=_to_optional_text(notes),
    )

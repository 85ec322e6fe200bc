"""Enumerations shared across the stock ledger modules.

Centralises domain constants so that the data access layer, the ledger engine,
and the command-line front end rely on a single source of truth for sheet
names, status labels, and defaults.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 5

LOW_STOCK_THRESHOLD_KEY = "LowStockThreshold"

# Workbook cells hold doubles, so money is kept to cents and 15 significant digits.
MONEY_QUANTUM = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999.99")


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    CATEGORIES = "Categories"
    ITEMS = "Items"
    TRANSACTIONS = "Transactions"
    SETTINGS = "Settings"


class StockStatus(str, Enum):
    """Display classification of an item's quantity against the threshold."""

    IN_STOCK = "in-stock"
    LOW_STOCK = "low-stock"
    OUT_OF_STOCK = "out-of-stock"


class TimePeriod(str, Enum):
    """Date-range buckets supported when listing transactions."""

    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class ItemSortKey(str, Enum):
    """Columns the item listing can be ordered by."""

    NAME = "name"
    QUANTITY = "quantity"
    PRICE = "price"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "LOW_STOCK_THRESHOLD_KEY",
    "MONEY_QUANTUM",
    "MAX_AMOUNT",
    "SheetName",
    "StockStatus",
    "TimePeriod",
    "ItemSortKey",
]

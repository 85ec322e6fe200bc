"""Ledger engine for the stock ledger.

This module holds the rules that keep categories, items, and the sales
transaction log mutually consistent. It consumes the data access layer for all
I/O while ensuring every mutation passes through validation first and is then
committed as one durable unit of work.

Public operations raise :class:`LedgerError` subclasses. Callers that must not
see exceptions wrap them with :func:`attempt`, which turns every ledger error
into an :class:`Outcome` carrying the error kind and a readable reason.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LOW_STOCK_THRESHOLD_KEY,
    MAX_AMOUNT,
    MONEY_QUANTUM,
    ItemSortKey,
    StockStatus,
    TimePeriod,
)


T = TypeVar("T")

_CACHE_BUCKETS = ("categories", "items", "transactions", "settings")

_ITEM_COLUMNS = {
    "item_name": "ItemName",
    "category_id": "CategoryID",
    "quantity": "Quantity",
    "price": "Price",
    "image": "Image",
    "notes": "Notes",
}


class LedgerError(Exception):
    """Base class for every failure reported by the ledger engine."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def reason(self) -> str:
        return str(self)


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""


class EmptyNameError(BusinessRuleViolation):
    """A category or item name is blank after trimming."""


class InvalidTextError(BusinessRuleViolation):
    """A name or note contains characters a worksheet cell cannot hold."""


class DuplicateNameError(BusinessRuleViolation):
    """A name collides case-insensitively with an existing record."""


class CategoryMissingError(BusinessRuleViolation):
    """An item references a category that does not exist."""


class CategoryInUseError(BusinessRuleViolation):
    """A category cannot be deleted while items still reference it."""


class InvalidQuantityError(BusinessRuleViolation):
    """A quantity is not a whole number within the allowed range."""


class InvalidPriceError(BusinessRuleViolation):
    """A monetary amount is not a non-negative number."""


class InvalidDiscountError(BusinessRuleViolation):
    """A discount is negative or larger than the sale subtotal."""


class InsufficientStockError(BusinessRuleViolation):
    """A sale asks for more units than the item has on hand."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced category, item, or transaction is unknown."""


class ItemNotFoundError(NotFoundError):
    """The item named by a sale does not exist."""


class PersistenceError(LedgerError):
    """The workbook could not be written; the in-memory change was discarded."""


class _Unset(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset.UNSET


@dataclass
class RuntimeContext:
    """Container for configuration, the live workbook, and the store lock.

    One context is created per session and handed to every operation. The
    re-entrant ``lock`` is the single mutual-exclusion scope for the whole
    store: mutations hold it from validation through the durable save, and
    readers hold it while copying collections out of the cache.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ItemUpdate:
    """Partial update for :func:`edit_item`.

    Fields left at ``UNSET`` are not touched. ``None`` is meaningful only for
    ``image`` and ``notes``, where it clears the stored value.
    """

    name: Union[str, _Unset] = UNSET
    category_id: Union[str, _Unset] = UNSET
    quantity: Union[int, _Unset] = UNSET
    price: Union[Decimal, int, str, _Unset] = UNSET
    image: Union[str, None, _Unset] = UNSET
    notes: Union[str, None, _Unset] = UNSET

    def provided(self) -> Dict[str, Any]:
        """Return only the fields the caller explicitly set."""

        return {
            spec.name: getattr(self, spec.name)
            for spec in fields(self)
            if getattr(self, spec.name) is not UNSET
        }


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling units of one item.

    ``price_each`` defaults to the item's current price when left as ``None``.
    """

    item_id: str
    quantity: int
    price_each: Union[Decimal, int, str, None] = None
    discount: Union[Decimal, int, str] = Decimal("0")
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Consistent read-only view of every collection at one instant."""

    categories: Tuple[data_manager.CategoryRow, ...]
    items: Tuple[data_manager.ItemRow, ...]
    transactions: Tuple[data_manager.TransactionRow, ...]
    low_stock_threshold: int


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Success value or typed failure returned across the engine boundary."""

    value: Optional[T] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


def attempt(operation: Callable[..., T], *args: Any, **kwargs: Any) -> Outcome[T]:
    """Run an engine operation and fold ledger errors into an :class:`Outcome`.

    Only :class:`LedgerError` subclasses are converted. Anything else is a
    programming error and propagates unchanged.

    Args:
        operation (Callable): Any public engine function.
        *args: Positional arguments forwarded to ``operation``.
        **kwargs: Keyword arguments forwarded to ``operation``.

    Returns:
        Outcome: ``value`` populated on success, otherwise ``error_kind`` and
            ``reason`` describe the failure.
    """

    try:
        value = operation(*args, **kwargs)
    except LedgerError as exc:
        return Outcome(error_kind=exc.kind, reason=exc.reason)
    return Outcome(value=value)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as an aware datetime, or the current UTC time.

    Naive datetimes are interpreted as UTC so stored timestamps always carry
    an offset and compare cleanly.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def generate_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``I3f2a...``.

    Args:
        prefix (str): One-letter designator of the record type (``C``, ``I``
            or ``T``).

    Returns:
        str: ``prefix`` followed by 32 hexadecimal characters of a random
            UUID.
    """

    return f"{prefix}{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Cache management
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets so the next read rebuilds them from the workbook."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "categories")
    if "all" not in bucket:
        all_categories = tuple(data_manager.iter_categories(context.workbook))
        bucket["all"] = all_categories
        bucket["by_id"] = {category.category_id: category for category in all_categories}
        log.debug("Populated categories cache with %d entries", len(all_categories))
    return bucket


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "items")
    if "all" not in bucket:
        all_items = tuple(data_manager.iter_items(context.workbook))
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        log.debug("Populated items cache with %d entries", len(all_items))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction log cache bucket on demand.

    Because transactions are immutable after creation, caching the full tuple
    and a dictionary keyed by ``transaction_id`` avoids repeated worksheet
    scans for filtering and reporting.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = tuple(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def _ensure_settings_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "settings")
    if "values" not in bucket:
        bucket["values"] = data_manager.read_settings(context.workbook)
    return bucket


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context with an empty cache.

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
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

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


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a fresh context whose workbook is reloaded from disk.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def _discard_pending_changes(context: RuntimeContext) -> None:
    """Swap the in-memory workbook for the last durable copy on disk."""

    _invalidate_cache(context, *_CACHE_BUCKETS)
    try:
        context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    except Exception as exc:
        log.critical(
            "Unable to reload workbook '%s' after a failed write: %s",
            context.settings.data_file,
            exc,
        )
        raise PersistenceError(
            f"Write failed and the last saved workbook could not be reloaded: {exc}"
        ) from exc
    log.warning("Discarded unsaved changes; reloaded '%s'", context.settings.data_file)


@contextmanager
def _commit_scope(context: RuntimeContext, operation: str) -> Iterator[None]:
    """Apply workbook writes as one durable unit of work.

    Callers run every validation before entering the scope. Writes made inside
    the scope are saved together on exit. If any write or the save fails the
    workbook is reloaded from disk, so neither memory nor disk keeps a partial
    change, and :class:`PersistenceError` is raised.
    """

    with context.lock:
        try:
            yield
            data_manager.save_workbook(
                context.workbook,
                destination=context.settings.data_file,
            )
        except Exception as exc:
            log.error("Unable to commit %s: %s", operation, exc)
            _discard_pending_changes(context)
            raise PersistenceError(f"Could not save {operation}: {exc}") from exc
        finally:
            _invalidate_cache(context, *_CACHE_BUCKETS)


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------


def require_storable_text(value: str, *, label: str) -> str:
    """Reject control characters that openpyxl refuses to write.

    Raises:
        InvalidTextError: If ``value`` contains such a character.
    """

    if ILLEGAL_CHARACTERS_RE.search(value):
        log.warning("%s validation failed: control characters in %r", label, value)
        raise InvalidTextError(f"{label} contains unsupported control characters.")
    return value


def require_non_empty_name(value: object, *, label: str = "Name") -> str:
    """Return the trimmed name or raise :class:`EmptyNameError`."""

    if not isinstance(value, str) or not value.strip():
        log.warning("%s validation failed: %r", label, value)
        raise EmptyNameError(f"{label} is required.")
    return require_storable_text(value.strip(), label=label)


def require_non_negative_integer(value: object, *, label: str = "Quantity") -> int:
    """Validate a whole number that may be zero.

    Booleans are rejected even though ``bool`` subclasses ``int``; floats and
    decimals are rejected even when integral, because quantities count units.

    Raises:
        InvalidQuantityError: If ``value`` is not an ``int`` of zero or more.
    """

    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.warning("%s validation failed: %r", label, value)
        raise InvalidQuantityError(f"{label} must be a whole number of 0 or more.")
    return value


def require_positive_integer(value: object, *, label: str = "Quantity") -> int:
    """Validate a whole number of at least one."""

    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        log.warning("%s validation failed: %r", label, value)
        raise InvalidQuantityError(f"{label} must be at least 1.")
    return value


def _coerce_decimal(value: object) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, (int, float, str)):
        try:
            candidate = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not candidate.is_finite():
        return None
    return candidate.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def require_non_negative_amount(value: object, *, label: str = "Price") -> Decimal:
    """Validate that a monetary value is a number of zero or more.

    Amounts are rounded half-up to cents before the checks.

    Args:
        value (object): ``Decimal``, ``int``, ``float`` or numeric string.
        label (str): Field name used in the error reason.

    Returns:
        Decimal: The parsed amount.

    Raises:
        InvalidPriceError: If ``value`` is not a finite number, is negative,
            or is larger than ``MAX_AMOUNT``.
    """

    amount = _coerce_decimal(value)
    if amount is None or amount < 0:
        log.warning("%s validation failed: %r", label, value)
        raise InvalidPriceError(f"{label} must be a number of 0 or more.")
    if amount > MAX_AMOUNT:
        log.warning("%s validation failed: %s exceeds %s", label, amount, MAX_AMOUNT)
        raise InvalidPriceError(f"{label} cannot exceed {MAX_AMOUNT}.")
    return amount


def require_discount_within(discount: object, subtotal: Decimal) -> Decimal:
    """Validate that ``0 <= discount <= subtotal``.

    A discount equal to the subtotal is accepted and yields a zero-total sale.

    Raises:
        InvalidDiscountError: If the discount is not a number, is negative, or
            exceeds ``subtotal``.
    """

    amount = _coerce_decimal(discount)
    if amount is None:
        log.warning("Discount validation failed: %r", discount)
        raise InvalidDiscountError("Discount must be a number.")
    if amount < 0:
        log.warning("Discount validation failed: %s is negative", amount)
        raise InvalidDiscountError("Discount cannot be negative.")
    if amount > subtotal:
        log.warning("Discount validation failed: %s exceeds subtotal %s", amount, subtotal)
        raise InvalidDiscountError("Discount cannot exceed subtotal.")
    return amount


def _clean_optional_text(value: Optional[str], *, label: str = "Notes") -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return require_storable_text(text, label=label) if text else None


# ---------------------------------------------------------------------------
# Category store
# ---------------------------------------------------------------------------


def list_categories(context: RuntimeContext) -> Tuple[data_manager.CategoryRow, ...]:
    """Return every category in creation order."""

    with context.lock:
        return _ensure_categories_cache(context)["all"]


def get_category(context: RuntimeContext, category_id: str) -> data_manager.CategoryRow:
    """Resolve a category by its identifier.

    Raises:
        NotFoundError: If no category carries ``category_id``.
    """

    with context.lock:
        try:
            return _ensure_categories_cache(context)["by_id"][category_id]
        except KeyError as exc:
            log.warning("Category lookup failed for id '%s'", category_id)
            raise NotFoundError("Category not found.") from exc


def _require_unique_category_name(context: RuntimeContext, name: str, *, exclude_id: Optional[str] = None) -> None:
    folded = name.casefold()
    for category in _ensure_categories_cache(context)["all"]:
        if category.category_id != exclude_id and category.category_name.casefold() == folded:
            log.warning("Duplicate category name '%s'", name)
            raise DuplicateNameError("Category already exists.")


def add_category(context: RuntimeContext, name: str) -> data_manager.CategoryRow:
    """Create a category with a trimmed, case-insensitively unique name.

    Args:
        context (RuntimeContext): Active runtime context.
        name (str): Requested category name; surrounding whitespace is
            dropped.

    Returns:
        data_manager.CategoryRow: The persisted category.

    Raises:
        EmptyNameError: If ``name`` is blank.
        InvalidTextError: If ``name`` holds control characters.
        DuplicateNameError: If another category already uses the name in any
            letter case.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        trimmed = require_non_empty_name(name, label="Category name")
        _require_unique_category_name(context, trimmed)
        record = data_manager.CategoryRow(category_id=generate_id("C"), category_name=trimmed)
        with _commit_scope(context, "add category"):
            data_manager.append_category(context.workbook, record)
    log.info("Added category '%s' (%s)", record.category_name, record.category_id)
    return record


def rename_category(context: RuntimeContext, category_id: str, new_name: str) -> data_manager.CategoryRow:
    """Rename a category.

    The uniqueness check ignores the category being renamed, so changing only
    the letter case of its own name is allowed.

    Raises:
        NotFoundError: If ``category_id`` is unknown.
        EmptyNameError: If ``new_name`` is blank.
        InvalidTextError: If ``new_name`` holds control characters.
        DuplicateNameError: If another category already uses the name.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        current = get_category(context, category_id)
        trimmed = require_non_empty_name(new_name, label="Category name")
        _require_unique_category_name(context, trimmed, exclude_id=category_id)
        with _commit_scope(context, "rename category"):
            data_manager.update_category(
                context.workbook,
                category_id,
                field_values={"CategoryName": trimmed},
            )
    log.info("Renamed category '%s' from '%s' to '%s'", category_id, current.category_name, trimmed)
    return replace(current, category_name=trimmed)


def delete_category(context: RuntimeContext, category_id: str) -> None:
    """Delete a category that no item references.

    Items are never cascaded: the caller must reassign or delete them first.

    Raises:
        NotFoundError: If ``category_id`` is unknown.
        CategoryInUseError: While any item still references the category.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        current = get_category(context, category_id)
        in_use = [item for item in _ensure_items_cache(context)["all"] if item.category_id == category_id]
        if in_use:
            log.warning(
                "Refusing to delete category '%s': %d item(s) assigned",
                category_id,
                len(in_use),
            )
            raise CategoryInUseError("Cannot delete: category has items assigned. Reassign them first.")
        with _commit_scope(context, "delete category"):
            data_manager.delete_category(context.workbook, category_id)
    log.info("Deleted category '%s' (%s)", current.category_name, category_id)


# ---------------------------------------------------------------------------
# Item store
# ---------------------------------------------------------------------------


def list_items(
    context: RuntimeContext,
    *,
    search: Optional[str] = None,
    category_id: Optional[str] = None,
    sort_key: Union[ItemSortKey, str] = ItemSortKey.NAME,
    ascending: bool = True,
) -> List[data_manager.ItemRow]:
    """Return items filtered by name text and category, then sorted.

    Args:
        context (RuntimeContext): Active runtime context.
        search (str | None): Case-insensitive substring matched against the
            item name. Blank values disable the filter.
        category_id (str | None): Restrict the listing to one category.
        sort_key (ItemSortKey | str): ``name`` (case-insensitive),
            ``quantity`` or ``price``.
        ascending (bool): Sort direction.

    Returns:
        list[data_manager.ItemRow]: A new list; mutating it does not affect
            the store.
    """

    key = ItemSortKey(sort_key)
    with context.lock:
        rows = list(_ensure_items_cache(context)["all"])

    if search and search.strip():
        needle = search.strip().casefold()
        rows = [item for item in rows if needle in item.item_name.casefold()]
    if category_id is not None:
        rows = [item for item in rows if item.category_id == category_id]

    if key is ItemSortKey.NAME:
        rows.sort(key=lambda item: item.item_name.casefold(), reverse=not ascending)
    elif key is ItemSortKey.QUANTITY:
        rows.sort(key=lambda item: item.quantity, reverse=not ascending)
    else:
        rows.sort(key=lambda item: item.price, reverse=not ascending)
    return rows


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item by its identifier.

    Raises:
        NotFoundError: If ``item_id`` is unknown.
    """

    return _lookup_item(context, item_id, NotFoundError)


def _lookup_item(context: RuntimeContext, item_id: str, error: type[NotFoundError]) -> data_manager.ItemRow:
    with context.lock:
        try:
            return _ensure_items_cache(context)["by_id"][item_id]
        except KeyError as exc:
            log.warning("Item lookup failed for id '%s'", item_id)
            raise error("Item not found.") from exc


def _require_category(context: RuntimeContext, category_id: object) -> str:
    if not isinstance(category_id, str) or not category_id:
        log.warning("Item rejected: no category supplied")
        raise CategoryMissingError("Category is required.")
    if category_id not in _ensure_categories_cache(context)["by_id"]:
        log.warning("Item rejected: category '%s' does not exist", category_id)
        raise CategoryMissingError("Selected category does not exist.")
    return category_id


def _require_unique_item_name(context: RuntimeContext, name: str, *, exclude_id: Optional[str] = None) -> None:
    folded = name.casefold()
    for item in _ensure_items_cache(context)["all"]:
        if item.item_id != exclude_id and item.item_name.casefold() == folded:
            log.warning("Duplicate item name '%s'", name)
            raise DuplicateNameError("Item name already exists.")


def add_item(
    context: RuntimeContext,
    *,
    name: str,
    category_id: str,
    quantity: int,
    price: Union[Decimal, int, str],
    image: Optional[str] = None,
    notes: Optional[str] = None,
) -> data_manager.ItemRow:
    """Create an item after validating every field.

    Field validation and the category lookup run before the case-insensitive
    uniqueness check against all items. Blank notes are stored as absent.

    Args:
        context (RuntimeContext): Active runtime context.
        name (str): Item name; trimmed before storage.
        category_id (str): Identifier of an existing category.
        quantity (int): Units on hand, zero or more.
        price (Decimal | int | str): Unit price, zero or more.
        image (str | None): Opaque text blob stored as-is.
        notes (str | None): Free-form notes.

    Returns:
        data_manager.ItemRow: The persisted item.

    Raises:
        EmptyNameError: If ``name`` is blank.
        InvalidTextError: If ``name`` or ``notes`` holds control characters.
        InvalidQuantityError: If ``quantity`` is not a whole number >= 0.
        InvalidPriceError: If ``price`` is negative or not numeric.
        CategoryMissingError: If ``category_id`` is empty or unknown.
        DuplicateNameError: If another item already uses the name.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        trimmed = require_non_empty_name(name, label="Item name")
        checked_quantity = require_non_negative_integer(quantity)
        checked_price = require_non_negative_amount(price)
        checked_category = _require_category(context, category_id)
        _require_unique_item_name(context, trimmed)

        record = data_manager.ItemRow(
            item_id=generate_id("I"),
            item_name=trimmed,
            category_id=checked_category,
            quantity=checked_quantity,
            price=checked_price,
            image=image or None,
            notes=_clean_optional_text(notes),
        )
        with _commit_scope(context, "add item"):
            data_manager.append_item(context.workbook, record)
    log.info(
        "Added item '%s' (%s) to category '%s' (quantity=%s, price=%s)",
        record.item_name,
        record.item_id,
        record.category_id,
        record.quantity,
        record.price,
    )
    return record


def edit_item(context: RuntimeContext, item_id: str, update: ItemUpdate) -> data_manager.ItemRow:
    """Apply a partial update to an item.

    Each supplied field is validated on its own and the name uniqueness check
    excludes the edited item. Renaming or moving an item to another category
    leaves its quantity alone; quantity changes only when ``update.quantity``
    is supplied.

    Args:
        context (RuntimeContext): Active runtime context.
        item_id (str): Identifier of the item to change.
        update (ItemUpdate): Fields to change; ``UNSET`` fields are ignored.

    Returns:
        data_manager.ItemRow: The item as stored after the update.

    Raises:
        NotFoundError: If ``item_id`` is unknown.
        EmptyNameError, InvalidTextError, InvalidQuantityError, InvalidPriceError,
        CategoryMissingError, DuplicateNameError: When a supplied field fails
            validation.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        current = _lookup_item(context, item_id, NotFoundError)
        requested = update.provided()
        changes: Dict[str, Any] = {}

        if "name" in requested:
            changes["item_name"] = require_non_empty_name(requested["name"], label="Item name")
        if "quantity" in requested:
            changes["quantity"] = require_non_negative_integer(requested["quantity"])
        if "price" in requested:
            changes["price"] = require_non_negative_amount(requested["price"])
        if "category_id" in requested:
            changes["category_id"] = _require_category(context, requested["category_id"])
        if "image" in requested:
            changes["image"] = requested["image"] or None
        if "notes" in requested:
            changes["notes"] = _clean_optional_text(requested["notes"])
        if "item_name" in changes:
            _require_unique_item_name(context, changes["item_name"], exclude_id=item_id)

        if not changes:
            log.debug("Edit of item '%s' carried no changes", item_id)
            return current

        updated = replace(current, **changes)
        with _commit_scope(context, "edit item"):
            data_manager.update_item(
                context.workbook,
                item_id,
                field_values={_ITEM_COLUMNS[name]: value for name, value in changes.items()},
            )
    log.info("Edited item '%s' (%s)", item_id, ", ".join(sorted(changes)))
    return updated


def delete_item(context: RuntimeContext, item_id: str) -> None:
    """Delete an item unconditionally.

    Transactions that reference the item keep their name snapshot and their
    now dangling ``item_id``. Deleting an unknown id does nothing.

    Raises:
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        existing = _ensure_items_cache(context)["by_id"].get(item_id)
        if existing is None:
            log.warning("Delete requested for unknown item '%s'; nothing to do", item_id)
            return
        with _commit_scope(context, "delete item"):
            data_manager.delete_item(context.workbook, item_id)
    log.info("Deleted item '%s' (%s)", existing.item_name, item_id)


# ---------------------------------------------------------------------------
# Sale engine
# ---------------------------------------------------------------------------


def sell(context: RuntimeContext, command: SaleCommand) -> data_manager.TransactionRow:
    """Sell units of an item and record the sale in the transaction log.

    Every precondition is checked before anything is written:

    1. the item exists;
    2. the quantity is a whole number of at least one;
    3. the quantity does not exceed the units on hand;
    4. the unit price (the item's price when not given) is zero or more;
    5. the discount lies between zero and ``quantity * price_each``.

    The quantity decrement and the transaction append are then written inside
    a single commit scope and saved together, all while the store lock is
    held, so no reader ever sees one without the other. A failed save
    reloads the previous workbook and raises :class:`PersistenceError`.

    Args:
        context (RuntimeContext): Active runtime context.
        command (SaleCommand): Structured sale request.

    Returns:
        data_manager.TransactionRow: The appended transaction. Its
            ``item_name_snapshot`` is the item's name at sale time.

    Raises:
        ItemNotFoundError: If the item does not exist.
        InvalidQuantityError: If the quantity is not a positive whole number.
        InsufficientStockError: If fewer units are on hand than requested.
        InvalidPriceError: If the unit price is negative or not numeric, or the
            subtotal is too large to store.
        InvalidDiscountError: If the discount is out of range.
        InvalidTextError: If the notes hold control characters.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        item = _lookup_item(context, command.item_id, ItemNotFoundError)
        quantity = require_positive_integer(command.quantity)
        if quantity > item.quantity:
            log.warning(
                "Sale of %s x '%s' rejected: only %s on hand",
                quantity,
                item.item_id,
                item.quantity,
            )
            raise InsufficientStockError("Cannot sell more than available stock.")
        unit_price = item.price if command.price_each is None else command.price_each
        price_each = require_non_negative_amount(unit_price, label="Price each")
        subtotal = price_each * quantity
        if subtotal > MAX_AMOUNT:
            log.warning("Sale of '%s' rejected: subtotal %s exceeds %s", item.item_id, subtotal, MAX_AMOUNT)
            raise InvalidPriceError(f"Sale total cannot exceed {MAX_AMOUNT}.")
        discount = require_discount_within(command.discount, subtotal)

        timestamp = _resolve_timestamp(command.timestamp)
        transaction = data_manager.TransactionRow(
            transaction_id=generate_id("T"),
            timestamp_iso=timestamp.isoformat(),
            item_id=item.item_id,
            item_name_snapshot=item.item_name,
            qty_sold=quantity,
            price_each=price_each,
            discount=discount,
            total_amount=subtotal - discount,
            notes=_clean_optional_text(command.notes),
        )
        remaining = item.quantity - quantity
        with _commit_scope(context, "sale"):
            data_manager.update_item(
                context.workbook,
                item.item_id,
                field_values={_ITEM_COLUMNS["quantity"]: remaining},
            )
            data_manager.append_transaction(context.workbook, transaction)
    log.info(
        "Recorded sale '%s' of %s x '%s' (total=%s, remaining=%s)",
        transaction.transaction_id,
        quantity,
        item.item_name,
        transaction.total_amount,
        remaining,
    )
    return transaction


# ---------------------------------------------------------------------------
# Transaction ledger
# ---------------------------------------------------------------------------


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        log.warning("Unreadable transaction timestamp %r", value)
        return datetime.min.replace(tzinfo=UTC)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def period_bounds(period: Union[TimePeriod, str], now: Optional[datetime] = None) -> Optional[Tuple[datetime, datetime]]:
    """Return the ``[start, end)`` UTC window of a time period.

    Weeks start on Sunday. ``TimePeriod.ALL`` has no window and returns
    ``None``.
    """

    period = TimePeriod(period)
    if period is TimePeriod.ALL:
        return None

    moment = _resolve_timestamp(now).astimezone(UTC)
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is TimePeriod.TODAY:
        return day_start, day_start + timedelta(days=1)
    if period is TimePeriod.WEEK:
        week_start = day_start - timedelta(days=(day_start.weekday() + 1) % 7)
        return week_start, week_start + timedelta(days=7)

    month_start = day_start.replace(day=1)
    if month_start.month == 12:
        next_month = month_start.replace(year=month_start.year + 1, month=1)
    else:
        next_month = month_start.replace(month=month_start.month + 1)
    return month_start, next_month


def list_transactions(
    context: RuntimeContext,
    *,
    search: Optional[str] = None,
    period: Union[TimePeriod, str] = TimePeriod.ALL,
    newest_first: bool = True,
    now: Optional[datetime] = None,
) -> List[data_manager.TransactionRow]:
    """Return transactions filtered by name snapshot and date range.

    The view is computed from the cached log on every call and never mutates
    state, so two calls without an intervening mutation return equal lists.

    Args:
        context (RuntimeContext): Active runtime context.
        search (str | None): Case-insensitive substring matched against
            ``item_name_snapshot``.
        period (TimePeriod | str): ``all``, ``today``, ``week`` or ``month``.
        newest_first (bool): Sort by timestamp descending (the default) or
            ascending.
        now (datetime | None): Reference instant for the period buckets;
            defaults to the current UTC time.

    Returns:
        list[data_manager.TransactionRow]: Matching transactions in timestamp
            order.
    """

    bounds = period_bounds(period, now)
    with context.lock:
        rows = list(_ensure_transactions_cache(context)["all"])

    if search and search.strip():
        needle = search.strip().casefold()
        rows = [row for row in rows if needle in row.item_name_snapshot.casefold()]
    if bounds is not None:
        start, end = bounds
        rows = [row for row in rows if start <= _parse_timestamp(row.timestamp_iso) < end]

    rows.sort(key=lambda row: _parse_timestamp(row.timestamp_iso), reverse=newest_first)
    return rows


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction by its identifier.

    Raises:
        NotFoundError: If the log lacks ``transaction_id``.
    """

    with context.lock:
        try:
            return _ensure_transactions_cache(context)["by_id"][transaction_id]
        except KeyError as exc:
            log.warning("Transaction lookup failed for id '%s'", transaction_id)
            raise NotFoundError("Transaction not found.") from exc


def clear_transactions(context: RuntimeContext) -> int:
    """Irreversibly delete every transaction; items are left untouched.

    Returns:
        int: Number of transactions removed.

    Raises:
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        count = len(_ensure_transactions_cache(context)["all"])
        with _commit_scope(context, "clear transactions"):
            data_manager.clear_transactions(context.workbook)
    log.info("Cleared %d transaction(s)", count)
    return count


# ---------------------------------------------------------------------------
# Settings and read views
# ---------------------------------------------------------------------------


def get_low_stock_threshold(context: RuntimeContext) -> int:
    """Return the stored threshold, falling back to the configured default."""

    with context.lock:
        raw = _ensure_settings_cache(context)["values"].get(LOW_STOCK_THRESHOLD_KEY)
    if raw is None or raw == "":
        return context.settings.default_low_stock_threshold
    try:
        value = int(Decimal(raw))
    except (InvalidOperation, ValueError, OverflowError):
        log.warning("Ignoring unreadable low stock threshold %r", raw)
        return context.settings.default_low_stock_threshold
    return max(value, 0)


def set_low_stock_threshold(context: RuntimeContext, value: int) -> int:
    """Store a new low stock threshold.

    Raises:
        InvalidQuantityError: If ``value`` is not a whole number >= 0.
        PersistenceError: If the workbook cannot be saved.
    """

    with context.lock:
        threshold = require_non_negative_integer(value, label="Low stock threshold")
        with _commit_scope(context, "set low stock threshold"):
            data_manager.write_setting(context.workbook, LOW_STOCK_THRESHOLD_KEY, threshold)
    log.info("Low stock threshold set to %d", threshold)
    return threshold


def stock_status(quantity: int, threshold: int) -> StockStatus:
    """Classify ``quantity`` as out of stock, low stock, or in stock."""

    if quantity == 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def summarize_sales(transactions: Iterable[data_manager.TransactionRow]) -> Dict[str, Any]:
    """Aggregate revenue, units sold, and the number of transactions.

    Args:
        transactions (Iterable[TransactionRow]): Usually the result of
            :func:`list_transactions` so the totals follow the same filters.

    Returns:
        dict[str, Any]: ``total_revenue`` (Decimal), ``total_quantity`` (int)
            and ``transaction_count`` (int).
    """

    total_revenue = Decimal("0")
    total_quantity = 0
    count = 0
    for transaction in transactions:
        total_revenue += transaction.total_amount
        total_quantity += transaction.qty_sold
        count += 1
    return {
        "total_revenue": total_revenue,
        "total_quantity": total_quantity,
        "transaction_count": count,
    }


def _stock_value(item: data_manager.ItemRow) -> Decimal:
    return item.price * item.quantity


def summarize_inventory(context: RuntimeContext) -> Dict[str, Any]:
    """Produce the on-hand inventory summary.

    Returns:
        dict[str, Any]: ``unique_items``, ``total_quantity``, ``total_value``
            (sum of ``quantity * price``), and the ``low_stock`` and
            ``out_of_stock`` item lists classified with the current
            threshold.
    """

    with context.lock:
        items = _ensure_items_cache(context)["all"]
        threshold = get_low_stock_threshold(context)

    total_value = sum((_stock_value(item) for item in items), Decimal("0"))
    summary = {
        "unique_items": len(items),
        "total_quantity": sum(item.quantity for item in items),
        "total_value": total_value,
        "low_stock": [item for item in items if stock_status(item.quantity, threshold) is StockStatus.LOW_STOCK],
        "out_of_stock": [item for item in items if item.quantity == 0],
    }
    log.debug(
        "Calculated inventory summary: %d items, value=%s",
        summary["unique_items"],
        total_value,
    )
    return summary


def top_items_by_value(context: RuntimeContext, limit: int = 5) -> List[data_manager.ItemRow]:
    """Return up to ``limit`` items with the highest ``quantity * price``."""

    with context.lock:
        items = list(_ensure_items_cache(context)["all"])
    items.sort(key=_stock_value, reverse=True)
    return items[: max(limit, 0)]


def snapshot(context: RuntimeContext) -> LedgerSnapshot:
    """Read every collection and the threshold under one lock acquisition."""

    with context.lock:
        return LedgerSnapshot(
            categories=_ensure_categories_cache(context)["all"],
            items=_ensure_items_cache(context)["all"],
            transactions=_ensure_transactions_cache(context)["all"],
            low_stock_threshold=get_low_stock_threshold(context),
        )

"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into engine calls, and printing results. Engine calls go
through :func:`core_logic.attempt`, so rule violations come back as outcomes
and are reported with their reason instead of a traceback.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, exporter, log
from .constants import ItemSortKey, TimePeriod

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RULE_VIOLATION = 2
EXIT_MISSING_FILE = 3
EXIT_PERSISTENCE = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def decimal_argument(raw: str) -> Decimal:
    """``argparse`` type converting text to :class:`~decimal.Decimal`."""

    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Command-line tools for the Stock Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and item edits."""
    specs = {
        "add-category": register_add_category_command(subparsers),
        "rename-category": register_rename_category_command(subparsers),
        "delete-category": register_delete_category_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "edit-item": register_edit_item_command(subparsers),
        "delete-item": register_delete_item_command(subparsers),
        "sell": register_sell_command(subparsers),
        "clear-transactions": register_clear_transactions_command(subparsers),
        "set-threshold": register_set_threshold_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "categories": register_categories_command(subparsers),
        "items": register_items_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "summary": register_summary_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)

    return _simple_spec("add-category", "Create a new category.", configure, run_add_category)


def register_rename_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rename-category``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--category-id", required=True)
        parser.add_argument("--name", required=True)

    return _simple_spec("rename-category", "Rename an existing category.", configure, run_rename_category)


def register_delete_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-category``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--category-id", required=True)

    return _simple_spec(
        "delete-category",
        "Delete a category that has no items.",
        configure,
        run_delete_category,
    )


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--category-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--price", type=decimal_argument, required=True)
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec("add-item", "Register a new item in a category.", configure, run_add_item)


def register_edit_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-item``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--quantity", type=int, default=None)
        parser.add_argument("--price", type=decimal_argument, default=None)
        notes = parser.add_mutually_exclusive_group()
        notes.add_argument("--notes", dest="notes", default=None)
        notes.add_argument("--clear-notes", action="store_true", help="Remove the item's notes.")
        parser.add_argument("--clear-image", action="store_true", help="Remove the item's image.")

    return _simple_spec("edit-item", "Change selected fields of an item.", configure, run_edit_item)


def register_delete_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-item``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)

    return _simple_spec(
        "delete-item",
        "Delete an item; its sales history is kept.",
        configure,
        run_delete_item,
    )


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument(
            "--price-each",
            type=decimal_argument,
            default=None,
            help="Unit price charged (defaults to the item's current price).",
        )
        parser.add_argument("--discount", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec("sell", "Record a sale and reduce stock.", configure, run_sell)


def register_clear_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-transactions``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--yes",
            action="store_true",
            help="Confirm the permanent deletion of all transactions.",
        )

    return _simple_spec(
        "clear-transactions",
        "Permanently delete the whole transaction history.",
        configure,
        run_clear_transactions,
    )


def register_set_threshold_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-threshold``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--value", type=int, required=True)

    return _simple_spec("set-threshold", "Set the low stock threshold.", configure, run_set_threshold)


def register_categories_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``categories``."""

    return _simple_spec("categories", "List categories.", lambda parser: None, run_categories_report)


def register_items_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``items``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--search", default=None)
        parser.add_argument("--category-id", default=None)
        parser.add_argument(
            "--sort",
            choices=[member.value for member in ItemSortKey],
            default=ItemSortKey.NAME.value,
        )
        parser.add_argument("--descending", action="store_true")

    return _simple_spec("items", "List items with their stock status.", configure, run_items_report)


def _add_transaction_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--search", default=None, help="Match against the item name at sale time.")
    parser.add_argument(
        "--period",
        choices=[member.value for member in TimePeriod],
        default=TimePeriod.ALL.value,
    )


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_transaction_filters(parser)
        parser.add_argument("--oldest-first", action="store_true")

    return _simple_spec("transactions", "Display the transaction log.", configure, run_transactions_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""

    return _simple_spec(
        "summary",
        "Display inventory and sales summaries.",
        lambda parser: None,
        run_summary_report,
    )


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_transaction_filters(parser)
        parser.add_argument(
            "--output",
            type=Path,
            default=Path.cwd(),
            help="Target file or directory (defaults to the working directory).",
        )

    return _simple_spec("export", "Export transactions as CSV.", configure, run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``config_path`` the data layer searches upward from the working
    directory for ``config.ini``.
    """
    return core_logic.load_runtime_context(config_path)


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


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into keyword arguments for ``add_item``."""
    return {
        "name": args.name,
        "category_id": args.category_id,
        "quantity": args.quantity,
        "price": args.price,
        "notes": args.notes,
    }


def translate_edit_item(args: argparse.Namespace) -> core_logic.ItemUpdate:
    """Translate CLI args into an :class:`ItemUpdate`; absent flags stay unset."""
    changes: Dict[str, Any] = {}
    for name in ("name", "category_id", "quantity", "price", "notes"):
        value = getattr(args, name, None)
        if value is not None:
            changes[name] = value
    if getattr(args, "clear_notes", False):
        changes["notes"] = None
    if getattr(args, "clear_image", False):
        changes["image"] = None
    return core_logic.ItemUpdate(**changes)


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        item_id=args.item_id,
        quantity=args.quantity,
        price_each=args.price_each,
        discount=args.discount,
        notes=args.notes,
    )


def report_outcome(outcome: core_logic.Outcome[Any], render: Callable[[Any], str]) -> int:
    """Print a successful result or log the failure reason; return the exit code."""
    if outcome.ok:
        print(render(outcome.value))
        return EXIT_OK
    log.error("%s: %s", outcome.error_kind, outcome.reason)
    if outcome.error_kind == core_logic.PersistenceError.__name__:
        return EXIT_PERSISTENCE
    return EXIT_RULE_VIOLATION


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow."""
    outcome = core_logic.attempt(core_logic.add_category, context, args.name)
    return report_outcome(outcome, lambda row: f"Added category {row.category_id}: {row.category_name}")


def run_rename_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rename-category workflow."""
    outcome = core_logic.attempt(core_logic.rename_category, context, args.category_id, args.name)
    return report_outcome(outcome, lambda row: f"Renamed category {row.category_id} to {row.category_name}")


def run_delete_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-category workflow."""
    outcome = core_logic.attempt(core_logic.delete_category, context, args.category_id)
    return report_outcome(outcome, lambda _: f"Deleted category {args.category_id}")


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow."""
    payload = translate_add_item(args)
    outcome = core_logic.attempt(core_logic.add_item, context, **payload)
    return report_outcome(outcome, lambda row: f"Added item {row.item_id}: {row.item_name} x{row.quantity}")


def run_edit_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-item workflow."""
    update = translate_edit_item(args)
    outcome = core_logic.attempt(core_logic.edit_item, context, args.item_id, update)
    return report_outcome(outcome, lambda row: f"Updated item {row.item_id}: {row.item_name}")


def run_delete_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-item workflow."""
    outcome = core_logic.attempt(core_logic.delete_item, context, args.item_id)
    return report_outcome(outcome, lambda _: f"Deleted item {args.item_id}")


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    command = translate_sell(args)
    outcome = core_logic.attempt(core_logic.sell, context, command)
    return report_outcome(
        outcome,
        lambda row: (
            f"Sold {row.qty_sold} x {row.item_name_snapshot} for {row.total_amount} "
            f"(transaction {row.transaction_id})"
        ),
    )


def run_clear_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the clear-transactions workflow once confirmed."""
    if not getattr(args, "yes", False):
        log.error("Refusing to clear transactions without --yes")
        return EXIT_FAILURE
    outcome = core_logic.attempt(core_logic.clear_transactions, context)
    return report_outcome(outcome, lambda count: f"Deleted {count} transaction(s)")


def run_set_threshold(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the set-threshold workflow."""
    outcome = core_logic.attempt(core_logic.set_low_stock_threshold, context, args.value)
    return report_outcome(outcome, lambda value: f"Low stock threshold set to {value}")


def run_categories_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every category."""
    for category in core_logic.list_categories(context):
        print(f"{category.category_id}\t{category.category_name}")
    return EXIT_OK


def run_items_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print items with their stock status."""
    threshold = core_logic.get_low_stock_threshold(context)
    items = core_logic.list_items(
        context,
        search=args.search,
        category_id=args.category_id,
        sort_key=args.sort,
        ascending=not args.descending,
    )
    for item in items:
        status = core_logic.stock_status(item.quantity, threshold)
        print(f"{item.item_id}\t{item.item_name}\t{item.quantity}\t{item.price}\t{status.value}")
    return EXIT_OK


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the filtered transaction log followed by its totals."""
    rows = core_logic.list_transactions(
        context,
        search=args.search,
        period=args.period,
        newest_first=not args.oldest_first,
    )
    for row in rows:
        print(
            f"{exporter.format_export_date(row.timestamp_iso)}\t{row.item_name_snapshot}\t"
            f"{row.qty_sold}\t{row.price_each}\t{row.discount}\t{row.total_amount}"
        )
    totals = core_logic.summarize_sales(rows)
    print(
        f"Revenue: {totals['total_revenue']}  Items sold: {totals['total_quantity']}  "
        f"Transactions: {totals['transaction_count']}"
    )
    return EXIT_OK


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the inventory summary and the top items by stock value."""
    summary = core_logic.summarize_inventory(context)
    print(f"Unique items: {summary['unique_items']}")
    print(f"Total quantity: {summary['total_quantity']}")
    print(f"Inventory value: {summary['total_value']}")
    print(f"Low stock: {len(summary['low_stock'])}")
    print(f"Out of stock: {len(summary['out_of_stock'])}")
    for rank, item in enumerate(core_logic.top_items_by_value(context), start=1):
        print(f"{rank}. {item.item_name}\t{item.price * item.quantity}")
    return EXIT_OK


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the filtered transaction log to a CSV file."""
    rows = core_logic.list_transactions(context, search=args.search, period=args.period)
    target = exporter.write_transactions_csv(rows, args.output)
    print(f"Exported {len(rows)} transaction(s) to {target}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, core_logic.PersistenceError):
        return EXIT_PERSISTENCE
    if isinstance(error, core_logic.BusinessRuleViolation):
        return EXIT_RULE_VIOLATION
    if isinstance(error, FileNotFoundError):
        return EXIT_MISSING_FILE
    return EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)

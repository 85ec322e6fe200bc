"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from stock_ledger import cli, core_logic


WRITE_COMMANDS = {
    "add-category",
    "rename-category",
    "delete-category",
    "add-item",
    "edit-item",
    "delete-item",
    "sell",
    "clear-transactions",
    "set-threshold",
}

READ_COMMANDS = {
    "categories",
    "items",
    "transactions",
    "summary",
    "export",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stock-ledger"
    assert "Stock Ledger" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name == name


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS


def test_sell_command_configures_arguments():
    """The sell parser converts money to Decimal and defaults the discount."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["sell", "--item-id", "I1", "--quantity", "3", "--price-each", "9.99"])

    assert args.command == "sell"
    assert args.quantity == 3
    assert args.price_each == Decimal("9.99")
    assert args.discount == Decimal("0")
    assert args.notes is None


def test_sell_command_price_defaults_to_none():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["sell", "--item-id", "I1", "--quantity", "1"])

    assert args.price_each is None


def test_add_item_rejects_non_numeric_price(capsys):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["add-item", "--name", "Hammer", "--category-id", "C1", "--quantity", "1", "--price", "abc"])
    assert "not a number" in capsys.readouterr().err


def test_edit_item_notes_and_clear_notes_are_exclusive():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["edit-item", "--item-id", "I1", "--notes", "x", "--clear-notes"])


def test_transactions_command_restricts_period_choices():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["transactions", "--period", "week"])
    assert args.period == "week"
    assert args.oldest_first is False
    with pytest.raises(SystemExit):
        parser.parse_args(["transactions", "--period", "year"])


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_searches_upward_by_default(config_factory, monkeypatch):
    """Without --config the nearest config.ini above the working directory wins."""

    bundle = config_factory()
    nested = bundle.directory / "reports" / "2025"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    context = cli.load_runtime_context()

    assert context.settings.data_file == bundle.workbook_path.resolve()
    assert context.settings.store_name == bundle.store_name


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 0

    spec = cli.CommandSpec("catalog-test", "help", lambda subparsers: subparsers.add_parser("catalog-test"), execute)
    result = cli.dispatch_command(context, argparse.Namespace(command="catalog-test"), {"catalog-test": spec})

    assert result == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_add_item_returns_payload():
    args = argparse.Namespace(name="Hammer", category_id="C1", quantity=4, price=Decimal("9.99"), notes=None)

    assert cli.translate_add_item(args) == {
        "name": "Hammer",
        "category_id": "C1",
        "quantity": 4,
        "price": Decimal("9.99"),
        "notes": None,
    }


def test_translate_edit_item_leaves_absent_flags_unset():
    args = argparse.Namespace(
        item_id="I1",
        name=None,
        category_id=None,
        quantity=0,
        price=None,
        notes=None,
        clear_notes=True,
        clear_image=False,
    )

    update = cli.translate_edit_item(args)

    assert update.provided() == {"quantity": 0, "notes": None}


def test_translate_sell_returns_sale_command():
    args = argparse.Namespace(item_id="I1", quantity=2, price_each=None, discount=Decimal("1"), notes="n")

    command = cli.translate_sell(args)

    assert command == core_logic.SaleCommand(item_id="I1", quantity=2, price_each=None, discount=Decimal("1"), notes="n")


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_sell_invokes_engine(context, monkeypatch, capsys):
    """run_sell should delegate to the engine and print the sale."""

    args = argparse.Namespace()
    command = core_logic.SaleCommand(item_id="I1", quantity=1)
    monkeypatch.setattr(cli, "translate_sell", lambda value: command)
    called = {}

    def fake_sell(ctx, cmd):
        called["context"] = ctx
        called["cmd"] = cmd
        return core_logic.data_manager.TransactionRow(
            "T1", "2025-03-01T10:00:00+00:00", "I1", "Hammer", 1, Decimal("2"), Decimal("0"), Decimal("2")
        )

    monkeypatch.setattr(core_logic, "sell", fake_sell)

    assert cli.run_sell(context, args) == cli.EXIT_OK
    assert called == {"context": context, "cmd": command}
    assert "Sold 1 x Hammer for 2" in capsys.readouterr().out


def test_run_sell_reports_rule_violation(context, monkeypatch, caplog):
    monkeypatch.setattr(cli, "translate_sell", lambda value: core_logic.SaleCommand(item_id="I1", quantity=5))

    def fake_sell(ctx, cmd):
        raise core_logic.InsufficientStockError("Cannot sell more than available stock.")

    monkeypatch.setattr(core_logic, "sell", fake_sell)
    caplog.set_level("ERROR")

    assert cli.run_sell(context, argparse.Namespace()) == cli.EXIT_RULE_VIOLATION
    assert any("Cannot sell more than available stock." in record.getMessage() for record in caplog.records)


def test_run_add_category_reports_persistence_failure(context, monkeypatch):
    def fake_add(ctx, name):
        raise core_logic.PersistenceError("Could not save add category: disk full")

    monkeypatch.setattr(core_logic, "add_category", fake_add)

    assert cli.run_add_category(context, argparse.Namespace(name="Tools")) == cli.EXIT_PERSISTENCE


def test_run_clear_transactions_requires_confirmation(context, monkeypatch):
    monkeypatch.setattr(
        core_logic,
        "clear_transactions",
        lambda ctx: (_ for _ in ()).throw(AssertionError("should not clear")),
    )

    assert cli.run_clear_transactions(context, argparse.Namespace(yes=False)) == cli.EXIT_FAILURE


def test_run_items_report_prints_status(runtime_context, capsys):
    category = core_logic.add_category(runtime_context, "Tools")
    core_logic.add_item(runtime_context, name="Hammer", category_id=category.category_id, quantity=0, price=1)
    core_logic.add_item(runtime_context, name="Saw", category_id=category.category_id, quantity=50, price=2)
    args = argparse.Namespace(search=None, category_id=None, sort="quantity", descending=True)

    assert cli.run_items_report(runtime_context, args) == cli.EXIT_OK

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].endswith("in-stock")
    assert lines[1].endswith("out-of-stock")


def test_run_export_writes_filtered_rows(runtime_context, tmp_path, capsys):
    category = core_logic.add_category(runtime_context, "Tools")
    item = core_logic.add_item(runtime_context, name="Hammer", category_id=category.category_id, quantity=5, price=3)
    core_logic.sell(runtime_context, core_logic.SaleCommand(item_id=item.item_id, quantity=2))
    destination = tmp_path / "export.csv"

    exit_code = cli.run_export(runtime_context, argparse.Namespace(search=None, period="all", output=destination))

    assert exit_code == cli.EXIT_OK
    lines = destination.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Date,Item,Quantity,Price Each,Discount,Total,Notes"
    assert ",Hammer,2,3.00,0.00,6.00," in lines[1]
    assert "Exported 1 transaction(s)" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.DuplicateNameError("Item name already exists."), 2),
        (core_logic.PersistenceError("disk full"), 4),
        (FileNotFoundError("missing"), 3),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="summary")
    command_table = {"summary": cli.CommandSpec("summary", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        called["table"] = table
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["summary"]) == 0
    assert called["context"] is runtime_context
    assert called["args"].command == "summary"
    assert called["table"] is command_table


def test_main_handles_engine_errors(monkeypatch, runtime_context):
    """main should route raised errors through handle_cli_error."""

    parser = _stub_parser(command="sell")
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: {})
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)

    assert cli.main(["sell"]) == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


def test_main_missing_config_returns_exit_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "categories"]) == cli.EXIT_MISSING_FILE


def test_main_end_to_end_sale(config_file, capsys):
    """Commands run through main persist their effects to the workbook."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-category", "--name", "Tools"]) == 0
    context = core_logic.load_runtime_context(config_file)
    (category,) = core_logic.list_categories(context)

    assert cli.main([*base, "add-item", "--name", "Hammer", "--category-id", category.category_id,
                     "--quantity", "10", "--price", "9.99"]) == 0
    item = core_logic.list_items(core_logic.load_runtime_context(config_file))[0]

    assert cli.main([*base, "sell", "--item-id", item.item_id, "--quantity", "3", "--discount", "2"]) == 0
    assert cli.main([*base, "sell", "--item-id", item.item_id, "--quantity", "8"]) == cli.EXIT_RULE_VIOLATION
    assert cli.main([*base, "add-category", "--name", "tools"]) == cli.EXIT_RULE_VIOLATION

    reloaded = core_logic.load_runtime_context(config_file)
    assert core_logic.get_item(reloaded, item.item_id).quantity == 7
    (sale,) = core_logic.list_transactions(reloaded)
    assert sale.total_amount == Decimal("27.97")
    assert "27.97" in capsys.readouterr().out


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

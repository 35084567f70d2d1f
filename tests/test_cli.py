"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from unittest.mock import Mock

import pytest

from stock_ledger import catalog, cli, core_logic, ledgers, runtime
from stock_ledger.exceptions import InsufficientStock, NotFound, ServerError, ValidationError


WRITE_COMMANDS = {
    "add-item",
    "update-item",
    "delete-item",
    "receive",
    "sell",
    "edit-receipt",
    "delete-receipt",
    "delete-sale",
    "delete-all-sales",
}

READ_COMMANDS = {
    "items",
    "receipts",
    "sales",
    "stock-summary",
    "sales-report",
    "audit",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _run(config_path, *argv: str) -> int:
    return cli.main(["--config", str(config_path), *argv])


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
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert READ_COMMANDS <= set(subparsers_action.choices)


def test_register_add_item_command_configures_arguments():
    """register_add_item_command should define the necessary arguments."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_add_item_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        [
            "add-item",
            "--code",
            "A1",
            "--name",
            "Widget",
            "--unit-cost",
            "60",
            "--unit-price",
            "100",
            "--opening-qty",
            "10",
            "--inactive",
        ]
    )
    assert spec.name == "add-item"
    assert namespace.code == "A1"
    assert namespace.unit_price == "100"
    assert namespace.opening_qty == "10"
    assert namespace.inactive is True


def test_register_sales_report_command_limits_periods():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_sales_report_command(subparsers).register(subparsers)

    assert parser.parse_args(["sales-report", "--period", "month"]).period == "month"
    with pytest.raises(SystemExit):
        parser.parse_args(["sales-report", "--period", "week"])


def test_translate_update_item_drops_unset_options():
    args = argparse.Namespace(name=None, unit_cost=None, unit_price="120", category="", status=None)
    assert cli.translate_update_item(args) == {"unit_price": "120", "category": ""}


def test_translate_sell_builds_command():
    args = argparse.Namespace(code="A1", quantity="3", date="2024-03-01")
    assert cli.translate_sell(args) == core_logic.OutgoingCommand("A1", "3", "2024-03-01")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_invokes_executor():
    execute = Mock(return_value=0)
    spec = cli.CommandSpec("noop", "help", Mock(), execute)
    context = Mock(name="context")
    args = argparse.Namespace(command="noop")

    assert cli.dispatch_command(context, args, {"noop": spec}) == 0
    execute.assert_called_once_with(context, args)


def test_dispatch_command_unknown_raises():
    with pytest.raises(KeyError):
        cli.dispatch_command(Mock(), argparse.Namespace(command="nope"), {})


@pytest.mark.parametrize(
    "error, expected",
    [
        (NotFound(), 2),
        (InsufficientStock(), 2),
        (ValidationError(), 2),
        (ServerError(), 1),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("schema mismatch"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


def test_format_item_renders_described_fields(runtime_context, item_factory):
    item_factory("A1", opening_qty=10)
    core_logic.record_outgoing(runtime_context, core_logic.OutgoingCommand("A1", 4, "2024-03-02"))

    line = cli._format_item(catalog.get_item(runtime_context, "A1"))

    assert line.startswith("A1")
    assert "qty=6" in line
    assert "sold=4" in line
    assert "revenue=400" in line
    assert "profit=160" in line


# ---------------------------------------------------------------------------
# End-to-end through main()
# ---------------------------------------------------------------------------


def test_main_full_workflow(config_file, capsys):
    assert _run(config_file, "add-item", "--code", "A1", "--name", "Widget",
                "--unit-cost", "60", "--unit-price", "100", "--opening-qty", "10") == 0
    assert _run(config_file, "sell", "--code", "A1", "--quantity", "4", "--date", "2024-03-02") == 0
    assert _run(config_file, "receive", "--code", "A1", "--quantity", "5", "--date", "2024-03-03") == 0
    capsys.readouterr()

    assert _run(config_file, "items") == 0
    output = capsys.readouterr().out
    assert "A1" in output
    assert "qty=11" in output

    assert _run(config_file, "sales-report", "--period", "month") == 0
    assert "2024-03" in capsys.readouterr().out

    assert _run(config_file, "audit") == 0
    assert "ok" in capsys.readouterr().out


def test_main_reports_insufficient_stock(config_file):
    _run(config_file, "add-item", "--code", "A1", "--name", "Widget",
         "--unit-cost", "1", "--unit-price", "2", "--opening-qty", "1")

    assert _run(config_file, "sell", "--code", "A1", "--quantity", "5") == 2
    assert _run(config_file, "sell", "--code", "A1", "--quantity", "abc") == 2


def test_main_missing_config_returns_three(tmp_path):
    assert _run(tmp_path / "missing.ini", "items") == 3


def test_main_schema_mismatch_returns_one(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert _run(bundle.config_path, "items") == 1


def test_delete_all_sales_requires_confirmation(config_file, capsys):
    _run(config_file, "add-item", "--code", "A1", "--name", "Widget",
         "--unit-cost", "1", "--unit-price", "2", "--opening-qty", "5")
    _run(config_file, "sell", "--code", "A1", "--quantity", "2")

    assert _run(config_file, "delete-all-sales") == 2
    assert _run(config_file, "delete-all-sales", "--yes") == 0
    assert "Deleted 1 sale(s)" in capsys.readouterr().out

    with runtime.runtime_session(config_file) as context:
        assert ledgers.list_outgoing(context) == []
        assert catalog.get_item(context, "A1").current_qty == 5


def test_edit_and_delete_receipt_commands(config_file):
    _run(config_file, "add-item", "--code", "A1", "--name", "Widget",
         "--unit-cost", "1", "--unit-price", "2")
    _run(config_file, "receive", "--code", "A1", "--quantity", "5")
    with runtime.runtime_session(config_file) as context:
        event_id = ledgers.list_incoming(context)[0].event_id

    assert _run(config_file, "edit-receipt", "--event-id", event_id, "--quantity", "2") == 0
    with runtime.runtime_session(config_file) as context:
        assert catalog.get_item(context, "A1").current_qty == 2

    assert _run(config_file, "delete-receipt", "--event-id", event_id) == 0
    assert _run(config_file, "delete-receipt", "--event-id", event_id) == 2


def test_update_item_command_changes_price(config_file):
    _run(config_file, "add-item", "--code", "A1", "--name", "Widget",
         "--unit-cost", "1", "--unit-price", "2")

    assert _run(config_file, "update-item", "--code", "A1", "--unit-price", "2.50") == 0
    with runtime.runtime_session(config_file) as context:
        assert catalog.get_item(context, "A1").unit_price == Decimal("2.50")

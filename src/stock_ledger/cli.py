"""Command-line entry points for the Stock Ledger toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the catalog, ledgers and engine, and
printing their results. Every mutation commits itself through the engine, so
the CLI never saves the workbook on its own.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO
import sys

from . import catalog, core_logic, ledgers, log, runtime
from .constants import ItemStatus, ReportPeriod
from .exceptions import ServerError, StockLedgerError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[runtime.RuntimeContext, argparse.Namespace], int]


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
        help="Optional path to config.ini (defaults to a search upward from the current directory).",
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


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[runtime.RuntimeContext, argparse.Namespace], int],
    arguments: Callable[[argparse.ArgumentParser], None] = lambda parser: None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as receipts and sales."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "update-item": register_update_item_command(subparsers),
        "delete-item": _simple_spec(
            "delete-item", "Remove an item from the catalog.", run_delete_item,
            lambda parser: parser.add_argument("--code", required=True),
        ),
        "receive": register_receive_command(subparsers),
        "sell": register_sell_command(subparsers),
        "edit-receipt": register_edit_receipt_command(subparsers),
        "delete-receipt": _simple_spec(
            "delete-receipt", "Delete a receipt and take its stock back out.", run_delete_receipt,
            lambda parser: parser.add_argument("--event-id", required=True),
        ),
        "delete-sale": _simple_spec(
            "delete-sale", "Delete a sale and return its stock.", run_delete_sale,
            lambda parser: parser.add_argument("--event-id", required=True),
        ),
        "delete-all-sales": _simple_spec(
            "delete-all-sales", "Delete every sale and return the stock.", run_delete_all_sales,
            lambda parser: parser.add_argument("--yes", action="store_true", help="Confirm the bulk deletion."),
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--code", default=None, help="Only events for this item code.")
    parser.add_argument("--start", default=None, help="Inclusive start date (YYYY-MM-DD).")
    parser.add_argument("--end", default=None, help="Inclusive end date (YYYY-MM-DD).")


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "items": _simple_spec(
            "items", "List catalog items.", run_items,
            lambda parser: parser.add_argument("--active-only", action="store_true"),
        ),
        "receipts": _simple_spec("receipts", "List incoming events, newest first.", run_receipts, _add_filters),
        "sales": _simple_spec("sales", "List sale events, newest first.", run_sales, _add_filters),
        "stock-summary": _simple_spec("stock-summary", "Display stock dashboard figures.", run_stock_summary),
        "sales-report": register_sales_report_command(subparsers),
        "audit": _simple_spec(
            "audit", "Compare cached quantities with the ledgers.", run_audit,
            lambda parser: parser.add_argument("--code", default=None),
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit-cost", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--opening-qty", default="0")
        parser.add_argument("--category", default="")
        parser.add_argument("--inactive", action="store_true", help="Mark the item as inactive on creation.")

    return _simple_spec("add-item", "Register a new item in the catalog.", run_add_item, arguments)


def register_update_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-item``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--unit-cost", default=None)
        parser.add_argument("--unit-price", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--status", choices=[member.value for member in ItemStatus], default=None)

    return _simple_spec("update-item", "Change an item's name, pricing, category or status.", run_update_item, arguments)


def register_receive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--date", default=None, help="Occurrence date (YYYY-MM-DD), defaults to today.")

    return _simple_spec("receive", "Record received stock.", run_receive, arguments)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--code", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--date", default=None, help="Occurrence date (YYYY-MM-DD), defaults to today.")

    return _simple_spec("sell", "Record a sale.", run_sell, arguments)


def register_edit_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-receipt``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--event-id", required=True)
        parser.add_argument("--quantity", required=True)

    return _simple_spec("edit-receipt", "Change the quantity of a receipt.", run_edit_receipt, arguments)


def register_sales_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales-report``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--period",
            choices=[member.value for member in ReportPeriod],
            default=ReportPeriod.DAY.value,
        )
        _add_filters(parser)

    return _simple_spec("sales-report", "Summarize sales per day, month or year.", run_sales_report, arguments)


def dispatch_command(
    context: runtime.RuntimeContext,
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
    """Translate CLI args into create_item keyword arguments."""
    return {
        "code": args.code,
        "name": args.name,
        "unit_cost": args.unit_cost,
        "unit_price": args.unit_price,
        "opening_qty": args.opening_qty,
        "category": args.category,
        "status": ItemStatus.INACTIVE if getattr(args, "inactive", False) else ItemStatus.ACTIVE,
    }


def translate_update_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into update_item changes, dropping unset options."""
    candidates = {
        "name": args.name,
        "unit_cost": args.unit_cost,
        "unit_price": args.unit_price,
        "category": args.category,
        "status": args.status,
    }
    return {key: value for key, value in candidates.items() if value is not None}


def translate_receive(args: argparse.Namespace) -> core_logic.IncomingCommand:
    """Translate CLI args into an incoming command object."""
    return core_logic.IncomingCommand(item_code=args.code, quantity=args.quantity, occurred_on=args.date)


def translate_sell(args: argparse.Namespace) -> core_logic.OutgoingCommand:
    """Translate CLI args into an outgoing command object."""
    return core_logic.OutgoingCommand(item_code=args.code, quantity=args.quantity, occurred_on=args.date)


def _emit(line: str, stream: Optional[TextIO] = None) -> None:
    print(line, file=stream or sys.stdout)


def _format_item(item: catalog.ItemRow) -> str:
    fields = catalog.describe(item)
    return (
        f"{fields['code']:<10} {fields['name']:<24} qty={fields['current_qty']:<6} "
        f"price={fields['unit_price']} cost={fields['unit_cost']} sold={fields['cumulative_sold']} "
        f"revenue={fields['cumulative_revenue']} profit={fields['cumulative_profit']} [{fields['status']}]"
    )


def run_add_item(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow."""
    item = catalog.create_item(context, **translate_add_item(args))
    _emit(f"Created {_format_item(item)}")
    return 0


def run_update_item(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-item workflow."""
    item = catalog.update_item(context, args.code, **translate_update_item(args))
    _emit(f"Updated {_format_item(item)}")
    return 0


def run_delete_item(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-item workflow."""
    item = catalog.delete_item(context, args.code)
    _emit(f"Deleted item {item.code}")
    return 0


def run_receive(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the receive workflow via the engine."""
    event = core_logic.record_incoming(context, translate_receive(args))
    _emit(f"Recorded receipt {event.event_id}: {event.quantity} x {event.item_code}")
    return 0


def run_sell(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the engine."""
    event = core_logic.record_outgoing(context, translate_sell(args))
    _emit(f"Recorded sale {event.event_id}: {event.quantity} x {event.item_code} = {event.total_amount}")
    return 0


def run_edit_receipt(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-receipt workflow via the engine."""
    event = core_logic.edit_incoming(context, args.event_id, args.quantity)
    _emit(f"Receipt {event.event_id} now {event.quantity} x {event.item_code}")
    return 0


def run_delete_receipt(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-receipt workflow via the engine."""
    event = core_logic.delete_incoming(context, args.event_id)
    _emit(f"Deleted receipt {event.event_id}")
    return 0


def run_delete_sale(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-sale workflow via the engine."""
    event = core_logic.delete_outgoing(context, args.event_id)
    _emit(f"Deleted sale {event.event_id}")
    return 0


def run_delete_all_sales(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bulk sale deletion, which requires ``--yes``."""
    if not getattr(args, "yes", False):
        _emit("Refusing to delete all sales without --yes", sys.stderr)
        return 2
    count = core_logic.delete_all_outgoing(context)
    _emit(f"Deleted {count} sale(s)")
    return 0


def run_items(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the catalog."""
    for item in catalog.list_items(context, include_inactive=not getattr(args, "active_only", False)):
        _emit(_format_item(item))
    return 0


def run_receipts(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print incoming events."""
    for event in ledgers.list_incoming(context, item_code=args.code, start=args.start, end=args.end):
        _emit(f"{event.event_id} {event.occurred_on} {event.item_code:<10} +{event.quantity}")
    return 0


def run_sales(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print sale events."""
    for event in ledgers.list_outgoing(context, item_code=args.code, start=args.start, end=args.end):
        _emit(
            f"{event.event_id} {event.occurred_on} {event.item_code:<10} -{event.quantity} "
            f"@{event.unit_price_snapshot} total={event.total_amount} profit={event.profit_amount}"
        )
    return 0


def run_stock_summary(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print dashboard figures."""
    summary = catalog.summarize_stock(context)
    _emit(f"Items: {summary.total_items}")
    _emit(f"Low stock: {summary.low_stock_items}")
    _emit(f"Out of stock: {summary.out_of_stock_items}")
    _emit(f"Stock value: {summary.stock_value}")
    return 0


def run_sales_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-period sales totals."""
    for row in ledgers.summarize_sales(context, args.period, item_code=args.code, start=args.start, end=args.end):
        _emit(f"{row.period:<10} qty={row.quantity} revenue={row.revenue} profit={row.profit} sales={row.events}")
    return 0


def run_audit(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print ledger audits; exit 4 when any item drifted."""
    code = getattr(args, "code", None)
    results = [core_logic.audit_item(context, code)] if code else core_logic.audit_catalog(context)
    for result in results:
        status = "ok" if result.consistent else f"DRIFT {result.drift:+d}"
        _emit(f"{result.code:<10} cached={result.cached_qty} expected={result.expected_qty} {status}")
    return 0 if all(result.consistent for result in results) else 4


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, StockLedgerError) and not isinstance(error, ServerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        with runtime.runtime_session(getattr(args, "config", None)) as context:
            return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)

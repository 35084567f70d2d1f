"""Data access layer for Stock Ledger.

This module provides low-level helpers that read from and write to the
stock workbook. Business rules belong in :mod:`stock_ledger.catalog`,
:mod:`stock_ledger.ledgers` and :mod:`stock_ledger.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, atomically persisting and closing
   the Excel file.
3. Sheet operations: loading structured records and appending, rewriting,
   deleting or restoring individual rows.

Nothing in here is thread-safe. Callers serialize access through the runtime
context's workbook lock.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    SheetName,
)
from .exceptions import ServerError

RowT = TypeVar("RowT")


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
INCOMING_SHEET = SheetName.INCOMING_LOG.value
OUTGOING_SHEET = SheetName.OUTGOING_LOG.value

ITEM_COLUMNS: Sequence[str] = (
    "Code",
    "Name",
    "UnitCost",
    "UnitPrice",
    "OpeningQty",
    "CurrentQty",
    "CumulativeReceived",
    "CumulativeSold",
    "CumulativeRevenue",
    "CumulativeProfit",
    "TotalPurchase",
    "Category",
    "Status",
    "CreatedAt",
    "UpdatedAt",
    "Version",
)

INCOMING_COLUMNS: Sequence[str] = (
    "EventID",
    "ItemCode",
    "ItemName",
    "Quantity",
    "OccurredOn",
    "CreatedAt",
    "UpdatedAt",
)

OUTGOING_COLUMNS: Sequence[str] = (
    "EventID",
    "ItemCode",
    "ItemName",
    "Quantity",
    "UnitPriceSnapshot",
    "TotalAmount",
    "ProfitAmount",
    "OccurredOn",
    "CreatedAt",
    "UpdatedAt",
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    ITEMS_SHEET: ITEM_COLUMNS,
    INCOMING_SHEET: INCOMING_COLUMNS,
    OUTGOING_SHEET: OUTGOING_COLUMNS,
}

# Primary key column of every managed sheet.
KEY_COLUMNS: Mapping[str, str] = {
    ITEMS_SHEET: "Code",
    INCOMING_SHEET: "EventID",
    OUTGOING_SHEET: "EventID",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    code: str
    name: str
    unit_cost: Decimal
    unit_price: Decimal
    opening_qty: int
    current_qty: int
    cumulative_received: int
    cumulative_sold: int
    cumulative_revenue: Decimal
    cumulative_profit: Decimal
    total_purchase: Decimal
    category: str
    status: str
    created_at: str
    updated_at: str
    version: int


@dataclass(frozen=True)
class IncomingRow:
    """In-memory view of a row from the ``IncomingLog`` sheet."""

    event_id: str
    item_code: str
    item_name: str
    quantity: int
    occurred_on: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class OutgoingRow:
    """In-memory view of a row from the ``OutgoingLog`` sheet."""

    event_id: str
    item_code: str
    item_name: str
    quantity: int
    unit_price_snapshot: Decimal
    total_amount: Decimal
    profit_amount: Decimal
    occurred_on: str
    created_at: str
    updated_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

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

    ``[System]`` entries are mandatory. The ``[Inventory]`` section is optional
    and falls back to the package defaults. Relative ``DataFile`` entries are
    anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an ``[Inventory]`` option is not a valid number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_threshold = parser.getint(
        "Inventory", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    lock_timeout = parser.getfloat(
        "Inventory", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if low_stock_threshold < 0 or lock_timeout <= 0:
        raise ValueError(
            "LowStockThreshold must be >= 0 and LockTimeoutSeconds must be > 0")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        low_stock_threshold=low_stock_threshold,
        lock_timeout_seconds=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the stock workbook and verify its sheet layout.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        ValueError: If a managed sheet or header is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    validate_layout(wb)
    return wb


def validate_layout(workbook: Workbook) -> None:
    """Check that every managed sheet exists with the expected header row.

    Raises:
        ValueError: Naming the first sheet whose layout differs.
    """

    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name not in workbook.sheetnames:
            raise ValueError(f"Workbook is missing sheet '{sheet_name}'")
        headers = [cell.value for cell in workbook[sheet_name][1]]
        if tuple(headers[: len(columns)]) != tuple(columns):
            raise ValueError(
                f"Sheet '{sheet_name}' has unexpected headers: {headers}")


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is first written to a temporary sibling file which then
    replaces the destination in a single ``os.replace``. Readers of the file
    observe either the previous or the new contents, never a torn write.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Target path; parent folders are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    log.debug("Saved workbook '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def close_workbook(workbook: Workbook) -> None:
    """Release resources held by ``workbook``."""

    workbook.close()


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over the ``Items`` sheet, skipping the header and blank rows.

    Yields:
        ItemRow: One structured row for each populated record.
    """

    for raw in _iter_raw_rows(workbook, ITEMS_SHEET):
        yield _decode(ITEMS_SHEET, raw, deserialize_item)


def iter_incoming(workbook: Workbook) -> Iterable[IncomingRow]:
    """Stream incoming events from the ``IncomingLog`` sheet in sheet order."""

    for raw in _iter_raw_rows(workbook, INCOMING_SHEET):
        yield _decode(INCOMING_SHEET, raw, deserialize_incoming)


def iter_outgoing(workbook: Workbook) -> Iterable[OutgoingRow]:
    """Stream sale events from the ``OutgoingLog`` sheet in sheet order."""

    for raw in _iter_raw_rows(workbook, OUTGOING_SHEET):
        yield _decode(OUTGOING_SHEET, raw, deserialize_outgoing)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    width = len(SHEET_COLUMNS[sheet_name])
    for raw in sheet.iter_rows(min_row=2, max_col=width, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _decode(sheet_name: str, raw_row: Sequence[object], decoder: Callable[[Sequence[object]], RowT]) -> RowT:
    """Run ``decoder`` on ``raw_row``, reporting unreadable cells as ``ServerError``.

    Raises:
        ServerError: With code ``CORRUPT_ROW`` naming the sheet and row key.
    """

    try:
        return decoder(raw_row)
    except (InvalidOperation, ValueError, TypeError) as exc:
        key = raw_row[0] if raw_row else None
        log.error("Unreadable row '%s' in sheet '%s': %s", key, sheet_name, exc)
        raise ServerError(
            f"Row '{key}' in sheet '{sheet_name}' cannot be read",
            code="CORRUPT_ROW",
            details={"sheet": sheet_name, "key": str(key)},
        ) from exc


def find_item(workbook: Workbook, code: str) -> Optional[ItemRow]:
    """Return the item whose ``Code`` equals ``code`` or ``None``."""

    raw = read_row(workbook, ITEMS_SHEET, code)
    return _decode(ITEMS_SHEET, raw, deserialize_item) if raw is not None else None


def find_incoming(workbook: Workbook, event_id: str) -> Optional[IncomingRow]:
    """Return the incoming event with ``event_id`` or ``None``."""

    raw = read_row(workbook, INCOMING_SHEET, event_id)
    return _decode(INCOMING_SHEET, raw, deserialize_incoming) if raw is not None else None


def find_outgoing(workbook: Workbook, event_id: str) -> Optional[OutgoingRow]:
    """Return the sale event with ``event_id`` or ``None``."""

    raw = read_row(workbook, OUTGOING_SHEET, event_id)
    return _decode(OUTGOING_SHEET, raw, deserialize_outgoing) if raw is not None else None


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_incoming(workbook: Workbook, record: IncomingRow) -> None:
    """Append an incoming event to the ``IncomingLog`` worksheet."""

    workbook[INCOMING_SHEET].append(serialize_incoming(record))


def append_outgoing(workbook: Workbook, record: OutgoingRow) -> None:
    """Append a sale event to the ``OutgoingLog`` worksheet.

    Monetary fields stay :class:`~decimal.Decimal` so openpyxl stores them as
    numbers.
    """

    workbook[OUTGOING_SHEET].append(serialize_outgoing(record))


def update_row(workbook: Workbook, sheet_name: str, key_value: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of the row keyed by ``key_value``.

    Only the named fields are written; other columns stay untouched.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown column in '{sheet_name}': {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def write_item(workbook: Workbook, record: ItemRow) -> None:
    """Overwrite every column of an existing item row."""

    update_row(workbook, ITEMS_SHEET, record.code,
               field_values=dict(zip(ITEM_COLUMNS, serialize_item(record))))


def write_incoming(workbook: Workbook, record: IncomingRow) -> None:
    """Overwrite every column of an existing incoming event row."""

    update_row(workbook, INCOMING_SHEET, record.event_id,
               field_values=dict(zip(INCOMING_COLUMNS, serialize_incoming(record))))


def read_row(workbook: Workbook, sheet_name: str, key_value: str) -> Optional[Tuple[object, ...]]:
    """Return the raw values of the row keyed by ``key_value``, if any."""

    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        return None
    width = len(SHEET_COLUMNS[sheet_name])
    sheet = workbook[sheet_name]
    return tuple(sheet.cell(row=row_index, column=col).value for col in range(1, width + 1))


def delete_row(workbook: Workbook, sheet_name: str, key_value: str) -> Tuple[int, List[object]]:
    """Remove the row keyed by ``key_value``.

    Returns:
        tuple[int, list[object]]: The 1-based row index the record occupied and
            its raw values, so the deletion can be undone with
            :func:`restore_row`.

    Raises:
        KeyError: If no row matches.
    """

    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        raise KeyError(f"Row not found in '{sheet_name}': {key_value}")
    sheet = workbook[sheet_name]
    width = len(SHEET_COLUMNS[sheet_name])
    values = [sheet.cell(row=row_index, column=col).value for col in range(1, width + 1)]
    sheet.delete_rows(row_index)
    return row_index, values


def restore_row(workbook: Workbook, sheet_name: str, row_index: int, values: Sequence[object]) -> None:
    """Re-insert a previously deleted row at its original position."""

    sheet = workbook[sheet_name]
    sheet.insert_rows(row_index)
    for col, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=col, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(
        sheet.iter_rows(min_row=2, min_col=key_col_index, max_col=key_col_index, values_only=True),
        start=2,
    ):
        cell_value = row[0]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    header_cells = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(header_cells) if cell.value is not None}


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the ``Items`` column ordering."""

    return [
        record.code,
        record.name,
        record.unit_cost,
        record.unit_price,
        record.opening_qty,
        record.current_qty,
        record.cumulative_received,
        record.cumulative_sold,
        record.cumulative_revenue,
        record.cumulative_profit,
        record.total_purchase,
        record.category,
        record.status,
        record.created_at,
        record.updated_at,
        record.version,
    ]


def serialize_incoming(record: IncomingRow) -> list[object]:
    """Convert an incoming event into the ``IncomingLog`` column ordering."""

    return [
        record.event_id,
        record.item_code,
        record.item_name,
        record.quantity,
        record.occurred_on,
        record.created_at,
        record.updated_at,
    ]


def serialize_outgoing(record: OutgoingRow) -> list[object]:
    """Convert a sale event into the ``OutgoingLog`` column ordering."""

    return [
        record.event_id,
        record.item_code,
        record.item_name,
        record.quantity,
        record.unit_price_snapshot,
        record.total_amount,
        record.profit_amount,
        record.occurred_on,
        record.created_at,
        record.updated_at,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    # Excel hands back floats for cells edited by hand.
    return int(Decimal(str(raw))) if raw is not None else 0


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw ``Items`` row into a strongly typed record.

    Identifiers are coerced to ``str`` so numeric-looking codes survive Excel's
    type guessing, counters become ``int`` and money becomes
    :class:`~decimal.Decimal`.
    """

    (
        code,
        name,
        unit_cost,
        unit_price,
        opening_qty,
        current_qty,
        cumulative_received,
        cumulative_sold,
        cumulative_revenue,
        cumulative_profit,
        total_purchase,
        category,
        status,
        created_at,
        updated_at,
        version,
    ) = raw_row

    return ItemRow(
        code=str(code),
        name=_to_text(name),
        unit_cost=_to_decimal(unit_cost),
        unit_price=_to_decimal(unit_price),
        opening_qty=_to_int(opening_qty),
        current_qty=_to_int(current_qty),
        cumulative_received=_to_int(cumulative_received),
        cumulative_sold=_to_int(cumulative_sold),
        cumulative_revenue=_to_decimal(cumulative_revenue),
        cumulative_profit=_to_decimal(cumulative_profit),
        total_purchase=_to_decimal(total_purchase),
        category=_to_text(category),
        status=_to_text(status) or "active",
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
        version=_to_int(version) or 1,
    )


def deserialize_incoming(raw_row: Sequence[object]) -> IncomingRow:
    """Convert a raw ``IncomingLog`` row into a strongly typed record."""

    event_id, item_code, item_name, quantity, occurred_on, created_at, updated_at = raw_row
    return IncomingRow(
        event_id=str(event_id),
        item_code=_to_text(item_code),
        item_name=_to_text(item_name),
        quantity=_to_int(quantity),
        occurred_on=_to_text(occurred_on),
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
    )


def deserialize_outgoing(raw_row: Sequence[object]) -> OutgoingRow:
    """Convert a raw ``OutgoingLog`` row into a strongly typed record."""

    (
        event_id,
        item_code,
        item_name,
        quantity,
        unit_price_snapshot,
        total_amount,
        profit_amount,
        occurred_on,
        created_at,
        updated_at,
    ) = raw_row
    return OutgoingRow(
        event_id=str(event_id),
        item_code=_to_text(item_code),
        item_name=_to_text(item_name),
        quantity=_to_int(quantity),
        unit_price_snapshot=_to_decimal(unit_price_snapshot),
        total_amount=_to_decimal(total_amount),
        profit_amount=_to_decimal(profit_amount),
        occurred_on=_to_text(occurred_on),
        created_at=_to_text(created_at),
        updated_at=_to_text(updated_at),
    )

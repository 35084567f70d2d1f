"""Enumerations and defaults shared across Stock Ledger modules.

The data access layer, the consistency engine, and the CLI all rely on these
identifiers so sheet names and status values are spelled in one place only.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0

INCOMING_ID_PREFIX = "IN"
OUTGOING_ID_PREFIX = "OUT"


class ItemStatus(str, Enum):
    """Lifecycle flag of a catalog item."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Direction(str, Enum):
    """Which way a ledger event moves quantity-on-hand."""

    IN = "in"
    OUT = "out"


class ReportPeriod(str, Enum):
    """Bucket sizes supported by the sales report."""

    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    INCOMING_LOG = "IncomingLog"
    OUTGOING_LOG = "OutgoingLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "INCOMING_ID_PREFIX",
    "OUTGOING_ID_PREFIX",
    "ItemStatus",
    "Direction",
    "ReportPeriod",
    "SheetName",
]

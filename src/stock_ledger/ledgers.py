"""Incoming and outgoing ledgers: event construction, lookup and reporting.

Events are only written by :mod:`stock_ledger.core_logic`; this module builds
the rows it writes and answers read-side questions (listings, date-range
filters, per-period sales totals).
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from . import data_manager, log
from .constants import INCOMING_ID_PREFIX, OUTGOING_ID_PREFIX, ReportPeriod
from .exceptions import NotFound, ValidationError
from .runtime import RuntimeContext, get_cache_bucket

IncomingRow = data_manager.IncomingRow
OutgoingRow = data_manager.OutgoingRow

DateLike = Union[date, datetime, str]

_BUCKET_FORMATS = {
    ReportPeriod.DAY: "%Y-%m-%d",
    ReportPeriod.MONTH: "%Y-%m",
    ReportPeriod.YEAR: "%Y",
}


@dataclass(frozen=True)
class SalesSummary:
    """Totals of the sale events that fall in one report bucket."""

    period: str
    quantity: int
    revenue: Decimal
    profit: Decimal
    events: int


def generate_event_id(prefix: str, *, when: datetime) -> str:
    """Generate a sortable event identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}{tag}``. The 6-character random
            tag keeps ids unique when two writers share a microsecond.
    """

    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6].upper()}"


def coerce_date(value: Optional[DateLike], *, default: Optional[date] = None) -> Optional[date]:
    """Normalize dates given as ``date``, ``datetime`` or ISO strings.

    Raises:
        ValidationError: If a string is not an ISO-8601 date.
    """

    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        # Accept full timestamps as well as plain dates.
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        log.warning("Invalid date value: %r", value)
        raise ValidationError(
            f"Invalid date: {value}",
            details={"field": "occurred_on", "value": text},
        ) from exc


def build_incoming_event(
    item: data_manager.ItemRow,
    quantity: int,
    *,
    occurred_on: date,
    timestamp: datetime,
) -> IncomingRow:
    stamp = timestamp.isoformat()
    return IncomingRow(
        event_id=generate_event_id(INCOMING_ID_PREFIX, when=timestamp),
        item_code=item.code,
        item_name=item.name,
        quantity=quantity,
        occurred_on=occurred_on.isoformat(),
        created_at=stamp,
        updated_at=stamp,
    )


def build_outgoing_event(
    item: data_manager.ItemRow,
    quantity: int,
    *,
    occurred_on: date,
    timestamp: datetime,
) -> OutgoingRow:
    """Materialize a sale against ``item`` at its price of this moment.

    The unit price is snapshotted so the event's total and profit never move
    when the catalog price changes later.
    """

    snapshot = item.unit_price
    stamp = timestamp.isoformat()
    return OutgoingRow(
        event_id=generate_event_id(OUTGOING_ID_PREFIX, when=timestamp),
        item_code=item.code,
        item_name=item.name,
        quantity=quantity,
        unit_price_snapshot=snapshot,
        total_amount=snapshot * quantity,
        profit_amount=(snapshot - item.unit_cost) * quantity,
        occurred_on=occurred_on.isoformat(),
        created_at=stamp,
        updated_at=stamp,
    )


def _ensure_ledger_cache(context: RuntimeContext, sheet_name: str) -> Dict[str, Any]:
    bucket = get_cache_bucket(context, sheet_name)
    if "all" not in bucket:
        if sheet_name == data_manager.INCOMING_SHEET:
            rows = list(data_manager.iter_incoming(context.workbook))
        else:
            rows = list(data_manager.iter_outgoing(context.workbook))
        bucket["all"] = rows
        log.debug("Populated %s cache with %d entries", sheet_name, len(rows))
    return bucket


def _filtered(
    context: RuntimeContext,
    sheet_name: str,
    *,
    item_code: Optional[str],
    start: Optional[DateLike],
    end: Optional[DateLike],
) -> list:
    start_date = coerce_date(start)
    end_date = coerce_date(end)
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            "start must not be after end",
            details={"start": start_date.isoformat(), "end": end_date.isoformat()},
        )

    with context.workbook_lock:
        rows = list(_ensure_ledger_cache(context, sheet_name)["all"])

    selected = []
    for row in rows:
        if item_code is not None and row.item_code != item_code:
            continue
        # ISO dates compare correctly as strings.
        if start_date and row.occurred_on < start_date.isoformat():
            continue
        if end_date and row.occurred_on > end_date.isoformat():
            continue
        selected.append(row)
    selected.sort(key=lambda row: (row.occurred_on, row.created_at), reverse=True)
    return selected


def list_incoming(
    context: RuntimeContext,
    *,
    item_code: Optional[str] = None,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> List[IncomingRow]:
    """Return incoming events, newest first, optionally filtered.

    ``start`` and ``end`` are inclusive bounds on ``occurred_on``.
    """

    return _filtered(context, data_manager.INCOMING_SHEET, item_code=item_code, start=start, end=end)


def list_outgoing(
    context: RuntimeContext,
    *,
    item_code: Optional[str] = None,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> List[OutgoingRow]:
    """Return sale events, newest first, optionally filtered."""

    return _filtered(context, data_manager.OUTGOING_SHEET, item_code=item_code, start=start, end=end)


def get_incoming(context: RuntimeContext, event_id: str) -> IncomingRow:
    """Read an incoming event straight from the workbook.

    Raises:
        NotFound: If the id is unknown.
    """

    with context.workbook_lock:
        event = data_manager.find_incoming(context.workbook, event_id)
    if event is None:
        log.warning("Incoming event lookup failed for id '%s'", event_id)
        raise NotFound(f"Unknown incoming event id: {event_id}", details={"event_id": event_id})
    return event


def get_outgoing(context: RuntimeContext, event_id: str) -> OutgoingRow:
    """Read a sale event straight from the workbook.

    Raises:
        NotFound: If the id is unknown.
    """

    with context.workbook_lock:
        event = data_manager.find_outgoing(context.workbook, event_id)
    if event is None:
        log.warning("Outgoing event lookup failed for id '%s'", event_id)
        raise NotFound(f"Unknown outgoing event id: {event_id}", details={"event_id": event_id})
    return event


def summarize_sales(
    context: RuntimeContext,
    period: Union[ReportPeriod, str] = ReportPeriod.DAY,
    *,
    item_code: Optional[str] = None,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> List[SalesSummary]:
    """Group sale events into day, month or year buckets.

    Totals are summed from each event's own snapshot, so a report for a past
    period does not change when an item's price changes.

    Returns:
        list[SalesSummary]: One entry per non-empty bucket, oldest first.
    """

    try:
        bucket_period = ReportPeriod(period)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported report period: {period}",
            details={"period": str(period)},
        ) from exc
    fmt = _BUCKET_FORMATS[bucket_period]

    totals: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    events = list_outgoing(context, item_code=item_code, start=start, end=end)
    for event in sorted(events, key=lambda row: row.occurred_on):
        key = date.fromisoformat(event.occurred_on[:10]).strftime(fmt)
        bucket = totals.setdefault(
            key, {"quantity": 0, "revenue": Decimal("0"), "profit": Decimal("0"), "events": 0}
        )
        bucket["quantity"] += event.quantity
        bucket["revenue"] += event.total_amount
        bucket["profit"] += event.profit_amount
        bucket["events"] += 1

    summaries = [SalesSummary(period=key, **values) for key, values in totals.items()]
    log.debug("Summarized %d sale event(s) into %d %s bucket(s)", len(events), len(summaries), bucket_period.value)
    return summaries

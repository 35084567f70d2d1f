"""Tests for ledger event construction, listings and sales reports."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from stock_ledger import catalog, core_logic, ledgers
from stock_ledger.constants import ReportPeriod
from stock_ledger.exceptions import NotFound, ValidationError

MOMENT = datetime(2024, 3, 5, 14, 30, 15, 123456, tzinfo=UTC)


def _sell(context, code, quantity, on):
    return core_logic.record_outgoing(context, core_logic.OutgoingCommand(code, quantity, on))


def _receive(context, code, quantity, on):
    return core_logic.record_incoming(context, core_logic.IncomingCommand(code, quantity, on))


def test_generate_event_id_is_prefixed_and_sortable():
    event_id = ledgers.generate_event_id("OUT", when=MOMENT)

    assert re.fullmatch(r"OUT20240305143015123456[0-9A-F]{6}", event_id)
    assert ledgers.generate_event_id("OUT", when=MOMENT) != event_id


@pytest.mark.parametrize(
    "value, expected",
    [
        (date(2024, 1, 2), date(2024, 1, 2)),
        (MOMENT, date(2024, 3, 5)),
        ("2024-02-29", date(2024, 2, 29)),
        ("2024-02-29T08:00:00", date(2024, 2, 29)),
    ],
)
def test_coerce_date_accepts_common_forms(value, expected):
    assert ledgers.coerce_date(value) == expected


def test_coerce_date_falls_back_to_default():
    assert ledgers.coerce_date(None, default=date(2024, 1, 1)) == date(2024, 1, 1)


def test_coerce_date_rejects_garbage():
    with pytest.raises(ValidationError):
        ledgers.coerce_date("yesterday")


def test_build_outgoing_event_snapshots_price(runtime_context, item_factory):
    item = item_factory("A1")
    event = ledgers.build_outgoing_event(item, 4, occurred_on=date(2024, 3, 5), timestamp=MOMENT)

    assert event.unit_price_snapshot == Decimal("100")
    assert event.total_amount == Decimal("400")
    assert event.profit_amount == Decimal("160")
    assert event.occurred_on == "2024-03-05"
    assert event.event_id.startswith("OUT2024030514301512345")


def test_list_outgoing_filters_by_item_and_date(runtime_context, item_factory):
    item_factory("A1", opening_qty=50)
    item_factory("B1", opening_qty=50)
    _sell(runtime_context, "A1", 1, "2024-01-10")
    _sell(runtime_context, "A1", 2, "2024-02-10")
    _sell(runtime_context, "B1", 3, "2024-02-11")
    _sell(runtime_context, "A1", 4, "2024-03-10")

    everything = ledgers.list_outgoing(runtime_context)
    assert [event.quantity for event in everything] == [4, 3, 2, 1]

    a1_feb = ledgers.list_outgoing(runtime_context, item_code="A1", start="2024-02-01", end="2024-02-29")
    assert [event.quantity for event in a1_feb] == [2]

    bounded = ledgers.list_outgoing(runtime_context, start="2024-02-10", end="2024-03-10")
    assert [event.quantity for event in bounded] == [4, 3, 2]


def test_list_incoming_rejects_inverted_range(runtime_context):
    with pytest.raises(ValidationError):
        ledgers.list_incoming(runtime_context, start="2024-05-01", end="2024-04-01")


def test_listing_reflects_new_events(runtime_context, item_factory):
    """The ledger cache is invalidated on every commit."""

    item_factory("A1")
    assert ledgers.list_incoming(runtime_context) == []

    event = _receive(runtime_context, "A1", 5, "2024-03-01")
    assert ledgers.list_incoming(runtime_context) == [event]


def test_get_event_unknown_id_raises(runtime_context):
    with pytest.raises(NotFound):
        ledgers.get_incoming(runtime_context, "IN-missing")
    with pytest.raises(NotFound):
        ledgers.get_outgoing(runtime_context, "OUT-missing")


def test_summarize_sales_groups_by_month_using_snapshots(runtime_context, item_factory):
    """Reports sum event snapshots, not the item's current price."""

    item_factory("A1", opening_qty=50)
    _sell(runtime_context, "A1", 1, "2024-01-10")
    _sell(runtime_context, "A1", 2, "2024-01-20")
    catalog.update_item(runtime_context, "A1", unit_price="150")
    _sell(runtime_context, "A1", 1, "2024-02-01")

    report = ledgers.summarize_sales(runtime_context, ReportPeriod.MONTH)

    assert report == [
        ledgers.SalesSummary(
            period="2024-01", quantity=3, revenue=Decimal("300"), profit=Decimal("120"), events=2
        ),
        ledgers.SalesSummary(
            period="2024-02", quantity=1, revenue=Decimal("150"), profit=Decimal("90"), events=1
        ),
    ]


def test_summarize_sales_by_year_and_day(runtime_context, item_factory):
    item_factory("A1", opening_qty=50)
    _sell(runtime_context, "A1", 1, "2023-12-31")
    _sell(runtime_context, "A1", 1, "2024-01-01")
    _sell(runtime_context, "A1", 1, "2024-01-01")

    assert [row.period for row in ledgers.summarize_sales(runtime_context, "year")] == ["2023", "2024"]
    daily = ledgers.summarize_sales(runtime_context, "day", start="2024-01-01")
    assert [(row.period, row.quantity) for row in daily] == [("2024-01-01", 2)]


def test_summarize_sales_rejects_unknown_period(runtime_context):
    with pytest.raises(ValidationError):
        ledgers.summarize_sales(runtime_context, "week")

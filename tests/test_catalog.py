"""Tests for catalog validation, pure item math and catalog management."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from stock_ledger import catalog, data_manager
from stock_ledger.constants import Direction, ItemStatus
from stock_ledger.exceptions import (
    DuplicateKey,
    InsufficientStock,
    InvalidQuantity,
    NotFound,
    ValidationError,
)


def _row(**overrides) -> catalog.ItemRow:
    values = dict(
        code="A1",
        name="Widget",
        unit_cost=Decimal("60"),
        unit_price=Decimal("100"),
        opening_qty=10,
        current_qty=10,
        cumulative_received=0,
        cumulative_sold=0,
        cumulative_revenue=Decimal("0"),
        cumulative_profit=Decimal("0"),
        total_purchase=Decimal("600"),
        category="",
        status="active",
        created_at="",
        updated_at="",
        version=1,
    )
    values.update(overrides)
    return catalog.ItemRow(**values)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("raw, expected", [(5, 5), ("7", 7), (" 3 ", 3), ("4.0", 4)])
def test_require_positive_quantity_accepts_whole_numbers(raw, expected):
    assert catalog.require_positive_quantity(raw) == expected


@pytest.mark.parametrize("raw", [0, -1, "abc", "", None, True, 2.5, "1e400x"])
def test_require_positive_quantity_rejects_invalid_values(raw):
    """Zero, negatives, fractions and non-numeric input are all rejected."""

    with pytest.raises(InvalidQuantity) as excinfo:
        catalog.require_positive_quantity(raw)
    assert excinfo.value.code == "INVALID_QUANTITY"


def test_invalid_quantity_is_a_validation_error():
    with pytest.raises(ValidationError):
        catalog.require_positive_quantity(-3)


def test_require_nonnegative_money_rejects_negative():
    with pytest.raises(ValidationError) as excinfo:
        catalog.require_nonnegative_money("-0.01", field="unit_price")
    assert excinfo.value.details["field"] == "unit_price"


def test_require_active_rejects_inactive_item():
    with pytest.raises(ValidationError):
        catalog.require_active(_row(status="inactive"))


# ---------------------------------------------------------------------------
# Pure item math
# ---------------------------------------------------------------------------


def test_apply_delta_in_adds_quantity_only():
    item = _row()
    moved = catalog.apply_delta(item, 5, Direction.IN)

    assert moved.current_qty == 15
    assert moved.cumulative_received == item.cumulative_received
    assert item.current_qty == 10


def test_apply_delta_out_raises_when_short():
    with pytest.raises(InsufficientStock) as excinfo:
        catalog.apply_delta(_row(current_qty=3), 4, Direction.OUT)
    assert excinfo.value.details == {"item_code": "A1", "available": 3, "requested": 4}


def test_apply_delta_out_clamps_at_zero_when_asked():
    assert catalog.apply_delta(_row(current_qty=3), 4, Direction.OUT, clamp=True).current_qty == 0


def test_adjust_counters_floors_at_zero():
    item = catalog.adjust_counters(_row(cumulative_received=2, cumulative_sold=1), received=-5, sold=-3)
    assert (item.cumulative_received, item.cumulative_sold) == (0, 0)


def test_recompute_aggregates_uses_current_price():
    item = catalog.recompute_aggregates(_row(cumulative_sold=4, unit_price=Decimal("110")))

    assert item.cumulative_revenue == Decimal("440")
    assert item.cumulative_profit == Decimal("200")


def test_expected_quantity_replays_counters():
    assert catalog.expected_quantity(_row(opening_qty=10, cumulative_received=5, cumulative_sold=4)) == 11


def test_expected_quantity_accepts_replayed_totals():
    item = _row(opening_qty=10, cumulative_received=5, cumulative_sold=4)

    assert catalog.expected_quantity(item, received=7, sold=0) == 17
    assert catalog.expected_quantity(item, sold=10) == 5


# ---------------------------------------------------------------------------
# Catalog management
# ---------------------------------------------------------------------------


def test_create_item_initializes_counters(runtime_context, item_factory):
    item = item_factory("A1", opening_qty=10)

    assert item.current_qty == 10
    assert item.cumulative_sold == 0
    assert item.total_purchase == Decimal("600")
    assert item.version == 1
    assert catalog.get_item(runtime_context, "A1") == item


def test_create_item_persists_to_disk(runtime_context, item_factory):
    item_factory("A1")

    reloaded = data_manager.open_workbook(runtime_context.settings.data_file)
    assert [row.code for row in data_manager.iter_items(reloaded)] == ["A1"]


def test_create_item_rejects_duplicate_code(runtime_context, item_factory):
    item_factory("A1")
    with pytest.raises(DuplicateKey):
        item_factory("A1", name="Other")
    assert len(catalog.list_items(runtime_context)) == 1


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"code": " "}, ValidationError),
        ({"name": ""}, ValidationError),
        ({"unit_price": "-1"}, ValidationError),
        ({"opening_qty": -2}, InvalidQuantity),
        ({"status": "archived"}, ValidationError),
    ],
)
def test_create_item_validates_fields(runtime_context, overrides, error):
    fields = dict(code="B1", name="Bolt", unit_cost="1", unit_price="2", opening_qty=0)
    fields.update(overrides)
    with pytest.raises(error):
        catalog.create_item(runtime_context, **fields)
    assert catalog.list_items(runtime_context) == []


def test_update_item_changes_price_without_recomputing(runtime_context, item_factory):
    """Aggregates only follow the new price on the next sale event."""

    item_factory("A1")
    updated = catalog.update_item(runtime_context, "A1", unit_price="120", name="Widget XL")

    assert updated.unit_price == Decimal("120")
    assert updated.name == "Widget XL"
    assert updated.cumulative_revenue == Decimal("0")
    assert updated.version == 2
    assert catalog.get_item(runtime_context, "A1") == updated


def test_update_item_rejects_protected_fields(runtime_context, item_factory):
    item_factory("A1")
    with pytest.raises(ValidationError) as excinfo:
        catalog.update_item(runtime_context, "A1", current_qty=999)
    assert excinfo.value.details["fields"] == ["current_qty"]
    assert catalog.get_item(runtime_context, "A1").current_qty == 10


def test_update_item_requires_changes(runtime_context, item_factory):
    item_factory("A1")
    with pytest.raises(ValidationError):
        catalog.update_item(runtime_context, "A1")


def test_update_unknown_item_raises_not_found(runtime_context):
    with pytest.raises(NotFound):
        catalog.update_item(runtime_context, "ZZ", name="x")


def test_delete_item_removes_row(runtime_context, item_factory):
    item_factory("A1")
    item_factory("B1")

    deleted = catalog.delete_item(runtime_context, "A1")

    assert deleted.code == "A1"
    assert [item.code for item in catalog.list_items(runtime_context)] == ["B1"]
    with pytest.raises(NotFound):
        catalog.get_item(runtime_context, "A1")


def test_padded_codes_resolve_to_the_stored_item(runtime_context, item_factory):
    """Codes are stored stripped, so padded lookups reach the same row."""

    created = item_factory(" B2 ")
    assert created.code == "B2"

    assert catalog.get_item(runtime_context, "B2 ") == created
    assert catalog.update_item(runtime_context, "  B2", name="Bolt").name == "Bolt"
    assert catalog.delete_item(runtime_context, " B2 ").code == "B2"
    assert catalog.list_items(runtime_context) == []


def test_list_items_can_hide_inactive(runtime_context, item_factory):
    item_factory("A1")
    item_factory("B1", status=ItemStatus.INACTIVE)

    assert [item.code for item in catalog.list_items(runtime_context)] == ["A1", "B1"]
    assert [item.code for item in catalog.list_items(runtime_context, include_inactive=False)] == ["A1"]


def test_summarize_stock_counts_thresholds(runtime_context, item_factory):
    item_factory("A1", opening_qty=10, unit_cost="2")
    item_factory("B1", opening_qty=3, unit_cost="5")
    item_factory("C1", opening_qty=0, unit_cost="7")

    summary = catalog.summarize_stock(runtime_context)

    assert summary == catalog.StockSummary(
        total_items=3,
        low_stock_items=1,
        out_of_stock_items=1,
        stock_value=Decimal("35"),
    )
    assert catalog.summarize_stock(runtime_context, low_stock_threshold=11).low_stock_items == 2


def test_describe_exposes_public_fields():
    described = catalog.describe(replace(_row(), category="tools"))
    assert described["category"] == "tools"
    assert "version" not in described

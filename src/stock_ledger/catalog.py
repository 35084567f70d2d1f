"""Stock catalog: item records, their validation and pure quantity math.

Catalog management (create, update, delete, list) lives here together with
the pure helpers the consistency engine uses to derive a new item state from
an old one. None of the pure helpers touch storage; persistence always goes
through :class:`~stock_ledger.unit_of_work.UnitOfWork`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from . import data_manager, log
from .constants import Direction, ItemStatus
from .exceptions import (
    DuplicateKey,
    InsufficientStock,
    InvalidQuantity,
    NotFound,
    ValidationError,
)
from .runtime import RuntimeContext, get_cache_bucket
from .unit_of_work import UnitOfWork

ItemRow = data_manager.ItemRow

# Fields a caller may change through update_item; everything else is either
# the key, set once at creation, or owned by the consistency engine.
EDITABLE_FIELDS = frozenset({"name", "unit_cost", "unit_price", "category", "status"})


@dataclass(frozen=True)
class StockSummary:
    """Dashboard figures computed over the whole catalog."""

    total_items: int
    low_stock_items: int
    out_of_stock_items: int
    stock_value: Decimal


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _parse_whole_number(raw: Any) -> Optional[int]:
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value != value.to_integral_value():
        return None
    return int(value)


def require_positive_quantity(quantity: Any) -> int:
    """Validate that ``quantity`` is a whole number greater than zero.

    Strings such as ``"5"`` are accepted so CLI and form input can be passed
    through untouched; ``True``, ``"abc"`` and ``2.5`` are not.

    Returns:
        int: The normalized quantity.

    Raises:
        InvalidQuantity: If the value is non-numeric, fractional or ``<= 0``.
    """

    value = _parse_whole_number(quantity)
    if value is None or value <= 0:
        log.warning("Quantity validation failed: %r", quantity)
        raise InvalidQuantity(details={"quantity": str(quantity)})
    return value


def require_nonnegative_quantity(quantity: Any) -> int:
    """Validate that ``quantity`` is a whole number ``>= 0``."""

    value = _parse_whole_number(quantity)
    if value is None or value < 0:
        log.warning("Quantity validation failed: %r", quantity)
        raise InvalidQuantity(
            "Quantity must be a whole number of zero or more",
            details={"quantity": str(quantity)},
        )
    return value


def require_nonnegative_money(amount: Any, *, field: str) -> Decimal:
    """Validate that ``amount`` parses to a finite, non-negative decimal."""

    if isinstance(amount, bool) or amount is None:
        value = None
    else:
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError):
            value = None
    if value is None or not value.is_finite() or value < 0:
        log.warning("Monetary validation failed for %s: %r", field, amount)
        raise ValidationError(
            f"{field} must be a number of zero or more",
            details={"field": field, "value": str(amount)},
        )
    return value


def require_text(value: Any, *, field: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        log.warning("Required field '%s' is empty", field)
        raise ValidationError(f"{field} is required", details={"field": field})
    return text


def normalize_code(code: Any) -> str:
    # Codes are stored stripped; lookups must match that form.
    return "" if code is None else str(code).strip()


def require_status(value: Any) -> ItemStatus:
    try:
        return ItemStatus(value)
    except ValueError as exc:
        log.warning("Unsupported item status: %r", value)
        raise ValidationError(
            f"Unsupported status: {value}",
            details={"field": "status", "value": str(value)},
        ) from exc


def require_active(item: ItemRow) -> None:
    """Reject ledger activity on items flagged inactive."""

    if item.status != ItemStatus.ACTIVE.value:
        log.warning("Rejected ledger activity on inactive item '%s'", item.code)
        raise ValidationError(
            f"Item '{item.code}' is inactive",
            details={"item_code": item.code},
        )


# ---------------------------------------------------------------------------
# Pure item math
# ---------------------------------------------------------------------------


def apply_delta(item: ItemRow, quantity: int, direction: Direction, *, clamp: bool = False) -> ItemRow:
    """Return ``item`` with ``current_qty`` moved by ``quantity``.

    ``Direction.IN`` adds, ``Direction.OUT`` subtracts. An outgoing move that
    would go below zero raises unless ``clamp`` is set, in which case the
    quantity floors at zero. Counters and aggregates are left alone.

    Raises:
        InsufficientStock: If an unclamped outgoing move exceeds the stock.
    """

    if direction is Direction.IN:
        return replace(item, current_qty=item.current_qty + quantity)

    remaining = item.current_qty - quantity
    if remaining < 0:
        if not clamp:
            raise InsufficientStock(
                f"Item '{item.code}' has {item.current_qty} on hand, {quantity} requested",
                details={"item_code": item.code, "available": item.current_qty, "requested": quantity},
            )
        remaining = 0
    return replace(item, current_qty=remaining)


def adjust_counters(item: ItemRow, *, received: int = 0, sold: int = 0) -> ItemRow:
    """Shift the cumulative counters, flooring each at zero."""

    return replace(
        item,
        cumulative_received=max(0, item.cumulative_received + received),
        cumulative_sold=max(0, item.cumulative_sold + sold),
    )


def recompute_aggregates(item: ItemRow) -> ItemRow:
    """Derive revenue and profit from the *current* price and cost.

    Aggregates answer "what would everything sold so far be worth at today's
    price"; each sale event keeps its own historical snapshot.
    """

    return replace(
        item,
        cumulative_revenue=item.unit_price * item.cumulative_sold,
        cumulative_profit=(item.unit_price - item.unit_cost) * item.cumulative_sold,
    )


def expected_quantity(item: ItemRow, *, received: Optional[int] = None, sold: Optional[int] = None) -> int:
    """Quantity implied by the opening stock and the in/out totals.

    ``received`` and ``sold`` default to the item's own counters; the audit
    passes totals replayed from the ledgers instead.
    """

    received = item.cumulative_received if received is None else received
    sold = item.cumulative_sold if sold is None else sold
    return item.opening_qty + received - sold


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = get_cache_bucket(context, data_manager.ITEMS_SHEET)
    if "all" not in bucket:
        all_items = list(data_manager.iter_items(context.workbook))
        bucket["all"] = all_items
        bucket["by_code"] = {item.code: item for item in all_items}
        log.debug("Populated items cache with %d entries", len(all_items))
    return bucket


def list_items(context: RuntimeContext, *, include_inactive: bool = True) -> List[ItemRow]:
    """Return catalog items in sheet order.

    Args:
        include_inactive (bool): When ``False`` only active items are returned.
    """

    with context.workbook_lock:
        items = list(_ensure_items_cache(context)["all"])
    if include_inactive:
        return items
    return [item for item in items if item.status == ItemStatus.ACTIVE.value]


def get_item(context: RuntimeContext, code: str) -> ItemRow:
    """Read the current state of ``code`` straight from the workbook.

    The cache is bypassed on purpose: the engine calls this under the item
    lock and must see the row as it is now.

    Raises:
        NotFound: If no item carries ``code``.
    """

    code = normalize_code(code)
    with context.workbook_lock:
        item = data_manager.find_item(context.workbook, code)
    if item is None:
        log.warning("Item lookup failed for code '%s'", code)
        raise NotFound(f"Unknown item code: {code}", details={"item_code": code})
    return item


# ---------------------------------------------------------------------------
# Catalog management
# ---------------------------------------------------------------------------


def create_item(
    context: RuntimeContext,
    *,
    code: Any,
    name: Any,
    unit_cost: Any,
    unit_price: Any,
    opening_qty: Any = 0,
    category: Optional[str] = "",
    status: Any = ItemStatus.ACTIVE,
) -> ItemRow:
    """Validate and insert a new catalog item.

    ``current_qty`` starts at ``opening_qty``, counters and aggregates start
    at zero, and ``total_purchase`` records the opening stock's cost basis.

    Raises:
        ValidationError: On missing text fields, bad money or status.
        InvalidQuantity: If ``opening_qty`` is negative or fractional.
        DuplicateKey: If ``code`` already exists.
    """

    code_text = require_text(code, field="code")
    name_text = require_text(name, field="name")
    cost = require_nonnegative_money(unit_cost, field="unit_cost")
    price = require_nonnegative_money(unit_price, field="unit_price")
    opening = require_nonnegative_quantity(opening_qty)
    item_status = require_status(status)

    with context.item_locks.hold(code_text):
        with context.workbook_lock:
            existing = data_manager.find_item(context.workbook, code_text)
        if existing is not None:
            log.warning("Rejected duplicate item code '%s'", code_text)
            raise DuplicateKey(
                f"Item code already exists: {code_text}",
                details={"item_code": code_text},
            )

        stamp = utc_now().isoformat()
        record = ItemRow(
            code=code_text,
            name=name_text,
            unit_cost=cost,
            unit_price=price,
            opening_qty=opening,
            current_qty=opening,
            cumulative_received=0,
            cumulative_sold=0,
            cumulative_revenue=Decimal("0"),
            cumulative_profit=Decimal("0"),
            total_purchase=cost * opening,
            category=(category or "").strip(),
            status=item_status.value,
            created_at=stamp,
            updated_at=stamp,
            version=1,
        )
        with UnitOfWork(context, f"create item {code_text}") as uow:
            uow.insert_item(record)

    log.info("Created item '%s' (%s) with opening quantity %d", record.code, record.name, record.opening_qty)
    return record


def update_item(context: RuntimeContext, code: str, **changes: Any) -> ItemRow:
    """Change descriptive or pricing fields of an existing item.

    Price and cost changes do not touch the stored aggregates; they only
    become the basis of the next recomputation triggered by a sale or a
    sale reversal.

    Raises:
        NotFound: If the item does not exist.
        ValidationError: For unknown/immutable fields or invalid values.
    """

    code = normalize_code(code)
    if not changes:
        raise ValidationError("No fields to update", details={"item_code": code})
    forbidden = sorted(set(changes) - EDITABLE_FIELDS)
    if forbidden:
        log.warning("Rejected update of protected fields %s on item '%s'", forbidden, code)
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(forbidden)}",
            details={"item_code": code, "fields": forbidden},
        )

    normalized: Dict[str, Any] = {}
    if "name" in changes:
        normalized["name"] = require_text(changes["name"], field="name")
    if "unit_cost" in changes:
        normalized["unit_cost"] = require_nonnegative_money(changes["unit_cost"], field="unit_cost")
    if "unit_price" in changes:
        normalized["unit_price"] = require_nonnegative_money(changes["unit_price"], field="unit_price")
    if "category" in changes:
        normalized["category"] = (changes["category"] or "").strip()
    if "status" in changes:
        normalized["status"] = require_status(changes["status"]).value

    with context.item_locks.hold(code):
        item = get_item(context, code)
        updated = replace(item, updated_at=utc_now().isoformat(), **normalized)
        with UnitOfWork(context, f"update item {code}") as uow:
            written = uow.update_item(item, updated)

    log.info("Updated item '%s': %s", code, ", ".join(sorted(normalized)))
    return written


def delete_item(context: RuntimeContext, code: str) -> ItemRow:
    """Remove an item from the catalog.

    Ledger events that reference the code are kept; they are a reference,
    not owned by the item.

    Raises:
        NotFound: If the item does not exist.
    """

    code = normalize_code(code)
    with context.item_locks.hold(code):
        item = get_item(context, code)
        with UnitOfWork(context, f"delete item {code}") as uow:
            uow.delete_item(item)

    log.info("Deleted item '%s'", code)
    return item


def summarize_stock(context: RuntimeContext, *, low_stock_threshold: Optional[int] = None) -> StockSummary:
    """Compute the dashboard counters over every catalog item.

    Low stock means ``0 < current_qty < threshold``; out of stock means
    ``current_qty <= 0``; stock value is ``Σ current_qty × unit_cost``.
    """

    threshold = context.settings.low_stock_threshold if low_stock_threshold is None else low_stock_threshold
    items = list_items(context)
    summary = StockSummary(
        total_items=len(items),
        low_stock_items=sum(1 for item in items if 0 < item.current_qty < threshold),
        out_of_stock_items=sum(1 for item in items if item.current_qty <= 0),
        stock_value=sum((item.unit_cost * item.current_qty for item in items), Decimal("0")),
    )
    log.debug("Calculated stock summary: %s", summary)
    return summary


def describe(item: ItemRow) -> Mapping[str, Any]:
    """Render an item as a plain mapping for presentation layers."""

    return {
        "code": item.code,
        "name": item.name,
        "category": item.category,
        "status": item.status,
        "unit_cost": item.unit_cost,
        "unit_price": item.unit_price,
        "opening_qty": item.opening_qty,
        "current_qty": item.current_qty,
        "cumulative_received": item.cumulative_received,
        "cumulative_sold": item.cumulative_sold,
        "cumulative_revenue": item.cumulative_revenue,
        "cumulative_profit": item.cumulative_profit,
        "total_purchase": item.total_purchase,
    }

"""Consistency engine for Stock Ledger.

Every function here pairs a ledger write with the matching catalog write and
commits both through one :class:`~stock_ledger.unit_of_work.UnitOfWork` while
holding the lock of the item involved. The sequence is always the same:

1. validate the request (no locks, no writes);
2. take the item lock and read the item as it is now;
3. check business rules against that fresh row;
4. stage the ledger event and the derived item state;
5. commit, which applies both and saves the workbook atomically.

Validation failures surface before step 4, so a rejected request never
leaves a trace. Storage failures during step 5 roll both writes back.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from . import catalog, data_manager, ledgers, log
from .constants import Direction
from .exceptions import InsufficientStock, NotFound
from .runtime import RuntimeContext
from .unit_of_work import UnitOfWork

ItemRow = data_manager.ItemRow
IncomingRow = data_manager.IncomingRow
OutgoingRow = data_manager.OutgoingRow


@dataclass(frozen=True)
class IncomingCommand:
    """User intent for recording received stock."""

    item_code: str
    quantity: Union[int, str]
    occurred_on: Optional[Union[date, datetime, str]] = None


@dataclass(frozen=True)
class OutgoingCommand:
    """User intent for recording a sale."""

    item_code: str
    quantity: Union[int, str]
    occurred_on: Optional[Union[date, datetime, str]] = None


@dataclass(frozen=True)
class AuditResult:
    """Comparison of an item's cached quantity with its ledger history."""

    code: str
    cached_qty: int
    expected_qty: int
    received_from_ledger: int
    sold_from_ledger: int

    @property
    def consistent(self) -> bool:
        return self.cached_qty == self.expected_qty

    @property
    def drift(self) -> int:
        return self.cached_qty - self.expected_qty


def _resolve_occurred_on(candidate, now: datetime) -> date:
    return ledgers.coerce_date(candidate, default=now.date())


def _belongs_to(item: Optional[ItemRow], event: Union[IncomingRow, OutgoingRow]) -> bool:
    """Tell whether ``event`` was recorded against this incarnation of its item.

    Events only keep the item code, so an event written before the item was
    (re)created belongs to a deleted predecessor that shared the code.
    """

    if item is None:
        return False
    if not item.created_at or not event.created_at:
        return True
    # Both stamps come from utc_now().isoformat(), which sorts chronologically as text.
    return event.created_at >= item.created_at


def list_items(context: RuntimeContext) -> List[ItemRow]:
    """Return every catalog item for the presentation layer."""

    return catalog.list_items(context)


def record_incoming(context: RuntimeContext, command: IncomingCommand) -> IncomingRow:
    """Record received stock and raise the item's quantity by the same amount.

    Effects, committed together: a new incoming event; ``current_qty`` and
    ``cumulative_received`` both grow by the quantity.

    Raises:
        InvalidQuantity: If the quantity is not a positive whole number.
        ValidationError: If the code or date is malformed, or the item is inactive.
        NotFound: If the item code is unknown.
        ServerError: If the write could not be persisted.
    """

    code = catalog.require_text(command.item_code, field="item_code")
    quantity = catalog.require_positive_quantity(command.quantity)
    now = catalog.utc_now()
    occurred_on = _resolve_occurred_on(command.occurred_on, now)

    with context.item_locks.hold(code):
        item = catalog.get_item(context, code)
        catalog.require_active(item)

        event = ledgers.build_incoming_event(item, quantity, occurred_on=occurred_on, timestamp=now)
        updated = catalog.adjust_counters(
            catalog.apply_delta(item, quantity, Direction.IN),
            received=quantity,
        )
        with UnitOfWork(context, f"record incoming {event.event_id}") as uow:
            uow.append_incoming(event)
            uow.update_item(item, replace(updated, updated_at=now.isoformat()))

    log.info(
        "Recorded incoming '%s' for item '%s' (quantity=%d, on hand %d -> %d)",
        event.event_id,
        item.code,
        quantity,
        item.current_qty,
        updated.current_qty,
    )
    return event


def record_outgoing(context: RuntimeContext, command: OutgoingCommand) -> OutgoingRow:
    """Record a sale, snapshotting the item's current price.

    The event stores ``unit_price_snapshot``, ``total_amount`` and
    ``profit_amount`` as of now. The item loses the quantity, gains it in
    ``cumulative_sold``, and has its revenue/profit aggregates recomputed
    from its current price and cost.

    Raises:
        InvalidQuantity: If the quantity is not a positive whole number.
        ValidationError: If the code or date is malformed, or the item is inactive.
        NotFound: If the item code is unknown.
        InsufficientStock: If the quantity exceeds what is on hand.
        ServerError: If the write could not be persisted.
    """

    code = catalog.require_text(command.item_code, field="item_code")
    quantity = catalog.require_positive_quantity(command.quantity)
    now = catalog.utc_now()
    occurred_on = _resolve_occurred_on(command.occurred_on, now)

    with context.item_locks.hold(code):
        item = catalog.get_item(context, code)
        catalog.require_active(item)
        try:
            depleted = catalog.apply_delta(item, quantity, Direction.OUT)
        except InsufficientStock:
            log.warning(
                "Rejected sale of %d from item '%s': only %d on hand",
                quantity,
                item.code,
                item.current_qty,
            )
            raise

        event = ledgers.build_outgoing_event(item, quantity, occurred_on=occurred_on, timestamp=now)
        updated = catalog.recompute_aggregates(catalog.adjust_counters(depleted, sold=quantity))
        with UnitOfWork(context, f"record outgoing {event.event_id}") as uow:
            uow.append_outgoing(event)
            uow.update_item(item, replace(updated, updated_at=now.isoformat()))

    log.info(
        "Recorded outgoing '%s' for item '%s' (quantity=%d, total=%s, on hand %d -> %d)",
        event.event_id,
        item.code,
        quantity,
        event.total_amount,
        item.current_qty,
        updated.current_qty,
    )
    return event


def _locked_incoming(context: RuntimeContext, event_id: str) -> IncomingRow:
    # Re-read under the item lock; every writer of this event holds it too.
    return ledgers.get_incoming(context, event_id)


def edit_incoming(context: RuntimeContext, event_id: str, new_quantity: Union[int, str]) -> IncomingRow:
    """Change the quantity of a recorded receipt and shift the item by the delta.

    ``current_qty`` moves by ``new_quantity - old_quantity`` (floored at zero)
    and so does ``cumulative_received``. The item is never recomputed from
    scratch.

    Raises:
        InvalidQuantity: If ``new_quantity`` is not a positive whole number.
        NotFound: If the event or its item no longer exists.
        ServerError: If the write could not be persisted.
    """

    quantity = catalog.require_positive_quantity(new_quantity)
    snapshot = ledgers.get_incoming(context, event_id)

    with context.item_locks.hold(snapshot.item_code):
        event = _locked_incoming(context, event_id)
        item = catalog.get_item(context, event.item_code)
        if not _belongs_to(item, event):
            log.warning("Item '%s' of incoming '%s' was deleted and recreated", item.code, event_id)
            raise NotFound(
                f"Item '{item.code}' of incoming '{event_id}' no longer exists",
                details={"item_code": item.code, "event_id": event_id},
            )
        delta = quantity - event.quantity
        now = catalog.utc_now()

        if delta >= 0:
            moved = catalog.apply_delta(item, delta, Direction.IN)
        else:
            moved = catalog.apply_delta(item, -delta, Direction.OUT, clamp=True)
            if item.current_qty < -delta:
                log.warning(
                    "Edit of incoming '%s' clamped item '%s' at zero (short by %d)",
                    event_id,
                    item.code,
                    -delta - item.current_qty,
                )
        updated = catalog.adjust_counters(moved, received=delta)
        edited = replace(event, quantity=quantity, updated_at=now.isoformat())

        with UnitOfWork(context, f"edit incoming {event_id}") as uow:
            uow.update_incoming(event, edited)
            uow.update_item(item, replace(updated, updated_at=now.isoformat()))

    log.info(
        "Edited incoming '%s' for item '%s' (quantity %d -> %d, on hand %d -> %d)",
        event_id,
        item.code,
        event.quantity,
        quantity,
        item.current_qty,
        updated.current_qty,
    )
    return edited


def reverse_incoming(context: RuntimeContext, event_id: str) -> IncomingRow:
    """Delete a receipt and take its quantity back out of the item.

    ``current_qty`` is floored at zero. When stock from this receipt was
    already sold, the reversal under-corrects: the shortfall is logged and
    remains visible through :func:`audit_item`. If the item itself was
    deleted, only the event is removed, even when a new item has since taken
    over the code.

    Returns:
        IncomingRow: The deleted event.

    Raises:
        NotFound: If the event does not exist.
        ServerError: If the write could not be persisted.
    """

    snapshot = ledgers.get_incoming(context, event_id)

    with context.item_locks.hold(snapshot.item_code):
        event = _locked_incoming(context, event_id)
        with context.workbook_lock:
            item = data_manager.find_item(context.workbook, event.item_code)
        now = catalog.utc_now()

        with UnitOfWork(context, f"reverse incoming {event_id}") as uow:
            uow.delete_incoming(event)
            if not _belongs_to(item, event):
                log.warning(
                    "Item '%s' of incoming '%s' no longer exists; removing the event only",
                    event.item_code,
                    event_id,
                )
            else:
                if item.current_qty < event.quantity:
                    log.warning(
                        "Reversal of incoming '%s' clamped item '%s' at zero (short by %d)",
                        event_id,
                        item.code,
                        event.quantity - item.current_qty,
                    )
                updated = catalog.adjust_counters(
                    catalog.apply_delta(item, event.quantity, Direction.OUT, clamp=True),
                    received=-event.quantity,
                )
                uow.update_item(item, replace(updated, updated_at=now.isoformat()))

    log.info("Reversed incoming '%s' for item '%s' (quantity=%d)", event_id, event.item_code, event.quantity)
    return event


def _reverse_sales_on(item: ItemRow, sold: int, now: datetime) -> ItemRow:
    updated = catalog.recompute_aggregates(
        catalog.adjust_counters(catalog.apply_delta(item, sold, Direction.IN), sold=-sold)
    )
    return replace(updated, updated_at=now.isoformat())


def reverse_outgoing(context: RuntimeContext, event_id: str) -> OutgoingRow:
    """Delete a sale and give its quantity back to the item.

    ``current_qty`` grows by the sold quantity, ``cumulative_sold`` shrinks
    by it, and revenue/profit aggregates are recomputed from the current
    price and cost.

    Returns:
        OutgoingRow: The deleted event.

    Raises:
        NotFound: If the event does not exist.
        ServerError: If the write could not be persisted.
    """

    snapshot = ledgers.get_outgoing(context, event_id)

    with context.item_locks.hold(snapshot.item_code):
        event = ledgers.get_outgoing(context, event_id)
        with context.workbook_lock:
            item = data_manager.find_item(context.workbook, event.item_code)
        now = catalog.utc_now()

        with UnitOfWork(context, f"reverse outgoing {event_id}") as uow:
            uow.delete_outgoing(event)
            if not _belongs_to(item, event):
                log.warning(
                    "Item '%s' of outgoing '%s' no longer exists; removing the event only",
                    event.item_code,
                    event_id,
                )
            else:
                uow.update_item(item, _reverse_sales_on(item, event.quantity, now))

    log.info("Reversed outgoing '%s' for item '%s' (quantity=%d)", event_id, event.item_code, event.quantity)
    return event


def delete_all_outgoing(context: RuntimeContext) -> int:
    """Delete every sale event, reversing each against its item.

    All affected item locks are taken up front (sorted), then every deletion
    and item update is committed as one unit. Sales recorded for other items
    after the snapshot are left alone.

    Returns:
        int: Number of events deleted.

    Raises:
        ServerError: If the write could not be persisted.
    """

    with context.workbook_lock:
        codes = {event.item_code for event in data_manager.iter_outgoing(context.workbook)}
    if not codes:
        log.info("No outgoing events to delete")
        return 0

    with context.item_locks.hold(*codes):
        with context.workbook_lock:
            events = [event for event in data_manager.iter_outgoing(context.workbook) if event.item_code in codes]
            items = {code: data_manager.find_item(context.workbook, code) for code in codes}

        sold_by_code: Dict[str, int] = {}
        orphaned = 0
        for event in events:
            if _belongs_to(items[event.item_code], event):
                sold_by_code[event.item_code] = sold_by_code.get(event.item_code, 0) + event.quantity
            else:
                orphaned += 1

        now = catalog.utc_now()
        with UnitOfWork(context, "delete all outgoing") as uow:
            for event in events:
                uow.delete_outgoing(event)
            for code in sorted(sold_by_code):
                uow.update_item(items[code], _reverse_sales_on(items[code], sold_by_code[code], now))

    if orphaned:
        log.warning("Removed %d outgoing event(s) of deleted items without catalog changes", orphaned)
    log.info("Deleted %d outgoing event(s) across %d item(s)", len(events), len(sold_by_code))
    return len(events)


# Names used by the presentation layer for the delete actions.
delete_incoming = reverse_incoming
delete_outgoing = reverse_outgoing


def audit_item(context: RuntimeContext, code: str) -> AuditResult:
    """Replay the ledgers for ``code`` and compare with the cached quantity.

    Events left behind by a deleted item that used the same code are not
    replayed.

    Raises:
        NotFound: If the item does not exist.
    """

    item = catalog.get_item(context, code)
    code = item.code
    received = sum(
        event.quantity
        for event in ledgers.list_incoming(context, item_code=code)
        if _belongs_to(item, event)
    )
    sold = sum(
        event.quantity
        for event in ledgers.list_outgoing(context, item_code=code)
        if _belongs_to(item, event)
    )
    result = AuditResult(
        code=code,
        cached_qty=item.current_qty,
        expected_qty=catalog.expected_quantity(item, received=received, sold=sold),
        received_from_ledger=received,
        sold_from_ledger=sold,
    )
    if not result.consistent:
        log.warning(
            "Item '%s' drifted from its ledger: cached %d, expected %d",
            code,
            result.cached_qty,
            result.expected_qty,
        )
    return result


def audit_catalog(context: RuntimeContext) -> List[AuditResult]:
    """Audit every catalog item; see :func:`audit_item`."""

    results = []
    for item in catalog.list_items(context):
        try:
            results.append(audit_item(context, item.code))
        except NotFound:
            # Deleted between listing and auditing.
            continue
    return results

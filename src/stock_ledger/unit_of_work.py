"""Atomic write boundary for ledger and catalog mutations.

A :class:`UnitOfWork` collects staged writes and applies them in a single
critical section guarded by the workbook lock:

1. every staged step is applied to the in-memory workbook, each one
   recording how to undo itself;
2. item rows are checked against the version they were read at;
3. the workbook is saved atomically.

If any of these fails the undo journal runs in reverse, the file on disk is
left as it was, and the failure surfaces as :class:`ServerError`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Set

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import ServerError
from .runtime import RuntimeContext, invalidate_cache

Undo = Callable[[], None]


@dataclass(frozen=True)
class _Step:
    label: str
    apply: Callable[[Workbook], Undo]


class UnitOfWork:
    """Stage writes against the workbook and commit them all or nothing.

    Usable as a context manager: the block commits on a clean exit and
    discards the staged steps when it raises.
    """

    def __init__(self, context: RuntimeContext, description: str) -> None:
        self._context = context
        self._description = description
        self._steps: List[_Step] = []
        self._touched: Set[str] = set()
        self._committed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            log.debug("Discarding %d staged step(s) of '%s'", len(self._steps), self._description)
            self._steps.clear()

    @property
    def staged(self) -> int:
        return len(self._steps)

    def insert_item(self, record: data_manager.ItemRow) -> data_manager.ItemRow:
        def apply(workbook: Workbook) -> Undo:
            if data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "Code", record.code) is not None:
                raise ServerError(
                    f"Item '{record.code}' appeared concurrently",
                    code="STALE_RECORD",
                    details={"item_code": record.code},
                )
            data_manager.append_item(workbook, record)
            return lambda: data_manager.delete_row(workbook, data_manager.ITEMS_SHEET, record.code)

        self._stage(f"insert item {record.code}", data_manager.ITEMS_SHEET, apply)
        return record

    def update_item(
        self,
        previous: data_manager.ItemRow,
        updated: data_manager.ItemRow,
    ) -> data_manager.ItemRow:
        """Stage a rewrite of ``previous`` into ``updated``.

        The written row carries ``previous.version + 1``. The stored version is
        compared against ``previous.version`` when the step is applied.
        """

        record = replace(updated, version=previous.version + 1)

        def apply(workbook: Workbook) -> Undo:
            current = data_manager.find_item(workbook, previous.code)
            if current is None or current.version != previous.version:
                found = None if current is None else current.version
                log.error(
                    "Stale write to item '%s': expected version %s, found %s",
                    previous.code,
                    previous.version,
                    found,
                )
                raise ServerError(
                    f"Item '{previous.code}' was modified concurrently",
                    code="STALE_RECORD",
                    details={"item_code": previous.code, "expected_version": previous.version, "found_version": found},
                )
            data_manager.write_item(workbook, record)
            return lambda: data_manager.write_item(workbook, current)

        self._stage(f"update item {previous.code}", data_manager.ITEMS_SHEET, apply)
        return record

    def delete_item(self, record: data_manager.ItemRow) -> None:
        self._stage_delete(data_manager.ITEMS_SHEET, record.code)

    def append_incoming(self, record: data_manager.IncomingRow) -> data_manager.IncomingRow:
        def apply(workbook: Workbook) -> Undo:
            data_manager.append_incoming(workbook, record)
            return lambda: data_manager.delete_row(workbook, data_manager.INCOMING_SHEET, record.event_id)

        self._stage(f"append incoming {record.event_id}", data_manager.INCOMING_SHEET, apply)
        return record

    def update_incoming(self, previous: data_manager.IncomingRow, updated: data_manager.IncomingRow) -> data_manager.IncomingRow:
        def apply(workbook: Workbook) -> Undo:
            data_manager.write_incoming(workbook, updated)
            return lambda: data_manager.write_incoming(workbook, previous)

        self._stage(f"update incoming {previous.event_id}", data_manager.INCOMING_SHEET, apply)
        return updated

    def delete_incoming(self, record: data_manager.IncomingRow) -> None:
        self._stage_delete(data_manager.INCOMING_SHEET, record.event_id)

    def append_outgoing(self, record: data_manager.OutgoingRow) -> data_manager.OutgoingRow:
        def apply(workbook: Workbook) -> Undo:
            data_manager.append_outgoing(workbook, record)
            return lambda: data_manager.delete_row(workbook, data_manager.OUTGOING_SHEET, record.event_id)

        self._stage(f"append outgoing {record.event_id}", data_manager.OUTGOING_SHEET, apply)
        return record

    def delete_outgoing(self, record: data_manager.OutgoingRow) -> None:
        self._stage_delete(data_manager.OUTGOING_SHEET, record.event_id)

    def _stage_delete(self, sheet_name: str, key: str) -> None:
        def apply(workbook: Workbook) -> Undo:
            row_index, values = data_manager.delete_row(workbook, sheet_name, key)
            return lambda: data_manager.restore_row(workbook, sheet_name, row_index, values)

        self._stage(f"delete {sheet_name} {key}", sheet_name, apply)

    def _stage(self, label: str, sheet_name: str, apply: Callable[[Workbook], Undo]) -> None:
        if self._committed:
            raise RuntimeError(f"Unit of work '{self._description}' already committed")
        self._steps.append(_Step(label=label, apply=apply))
        self._touched.add(sheet_name)

    def commit(self) -> None:
        """Apply every staged step and save the workbook atomically.

        Raises:
            ServerError: If a step or the save fails. In-memory rows are
                restored before the error propagates.
        """

        if self._committed:
            raise RuntimeError(f"Unit of work '{self._description}' already committed")
        if not self._steps:
            self._committed = True
            return

        context = self._context
        with context.workbook_lock:
            undo_journal: List[Undo] = []
            current: Optional[_Step] = None
            try:
                for current in self._steps:
                    undo_journal.append(current.apply(context.workbook))
                current = None
                data_manager.save_workbook(context.workbook, context.settings.data_file)
            except Exception as exc:
                failed_at = current.label if current is not None else "save"
                log.error("Unit of work '%s' failed at '%s': %s", self._description, failed_at, exc)
                self._rollback(undo_journal)
                invalidate_cache(context, *self._touched)
                if isinstance(exc, ServerError):
                    raise
                raise ServerError(
                    f"Could not persist '{self._description}'",
                    details={"step": failed_at, "cause": str(exc)},
                ) from exc
            finally:
                self._committed = True
            invalidate_cache(context, *self._touched)

        log.debug("Committed '%s' with %d step(s)", self._description, len(self._steps))

    def _rollback(self, undo_journal: List[Undo]) -> None:
        for undo in reversed(undo_journal):
            try:
                undo()
            except Exception:
                # The on-disk file is still intact; only this process' view drifted.
                log.exception("Undo failed while rolling back '%s'", self._description)

"""Runtime context shared by the catalog, the ledgers and the engine.

A :class:`RuntimeContext` is the explicit storage client of the package: it
bundles the parsed settings, the live workbook, the per-item lock registry
and the read caches. It is opened once (``load_runtime_context``) and closed
once (``close_context``); nothing in the package keeps a global handle.
"""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LOCK_TIMEOUT_SECONDS, EXPECTED_SCHEMA_VERSION
from .exceptions import ServerError


class ItemLockRegistry:
    """Hand out one re-entrant lock per item code.

    Locks are created lazily and kept only while some caller holds a
    reference, so two callers asking for the same code at the same time
    contend on the same object while codes that are no longer in use (or
    never existed) do not accumulate.
    """

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, code: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(code)
            if lock is None:
                lock = threading.RLock()
                self._locks[code] = lock
            return lock

    @contextmanager
    def hold(self, *codes: str) -> Iterator[None]:
        """Acquire the locks for ``codes`` in sorted order.

        Sorting gives every caller the same acquisition order, which rules out
        lock-order deadlocks for multi-item operations.

        Raises:
            ServerError: If any lock cannot be acquired within ``timeout``.
        """

        acquired: List[threading.RLock] = []
        try:
            for code in sorted(set(codes)):
                lock = self.lock_for(code)
                if not lock.acquire(timeout=self.timeout):
                    log.error("Timed out after %ss waiting for item lock '%s'", self.timeout, code)
                    raise ServerError(
                        f"Item '{code}' is busy, try again",
                        code="LOCK_TIMEOUT",
                        details={"item_code": code},
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and synchronization state."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    item_locks: ItemLockRegistry = field(default_factory=ItemLockRegistry, repr=False, compare=False)
    workbook_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``.

    Callers must hold ``context.workbook_lock`` while populating or reading a
    bucket so a concurrent commit cannot invalidate it halfway.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    with context.workbook_lock:
        for name in names:
            context._cache.pop(name, None)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Context ready for catalog and engine operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        item_locks=ItemLockRegistry(timeout=settings.lock_timeout_seconds),
    )


def close_context(context: RuntimeContext) -> None:
    """Drop caches and release the workbook held by ``context``."""

    with context.workbook_lock:
        context._cache.clear()
        data_manager.close_workbook(context.workbook)
    log.info("Closed runtime context for workbook '%s'", context.settings.data_file)


@contextmanager
def runtime_session(config_path: Optional[Path] = None) -> Iterator[RuntimeContext]:
    """Open a validated runtime context and close it when the block exits."""

    context = load_runtime_context(config_path)
    try:
        ensure_schema_version(context)
        yield context
    finally:
        close_context(context)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and return a fresh context.

    Locks are carried over so callers still serialized on the old context
    keep excluding callers of the new one.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        item_locks=context.item_locks,
        workbook_lock=context.workbook_lock,
    )

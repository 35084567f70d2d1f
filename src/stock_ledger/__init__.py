"""Stock Ledger: inventory and sales tracking backed by an Excel workbook.

Importing the package configures the shared ``log`` object used by every
layer. The level defaults to INFO and can be overridden with the
``STOCK_LEDGER_LOG_LEVEL`` environment variable.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "stock_ledger.log"
LOG_LEVEL_ENV = "STOCK_LEDGER_LOG_LEVEL"


def _resolve_level() -> int:
    """Translate the environment override into a logging level."""

    raw = os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with rotating file and stderr handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level()
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'stock_ledger' package.")

__all__ = ["__version__", "log"]

"""Structured error kinds surfaced by the Stock Ledger engine.

Every error carries a human readable ``message``, a stable machine ``code``
and optional ``details`` so callers (CLI, a future API layer) can render
them without inspecting storage internals.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StockLedgerError(Exception):
    """Base class for every domain and storage error raised by the package."""

    default_message = "Stock ledger error"
    default_code = "STOCK_LEDGER_ERROR"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a serializable dictionary."""

        error_dict: Dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            error_dict["details"] = dict(self.details)
        return error_dict


class NotFound(StockLedgerError):
    """Raised when an item code or event id does not resolve."""

    default_message = "Record not found"
    default_code = "NOT_FOUND"


class ValidationError(StockLedgerError):
    """Raised when a required field is missing or malformed."""

    default_message = "Validation error"
    default_code = "VALIDATION_ERROR"


class InvalidQuantity(ValidationError):
    """Raised when a quantity is non-numeric, fractional, or not positive."""

    default_message = "Quantity must be a positive whole number"
    default_code = "INVALID_QUANTITY"


class InsufficientStock(StockLedgerError):
    """Raised when a sale asks for more than the quantity on hand."""

    default_message = "Insufficient stock"
    default_code = "INSUFFICIENT_STOCK"


class DuplicateKey(StockLedgerError):
    """Raised when an item code is already taken."""

    default_message = "Duplicate key"
    default_code = "DUPLICATE_KEY"


class ServerError(StockLedgerError):
    """Raised when storage fails and the unit of work was rolled back."""

    default_message = "Storage failure"
    default_code = "SERVER_ERROR"


__all__ = [
    "StockLedgerError",
    "NotFound",
    "ValidationError",
    "InvalidQuantity",
    "InsufficientStock",
    "DuplicateKey",
    "ServerError",
]

"""Error taxonomy raised by the pharmacy ledger engine."""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every domain error raised by the engine."""


class ValidationError(LedgerError, ValueError):
    """Raised when caller input is missing or malformed."""


class NotFound(LedgerError, KeyError):
    """Raised when a referenced product or sale id does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


class InsufficientStock(LedgerError):
    """Raised when a requested quantity exceeds the available stock."""

    def __init__(self, product_id: str, *, available: int, requested: int) -> None:
        super().__init__(f"Only {available} units available (requested {requested})")
        self.product_id = product_id
        self.available = available
        self.requested = requested


class PartialFailure(LedgerError):
    """Raised when a sale was recorded but its stock decrement was not applied.

    The sale stays in the ledger. ``sale_id`` identifies the entry that needs a
    compensating adjustment through :func:`core_logic.reconcile_sale`.
    """

    def __init__(self, sale_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Sale '{sale_id}' recorded but stock was not decremented")
        self.sale_id = sale_id


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFound",
    "InsufficientStock",
    "PartialFailure",
]

"""Enumerations and defaults shared across the pharmacy ledger modules.

Keeps the workbook layout, the sale types, and the analytics defaults in one
place so the data layer, the engine, and the CLI agree on them.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_TOP_SELLERS_LIMIT = 5
ANALYTICS_WINDOWS: tuple[int, ...] = (7, 30, 90)
DEFAULT_ANALYTICS_WINDOW = 30

DEFAULT_STOCK_WRITE_ATTEMPTS = 3
DEFAULT_STOCK_WRITE_BACKOFF = 0.05


class SaleType(str, Enum):
    """Enumerate the price lists a sale can be charged against."""

    RETAIL = "retail"
    WHOLESALE = "wholesale"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"


PRODUCT_COLUMNS: tuple[str, ...] = (
    "ProductID",
    "Name",
    "Category",
    "Stock",
    "RetailPrice",
    "WholesalePrice",
    "BatchNumber",
    "ExpiryDate",
    "CreatedAt",
)

SALE_COLUMNS: tuple[str, ...] = (
    "SaleID",
    "ProductID",
    "ProductName",
    "Quantity",
    "SaleType",
    "UnitPrice",
    "TotalAmount",
    "CustomerName",
    "Notes",
    "CreatedAt",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_TOP_SELLERS_LIMIT",
    "ANALYTICS_WINDOWS",
    "DEFAULT_ANALYTICS_WINDOW",
    "DEFAULT_STOCK_WRITE_ATTEMPTS",
    "DEFAULT_STOCK_WRITE_BACKOFF",
    "SaleType",
    "SheetName",
    "PRODUCT_COLUMNS",
    "SALE_COLUMNS",
]

"""Data access layer for the pharmacy ledger.

This module provides low-level helpers that read from and write to the
pharmacy master workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   removing individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_ANALYTICS_WINDOW,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_STOCK_WRITE_ATTEMPTS,
    DEFAULT_STOCK_WRITE_BACKOFF,
    DEFAULT_TOP_SELLERS_LIMIT,
    PRODUCT_COLUMNS,
    SALE_COLUMNS,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value

# Dataclass attribute -> worksheet header for updatable product fields.
PRODUCT_FIELD_COLUMNS: Mapping[str, str] = {
    "name": "Name",
    "category": "Category",
    "stock": "Stock",
    "retail_price": "RetailPrice",
    "wholesale_price": "WholesalePrice",
    "batch_number": "BatchNumber",
    "expiry_date": "ExpiryDate",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    pharmacy_name: str
    schema_version: str
    timezone: tzinfo
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    top_sellers_limit: int = DEFAULT_TOP_SELLERS_LIMIT
    default_window_days: int = DEFAULT_ANALYTICS_WINDOW
    stock_write_attempts: int = DEFAULT_STOCK_WRITE_ATTEMPTS
    stock_write_backoff: float = DEFAULT_STOCK_WRITE_BACKOFF


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    stock: int
    retail_price: Decimal
    wholesale_price: Optional[Decimal]
    batch_number: Optional[str]
    expiry_date: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    sale_type: str
    unit_price: Decimal
    total_amount: Decimal
    customer_name: Optional[str]
    notes: Optional[str]
    created_at: datetime


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Turn an IANA zone name into a ``tzinfo``.

    Blank or missing names fall back to the host's local zone, which is what
    "today" means for a single-site pharmacy.

    Raises:
        ValueError: If ``name`` is not a known zone.
    """

    if not name or not name.strip():
        local = datetime.now().astimezone().tzinfo
        return local if local is not None else UTC
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are required. The ``[Analytics]`` and
    ``[Transactions]`` sections are optional and fall back to the package
    defaults. Relative ``DataFile`` entries are anchored to ``base_path`` (or
    the current working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a numeric option or the timezone is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        pharmacy_name = parser.get("System", "PharmacyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timezone = resolve_timezone(parser.get("System", "Timezone", fallback=None))

    low_stock_threshold = parser.getint(
        "Analytics", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    top_sellers_limit = parser.getint(
        "Analytics", "TopSellersLimit", fallback=DEFAULT_TOP_SELLERS_LIMIT)
    default_window_days = parser.getint(
        "Analytics", "DefaultWindowDays", fallback=DEFAULT_ANALYTICS_WINDOW)
    stock_write_attempts = parser.getint(
        "Transactions", "StockWriteAttempts", fallback=DEFAULT_STOCK_WRITE_ATTEMPTS)
    stock_write_backoff = parser.getfloat(
        "Transactions", "StockWriteBackoff", fallback=DEFAULT_STOCK_WRITE_BACKOFF)

    if default_window_days <= 0:
        raise ValueError("DefaultWindowDays must be greater than zero")
    if stock_write_attempts < 1:
        raise ValueError("StockWriteAttempts must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        pharmacy_name=pharmacy_name,
        schema_version=schema_version,
        timezone=timezone,
        low_stock_threshold=low_stock_threshold,
        top_sellers_limit=top_sellers_limit,
        default_window_days=default_window_days,
        stock_write_attempts=stock_write_attempts,
        stock_write_backoff=stock_write_backoff,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet in append order."""

    sheet = workbook[SALES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_sale(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet.

    Monetary fields remain :class:`~decimal.Decimal` instances after
    serialization so the in-memory workbook keeps exact values.
    """

    sheet = workbook[SALES_SHEET]
    sheet.append(serialize_sale(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product.

    ``field_values`` is keyed by worksheet header (``"Stock"``,
    ``"RetailPrice"`` ...). Only the specified cells are written.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    sheet_name = PRODUCTS_SHEET
    row_index = locate_row(workbook, sheet_name, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        col = header_map[field]
        sheet.cell(row=row_index, column=col, value=value)


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove the product row identified by ``product_id``.

    Raises:
        KeyError: If no row carries ``product_id``.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    workbook[PRODUCTS_SHEET].delete_rows(row_index, 1)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value == key_value:
            return row_idx

    return None


def _header_map(sheet: Any) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.name,
        record.category,
        record.stock,
        record.retail_price,
        record.wholesale_price,
        record.batch_number,
        record.expiry_date,
        record.created_at.isoformat(),
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.sale_type,
        record.unit_price,
        record.total_amount,
        record.customer_name,
        record.notes,
        record.created_at.isoformat(),
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal`, stock becomes ``int`` and ids are
    coerced to ``str`` so Excel's number guessing never leaks out.
    """

    (
        product_id,
        name,
        category,
        stock_raw,
        retail_raw,
        wholesale_raw,
        batch_number,
        expiry_date,
        created_raw,
    ) = tuple(raw_row[: len(PRODUCT_COLUMNS)])

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        category=str(category) if category is not None else "",
        stock=int(stock_raw) if stock_raw is not None else 0,
        retail_price=_to_decimal(retail_raw) or Decimal("0.00"),
        wholesale_price=_to_decimal(wholesale_raw),
        batch_number=(str(batch_number) if batch_number is not None else None),
        expiry_date=(str(expiry_date) if expiry_date is not None else None),
        created_at=parse_timestamp(created_raw),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record."""

    (
        sale_id,
        product_id,
        product_name,
        quantity_raw,
        sale_type,
        unit_price_raw,
        total_amount_raw,
        customer_name,
        notes,
        created_raw,
    ) = tuple(raw_row[: len(SALE_COLUMNS)])

    return SaleRow(
        sale_id=str(sale_id),
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        sale_type=str(sale_type) if sale_type is not None else "",
        unit_price=_to_decimal(unit_price_raw) or Decimal("0.00"),
        total_amount=_to_decimal(total_amount_raw) or Decimal("0.00"),
        customer_name=(str(customer_name) if customer_name is not None else None),
        notes=(str(notes) if notes is not None else None),
        created_at=parse_timestamp(created_raw),
    )


def parse_timestamp(raw: object) -> datetime:
    """Read a stored timestamp back as an aware UTC ``datetime``.

    Naive values, including ones Excel converted into native dates, are
    taken to already be UTC.
    """

    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        log.error("Unreadable decimal cell value: %r", raw)
        raise ValueError(f"Invalid decimal value: {raw!r}") from exc

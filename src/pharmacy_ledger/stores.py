"""Catalog store and sales ledger backed by the master workbook.

Both stores keep an in-memory cache of their sheet so lookups do not rescan
the workbook, and both funnel every workbook access through a shared
:class:`WorkbookGuard`. The guard is also the commit point the coordinator
holds while it appends a sale and decrements stock, so a snapshot taken by
``list_all`` never sees one write without the other.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SaleType
from .errors import InsufficientStock, NotFound, ValidationError


IMMUTABLE_PRODUCT_FIELDS = frozenset({"product_id", "created_at"})


class WorkbookGuard:
    """Re-entrant lock serializing access to one openpyxl workbook."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> "WorkbookGuard":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


@dataclass(frozen=True)
class ProductDraft:
    """Caller-supplied fields for a new product."""

    name: Any
    category: Any
    stock: Any
    retail_price: Any
    wholesale_price: Any = None
    batch_number: Optional[str] = None
    expiry_date: Optional[str] = None


@dataclass(frozen=True)
class SaleDraft:
    """Fully priced sale ready to be appended to the ledger."""

    product_id: str
    product_name: str
    quantity: int
    sale_type: SaleType
    unit_price: Decimal
    total_amount: Decimal
    customer_name: Optional[str] = None
    notes: Optional[str] = None


def as_utc(moment: Optional[datetime]) -> datetime:
    """Normalize ``moment`` to an aware UTC datetime; ``None`` means now."""
    if moment is None:
        return datetime.now(UTC)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        log.error("Validation failed: %s is required", field)
        raise ValidationError(f"{field} is required")
    return value.strip()


def require_stock(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        log.error("Validation failed: stock %r is not an integer", value)
        raise ValidationError("Stock must be a whole number")
    if value < 0:
        log.error("Validation failed: negative stock %s", value)
        raise ValidationError("Stock cannot be negative")
    return value


def to_money(value: Any, field: str) -> Decimal:
    """Coerce ``value`` into a finite :class:`Decimal`.

    Floats go through ``str`` so ``2.1`` stays ``Decimal("2.1")``.
    """
    if value is None or isinstance(value, bool):
        log.error("Validation failed: %s is missing or invalid", field)
        raise ValidationError(f"{field} is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        log.error("Validation failed: %s=%r is not a number", field, value)
        raise ValidationError(f"{field} must be a number") from exc
    if not amount.is_finite():
        log.error("Validation failed: %s=%r is not finite", field, value)
        raise ValidationError(f"{field} must be a finite number")
    return amount


def require_retail_price(value: Any) -> Decimal:
    amount = to_money(value, "Retail price")
    if amount <= Decimal("0"):
        log.error("Validation failed: retail price %s is not positive", amount)
        raise ValidationError("Retail price must be greater than zero")
    return amount


def optional_wholesale_price(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    amount = to_money(value, "Wholesale price")
    if amount < Decimal("0"):
        log.error("Validation failed: wholesale price %s is negative", amount)
        raise ValidationError("Wholesale price cannot be negative")
    return amount


def optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def generate_product_id() -> str:
    return f"P{uuid.uuid4().hex[:12]}"


def generate_sale_id(*, when: datetime) -> str:
    """Sortable sale id: ``S{YYYYMMDDHHMMSSffffff}{6 hex}``."""
    return f"S{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"


class CatalogStore:
    """Product records held on the ``Products`` sheet."""

    def __init__(self, workbook: Workbook, guard: WorkbookGuard) -> None:
        self._workbook = workbook
        self._guard = guard
        self._cache: Optional[Dict[str, data_manager.ProductRow]] = None

    def _rows(self) -> Dict[str, data_manager.ProductRow]:
        if self._cache is None:
            self._cache = {row.product_id: row for row in data_manager.iter_products(self._workbook)}
            log.debug("Populated product cache with %d entries", len(self._cache))
        return self._cache

    def invalidate(self) -> None:
        with self._guard:
            log.debug("Invalidating product cache")
            self._cache = None

    def create(self, draft: ProductDraft, *, now: Optional[datetime] = None) -> data_manager.ProductRow:
        """Validate ``draft`` and append it as a new product.

        Raises:
            ValidationError: If name, category or retail price is missing or
                invalid, stock is negative, or wholesale price is negative.
        """
        row = data_manager.ProductRow(
            product_id=generate_product_id(),
            name=require_text(draft.name, "Product name"),
            category=require_text(draft.category, "Category"),
            stock=require_stock(draft.stock),
            retail_price=require_retail_price(draft.retail_price),
            wholesale_price=optional_wholesale_price(draft.wholesale_price),
            batch_number=optional_text(draft.batch_number),
            expiry_date=optional_text(draft.expiry_date),
            created_at=as_utc(now),
        )
        with self._guard:
            rows = self._rows()
            data_manager.append_product(self._workbook, row)
            rows[row.product_id] = row
        log.info("Created product '%s' (%s, stock=%d)", row.product_id, row.name, row.stock)
        return row

    def get(self, product_id: str) -> data_manager.ProductRow:
        with self._guard:
            row = self._rows().get(product_id)
        if row is None:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise NotFound(f"Unknown product id: {product_id}")
        return row

    def list_all(self) -> List[data_manager.ProductRow]:
        with self._guard:
            return list(self._rows().values())

    def list_by_stock_at_or_below(self, threshold: int) -> List[data_manager.ProductRow]:
        with self._guard:
            return [row for row in self._rows().values() if row.stock <= threshold]

    def search(self, query: str) -> List[data_manager.ProductRow]:
        """Products whose name or category contains ``query``, ignoring case.

        A blank query matches every product. Insertion order is kept.
        """
        needle = (query or "").strip().casefold()
        with self._guard:
            rows = list(self._rows().values())
        if not needle:
            return rows
        return [row for row in rows if needle in row.name.casefold() or needle in row.category.casefold()]

    def update(self, product_id: str, fields: Mapping[str, Any]) -> data_manager.ProductRow:
        """Merge ``fields`` into the product and persist the changed cells.

        Raises:
            NotFound: If ``product_id`` is unknown.
            ValidationError: If a field is unknown, immutable, or its value
                breaks a product invariant.
        """
        changes = self._coerce_changes(fields)
        with self._guard:
            current = self.get(product_id)
            updated = replace(current, **changes)
            self._write(current, updated)
        log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(changes)) or "-")
        return updated

    def adjust_stock(self, product_id: str, delta: int) -> data_manager.ProductRow:
        """Add ``delta`` (negative to decrement) to the product's stock.

        Raises:
            NotFound: If ``product_id`` is unknown.
            InsufficientStock: If the result would drop below zero.
        """
        with self._guard:
            current = self.get(product_id)
            new_stock = current.stock + delta
            if new_stock < 0:
                log.warning(
                    "Stock adjustment rejected for '%s': available=%d delta=%d",
                    product_id,
                    current.stock,
                    delta,
                )
                raise InsufficientStock(product_id, available=current.stock, requested=-delta)
            updated = replace(current, stock=new_stock)
            self._write(current, updated)
        log.debug("Adjusted stock for '%s': %d -> %d", product_id, current.stock, new_stock)
        return updated

    def delete(self, product_id: str) -> None:
        with self._guard:
            self.get(product_id)
            try:
                data_manager.delete_product(self._workbook, product_id)
            finally:
                self._cache = None
        log.info("Deleted product '%s'", product_id)

    def _write(self, current: data_manager.ProductRow, updated: data_manager.ProductRow) -> None:
        field_values = {
            column: getattr(updated, attr)
            for attr, column in data_manager.PRODUCT_FIELD_COLUMNS.items()
            if getattr(updated, attr) != getattr(current, attr)
        }
        if not field_values:
            return
        try:
            data_manager.update_product(self._workbook, updated.product_id, field_values=field_values)
        except Exception:
            # Cells may be half written; rebuild from the sheet on next read.
            self._cache = None
            raise
        self._rows()[updated.product_id] = updated

    @staticmethod
    def _coerce_changes(fields: Mapping[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for field, value in fields.items():
            if field in IMMUTABLE_PRODUCT_FIELDS:
                log.error("Attempted to modify immutable product field '%s'", field)
                raise ValidationError(f"Field '{field}' cannot be modified")
            if field not in data_manager.PRODUCT_FIELD_COLUMNS:
                log.error("Attempted to modify unknown product field '%s'", field)
                raise ValidationError(f"Unknown product field: {field}")
            if field == "name":
                changes[field] = require_text(value, "Product name")
            elif field == "category":
                changes[field] = require_text(value, "Category")
            elif field == "stock":
                changes[field] = require_stock(value)
            elif field == "retail_price":
                changes[field] = require_retail_price(value)
            elif field == "wholesale_price":
                changes[field] = optional_wholesale_price(value)
            else:
                changes[field] = optional_text(value)
        return changes


class SalesLedger:
    """Append-only sale records held on the ``Sales`` sheet."""

    def __init__(self, workbook: Workbook, guard: WorkbookGuard) -> None:
        self._workbook = workbook
        self._guard = guard
        self._cache: Optional[List[data_manager.SaleRow]] = None
        self._by_id: Dict[str, data_manager.SaleRow] = {}

    def _rows(self) -> List[data_manager.SaleRow]:
        if self._cache is None:
            self._cache = list(data_manager.iter_sales(self._workbook))
            self._by_id = {row.sale_id: row for row in self._cache}
            log.debug("Populated sales cache with %d entries", len(self._cache))
        return self._cache

    def invalidate(self) -> None:
        with self._guard:
            self._cache = None
            self._by_id = {}

    def append(self, draft: SaleDraft, *, now: Optional[datetime] = None) -> data_manager.SaleRow:
        """Stamp ``draft`` with an id and creation time and append it."""
        if isinstance(draft.quantity, bool) or not isinstance(draft.quantity, int) or draft.quantity <= 0:
            log.error("Sale quantity validation failed: %r", draft.quantity)
            raise ValidationError("Quantity must be a positive whole number")
        created_at = as_utc(now)
        row = data_manager.SaleRow(
            sale_id=generate_sale_id(when=created_at),
            product_id=draft.product_id,
            product_name=draft.product_name,
            quantity=draft.quantity,
            sale_type=SaleType(draft.sale_type).value,
            unit_price=draft.unit_price,
            total_amount=draft.total_amount,
            customer_name=optional_text(draft.customer_name),
            notes=optional_text(draft.notes),
            created_at=created_at,
        )
        with self._guard:
            rows = self._rows()
            data_manager.append_sale(self._workbook, row)
            rows.append(row)
            self._by_id[row.sale_id] = row
        log.debug("Appended sale '%s' to ledger", row.sale_id)
        return row

    def get(self, sale_id: str) -> data_manager.SaleRow:
        with self._guard:
            self._rows()
            row = self._by_id.get(sale_id)
        if row is None:
            log.warning("Sale lookup failed for id '%s'", sale_id)
            raise NotFound(f"Unknown sale id: {sale_id}")
        return row

    def list_all(self) -> List[data_manager.SaleRow]:
        """Every sale, newest ``created_at`` first (later appends win ties)."""
        with self._guard:
            snapshot = list(self._rows())
        snapshot.reverse()
        return sorted(snapshot, key=lambda row: row.created_at, reverse=True)

    def list_in_range(self, start: datetime, end: datetime) -> List[data_manager.SaleRow]:
        """Sales with ``start <= created_at <= end``, newest first."""
        start_utc, end_utc = as_utc(start), as_utc(end)
        if start_utc > end_utc:
            log.error("Invalid sales range: %s > %s", start_utc, end_utc)
            raise ValidationError("Range start must not be after range end")
        return [row for row in self.list_all() if start_utc <= row.created_at <= end_utc]

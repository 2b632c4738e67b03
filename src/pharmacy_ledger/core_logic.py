"""Business logic layer for the pharmacy ledger.

This module is the engine the UI or API layer calls. It owns the runtime
context (settings, workbook, stores and lock table), coordinates the sale
transaction so the ledger and the catalog never disagree, and feeds
consistent snapshots into :mod:`pharmacy_ledger.analytics`.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple, Union

from openpyxl.workbook import Workbook

from . import analytics, data_manager, log
from .concurrency import KeyedLockTable, run_with_retry
from .constants import EXPECTED_SCHEMA_VERSION, SaleType, SheetName
from .errors import InsufficientStock, LedgerError, PartialFailure, ValidationError
from .stores import CatalogStore, ProductDraft, SalesLedger, SaleDraft, WorkbookGuard, as_utc


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and stores used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    guard: WorkbookGuard
    catalog: CatalogStore
    ledger: SalesLedger
    locks: KeyedLockTable = field(default_factory=KeyedLockTable, repr=False, compare=False)
    pending_reconciliation: Set[str] = field(default_factory=set, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale."""

    product_id: str
    quantity: int
    sale_type: Union[SaleType, str]
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as aware UTC, or the current UTC time when ``None``."""

    return as_utc(candidate) if candidate is not None else datetime.now(UTC)


def create_runtime_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Wire stores around an already opened (or freshly built) workbook.

    Raises:
        RuntimeError: If the workbook lacks one of the managed sheets.
    """
    missing = [sheet.value for sheet in SheetName if sheet.value not in workbook.sheetnames]
    if missing:
        log.error("Workbook is missing sheets: %s", ", ".join(missing))
        raise RuntimeError(f"Workbook is missing sheets: {', '.join(missing)}")
    guard = WorkbookGuard()
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        guard=guard,
        catalog=CatalogStore(workbook, guard),
        ledger=SalesLedger(workbook, guard),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Resolves ``config.ini``, parses settings, and opens the workbook that
    stores the catalog and the ledger.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return create_runtime_context(settings, workbook)


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


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured data file.

    The save runs under the workbook guard so it captures a committed state.
    """
    with context.guard:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved edits and caches."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return create_runtime_context(context.settings, workbook)


# ---------------------------------------------------------------------------
# Catalog operations
# ---------------------------------------------------------------------------


def create_product(context: RuntimeContext, draft: ProductDraft, *, timestamp: Optional[datetime] = None) -> data_manager.ProductRow:
    """Validate ``draft`` and add it to the catalog.

    Raises:
        ValidationError: If name, category or retail price is missing or
            invalid, or stock is negative.
    """
    return context.catalog.create(draft, now=_resolve_timestamp(timestamp))


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    return context.catalog.get(product_id)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    return context.catalog.list_all()


def search_products(context: RuntimeContext, query: str) -> List[data_manager.ProductRow]:
    """Products whose name or category contains ``query`` (case-insensitive)."""
    return context.catalog.search(query)


@contextmanager
def _hold_product(context: RuntimeContext, product_id: str) -> Iterator[None]:
    # Unknown ids fail before a lock is created for them.
    context.catalog.get(product_id)
    with context.locks.hold(product_id):
        yield


def update_product(context: RuntimeContext, product_id: str, fields: Mapping[str, Any]) -> data_manager.ProductRow:
    """Merge ``fields`` into an existing product.

    Holds the product's lock so an edit to ``stock`` cannot interleave with a
    sale's check-then-decrement on the same product.

    Raises:
        NotFound: If ``product_id`` is unknown.
        ValidationError: If a field is unknown, immutable or invalid.
    """
    with _hold_product(context, product_id):
        return context.catalog.update(product_id, fields)


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product from the catalog; its sales stay in the ledger."""
    with _hold_product(context, product_id):
        context.catalog.delete(product_id)
        context.locks.discard(product_id)


def low_stock_products(context: RuntimeContext, threshold: Optional[int] = None) -> List[data_manager.ProductRow]:
    limit = context.settings.low_stock_threshold if threshold is None else threshold
    return context.catalog.list_by_stock_at_or_below(limit)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a sale quantity is a strictly positive whole number.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` or is zero or
            negative. Booleans are rejected even though they subclass ``int``.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a positive whole number")
    return quantity


def require_sale_type(sale_type: Any) -> SaleType:
    try:
        return SaleType(sale_type)
    except ValueError as exc:
        log.error("Unsupported sale type provided: %r", sale_type)
        raise ValidationError(f"Unsupported sale type: {sale_type}") from exc


def resolve_unit_price(product: data_manager.ProductRow, sale_type: SaleType) -> Decimal:
    """Pick the price list for ``sale_type``.

    A product without a wholesale price sells wholesale at zero.
    """
    if sale_type is SaleType.RETAIL:
        return product.retail_price
    if product.wholesale_price is None:
        log.warning("Product '%s' has no wholesale price; charging 0", product.product_id)
        return Decimal("0")
    return product.wholesale_price


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate a sale, append it to the ledger and decrement stock.

    The whole check-then-write sequence runs under the product's lock, so two
    concurrent sales against one product cannot both pass the stock check.
    The append and the decrement run together under the workbook guard, so a
    snapshot reader sees both or neither. A failing decrement is retried; if
    it still cannot be applied the sale stays recorded, its id is queued in
    ``context.pending_reconciliation`` and :class:`PartialFailure` is raised.

    Args:
        context (RuntimeContext): Runtime context providing the stores.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: The committed sale.

    Raises:
        NotFound: If the product does not exist.
        ValidationError: If quantity or sale type is invalid.
        InsufficientStock: If quantity exceeds the product's stock less the
            units held by sales awaiting reconciliation.
        PartialFailure: If the sale was recorded but stock could not be
            decremented.
    """
    with _hold_product(context, command.product_id):
        product = context.catalog.get(command.product_id)
        quantity = require_positive_quantity(command.quantity)
        sale_type = require_sale_type(command.sale_type)
        available = product.stock - pending_quantity(context, product.product_id)
        if quantity > available:
            log.warning(
                "Sale rejected for '%s': requested %d, available %d",
                product.product_id,
                quantity,
                available,
            )
            raise InsufficientStock(product.product_id, available=max(available, 0), requested=quantity)

        unit_price = resolve_unit_price(product, sale_type)
        draft = SaleDraft(
            product_id=product.product_id,
            product_name=product.name,
            quantity=quantity,
            sale_type=sale_type,
            unit_price=unit_price,
            total_amount=unit_price * quantity,
            customer_name=command.customer_name,
            notes=command.notes,
        )

        with context.guard:
            sale = context.ledger.append(draft, now=_resolve_timestamp(command.timestamp))
            _apply_sale_decrement(context, sale)

    log.info(
        "Recorded %s sale '%s' for product '%s' (quantity=%d, total=%s)",
        sale.sale_type,
        sale.sale_id,
        sale.product_id,
        sale.quantity,
        sale.total_amount,
    )
    return sale


def _apply_sale_decrement(context: RuntimeContext, sale: data_manager.SaleRow) -> None:
    try:
        run_with_retry(
            lambda: context.catalog.adjust_stock(sale.product_id, -sale.quantity),
            attempts=context.settings.stock_write_attempts,
            backoff_base=context.settings.stock_write_backoff,
            give_up_on=(LedgerError,),
        )
    except Exception as exc:
        context.pending_reconciliation.add(sale.sale_id)
        log.error(
            "Sale '%s' recorded but stock decrement for '%s' failed: %s",
            sale.sale_id,
            sale.product_id,
            exc,
        )
        raise PartialFailure(sale.sale_id) from exc


def pending_quantity(context: RuntimeContext, product_id: str) -> int:
    """Units of ``product_id`` sold by sales still awaiting reconciliation.

    Those units are gone from the shelf even though the catalog stock still
    counts them, so the sale check subtracts them from the available stock.
    """
    with context.guard:
        pending = list(context.pending_reconciliation)
        sales = [context.ledger.get(sale_id) for sale_id in pending]
    return sum(sale.quantity for sale in sales if sale.product_id == product_id)


def reconcile_sale(context: RuntimeContext, sale_id: str) -> data_manager.ProductRow:
    """Apply the missing stock decrement for a sale left by a partial failure.

    Raises:
        NotFound: If the sale or its product no longer exists.
        ValidationError: If the sale is not awaiting reconciliation.
        InsufficientStock: If current stock cannot absorb the decrement.
    """
    sale = context.ledger.get(sale_id)
    with _hold_product(context, sale.product_id):
        with context.guard:
            if sale_id not in context.pending_reconciliation:
                log.warning("Sale '%s' is not awaiting reconciliation", sale_id)
                raise ValidationError(f"Sale '{sale_id}' is not awaiting reconciliation")
            product = context.catalog.adjust_stock(sale.product_id, -sale.quantity)
            context.pending_reconciliation.discard(sale_id)
    log.info("Reconciled sale '%s'; stock for '%s' is now %d", sale_id, product.product_id, product.stock)
    return product


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Every recorded sale, newest first."""
    return context.ledger.list_all()


def list_sales_in_range(context: RuntimeContext, start: datetime, end: datetime) -> List[data_manager.SaleRow]:
    return context.ledger.list_in_range(start, end)


def list_todays_sales(context: RuntimeContext, now: Optional[datetime] = None) -> List[data_manager.SaleRow]:
    """Sales made on the current calendar day in the configured timezone."""
    return analytics.todays_sales(
        context.ledger.list_all(),
        now=_resolve_timestamp(now),
        tz=context.settings.timezone,
    )


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def _snapshot(context: RuntimeContext) -> Tuple[List[data_manager.ProductRow], List[data_manager.SaleRow]]:
    # One guard acquisition so catalog and ledger reflect the same commits.
    with context.guard:
        return context.catalog.list_all(), context.ledger.list_all()


def dashboard_metrics(context: RuntimeContext, now: Optional[datetime] = None) -> analytics.DashboardMetrics:
    products, sales = _snapshot(context)
    return analytics.dashboard_metrics(
        products,
        sales,
        now=_resolve_timestamp(now),
        tz=context.settings.timezone,
        low_stock_threshold=context.settings.low_stock_threshold,
    )


def sales_analytics(
    context: RuntimeContext,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> analytics.SalesAnalytics:
    """Revenue and sale count over a trailing window.

    Raises:
        ValidationError: If ``window_days`` is zero or negative.
    """
    days = context.settings.default_window_days if window_days is None else window_days
    return analytics.sales_analytics(context.ledger.list_all(), days, now=_resolve_timestamp(now))


def top_selling_products(context: RuntimeContext, limit: Optional[int] = None) -> List[analytics.TopSeller]:
    count = context.settings.top_sellers_limit if limit is None else limit
    return analytics.top_selling_products(context.ledger.list_all(), count)


def sales_report(
    context: RuntimeContext,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> analytics.WindowReport:
    """Windowed analytics, top sellers and low stock from one snapshot."""
    products, sales = _snapshot(context)
    return analytics.window_report(
        products,
        sales,
        now=_resolve_timestamp(now),
        window_days=context.settings.default_window_days if window_days is None else window_days,
        top_limit=context.settings.top_sellers_limit,
        low_stock_threshold=context.settings.low_stock_threshold,
    )

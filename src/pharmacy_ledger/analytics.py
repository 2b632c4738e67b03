"""Read-only analytics over catalog and ledger snapshots.

Every function here is pure: it takes lists of
:class:`~pharmacy_ledger.data_manager.ProductRow` and
:class:`~pharmacy_ledger.data_manager.SaleRow`, never touches the workbook,
and never mutates its inputs. Thresholds, windows and the reference "now"
are explicit parameters; the engine fills them from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence

from . import log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, DEFAULT_TOP_SELLERS_LIMIT
from .data_manager import ProductRow, SaleRow
from .errors import ValidationError
from .stores import as_utc


@dataclass(frozen=True)
class DashboardMetrics:
    """Headline figures for the landing dashboard."""

    total_products: int
    todays_revenue: Decimal
    todays_sales_count: int
    low_stock_count: int


@dataclass(frozen=True)
class SalesAnalytics:
    """Totals for the sales inside one trailing window."""

    window_days: int
    start: datetime
    end: datetime
    total_revenue: Decimal
    total_sales: int
    average_daily_revenue: Decimal
    sales: List[SaleRow] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class TopSeller:
    """All-time quantity and revenue for one product name."""

    product_name: str
    total_quantity: int
    total_revenue: Decimal


@dataclass(frozen=True)
class WindowReport:
    """Everything the reports view shows for one window."""

    analytics: SalesAnalytics
    top_sellers: List[TopSeller]
    low_stock: List[ProductRow]


def _sum_amounts(sales: Iterable[SaleRow]) -> Decimal:
    return sum((sale.total_amount for sale in sales), Decimal("0"))


def require_window_days(window_days: object) -> int:
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days <= 0:
        log.error("Analytics window validation failed: %r", window_days)
        raise ValidationError("Window must be a positive number of days")
    return window_days


def todays_sales(sales: Sequence[SaleRow], *, now: datetime, tz: tzinfo) -> List[SaleRow]:
    """Sales whose ``created_at`` falls on the calendar day of ``now`` in ``tz``.

    A naive ``now`` is taken to be UTC.
    """
    today = as_utc(now).astimezone(tz).date()
    return [sale for sale in sales if sale.created_at.astimezone(tz).date() == today]


def sales_in_window(sales: Sequence[SaleRow], start: datetime, end: datetime) -> List[SaleRow]:
    """Sales with ``start <= created_at <= end``, input order preserved."""
    start, end = as_utc(start), as_utc(end)
    return [sale for sale in sales if start <= sale.created_at <= end]


def low_stock(products: Sequence[ProductRow], threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> List[ProductRow]:
    """Products at or below ``threshold``, in the order they were given."""
    return [product for product in products if product.stock <= threshold]


def dashboard_metrics(
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    *,
    now: datetime,
    tz: tzinfo,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
) -> DashboardMetrics:
    today = todays_sales(sales, now=now, tz=tz)
    return DashboardMetrics(
        total_products=len(products),
        todays_revenue=_sum_amounts(today),
        todays_sales_count=len(today),
        low_stock_count=len(low_stock(products, low_stock_threshold)),
    )


def sales_analytics(sales: Sequence[SaleRow], window_days: int, *, now: datetime) -> SalesAnalytics:
    """Aggregate the sales created within ``window_days`` before ``now``.

    The window is ``[now - window_days, now]`` with both ends inclusive, and
    the daily average divides by the full window length, including days
    without sales. A naive ``now`` is read as UTC, as the stores read it.

    Raises:
        ValidationError: If ``window_days`` is not a positive integer.
    """
    days = require_window_days(window_days)
    now = as_utc(now)
    start = now - timedelta(days=days)
    matching = sales_in_window(sales, start, now)
    total_revenue = _sum_amounts(matching)
    return SalesAnalytics(
        window_days=days,
        start=start,
        end=now,
        total_revenue=total_revenue,
        total_sales=len(matching),
        average_daily_revenue=total_revenue / Decimal(days),
        sales=matching,
    )


def top_selling_products(sales: Sequence[SaleRow], limit: int = DEFAULT_TOP_SELLERS_LIMIT) -> List[TopSeller]:
    """Group sales by product name and rank by units sold.

    Names keep the order in which they were first seen, and the sort is
    stable, so equal quantities stay in discovery order. Grouping is by the
    name snapshot on each sale, not by product id.
    """
    if limit <= 0:
        return []
    quantities: Dict[str, int] = {}
    revenues: Dict[str, Decimal] = {}
    for sale in sales:
        quantities[sale.product_name] = quantities.get(sale.product_name, 0) + sale.quantity
        revenues[sale.product_name] = revenues.get(sale.product_name, Decimal("0")) + sale.total_amount
    ranked = sorted(
        (TopSeller(name, quantities[name], revenues[name]) for name in quantities),
        key=lambda entry: entry.total_quantity,
        reverse=True,
    )
    return ranked[:limit]


def window_report(
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    *,
    now: datetime,
    window_days: int,
    top_limit: int = DEFAULT_TOP_SELLERS_LIMIT,
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
) -> WindowReport:
    return WindowReport(
        analytics=sales_analytics(sales, window_days, now=now),
        top_sellers=top_selling_products(sales, top_limit),
        low_stock=low_stock(products, low_stock_threshold),
    )

"""Unit tests for the business logic layer over an in-memory workbook."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from pharmacy_ledger import core_logic, data_manager
from pharmacy_ledger.constants import SaleType
from pharmacy_ledger.errors import InsufficientStock, NotFound, PartialFailure, ValidationError
from pharmacy_ledger.setup_excel import build_master_workbook

from conftest import FIXED_NOW


def _sell(context, product, quantity=1, sale_type=SaleType.RETAIL, **kwargs):
    command = core_logic.SaleCommand(
        product_id=product.product_id,
        quantity=quantity,
        sale_type=sale_type,
        timestamp=kwargs.pop("timestamp", FIXED_NOW),
        **kwargs,
    )
    return core_logic.record_sale(context, command)


def _failing_update(times: int):
    """Wrap ``data_manager.update_product`` so its first ``times`` calls fail."""

    real = data_manager.update_product
    calls = {"count": 0}

    def _update(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] <= times:
            raise OSError("workbook write failed")
        return real(*args, **kwargs)

    return _update, calls


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_create_runtime_context_requires_managed_sheets(settings):
    workbook = build_master_workbook()
    workbook.remove(workbook["Sales"])
    with pytest.raises(RuntimeError):
        core_logic.create_runtime_context(settings, workbook)


def test_ensure_schema_version_rejects_mismatch(context):
    bad_context = replace(context, settings=replace(context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    core_logic.ensure_schema_version(context)


# ---------------------------------------------------------------------------
# Catalog operations
# ---------------------------------------------------------------------------


def test_create_and_list_products(context, make_product):
    product = make_product()

    assert core_logic.list_products(context) == [product]
    assert core_logic.get_product(context, product.product_id) == product
    assert product.created_at == FIXED_NOW


def test_create_product_uses_clock_when_no_timestamp(context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2025, 6, 1, 8, 0, tzinfo=UTC))
    product = core_logic.create_product(
        context,
        core_logic.ProductDraft(name="Vitamin C", category="Tablets", stock=5, retail_price="1.00"),
    )
    assert product.created_at == moment


def test_update_product_changes_fields(context, make_product):
    product = make_product()
    updated = core_logic.update_product(context, product.product_id, {"stock": 99, "expiry_date": "2027-01-01"})

    assert updated.stock == 99
    assert core_logic.get_product(context, product.product_id).expiry_date == "2027-01-01"


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("para", ["Paracetamol 500mg"]),
        ("SYRUP", ["Cough Relief"]),
        ("  tab ", ["Paracetamol 500mg", "Ibuprofen 200mg"]),
        ("", ["Paracetamol 500mg", "Ibuprofen 200mg", "Cough Relief"]),
        ("insulin", []),
    ],
)
def test_search_products_matches_name_or_category(context, make_product, query, expected):
    make_product(name="Paracetamol 500mg", category="Tablets")
    make_product(name="Ibuprofen 200mg", category="Tablets")
    make_product(name="Cough Relief", category="Syrups")

    assert [p.name for p in core_logic.search_products(context, query)] == expected


def test_lookups_of_unknown_products_leave_no_locks(context):
    for index in range(25):
        with pytest.raises(NotFound):
            core_logic.record_sale(
                context,
                core_logic.SaleCommand(product_id=f"missing-{index}", quantity=1, sale_type=SaleType.RETAIL),
            )
        with pytest.raises(NotFound):
            core_logic.update_product(context, f"missing-{index}", {"stock": 1})

    assert len(context.locks) == 0


def test_delete_product_drops_its_lock(context, make_product):
    product = make_product()
    _sell(context, product, 1)
    assert len(context.locks) == 1

    core_logic.delete_product(context, product.product_id)

    assert len(context.locks) == 0
    with pytest.raises(NotFound):
        _sell(context, product, 1)
    assert len(context.locks) == 0


def test_low_stock_products_uses_configured_threshold(context, make_product):
    low = make_product(name="Low", stock=10)
    make_product(name="Fine", stock=11)

    assert core_logic.low_stock_products(context) == [low]
    assert [p.name for p in core_logic.low_stock_products(context, 11)] == ["Low", "Fine"]


# ---------------------------------------------------------------------------
# Sale coordination
# ---------------------------------------------------------------------------


def test_retail_sale_records_and_decrements(context, make_product):
    product = make_product(stock=20, retail_price=Decimal("2.50"))

    sale = _sell(context, product, 3, customer_name="Akosua", notes="walk-in")

    assert sale.unit_price == Decimal("2.50")
    assert sale.total_amount == Decimal("7.50")
    assert sale.total_amount == sale.quantity * sale.unit_price
    assert sale.product_name == product.name
    assert sale.sale_type == "retail"
    assert sale.customer_name == "Akosua"
    assert sale.created_at == FIXED_NOW
    assert core_logic.get_product(context, product.product_id).stock == 17
    assert core_logic.list_sales(context) == [sale]


def test_wholesale_sale_uses_wholesale_price(context, make_product):
    product = make_product(wholesale_price=Decimal("1.80"))
    sale = _sell(context, product, 4, SaleType.WHOLESALE)
    assert sale.unit_price == Decimal("1.80")
    assert sale.total_amount == Decimal("7.20")


def test_wholesale_sale_without_wholesale_price_is_free(context, make_product):
    product = make_product(wholesale_price=None)
    sale = _sell(context, product, 2, "wholesale")
    assert sale.unit_price == Decimal("0")
    assert sale.total_amount == Decimal("0")
    assert core_logic.get_product(context, product.product_id).stock == 18


def test_sale_price_is_snapshotted(context, make_product):
    product = make_product(retail_price=Decimal("2.50"))
    sale = _sell(context, product, 1)

    core_logic.update_product(context, product.product_id, {"retail_price": "9.99", "name": "Renamed"})

    (stored,) = core_logic.list_sales(context)
    assert stored == sale
    assert stored.unit_price == Decimal("2.50")
    assert stored.product_name == "Paracetamol 500mg"


def test_sales_survive_product_deletion(context, make_product):
    product = make_product()
    sale = _sell(context, product, 1)

    core_logic.delete_product(context, product.product_id)

    assert core_logic.list_products(context) == []
    assert core_logic.list_sales(context) == [sale]


def test_sale_for_unknown_product_raises_not_found(context):
    command = core_logic.SaleCommand(product_id="missing", quantity=1, sale_type=SaleType.RETAIL)
    with pytest.raises(NotFound):
        core_logic.record_sale(context, command)
    assert core_logic.list_sales(context) == []


@pytest.mark.parametrize(
    ("quantity", "sale_type"),
    [
        (0, SaleType.RETAIL),
        (-1, SaleType.RETAIL),
        (1.5, SaleType.RETAIL),
        (True, SaleType.RETAIL),
        ("2", SaleType.RETAIL),
        (1, "credit"),
        (1, None),
    ],
)
def test_invalid_sale_raises_validation_error(context, make_product, quantity, sale_type):
    product = make_product(stock=5)
    with pytest.raises(ValidationError):
        _sell(context, product, quantity, sale_type)
    assert core_logic.get_product(context, product.product_id).stock == 5
    assert core_logic.list_sales(context) == []


def test_oversell_raises_insufficient_stock_and_changes_nothing(context, make_product):
    product = make_product(stock=3)

    with pytest.raises(InsufficientStock) as excinfo:
        _sell(context, product, 4)

    assert excinfo.value.available == 3
    assert excinfo.value.requested == 4
    assert "Only 3 units available" in str(excinfo.value)
    assert core_logic.get_product(context, product.product_id).stock == 3
    assert core_logic.list_sales(context) == []


def test_selling_entire_stock_reaches_zero(context, make_product):
    product = make_product(stock=3)
    _sell(context, product, 3)
    assert core_logic.get_product(context, product.product_id).stock == 0
    with pytest.raises(InsufficientStock):
        _sell(context, product, 1)


def test_append_failure_propagates_and_leaves_stock(context, make_product, monkeypatch):
    product = make_product(stock=5)

    def broken_append(*args, **kwargs):
        raise OSError("sheet locked")

    monkeypatch.setattr(data_manager, "append_sale", broken_append)
    with pytest.raises(OSError):
        _sell(context, product, 1)
    assert core_logic.get_product(context, product.product_id).stock == 5


def test_stock_write_is_retried(context, make_product, monkeypatch):
    product = make_product(stock=5)
    failing, calls = _failing_update(times=2)
    monkeypatch.setattr(data_manager, "update_product", failing)

    sale = _sell(context, product, 2)

    assert calls["count"] == 3
    assert core_logic.get_product(context, product.product_id).stock == 3
    assert sale.sale_id not in context.pending_reconciliation


def test_exhausted_retries_raise_partial_failure(context, make_product, monkeypatch):
    product = make_product(stock=5)
    failing, calls = _failing_update(times=10)
    monkeypatch.setattr(data_manager, "update_product", failing)

    with pytest.raises(PartialFailure) as excinfo:
        _sell(context, product, 2)

    assert calls["count"] == context.settings.stock_write_attempts
    sale_id = excinfo.value.sale_id
    assert isinstance(excinfo.value.__cause__, OSError)
    assert [s.sale_id for s in core_logic.list_sales(context)] == [sale_id]
    assert core_logic.get_product(context, product.product_id).stock == 5
    assert context.pending_reconciliation == {sale_id}


def test_reconcile_sale_applies_compensating_decrement(context, make_product, monkeypatch):
    product = make_product(stock=5)
    failing, _ = _failing_update(times=10)
    monkeypatch.setattr(data_manager, "update_product", failing)
    with pytest.raises(PartialFailure) as excinfo:
        _sell(context, product, 2)
    monkeypatch.undo()

    reconciled = core_logic.reconcile_sale(context, excinfo.value.sale_id)

    assert reconciled.stock == 3
    assert context.pending_reconciliation == set()
    with pytest.raises(ValidationError):
        core_logic.reconcile_sale(context, excinfo.value.sale_id)


def test_pending_sale_units_are_not_sold_again(context, make_product, monkeypatch):
    product = make_product(stock=5)
    failing, _ = _failing_update(times=10)
    monkeypatch.setattr(data_manager, "update_product", failing)
    with pytest.raises(PartialFailure) as excinfo:
        _sell(context, product, 2)
    monkeypatch.undo()

    assert core_logic.pending_quantity(context, product.product_id) == 2
    with pytest.raises(InsufficientStock) as rejected:
        _sell(context, product, 5)
    assert rejected.value.available == 3
    assert len(core_logic.list_sales(context)) == 1

    _sell(context, product, 3)
    reconciled = core_logic.reconcile_sale(context, excinfo.value.sale_id)

    assert reconciled.stock == 0
    assert sum(sale.quantity for sale in core_logic.list_sales(context)) == 5
    assert core_logic.pending_quantity(context, product.product_id) == 0


def test_pending_sales_only_hold_their_own_product(context, make_product, monkeypatch):
    held = make_product(name="Held", stock=4)
    other = make_product(name="Other", stock=4)
    failing, _ = _failing_update(times=10)
    monkeypatch.setattr(data_manager, "update_product", failing)
    with pytest.raises(PartialFailure):
        _sell(context, held, 4)
    monkeypatch.undo()

    assert _sell(context, other, 4).quantity == 4
    with pytest.raises(InsufficientStock):
        _sell(context, held, 1)


def test_reconcile_rejects_sales_that_are_not_pending(context, make_product):
    sale = _sell(context, make_product(), 1)
    with pytest.raises(ValidationError):
        core_logic.reconcile_sale(context, sale.sale_id)
    with pytest.raises(NotFound):
        core_logic.reconcile_sale(context, "S-unknown")


def test_stock_stays_non_negative_over_many_sales(context, make_product):
    product = make_product(stock=7)
    outcomes = []
    for quantity in [2, 3, 4, 1, 1, 5, 1]:
        try:
            _sell(context, product, quantity)
            outcomes.append(quantity)
        except InsufficientStock:
            outcomes.append(0)
        assert core_logic.get_product(context, product.product_id).stock >= 0

    assert outcomes == [2, 3, 0, 1, 1, 0, 0]
    assert core_logic.get_product(context, product.product_id).stock == 0


# ---------------------------------------------------------------------------
# Sales queries and analytics wiring
# ---------------------------------------------------------------------------


def test_list_todays_sales_uses_calendar_day(context, make_product):
    product = make_product(stock=50)
    today_early = _sell(context, product, timestamp=FIXED_NOW.replace(hour=0, minute=0))
    _sell(context, product, timestamp=FIXED_NOW.replace(hour=0, minute=0) - timedelta(seconds=1))

    assert core_logic.list_todays_sales(context, now=FIXED_NOW) == [today_early]


def test_list_sales_in_range(context, make_product):
    product = make_product(stock=50)
    inside = _sell(context, product, timestamp=FIXED_NOW - timedelta(days=2))
    _sell(context, product, timestamp=FIXED_NOW - timedelta(days=10))

    result = core_logic.list_sales_in_range(context, FIXED_NOW - timedelta(days=3), FIXED_NOW)

    assert result == [inside]


def test_dashboard_metrics_reflects_catalog_and_today(context, make_product):
    low = make_product(name="Low", stock=5)
    make_product(name="Plenty", stock=50, retail_price=Decimal("1.10"))
    _sell(context, low, 2, timestamp=FIXED_NOW)
    _sell(context, low, 1, timestamp=FIXED_NOW - timedelta(days=1))

    metrics = core_logic.dashboard_metrics(context, now=FIXED_NOW)

    assert metrics.total_products == 2
    assert metrics.todays_sales_count == 1
    assert metrics.todays_revenue == Decimal("5.00")
    assert metrics.low_stock_count == 1


def test_sales_analytics_defaults_to_configured_window(context, make_product):
    product = make_product(stock=50, retail_price=Decimal("3.00"))
    _sell(context, product, 10, timestamp=FIXED_NOW - timedelta(days=29))
    _sell(context, product, 1, timestamp=FIXED_NOW - timedelta(days=31))

    result = core_logic.sales_analytics(context, now=FIXED_NOW)

    assert result.window_days == 30
    assert result.total_sales == 1
    assert result.total_revenue == Decimal("30.00")
    assert result.average_daily_revenue == Decimal("1")


def test_sales_analytics_rejects_zero_window(context):
    with pytest.raises(ValidationError):
        core_logic.sales_analytics(context, 0, now=FIXED_NOW)


def test_top_selling_products_uses_configured_limit(context, make_product):
    for index in range(7):
        product = make_product(name=f"Item {index}", stock=50)
        _sell(context, product, index + 1)

    top = core_logic.top_selling_products(context)

    assert [entry.product_name for entry in top] == ["Item 6", "Item 5", "Item 4", "Item 3", "Item 2"]


def test_sales_report_bundles_window_top_and_low_stock(context, make_product):
    product = make_product(stock=12)
    _sell(context, product, 3)

    report = core_logic.sales_report(context, 7, now=FIXED_NOW)

    assert report.analytics.window_days == 7
    assert report.analytics.total_sales == 1
    assert [entry.total_quantity for entry in report.top_sellers] == [3]
    assert [p.stock for p in report.low_stock] == [9]

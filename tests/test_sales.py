from datetime import date
from decimal import Decimal

import pytest

from multistock.application.schemas import SaleCreate, SaleLineCreate
from multistock.domain.errors import (
    CounterpartyNotFound, DuplicateSale, InsufficientStock, ProductNotFound, SaleAlreadyCancelled,
    ValidationError,
)


@pytest.fixture
def widget(make_product):
    return make_product(sku="WID", stock=100, cost="6.00", price="10.00")


@pytest.fixture
def buyer(make_client):
    return make_client(code="CLI-1", terms=30)


class TestCreateSale:
    def test_sale_decrements_stock_through_the_ledger(self, sales, ledger, catalog, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 5)])

        assert sale.sale_number == "SALE-20250115-0001"
        assert sale.sale_date == date(2025, 1, 15)
        assert sale.due_date == date(2025, 2, 14)
        assert sale.subtotal == Decimal("50.00")
        assert sale.total_amount == Decimal("50.00")
        assert catalog.get(widget.id).current_stock == 95

        movement = ledger.list_movements(product_id=widget.id)[0]
        assert movement.movement_type == "outbound"
        assert movement.reference_type == "sale"
        assert movement.reference_id == sale.id
        assert movement.cost_per_unit == Decimal("6.00")

    def test_sale_numbers_are_sequential_per_day(self, make_sale, widget, buyer):
        make_sale(buyer, [(widget, 1)])
        second = make_sale(buyer, [(widget, 1)])
        other_day = make_sale(buyer, [(widget, 1)], sale_date=date(2025, 1, 10))

        assert second.sale_number == "SALE-20250115-0002"
        assert other_day.sale_number == "SALE-20250110-0001"

    def test_explicit_duplicate_number(self, sales, widget, buyer):
        payload = SaleCreate(
            sale_number="INV-1", client_id=buyer.id, lines=[SaleLineCreate(product_id=widget.id, quantity=1)],
        )
        sales.create(payload)
        with pytest.raises(DuplicateSale):
            sales.create(payload)

    def test_totals_include_tax_and_discount(self, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 10)], tax_amount=Decimal("16.00"), discount_amount=Decimal("6.00"))
        assert sale.subtotal == Decimal("100.00")
        assert sale.total_amount == Decimal("110.00")

    def test_one_short_line_rolls_back_the_whole_sale(self, sales, ledger, catalog, make_sale, make_product, widget, buyer):
        scarce = make_product(sku="SCARCE", stock=2)
        with pytest.raises(InsufficientStock):
            make_sale(buyer, [(widget, 5), (scarce, 3)])

        assert catalog.get(widget.id).current_stock == 100
        assert catalog.get(scarce.id).current_stock == 2
        assert sales.list() == []
        assert ledger.list_movements() == []

    def test_inactive_client_is_rejected(self, counterparties, make_sale, widget, buyer):
        counterparties.deactivate(buyer.id)
        with pytest.raises(CounterpartyNotFound):
            make_sale(buyer, [(widget, 1)])

    def test_inactive_product_is_rejected(self, catalog, make_sale, widget, buyer):
        catalog.deactivate(widget.id)
        with pytest.raises(ProductNotFound):
            make_sale(buyer, [(widget, 1)])


class TestCancelSale:
    def test_cancel_returns_units_at_original_cost(self, sales, ledger, catalog, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 5)])
        cancelled = sales.cancel(sale.id, reason="customer changed mind")

        assert cancelled.cancelled is True
        assert cancelled.cancelled_reason == "customer changed mind"
        assert catalog.get(widget.id).current_stock == 100

        returned = ledger.list_movements(product_id=widget.id, reference_type="cancellation")
        assert len(returned) == 1
        assert returned[0].quantity == 5
        assert returned[0].cost_per_unit == Decimal("6.00")
        assert ledger.verify_consistency(widget.id).consistent is True

    def test_cancel_twice(self, sales, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 1)])
        sales.cancel(sale.id)
        with pytest.raises(SaleAlreadyCancelled):
            sales.cancel(sale.id)

    def test_cancelled_sale_payment_is_frozen(self, sales, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 1)])
        sales.cancel(sale.id)
        with pytest.raises(SaleAlreadyCancelled):
            sales.update_payment_status(sale.id, "paid")


class TestQueries:
    def test_payment_status_update(self, sales, make_sale, widget, buyer):
        sale = make_sale(buyer, [(widget, 1)])
        updated = sales.update_payment_status(sale.id, "paid")
        assert updated.payment_status == "paid"
        assert sales.get(sale.id).payment_status == "paid"

    def test_get_includes_lines(self, sales, make_sale, make_product, widget, buyer):
        gadget = make_product(sku="GAD", stock=10, price="4.00")
        sale = make_sale(buyer, [(widget, 2), (gadget, 3)])

        loaded = sales.get(sale.id)
        assert sorted((line.product_id, line.quantity) for line in loaded.lines) == sorted(
            [(widget.id, 2), (gadget.id, 3)]
        )
        assert loaded.total_amount == Decimal("32.00")

    def test_list_filters(self, sales, make_sale, make_client, widget, buyer):
        other = make_client(code="CLI-2")
        make_sale(buyer, [(widget, 1)], sale_date=date(2025, 1, 1))
        make_sale(other, [(widget, 1)])
        cancelled = make_sale(buyer, [(widget, 1)])
        sales.cancel(cancelled.id)

        assert len(sales.list()) == 3
        assert len(sales.list(client_id=buyer.id)) == 2
        assert len(sales.list(include_cancelled=False)) == 2
        assert len(sales.list(date_from=date(2025, 1, 10))) == 2


class TestReports:
    @pytest.fixture
    def gadget(self, make_product):
        return make_product(sku="GAD", stock=100, cost="1.00", price="4.00")

    @pytest.fixture
    def history(self, sales, make_sale, make_client, widget, gadget, buyer):
        other = make_client(code="CLI-2")
        make_sale(buyer, [(widget, 2)], sale_date=date(2024, 12, 3), payment_status="paid")
        make_sale(other, [(widget, 1)], sale_date=date(2025, 1, 2))
        make_sale(buyer, [(gadget, 4)], sale_date=date(2025, 1, 10), payment_status="partial")
        dropped = make_sale(buyer, [(widget, 5)], sale_date=date(2025, 1, 11))
        sales.cancel(dropped.id)
        return other

    def test_stats_leave_cancelled_sales_out_of_amounts(self, sales, history):
        stats = sales.stats()

        assert stats.total_sales == 3
        assert stats.cancelled_sales == 1
        assert (stats.paid_sales, stats.pending_sales, stats.partial_sales, stats.overdue_sales) == (1, 1, 1, 0)
        assert stats.total_revenue == Decimal("46.00")
        assert stats.paid_revenue == Decimal("20.00")
        assert stats.pending_revenue == Decimal("26.00")
        assert stats.avg_sale_amount == Decimal("15.33")
        assert stats.unique_clients == 2

    def test_stats_date_range(self, sales, history):
        stats = sales.stats(date_from=date(2025, 1, 1), date_to=date(2025, 1, 5))
        assert stats.total_sales == 1
        assert stats.total_revenue == Decimal("10.00")

    def test_stats_without_sales(self, sales):
        stats = sales.stats()
        assert stats.total_sales == 0
        assert stats.avg_sale_amount == Decimal("0.00")

    def test_sales_by_month(self, sales, history):
        periods = sales.sales_by_period("month")

        assert [(p.period, p.sales_count, p.total_revenue, p.unique_clients) for p in periods] == [
            ("2024-12", 1, Decimal("20.00"), 1),
            ("2025-01", 2, Decimal("26.00"), 2),
        ]
        assert periods[1].avg_sale_amount == Decimal("13.00")

    def test_sales_by_iso_week_and_day(self, sales, history):
        assert [p.period for p in sales.sales_by_period("week")] == ["2024-W49", "2025-W01", "2025-W02"]
        days = sales.sales_by_period("day", date_from=date(2025, 1, 1))
        assert [p.period for p in days] == ["2025-01-02", "2025-01-10"]
        assert [p.period for p in sales.sales_by_period("year", limit=1)] == ["2024"]

    def test_unknown_period(self, sales):
        with pytest.raises(ValidationError):
            sales.sales_by_period("fortnight")

    def test_top_products_by_units(self, sales, history, widget, gadget):
        top = sales.top_products()

        assert [(p.sku, p.total_quantity_sold, p.total_revenue, p.sales_count) for p in top] == [
            ("GAD", 4, Decimal("16.00"), 1),
            ("WID", 3, Decimal("30.00"), 2),
        ]
        assert top[1].avg_price_per_unit == Decimal("10.00")
        assert [p.sku for p in sales.top_products(limit=1)] == ["GAD"]
        assert [p.sku for p in sales.top_products(date_to=date(2024, 12, 31))] == ["WID"]

from decimal import Decimal

import pytest

from multistock.domain.errors import InsufficientStock, ProductNotFound, ValidationError
from multistock.domain.models import MovementKind, ReferenceKind


class TestRecordMovement:
    def test_inbound_increases_stock(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        movement = ledger.record_movement(product.id, MovementKind.INBOUND, 5, unit_cost=Decimal("2.50"))

        assert movement.quantity == 5
        assert movement.previous_stock == 10
        assert movement.new_stock == 15
        assert movement.cost_per_unit == Decimal("2.50")
        assert catalog.get(product.id).current_stock == 15

    def test_outbound_is_stored_negative(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        movement = ledger.record_movement(product.id, "outbound", 4)

        assert movement.quantity == -4
        assert movement.new_stock == 6
        assert catalog.get(product.id).current_stock == 6

    def test_unit_cost_defaults_to_product_cost(self, ledger, make_product):
        product = make_product(cost="7.25")
        movement = ledger.record_movement(product.id, MovementKind.INBOUND, 1)
        assert movement.cost_per_unit == Decimal("7.25")

    def test_signed_adjustment(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        ledger.record_movement(product.id, MovementKind.ADJUSTMENT, -3, note="damaged")
        ledger.record_movement(product.id, MovementKind.ADJUSTMENT, 1)
        assert catalog.get(product.id).current_stock == 8

    def test_outbound_beyond_stock_changes_nothing(self, ledger, catalog, make_product):
        product = make_product(stock=3)
        with pytest.raises(InsufficientStock) as exc:
            ledger.record_movement(product.id, MovementKind.OUTBOUND, 5)

        assert exc.value.available == 3
        assert exc.value.requested == 5
        assert catalog.get(product.id).current_stock == 3
        assert ledger.list_movements(product_id=product.id) == []

    def test_adjustment_cannot_go_negative(self, ledger, catalog, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStock):
            ledger.record_movement(product.id, MovementKind.ADJUSTMENT, -3)
        assert catalog.get(product.id).current_stock == 2

    def test_outbound_to_exactly_zero(self, ledger, catalog, make_product):
        product = make_product(stock=5)
        ledger.record_movement(product.id, MovementKind.OUTBOUND, 5)
        assert catalog.get(product.id).current_stock == 0

    def test_zero_quantity_is_rejected(self, ledger, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            ledger.record_movement(product.id, MovementKind.INBOUND, 0)

    def test_unknown_product(self, ledger):
        with pytest.raises(ProductNotFound):
            ledger.record_movement(999, MovementKind.INBOUND, 1)

    def test_idempotency_key_replay(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        first = ledger.record_movement(product.id, MovementKind.OUTBOUND, 2, idempotency_key="order-77")
        second = ledger.record_movement(product.id, MovementKind.OUTBOUND, 2, idempotency_key="order-77")

        assert second.id == first.id
        assert catalog.get(product.id).current_stock == 8
        assert len(ledger.list_movements(product_id=product.id)) == 1

    def test_reference_is_recorded(self, ledger, make_product):
        product = make_product()
        movement = ledger.record_movement(
            product.id, MovementKind.OUTBOUND, 1, reference_kind=ReferenceKind.PURCHASE, reference_id=42,
        )
        assert movement.reference_type == "purchase"
        assert movement.reference_id == 42


class TestConsistency:
    def test_stock_matches_opening_plus_movements(self, ledger, clock, make_product):
        product = make_product(stock=20)
        for kind, qty in [("inbound", 10), ("outbound", 7), ("adjustment", -3), ("inbound", 1)]:
            clock.advance(minutes=1)
            ledger.record_movement(product.id, kind, qty)

        report = ledger.verify_consistency(product.id)
        assert report.consistent is True
        assert report.opening_stock == 20
        assert report.movement_total == 1
        assert report.current_stock == 21
        assert report.latest_new_stock == 21
        assert report.movement_count == 4

    def test_product_without_movements(self, ledger, make_product):
        product = make_product(stock=4)
        report = ledger.verify_consistency(product.id)
        assert report.consistent is True
        assert report.latest_new_stock is None

    def test_failed_movement_keeps_ledger_consistent(self, ledger, make_product):
        product = make_product(stock=5)
        ledger.record_movement(product.id, MovementKind.OUTBOUND, 2)
        with pytest.raises(InsufficientStock):
            ledger.record_movement(product.id, MovementKind.OUTBOUND, 10)
        assert ledger.verify_consistency(product.id).consistent is True


class TestSync:
    def test_sync_converges_on_external_stock(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        report = ledger.sync([{"product_id": product.id, "external_stock": 25, "cost_price": "3.10"}])

        assert report.processed == 1
        assert report.updated == 1
        assert report.movements_created == 1
        refreshed = catalog.get(product.id)
        assert refreshed.current_stock == 25
        assert refreshed.cost_price == Decimal("3.10")

        movement = ledger.list_movements(product_id=product.id)[0]
        assert movement.movement_type == "sync"
        assert movement.reference_type == "sync"
        assert movement.quantity == 15

    def test_matching_stock_creates_no_movement(self, ledger, make_product):
        product = make_product(stock=10)
        report = ledger.sync([{"product_id": product.id, "external_stock": 10}])
        assert report.updated == 0
        assert report.movements_created == 0
        assert ledger.list_movements(product_id=product.id) == []

    def test_sync_is_idempotent(self, ledger, make_product):
        product = make_product(stock=10)
        ledger.sync([{"product_id": product.id, "external_stock": 4}])
        again = ledger.sync([{"product_id": product.id, "external_stock": 4}])
        assert again.movements_created == 0
        assert len(ledger.list_movements(product_id=product.id)) == 1

    def test_negative_external_stock_is_clamped(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        report = ledger.sync([{"product_id": product.id, "external_stock": -5}])

        assert catalog.get(product.id).current_stock == 0
        assert len(report.warnings) == 1
        assert "clamped" in report.warnings[0]
        assert ledger.verify_consistency(product.id).consistent is True

    def test_bad_entry_does_not_block_others(self, ledger, catalog, make_product):
        product = make_product(stock=10)
        report = ledger.sync([
            {"product_id": 999, "external_stock": 5},
            {"product_id": product.id, "external_stock": 12},
        ])
        assert report.processed == 2
        assert report.updated == 1
        assert len(report.errors) == 1
        assert "999" in report.errors[0]
        assert catalog.get(product.id).current_stock == 12

    def test_malformed_entry_is_reported_and_batch_continues(self, ledger, catalog, make_product):
        first = make_product(sku="A", stock=10)
        second = make_product(sku="B", stock=10)
        third = make_product(sku="C", stock=10)

        report = ledger.sync([
            {"product_id": first.id, "external_stock": 7},
            {"product_id": second.id, "external_stock": 3, "cost_price": "-1"},
            {"product_id": third.id},
            "not an entry",
            {"product_id": third.id, "external_stock": 15},
        ])

        assert report.processed == 5
        assert report.updated == 2
        assert [e.split(":")[0] for e in report.errors] == ["Entry 1", "Entry 2", "Entry 3"]
        assert "cost_price" in report.errors[0]
        assert "external_stock" in report.errors[1]
        assert catalog.get(first.id).current_stock == 7
        assert catalog.get(second.id).current_stock == 10
        assert catalog.get(third.id).current_stock == 15

    def test_negative_sync_at_zero_stock_records_nothing(self, ledger, catalog, make_product):
        product = make_product(stock=0)

        movement = ledger.record_movement(product.id, MovementKind.EXTERNAL_SYNC, -4)

        assert movement is None
        assert catalog.get(product.id).current_stock == 0
        assert ledger.list_movements(product_id=product.id) == []
        assert ledger.verify_consistency(product.id).consistent is True


class TestReads:
    def test_list_is_newest_first_and_filterable(self, ledger, clock, make_product):
        first = make_product(sku="A")
        second = make_product(sku="B")
        ledger.record_movement(first.id, "inbound", 1)
        clock.advance(minutes=5)
        ledger.record_movement(second.id, "outbound", 1)
        clock.advance(minutes=5)
        ledger.record_movement(first.id, "outbound", 2)

        movements = ledger.list_movements()
        assert [m.quantity for m in movements] == [-2, -1, 1]
        assert [m.quantity for m in ledger.list_movements(product_id=first.id)] == [-2, 1]
        assert [m.quantity for m in ledger.list_movements(movement_type="outbound")] == [-2, -1]
        assert len(ledger.list_movements(limit=1)) == 1

    def test_movement_stats(self, ledger, make_product):
        product = make_product(stock=10)
        ledger.record_movement(product.id, "inbound", 5)
        ledger.record_movement(product.id, "inbound", 3)
        ledger.record_movement(product.id, "outbound", 4)

        stats = ledger.movement_stats()
        assert stats.total_movements == 3
        assert stats.products_with_movements == 1
        by_type = {s.movement_type: s for s in stats.by_type}
        assert by_type["inbound"].count == 2
        assert by_type["inbound"].total_quantity == 8
        assert by_type["outbound"].total_quantity == -4

    def test_high_movement_products(self, ledger, catalog, clock, make_product):
        stale = make_product(sku="STALE", stock=10)
        busy = make_product(sku="BUSY", stock=10)
        bulk = make_product(sku="BULK", stock=10)
        retired = make_product(sku="OLD", stock=10)
        ledger.record_movement(stale.id, "inbound", 50)
        clock.advance(days=40)

        ledger.record_movement(busy.id, "inbound", 5)
        ledger.record_movement(busy.id, "outbound", 2)
        ledger.record_movement(busy.id, "outbound", 1)
        ledger.record_movement(bulk.id, "inbound", 10)
        for _ in range(4):
            ledger.record_movement(retired.id, "inbound", 1)
        catalog.deactivate(retired.id)

        ranked = ledger.high_movement_products(days=30)

        assert [p.sku for p in ranked] == ["BUSY", "BULK"]
        top = ranked[0]
        assert top.movement_count == 3
        assert top.total_quantity_moved == 8
        assert (top.total_inbound, top.total_outbound) == (5, 3)
        assert top.avg_movement_size == Decimal("2.67")
        assert top.current_stock == 12
        assert top.last_movement_at == clock.now()
        assert [p.sku for p in ledger.high_movement_products(days=30, limit=1)] == ["BUSY"]
        assert {p.sku for p in ledger.high_movement_products(days=60)} == {"BUSY", "BULK", "STALE"}

    def test_high_movement_needs_a_positive_window(self, ledger):
        with pytest.raises(ValidationError):
            ledger.high_movement_products(days=0)

import json
import threading
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from multistock.application.channel import RedisSubscription, topic_for
from multistock.application.insights import natural_key
from multistock.application.schemas import InsightCreate
from multistock.domain.errors import InsightNotFound, InvalidStatusTransition, ValidationError


def manual(priority="medium", title="Check shelf labels", **extra):
    return InsightCreate(
        triggered_by="manual",
        type=extra.pop("type", "inventory"),
        priority=priority,
        title=title,
        description="Reported by the warehouse team",
        confidence=Decimal("0.5"),
        **extra,
    )


class TestStockRules:
    def test_stockout_and_low_stock(self, insights, make_product):
        make_product(sku="OUT", stock=0)
        make_product(sku="LOW", stock=5, min_stock=10)
        make_product(sku="FINE", stock=50, min_stock=10)

        report = insights.generate()

        assert [i.triggered_by for i in report.created] == ["critical-stockout", "low-stock"]
        stockout, low = report.created
        assert stockout.priority == "critical"
        assert stockout.type == "alert"
        assert [p["sku"] for p in stockout.data["products"]] == ["OUT"]
        assert low.priority == "high"
        assert [p["sku"] for p in low.data["products"]] == ["LOW"]
        assert stockout.expires_at == datetime(2025, 1, 22, 12, 0)

    def test_overstock_reports_tied_capital(self, insights, make_product):
        make_product(sku="BULK", stock=1500, max_stock=1000, cost="2.00")

        report = insights.generate(rules=["overstock"])

        assert len(report.created) == 1
        overstock = report.created[0]
        assert overstock.priority == "medium"
        assert overstock.data["total_tied_capital"] == 1000.0
        assert overstock.data["products"][0]["excess"] == 500

    def test_inactive_products_are_ignored(self, insights, catalog, make_product):
        product = make_product(sku="OUT", stock=0)
        catalog.deactivate(product.id)
        assert insights.generate().created == []

    def test_unknown_rule(self, insights):
        with pytest.raises(ValidationError):
            insights.generate(rules=["no-such-rule"])


class TestDeduplication:
    def test_same_condition_is_reported_once_per_window(self, insights, clock, make_product):
        make_product(sku="OUT", stock=0)
        first = insights.generate()
        second = insights.generate()

        assert len(first.created) == 1
        assert second.created == []
        assert second.skipped_duplicates == [first.created[0].natural_key]
        assert len(insights.list()) == 1

        clock.advance(hours=25)
        third = insights.generate()
        assert len(third.created) == 1
        assert len(insights.list()) == 2

    def test_new_subject_is_a_new_insight(self, insights, make_product):
        make_product(sku="OUT-1", stock=0)
        insights.generate()
        make_product(sku="OUT-2", stock=0)

        report = insights.generate()
        assert len(report.created) == 1
        assert [p["sku"] for p in report.created[0].data["products"]] == ["OUT-1", "OUT-2"]

    def test_natural_key_ignores_subject_order(self):
        assert natural_key("low-stock", ["B", "A"]) == natural_key("low-stock", ["A", "B"])
        assert natural_key("low-stock", ["A"]) != natural_key("overstock", ["A"])


class TestSalesRules:
    @pytest.fixture
    def stocked(self, make_product):
        return make_product(sku="WID", stock=1000, cost="6.00", price="10.00")

    def test_rising_sales(self, insights, make_sale, make_client, stocked):
        buyer = make_client()
        make_sale(buyer, [(stocked, 10)], sale_date=date(2024, 12, 1))
        make_sale(buyer, [(stocked, 20)], sale_date=date(2025, 1, 10))

        report = insights.generate(rules=["sales-trend"])

        trend = report.created[0]
        assert trend.priority == "critical"
        assert trend.type == "opportunity"
        assert trend.data["direction"] == "up"
        assert trend.data["change_pct"] == 100.0

    def test_falling_sales(self, insights, make_sale, make_client, stocked):
        buyer = make_client()
        make_sale(buyer, [(stocked, 20)], sale_date=date(2024, 12, 1))
        make_sale(buyer, [(stocked, 10)], sale_date=date(2025, 1, 10))

        trend = insights.generate(rules=["sales-trend"]).created[0]
        assert trend.priority == "high"
        assert trend.type == "alert"
        assert trend.data["direction"] == "down"

    def test_small_change_is_not_reported(self, insights, make_sale, make_client, stocked):
        buyer = make_client()
        make_sale(buyer, [(stocked, 10)], sale_date=date(2024, 12, 1))
        make_sale(buyer, [(stocked, 11)], sale_date=date(2025, 1, 10))
        assert insights.generate(rules=["sales-trend"]).created == []

    def test_more_sales_at_flat_revenue(self, insights, make_sale, make_client, stocked):
        buyer = make_client()
        make_sale(buyer, [(stocked, 20)], sale_date=date(2024, 12, 1))
        make_sale(buyer, [(stocked, 10)], sale_date=date(2025, 1, 5))
        make_sale(buyer, [(stocked, 10)], sale_date=date(2025, 1, 10))

        created = insights.generate(rules=["sales-trend"]).created

        assert len(created) == 1
        trend = created[0]
        assert trend.data["change_pct"] == 0.0
        assert trend.data["count_change_pct"] == 100.0
        assert trend.data["direction"] == "up"
        assert trend.priority == "critical"

    def test_no_prior_sales_is_not_reported(self, insights, make_sale, make_client, stocked):
        make_sale(make_client(), [(stocked, 10)], sale_date=date(2025, 1, 10))
        assert insights.generate(rules=["sales-trend"]).created == []

    def test_overdue_at_exactly_the_minimum_is_not_reported(self, insights, make_sale, make_client, stocked):
        edge = make_client(code="EDGE", terms=30)
        make_sale(edge, [(stocked, 100)], sale_date=date(2024, 11, 1))
        assert insights.generate(rules=["overdue-counterparties"]).created == []

    def test_overdue_counterparties(self, insights, sales, make_sale, make_client, stocked):
        late = make_client(code="LATE", terms=30)
        small = make_client(code="SMALL", terms=30)
        settled = make_client(code="PAID", terms=30)
        make_sale(late, [(stocked, 150)], sale_date=date(2024, 11, 1))
        make_sale(small, [(stocked, 50)], sale_date=date(2024, 11, 1))
        paid = make_sale(settled, [(stocked, 200)], sale_date=date(2024, 11, 1))
        sales.update_payment_status(paid.id, "paid")

        overdue = insights.generate(rules=["overdue-counterparties"]).created[0]

        assert overdue.priority == "high"
        assert [c["client_code"] for c in overdue.data["clients"]] == ["LATE"]
        assert overdue.data["clients"][0]["max_days_overdue"] == 45
        assert overdue.data["total_overdue"] == 1500.0

    def test_long_overdue_is_critical(self, insights, make_sale, make_client, stocked):
        late = make_client(code="LATE", terms=30)
        make_sale(late, [(stocked, 150)], sale_date=date(2024, 10, 1))

        overdue = insights.generate(rules=["overdue-counterparties"]).created[0]
        assert overdue.priority == "critical"

    def test_star_products(self, insights, make_sale, make_client, make_product):
        buyer = make_client()
        star = make_product(sku="STAR", stock=100, cost="6.00", price="10.00")
        thin = make_product(sku="THIN", stock=100, cost="9.00", price="10.00")
        rare = make_product(sku="RARE", stock=100, cost="1.00", price="10.00")
        for _ in range(5):
            make_sale(buyer, [(star, 1), (thin, 1)])
        for _ in range(4):
            make_sale(buyer, [(rare, 1)])

        report = insights.generate(rules=["star-products"])

        products = report.created[0].data["products"]
        assert [p["sku"] for p in products] == ["STAR"]
        assert products[0]["margin_pct"] == 40.0
        assert products[0]["frequency"] == 5


class TestLifecycle:
    def test_forward_moves_and_dismissal(self, insights):
        insight = insights.create_manual(manual())
        assert insight.status == "generated"

        assert insights.update_status(insight.insight_id, "read").status == "read"
        assert insights.update_status(insight.insight_id, "read").status == "read"
        assert insights.update_status(insight.insight_id, "dismissed").status == "dismissed"

    def test_backwards_move_is_rejected(self, insights):
        insight = insights.create_manual(manual())
        insights.update_status(insight.insight_id, "read")
        with pytest.raises(InvalidStatusTransition):
            insights.update_status(insight.insight_id, "sent")

    def test_terminal_states_are_final(self, insights):
        insight = insights.create_manual(manual())
        insights.update_status(insight.insight_id, "acted")
        with pytest.raises(InvalidStatusTransition):
            insights.update_status(insight.insight_id, "dismissed")

    def test_unknown_insight(self, insights):
        with pytest.raises(InsightNotFound):
            insights.get("ins_missing")
        with pytest.raises(InsightNotFound):
            insights.update_status("ins_missing", "read")


class TestListing:
    def test_most_severe_first_then_newest(self, insights, clock):
        low = insights.create_manual(manual("low", "a"))
        clock.advance(minutes=1)
        older_critical = insights.create_manual(manual("critical", "b"))
        clock.advance(minutes=1)
        high = insights.create_manual(manual("high", "c"))
        clock.advance(minutes=1)
        newer_critical = insights.create_manual(manual("critical", "d"))

        ordered = [i.insight_id for i in insights.list()]
        assert ordered == [
            newer_critical.insight_id, older_critical.insight_id, high.insight_id, low.insight_id,
        ]
        assert [i.insight_id for i in insights.list(priority="high")] == [high.insight_id]

    def test_expiry_stats_and_cleanup(self, insights, clock, make_product):
        make_product(sku="OUT", stock=0)
        insights.generate()
        keeper = insights.create_manual(manual())

        stats = insights.stats()
        assert stats.total == 2
        assert stats.expired == 0
        assert stats.by_priority == {"critical": 1, "medium": 1}

        clock.advance(days=8)
        stats = insights.stats()
        assert stats.expired == 1
        assert stats.active == 1
        assert [i.insight_id for i in insights.list(active_only=True)] == [keeper.insight_id]

        assert insights.cleanup_expired() == 1
        assert [i.insight_id for i in insights.list()] == [keeper.insight_id]
        assert insights.cleanup_expired() == 0

    def test_manual_insight_with_expiry(self, insights, clock):
        insight = insights.create_manual(manual(expires_at=clock.now() + timedelta(hours=1)))
        assert insight.is_active(clock.now()) is True
        clock.advance(hours=2)
        assert insight.is_active(clock.now()) is False


class TestPublishing:
    def test_created_insights_are_published(self, insights, channel, make_product):
        subscription = channel.subscribe("acme")
        make_product(sku="OUT", stock=0)

        report = insights.generate()

        event = subscription.get(timeout=1)
        assert event["event"] == "insight.created"
        assert event["tenant_code"] == "acme"
        assert event["insight"]["insight_id"] == report.created[0].insight_id
        assert subscription.get(timeout=0.01) is None

    def test_other_tenants_hear_nothing(self, insights, channel, make_product):
        subscription = channel.subscribe("beta")
        make_product(sku="OUT", stock=0)
        insights.generate()
        assert subscription.get(timeout=0.01) is None


class FakePubSub:
    """Returns nothing for ``empty_polls`` reads, then the queued messages."""

    def __init__(self, messages, empty_polls=0):
        self.messages = list(messages)
        self.empty_polls = empty_polls
        self.timeouts = []

    def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        self.timeouts.append(timeout)
        if self.empty_polls:
            self.empty_polls -= 1
            return None
        if self.messages:
            return {"type": "message", "data": json.dumps(self.messages.pop(0))}
        return None


class TestSubscriptionWaits:
    def test_redis_get_without_timeout_waits_for_a_message(self):
        pubsub = FakePubSub([{"event": "insight.created"}], empty_polls=3)
        subscription = RedisSubscription(pubsub, topic_for("acme"))

        assert subscription.get() == {"event": "insight.created"}
        assert len(pubsub.timeouts) == 4
        assert all(t == RedisSubscription.POLL_SECONDS for t in pubsub.timeouts)

    def test_redis_get_with_timeout_gives_up(self):
        subscription = RedisSubscription(FakePubSub([]), topic_for("acme"))
        assert subscription.get(timeout=0.01) is None

    def test_local_get_without_timeout_waits_for_a_message(self, channel):
        subscription = channel.subscribe("acme")
        publisher = threading.Timer(0.05, channel.publish, args=("acme", {"event": "insight.created"}))
        publisher.start()
        try:
            assert subscription.get() == {"event": "insight.created"}
        finally:
            publisher.join()

"""
Insight engine.

A fixed, ordered set of threshold rules. Each rule reads partition state and
returns at most one draft; a draft is stored unless an insight with the same
natural key was created within the de-duplication window. Stored insights are
published on the insight channel after commit.
"""

import hashlib
import json
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.orm import Session

from multistock.core.logging_config import get_logger
from multistock.core_settings import Settings, get_settings
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import InsightNotFound, InvalidStatusTransition, ValidationError
from multistock.domain.models import (
    Insight, InsightCategory, InsightStatus, Product, Sale, SaleLine, Severity, SEVERITY_RANK,
)
from multistock.infrastructure.db import reading, transaction
from .counterparties import overdue_by_client
from .schemas import GenerateReport, InsightCreate, InsightRead, InsightStats

logger = get_logger(__name__)

CENT = Decimal("0.01")

# Forward order of the lifecycle; DISMISSED may be reached from any non-terminal state.
STATUS_FLOW = [
    InsightStatus.GENERATED.value,
    InsightStatus.SENT.value,
    InsightStatus.READ.value,
    InsightStatus.ACTED.value,
]
TERMINAL_STATUSES = {InsightStatus.ACTED.value, InsightStatus.DISMISSED.value}

ALERT_CHANNELS = ["dashboard", "email", "whatsapp"]
DEFAULT_CHANNELS = ["dashboard"]


def natural_key(rule_id: str, context: Sequence[str]) -> str:
    """Stable key for one rule firing on one set of subjects (SKUs, client codes...)."""
    digest = hashlib.sha1(json.dumps(sorted(context)).encode()).hexdigest()[:16]
    return f"{rule_id}:{digest}"


def _money(value) -> float:
    return float(Decimal(value).quantize(CENT))


def _pct_change(recent, prior) -> float:
    return float((Decimal(recent) - Decimal(prior)) / Decimal(prior) * 100)


@dataclass
class InsightDraft:
    rule_id: str
    category: InsightCategory
    severity: Severity
    title: str
    description: str
    recommendation: str
    confidence: Decimal
    expires_in: timedelta
    context: List[str]
    data: Dict[str, Any]
    business_impact: Optional[str] = None
    channels: List[str] = field(default_factory=lambda: list(DEFAULT_CHANNELS))


class InsightEngine:
    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        channel=None,
        tenant_code: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.channel = channel
        partition = db.info.get("partition")
        self.tenant_code = tenant_code or (partition.tenant_code if partition else None)
        self.rules: "OrderedDict[str, Callable[[], Optional[InsightDraft]]]" = OrderedDict([
            ("critical-stockout", self._rule_critical_stockout),
            ("low-stock", self._rule_low_stock),
            ("overstock", self._rule_overstock),
            ("sales-trend", self._rule_sales_trend),
            ("overdue-counterparties", self._rule_overdue_counterparties),
            ("star-products", self._rule_star_products),
        ])

    # -- evaluation -----------------------------------------------------------

    def generate(self, rules: Optional[Sequence[str]] = None) -> GenerateReport:
        """Run the selected rules (all by default) and store non-duplicate drafts."""
        if rules:
            unknown = [r for r in rules if r not in self.rules]
            if unknown:
                raise ValidationError("Unknown insight rule", {"rules": unknown, "available": list(self.rules)})
        selected = [r for r in self.rules if not rules or r in rules]

        created: List[Insight] = []
        skipped: List[str] = []
        with transaction(self.db):
            now = self.clock.now()
            for rule_id in selected:
                draft = self.rules[rule_id]()
                if draft is None:
                    continue
                key = natural_key(rule_id, draft.context)
                if self._recently_emitted(key, now):
                    logger.info(f"Insight skipped as duplicate: {key}")
                    skipped.append(key)
                    continue
                created.append(self._store(draft, key, now))

        for insight in created:
            self._publish(insight)
        logger.info(
            "Insight generation finished",
            extra={"extra_fields": {"rules": selected, "created": len(created), "skipped": len(skipped)}},
        )
        return GenerateReport(
            evaluated_rules=selected,
            created=[InsightRead.model_validate(i) for i in created],
            skipped_duplicates=skipped,
        )

    def _recently_emitted(self, key: str, now) -> bool:
        since = now - timedelta(hours=self.settings.INSIGHT_DEDUP_HOURS)
        stmt = (
            select(Insight.id)
            .where(Insight.natural_key == key)
            .where(Insight.created_at >= since)
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def _store(self, draft: InsightDraft, key: str, now) -> Insight:
        insight = Insight(
            insight_id=f"ins_{uuid.uuid4().hex[:20]}",
            natural_key=key,
            triggered_by=draft.rule_id,
            type=draft.category.value,
            priority=draft.severity.value,
            title=draft.title,
            description=draft.description,
            recommendation=draft.recommendation,
            business_impact=draft.business_impact,
            confidence=draft.confidence,
            channels=draft.channels,
            status=InsightStatus.GENERATED.value,
            data=draft.data,
            expires_at=now + draft.expires_in,
            created_at=now,
            updated_at=now,
        )
        self.db.add(insight)
        self.db.flush()
        return insight

    def _publish(self, insight: Insight) -> None:
        if self.channel is None or self.tenant_code is None:
            return
        self.channel.publish(self.tenant_code, {
            "event": "insight.created",
            "tenant_code": self.tenant_code,
            "insight": InsightRead.model_validate(insight).model_dump(mode="json"),
        })

    # -- rules ----------------------------------------------------------------

    def _active_products(self, *criteria, order_by=None) -> List[Product]:
        stmt = select(Product).where(Product.active.is_(True), *criteria)
        stmt = stmt.order_by(*(order_by or (Product.sku,)))
        return list(self.db.execute(stmt.execution_options(populate_existing=True)).scalars())

    def _rule_critical_stockout(self) -> Optional[InsightDraft]:
        products = self._active_products(Product.current_stock == 0)
        if not products:
            return None
        skus = [p.sku for p in products]
        return InsightDraft(
            rule_id="critical-stockout",
            category=InsightCategory.ALERT,
            severity=Severity.CRITICAL,
            title=f"{len(products)} product(s) out of stock",
            description="No stock left for: " + ", ".join(skus[:10]),
            recommendation="Reorder these products immediately to avoid lost sales.",
            business_impact="Every day out of stock is lost revenue on these items.",
            confidence=Decimal("0.95"),
            expires_in=timedelta(days=7),
            context=skus,
            channels=list(ALERT_CHANNELS),
            data={"products": [
                {"product_id": p.id, "sku": p.sku, "name": p.name, "min_stock_threshold": p.min_stock_threshold}
                for p in products
            ]},
        )

    def _rule_low_stock(self) -> Optional[InsightDraft]:
        products = self._active_products(
            Product.current_stock > 0,
            Product.current_stock <= Product.min_stock_threshold,
            order_by=(Product.current_stock, Product.sku),
        )
        if not products:
            return None
        return InsightDraft(
            rule_id="low-stock",
            category=InsightCategory.ALERT,
            severity=Severity.HIGH,
            title=f"{len(products)} product(s) running low",
            description="At or below minimum stock: " + ", ".join(
                f"{p.sku} ({p.current_stock})" for p in products[:10]
            ),
            recommendation="Plan replenishment, starting with the lowest stock first.",
            confidence=Decimal("0.90"),
            expires_in=timedelta(days=5),
            context=[p.sku for p in products],
            data={"products": [
                {
                    "product_id": p.id,
                    "sku": p.sku,
                    "name": p.name,
                    "current_stock": p.current_stock,
                    "min_stock_threshold": p.min_stock_threshold,
                }
                for p in products
            ]},
        )

    def _rule_overstock(self) -> Optional[InsightDraft]:
        products = self._active_products(Product.current_stock > Product.max_stock_threshold)
        if not products:
            return None
        items = []
        tied_capital = Decimal("0")
        for p in products:
            excess = p.current_stock - p.max_stock_threshold
            capital = excess * Decimal(p.cost_price or 0)
            tied_capital += capital
            items.append({
                "product_id": p.id,
                "sku": p.sku,
                "name": p.name,
                "current_stock": p.current_stock,
                "max_stock_threshold": p.max_stock_threshold,
                "excess": excess,
                "tied_capital": _money(capital),
            })
        return InsightDraft(
            rule_id="overstock",
            category=InsightCategory.ALERT,
            severity=Severity.MEDIUM,
            title=f"{len(products)} product(s) above maximum stock",
            description=f"Excess stock ties up {_money(tied_capital):.2f} in capital.",
            recommendation="Pause purchasing and consider promotions for the excess units.",
            business_impact=f"{_money(tied_capital):.2f} of capital tied up in excess stock",
            confidence=Decimal("0.85"),
            expires_in=timedelta(days=14),
            context=[p.sku for p in products],
            data={"products": items, "total_tied_capital": _money(tied_capital)},
        )

    def _rule_sales_trend(self) -> Optional[InsightDraft]:
        window = self.settings.INSIGHT_TREND_WINDOW_DAYS
        today = self.clock.today()
        recent_start = today - timedelta(days=window)
        prior_start = today - timedelta(days=2 * window)
        rows = self.db.execute(
            select(Sale.sale_date, Sale.total_amount)
            .where(Sale.cancelled.is_(False))
            .where(Sale.sale_date > prior_start, Sale.sale_date <= today)
        ).all()

        recent_count = prior_count = 0
        recent_revenue = prior_revenue = Decimal("0")
        for sale_date, total in rows:
            if sale_date > recent_start:
                recent_count += 1
                recent_revenue += total
            else:
                prior_count += 1
                prior_revenue += total
        if prior_count == 0:
            return None

        change_pct = _pct_change(recent_revenue, prior_revenue) if prior_revenue else 0.0
        count_change_pct = _pct_change(recent_count, prior_count)
        threshold = self.settings.INSIGHT_TREND_THRESHOLD_PCT
        if abs(change_pct) <= threshold and abs(count_change_pct) <= threshold:
            return None

        # The larger of the two moves sets direction and severity.
        dominant = max(change_pct, count_change_pct, key=abs)
        magnitude = abs(dominant)
        if magnitude > 50:
            severity = Severity.CRITICAL
        elif magnitude > 25:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM
        direction = "up" if dominant > 0 else "down"
        return InsightDraft(
            rule_id="sales-trend",
            category=InsightCategory.OPPORTUNITY if direction == "up" else InsightCategory.ALERT,
            severity=severity,
            title=f"Sales {direction} {magnitude:.1f}% over the last {window} days",
            description=(
                f"Revenue {_money(recent_revenue):.2f} from {recent_count} sale(s) vs "
                f"{_money(prior_revenue):.2f} from {prior_count} sale(s) in the previous {window} days."
            ),
            recommendation=(
                "Check stock of the best sellers to sustain the growth."
                if direction == "up"
                else "Review pricing and follow up with recurring clients."
            ),
            confidence=Decimal("0.88"),
            expires_in=timedelta(days=10),
            context=[direction],
            data={
                "direction": direction,
                "change_pct": round(change_pct, 2),
                "count_change_pct": round(count_change_pct, 2),
                "window_days": window,
                "recent": {"count": recent_count, "revenue": _money(recent_revenue)},
                "prior": {"count": prior_count, "revenue": _money(prior_revenue)},
            },
        )

    def _rule_overdue_counterparties(self) -> Optional[InsightDraft]:
        minimum = Decimal(str(self.settings.INSIGHT_OVERDUE_MIN_AMOUNT))
        clients = [
            {
                "client_id": e["client_id"],
                "client_code": e["client_code"],
                "business_name": e["business_name"],
                "sales": e["overdue_sales"],
                "total": e["total_overdue_amount"],
                "max_days_overdue": e["max_days_overdue"],
            }
            for e in overdue_by_client(self.db, self.clock.today())
            if e["total_overdue_amount"] > minimum
        ]
        if not clients:
            return None

        total = sum((e["total"] for e in clients), Decimal("0"))
        worst = max(e["max_days_overdue"] for e in clients)
        for e in clients:
            e["total"] = _money(e["total"])
        return InsightDraft(
            rule_id="overdue-counterparties",
            category=InsightCategory.ALERT,
            severity=Severity.CRITICAL if worst > 60 else Severity.HIGH,
            title=f"{len(clients)} client(s) with overdue payments",
            description=f"{_money(total):.2f} overdue, oldest {worst} day(s) past due.",
            recommendation="Contact these clients and hold new credit sales until settled.",
            business_impact=f"{_money(total):.2f} in receivables at risk",
            confidence=Decimal("0.95"),
            expires_in=timedelta(days=3),
            context=[e["client_code"] for e in clients],
            channels=list(ALERT_CHANNELS),
            data={"clients": clients, "total_overdue": _money(total)},
        )

    def _rule_star_products(self) -> Optional[InsightDraft]:
        window = self.settings.INSIGHT_STAR_WINDOW_DAYS
        since = self.clock.today() - timedelta(days=window)
        rows = self.db.execute(
            select(
                Product.id, Product.sku, Product.name, Product.cost_price,
                SaleLine.quantity, SaleLine.line_total,
            )
            .join(Sale, SaleLine.sale_id == Sale.id)
            .join(Product, SaleLine.product_id == Product.id)
            .where(Sale.cancelled.is_(False))
            .where(Sale.sale_date >= since)
            .where(Product.active.is_(True))
        ).all()

        stats: Dict[int, Dict[str, Any]] = {}
        for product_id, sku, name, cost_price, quantity, line_total in rows:
            s = stats.setdefault(product_id, {
                "product_id": product_id, "sku": sku, "name": name,
                "frequency": 0, "units": 0, "revenue": Decimal("0"), "cost": Decimal("0"),
            })
            s["frequency"] += 1
            s["units"] += quantity
            s["revenue"] += line_total
            s["cost"] += quantity * Decimal(cost_price or 0)

        stars = []
        for s in stats.values():
            if s["revenue"] <= 0 or s["frequency"] < self.settings.INSIGHT_STAR_MIN_FREQUENCY:
                continue
            margin = float((s["revenue"] - s["cost"]) / s["revenue"] * 100)
            if margin < self.settings.INSIGHT_STAR_MIN_MARGIN_PCT:
                continue
            stars.append({
                "product_id": s["product_id"],
                "sku": s["sku"],
                "name": s["name"],
                "frequency": s["frequency"],
                "units": s["units"],
                "revenue": _money(s["revenue"]),
                "margin_pct": round(margin, 2),
            })
        if not stars:
            return None

        stars.sort(key=lambda s: (-s["revenue"], s["sku"]))
        return InsightDraft(
            rule_id="star-products",
            category=InsightCategory.OPPORTUNITY,
            severity=Severity.LOW,
            title=f"{len(stars)} star product(s) in the last {window} days",
            description="Frequent, high-margin sellers: " + ", ".join(s["sku"] for s in stars[:10]),
            recommendation="Keep these well stocked and feature them in promotions.",
            confidence=Decimal("0.82"),
            expires_in=timedelta(days=21),
            context=[s["sku"] for s in stars],
            data={"products": stars, "window_days": window},
        )

    # -- manual insights and lifecycle -----------------------------------------

    def create_manual(self, data: InsightCreate) -> Insight:
        with transaction(self.db):
            now = self.clock.now()
            insight = Insight(
                insight_id=f"ins_{uuid.uuid4().hex[:20]}",
                natural_key=natural_key(data.triggered_by, [data.title]),
                triggered_by=data.triggered_by,
                type=data.type.value,
                priority=data.priority.value,
                title=data.title,
                description=data.description,
                recommendation=data.recommendation,
                business_impact=data.business_impact,
                confidence=data.confidence,
                channels=data.channels or list(DEFAULT_CHANNELS),
                status=InsightStatus.GENERATED.value,
                data=json.loads(json.dumps(data.data, default=str)),
                expires_at=data.expires_at,
                created_at=now,
                updated_at=now,
            )
            self.db.add(insight)
        self._publish(insight)
        return insight

    def get(self, insight_id: str) -> Insight:
        with reading(self.db):
            insight = self._by_insight_id(insight_id)
        if insight is None:
            raise InsightNotFound(insight_id)
        return insight

    def _by_insight_id(self, insight_id: str, lock: bool = False) -> Optional[Insight]:
        stmt = select(Insight).where(Insight.insight_id == insight_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def update_status(self, insight_id: str, status) -> Insight:
        """Move an insight along its lifecycle. Setting the current status again is a no-op."""
        requested = InsightStatus(status).value
        with transaction(self.db):
            insight = self._by_insight_id(insight_id, lock=True)
            if insight is None:
                raise InsightNotFound(insight_id)
            current = insight.status
            if requested == current:
                return insight
            if current in TERMINAL_STATUSES:
                raise InvalidStatusTransition(insight_id, current, requested)
            if requested != InsightStatus.DISMISSED.value and (
                STATUS_FLOW.index(requested) < STATUS_FLOW.index(current)
            ):
                raise InvalidStatusTransition(insight_id, current, requested)
            insight.status = requested
            insight.updated_at = self.clock.now()
        logger.info(f"Insight {insight_id}: {current} -> {requested}")
        return insight

    def list(
        self,
        type: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = None,
        active_only: bool = False,
        date_from=None,
        date_to=None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Insight]:
        """Critical first, then newest first."""
        stmt = select(Insight).execution_options(populate_existing=True)
        if type:
            stmt = stmt.where(Insight.type == InsightCategory(type).value)
        if priority:
            stmt = stmt.where(Insight.priority == Severity(priority).value)
        if status:
            stmt = stmt.where(Insight.status == InsightStatus(status).value)
        if active_only:
            now = self.clock.now()
            stmt = stmt.where(or_(Insight.expires_at.is_(None), Insight.expires_at > now))
        if date_from is not None:
            stmt = stmt.where(Insight.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(Insight.created_at <= date_to)
        rank = case(SEVERITY_RANK, value=Insight.priority, else_=len(SEVERITY_RANK) + 1)
        stmt = stmt.order_by(rank, Insight.created_at.desc(), Insight.id.desc()).limit(limit).offset(offset)
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    def stats(self) -> InsightStats:
        now = self.clock.now()
        with reading(self.db):
            total = self.db.execute(select(func.count(Insight.id))).scalar_one()
            expired = self.db.execute(
                select(func.count(Insight.id))
                .where(Insight.expires_at.is_not(None), Insight.expires_at <= now)
            ).scalar_one()
            grouped = {}
            for column in (Insight.priority, Insight.status, Insight.type):
                grouped[column.key] = dict(
                    self.db.execute(
                        select(column, func.count(Insight.id)).group_by(column).order_by(column)
                    ).all()
                )
        return InsightStats(
            total=total,
            active=total - expired,
            expired=expired,
            by_priority=grouped["priority"],
            by_status=grouped["status"],
            by_type=grouped["type"],
        )

    def cleanup_expired(self) -> int:
        """Delete insights past expiry. Returns how many were removed."""
        with transaction(self.db):
            result = self.db.execute(
                delete(Insight)
                .where(Insight.expires_at.is_not(None), Insight.expires_at < self.clock.now())
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount or 0
        logger.info(f"Expired insights removed: {deleted}")
        return deleted

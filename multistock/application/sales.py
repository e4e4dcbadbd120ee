from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from collections import defaultdict
from decimal import Decimal
from datetime import date, timedelta
from typing import Dict, List, Optional

from multistock.core.logging_config import get_logger
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import (
    CounterpartyNotFound, DuplicateSale, ProductNotFound, SaleAlreadyCancelled, SaleNotFound,
    ValidationError,
)
from multistock.domain.models import (
    Client, InventoryMovement, MovementKind, PaymentStatus, Product, ReferenceKind, Sale, SaleLine,
)
from multistock.infrastructure.db import reading, transaction
from .ledger import InventoryLedger
from .schemas import SaleCreate, SalesPeriod, SalesStats, TopProduct

logger = get_logger(__name__)

CENT = Decimal("0.01")

PERIOD_LABELS = {
    "day": lambda d: f"{d:%Y-%m-%d}",
    "week": lambda d: "{0}-W{1:02d}".format(*d.isocalendar()),
    "month": lambda d: f"{d:%Y-%m}",
    "year": lambda d: f"{d:%Y}",
}


class SalesService:
    """Sales and their stock effects. Each sale commits together with its outbound movements."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.ledger = InventoryLedger(db, self.clock)

    def _generate_sale_number(self, sale_date: date) -> str:
        """Sequential number in format SALE-YYYYMMDD-NNNN"""
        prefix = f"SALE-{sale_date:%Y%m%d}-"
        count = self.db.execute(
            select(func.count(Sale.id)).where(Sale.sale_number.like(f"{prefix}%"))
        ).scalar_one()
        return f"{prefix}{count + 1:04d}"

    def _lock_products(self, product_ids) -> Dict[int, Product]:
        # Always lock in id order so concurrent multi-line sales cannot deadlock.
        stmt = (
            select(Product)
            .where(Product.id.in_(sorted(set(product_ids))))
            .order_by(Product.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {p.id: p for p in self.db.execute(stmt).scalars()}

    def create(self, data: SaleCreate) -> Sale:
        sale_date = data.sale_date or self.clock.today()
        try:
            with transaction(self.db):
                sale_number = data.sale_number or self._generate_sale_number(sale_date)
                exists = self.db.execute(
                    select(Sale.id).where(Sale.sale_number == sale_number)
                ).first()
                if exists:
                    raise DuplicateSale(sale_number)

                client = self.db.get(Client, data.client_id, populate_existing=True)
                if client is None or not client.active:
                    raise CounterpartyNotFound(data.client_id)

                products = self._lock_products(line.product_id for line in data.lines)
                for line in data.lines:
                    product = products.get(line.product_id)
                    if product is None or not product.active:
                        raise ProductNotFound(line.product_id)

                now = self.clock.now()
                sale = Sale(
                    sale_number=sale_number,
                    client_id=client.id,
                    sale_date=sale_date,
                    due_date=sale_date + timedelta(days=client.payment_terms or 0),
                    tax_amount=data.tax_amount,
                    discount_amount=data.discount_amount,
                    payment_status=data.payment_status.value,
                    payment_method=data.payment_method,
                    notes=data.notes,
                    created_at=now,
                    updated_at=now,
                )
                subtotal = Decimal("0")
                for line in data.lines:
                    product = products[line.product_id]
                    unit_price = line.unit_price if line.unit_price is not None else product.selling_price
                    line_total = (line.quantity * unit_price - line.discount_amount).quantize(CENT)
                    if line_total < 0:
                        raise ValidationError(
                            "Line discount exceeds line amount", {"product_id": product.id}
                        )
                    sale.lines.append(SaleLine(
                        product_id=product.id,
                        quantity=line.quantity,
                        unit_price=unit_price,
                        discount_amount=line.discount_amount,
                        line_total=line_total,
                        created_at=now,
                    ))
                    subtotal += line_total

                sale.subtotal = subtotal.quantize(CENT)
                sale.total_amount = (subtotal + data.tax_amount - data.discount_amount).quantize(CENT)
                if sale.total_amount < 0:
                    raise ValidationError("Sale total cannot be negative", {"sale_number": sale_number})
                self.db.add(sale)
                self.db.flush()

                for line in sale.lines:
                    self.ledger.apply_locked(
                        products[line.product_id],
                        MovementKind.OUTBOUND,
                        line.quantity,
                        reference_kind=ReferenceKind.SALE,
                        reference_id=sale.id,
                        note=f"Sale {sale_number}",
                    )
        except IntegrityError as exc:
            raise DuplicateSale(data.sale_number or "generated") from exc

        logger.info(
            f"Sale created: {sale.sale_number}",
            extra={"extra_fields": {"sale_id": sale.id, "total_amount": str(sale.total_amount)}},
        )
        return sale

    def _lock_sale(self, sale_id: int) -> Sale:
        stmt = (
            select(Sale)
            .where(Sale.id == sale_id)
            .with_for_update()
            .options(selectinload(Sale.lines))
            .execution_options(populate_existing=True)
        )
        sale = self.db.execute(stmt).scalar_one_or_none()
        if sale is None:
            raise SaleNotFound(sale_id)
        return sale

    def cancel(self, sale_id: int, reason: Optional[str] = None) -> Sale:
        """Cancel a sale and return its units to stock at their original cost."""
        with transaction(self.db):
            sale = self._lock_sale(sale_id)
            if sale.cancelled:
                raise SaleAlreadyCancelled(sale_id)

            products = self._lock_products(line.product_id for line in sale.lines)
            original_costs: Dict[int, List[Optional[Decimal]]] = defaultdict(list)
            for movement in self.db.execute(
                select(InventoryMovement)
                .where(InventoryMovement.reference_type == ReferenceKind.SALE.value)
                .where(InventoryMovement.reference_id == sale.id)
                .where(InventoryMovement.movement_type == MovementKind.OUTBOUND.value)
                .order_by(InventoryMovement.id)
            ).scalars():
                original_costs[movement.product_id].append(movement.cost_per_unit)

            for line in sale.lines:
                product = products[line.product_id]
                costs = original_costs.get(line.product_id)
                unit_cost = costs.pop(0) if costs else None
                self.ledger.apply_locked(
                    product,
                    MovementKind.INBOUND,
                    line.quantity,
                    unit_cost=unit_cost,
                    reference_kind=ReferenceKind.CANCELLATION,
                    reference_id=sale.id,
                    note=f"Cancellation of sale {sale.sale_number}",
                )

            sale.cancelled = True
            sale.cancelled_reason = reason
            sale.updated_at = self.clock.now()

        logger.info(f"Sale cancelled: {sale.sale_number}", extra={"extra_fields": {"reason": reason}})
        return sale

    def update_payment_status(self, sale_id: int, payment_status) -> Sale:
        status = PaymentStatus(payment_status)
        with transaction(self.db):
            sale = self._lock_sale(sale_id)
            if sale.cancelled:
                raise SaleAlreadyCancelled(sale_id)
            sale.payment_status = status.value
            sale.updated_at = self.clock.now()
        return sale

    def get(self, sale_id: int) -> Sale:
        stmt = (
            select(Sale)
            .where(Sale.id == sale_id)
            .options(selectinload(Sale.lines))
            .execution_options(populate_existing=True)
        )
        with reading(self.db):
            sale = self.db.execute(stmt).scalar_one_or_none()
        if sale is None:
            raise SaleNotFound(sale_id)
        return sale

    def list(
        self,
        client_id: Optional[int] = None,
        payment_status: Optional[str] = None,
        include_cancelled: bool = True,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Sale]:
        stmt = select(Sale).options(selectinload(Sale.lines)).execution_options(populate_existing=True)
        if client_id is not None:
            stmt = stmt.where(Sale.client_id == client_id)
        if payment_status:
            stmt = stmt.where(Sale.payment_status == PaymentStatus(payment_status).value)
        if not include_cancelled:
            stmt = stmt.where(Sale.cancelled.is_(False))
        if date_from is not None:
            stmt = stmt.where(Sale.sale_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Sale.sale_date <= date_to)
        stmt = stmt.order_by(Sale.sale_date.desc(), Sale.id.desc()).limit(limit).offset(offset)
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    # -- reports ------------------------------------------------------------

    def _dated(self, stmt, date_from: Optional[date], date_to: Optional[date]):
        if date_from is not None:
            stmt = stmt.where(Sale.sale_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(Sale.sale_date <= date_to)
        return stmt

    def stats(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> SalesStats:
        stmt = self._dated(
            select(Sale.client_id, Sale.total_amount, Sale.payment_status, Sale.cancelled),
            date_from, date_to,
        )
        with reading(self.db):
            rows = self.db.execute(stmt).all()

        cancelled = sum(1 for row in rows if row.cancelled)
        live = [row for row in rows if not row.cancelled]
        by_status: Dict[str, int] = defaultdict(int)
        revenue = paid = pending = Decimal("0")
        for row in live:
            by_status[row.payment_status] += 1
            revenue += row.total_amount
            if row.payment_status == PaymentStatus.PAID.value:
                paid += row.total_amount
            elif row.payment_status in (PaymentStatus.PENDING.value, PaymentStatus.PARTIAL.value):
                pending += row.total_amount

        return SalesStats(
            total_sales=len(live),
            cancelled_sales=cancelled,
            paid_sales=by_status[PaymentStatus.PAID.value],
            pending_sales=by_status[PaymentStatus.PENDING.value],
            partial_sales=by_status[PaymentStatus.PARTIAL.value],
            overdue_sales=by_status[PaymentStatus.OVERDUE.value],
            total_revenue=revenue.quantize(CENT),
            paid_revenue=paid.quantize(CENT),
            pending_revenue=pending.quantize(CENT),
            avg_sale_amount=(revenue / len(live)).quantize(CENT) if live else Decimal("0.00"),
            unique_clients=len({row.client_id for row in live}),
        )

    def sales_by_period(
        self,
        period: str = "day",
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
    ) -> List[SalesPeriod]:
        """Uncancelled sales bucketed by day, ISO week, month or year, oldest bucket first."""
        label = PERIOD_LABELS.get(period.lower())
        if label is None:
            raise ValidationError("Unknown period", {"period": period, "available": list(PERIOD_LABELS)})
        stmt = self._dated(
            select(Sale.sale_date, Sale.client_id, Sale.total_amount).where(Sale.cancelled.is_(False)),
            date_from, date_to,
        ).order_by(Sale.sale_date, Sale.id)
        with reading(self.db):
            rows = self.db.execute(stmt).all()

        buckets: Dict[str, Dict] = {}
        for sale_date, client_id, total in rows:
            bucket = buckets.setdefault(label(sale_date), {"count": 0, "revenue": Decimal("0"), "clients": set()})
            bucket["count"] += 1
            bucket["revenue"] += total
            bucket["clients"].add(client_id)

        return [
            SalesPeriod(
                period=key,
                sales_count=b["count"],
                total_revenue=b["revenue"].quantize(CENT),
                avg_sale_amount=(b["revenue"] / b["count"]).quantize(CENT),
                unique_clients=len(b["clients"]),
            )
            for key, b in list(buckets.items())[:limit]
        ]

    def top_products(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 20,
    ) -> List[TopProduct]:
        """Products by units sold in uncancelled sales, most first."""
        quantity = func.sum(SaleLine.quantity).label("units_sold")
        revenue = func.sum(SaleLine.line_total).label("line_revenue")
        stmt = self._dated(
            select(
                Product.id, Product.sku, Product.name, Product.category, Product.brand,
                quantity, revenue, func.count(func.distinct(Sale.id)),
            )
            .join(SaleLine, SaleLine.product_id == Product.id)
            .join(Sale, SaleLine.sale_id == Sale.id)
            .where(Sale.cancelled.is_(False)),
            date_from, date_to,
        )
        stmt = (
            stmt.group_by(Product.id, Product.sku, Product.name, Product.category, Product.brand)
            .order_by(quantity.desc(), revenue.desc(), Product.id)
            .limit(limit)
        )
        with reading(self.db):
            rows = self.db.execute(stmt).all()
        return [
            TopProduct(
                product_id=product_id,
                sku=sku,
                name=name,
                category=category,
                brand=brand,
                total_quantity_sold=units,
                total_revenue=Decimal(str(total)).quantize(CENT),
                sales_count=sales_count,
                avg_price_per_unit=(Decimal(str(total)) / units).quantize(CENT),
            )
            for product_id, sku, name, category, brand, units, total, sales_count in rows
        ]

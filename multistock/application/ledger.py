"""
Inventory ledger.

Every stock change is one append-only ``InventoryMovement`` plus the matching
update of ``Product.current_stock``, written in the same transaction while the
product row is locked. That keeps

    current_stock == opening_stock + sum(movement.quantity) == latest new_stock

true for every product, including under concurrent writers.
"""

from decimal import Decimal
from typing import Iterable, List, Optional, Tuple, Union
import datetime

import pydantic
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from multistock.core.logging_config import get_logger
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import (
    InsufficientStock, MultistockError, PartitionMissing, ProductNotFound, ValidationError,
)
from multistock.domain.models import InventoryMovement, MovementKind, Product, ReferenceKind
from multistock.infrastructure.db import reading, transaction
from .schemas import (
    ConsistencyReport, HighMovementProduct, MovementKindStats, MovementStats, SyncEntry, SyncReport,
)

logger = get_logger(__name__)


def _describe(exc: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'entry'}: {err['msg']}"
        for err in exc.errors()
    )


class InventoryLedger:
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    # -- writes ---------------------------------------------------------------

    def record_movement(
        self,
        product_id: int,
        kind: Union[MovementKind, str],
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        reference_kind: Union[ReferenceKind, str] = ReferenceKind.MANUAL,
        reference_id: Optional[int] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[InventoryMovement]:
        """Apply one stock change atomically.

        Replaying an ``idempotency_key`` returns the stored movement unchanged.
        Returns None when a sync is clamped to a stock that is already zero.
        Raises ProductNotFound, InsufficientStock or ValidationError; on any
        failure neither the movement nor the stock update is persisted.
        """
        kind = MovementKind(kind)
        reference_kind = ReferenceKind(reference_kind)
        try:
            with transaction(self.db):
                if idempotency_key:
                    existing = self._by_idempotency_key(idempotency_key)
                    if existing is not None:
                        logger.info(f"Movement replayed for idempotency key {idempotency_key}")
                        return existing
                product = self.lock_product(product_id)
                movement, _ = self.apply_locked(
                    product, kind, quantity,
                    unit_cost=unit_cost,
                    reference_kind=reference_kind,
                    reference_id=reference_id,
                    note=note,
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            # A concurrent writer stored the same key first.
            if not idempotency_key:
                raise
            existing = self._by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return existing
        return movement

    def lock_product(self, product_id: int) -> Product:
        """Load ``product_id`` holding its row lock until the transaction ends."""
        stmt = (
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        product = self.db.execute(stmt).scalar_one_or_none()
        if product is None:
            raise ProductNotFound(product_id)
        return product

    def apply_locked(
        self,
        product: Product,
        kind: MovementKind,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        reference_kind: ReferenceKind = ReferenceKind.MANUAL,
        reference_id: Optional[int] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Optional[InventoryMovement], Optional[str]]:
        """Append a movement for an already locked ``product``.

        The caller owns the transaction. Returns the movement and a warning
        when an external sync had to be clamped at zero; a sync clamped onto
        a product already at zero appends nothing and returns no movement.
        """
        if quantity == 0:
            raise ValidationError("Movement quantity must be non-zero", {"product_id": product.id})

        previous = product.current_stock
        if kind == MovementKind.INBOUND:
            delta = abs(quantity)
        elif kind == MovementKind.OUTBOUND:
            delta = -abs(quantity)
        else:
            delta = quantity

        warning = None
        if previous + delta < 0:
            if kind != MovementKind.EXTERNAL_SYNC:
                raise InsufficientStock(product.id, previous, abs(delta))
            warning = (
                f"Product {product.id}: external stock {previous + delta} is negative, clamped to 0"
            )
            logger.warning(warning)
            note = f"{note} ({warning})" if note else warning
            delta = -previous
            if delta == 0:
                return None, warning

        now = self.clock.now()
        movement = InventoryMovement(
            product_id=product.id,
            movement_type=kind.value,
            quantity=delta,
            previous_stock=previous,
            new_stock=previous + delta,
            cost_per_unit=unit_cost if unit_cost is not None else product.cost_price,
            reference_type=ReferenceKind(reference_kind).value,
            reference_id=reference_id,
            notes=note,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        product.current_stock = movement.new_stock
        product.updated_at = now
        self.db.add(movement)
        self.db.flush()

        logger.info(
            f"Movement recorded: product {product.id} {kind.value} {delta:+d}",
            extra={"extra_fields": {
                "product_id": product.id,
                "movement_id": movement.id,
                "previous_stock": previous,
                "new_stock": movement.new_stock,
                "reference_type": movement.reference_type,
            }},
        )
        return movement, warning

    def sync(self, entries: Iterable[Union[SyncEntry, dict]]) -> SyncReport:
        """Converge stock onto externally reported values.

        Each entry is validated and committed on its own; a bad entry is
        reported and the rest still run. Entries already matching produce no
        movement.
        """
        report = SyncReport()
        for index, raw in enumerate(entries):
            report.processed += 1
            try:
                entry = raw if isinstance(raw, SyncEntry) else SyncEntry.model_validate(raw)
            except pydantic.ValidationError as exc:
                report.errors.append(f"Entry {index}: {_describe(exc)}")
                continue
            try:
                changed, movement_created, warning = self._sync_one(entry)
            except PartitionMissing:
                raise
            except MultistockError as exc:
                report.errors.append(f"Product {entry.product_id}: {exc.message}")
                continue
            if warning:
                report.warnings.append(warning)
            if changed:
                report.updated += 1
            if movement_created:
                report.movements_created += 1

        logger.info(
            "Inventory sync finished",
            extra={"extra_fields": report.model_dump()},
        )
        return report

    def _sync_one(self, entry: SyncEntry) -> Tuple[bool, bool, Optional[str]]:
        with transaction(self.db):
            product = self.lock_product(entry.product_id)
            changed = False
            if entry.cost_price is not None and entry.cost_price != product.cost_price:
                product.cost_price = entry.cost_price
                changed = True

            warning = None
            target = entry.external_stock
            if target < 0:
                warning = f"Product {product.id}: external stock {target} is negative, clamped to 0"
                logger.warning(warning)
                target = 0

            difference = target - product.current_stock
            if difference == 0:
                return changed, False, warning

            self.apply_locked(
                product,
                MovementKind.EXTERNAL_SYNC,
                difference,
                unit_cost=entry.cost_price,
                reference_kind=ReferenceKind.SYNC,
                note=warning or f"External sync to {target}",
            )
        return True, True, warning

    # -- reads ----------------------------------------------------------------

    def _by_idempotency_key(self, key: str) -> Optional[InventoryMovement]:
        stmt = select(InventoryMovement).where(InventoryMovement.idempotency_key == key)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_movements(
        self,
        product_id: Optional[int] = None,
        movement_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        date_from: Optional[datetime.datetime] = None,
        date_to: Optional[datetime.datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[InventoryMovement]:
        stmt = select(InventoryMovement)
        if product_id is not None:
            stmt = stmt.where(InventoryMovement.product_id == product_id)
        if movement_type:
            stmt = stmt.where(InventoryMovement.movement_type == MovementKind(movement_type).value)
        if reference_type:
            stmt = stmt.where(InventoryMovement.reference_type == ReferenceKind(reference_type).value)
        if date_from is not None:
            stmt = stmt.where(InventoryMovement.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(InventoryMovement.created_at <= date_to)
        stmt = (
            stmt.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    def movement_stats(self) -> MovementStats:
        with reading(self.db):
            total, products, last_at = self.db.execute(
                select(
                    func.count(InventoryMovement.id),
                    func.count(func.distinct(InventoryMovement.product_id)),
                    func.max(InventoryMovement.created_at),
                )
            ).one()
            rows = self.db.execute(
                select(
                    InventoryMovement.movement_type,
                    func.count(InventoryMovement.id),
                    func.coalesce(func.sum(InventoryMovement.quantity), 0),
                )
                .group_by(InventoryMovement.movement_type)
                .order_by(InventoryMovement.movement_type)
            ).all()
        return MovementStats(
            total_movements=total,
            products_with_movements=products,
            by_type=[
                MovementKindStats(movement_type=kind, count=count, total_quantity=qty)
                for kind, count, qty in rows
            ],
            last_movement_at=last_at,
        )

    def high_movement_products(self, days: int = 30, limit: int = 10) -> List[HighMovementProduct]:
        """Active products with the most movements in the last ``days`` days."""
        if days <= 0:
            raise ValidationError("days must be positive", {"days": days})
        since = self.clock.now() - datetime.timedelta(days=days)
        moved = func.abs(InventoryMovement.quantity)
        movement_count = func.count(InventoryMovement.id).label("movement_count")
        total_moved = func.sum(moved).label("total_moved")
        stmt = (
            select(
                Product.id, Product.sku, Product.name, Product.category, Product.brand, Product.current_stock,
                movement_count,
                total_moved,
                func.sum(case((InventoryMovement.movement_type == MovementKind.INBOUND.value, moved), else_=0)),
                func.sum(case((InventoryMovement.movement_type == MovementKind.OUTBOUND.value, moved), else_=0)),
                func.max(InventoryMovement.created_at),
            )
            .join(InventoryMovement, InventoryMovement.product_id == Product.id)
            .where(InventoryMovement.created_at >= since)
            .where(Product.active.is_(True))
            .group_by(
                Product.id, Product.sku, Product.name, Product.category, Product.brand, Product.current_stock,
            )
            .order_by(movement_count.desc(), total_moved.desc(), Product.id)
            .limit(limit)
        )
        with reading(self.db):
            rows = self.db.execute(stmt).all()
        return [
            HighMovementProduct(
                product_id=product_id,
                sku=sku,
                name=name,
                category=category,
                brand=brand,
                current_stock=stock,
                movement_count=count,
                total_quantity_moved=total,
                total_inbound=inbound,
                total_outbound=outbound,
                avg_movement_size=(Decimal(total) / count).quantize(Decimal("0.01")),
                last_movement_at=last_at,
            )
            for product_id, sku, name, category, brand, stock, count, total, inbound, outbound, last_at in rows
        ]

    def verify_consistency(self, product_id: int) -> ConsistencyReport:
        with reading(self.db):
            product = self.db.get(Product, product_id, populate_existing=True)
            if product is None:
                raise ProductNotFound(product_id)
            movement_total, movement_count = self.db.execute(
                select(
                    func.coalesce(func.sum(InventoryMovement.quantity), 0),
                    func.count(InventoryMovement.id),
                ).where(InventoryMovement.product_id == product_id)
            ).one()
            latest = self.db.execute(
                select(InventoryMovement.new_stock)
                .where(InventoryMovement.product_id == product_id)
                .order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
                .limit(1)
            ).scalar_one_or_none()

        consistent = product.opening_stock + movement_total == product.current_stock
        if latest is not None:
            consistent = consistent and latest == product.current_stock
        if not consistent:
            logger.error(
                f"Ledger inconsistency for product {product_id}",
                extra={"extra_fields": {
                    "opening_stock": product.opening_stock,
                    "movement_total": movement_total,
                    "current_stock": product.current_stock,
                    "latest_new_stock": latest,
                }},
            )
        return ConsistencyReport(
            product_id=product_id,
            opening_stock=product.opening_stock,
            movement_total=movement_total,
            current_stock=product.current_stock,
            latest_new_stock=latest,
            movement_count=movement_count,
            consistent=consistent,
        )

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from decimal import Decimal
from datetime import timedelta
from typing import List, Optional

from multistock.core.logging_config import get_logger
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import DuplicateSku, ProductNotFound
from multistock.domain.models import InventoryMovement, Product
from multistock.infrastructure.db import reading, transaction
from .schemas import InventorySummaryItem, ProductCreate, ProductUpdate

logger = get_logger(__name__)


def stock_status(product: Product) -> str:
    if product.current_stock == 0:
        return "out_of_stock"
    if product.current_stock <= product.min_stock_threshold:
        return "low_stock"
    if product.current_stock > product.max_stock_threshold:
        return "overstock"
    return "normal"


class CatalogStore:
    """Products of one partition. Stock levels are read here but written only by the ledger."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def create(self, data: ProductCreate) -> Product:
        now = self.clock.now()
        fields = data.model_dump(exclude={"current_stock"})
        product = Product(
            **fields,
            opening_stock=data.current_stock,
            current_stock=data.current_stock,
            created_at=now,
            updated_at=now,
        )
        try:
            with transaction(self.db):
                if self._by_sku(data.sku) is not None:
                    raise DuplicateSku(data.sku)
                self.db.add(product)
        except IntegrityError as exc:
            raise DuplicateSku(data.sku) from exc
        logger.info(f"Product created: {product.sku}", extra={"extra_fields": {"product_id": product.id}})
        return product

    def get(self, product_id: int, include_inactive: bool = False) -> Product:
        with reading(self.db):
            product = self.db.get(Product, product_id, populate_existing=True)
        if product is None or (not product.active and not include_inactive):
            raise ProductNotFound(product_id)
        return product

    def get_by_sku(self, sku: str) -> Product:
        with reading(self.db):
            product = self._by_sku(sku)
        if product is None:
            raise ProductNotFound(sku)
        return product

    def _by_sku(self, sku: str) -> Optional[Product]:
        stmt = select(Product).where(Product.sku == sku).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def list(
        self,
        category: Optional[str] = None,
        brand: Optional[str] = None,
        search: Optional[str] = None,
        low_stock_only: bool = False,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Product]:
        stmt = select(Product).execution_options(populate_existing=True)
        if not include_inactive:
            stmt = stmt.where(Product.active.is_(True))
        if category:
            stmt = stmt.where(Product.category == category)
        if brand:
            stmt = stmt.where(Product.brand == brand)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(or_(
                func.lower(Product.name).like(pattern),
                func.lower(Product.sku).like(pattern),
                func.lower(Product.description).like(pattern),
            ))
        if low_stock_only:
            stmt = stmt.where(Product.current_stock <= Product.min_stock_threshold)
        stmt = stmt.order_by(Product.name, Product.id).limit(limit).offset(offset)
        with reading(self.db):
            return list(self.db.execute(stmt).scalars())

    def update(self, product_id: int, data: ProductUpdate) -> Product:
        changes = data.model_dump(exclude_unset=True)
        with transaction(self.db):
            product = self.db.get(Product, product_id, populate_existing=True)
            if product is None:
                raise ProductNotFound(product_id)
            for field, value in changes.items():
                setattr(product, field, value)
            product.updated_at = self.clock.now()
        return product

    def deactivate(self, product_id: int) -> Product:
        return self.update(product_id, ProductUpdate(active=False))

    def inventory_summary(self) -> List[InventorySummaryItem]:
        since = self.clock.now() - timedelta(days=30)
        recent = (
            select(InventoryMovement.product_id, func.count(InventoryMovement.id).label("movements"))
            .where(InventoryMovement.created_at >= since)
            .group_by(InventoryMovement.product_id)
            .subquery()
        )
        stmt = (
            select(Product, func.coalesce(recent.c.movements, 0))
            .outerjoin(recent, recent.c.product_id == Product.id)
            .where(Product.active.is_(True))
            .order_by(Product.current_stock, Product.name)
            .execution_options(populate_existing=True)
        )
        with reading(self.db):
            rows = self.db.execute(stmt).all()
        return [
            InventorySummaryItem(
                product_id=product.id,
                sku=product.sku,
                name=product.name,
                category=product.category,
                current_stock=product.current_stock,
                min_stock_threshold=product.min_stock_threshold,
                max_stock_threshold=product.max_stock_threshold,
                stock_status=stock_status(product),
                inventory_value=(product.current_stock * Decimal(product.cost_price or 0)).quantize(Decimal("0.01")),
                movements_last_30_days=movements,
            )
            for product, movements in rows
        ]

"""
FIFO valuation of on-hand stock.

Outbound movements consume the oldest cost layers first, so the units still on
hand are the most recent ones received. The valuation walks inbound layers
newest-first until ``current_stock`` units are covered.

When inbound history cannot cover current stock (opening stock, external
syncs) the whole product is valued at ``current_stock * cost_price`` and
``method`` says ``current_cost_fallback``. Mixing real layers with a guessed
remainder is never done.
"""

from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from multistock.core.logging_config import get_logger
from multistock.domain.errors import ProductNotFound
from multistock.domain.models import InventoryMovement, MovementKind, Product
from multistock.infrastructure.db import reading
from .schemas import ProductValuation, ValuationLayer

logger = get_logger(__name__)

METHOD_FIFO = "fifo"
METHOD_FALLBACK = "current_cost_fallback"

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class ValuationEngine:
    def __init__(self, db: Session):
        self.db = db

    def fifo_value(self, product_id: int) -> ProductValuation:
        """Valuation of one active product; inactive products are not found."""
        with reading(self.db):
            product = self.db.get(Product, product_id, populate_existing=True)
            if product is None or not product.active:
                raise ProductNotFound(product_id)
            layers = list(self.db.execute(
                self._inbound_layers().where(InventoryMovement.product_id == product_id)
            ).scalars())
        return value_product(product, layers)

    def fifo_value_all(self) -> List[ProductValuation]:
        """Valuation of every active product, largest FIFO value first."""
        with reading(self.db):
            products = list(self.db.execute(
                select(Product)
                .where(Product.active.is_(True))
                .order_by(Product.id)
                .execution_options(populate_existing=True)
            ).scalars())
            by_product: Dict[int, List[InventoryMovement]] = defaultdict(list)
            if products:
                ids = [p.id for p in products]
                for movement in self.db.execute(
                    self._inbound_layers().where(InventoryMovement.product_id.in_(ids))
                ).scalars():
                    by_product[movement.product_id].append(movement)

        valuations = [value_product(p, by_product.get(p.id, [])) for p in products]
        valuations.sort(key=lambda v: (-v.fifo_valuation, v.product_id))
        return valuations

    @staticmethod
    def _inbound_layers():
        return (
            select(InventoryMovement)
            .where(InventoryMovement.movement_type == MovementKind.INBOUND.value)
            .order_by(InventoryMovement.created_at, InventoryMovement.id)
        )


def value_product(product: Product, inbound: Sequence[InventoryMovement]) -> ProductValuation:
    """Value ``product`` from its inbound movements, given oldest-first."""
    stock = product.current_stock
    cost_price = Decimal(product.cost_price or 0)
    current_cost_valuation = money(stock * cost_price)

    layers = _covering_layers(stock, inbound, cost_price)
    if layers is None:
        method = METHOD_FALLBACK
        fifo_valuation = current_cost_valuation
        layers = []
        logger.debug(f"FIFO fallback for product {product.id}: inbound history does not cover stock {stock}")
    else:
        method = METHOD_FIFO
        fifo_valuation = money(sum((layer.value for layer in layers), Decimal("0")))

    selling_value = money(stock * Decimal(product.selling_price or 0))
    return ProductValuation(
        product_id=product.id,
        sku=product.sku,
        name=product.name,
        current_stock=stock,
        current_cost=money(cost_price),
        fifo_valuation=fifo_valuation,
        current_cost_valuation=current_cost_valuation,
        selling_value_estimate=selling_value,
        potential_profit=money(selling_value - fifo_valuation),
        method=method,
        layers=layers,
    )


def _covering_layers(
    stock: int, inbound: Sequence[InventoryMovement], cost_price: Decimal
) -> Optional[List[ValuationLayer]]:
    # Newest layers are the ones still on hand.
    remaining = stock
    taken: List[ValuationLayer] = []
    for movement in reversed(inbound):
        if remaining <= 0:
            break
        qty = min(movement.quantity, remaining)
        if qty <= 0:
            continue
        unit_cost = Decimal(movement.cost_per_unit) if movement.cost_per_unit is not None else cost_price
        taken.append(ValuationLayer(
            movement_id=movement.id,
            received_at=movement.created_at,
            quantity=qty,
            unit_cost=money(unit_cost),
            value=money(qty * unit_cost),
        ))
        remaining -= qty
    if remaining > 0:
        return None
    taken.reverse()
    return taken

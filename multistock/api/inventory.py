from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional, Union

from multistock.application.catalog import CatalogStore
from multistock.application.ledger import InventoryLedger
from multistock.application.schemas import (
    ConsistencyReport, HighMovementProduct, InventorySummaryItem, MovementCreate, MovementRead, MovementStats,
    ProductValuation, SyncReport, SyncRequest,
)
from multistock.application.valuation import ValuationEngine
from multistock.domain.clock import Clock
from multistock.domain.models import MovementKind, ReferenceKind
from .deps import get_clock, get_partition_db

router = APIRouter(prefix="/inventory", tags=["inventory"])

@router.get("/movements", response_model=list[MovementRead])
def list_movements(
    product_id: Optional[int] = None,
    movement_type: Optional[MovementKind] = None,
    reference_type: Optional[ReferenceKind] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_partition_db),
):
    return InventoryLedger(db).list_movements(
        product_id=product_id,
        movement_type=movement_type,
        reference_type=reference_type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )

@router.post("/movements", response_model=MovementRead, status_code=201)
def record_movement(payload: MovementCreate, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    movement = InventoryLedger(db, clock).record_movement(
        payload.product_id,
        payload.movement_type,
        payload.quantity,
        unit_cost=payload.cost_per_unit,
        reference_kind=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.notes,
        idempotency_key=payload.idempotency_key,
    )
    if movement is None:
        return Response(status_code=204)
    return movement

@router.get("/movements/stats", response_model=MovementStats)
def movement_stats(db: Session = Depends(get_partition_db)):
    return InventoryLedger(db).movement_stats()

@router.get("/movements/high", response_model=list[HighMovementProduct])
def high_movement_products(
    days: int = Query(30, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return InventoryLedger(db, clock).high_movement_products(days=days, limit=limit)

@router.post("/sync", response_model=SyncReport)
def sync_inventory(payload: SyncRequest, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return InventoryLedger(db, clock).sync(payload.sync_data)

@router.get("/valuation/fifo", response_model=Union[ProductValuation, List[ProductValuation]])
def fifo_valuation(product_id: Optional[int] = None, db: Session = Depends(get_partition_db)):
    engine = ValuationEngine(db)
    if product_id is not None:
        return engine.fifo_value(product_id)
    return engine.fifo_value_all()

@router.get("/summary", response_model=list[InventorySummaryItem])
def inventory_summary(db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return CatalogStore(db, clock).inventory_summary()

@router.get("/consistency/{product_id}", response_model=ConsistencyReport)
def verify_consistency(product_id: int, db: Session = Depends(get_partition_db)):
    return InventoryLedger(db).verify_consistency(product_id)

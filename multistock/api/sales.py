from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from datetime import date
from typing import Optional

from multistock.application.sales import SalesService
from multistock.application.schemas import (
    PaymentStatusUpdate, SaleCancel, SaleCreate, SalesPeriod, SalesStats, SaleRead, TopProduct,
)
from multistock.domain.clock import Clock
from .deps import get_clock, get_partition_db

router = APIRouter(prefix="/sales", tags=["sales"])

@router.get("", response_model=list[SaleRead])
def list_sales(
    client_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    include_cancelled: bool = True,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return SalesService(db, clock).list(
        client_id=client_id,
        payment_status=payment_status,
        include_cancelled=include_cancelled,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )

@router.post("", response_model=SaleRead, status_code=201)
def create_sale(payload: SaleCreate, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return SalesService(db, clock).create(payload)

@router.get("/stats", response_model=SalesStats)
def sales_stats(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_partition_db),
):
    return SalesService(db).stats(date_from=date_from, date_to=date_to)

@router.get("/by-period", response_model=list[SalesPeriod])
def sales_by_period(
    period: str = "day",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_partition_db),
):
    return SalesService(db).sales_by_period(period, date_from=date_from, date_to=date_to, limit=limit)

@router.get("/top-products", response_model=list[TopProduct])
def top_products(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_partition_db),
):
    return SalesService(db).top_products(date_from=date_from, date_to=date_to, limit=limit)

@router.get("/{sale_id}", response_model=SaleRead)
def get_sale(sale_id: int, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return SalesService(db, clock).get(sale_id)

@router.post("/{sale_id}/cancel", response_model=SaleRead)
def cancel_sale(
    sale_id: int,
    payload: Optional[SaleCancel] = None,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return SalesService(db, clock).cancel(sale_id, reason=payload.reason if payload else None)

@router.patch("/{sale_id}/payment-status", response_model=SaleRead)
def update_payment_status(
    sale_id: int,
    payload: PaymentStatusUpdate,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return SalesService(db, clock).update_payment_status(sale_id, payload.payment_status)

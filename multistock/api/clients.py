from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from multistock.application.counterparties import CounterpartyStore
from multistock.application.schemas import ClientCreate, ClientRead, ClientStats, ClientUpdate, OverdueClient
from multistock.domain.clock import Clock
from .deps import get_clock, get_partition_db

router = APIRouter(prefix="/clients", tags=["clients"])

@router.get("", response_model=list[ClientRead])
def list_clients(
    client_type: Optional[str] = None,
    city: Optional[str] = None,
    include_inactive: bool = False,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_partition_db),
):
    return CounterpartyStore(db).list(
        client_type=client_type, city=city, include_inactive=include_inactive, limit=limit, offset=offset
    )

@router.get("/search", response_model=list[ClientRead])
def search_clients(q: str = Query(..., min_length=1), limit: int = 20, db: Session = Depends(get_partition_db)):
    return CounterpartyStore(db).search(q, limit=limit)

@router.get("/stats", response_model=ClientStats)
def client_stats(db: Session = Depends(get_partition_db)):
    return CounterpartyStore(db).stats()

@router.get("/overdue", response_model=list[OverdueClient])
def overdue_clients(
    days_overdue: int = Query(0, ge=0),
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return CounterpartyStore(db, clock).overdue_clients(days_overdue)

@router.post("", response_model=ClientRead, status_code=201)
def create_client(payload: ClientCreate, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return CounterpartyStore(db, clock).create(payload)

@router.get("/{client_id}", response_model=ClientRead)
def get_client(client_id: int, db: Session = Depends(get_partition_db)):
    return CounterpartyStore(db).get(client_id)

@router.put("/{client_id}", response_model=ClientRead)
def update_client(
    client_id: int,
    payload: ClientUpdate,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return CounterpartyStore(db, clock).update(client_id, payload)

@router.delete("/{client_id}", response_model=ClientRead)
def deactivate_client(client_id: int, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return CounterpartyStore(db, clock).deactivate(client_id)

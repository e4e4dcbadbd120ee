from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from multistock.application.catalog import CatalogStore
from multistock.application.schemas import ProductCreate, ProductRead, ProductUpdate
from multistock.domain.clock import Clock
from .deps import get_clock, get_partition_db

router = APIRouter(prefix="/products", tags=["products"])

@router.get("", response_model=list[ProductRead])
def list_products(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
    low_stock: bool = False,
    include_inactive: bool = False,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return CatalogStore(db, clock).list(
        category=category,
        brand=brand,
        search=search,
        low_stock_only=low_stock,
        include_inactive=include_inactive,
        limit=limit,
        offset=offset,
    )

@router.post("", response_model=ProductRead, status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return CatalogStore(db, clock).create(payload)

@router.get("/{product_id}", response_model=ProductRead)
def get_product(product_id: int, db: Session = Depends(get_partition_db)):
    return CatalogStore(db).get(product_id)

@router.put("/{product_id}", response_model=ProductRead)
def update_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_partition_db),
    clock: Clock = Depends(get_clock),
):
    return CatalogStore(db, clock).update(product_id, payload)

@router.delete("/{product_id}", response_model=ProductRead)
def deactivate_product(product_id: int, db: Session = Depends(get_partition_db), clock: Clock = Depends(get_clock)):
    return CatalogStore(db, clock).deactivate(product_id)

from fastapi import APIRouter, Depends, Query
from typing import Optional

from multistock.application.schemas import TenantCreate, TenantRead, TenantStats
from multistock.application.tenant_registry import TenantRegistry
from multistock.domain.errors import TenantNotFound
from .deps import get_registry

# Irreversible-action token required by DELETE
DELETE_CONFIRMATION = "DELETE_EVERYTHING"

router = APIRouter(prefix="/api/admin/tenants", tags=["tenants"])

@router.get("", response_model=list[TenantRead])
def list_tenants(include_inactive: bool = True, registry: TenantRegistry = Depends(get_registry)):
    return registry.list(include_inactive=include_inactive)

@router.post("", response_model=TenantRead, status_code=201)
def create_tenant(payload: TenantCreate, registry: TenantRegistry = Depends(get_registry)):
    attrs = payload.model_dump(exclude={"tenant_code", "initial_data"})
    return registry.create(payload.tenant_code, attrs, initial_data=payload.initial_data)

@router.get("/{tenant_code}", response_model=TenantRead)
def get_tenant(tenant_code: str, registry: TenantRegistry = Depends(get_registry)):
    tenant = registry.get(tenant_code, include_inactive=True)
    if tenant is None:
        raise TenantNotFound(tenant_code)
    return tenant

@router.get("/{tenant_code}/stats", response_model=TenantStats)
def tenant_stats(tenant_code: str, registry: TenantRegistry = Depends(get_registry)):
    return registry.stats(tenant_code)

@router.post("/{tenant_code}/deactivate")
def deactivate_tenant(tenant_code: str, registry: TenantRegistry = Depends(get_registry)):
    if not registry.deactivate(tenant_code):
        raise TenantNotFound(tenant_code)
    return {"tenant_code": tenant_code, "active": False}

@router.delete("/{tenant_code}")
def delete_tenant(
    tenant_code: str,
    confirm: Optional[str] = Query(None, description=f"Must be {DELETE_CONFIRMATION}"),
    registry: TenantRegistry = Depends(get_registry),
):
    if not registry.delete(tenant_code, confirmed=confirm == DELETE_CONFIRMATION):
        raise TenantNotFound(tenant_code)
    return {"tenant_code": tenant_code, "deleted": True}

"""
Tenant registry: the platform ``tenants`` table and the lifecycle of each
tenant's partition.

``create`` provisions the partition and inserts the registry row on one
connection, so a failed provisioning never leaves a registered tenant behind.
``delete`` drops the partition and removes the row on one connection; if the
drop fails the row stays and the error propagates.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from multistock.core.logging_config import get_logger
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import DuplicateTenant, NotConfirmed, TenantNotFound, ValidationError
from multistock.domain.models import Client, Insight, PaymentStatus, Product, Sale, Tenant
from multistock.domain.partition import PartitionHandle, validate_tenant_code
from multistock.infrastructure.db import partition_session, platform_session, reading, transaction
from multistock.infrastructure.partitions import PartitionProvisioner
from .schemas import InitialData, TenantStats

logger = get_logger(__name__)

TENANT_FIELDS = (
    "company_name", "contact_person", "email", "phone", "address", "city", "state",
    "plan", "max_users", "max_products",
)


class TenantRegistry:
    def __init__(
        self,
        bind: Engine,
        provisioner: Optional[PartitionProvisioner] = None,
        clock: Optional[Clock] = None,
    ):
        self.bind = bind
        self.provisioner = provisioner or PartitionProvisioner(bind)
        self.clock = clock or SystemClock()

    def _find(self, session: Session, code: str, lock: bool = False) -> Optional[Tenant]:
        stmt = select(Tenant).where(Tenant.tenant_code == code)
        if lock:
            stmt = stmt.with_for_update()
        return session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def create(
        self,
        code: str,
        attrs: Optional[Dict[str, Any]] = None,
        initial_data: Optional[Union[InitialData, Dict[str, Any]]] = None,
    ) -> Tenant:
        """Register a tenant and provision its partition.

        Raises InvalidTenantCode, DuplicateTenant or ValidationError.
        """
        partition = PartitionHandle.for_tenant(validate_tenant_code(code))
        fields = {k: v for k, v in (attrs or {}).items() if k in TENANT_FIELDS and v is not None}
        if not fields.get("company_name"):
            raise ValidationError("company_name is required", {"tenant_code": code})
        if isinstance(initial_data, InitialData):
            initial_data = initial_data.model_dump()

        session = platform_session(self.bind)
        try:
            with transaction(session):
                if self._find(session, code) is not None:
                    raise DuplicateTenant(code)
                connection = session.connection()
                self.provisioner.provision(partition, connection)
                now = self.clock.now()
                tenant = Tenant(tenant_code=code, active=True, created_at=now, updated_at=now, **fields)
                session.add(tenant)
                session.flush()
                if initial_data:
                    self.provisioner.seed(partition, initial_data, connection)
        except IntegrityError as exc:
            raise DuplicateTenant(code) from exc
        finally:
            session.close()

        logger.info(
            f"Tenant created: {code}",
            extra={"extra_fields": {"tenant_code": code, "plan": tenant.plan}},
        )
        return tenant

    def get(self, code: str, include_inactive: bool = False) -> Optional[Tenant]:
        validate_tenant_code(code)
        session = platform_session(self.bind)
        try:
            with reading(session):
                tenant = self._find(session, code)
        finally:
            session.close()
        if tenant is None or (not tenant.active and not include_inactive):
            return None
        return tenant

    def list(self, include_inactive: bool = True) -> List[Tenant]:
        stmt = select(Tenant).order_by(Tenant.tenant_code)
        if not include_inactive:
            stmt = stmt.where(Tenant.active.is_(True))
        session = platform_session(self.bind)
        try:
            with reading(session):
                return list(session.execute(stmt).scalars())
        finally:
            session.close()

    def deactivate(self, code: str) -> bool:
        """Soft delete: the partition and its data are kept."""
        validate_tenant_code(code)
        session = platform_session(self.bind)
        try:
            with transaction(session):
                tenant = self._find(session, code, lock=True)
                if tenant is None:
                    return False
                tenant.active = False
                tenant.updated_at = self.clock.now()
        finally:
            session.close()
        logger.warning(f"Tenant deactivated: {code}")
        return True

    def delete(self, code: str, confirmed: bool = False) -> bool:
        """Irreversibly remove a tenant and its partition.

        Returns False when no such tenant exists. The row is locked, the
        partition dropped and the row deleted in one transaction.
        """
        validate_tenant_code(code)
        if confirmed is not True:
            raise NotConfirmed(code)

        session = platform_session(self.bind)
        try:
            with transaction(session):
                tenant = self._find(session, code, lock=True)
                if tenant is None:
                    return False
                self.provisioner.drop(tenant.partition, session.connection())
                session.delete(tenant)
        finally:
            session.close()
        logger.warning(f"Tenant deleted with its partition: {code}")
        return True

    def stats(self, code: str) -> TenantStats:
        tenant = self.get(code, include_inactive=True)
        if tenant is None:
            raise TenantNotFound(code)
        now = self.clock.now()
        session = partition_session(self.bind, tenant.partition)
        try:
            with reading(session):
                active_products = session.execute(
                    select(func.count(Product.id)).where(Product.active.is_(True))
                ).scalar_one()
                active_clients = session.execute(
                    select(func.count(Client.id)).where(Client.active.is_(True))
                ).scalar_one()
                total_sales = session.execute(select(func.count(Sale.id))).scalar_one()
                active_insights = session.execute(
                    select(func.count(Insight.id))
                    .where((Insight.expires_at.is_(None)) | (Insight.expires_at > now))
                ).scalar_one()
                inventory_value = session.execute(
                    select(func.coalesce(func.sum(Product.current_stock * Product.cost_price), 0))
                    .where(Product.active.is_(True))
                ).scalar_one()
                paid_revenue = session.execute(
                    select(func.coalesce(func.sum(Sale.total_amount), 0))
                    .where(Sale.payment_status == PaymentStatus.PAID.value)
                    .where(Sale.cancelled.is_(False))
                ).scalar_one()
        finally:
            session.close()

        return TenantStats(
            tenant_code=code,
            active_products=active_products,
            active_clients=active_clients,
            total_sales=total_sales,
            active_insights=active_insights,
            inventory_value=Decimal(str(inventory_value)).quantize(Decimal("0.01")),
            paid_revenue=Decimal(str(paid_revenue)).quantize(Decimal("0.01")),
            products_usage=f"{active_products}/{tenant.max_products}",
        )

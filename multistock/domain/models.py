from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer,
    MetaData, Numeric, String, Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from decimal import Decimal
from enum import Enum
from typing import Optional
import datetime

from .clock import utcnow
from .partition import PartitionHandle

# Placeholder schema for every tenant-scoped table. Sessions bind it to a real
# partition through schema_translate_map; an unbound session fails loudly
# instead of silently hitting the default schema.
PARTITION_SCHEMA = "partition"

JsonType = JSON().with_variant(JSONB(), "postgresql")


class MovementKind(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    ADJUSTMENT = "adjustment"
    EXTERNAL_SYNC = "sync"


class ReferenceKind(str, Enum):
    SALE = "sale"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    CANCELLATION = "cancellation"
    SYNC = "sync"
    MANUAL = "manual"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


UNPAID_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PARTIAL.value, PaymentStatus.OVERDUE.value)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {Severity.CRITICAL.value: 1, Severity.HIGH.value: 2, Severity.MEDIUM.value: 3, Severity.LOW.value: 4}


class InsightCategory(str, Enum):
    ALERT = "alert"
    OPPORTUNITY = "opportunity"
    INVENTORY = "inventory"
    SALES = "sales"
    CLIENT = "client"


class InsightStatus(str, Enum):
    GENERATED = "generated"
    SENT = "sent"
    READ = "read"
    ACTED = "acted"
    DISMISSED = "dismissed"


# ---------------------------------------------------------------------------
# Platform tables (shared, default schema)
# ---------------------------------------------------------------------------

class PlatformBase(DeclarativeBase):
    pass


class Tenant(PlatformBase):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_code: Mapped[str] = mapped_column(String(48), unique=True, index=True)
    company_name: Mapped[str] = mapped_column(String(255))
    contact_person: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    plan: Mapped[str] = mapped_column(String(50), default="basic")
    max_users: Mapped[int] = mapped_column(Integer, default=5)
    max_products: Mapped[int] = mapped_column(Integer, default=1000)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def partition(self) -> PartitionHandle:
        return PartitionHandle.for_tenant(self.tenant_code)

    @property
    def schema_name(self) -> str:
        return self.partition.name


# ---------------------------------------------------------------------------
# Partition tables (one copy per tenant)
# ---------------------------------------------------------------------------

class PartitionBase(DeclarativeBase):
    metadata = MetaData(schema=PARTITION_SCHEMA)


class Product(PartitionBase):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_products_stock_nonnegative"),
        Index("idx_products_category", "category"),
        Index("idx_products_active", "active"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cost_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    selling_price: Mapped[Decimal] = mapped_column(Numeric(15, 2))
    # Stock at creation time; it predates the ledger and is never a movement.
    opening_stock: Mapped[int] = mapped_column(Integer, default=0)
    # Derived: only InventoryLedger writes this column.
    current_stock: Mapped[int] = mapped_column(Integer, default=0)
    min_stock_threshold: Mapped[int] = mapped_column(Integer, default=10)
    max_stock_threshold: Mapped[int] = mapped_column(Integer, default=1000)
    unit_of_measure: Mapped[str] = mapped_column(String(50), default="unit")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Client(PartitionBase):
    __tablename__ = "clients"
    __table_args__ = (Index("idx_clients_active", "active"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    client_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    business_name: Mapped[str] = mapped_column(String(255))
    contact_person: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    whatsapp: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    client_type: Mapped[str] = mapped_column(String(50), default="wholesale")
    tax_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    credit_limit: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    payment_terms: Mapped[int] = mapped_column(Integer, default=30)  # days
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Sale(PartitionBase):
    __tablename__ = "sales"
    __table_args__ = (
        Index("idx_sales_date", "sale_date"),
        Index("idx_sales_payment_status", "payment_status"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    sale_number: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey(f"{PARTITION_SCHEMA}.clients.id"), index=True)
    sale_date: Mapped[datetime.date] = mapped_column(Date)
    due_date: Mapped[Optional[datetime.date]] = mapped_column(Date, nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2))
    payment_status: Mapped[str] = mapped_column(String(50), default=PaymentStatus.PENDING.value)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    client: Mapped[Client] = relationship("Client")
    lines: Mapped[list["SaleLine"]] = relationship(
        "SaleLine", back_populates="sale", cascade="all, delete-orphan", order_by="SaleLine.id"
    )


class SaleLine(PartitionBase):
    __tablename__ = "sale_details"
    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey(f"{PARTITION_SCHEMA}.sales.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey(f"{PARTITION_SCHEMA}.products.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(15, 2))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(Numeric(15, 2))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    sale: Mapped[Sale] = relationship("Sale", back_populates="lines")
    product: Mapped[Product] = relationship("Product")


class InventoryMovement(PartitionBase):
    """Append-only. Rows are inserted by InventoryLedger and never updated."""

    __tablename__ = "inventory_movements"
    __table_args__ = (
        CheckConstraint("new_stock = previous_stock + quantity", name="ck_movements_running_balance"),
        Index("idx_inventory_movement_type", "movement_type"),
        Index("idx_inventory_product_created", "product_id", "created_at"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey(f"{PARTITION_SCHEMA}.products.id"), index=True)
    movement_type: Mapped[str] = mapped_column(String(20))
    # Signed delta actually applied to current_stock
    quantity: Mapped[int] = mapped_column(Integer)
    previous_stock: Mapped[int] = mapped_column(Integer)
    new_stock: Mapped[int] = mapped_column(Integer)
    cost_per_unit: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    reference_type: Mapped[str] = mapped_column(String(50))
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, index=True)
    product: Mapped[Product] = relationship("Product")


class Insight(PartitionBase):
    __tablename__ = "insights"
    __table_args__ = (
        Index("idx_insights_natural_key_created", "natural_key", "created_at"),
        Index("idx_insights_priority", "priority"),
        Index("idx_insights_status", "status"),
        Index("idx_insights_expires_at", "expires_at"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    insight_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    natural_key: Mapped[str] = mapped_column(String(150))
    triggered_by: Mapped[str] = mapped_column(String(100))  # rule id
    type: Mapped[str] = mapped_column(String(50))  # category
    priority: Mapped[str] = mapped_column(String(20), default=Severity.MEDIUM.value)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text)
    recommendation: Mapped[str] = mapped_column(Text, default="")
    business_impact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.80"))
    channels: Mapped[list] = mapped_column(JsonType, default=list)
    status: Mapped[str] = mapped_column(String(20), default=InsightStatus.GENERATED.value)
    data: Mapped[dict] = mapped_column(JsonType, default=dict)
    expires_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def is_active(self, now: datetime.datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

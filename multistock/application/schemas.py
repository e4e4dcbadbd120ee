from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import datetime

from multistock.domain.models import InsightStatus, MovementKind, PaymentStatus, ReferenceKind, Severity, InsightCategory

TENANT_CODE_REGEX = r"^[a-z0-9_]+$"


# Tenants --------------------------------------------------------------------

class InitialProduct(BaseModel):
    sku: str
    name: str
    category: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Decimal = Decimal("0")
    selling_price: Decimal
    current_stock: int = Field(0, ge=0)
    min_stock_threshold: int = 10
    max_stock_threshold: int = 1000


class InitialClient(BaseModel):
    client_code: str
    business_name: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    client_type: str = "wholesale"
    credit_limit: Decimal = Decimal("0")
    payment_terms: int = 30


class InitialData(BaseModel):
    products: List[InitialProduct] = []
    clients: List[InitialClient] = []


class TenantCreate(BaseModel):
    tenant_code: str = Field(..., min_length=1, max_length=48, pattern=TENANT_CODE_REGEX)
    company_name: str = Field(..., min_length=1, max_length=255)
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    plan: str = "basic"
    max_users: int = 5
    max_products: int = 1000
    initial_data: Optional[InitialData] = None


class TenantRead(BaseModel):
    id: int
    tenant_code: str
    company_name: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    plan: str
    max_users: int
    max_products: int
    active: bool
    created_at: datetime.datetime
    class Config:
        from_attributes = True


class TenantStats(BaseModel):
    tenant_code: str
    active_products: int
    active_clients: int
    total_sales: int
    active_insights: int
    inventory_value: Decimal
    paid_revenue: Decimal
    products_usage: str


# Catalog --------------------------------------------------------------------

class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Decimal = Field(Decimal("0"), ge=0)
    selling_price: Decimal = Field(..., ge=0)
    # Opening stock; later changes go through the inventory ledger
    current_stock: int = Field(0, ge=0)
    min_stock_threshold: int = Field(10, ge=0)
    max_stock_threshold: int = Field(1000, ge=0)
    unit_of_measure: str = "unit"


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    min_stock_threshold: Optional[int] = Field(None, ge=0)
    max_stock_threshold: Optional[int] = Field(None, ge=0)
    unit_of_measure: Optional[str] = None
    active: Optional[bool] = None


class ProductRead(BaseModel):
    id: int
    sku: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Decimal
    selling_price: Decimal
    opening_stock: int
    current_stock: int
    min_stock_threshold: int
    max_stock_threshold: int
    unit_of_measure: str
    active: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime
    class Config:
        from_attributes = True


class InventorySummaryItem(BaseModel):
    product_id: int
    sku: str
    name: str
    category: Optional[str] = None
    current_stock: int
    min_stock_threshold: int
    max_stock_threshold: int
    stock_status: str
    inventory_value: Decimal
    movements_last_30_days: int


# Counterparties ---------------------------------------------------------------

class ClientCreate(BaseModel):
    client_code: str = Field(..., min_length=1, max_length=50)
    business_name: str = Field(..., min_length=1, max_length=255)
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    client_type: str = "wholesale"
    tax_id: Optional[str] = None
    credit_limit: Decimal = Field(Decimal("0"), ge=0)
    payment_terms: int = Field(30, ge=0)


class ClientUpdate(BaseModel):
    business_name: Optional[str] = None
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    client_type: Optional[str] = None
    tax_id: Optional[str] = None
    credit_limit: Optional[Decimal] = Field(None, ge=0)
    payment_terms: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None


class ClientRead(BaseModel):
    id: int
    client_code: str
    business_name: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    client_type: str
    tax_id: Optional[str] = None
    credit_limit: Decimal
    payment_terms: int
    active: bool
    created_at: datetime.datetime
    class Config:
        from_attributes = True


class ClientStats(BaseModel):
    total_clients: int
    active_clients: int
    by_type: Dict[str, int]
    total_cities: int
    total_states: int
    avg_credit_limit: Decimal
    avg_payment_terms: Decimal


class OverdueClient(BaseModel):
    client_id: int
    client_code: str
    business_name: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    payment_terms: int
    overdue_sales: int
    total_overdue_amount: Decimal
    oldest_overdue_date: datetime.date
    max_days_overdue: int
    avg_days_overdue: Decimal


# Sales ------------------------------------------------------------------------

class SaleLineCreate(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)


class SaleCreate(BaseModel):
    sale_number: Optional[str] = Field(None, max_length=100)
    client_id: int
    sale_date: Optional[datetime.date] = None
    lines: List[SaleLineCreate] = Field(..., min_length=1)
    tax_amount: Decimal = Field(Decimal("0"), ge=0)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    payment_method: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: Optional[str] = None


class SaleCancel(BaseModel):
    reason: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class SaleLineRead(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    line_total: Decimal
    class Config:
        from_attributes = True


class SaleRead(BaseModel):
    id: int
    sale_number: str
    client_id: int
    sale_date: datetime.date
    due_date: Optional[datetime.date] = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    payment_status: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    cancelled: bool
    cancelled_reason: Optional[str] = None
    created_at: datetime.datetime
    lines: List[SaleLineRead] = []
    class Config:
        from_attributes = True


class SalesStats(BaseModel):
    """Counts and amounts over uncancelled sales; ``cancelled_sales`` counts the rest."""
    total_sales: int
    cancelled_sales: int
    paid_sales: int
    pending_sales: int
    partial_sales: int
    overdue_sales: int
    total_revenue: Decimal
    paid_revenue: Decimal
    pending_revenue: Decimal
    avg_sale_amount: Decimal
    unique_clients: int


class SalesPeriod(BaseModel):
    period: str
    sales_count: int
    total_revenue: Decimal
    avg_sale_amount: Decimal
    unique_clients: int


class TopProduct(BaseModel):
    product_id: int
    sku: str
    name: str
    category: Optional[str] = None
    brand: Optional[str] = None
    total_quantity_sold: int
    total_revenue: Decimal
    sales_count: int
    avg_price_per_unit: Decimal


# Inventory ledger -------------------------------------------------------------

class MovementCreate(BaseModel):
    product_id: int
    movement_type: MovementKind
    quantity: int
    cost_per_unit: Optional[Decimal] = Field(None, ge=0)
    reference_type: ReferenceKind = ReferenceKind.MANUAL
    reference_id: Optional[int] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=100)


class MovementRead(BaseModel):
    id: int
    product_id: int
    movement_type: str
    quantity: int
    previous_stock: int
    new_stock: int
    cost_per_unit: Optional[Decimal] = None
    reference_type: str
    reference_id: Optional[int] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime.datetime
    class Config:
        from_attributes = True


class SyncEntry(BaseModel):
    product_id: int
    external_stock: int
    cost_price: Optional[Decimal] = Field(None, ge=0)


class SyncRequest(BaseModel):
    # Validated per entry by InventoryLedger.sync.
    sync_data: List[Dict[str, Any]]


class SyncReport(BaseModel):
    processed: int = 0
    updated: int = 0
    movements_created: int = 0
    errors: List[str] = []
    warnings: List[str] = []


class MovementKindStats(BaseModel):
    movement_type: str
    count: int
    total_quantity: int


class MovementStats(BaseModel):
    total_movements: int
    products_with_movements: int
    by_type: List[MovementKindStats]
    last_movement_at: Optional[datetime.datetime] = None


class HighMovementProduct(BaseModel):
    product_id: int
    sku: str
    name: str
    category: Optional[str] = None
    brand: Optional[str] = None
    current_stock: int
    movement_count: int
    total_quantity_moved: int
    total_inbound: int
    total_outbound: int
    avg_movement_size: Decimal
    last_movement_at: datetime.datetime


class ConsistencyReport(BaseModel):
    product_id: int
    opening_stock: int
    movement_total: int
    current_stock: int
    latest_new_stock: Optional[int] = None
    movement_count: int
    consistent: bool


# Valuation --------------------------------------------------------------------

class ValuationLayer(BaseModel):
    movement_id: int
    received_at: datetime.datetime
    quantity: int
    unit_cost: Decimal
    value: Decimal


class ProductValuation(BaseModel):
    product_id: int
    sku: str
    name: str
    current_stock: int
    current_cost: Decimal
    fifo_valuation: Decimal
    current_cost_valuation: Decimal
    selling_value_estimate: Decimal
    potential_profit: Decimal
    # "fifo" or "current_cost_fallback"
    method: str
    layers: List[ValuationLayer] = []


# Insights ---------------------------------------------------------------------

class InsightCreate(BaseModel):
    triggered_by: str = Field(..., min_length=1, max_length=100)
    type: InsightCategory
    priority: Severity
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    recommendation: str = ""
    business_impact: Optional[str] = None
    confidence: Decimal = Field(..., ge=0, le=1)
    channels: List[str] = []
    data: Dict[str, Any] = {}
    expires_at: Optional[datetime.datetime] = None


class InsightStatusUpdate(BaseModel):
    status: InsightStatus


class InsightRead(BaseModel):
    id: int
    insight_id: str
    natural_key: str
    triggered_by: str
    type: str
    priority: str
    title: str
    description: str
    recommendation: str
    business_impact: Optional[str] = None
    confidence: Decimal
    channels: List[str]
    status: str
    data: Dict[str, Any]
    expires_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    class Config:
        from_attributes = True


class InsightStats(BaseModel):
    total: int
    active: int
    expired: int
    by_priority: Dict[str, int]
    by_status: Dict[str, int]
    by_type: Dict[str, int]


class GenerateReport(BaseModel):
    evaluated_rules: List[str]
    created: List[InsightRead]
    skipped_duplicates: List[str]


class CleanupReport(BaseModel):
    deleted: int

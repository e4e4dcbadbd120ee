"""
Typed error hierarchy for the tenant, ledger and insight layers.

Every error carries a stable machine-readable ``code`` and a ``details`` dict
so callers branch on type, never on message text. HTTP mapping lives in
``multistock.api.errors``; nothing here knows about status codes.

    MultistockError
    +-- ValidationError
    |   +-- InvalidTenantCode
    |   +-- TenantRequired
    |   +-- NotConfirmed
    +-- NotFound
    |   +-- TenantNotFound / ProductNotFound / CounterpartyNotFound
    |   +-- SaleNotFound / InsightNotFound
    +-- Conflict
    |   +-- DuplicateTenant / DuplicateSku / DuplicateCounterparty / DuplicateSale
    |   +-- SaleAlreadyCancelled / InvalidStatusTransition
    +-- InsufficientStock
    +-- PartitionMissing
    +-- StoreTimeout
    +-- StoreUnavailable
"""

from typing import Any, Dict, Optional


class MultistockError(Exception):
    """Base class for all domain errors."""

    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Validation -----------------------------------------------------------------

class ValidationError(MultistockError):
    """Missing or malformed input. Never retried server-side."""

    code = "VALIDATION_ERROR"


class InvalidTenantCode(ValidationError):
    code = "INVALID_TENANT_CODE"

    def __init__(self, tenant_code: str):
        super().__init__(
            "Tenant code may only contain lowercase letters, digits and underscores "
            "(1-48 characters)",
            {"tenant_code": tenant_code},
        )
        self.tenant_code = tenant_code


class TenantRequired(ValidationError):
    code = "TENANT_REQUIRED"

    METHODS = {
        "header": "X-Tenant: acme",
        "subdomain": "acme.example.com",
        "url_param": "/api/tenant/acme/products",
        "query_param": "/api/products?tenant=acme",
    }

    def __init__(self):
        super().__init__(
            "A tenant must be specified via header, subdomain, URL path or query parameter",
            {"methods": dict(self.METHODS)},
        )


class NotConfirmed(ValidationError):
    code = "CONFIRMATION_REQUIRED"

    def __init__(self, tenant_code: str):
        super().__init__(
            "Deleting a tenant is irreversible and must be explicitly confirmed",
            {"tenant_code": tenant_code},
        )


# Not found ------------------------------------------------------------------

class NotFound(MultistockError):
    code = "NOT_FOUND"


class TenantNotFound(NotFound):
    code = "TENANT_NOT_FOUND"

    def __init__(self, tenant_code: str):
        super().__init__(
            f"Tenant '{tenant_code}' not found or inactive", {"tenant_code": tenant_code}
        )
        self.tenant_code = tenant_code


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: Any):
        super().__init__(f"Product {product_id} not found", {"product_id": product_id})
        self.product_id = product_id


class CounterpartyNotFound(NotFound):
    code = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: Any):
        super().__init__(f"Client {client_id} not found", {"client_id": client_id})


class SaleNotFound(NotFound):
    code = "SALE_NOT_FOUND"

    def __init__(self, sale_id: Any):
        super().__init__(f"Sale {sale_id} not found", {"sale_id": sale_id})


class InsightNotFound(NotFound):
    code = "INSIGHT_NOT_FOUND"

    def __init__(self, insight_id: str):
        super().__init__(f"Insight {insight_id} not found", {"insight_id": insight_id})


# Conflicts ------------------------------------------------------------------

class Conflict(MultistockError):
    code = "CONFLICT"


class DuplicateTenant(Conflict):
    code = "TENANT_EXISTS"

    def __init__(self, tenant_code: str):
        super().__init__(
            f"A tenant with code '{tenant_code}' already exists", {"tenant_code": tenant_code}
        )


class DuplicateSku(Conflict):
    code = "PRODUCT_EXISTS"

    def __init__(self, sku: str):
        super().__init__(f"A product with SKU '{sku}' already exists", {"sku": sku})


class DuplicateCounterparty(Conflict):
    code = "CLIENT_EXISTS"

    def __init__(self, client_code: str):
        super().__init__(
            f"A client with code '{client_code}' already exists", {"client_code": client_code}
        )


class DuplicateSale(Conflict):
    code = "SALE_EXISTS"

    def __init__(self, sale_number: str):
        super().__init__(
            f"A sale with number '{sale_number}' already exists", {"sale_number": sale_number}
        )


class SaleAlreadyCancelled(Conflict):
    code = "SALE_ALREADY_CANCELLED"

    def __init__(self, sale_id: int):
        super().__init__(f"Sale {sale_id} is already cancelled", {"sale_id": sale_id})


class InvalidStatusTransition(Conflict):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, insight_id: str, current: str, requested: str):
        super().__init__(
            f"Insight {insight_id} cannot move from '{current}' to '{requested}'",
            {"insight_id": insight_id, "current": current, "requested": requested},
        )


# Business rules -------------------------------------------------------------

class InsufficientStock(MultistockError):
    """The movement would drive stock below zero. Not a system fault."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"available {available}, requested {requested}",
            {"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


# Integrity / infrastructure -------------------------------------------------

class PartitionMissing(MultistockError):
    """
    A registered tenant has no storage partition. Server-side corruption,
    distinct from TenantNotFound; operators must be alerted.

    ``partition`` is kept on the instance for logs only and is deliberately
    absent from ``details`` so it never reaches a response body.
    """

    code = "PARTITION_MISSING"

    def __init__(self, tenant_code: str, partition: str):
        super().__init__(
            "Tenant storage is unavailable. Contact the administrator.",
            {"tenant_code": tenant_code},
        )
        self.tenant_code = tenant_code
        self.partition = partition


class StoreTimeout(MultistockError):
    """The store gave no answer within the configured bound."""

    code = "TIMEOUT"


class StoreUnavailable(MultistockError):
    code = "UNAVAILABLE"

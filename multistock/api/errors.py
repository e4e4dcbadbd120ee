from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from multistock.core.logging_config import get_logger
from multistock.domain.errors import (
    Conflict, InsufficientStock, MultistockError, NotFound, PartitionMissing, StoreTimeout,
    StoreUnavailable, ValidationError,
)

logger = get_logger(__name__)

# Checked in order; first match wins.
STATUS_BY_ERROR = (
    (ValidationError, 400),
    (InsufficientStock, 400),
    (NotFound, 404),
    (Conflict, 409),
    (PartitionMissing, 500),
    (StoreUnavailable, 503),
    (StoreTimeout, 504),
)


def status_for(exc: MultistockError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _tenant_headers(request: Request) -> dict:
    tenant_code = getattr(request.state, "tenant_code", None)
    return {"X-Tenant-Active": tenant_code} if tenant_code else {}


async def multistock_error_handler(request: Request, exc: MultistockError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"error": exc.code, "message": exc.message}
    tenant_code = exc.details.get("tenant_code") or getattr(request.state, "tenant_code", None)
    if tenant_code:
        body["tenant_code"] = tenant_code
    if status_code < 500:
        if exc.details:
            body["details"] = exc.details
    else:
        logger.error(
            f"Request failed with {exc.code}",
            extra={"extra_fields": {"path": request.url.path, "error": exc.code}},
        )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body),
        headers=_tenant_headers(request),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = {
        "error": ValidationError.code,
        "message": "Request validation failed",
        "details": {"errors": jsonable_encoder(exc.errors(), custom_encoder={Exception: str})},
    }
    tenant_code = getattr(request.state, "tenant_code", None)
    if tenant_code:
        body["tenant_code"] = tenant_code
    return JSONResponse(status_code=400, content=body, headers=_tenant_headers(request))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": MultistockError.code, "message": "Internal server error"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MultistockError, multistock_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

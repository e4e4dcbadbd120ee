"""
Multistock service
Multi-tenant inventory ledger, FIFO valuation and insight engine
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import subprocess
import os

from multistock import __version__
from multistock.api import catalog, clients, insights, inventory, sales, tenants
from multistock.api.deps import get_channel, get_engine
from multistock.api.errors import register_error_handlers
from multistock.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from multistock.core_settings import get_settings
from multistock.infrastructure.db import init_models

# Service configuration
SERVICE_NAME = "multistock"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", __version__)
SERVICE_DESCRIPTION = "Multi-tenant inventory ledger, FIFO valuation and insight service"

settings = get_settings()

setup_logging(service_name=SERVICE_NAME, level=settings.LOG_LEVEL)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    try:
        logger.info("Running platform migrations")
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=os.path.join(os.path.dirname(__file__), ".."),
            capture_output=True,
            text=True,
            check=False
        )
        if result.returncode != 0:
            logger.warning(f"Migration output: {result.stderr}")
        else:
            logger.info("Platform migrations completed")
    except Exception as e:
        logger.error(f"Migration error: {e}")

    try:
        init_models(get_engine())
        logger.info("Platform tables initialized")
    except Exception as e:
        logger.error(f"Failed to initialize platform tables: {e}")
        raise

    channel = get_channel()
    logger.info(f"{SERVICE_NAME} started successfully", extra={"extra_fields": {"insight_channel": channel.backend}})

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    channel.close()

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Tenant-Active"],
)

app.add_middleware(RequestLoggingMiddleware)

register_error_handlers(app)

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine_provider=lambda: app.dependency_overrides.get(get_engine, get_engine)(),
    channel_provider=lambda: app.dependency_overrides.get(get_channel, get_channel)(),
)
app.include_router(health_service.create_health_router())
app.include_router(health_service.create_health_router(), prefix="/api")

app.include_router(tenants.router)

# Tenant-scoped routes: tenant from header/subdomain/query at /api, or from the path.
TENANT_ROUTERS = (catalog.router, clients.router, sales.router, inventory.router, insights.router)
for tenant_router in TENANT_ROUTERS:
    app.include_router(tenant_router, prefix="/api")
    app.include_router(tenant_router, prefix="/api/tenant/{tenant_code}")

@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "tenant_identification": {
            "header": f"{settings.TENANT_HEADER}: acme",
            "subdomain": "acme.example.com",
            "url_param": "/api/tenant/acme/products",
            "query_param": "/api/products?tenant=acme"
        },
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "tenants": "/api/admin/tenants",
            "docs": "/api/docs"
        }
    }

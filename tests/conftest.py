import os

# Must be set before multistock modules build their default engine.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from multistock.api.deps import get_channel, get_clock, get_engine
from multistock.application.catalog import CatalogStore
from multistock.application.channel import LocalInsightChannel
from multistock.application.counterparties import CounterpartyStore
from multistock.application.insights import InsightEngine
from multistock.application.ledger import InventoryLedger
from multistock.application.sales import SalesService
from multistock.application.schemas import ClientCreate, ProductCreate, SaleCreate, SaleLineCreate
from multistock.application.tenant_registry import TenantRegistry
from multistock.application.valuation import ValuationEngine
from multistock.core_settings import Settings
from multistock.domain.clock import FixedClock
from multistock.infrastructure.db import create_store_engine, init_models, partition_session

NOW = datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite+pysqlite://", REDIS_URL=None)


@pytest.fixture
def engine(settings):
    engine = create_store_engine("sqlite+pysqlite://", settings)
    init_models(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def channel():
    channel = LocalInsightChannel()
    yield channel
    channel.close()


@pytest.fixture
def registry(engine, clock):
    return TenantRegistry(engine, clock=clock)


@pytest.fixture
def tenant(registry):
    return registry.create("acme", {"company_name": "Acme Distribution"})


@pytest.fixture
def db(engine, tenant):
    session = partition_session(engine, tenant.partition)
    yield session
    session.close()


@pytest.fixture
def catalog(db, clock):
    return CatalogStore(db, clock)


@pytest.fixture
def counterparties(db, clock):
    return CounterpartyStore(db, clock)


@pytest.fixture
def ledger(db, clock):
    return InventoryLedger(db, clock)


@pytest.fixture
def valuation(db):
    return ValuationEngine(db)


@pytest.fixture
def sales(db, clock):
    return SalesService(db, clock)


@pytest.fixture
def insights(db, clock, settings, channel):
    return InsightEngine(db, clock=clock, settings=settings, channel=channel)


@pytest.fixture
def make_product(catalog):
    def _make(sku="SKU-1", stock=100, cost="2.00", price="3.50", min_stock=10, max_stock=1000, **extra):
        return catalog.create(ProductCreate(
            sku=sku,
            name=extra.pop("name", f"Product {sku}"),
            cost_price=Decimal(cost),
            selling_price=Decimal(price),
            current_stock=stock,
            min_stock_threshold=min_stock,
            max_stock_threshold=max_stock,
            **extra,
        ))
    return _make


@pytest.fixture
def make_client(counterparties):
    def _make(code="CLI-1", terms=30, **extra):
        return counterparties.create(ClientCreate(
            client_code=code,
            business_name=extra.pop("business_name", f"Client {code}"),
            payment_terms=terms,
            **extra,
        ))
    return _make


@pytest.fixture
def make_sale(sales):
    def _make(client, lines, sale_date: date = None, **extra):
        return sales.create(SaleCreate(
            client_id=client.id,
            sale_date=sale_date,
            lines=[SaleLineCreate(product_id=p.id, quantity=q) for p, q in lines],
            **extra,
        ))
    return _make


@pytest.fixture
def client(engine, clock, channel):
    from multistock.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_channel] = lambda: channel
    yield TestClient(app)
    app.dependency_overrides.clear()

import pytest

from multistock.application.catalog import CatalogStore
from multistock.application.insights import InsightEngine
from multistock.application.ledger import InventoryLedger
from multistock.application.schemas import ProductCreate
from multistock.domain.errors import ProductNotFound
from multistock.infrastructure.db import partition_session


@pytest.fixture
def beta_db(engine, registry, tenant):
    beta = registry.create("beta", {"company_name": "Beta Foods"})
    session = partition_session(engine, beta.partition)
    yield session
    session.close()


def widget(sku="SKU-1", stock=10):
    return ProductCreate(sku=sku, name="Widget", selling_price="5.00", current_stock=stock)


def test_same_sku_and_ids_in_two_partitions(catalog, beta_db, clock):
    acme_product = catalog.create(widget(stock=10))
    beta_product = CatalogStore(beta_db, clock).create(widget(stock=99))

    assert acme_product.id == beta_product.id
    assert catalog.get_by_sku("SKU-1").current_stock == 10
    assert CatalogStore(beta_db, clock).get_by_sku("SKU-1").current_stock == 99


def test_movements_stay_in_their_partition(catalog, ledger, beta_db, clock):
    acme_product = catalog.create(widget(stock=10))
    CatalogStore(beta_db, clock).create(widget(stock=10))

    ledger.record_movement(acme_product.id, "outbound", 4)

    beta_ledger = InventoryLedger(beta_db, clock)
    assert CatalogStore(beta_db, clock).get(acme_product.id).current_stock == 10
    assert beta_ledger.list_movements() == []
    assert len(ledger.list_movements()) == 1


def test_product_of_one_tenant_is_unknown_to_another(catalog, beta_db, clock):
    product = catalog.create(widget(sku="ONLY-ACME"))
    with pytest.raises(ProductNotFound):
        CatalogStore(beta_db, clock).get_by_sku("ONLY-ACME")
    with pytest.raises(ProductNotFound):
        InventoryLedger(beta_db, clock).record_movement(product.id, "inbound", 1)


def test_insights_are_per_tenant(insights, catalog, beta_db, clock, settings, channel):
    catalog.create(widget(sku="OUT", stock=0))
    insights.generate()

    beta_insights = InsightEngine(beta_db, clock=clock, settings=settings, channel=channel)
    assert beta_insights.list() == []
    assert beta_insights.generate().created == []
    assert len(insights.list()) == 1

import pytest
from sqlalchemy import inspect

from multistock.domain.errors import InvalidTenantCode
from multistock.domain.partition import PartitionHandle, validate_tenant_code
from multistock.infrastructure.db import partition_session
from multistock.infrastructure.partitions import PARTITION_TABLES, PartitionProvisioner
from multistock.domain.models import Product


class TestPartitionHandle:
    def test_name_is_derived_from_code(self):
        handle = PartitionHandle.for_tenant("acme_01")
        assert handle.name == "tenant_acme_01"
        assert handle.tenant_code == "acme_01"

    @pytest.mark.parametrize("code", ["", "Acme", "acme-co", "a" * 49, "x; DROP TABLE tenants", "acme.co", None])
    def test_invalid_codes_are_rejected(self, code):
        with pytest.raises(InvalidTenantCode):
            validate_tenant_code(code)
        with pytest.raises(InvalidTenantCode):
            PartitionHandle.for_tenant(code)

    def test_longest_code_is_accepted(self):
        assert validate_tenant_code("a" * 48) == "a" * 48


class TestProvisioner:
    def test_provision_creates_every_table(self, engine):
        provisioner = PartitionProvisioner(engine)
        handle = PartitionHandle.for_tenant("solo")
        assert provisioner.exists(handle) is False

        provisioner.provision(handle)

        assert provisioner.exists(handle) is True
        with engine.connect() as conn:
            tables = set(inspect(conn).get_table_names(schema=handle.name))
        assert set(PARTITION_TABLES) <= tables

    def test_provision_twice_is_a_noop(self, engine):
        provisioner = PartitionProvisioner(engine)
        handle = PartitionHandle.for_tenant("solo")
        provisioner.provision(handle)
        provisioner.seed(handle, {"products": [{"sku": "A", "name": "A", "selling_price": "1.00"}]})

        provisioner.provision(handle)

        session = partition_session(engine, handle)
        try:
            assert session.query(Product).count() == 1
        finally:
            session.close()

    def test_seed_returns_counts(self, engine):
        provisioner = PartitionProvisioner(engine)
        handle = PartitionHandle.for_tenant("solo")
        provisioner.provision(handle)
        counts = provisioner.seed(handle, {
            "products": [
                {"sku": "A", "name": "Alpha", "selling_price": "5", "current_stock": 3},
                {"sku": "B", "name": "Beta", "selling_price": "7"},
            ],
            "clients": [{"client_code": "C1", "business_name": "Client One"}],
        })
        assert counts == {"products": 2, "clients": 1}

        session = partition_session(engine, handle)
        try:
            alpha = session.query(Product).filter_by(sku="A").one()
            assert alpha.opening_stock == 3
            assert alpha.current_stock == 3
        finally:
            session.close()

    def test_drop_removes_the_partition(self, engine):
        provisioner = PartitionProvisioner(engine)
        handle = PartitionHandle.for_tenant("solo")
        provisioner.provision(handle)

        with engine.connect() as conn:
            provisioner.drop(handle, conn)
            conn.commit()

        assert provisioner.exists(handle) is False

    def test_partitions_do_not_share_tables(self, engine):
        provisioner = PartitionProvisioner(engine)
        first = PartitionHandle.for_tenant("first")
        second = PartitionHandle.for_tenant("second")
        provisioner.provision(first)
        provisioner.provision(second)
        provisioner.seed(first, {"products": [{"sku": "A", "name": "A", "selling_price": "1"}]})

        session = partition_session(engine, second)
        try:
            assert session.query(Product).count() == 0
        finally:
            session.close()

from decimal import Decimal

import pytest

from multistock.application.schemas import InitialClient, InitialData, InitialProduct
from multistock.domain.errors import (
    DuplicateTenant, InvalidTenantCode, NotConfirmed, TenantNotFound, ValidationError,
)
from multistock.domain.partition import PartitionHandle


class TestCreate:
    def test_create_registers_and_provisions(self, registry):
        tenant = registry.create("acme", {"company_name": "Acme Distribution", "city": "Lima"})

        assert tenant.tenant_code == "acme"
        assert tenant.active is True
        assert tenant.plan == "basic"
        assert tenant.schema_name == "tenant_acme"
        assert registry.provisioner.exists(PartitionHandle.for_tenant("acme"))
        assert registry.get("acme").city == "Lima"

    def test_duplicate_code_is_rejected(self, registry, tenant):
        with pytest.raises(DuplicateTenant):
            registry.create("acme", {"company_name": "Another"})
        assert len(registry.list()) == 1

    def test_invalid_code_is_rejected(self, registry):
        with pytest.raises(InvalidTenantCode):
            registry.create("Acme-Co", {"company_name": "Acme"})
        assert registry.list() == []

    def test_company_name_is_required(self, registry):
        with pytest.raises(ValidationError):
            registry.create("acme", {})
        assert registry.provisioner.exists(PartitionHandle.for_tenant("acme")) is False

    def test_failed_provisioning_leaves_no_record(self, registry, monkeypatch):
        def broken(partition, connection=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(registry.provisioner, "provision", broken)
        with pytest.raises(RuntimeError):
            registry.create("acme", {"company_name": "Acme"})
        assert registry.get("acme", include_inactive=True) is None

    def test_initial_data_is_seeded(self, registry):
        registry.create(
            "beta",
            {"company_name": "Beta Foods"},
            initial_data=InitialData(
                products=[InitialProduct(
                    sku="A", name="Alpha", selling_price=Decimal("5"), cost_price=Decimal("2"), current_stock=10,
                )],
                clients=[InitialClient(client_code="C1", business_name="Client One")],
            ),
        )
        stats = registry.stats("beta")
        assert stats.active_products == 1
        assert stats.active_clients == 1
        assert stats.total_sales == 0
        assert stats.inventory_value == Decimal("20.00")
        assert stats.products_usage == "1/1000"


class TestLookup:
    def test_get_unknown_returns_none(self, registry):
        assert registry.get("ghost") is None

    def test_deactivated_tenant_is_hidden_by_default(self, registry, tenant):
        assert registry.deactivate("acme") is True

        assert registry.get("acme") is None
        assert registry.get("acme", include_inactive=True).active is False
        # partition is kept on soft delete
        assert registry.provisioner.exists(tenant.partition)

    def test_deactivate_unknown_returns_false(self, registry):
        assert registry.deactivate("ghost") is False

    def test_list_is_ordered_by_code(self, registry):
        registry.create("zeta", {"company_name": "Zeta"})
        registry.create("alpha", {"company_name": "Alpha"})
        registry.deactivate("zeta")

        assert [t.tenant_code for t in registry.list()] == ["alpha", "zeta"]
        assert [t.tenant_code for t in registry.list(include_inactive=False)] == ["alpha"]

    def test_stats_for_unknown_tenant(self, registry):
        with pytest.raises(TenantNotFound):
            registry.stats("ghost")


class TestDelete:
    def test_delete_requires_confirmation(self, registry, tenant):
        with pytest.raises(NotConfirmed):
            registry.delete("acme")
        with pytest.raises(NotConfirmed):
            registry.delete("acme", confirmed="yes")

        assert registry.get("acme") is not None
        assert registry.provisioner.exists(tenant.partition)

    def test_confirmed_delete_removes_record_and_partition(self, registry, tenant):
        assert registry.delete("acme", confirmed=True) is True

        assert registry.get("acme", include_inactive=True) is None
        assert registry.provisioner.exists(tenant.partition) is False

    def test_delete_unknown_returns_false(self, registry):
        assert registry.delete("ghost", confirmed=True) is False

    def test_failed_drop_keeps_the_record(self, registry, tenant, monkeypatch):
        def broken(partition, connection):
            raise RuntimeError("lock timeout")

        monkeypatch.setattr(registry.provisioner, "drop", broken)
        with pytest.raises(RuntimeError):
            registry.delete("acme", confirmed=True)

        assert registry.get("acme") is not None
        assert registry.provisioner.exists(tenant.partition)

    def test_code_can_be_reused_after_delete(self, registry, tenant):
        registry.delete("acme", confirmed=True)
        again = registry.create("acme", {"company_name": "Acme Reborn"})
        assert again.company_name == "Acme Reborn"
        assert registry.stats("acme").active_products == 0

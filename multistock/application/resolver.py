"""
Tenant resolution from request signals.

Precedence, first non-empty signal wins: tenant header, subdomain, URL path
segment (``/api/tenant/<code>/...``), ``tenant`` query parameter.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from multistock.core.logging_config import get_logger
from multistock.core_settings import Settings, get_settings
from multistock.domain.errors import PartitionMissing, TenantNotFound, TenantRequired
from multistock.domain.models import Tenant
from multistock.domain.partition import PartitionHandle, validate_tenant_code
from multistock.infrastructure.partitions import PartitionProvisioner
from .tenant_registry import TenantRegistry

logger = get_logger(__name__)

PATH_PATTERN = re.compile(r"^/api/tenant/([^/]+)/")


@dataclass
class RequestSignals:
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    host: Optional[str] = None
    query: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedTenant:
    tenant: Tenant
    partition: PartitionHandle
    source: str

    @property
    def tenant_code(self) -> str:
        return self.partition.tenant_code


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


class TenantResolver:
    def __init__(
        self,
        registry: TenantRegistry,
        provisioner: Optional[PartitionProvisioner] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.provisioner = provisioner or registry.provisioner
        self.settings = settings or get_settings()

    def is_public(self, path: str) -> bool:
        for public in self.settings.public_paths:
            if public == "/":
                if path == "/":
                    return True
            elif path.startswith(public):
                return True
        return False

    def _subdomain(self, host: Optional[str]) -> Optional[str]:
        if not host:
            return None
        hostname = host.split(":", 1)[0].strip().lower()
        if not hostname or hostname == "localhost":
            return None
        try:
            ipaddress.ip_address(hostname)
            return None
        except ValueError:
            pass
        labels = hostname.split(".")
        if len(labels) < 2:
            return None
        subdomain = labels[0]
        if not subdomain or subdomain in self.settings.ignored_subdomains:
            return None
        return subdomain

    def extract(self, signals: RequestSignals) -> Tuple[Optional[str], Optional[str]]:
        """First non-empty (code, source) in precedence order, or (None, None)."""
        header = (_header(signals.headers, self.settings.TENANT_HEADER) or "").strip()
        if header:
            return header, "header"
        subdomain = self._subdomain(signals.host)
        if subdomain:
            return subdomain, "subdomain"
        match = PATH_PATTERN.match(signals.path or "")
        if match:
            return match.group(1), "url_param"
        query = (signals.query.get("tenant") or "").strip()
        if query:
            return query, "query_param"
        return None, None

    def resolve(self, signals: RequestSignals) -> Optional[ResolvedTenant]:
        """Resolve the tenant for a request.

        Returns None only for public paths carrying no tenant signal. Raises
        TenantRequired, InvalidTenantCode, TenantNotFound or PartitionMissing.
        """
        code, source = self.extract(signals)
        if code is None:
            if self.is_public(signals.path):
                return None
            raise TenantRequired()

        validate_tenant_code(code)
        tenant = self.registry.get(code)
        if tenant is None:
            raise TenantNotFound(code)

        partition = tenant.partition
        if not self.provisioner.exists(partition):
            logger.error(
                "Registered tenant has no partition",
                extra={"extra_fields": {"tenant_code": code, "partition": partition.name}},
            )
            raise PartitionMissing(code, partition.name)

        logger.debug(f"Tenant resolved via {source}: {code}")
        return ResolvedTenant(tenant=tenant, partition=partition, source=source)

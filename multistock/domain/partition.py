import re
from dataclasses import dataclass

from .errors import InvalidTenantCode

TENANT_CODE_PATTERN = re.compile(r"^[a-z0-9_]{1,48}$")
PARTITION_PREFIX = "tenant_"


def validate_tenant_code(code) -> str:
    if not isinstance(code, str) or not TENANT_CODE_PATTERN.match(code):
        raise InvalidTenantCode(str(code))
    return code


@dataclass(frozen=True)
class PartitionHandle:
    """Opaque reference to one tenant's storage partition.

    Only ``for_tenant`` should build one: the code is validated once here and
    the partition name is a pure function of it, so nothing user-supplied ever
    reaches a DDL or query string unvalidated.
    """

    tenant_code: str

    def __post_init__(self):
        validate_tenant_code(self.tenant_code)

    @classmethod
    def for_tenant(cls, tenant_code: str) -> "PartitionHandle":
        return cls(validate_tenant_code(tenant_code))

    @property
    def name(self) -> str:
        return f"{PARTITION_PREFIX}{self.tenant_code}"

    def __repr__(self) -> str:
        return f"PartitionHandle({self.tenant_code!r})"

"""
Tenant identifiers.

Tenant ids are embedded in storage keys (``tenant:<id>:<key>``) and in the
patterns used for tenant-wide deletes, so separator and glob characters are
rejected up front.
"""

import re

from shared.errors import ValidationError
from shared.logging import tenant_id_var

TenantId = str

_FORBIDDEN = re.compile(r"[:*?\[\]\s]")


def validate_tenant_id(tenant_id: TenantId) -> TenantId:
    """Return the tenant id unchanged, or raise ValidationError."""
    if not isinstance(tenant_id, str) or not tenant_id:
        raise ValidationError("Tenant id must be a non-empty string", {"tenant_id": tenant_id})
    if _FORBIDDEN.search(tenant_id):
        raise ValidationError(
            "Tenant id contains reserved characters",
            {"tenant_id": tenant_id, "reserved": ": * ? [ ] whitespace"},
        )
    return tenant_id


def resolve_tenant() -> TenantId:
    """Resolve the ambient tenant for the current request context."""
    tenant_id = tenant_id_var.get()
    if not tenant_id:
        raise ValidationError("No tenant bound to the current context")
    return validate_tenant_id(tenant_id)

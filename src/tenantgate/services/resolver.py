from typing import Any, Optional

from src.tenantgate.core.exceptions import NotAMember, TenantHintRequired, TenantNotFound
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.refs import resolve_id
from src.tenantgate.models import TenantContext
from src.tenantgate.services.directory import TenantDirectory
from src.tenantgate.services.tokens import TokenVerifier

log = get_logger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def tenant_hint_from_headers(headers: Optional[dict]) -> Optional[str]:
    """Read the tenant hint header case-insensitively. Nothing else is consulted."""
    for name, value in (headers or {}).items():
        if name.lower() == TENANT_HEADER.lower():
            return resolve_id(value)
    return None


class TenantContextResolver:
    """Turns (credential, tenant hint) into a validated TenantContext.

    A pure lookup: it never writes, never falls back to a default tenant,
    and the role it returns is the principal's role in *that* tenant.
    """

    def __init__(self, verifier: TokenVerifier, directory: TenantDirectory):
        self.verifier = verifier
        self.directory = directory

    def resolve(self, token: Optional[str], tenant_hint: Any) -> TenantContext:
        principal = self.verifier.verify(token)

        tenant_id = resolve_id(tenant_hint)
        if tenant_id is None:
            log.info("tenant_hint_missing", principal_id=principal.user_id)
            raise TenantHintRequired(f"The {TENANT_HEADER} header is required")

        tenant = self.directory.get_tenant(tenant_id)
        if tenant is None:
            log.info("tenant_not_found", tenant_id=tenant_id, principal_id=principal.user_id)
            raise TenantNotFound(f"Tenant {tenant_id} not found", context={"tenant_id": tenant_id})

        membership = self.directory.get_membership(tenant.tenant_id, principal.user_id)
        if membership is None:
            log.warning("tenant_access_not_member", tenant_id=tenant_id, principal_id=principal.user_id)
            raise NotAMember("Principal is not a member of this tenant", context={"tenant_id": tenant_id})

        return TenantContext(principal=principal, tenant=tenant, role=membership.role)

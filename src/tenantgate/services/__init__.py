from .audit import AuditService
from .plan_catalog import DEFAULT_PLANS, PlanCatalog
from .directory import TenantDirectory
from .tokens import TokenVerifier, parse_bearer
from .resolver import TENANT_HEADER, TenantContextResolver, tenant_hint_from_headers
from .guard import AccessGuard
from .subscriptions import SubscriptionStateMachine, effective_state
from .usage import UsageMeter
from .enforcement import EnforcementFacade, Engine

__all__ = [
    "AuditService",
    "DEFAULT_PLANS", "PlanCatalog",
    "TenantDirectory",
    "TokenVerifier", "parse_bearer",
    "TENANT_HEADER", "TenantContextResolver", "tenant_hint_from_headers",
    "AccessGuard",
    "SubscriptionStateMachine", "effective_state",
    "UsageMeter",
    "EnforcementFacade", "Engine",
]

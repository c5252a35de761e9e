from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.tenantgate.core.refs import resolve_id
from src.tenantgate.models.membership import Role
from src.tenantgate.models.subscription import Subscription, SubscriptionState
from src.tenantgate.models.tenant import Tenant
from src.tenantgate.models.usage import LimitWarning, UsageDelta


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None


class TenantContext(BaseModel):
    """The resolved (principal, tenant, role) triple for one request."""

    model_config = ConfigDict(frozen=True)

    principal: Principal
    tenant: Tenant
    role: Role

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id


class AccessMode(str, Enum):
    READ = "read"
    WRITE = "write"
    EXPORT = "export"
    BILLING = "billing"


class Operation(BaseModel):
    """A business operation as declared by the collaborator that performs it."""

    name: str
    resource_tenant_id: str
    required_role: Role = Role.STAFF
    access: AccessMode = AccessMode.READ
    usage: List[UsageDelta] = Field(default_factory=list)
    required_feature: Optional[str] = None

    @field_validator("resource_tenant_id", mode="before")
    @classmethod
    def _normalize_tenant(cls, value):
        resolved = resolve_id(value)
        if resolved is None:
            raise ValueError("resource_tenant_id is required")
        return resolved

    @field_validator("required_role", mode="before")
    @classmethod
    def _parse_role(cls, value):
        return Role.parse(value)

    @property
    def increases_usage(self) -> bool:
        return bool(self.usage)


class EnforcementResult(BaseModel):
    context: TenantContext
    subscription: Subscription
    effective_state: SubscriptionState
    committed: List[UsageDelta] = Field(default_factory=list)
    warnings: List[LimitWarning] = Field(default_factory=list)

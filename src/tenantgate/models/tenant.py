from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from src.tenantgate.core.clock import utcnow


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class BusinessType(str, Enum):
    RETAIL = "retail"
    RESTAURANT = "restaurant"
    GROCERY = "grocery"
    PHARMACY = "pharmacy"
    OTHER = "other"


class TenantSettings(BaseModel):
    business_type: BusinessType = BusinessType.RETAIL
    currency: str = Field("USD", min_length=3, max_length=3)
    timezone: str = "America/New_York"
    tax_rate: float = Field(0.0, ge=0, le=100)


class Tenant(BaseModel):
    tenant_id: str = Field(..., description="Opaque tenant identifier")
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$", description="Globally unique URL-safe slug")
    owner_id: str = Field(..., description="User who onboarded the tenant")
    status: TenantStatus = TenantStatus.ACTIVE
    settings: TenantSettings = Field(default_factory=TenantSettings)
    current_subscription_id: Optional[str] = None
    admin_count: int = Field(1, ge=0, description="Members holding owner or admin")
    created_at: datetime = Field(default_factory=utcnow)
    disabled_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

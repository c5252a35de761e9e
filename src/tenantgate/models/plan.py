from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from src.tenantgate.core.clock import utcnow
from src.tenantgate.models.usage import ResourceKind


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanPrice(BaseModel):
    monthly: float = Field(..., ge=0)
    yearly: float = Field(..., ge=0)

    def for_cycle(self, cycle: BillingCycle) -> float:
        return self.yearly if cycle == BillingCycle.YEARLY else self.monthly


class PlanLimits(BaseModel):
    """``None`` means unlimited."""

    max_users: Optional[int] = Field(None, ge=0)
    max_products: Optional[int] = Field(None, ge=0)
    max_transactions_per_month: Optional[int] = Field(None, ge=0)
    max_storage_bytes: Optional[int] = Field(None, ge=0)

    def for_resource(self, resource: ResourceKind) -> Optional[int]:
        return {
            ResourceKind.USERS: self.max_users,
            ResourceKind.PRODUCTS: self.max_products,
            ResourceKind.TRANSACTIONS: self.max_transactions_per_month,
            ResourceKind.STORAGE: self.max_storage_bytes,
        }[resource]


class PlanFeatures(BaseModel):
    inventory: bool = True
    customers: bool = True
    loyalty: bool = False
    analytics: bool = False
    multi_location: bool = False
    advanced_analytics: bool = False
    advanced_reporting: bool = False
    api_access: bool = False
    custom_branding: bool = False
    priority_support: bool = False


class Plan(BaseModel):
    plan_id: str = Field(..., pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    version: int = Field(1, ge=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    price: PlanPrice
    currency: str = "USD"
    limits: PlanLimits
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    trial_days: int = Field(14, ge=0)
    is_active: bool = True
    order: int = 0
    published_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    def has_feature(self, feature: str) -> bool:
        return bool(getattr(self.features, feature, False))

    @property
    def ref(self) -> str:
        return f"{self.plan_id}@v{self.version}"

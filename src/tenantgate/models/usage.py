from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class MetricKind(str, Enum):
    STOCK = "stock"
    FLOW = "flow"


class ResourceKind(str, Enum):
    USERS = "users"
    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    STORAGE = "storage"

    @property
    def metric(self) -> MetricKind:
        if self == ResourceKind.TRANSACTIONS:
            return MetricKind.FLOW
        return MetricKind.STOCK


class UsageDelta(BaseModel):
    resource: ResourceKind
    amount: int = Field(1, ge=1)


class UsageCounter(BaseModel):
    tenant_id: str
    resource: ResourceKind
    period: Optional[str] = Field(None, description="YYYY-MM for flow metrics, None for stock metrics")
    count: int = 0


class LimitWarning(BaseModel):
    resource: ResourceKind
    threshold: float
    current: int
    limit: int


class UsageLine(BaseModel):
    resource: ResourceKind
    used: int
    limit: Optional[int]
    percentage: Optional[float]


class UsageSnapshot(BaseModel):
    tenant_id: str
    period: str
    lines: List[UsageLine]

    def line(self, resource: ResourceKind) -> UsageLine:
        for line in self.lines:
            if line.resource == resource:
                return line
        raise KeyError(resource)

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from src.tenantgate.core.refs import resolve_id
from src.tenantgate.models.subscription import SubscriptionState


class BillingEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_UPDATED = "subscription.updated"


class BillingEvent(BaseModel):
    event_id: str = Field(..., min_length=1, description="Provider event id, used for idempotency")
    type: str
    tenant_id: str
    subscription_id: Optional[str] = None
    amount: float = 0.0
    currency: str = "USD"
    invoice_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    occurred_at: Optional[datetime] = None

    @field_validator("tenant_id", "subscription_id", mode="before")
    @classmethod
    def _normalize_ref(cls, value):
        return resolve_id(value)

    @property
    def known_type(self) -> Optional[BillingEventType]:
        try:
            return BillingEventType(self.type)
        except ValueError:
            return None


class WebhookOutcome(BaseModel):
    event_id: str
    tenant_id: str
    duplicate: bool = False
    applied: bool = False
    state: Optional[SubscriptionState] = None

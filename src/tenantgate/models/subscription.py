from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from src.tenantgate.core.clock import utcnow
from src.tenantgate.models.plan import BillingCycle

PAYMENT_HISTORY_LIMIT = 24


class SubscriptionState(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self == SubscriptionState.CANCELLED


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentRecord(BaseModel):
    amount: float = 0.0
    currency: str = "USD"
    date: datetime = Field(default_factory=utcnow)
    status: PaymentStatus
    invoice_id: Optional[str] = None
    event_id: Optional[str] = None


class NextPayment(BaseModel):
    amount: float
    currency: str = "USD"
    due_at: datetime


class Subscription(BaseModel):
    subscription_id: str = Field(..., description="Unique subscription identifier (ULID)")
    tenant_id: str
    plan_id: str
    plan_version: int = Field(..., ge=1)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    state: SubscriptionState = SubscriptionState.TRIALING
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    past_due_since: Optional[datetime] = None
    last_payment: Optional[PaymentRecord] = None
    next_payment: Optional[NextPayment] = None
    payment_history: List[PaymentRecord] = Field(default_factory=list)
    revision: int = Field(0, ge=0, description="Optimistic concurrency counter")
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    @property
    def has_successful_payment(self) -> bool:
        return any(p.status == PaymentStatus.SUCCEEDED for p in self.payment_history)

    def record_payment(self, payment: PaymentRecord) -> None:
        self.payment_history = (self.payment_history + [payment])[-PAYMENT_HISTORY_LIMIT:]
        if payment.status == PaymentStatus.SUCCEEDED:
            self.last_payment = payment

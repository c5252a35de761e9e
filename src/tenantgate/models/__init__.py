from .tenant import Tenant, TenantSettings, TenantStatus, BusinessType
from .membership import Membership, Role
from .usage import (
    LimitWarning,
    MetricKind,
    ResourceKind,
    UsageCounter,
    UsageDelta,
    UsageLine,
    UsageSnapshot,
)
from .plan import BillingCycle, Plan, PlanFeatures, PlanLimits, PlanPrice
from .subscription import (
    NextPayment,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionState,
)
from .billing import BillingEvent, BillingEventType, WebhookOutcome
from .audit import AuditEntry
from .context import AccessMode, EnforcementResult, Operation, Principal, TenantContext

__all__ = [
    "Tenant", "TenantSettings", "TenantStatus", "BusinessType",
    "Membership", "Role",
    "LimitWarning", "MetricKind", "ResourceKind", "UsageCounter", "UsageDelta", "UsageLine", "UsageSnapshot",
    "BillingCycle", "Plan", "PlanFeatures", "PlanLimits", "PlanPrice",
    "NextPayment", "PaymentRecord", "PaymentStatus", "Subscription", "SubscriptionState",
    "BillingEvent", "BillingEventType", "WebhookOutcome",
    "AuditEntry",
    "AccessMode", "EnforcementResult", "Operation", "Principal", "TenantContext",
]

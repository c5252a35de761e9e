"""Subscription lifecycle.

States run ``trialing -> active -> past_due -> cancelled``; ``cancelled`` is
terminal. Time-based transitions (trial expiry, past-due grace, cancel at
period end) have no scheduler behind them: they are computed from the
stored record whenever the subscription is read and written back then, so
a record may lag the wall clock until its next access.

Every write is conditional on the record's ``revision``. Webhook events
are applied in one transaction together with a per-event marker item, so
a redelivered event can never be applied twice.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import boto3
import ulid
from botocore.exceptions import ClientError

from src.tenantgate.core.clock import add_months, ensure_aware, utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import (
    DuplicateWebhookEvent,
    PlanDowngradeBlocked,
    SubscriptionInactive,
    SubscriptionStateConflict,
    TenantNotFound,
    TransientPersistenceError,
)
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.persistence import (
    error_code,
    retry_transient,
    to_item,
    to_plain,
    transact_item,
    transact_values,
    wrap_client_error,
)
from src.tenantgate.models import (
    AccessMode,
    BillingCycle,
    BillingEvent,
    BillingEventType,
    MetricKind,
    NextPayment,
    PaymentRecord,
    PaymentStatus,
    Plan,
    ResourceKind,
    Subscription,
    SubscriptionState,
    WebhookOutcome,
)
from src.tenantgate.services.audit import AuditService
from src.tenantgate.services.plan_catalog import PlanCatalog

log = get_logger(__name__)

METADATA = "METADATA"
SUBSCRIPTION_PREFIX = "SUB#"
EVENT_PREFIX = "EVENT#"


def next_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    return add_months(start, 12 if cycle == BillingCycle.YEARLY else 1)


def effective_state(sub: Subscription, now: datetime, grace: timedelta) -> SubscriptionState:
    """The state ``sub`` is in at ``now``, including lapsed time-based transitions."""
    if sub.state == SubscriptionState.CANCELLED:
        return SubscriptionState.CANCELLED
    if sub.cancel_at_period_end and now >= sub.current_period_end:
        return SubscriptionState.CANCELLED

    state = sub.state
    past_due_since = sub.past_due_since
    if (
        state == SubscriptionState.TRIALING
        and sub.trial_end is not None
        and now > sub.trial_end
        and not sub.has_successful_payment
    ):
        state = SubscriptionState.PAST_DUE
        past_due_since = sub.trial_end

    if state == SubscriptionState.PAST_DUE:
        since = past_due_since or sub.current_period_end
        if now >= since + grace:
            return SubscriptionState.CANCELLED
    return state


def access_permitted(state: SubscriptionState, access: AccessMode, increases_usage: bool) -> bool:
    """Whether an operation may run against a subscription in ``state``."""
    if state in (SubscriptionState.TRIALING, SubscriptionState.ACTIVE):
        return True
    if state == SubscriptionState.PAST_DUE:
        return not increases_usage
    return access in (AccessMode.EXPORT, AccessMode.BILLING)


class SubscriptionStateMachine:
    def __init__(
        self,
        plans: PlanCatalog,
        settings: Optional[Settings] = None,
        audit: Optional[AuditService] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.plans = plans
        self.audit = audit
        self.grace = timedelta(days=self.settings.past_due_grace_days)
        self.dynamodb = boto3.resource("dynamodb", region_name=self.settings.region_name)
        self.client = self.dynamodb.meta.client
        self.table_name = self.settings.tenants_table
        self.table = self.dynamodb.Table(self.table_name)

    # ── Reads ────────────────────────────────────────────────────

    def get(self, tenant_id: str, subscription_id: str) -> Optional[Subscription]:
        response = self.table.get_item(Key={"tenant_id": tenant_id, "sk": SUBSCRIPTION_PREFIX + subscription_id})
        item = response.get("Item")
        return self._to_subscription(item) if item else None

    def get_stored(self, tenant_id: str) -> Subscription:
        """The tenant's current subscription record as persisted."""
        response = self.table.get_item(Key={"tenant_id": tenant_id, "sk": METADATA})
        item = response.get("Item")
        if not item or not item.get("current_subscription_id"):
            raise TenantNotFound(f"Tenant {tenant_id} has no subscription", context={"tenant_id": tenant_id})
        sub = self.get(tenant_id, item["current_subscription_id"])
        if sub is None:
            raise TenantNotFound(f"Tenant {tenant_id} has no subscription", context={"tenant_id": tenant_id})
        return sub

    @retry_transient
    def current(self, tenant_id: str, now: Optional[datetime] = None) -> Subscription:
        """Current subscription with lapsed time-based transitions applied and persisted."""
        now = ensure_aware(now or utcnow())
        sub = self.get_stored(tenant_id)
        updated = self._materialize(sub, now)
        if updated.state != sub.state:
            self._save(updated, expected_revision=sub.revision)
            self._record_transition(updated, sub.state, "lazy")
            updated = updated.model_copy(update={"revision": sub.revision + 1})
        return updated

    def plan_for(self, sub: Subscription) -> Plan:
        return self.plans.get(sub.plan_id, sub.plan_version)

    # ── Commands ─────────────────────────────────────────────────

    def start_trial(
        self,
        tenant_id: str,
        plan: Plan,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = ensure_aware(now or utcnow())
        trial_end = now + timedelta(days=plan.trial_days)
        sub = Subscription(
            subscription_id=str(ulid.new()),
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            plan_version=plan.version,
            billing_cycle=cycle,
            state=SubscriptionState.TRIALING,
            current_period_start=now,
            current_period_end=trial_end,
            trial_end=trial_end,
            next_payment=NextPayment(amount=plan.price.for_cycle(cycle), currency=plan.currency, due_at=trial_end),
            created_at=now,
        )
        self._create_current(sub, previous=None)
        self._record_transition(sub, None, "start_trial")
        return sub

    @retry_transient
    def change_plan(
        self,
        tenant_id: str,
        plan: Plan,
        stock_levels: Dict[ResourceKind, int],
        cycle: Optional[BillingCycle] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Switch plans. Only from ``active`` with no pending cancellation."""
        now = ensure_aware(now or utcnow())
        stored = self.get_stored(tenant_id)
        sub = self._materialize(stored, now)

        if sub.state != SubscriptionState.ACTIVE:
            raise SubscriptionInactive(
                "Plan changes require an active subscription", context={"state": sub.state.value}
            )
        if sub.cancel_at_period_end:
            raise SubscriptionInactive(
                "Plan changes are not allowed while cancellation is pending",
                context={"state": sub.state.value, "cancel_at_period_end": True},
            )

        violations = downgrade_violations(plan, stock_levels)
        if violations:
            raise PlanDowngradeBlocked(
                f"Current usage exceeds the limits of {plan.name}",
                context={"plan_id": plan.plan_id, "violations": violations},
            )

        cycle = cycle or sub.billing_cycle
        updated = sub.model_copy(
            update={
                "plan_id": plan.plan_id,
                "plan_version": plan.version,
                "billing_cycle": cycle,
                "next_payment": NextPayment(
                    amount=plan.price.for_cycle(cycle), currency=plan.currency, due_at=sub.current_period_end
                ),
            }
        )
        self._save(updated, expected_revision=stored.revision)
        log.info(
            "subscription_plan_changed",
            tenant_id=tenant_id,
            old_plan=f"{sub.plan_id}@v{sub.plan_version}",
            new_plan=plan.ref,
        )
        self._audit(tenant_id, "CHANGE_PLAN", sub.subscription_id, {"old": sub.plan_id, "new": plan.ref})
        return updated.model_copy(update={"revision": stored.revision + 1})

    @retry_transient
    def cancel(self, tenant_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> Subscription:
        """Cancel at period end; access continues until ``current_period_end``."""
        now = ensure_aware(now or utcnow())
        stored = self.get_stored(tenant_id)
        sub = self._materialize(stored, now)
        if sub.state.is_terminal:
            raise SubscriptionInactive("Subscription is already cancelled", context={"state": sub.state.value})
        if sub.cancel_at_period_end:
            return sub

        updated = sub.model_copy(
            update={
                "cancel_at_period_end": True,
                "cancelled_at": now,
                "cancel_reason": reason or "User requested cancellation",
                "next_payment": None,
            }
        )
        updated = updated.model_copy(update={"state": effective_state(updated, now, self.grace)})
        self._save(updated, expected_revision=stored.revision)
        log.info("subscription_cancel_requested", tenant_id=tenant_id, period_end=sub.current_period_end.isoformat())
        self._audit(tenant_id, "CANCEL_SUBSCRIPTION", sub.subscription_id, {"reason": updated.cancel_reason})
        return updated.model_copy(update={"revision": stored.revision + 1})

    def reactivate(
        self,
        tenant_id: str,
        plan: Plan,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Start a new subscription record for a tenant whose subscription is cancelled."""
        now = ensure_aware(now or utcnow())
        old = self.current(tenant_id, now)
        if old.state != SubscriptionState.CANCELLED:
            raise SubscriptionStateConflict(
                "Only a cancelled subscription can be reactivated", context={"state": old.state.value}
            )

        period_end = next_period_end(now, cycle)
        sub = Subscription(
            subscription_id=str(ulid.new()),
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            plan_version=plan.version,
            billing_cycle=cycle,
            state=SubscriptionState.ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            next_payment=NextPayment(amount=plan.price.for_cycle(cycle), currency=plan.currency, due_at=now),
            created_at=now,
        )
        self._create_current(sub, previous=old.subscription_id)
        self._record_transition(sub, SubscriptionState.CANCELLED, "reactivate")
        return sub

    # ── Billing webhooks ─────────────────────────────────────────

    def apply_event(self, event: BillingEvent, now: Optional[datetime] = None) -> WebhookOutcome:
        """Apply a provider event exactly once. Duplicates come back as a no-op outcome."""
        now = ensure_aware(now or utcnow())
        try:
            return self._apply_once(event, now)
        except DuplicateWebhookEvent:
            log.info("webhook_duplicate", event_id=event.event_id, tenant_id=event.tenant_id, type=event.type)
            self._audit(event.tenant_id, "WEBHOOK_DUPLICATE", event.event_id, {"type": event.type}, "recorded")
            return WebhookOutcome(event_id=event.event_id, tenant_id=event.tenant_id, duplicate=True)

    @retry_transient
    def _apply_once(self, event: BillingEvent, now: datetime) -> WebhookOutcome:
        if self._event_seen(event):
            raise DuplicateWebhookEvent("Event already applied", context={"event_id": event.event_id})

        if event.subscription_id:
            stored = self.get(event.tenant_id, event.subscription_id)
            if stored is None:
                raise TenantNotFound(
                    f"Subscription {event.subscription_id} not found",
                    context={"subscription_id": event.subscription_id},
                )
        else:
            stored = self.get_stored(event.tenant_id)

        before = self._materialize(stored, now)
        after = self._transition(before, event, now)
        after = after.model_copy(update={"revision": stored.revision + 1})

        marker = {
            "tenant_id": event.tenant_id,
            "sk": EVENT_PREFIX + event.event_id,
            "type": event.type,
            "subscription_id": stored.subscription_id,
            "applied_at": now.isoformat(),
        }
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": transact_item(marker),
                            "ConditionExpression": "attribute_not_exists(sk)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": transact_item(self._subscription_item(after)),
                            "ConditionExpression": "#rev = :rev",
                            "ExpressionAttributeNames": {"#rev": "revision"},
                            "ExpressionAttributeValues": transact_values({":rev": stored.revision}),
                        }
                    },
                ]
            )
        except ClientError as e:
            if error_code(e) != "TransactionCanceledException":
                raise wrap_client_error(e, "apply_billing_event")
            if self._event_seen(event):
                raise DuplicateWebhookEvent("Event already applied", context={"event_id": event.event_id})
            raise TransientPersistenceError(
                "Subscription changed concurrently", context={"subscription_id": stored.subscription_id}
            )

        if after.state != stored.state:
            self._record_transition(after, stored.state, event.type)
        self._audit(
            event.tenant_id,
            "WEBHOOK_APPLIED",
            event.event_id,
            {"type": event.type, "state": after.state.value},
            "recorded",
        )
        return WebhookOutcome(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            applied=event.known_type is not None,
            state=after.state,
        )

    def _transition(self, sub: Subscription, event: BillingEvent, now: datetime) -> Subscription:
        kind = event.known_type
        sub = sub.model_copy(deep=True)

        if kind == BillingEventType.PAYMENT_SUCCEEDED:
            sub.record_payment(self._payment(event, PaymentStatus.SUCCEEDED, now))
            if sub.state.is_terminal:
                log.warning("payment_for_cancelled_subscription", tenant_id=sub.tenant_id, event_id=event.event_id)
                return sub
            if event.period_start and event.period_end:
                start, end = ensure_aware(event.period_start), ensure_aware(event.period_end)
            elif sub.state == SubscriptionState.ACTIVE:
                start = sub.current_period_end
                end = next_period_end(start, sub.billing_cycle)
            else:
                start, end = now, next_period_end(now, sub.billing_cycle)
            sub.state = SubscriptionState.ACTIVE
            sub.past_due_since = None
            sub.current_period_start = start
            sub.current_period_end = end
            if not sub.cancel_at_period_end:
                plan = self.plan_for(sub)
                sub.next_payment = NextPayment(
                    amount=plan.price.for_cycle(sub.billing_cycle), currency=plan.currency, due_at=end
                )
            return sub

        if kind == BillingEventType.PAYMENT_FAILED:
            sub.record_payment(self._payment(event, PaymentStatus.FAILED, now))
            if sub.state == SubscriptionState.ACTIVE:
                sub.state = SubscriptionState.PAST_DUE
                sub.past_due_since = now
            return sub

        if kind == BillingEventType.SUBSCRIPTION_UPDATED:
            if sub.state.is_terminal:
                return sub
            if event.period_start and event.period_end:
                sub.current_period_start = ensure_aware(event.period_start)
                sub.current_period_end = ensure_aware(event.period_end)
            if event.cancel_at_period_end is True and not sub.cancel_at_period_end:
                sub.cancel_at_period_end = True
                sub.cancelled_at = now
                sub.cancel_reason = sub.cancel_reason or "Cancelled at billing provider"
            elif event.cancel_at_period_end is False:
                sub.cancel_at_period_end = False
                sub.cancelled_at = None
                sub.cancel_reason = None
            sub.state = effective_state(sub, now, self.grace)
            return sub

        log.info("webhook_ignored", event_id=event.event_id, type=event.type)
        return sub

    # ── Internals ────────────────────────────────────────────────

    def _materialize(self, sub: Subscription, now: datetime) -> Subscription:
        state = effective_state(sub, now, self.grace)
        if state == sub.state:
            return sub
        update = {"state": state}
        if state == SubscriptionState.PAST_DUE and sub.state == SubscriptionState.TRIALING:
            update["past_due_since"] = sub.trial_end
        if state == SubscriptionState.CANCELLED:
            update["cancelled_at"] = sub.cancelled_at or now
            update["next_payment"] = None
            if sub.cancel_reason is None:
                update["cancel_reason"] = "Grace period expired"
        return sub.model_copy(update=update)

    def _event_seen(self, event: BillingEvent) -> bool:
        response = self.table.get_item(
            Key={"tenant_id": event.tenant_id, "sk": EVENT_PREFIX + event.event_id},
            ConsistentRead=True,
        )
        return "Item" in response

    def _payment(self, event: BillingEvent, status: PaymentStatus, now: datetime) -> PaymentRecord:
        return PaymentRecord(
            amount=event.amount,
            currency=event.currency,
            date=ensure_aware(event.occurred_at or now),
            status=status,
            invoice_id=event.invoice_id,
            event_id=event.event_id,
        )

    def _save(self, sub: Subscription, expected_revision: int) -> None:
        item = self._subscription_item(sub.model_copy(update={"revision": expected_revision + 1}))
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression="#rev = :rev",
                ExpressionAttributeNames={"#rev": "revision"},
                ExpressionAttributeValues={":rev": expected_revision},
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise TransientPersistenceError(
                    "Subscription changed concurrently", context={"subscription_id": sub.subscription_id}
                )
            raise wrap_client_error(e, "save_subscription")

    def _create_current(self, sub: Subscription, previous: Optional[str]) -> None:
        if previous is None:
            pointer_condition = "attribute_exists(tenant_id) AND attribute_not_exists(current_subscription_id)"
            values = {":s": sub.subscription_id}
        else:
            pointer_condition = "current_subscription_id = :prev"
            values = {":s": sub.subscription_id, ":prev": previous}
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": transact_item(self._subscription_item(sub)),
                            "ConditionExpression": "attribute_not_exists(sk)",
                        }
                    },
                    {
                        "Update": {
                            "TableName": self.table_name,
                            "Key": transact_item({"tenant_id": sub.tenant_id, "sk": METADATA}),
                            "UpdateExpression": "SET current_subscription_id = :s",
                            "ConditionExpression": pointer_condition,
                            "ExpressionAttributeValues": transact_values(values),
                        }
                    },
                ]
            )
        except ClientError as e:
            if error_code(e) == "TransactionCanceledException":
                raise SubscriptionStateConflict(
                    "Tenant subscription changed concurrently or tenant is missing",
                    context={"tenant_id": sub.tenant_id},
                )
            raise wrap_client_error(e, "create_subscription")

    def _record_transition(self, sub: Subscription, old: Optional[SubscriptionState], trigger: str) -> None:
        log.info(
            "subscription_transition",
            tenant_id=sub.tenant_id,
            subscription_id=sub.subscription_id,
            old_state=old.value if old else None,
            new_state=sub.state.value,
            trigger=trigger,
        )
        self._audit(
            sub.tenant_id,
            "SUBSCRIPTION_TRANSITION",
            sub.subscription_id,
            {"from": old.value if old else None, "to": sub.state.value, "trigger": trigger},
        )

    def _audit(self, tenant_id: str, action: str, resource: str, metadata: dict, outcome: str = "allowed") -> None:
        if self.audit is not None:
            self.audit.log_action(tenant_id=tenant_id, action=action, resource=resource, outcome=outcome, metadata=metadata)

    @staticmethod
    def _subscription_item(sub: Subscription) -> dict:
        item = to_item(sub.model_dump(mode="json", exclude_none=True))
        item["sk"] = SUBSCRIPTION_PREFIX + sub.subscription_id
        return item

    @staticmethod
    def _to_subscription(item: dict) -> Subscription:
        item = to_plain(dict(item))
        item.pop("sk", None)
        return Subscription(**item)


def downgrade_violations(plan: Plan, stock_levels: Dict[ResourceKind, int]) -> List[dict]:
    violations = []
    for resource in ResourceKind:
        if resource.metric != MetricKind.STOCK:
            continue
        limit = plan.limits.for_resource(resource)
        current = stock_levels.get(resource, 0)
        if limit is not None and current > limit:
            violations.append({"resource": resource.value, "current": current, "limit": limit})
    return violations

"""The single gate every tenant-scoped business operation passes through.

Checks run cheapest first: identity, then role, then subscription state
and plan features, then usage. Nothing is metered for an operation that
a cheaper check already denied.
"""

from datetime import datetime
from typing import Optional, Tuple

from src.tenantgate.core.clock import ensure_aware, utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import (
    FeatureNotAvailable,
    MemberNotFound,
    SubscriptionInactive,
)
from src.tenantgate.core.logging import get_logger
from src.tenantgate.models import (
    AccessMode,
    BillingCycle,
    EnforcementResult,
    Membership,
    Operation,
    Principal,
    ResourceKind,
    Role,
    Subscription,
    Tenant,
    TenantContext,
    TenantSettings,
    UsageDelta,
    UsageSnapshot,
)
from src.tenantgate.secrets import SecretsManager
from src.tenantgate.services.audit import AuditService
from src.tenantgate.services.directory import TenantDirectory
from src.tenantgate.services.guard import AccessGuard
from src.tenantgate.services.plan_catalog import PlanCatalog
from src.tenantgate.services.resolver import TenantContextResolver
from src.tenantgate.services.subscriptions import SubscriptionStateMachine, access_permitted
from src.tenantgate.services.tokens import TokenVerifier
from src.tenantgate.services.usage import UsageMeter

log = get_logger(__name__)

DEFAULT_PLAN_ID = "starter"


class EnforcementFacade:
    def __init__(
        self,
        resolver: TenantContextResolver,
        guard: AccessGuard,
        subscriptions: SubscriptionStateMachine,
        usage: UsageMeter,
        directory: TenantDirectory,
        audit: Optional[AuditService] = None,
    ):
        self.resolver = resolver
        self.guard = guard
        self.subscriptions = subscriptions
        self.usage = usage
        self.directory = directory
        self.plans = subscriptions.plans
        self.audit = audit

    # ── Gate ─────────────────────────────────────────────────────

    def resolve(self, token: Optional[str], tenant_hint) -> TenantContext:
        return self.resolver.resolve(token, tenant_hint)

    def authorize(
        self, token: Optional[str], tenant_hint, operation: Operation, now: Optional[datetime] = None
    ) -> EnforcementResult:
        """Resolve the caller and enforce ``operation`` in one step."""
        return self.enforce(self.resolve(token, tenant_hint), operation, now)

    def enforce(self, context: TenantContext, operation: Operation, now: Optional[datetime] = None) -> EnforcementResult:
        now = ensure_aware(now or utcnow())
        self.guard.check(context, operation.resource_tenant_id, operation.required_role, operation.name)

        sub = self.subscriptions.current(context.tenant_id, now)
        if not access_permitted(sub.state, operation.access, operation.increases_usage):
            self._blocked(context, operation, "subscription_inactive", {"state": sub.state.value})
            raise SubscriptionInactive(
                f"Subscription is {sub.state.value}",
                context={"state": sub.state.value, "operation": operation.name},
            )

        plan = None
        if operation.required_feature or operation.usage:
            plan = self.subscriptions.plan_for(sub)
        if operation.required_feature and not plan.has_feature(operation.required_feature):
            self._blocked(context, operation, "feature_not_available", {"feature": operation.required_feature})
            raise FeatureNotAvailable(
                f"Plan {plan.name} does not include {operation.required_feature}",
                context={"feature": operation.required_feature, "plan_id": plan.plan_id},
            )

        warnings = []
        if operation.usage:
            warnings = self.usage.reserve(context.tenant_id, plan, operation.usage, now)

        log.debug(
            "operation_permitted",
            tenant_id=context.tenant_id,
            principal_id=context.principal.user_id,
            operation=operation.name,
            state=sub.state.value,
        )
        return EnforcementResult(
            context=context,
            subscription=sub,
            effective_state=sub.state,
            committed=list(operation.usage),
            warnings=warnings,
        )

    def release(self, context: TenantContext, resource: ResourceKind, amount: int = 1) -> int:
        """Return stock after the caller has deleted a metered resource."""
        return self.usage.release(context.tenant_id, ResourceKind(resource), amount)

    # ── Onboarding and tenant settings ───────────────────────────

    def onboard_tenant(
        self,
        principal: Principal,
        name: str,
        plan_id: Optional[str] = None,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        settings: Optional[TenantSettings] = None,
        slug: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Tenant, Subscription]:
        plan = self.plans.get(plan_id or DEFAULT_PLAN_ID)
        tenant = self.directory.create_tenant(
            name, principal.user_id, settings=settings, slug=slug, owner_email=principal.email
        )
        try:
            sub = self.subscriptions.start_trial(tenant.tenant_id, plan, cycle, now)
            self.usage.set_stock(tenant.tenant_id, ResourceKind.USERS, 1)
        except Exception:
            log.error("onboarding_failed", tenant_id=tenant.tenant_id, exc_info=True)
            self.directory.disable_tenant(tenant.tenant_id)
            raise

        if self.audit is not None:
            self.audit.log_action(
                tenant_id=tenant.tenant_id,
                action="ONBOARD_TENANT",
                resource=tenant.tenant_id,
                principal_id=principal.user_id,
                metadata={"slug": tenant.slug, "plan": plan.ref},
            )
        return tenant.model_copy(update={"current_subscription_id": sub.subscription_id}), sub

    def update_settings(
        self, context: TenantContext, settings: TenantSettings, now: Optional[datetime] = None
    ) -> Tenant:
        self.enforce(
            context,
            Operation(name="tenant.update_settings", resource_tenant_id=context.tenant_id,
                      required_role=Role.ADMIN, access=AccessMode.WRITE),
            now,
        )
        tenant = self.directory.update_settings(context.tenant_id, settings)
        self._record(context, "UPDATE_SETTINGS", context.tenant_id, settings.model_dump(mode="json"))
        return tenant

    def current_tenant(self, context: TenantContext, now: Optional[datetime] = None) -> Tenant:
        self.enforce(context, Operation(name="tenant.read", resource_tenant_id=context.tenant_id), now)
        return context.tenant

    def audit_log(self, context: TenantContext, limit: int = 50, now: Optional[datetime] = None) -> list:
        self.enforce(
            context,
            Operation(name="audit.read", resource_tenant_id=context.tenant_id, required_role=Role.ADMIN),
            now,
        )
        return self.audit.get_tenant_audit(context.tenant_id, limit=limit) if self.audit is not None else []

    # ── Memberships ──────────────────────────────────────────────

    def list_members(self, context: TenantContext, now: Optional[datetime] = None) -> list:
        self.enforce(context, Operation(name="member.list", resource_tenant_id=context.tenant_id), now)
        return self.directory.list_members(context.tenant_id)

    def invite_member(
        self,
        context: TenantContext,
        user_id: str,
        role: Role = Role.STAFF,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Membership:
        role = Role.parse(role)
        operation = Operation(
            name="member.invite",
            resource_tenant_id=context.tenant_id,
            required_role=Role.ADMIN,
            access=AccessMode.WRITE,
            usage=[UsageDelta(resource=ResourceKind.USERS, amount=1)],
        )
        if role == Role.OWNER and context.role != Role.OWNER:
            self.guard.check(context, context.tenant_id, Role.OWNER, operation.name)

        self.enforce(context, operation, now)
        try:
            membership = self.directory.add_member(
                context.tenant_id, user_id, role, email=email, invited_by=context.principal.user_id
            )
        except Exception:
            self.usage.release(context.tenant_id, ResourceKind.USERS, 1)
            raise

        self._record(context, "INVITE_MEMBER", user_id, {"role": role.value})
        return membership

    def change_member_role(
        self, context: TenantContext, user_id: str, new_role: Role, now: Optional[datetime] = None
    ) -> Membership:
        new_role = Role.parse(new_role)
        self.enforce(
            context,
            Operation(name="member.change_role", resource_tenant_id=context.tenant_id,
                      required_role=Role.OWNER, access=AccessMode.WRITE),
            now,
        )
        target = self._member(context, user_id)
        self.guard.check_membership_change(context, target, new_role, self.directory.count_admins(context.tenant_id))
        membership = self.directory.change_role(context.tenant_id, user_id, new_role)
        self._record(context, "CHANGE_ROLE", user_id, {"from": target.role.value, "to": new_role.value})
        return membership

    def remove_member(self, context: TenantContext, user_id: str, now: Optional[datetime] = None) -> Membership:
        self.enforce(
            context,
            Operation(name="member.remove", resource_tenant_id=context.tenant_id,
                      required_role=Role.ADMIN, access=AccessMode.WRITE),
            now,
        )
        target = self._member(context, user_id)
        self.guard.check_membership_change(context, target, None, self.directory.count_admins(context.tenant_id))
        removed = self.directory.remove_member(context.tenant_id, user_id)
        self.usage.release(context.tenant_id, ResourceKind.USERS, 1)
        self._record(context, "REMOVE_MEMBER", user_id, {"role": removed.role.value})
        return removed

    # ── Subscription management ──────────────────────────────────

    def subscription(self, context: TenantContext, now: Optional[datetime] = None) -> Subscription:
        """Billing access, so it stays readable after the subscription lapses."""
        operation = Operation(name="subscription.read", resource_tenant_id=context.tenant_id, access=AccessMode.BILLING)
        return self.enforce(context, operation, now).subscription

    def usage_snapshot(self, context: TenantContext, now: Optional[datetime] = None) -> UsageSnapshot:
        sub = self.subscription(context, now)
        return self.usage.snapshot(context.tenant_id, self.subscriptions.plan_for(sub), now)

    def change_plan(
        self,
        context: TenantContext,
        plan_id: str,
        cycle: Optional[BillingCycle] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        self.guard.check(context, context.tenant_id, Role.OWNER, "subscription.change_plan")
        plan = self.plans.get(plan_id)
        stock = self.usage.stock_levels(context.tenant_id)
        return self.subscriptions.change_plan(context.tenant_id, plan, stock, cycle, now)

    def cancel_subscription(
        self, context: TenantContext, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Subscription:
        self.guard.check(context, context.tenant_id, Role.OWNER, "subscription.cancel")
        return self.subscriptions.cancel(context.tenant_id, reason, now)

    def reactivate_subscription(
        self,
        context: TenantContext,
        plan_id: Optional[str] = None,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        now: Optional[datetime] = None,
    ) -> Subscription:
        self.guard.check(context, context.tenant_id, Role.OWNER, "subscription.reactivate")
        if plan_id is None:
            plan_id = self.subscriptions.get_stored(context.tenant_id).plan_id
        return self.subscriptions.reactivate(context.tenant_id, self.plans.get(plan_id), cycle, now)

    # ── Internals ────────────────────────────────────────────────

    def _member(self, context: TenantContext, user_id: str) -> Membership:
        target = self.directory.get_membership(context.tenant_id, user_id)
        if target is None:
            raise MemberNotFound(f"User {user_id} is not a member", context={"user_id": user_id})
        return target

    def _blocked(self, context: TenantContext, operation: Operation, reason: str, details: dict) -> None:
        log.info(
            "operation_blocked",
            tenant_id=context.tenant_id,
            principal_id=context.principal.user_id,
            operation=operation.name,
            reason=reason,
            **details,
        )
        if self.audit is not None:
            self.audit.log_action(
                tenant_id=context.tenant_id,
                action="OPERATION_BLOCKED",
                resource=operation.name,
                outcome="denied",
                principal_id=context.principal.user_id,
                metadata={"reason": reason, **details},
            )

    def _record(self, context: TenantContext, action: str, resource: str, metadata: dict) -> None:
        if self.audit is not None:
            self.audit.log_action(
                tenant_id=context.tenant_id,
                action=action,
                resource=resource,
                principal_id=context.principal.user_id,
                metadata=metadata,
            )


class Engine:
    """Every service wired from one ``Settings``; built once per Lambda invocation."""

    def __init__(self, settings: Optional[Settings] = None, secrets: Optional[SecretsManager] = None):
        self.settings = settings or Settings.from_env()
        self.secrets = secrets or SecretsManager(self.settings)
        self.audit = AuditService(self.settings)
        self.plans = PlanCatalog(self.settings)
        self.directory = TenantDirectory(self.settings)
        self.guard = AccessGuard(self.audit)
        self.subscriptions = SubscriptionStateMachine(self.plans, self.settings, self.audit)
        self.usage = UsageMeter(self.settings, self.audit)
        self._verifier: Optional[TokenVerifier] = None
        self._facade: Optional[EnforcementFacade] = None

    @property
    def verifier(self) -> TokenVerifier:
        if self._verifier is None:
            self._verifier = TokenVerifier.from_secrets(self.secrets)
        return self._verifier

    @property
    def facade(self) -> EnforcementFacade:
        if self._facade is None:
            self._facade = EnforcementFacade(
                resolver=TenantContextResolver(self.verifier, self.directory),
                guard=self.guard,
                subscriptions=self.subscriptions,
                usage=self.usage,
                directory=self.directory,
                audit=self.audit,
            )
        return self._facade

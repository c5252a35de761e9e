from typing import Optional

from src.tenantgate.core.exceptions import AccessDenied, CannotRemoveLastAdmin
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.refs import resolve_id
from src.tenantgate.models import Membership, Role, TenantContext
from src.tenantgate.services.audit import AuditService

log = get_logger(__name__)


class AccessGuard:
    """Allow/deny decisions for a resolved context.

    Decisions are pure; denials are reported to the audit trail before the
    error is raised.
    """

    def __init__(self, audit: Optional[AuditService] = None):
        self.audit = audit

    def check(self, context: TenantContext, resource_tenant_id, required_role: Role, operation: str = "") -> None:
        target_tenant = resolve_id(resource_tenant_id)
        if target_tenant is None or target_tenant != context.tenant_id:
            self._deny(
                context,
                operation,
                "cross_tenant",
                AccessDenied("Resource belongs to a different tenant"),
                resource_tenant_id=target_tenant,
            )

        required_role = Role.parse(required_role)
        if not context.role.at_least(required_role):
            self._deny(
                context,
                operation,
                "insufficient_role",
                AccessDenied(
                    f"Requires {required_role.value} or above",
                    context={"required_role": required_role.value, "role": context.role.value},
                ),
            )

    def check_membership_change(
        self,
        context: TenantContext,
        target: Membership,
        new_role: Optional[Role],
        admin_count: int,
    ) -> None:
        """Validate a removal (``new_role=None``) or role change of ``target``.

        Enforces that the actor outranks or equals the target, that only
        owners hand out the owner role, and that the tenant keeps at least
        one owner or admin.
        """
        operation = "member.remove" if new_role is None else "member.change_role"
        self.check(context, target.tenant_id, Role.ADMIN, operation)

        if target.role.rank > context.role.rank:
            self._deny(
                context,
                operation,
                "target_outranks_actor",
                AccessDenied(
                    f"Cannot modify a member with role {target.role.value}",
                    context={"target_role": target.role.value},
                ),
                target_user_id=target.user_id,
            )

        if new_role is not None and new_role == Role.OWNER and context.role != Role.OWNER:
            self._deny(
                context,
                operation,
                "owner_grant_requires_owner",
                AccessDenied("Only an owner can grant the owner role"),
                target_user_id=target.user_id,
            )

        loses_admin = target.role.is_admin and (new_role is None or not new_role.is_admin)
        if loses_admin and admin_count <= 1:
            self._deny(
                context,
                operation,
                "last_admin",
                CannotRemoveLastAdmin(
                    "The tenant must keep at least one owner or admin",
                    context={"tenant_id": context.tenant_id, "user_id": target.user_id},
                ),
                target_user_id=target.user_id,
            )

    def _deny(self, context: TenantContext, operation: str, reason: str, error: Exception, **details) -> None:
        log.warning(
            "access_denied",
            tenant_id=context.tenant_id,
            principal_id=context.principal.user_id,
            role=context.role.value,
            operation=operation,
            reason=reason,
            **details,
        )
        if self.audit is not None:
            self.audit.log_action(
                tenant_id=context.tenant_id,
                action="ACCESS_DENIED",
                resource=operation or "unknown",
                outcome="denied",
                principal_id=context.principal.user_id,
                metadata={"reason": reason, **{k: v for k, v in details.items() if v is not None}},
            )
        raise error

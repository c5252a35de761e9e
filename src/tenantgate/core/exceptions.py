"""Exception taxonomy for the enforcement engine.

Every failure the engine can hand back to a business operation is a
``TenantGateError`` subclass carrying a stable ``code`` and the HTTP status
the Lambda handlers answer with. Denials are final; only
``TransientPersistenceError`` is worth retrying.
"""

from typing import Any, Dict, Optional


class TenantGateError(Exception):
    code = "tenantgate_error"
    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            body["details"] = self.context
        return body


# ── Identity and tenant resolution ───────────────────────────────

class Unauthenticated(TenantGateError):
    code = "unauthenticated"
    status_code = 401


class TenantHintRequired(TenantGateError):
    code = "tenant_hint_required"
    status_code = 400


class TenantNotFound(TenantGateError):
    code = "tenant_not_found"
    status_code = 404


class NotAMember(TenantGateError):
    code = "not_a_member"
    status_code = 403


# ── Authorization ────────────────────────────────────────────────

class AccessDenied(TenantGateError):
    code = "access_denied"
    status_code = 403


class CannotRemoveLastAdmin(TenantGateError):
    code = "cannot_remove_last_admin"
    status_code = 409


# ── Subscription ─────────────────────────────────────────────────

class SubscriptionInactive(TenantGateError):
    code = "subscription_inactive"
    status_code = 402


class PlanDowngradeBlocked(TenantGateError):
    code = "plan_downgrade_blocked"
    status_code = 409


class FeatureNotAvailable(TenantGateError):
    code = "feature_not_available"
    status_code = 403


class PlanNotFound(TenantGateError):
    code = "plan_not_found"
    status_code = 404


class SubscriptionStateConflict(TenantGateError):
    code = "subscription_state_conflict"
    status_code = 409


# ── Usage ────────────────────────────────────────────────────────

class LimitExceeded(TenantGateError):
    code = "limit_exceeded"
    status_code = 403

    def __init__(self, resource: str, current: int, limit: int):
        super().__init__(
            f"{resource} limit reached ({current}/{limit})",
            context={"resource": resource, "current": current, "limit": limit},
        )
        self.resource = resource
        self.current = current
        self.limit = limit


# ── Directory ────────────────────────────────────────────────────

class SlugTaken(TenantGateError):
    code = "slug_taken"
    status_code = 409


class MemberAlreadyExists(TenantGateError):
    code = "member_already_exists"
    status_code = 409


class MemberNotFound(TenantGateError):
    code = "member_not_found"
    status_code = 404


# ── Billing webhooks ─────────────────────────────────────────────

class DuplicateWebhookEvent(TenantGateError):
    """Already-applied event; absorbed as success, reported only to audit."""

    code = "duplicate_webhook_event"
    status_code = 200


class InvalidWebhook(TenantGateError):
    code = "invalid_webhook"
    status_code = 400


# ── Persistence ──────────────────────────────────────────────────

class PersistenceError(TenantGateError):
    code = "persistence_error"
    status_code = 500


class TransientPersistenceError(PersistenceError):
    code = "transient_persistence_error"
    status_code = 503

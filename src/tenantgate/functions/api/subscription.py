from typing import Optional

from src.tenantgate.core.logging import configure_logging, get_logger
from src.tenantgate.functions.http import BadRequest, credentials, error_response, http_method, json_body, respond, route
from src.tenantgate.models import BillingCycle, TenantContext
from src.tenantgate.services import Engine

log = get_logger(__name__)

MAX_AUDIT_PAGE = 200


class SubscriptionAPI:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or Engine()
        self.facade = self.engine.facade

    def list_plans(self, event: dict):
        token, _ = credentials(event)
        self.engine.verifier.verify(token)
        return 200, {"plans": self.engine.plans.list_active()}

    def get_subscription(self, context: TenantContext):
        sub = self.facade.subscription(context)
        plan = self.engine.subscriptions.plan_for(sub)
        return 200, {"subscription": sub, "plan": plan}

    def get_usage(self, context: TenantContext):
        return 200, self.facade.usage_snapshot(context)

    def change_plan(self, context: TenantContext, event: dict):
        data = json_body(event)
        if not data.get("plan_id"):
            raise BadRequest("plan_id is required")
        cycle = BillingCycle(data["billing_cycle"]) if data.get("billing_cycle") else None
        return 200, self.facade.change_plan(context, data["plan_id"], cycle)

    def cancel(self, context: TenantContext, event: dict):
        return 200, self.facade.cancel_subscription(context, json_body(event).get("reason"))

    def reactivate(self, context: TenantContext, event: dict):
        data = json_body(event)
        cycle = BillingCycle(data.get("billing_cycle", BillingCycle.MONTHLY.value))
        return 200, self.facade.reactivate_subscription(context, data.get("plan_id"), cycle)

    def payments(self, context: TenantContext):
        sub = self.facade.subscription(context)
        return 200, {
            "subscription_id": sub.subscription_id,
            "last_payment": sub.last_payment,
            "next_payment": sub.next_payment,
            "payments": list(reversed(sub.payment_history)),
        }

    def audit_log(self, context: TenantContext, event: dict):
        params = event.get("queryStringParameters") or {}
        limit = min(int(params.get("limit", 50)), MAX_AUDIT_PAGE)
        return 200, {"entries": self.facade.audit_log(context, limit)}


def handler(event, context):
    try:
        api = SubscriptionAPI()
        configure_logging(api.engine.settings.log_level, api.engine.settings.log_json)
        method = http_method(event)
        resource = route(event)

        if resource == "/plans" and method == "GET":
            status, body = api.list_plans(event)
            return respond(status, body)

        token, hint = credentials(event)
        tenant_context = api.facade.resolve(token, hint)

        if resource == "/subscription" and method == "GET":
            status, body = api.get_subscription(tenant_context)
        elif resource == "/subscription/usage" and method == "GET":
            status, body = api.get_usage(tenant_context)
        elif resource == "/subscription/plan" and method == "PUT":
            status, body = api.change_plan(tenant_context, event)
        elif resource == "/subscription/cancel" and method == "POST":
            status, body = api.cancel(tenant_context, event)
        elif resource == "/subscription/reactivate" and method == "POST":
            status, body = api.reactivate(tenant_context, event)
        elif resource == "/subscription/payments" and method == "GET":
            status, body = api.payments(tenant_context)
        elif resource == "/tenant/audit" and method == "GET":
            status, body = api.audit_log(tenant_context, event)
        else:
            return respond(405, {"error": "method_not_allowed", "message": f"{method} {resource} is not supported"})

        return respond(status, body)

    except Exception as e:
        return error_response(e)

from typing import Optional

from src.tenantgate.core.logging import configure_logging, get_logger
from src.tenantgate.functions.http import BadRequest, credentials, error_response, http_method, json_body, respond, route
from src.tenantgate.models import BillingCycle, Role, TenantContext, TenantSettings
from src.tenantgate.services import Engine

log = get_logger(__name__)


class TenantAPI:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or Engine()
        self.facade = self.engine.facade

    def onboard(self, event: dict):
        token, _ = credentials(event)
        principal = self.engine.verifier.verify(token)
        data = json_body(event)
        if not data.get("name"):
            raise BadRequest("name is required")

        tenant, subscription = self.facade.onboard_tenant(
            principal,
            name=data["name"],
            plan_id=data.get("plan_id"),
            cycle=BillingCycle(data.get("billing_cycle", BillingCycle.MONTHLY.value)),
            settings=TenantSettings(**data["settings"]) if data.get("settings") else None,
            slug=data.get("slug"),
        )
        return 201, {"tenant": tenant, "subscription": subscription}

    def get_current(self, context: TenantContext):
        return 200, {"tenant": self.facade.current_tenant(context), "role": context.role.value}

    def update_settings(self, context: TenantContext, event: dict):
        merged = {**context.tenant.settings.model_dump(), **json_body(event)}
        tenant = self.facade.update_settings(context, TenantSettings(**merged))
        return 200, tenant

    def list_members(self, context: TenantContext):
        return 200, {"members": self.facade.list_members(context)}

    def invite(self, context: TenantContext, event: dict):
        data = json_body(event)
        if not data.get("user_id"):
            raise BadRequest("user_id is required")
        membership = self.facade.invite_member(
            context, data["user_id"], Role.parse(data.get("role", Role.STAFF.value)), email=data.get("email")
        )
        return 201, membership

    def change_role(self, context: TenantContext, user_id: str, event: dict):
        data = json_body(event)
        if not data.get("role"):
            raise BadRequest("role is required")
        return 200, self.facade.change_member_role(context, user_id, Role.parse(data["role"]))

    def remove(self, context: TenantContext, user_id: str):
        removed = self.facade.remove_member(context, user_id)
        return 200, {"status": "removed", "user_id": removed.user_id}


def handler(event, context):
    try:
        api = TenantAPI()
        configure_logging(api.engine.settings.log_level, api.engine.settings.log_json)
        method = http_method(event)
        resource = route(event)
        user_id = (event.get("pathParameters") or {}).get("user_id")

        if method == "POST" and resource == "/tenants":
            status, body = api.onboard(event)
            return respond(status, body)

        token, hint = credentials(event)
        tenant_context = api.facade.resolve(token, hint)

        if resource == "/tenant" and method == "GET":
            status, body = api.get_current(tenant_context)
        elif resource == "/tenant/settings" and method == "PATCH":
            status, body = api.update_settings(tenant_context, event)
        elif resource == "/tenant/members" and method == "GET":
            status, body = api.list_members(tenant_context)
        elif resource == "/tenant/members" and method == "POST":
            status, body = api.invite(tenant_context, event)
        elif resource.startswith("/tenant/members/") and user_id and method == "PATCH":
            status, body = api.change_role(tenant_context, user_id, event)
        elif resource.startswith("/tenant/members/") and user_id and method == "DELETE":
            status, body = api.remove(tenant_context, user_id)
        else:
            return respond(405, {"error": "method_not_allowed", "message": f"{method} {resource} is not supported"})

        return respond(status, body)

    except Exception as e:
        return error_response(e)

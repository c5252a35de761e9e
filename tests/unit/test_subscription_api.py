import unittest
import json
from moto import mock_aws
from src.tenantgate.functions.api.subscription import handler as subscription_handler
from src.tenantgate.models import BillingEvent, Principal, Role
from tests.unit.helpers import make_engine

@mock_aws
class TestSubscriptionAPI(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.tenant, self.sub = self.engine.facade.onboard_tenant(Principal(user_id="usr_owner"), "Acme")
        self.tenant_id = self.tenant.tenant_id
        self.owner_token = self.engine.verifier.issue("usr_owner")

    def call(self, method, resource, token=None, body=None, query=None):
        headers = {"X-Tenant-ID": self.tenant_id}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        event = {
            "httpMethod": method,
            "resource": resource,
            "headers": headers,
            "queryStringParameters": query,
            "body": json.dumps(body) if body is not None else None
        }
        response = subscription_handler(event, None)
        return response["statusCode"], json.loads(response["body"])

    def activate(self):
        self.engine.subscriptions.apply_event(
            BillingEvent(event_id="evt_pay", type="payment.succeeded", tenant_id=self.tenant_id, amount=29)
        )

    def test_plans_and_subscription(self):
        status, body = self.call("GET", "/plans", self.owner_token)
        self.assertEqual(status, 200)
        self.assertEqual([p["plan_id"] for p in body["plans"]], ["starter", "professional", "enterprise"])

        status, body = self.call("GET", "/subscription", self.owner_token)
        self.assertEqual(status, 200)
        self.assertEqual(body["subscription"]["subscription_id"], self.sub.subscription_id)
        self.assertEqual(body["subscription"]["state"], "trialing")
        self.assertEqual(body["plan"]["plan_id"], "starter")

        self.assertEqual(self.call("GET", "/plans")[0], 401)

    def test_usage(self):
        status, body = self.call("GET", "/subscription/usage", self.owner_token)
        self.assertEqual(status, 200)
        lines = {line["resource"]: line for line in body["lines"]}
        self.assertEqual(lines["users"]["used"], 1)
        self.assertEqual(lines["users"]["limit"], 3)
        self.assertEqual(lines["transactions"]["used"], 0)

    def test_change_plan_cancel_and_payments(self):
        status, body = self.call("PUT", "/subscription/plan", self.owner_token, {"plan_id": "professional"})
        self.assertEqual((status, body["error"]), (402, "subscription_inactive"))

        self.activate()
        status, body = self.call(
            "PUT", "/subscription/plan", self.owner_token, {"plan_id": "professional", "billing_cycle": "yearly"}
        )
        self.assertEqual(status, 200)
        self.assertEqual(body["plan_id"], "professional")
        self.assertEqual(body["billing_cycle"], "yearly")

        status, body = self.call("POST", "/subscription/cancel", self.owner_token, {"reason": "Moving on"})
        self.assertEqual(status, 200)
        self.assertTrue(body["cancel_at_period_end"])
        self.assertEqual(body["state"], "active")

        status, body = self.call("POST", "/subscription/reactivate", self.owner_token)
        self.assertEqual((status, body["error"]), (409, "subscription_state_conflict"))

        status, body = self.call("GET", "/subscription/payments", self.owner_token)
        self.assertEqual(status, 200)
        self.assertEqual(len(body["payments"]), 1)
        self.assertEqual(body["last_payment"]["event_id"], "evt_pay")
        self.assertIsNone(body["next_payment"])

    def test_billing_actions_require_owner(self):
        self.engine.directory.add_member(self.tenant_id, "usr_admin", Role.ADMIN)
        admin_token = self.engine.verifier.issue("usr_admin")
        status, body = self.call("POST", "/subscription/cancel", admin_token)
        self.assertEqual((status, body["error"]), (403, "access_denied"))

        status, body = self.call("GET", "/tenant/audit", admin_token, query={"limit": "10"})
        self.assertEqual(status, 200)
        actions = [entry["action"] for entry in body["entries"]]
        self.assertIn("ACCESS_DENIED", actions)

    def test_audit_requires_admin(self):
        self.engine.directory.add_member(self.tenant_id, "usr_staff", Role.STAFF)
        staff_token = self.engine.verifier.issue("usr_staff")
        self.assertEqual(self.call("GET", "/tenant/audit", staff_token)[0], 403)

    def test_missing_plan_id(self):
        self.assertEqual(self.call("PUT", "/subscription/plan", self.owner_token, {})[0], 400)
        self.assertEqual(self.call("DELETE", "/subscription", self.owner_token)[0], 405)

if __name__ == "__main__":
    unittest.main()

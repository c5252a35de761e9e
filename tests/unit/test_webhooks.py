import unittest
import base64
import json
from unittest import mock
from moto import mock_aws
from src.tenantgate.core.exceptions import TransientPersistenceError
from src.tenantgate.functions.api.webhooks import handler as webhook_handler, sign, verify_signature
from src.tenantgate.models import Principal
from src.tenantgate.services.subscriptions import SubscriptionStateMachine
from tests.unit.helpers import WEBHOOK_SECRET, make_engine

@mock_aws
class TestBillingWebhook(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.tenant, self.sub = self.engine.facade.onboard_tenant(Principal(user_id="usr_owner"), "Acme")

    def deliver(self, payload, signature=None, encode=False):
        raw = json.dumps(payload) if not isinstance(payload, str) else payload
        event = {
            "httpMethod": "POST",
            "resource": "/billing/webhook",
            "headers": {"X-Billing-Signature": signature or sign(WEBHOOK_SECRET, raw.encode())},
            "body": base64.b64encode(raw.encode()).decode() if encode else raw,
            "isBase64Encoded": encode
        }
        response = webhook_handler(event, None)
        return response["statusCode"], json.loads(response["body"])

    def payment(self, event_id="evt_1"):
        return {
            "event_id": event_id,
            "type": "payment.succeeded",
            "tenant_id": self.tenant.tenant_id,
            "subscription_id": self.sub.subscription_id,
            "amount": 29,
            "invoice_id": "inv_1"
        }

    def test_signature_helpers(self):
        digest = sign("secret", b"{}")
        self.assertTrue(verify_signature("secret", b"{}", digest.upper()))
        self.assertFalse(verify_signature("secret", b"{ }", digest))
        self.assertFalse(verify_signature("secret", b"{}", None))

    def test_payment_applied_once(self):
        status, body = self.deliver(self.payment())
        self.assertEqual(status, 200)
        self.assertTrue(body["applied"])
        self.assertEqual(body["state"], "active")

        status, body = self.deliver(self.payment(), encode=True)
        self.assertEqual(status, 200)
        self.assertTrue(body["duplicate"])

        stored = self.engine.subscriptions.get_stored(self.tenant.tenant_id)
        self.assertEqual(len(stored.payment_history), 1)

    def test_invalid_signature(self):
        status, body = self.deliver(self.payment(), signature="deadbeef")
        self.assertEqual((status, body["error"]), (400, "invalid_webhook"))
        self.assertEqual(
            self.engine.subscriptions.get_stored(self.tenant.tenant_id).state, "trialing"
        )

    def test_malformed_payload(self):
        self.assertEqual(self.deliver({"type": "payment.succeeded"})[0], 400)
        self.assertEqual(self.deliver("[1, 2]")[0], 400)
        self.assertEqual(self.deliver("not json")[0], 400)

    def test_unknown_type_acknowledged(self):
        status, body = self.deliver({"event_id": "evt_2", "type": "invoice.created", "tenant_id": self.tenant.tenant_id})
        self.assertEqual(status, 200)
        self.assertFalse(body["applied"])

    def test_transient_failure_asks_for_retry(self):
        with mock.patch.object(SubscriptionStateMachine, "apply_event", side_effect=TransientPersistenceError("busy")):
            status, body = self.deliver(self.payment())
        self.assertEqual((status, body["error"]), (503, "transient_persistence_error"))

    def test_events_that_cannot_apply_are_acknowledged(self):
        payload = dict(self.payment("evt_orphan"), tenant_id="ten_missing", subscription_id=None)
        status, body = self.deliver(payload)
        self.assertEqual(status, 200)
        self.assertFalse(body["applied"])
        self.assertFalse(body["duplicate"])

        status, body = self.deliver(dict(self.payment("evt_stray"), subscription_id="sub_missing"))
        self.assertEqual(status, 200)
        self.assertFalse(body["applied"])
        self.assertEqual(self.engine.subscriptions.get_stored(self.tenant.tenant_id).state, "trialing")

        actions = [e.action for e in self.engine.audit.get_tenant_audit(self.tenant.tenant_id, limit=50)]
        self.assertIn("WEBHOOK_REJECTED", actions)

if __name__ == "__main__":
    unittest.main()

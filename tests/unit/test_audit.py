import unittest
from moto import mock_aws
import boto3
from boto3.dynamodb.conditions import Key
from src.tenantgate.services.audit import AuditService
from tests.unit.helpers import create_tables, make_settings

@mock_aws
class TestAuditService(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        create_tables(self.settings)
        self.table = boto3.resource("dynamodb", region_name=self.settings.region_name).Table(self.settings.audit_table)
        self.service = AuditService(self.settings)

    def test_log_action(self):
        self.service.log_action(
            tenant_id="ten_123",
            action="ACCESS_DENIED",
            resource="member.remove",
            outcome="denied",
            principal_id="usr_1",
            metadata={"reason": "insufficient_role", "ratio": 0.5}
        )

        response = self.table.query(KeyConditionExpression=Key("tenant_id").eq("ten_123"))
        items = response.get("Items", [])
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["action"], "ACCESS_DENIED")
        self.assertEqual(items[0]["outcome"], "denied")
        self.assertIn("expires_at", items[0])

    def test_get_tenant_audit(self):
        self.service.log_action("ten_123", "ACTION1", "res1")
        self.service.log_action("ten_123", "ACTION2", "res2")
        self.service.log_action("ten_other", "ACTION3", "res3")

        entries = self.service.get_tenant_audit("ten_123")
        self.assertEqual(len(entries), 2)
        # Newest first.
        self.assertEqual(entries[0].action, "ACTION2")
        self.assertEqual(entries[1].action, "ACTION1")

    def test_write_failure_is_swallowed(self):
        self.table.delete()
        # Must not raise.
        self.service.log_action("ten_123", "ACTION1", "res1")

if __name__ == "__main__":
    unittest.main()

import unittest
from moto import mock_aws
from src.tenantgate.core.exceptions import PlanNotFound
from src.tenantgate.models import ResourceKind
from src.tenantgate.services.plan_catalog import PlanCatalog
from tests.unit.helpers import create_tables, make_settings

@mock_aws
class TestPlanCatalog(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        create_tables(self.settings)
        self.catalog = PlanCatalog(self.settings)

    def test_seed_defaults_is_idempotent(self):
        self.assertEqual(len(self.catalog.seed_defaults()), 3)
        self.assertEqual(self.catalog.seed_defaults(), [])

        plans = self.catalog.list_active()
        self.assertEqual([p.plan_id for p in plans], ["starter", "professional", "enterprise"])
        self.assertTrue(all(p.version == 1 for p in plans))

    def test_default_limits_and_features(self):
        self.catalog.seed_defaults()
        starter = self.catalog.get("starter")
        self.assertEqual(starter.limits.for_resource(ResourceKind.PRODUCTS), 500)
        self.assertEqual(starter.trial_days, 14)
        self.assertFalse(starter.has_feature("loyalty"))
        self.assertTrue(self.catalog.get("professional").has_feature("loyalty"))
        self.assertEqual(self.catalog.get("enterprise").trial_days, 30)

    def test_publish_creates_new_version(self):
        self.catalog.seed_defaults()
        v1 = self.catalog.get("starter")
        cheaper = v1.model_copy(update={"price": v1.price.model_copy(update={"monthly": 19})})
        v2 = self.catalog.publish(cheaper)

        self.assertEqual(v2.version, 2)
        self.assertEqual(self.catalog.get("starter").price.monthly, 19)
        # The old version stays readable for subscriptions that reference it.
        self.assertEqual(self.catalog.get("starter", version=1).price.monthly, 29)

    def test_retire_hides_plan_but_keeps_versions(self):
        self.catalog.seed_defaults()
        self.catalog.retire("professional")

        with self.assertRaises(PlanNotFound):
            self.catalog.get("professional")
        self.assertEqual(self.catalog.get("professional", version=1).name, "Professional")
        self.assertNotIn("professional", [p.plan_id for p in self.catalog.list_active()])

    def test_unknown_plan(self):
        with self.assertRaises(PlanNotFound):
            self.catalog.get("platinum")
        with self.assertRaises(PlanNotFound):
            self.catalog.get("starter", version=7)

if __name__ == "__main__":
    unittest.main()

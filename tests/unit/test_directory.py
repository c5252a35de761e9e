import unittest
from unittest import mock
import boto3
from moto import mock_aws
from src.tenantgate.core.exceptions import (
    CannotRemoveLastAdmin,
    MemberAlreadyExists,
    MemberNotFound,
    SlugTaken,
    TenantNotFound,
    TransientPersistenceError,
)
from src.tenantgate.models import Membership, Role, TenantSettings, TenantStatus
from src.tenantgate.services.directory import TenantDirectory, slugify
from tests.unit.helpers import REGION, create_tables, make_settings

@mock_aws
class TestTenantDirectory(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        create_tables(self.settings)
        self.directory = TenantDirectory(self.settings)
        self.tenant = self.directory.create_tenant("Corner Shop", "usr_owner", owner_email="owner@shop.test")

    def test_slugify(self):
        self.assertEqual(slugify("  Joe's Café & Bar!! "), "joe-s-caf-bar")
        self.assertEqual(slugify("***"), "shop")

    def test_create_tenant_writes_owner_membership(self):
        self.assertEqual(self.tenant.slug, "corner-shop")
        self.assertEqual(self.tenant.admin_count, 1)

        owner = self.directory.get_membership(self.tenant.tenant_id, "usr_owner")
        self.assertEqual(owner.role, Role.OWNER)
        self.assertEqual(owner.email, "owner@shop.test")
        self.assertEqual(self.directory.get_tenant_by_slug("corner-shop").tenant_id, self.tenant.tenant_id)

    def test_slug_collisions_get_suffixes(self):
        second = self.directory.create_tenant("Corner Shop", "usr_2")
        third = self.directory.create_tenant("Corner  Shop!", "usr_3")
        self.assertEqual(second.slug, "corner-shop-1")
        self.assertEqual(third.slug, "corner-shop-2")

    def test_explicit_slug_must_be_free(self):
        with self.assertRaises(SlugTaken):
            self.directory.create_tenant("Another", "usr_2", slug="corner-shop")

    def test_update_settings(self):
        updated = self.directory.update_settings(
            self.tenant.tenant_id, TenantSettings(currency="EUR", timezone="Europe/Paris", tax_rate=20.5)
        )
        self.assertEqual(updated.settings.currency, "EUR")
        self.assertEqual(updated.settings.tax_rate, 20.5)

        with self.assertRaises(TenantNotFound):
            self.directory.update_settings("ten_missing", TenantSettings())

    def test_disable_is_soft(self):
        self.directory.disable_tenant(self.tenant.tenant_id)
        self.assertIsNone(self.directory.get_tenant(self.tenant.tenant_id))

        disabled = self.directory.get_tenant(self.tenant.tenant_id, include_disabled=True)
        self.assertEqual(disabled.status, TenantStatus.SUSPENDED)
        self.assertIsNotNone(disabled.disabled_at)

        self.directory.enable_tenant(self.tenant.tenant_id)
        self.assertIsNotNone(self.directory.get_tenant(self.tenant.tenant_id))

    def test_add_member_and_duplicates(self):
        tid = self.tenant.tenant_id
        self.directory.add_member(tid, "usr_admin", Role.ADMIN, invited_by="usr_owner")
        self.directory.add_member(tid, "usr_staff", "cashier")

        self.assertEqual(self.directory.count_admins(tid), 2)
        roles = {m.user_id: m.role for m in self.directory.list_members(tid)}
        self.assertEqual(roles, {"usr_owner": Role.OWNER, "usr_admin": Role.ADMIN, "usr_staff": Role.STAFF})

        with self.assertRaises(MemberAlreadyExists):
            self.directory.add_member(tid, "usr_staff", Role.MANAGER)
        with self.assertRaises(TenantNotFound):
            self.directory.add_member("ten_missing", "usr_x", Role.STAFF)

    def test_change_role_tracks_admin_count(self):
        tid = self.tenant.tenant_id
        self.directory.add_member(tid, "usr_mgr", Role.MANAGER)
        self.directory.change_role(tid, "usr_mgr", Role.ADMIN)
        self.assertEqual(self.directory.count_admins(tid), 2)

        self.directory.change_role(tid, "usr_owner", Role.STAFF)
        self.assertEqual(self.directory.count_admins(tid), 1)
        self.assertEqual(self.directory.get_membership(tid, "usr_owner").role, Role.STAFF)

    def test_last_admin_cannot_be_demoted_or_removed(self):
        tid = self.tenant.tenant_id
        with self.assertRaises(CannotRemoveLastAdmin):
            self.directory.change_role(tid, "usr_owner", Role.MANAGER)
        with self.assertRaises(CannotRemoveLastAdmin):
            self.directory.remove_member(tid, "usr_owner")

        self.assertEqual(self.directory.get_membership(tid, "usr_owner").role, Role.OWNER)
        self.assertEqual(self.directory.count_admins(tid), 1)

    def test_transactions_store_plain_attributes(self):
        client = boto3.client("dynamodb", region_name=REGION)
        item = client.get_item(
            TableName=self.settings.tenants_table,
            Key={"tenant_id": {"S": self.tenant.tenant_id}, "sk": {"S": "METADATA"}},
        )["Item"]
        self.assertEqual(item["tenant_id"], {"S": self.tenant.tenant_id})
        self.assertEqual(item["name"], {"S": "Corner Shop"})
        self.assertEqual(item["admin_count"], {"N": "1"})

        slug = client.get_item(
            TableName=self.settings.tenants_table,
            Key={"tenant_id": {"S": "SLUG#corner-shop"}, "sk": {"S": "SLUG"}},
        )
        self.assertIn("Item", slug)

    def test_stale_role_is_a_concurrent_edit_not_last_admin(self):
        tid = self.tenant.tenant_id
        self.directory.add_member(tid, "usr_staff", Role.STAFF)
        stale = Membership(tenant_id=tid, user_id="usr_staff", role=Role.MANAGER)

        with mock.patch.object(self.directory, "_require_member", return_value=stale):
            with self.assertRaises(TransientPersistenceError):
                self.directory.change_role(tid, "usr_staff", Role.STAFF)
            with self.assertRaises(TransientPersistenceError):
                self.directory.remove_member(tid, "usr_staff")

        self.assertEqual(self.directory.get_membership(tid, "usr_staff").role, Role.STAFF)
        self.assertEqual(self.directory.count_admins(tid), 1)

    def test_remove_member(self):
        tid = self.tenant.tenant_id
        self.directory.add_member(tid, "usr_staff", Role.STAFF)
        removed = self.directory.remove_member(tid, "usr_staff")
        self.assertEqual(removed.user_id, "usr_staff")
        self.assertIsNone(self.directory.get_membership(tid, "usr_staff"))

        with self.assertRaises(MemberNotFound):
            self.directory.remove_member(tid, "usr_staff")

if __name__ == "__main__":
    unittest.main()

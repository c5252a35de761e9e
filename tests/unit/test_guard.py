import unittest
from unittest import mock

from src.tenantgate.core.exceptions import AccessDenied, CannotRemoveLastAdmin
from src.tenantgate.models import Membership, Principal, Role, Tenant, TenantContext
from src.tenantgate.services.guard import AccessGuard


def make_context(role: Role, tenant_id: str = "ten_a", user_id: str = "usr_actor") -> TenantContext:
    tenant = Tenant(tenant_id=tenant_id, name="Shop", slug="shop", owner_id="usr_owner")
    return TenantContext(principal=Principal(user_id=user_id), tenant=tenant, role=role)


class TestAccessGuard(unittest.TestCase):
    def setUp(self):
        self.audit = mock.Mock()
        self.guard = AccessGuard(self.audit)

    def test_allows_sufficient_role_in_same_tenant(self):
        self.guard.check(make_context(Role.MANAGER), "ten_a", Role.STAFF, "product.create")
        self.guard.check(make_context(Role.OWNER), {"id": "ten_a"}, Role.OWNER, "subscription.cancel")
        self.audit.log_action.assert_not_called()

    def test_denies_cross_tenant_even_for_owner(self):
        with self.assertRaises(AccessDenied):
            self.guard.check(make_context(Role.OWNER), "ten_b", Role.STAFF, "product.read")
        with self.assertRaises(AccessDenied):
            self.guard.check(make_context(Role.OWNER), None, Role.STAFF, "product.read")

        kwargs = self.audit.log_action.call_args.kwargs
        self.assertEqual(kwargs["action"], "ACCESS_DENIED")
        self.assertEqual(kwargs["outcome"], "denied")
        self.assertEqual(kwargs["metadata"]["reason"], "cross_tenant")

    def test_denies_insufficient_role(self):
        with self.assertRaises(AccessDenied) as ctx:
            self.guard.check(make_context(Role.STAFF), "ten_a", Role.ADMIN, "member.invite")
        self.assertEqual(ctx.exception.context["required_role"], "admin")

    def test_admin_cannot_act_on_owner(self):
        target = Membership(tenant_id="ten_a", user_id="usr_owner", role=Role.OWNER)
        with self.assertRaises(AccessDenied):
            self.guard.check_membership_change(make_context(Role.ADMIN), target, None, admin_count=3)

    def test_only_owner_grants_owner(self):
        target = Membership(tenant_id="ten_a", user_id="usr_m", role=Role.MANAGER)
        with self.assertRaises(AccessDenied):
            self.guard.check_membership_change(make_context(Role.ADMIN), target, Role.OWNER, admin_count=2)
        self.guard.check_membership_change(make_context(Role.OWNER), target, Role.OWNER, admin_count=2)

    def test_manager_cannot_manage_members(self):
        target = Membership(tenant_id="ten_a", user_id="usr_s", role=Role.STAFF)
        with self.assertRaises(AccessDenied):
            self.guard.check_membership_change(make_context(Role.MANAGER), target, None, admin_count=2)

    def test_last_admin_invariant(self):
        target = Membership(tenant_id="ten_a", user_id="usr_actor", role=Role.OWNER)
        with self.assertRaises(CannotRemoveLastAdmin):
            self.guard.check_membership_change(make_context(Role.OWNER), target, Role.STAFF, admin_count=1)
        with self.assertRaises(CannotRemoveLastAdmin):
            self.guard.check_membership_change(make_context(Role.OWNER), target, None, admin_count=1)

        # Owner -> admin keeps an admin in place.
        self.guard.check_membership_change(make_context(Role.OWNER), target, Role.ADMIN, admin_count=1)
        # Demoting one of two admins is fine.
        self.guard.check_membership_change(make_context(Role.OWNER), target, Role.STAFF, admin_count=2)

if __name__ == "__main__":
    unittest.main()

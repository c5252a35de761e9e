import unittest
from datetime import timedelta

import jwt
from moto import mock_aws

from src.tenantgate.core.exceptions import NotAMember, TenantHintRequired, TenantNotFound, Unauthenticated
from src.tenantgate.models import Role
from src.tenantgate.services.resolver import TenantContextResolver, tenant_hint_from_headers
from src.tenantgate.services.tokens import TokenVerifier, parse_bearer
from tests.unit.helpers import JWT_KEY, make_engine


class TestTokens(unittest.TestCase):
    def setUp(self):
        self.verifier = TokenVerifier(JWT_KEY)

    def test_parse_bearer(self):
        self.assertEqual(parse_bearer("Bearer abc.def"), "abc.def")
        self.assertEqual(parse_bearer("bearer abc"), "abc")
        self.assertIsNone(parse_bearer("Basic abc"))
        self.assertIsNone(parse_bearer("abc"))
        self.assertIsNone(parse_bearer(None))

    def test_round_trip_principal(self):
        token = self.verifier.issue("usr_1", email="a@b.test")
        principal = self.verifier.verify(token)
        self.assertEqual(principal.user_id, "usr_1")
        self.assertEqual(principal.email, "a@b.test")

    def test_rejects_expired_forged_and_missing(self):
        expired = self.verifier.issue("usr_1", ttl=timedelta(seconds=-10))
        forged = TokenVerifier("another-key-0123456789abcdef0123").issue("usr_1")
        no_exp = jwt.encode({"sub": "usr_1"}, JWT_KEY, algorithm="HS256")

        for token in (expired, forged, no_exp, "not-a-jwt", None, ""):
            with self.assertRaises(Unauthenticated):
                self.verifier.verify(token)

    def test_tenant_claims_are_ignored(self):
        token = jwt.encode(
            {"sub": "usr_1", "exp": 4102444800, "tenant_id": "ten_x", "role": "owner"},
            JWT_KEY,
            algorithm="HS256",
        )
        principal = self.verifier.verify(token)
        self.assertEqual(principal.model_dump(), {"user_id": "usr_1", "email": None})

    def test_audience_and_issuer(self):
        strict = TokenVerifier(JWT_KEY, audience="tenantgate", issuer="https://id.example")
        self.assertEqual(strict.verify(strict.issue("usr_1")).user_id, "usr_1")
        with self.assertRaises(Unauthenticated):
            strict.verify(self.verifier.issue("usr_1"))


@mock_aws
class TestTenantContextResolver(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.directory = self.engine.directory
        self.resolver = TenantContextResolver(self.engine.verifier, self.directory)
        self.tenant = self.directory.create_tenant("Shop A", "usr_owner")
        self.other = self.directory.create_tenant("Shop B", "usr_other")
        self.directory.add_member(self.tenant.tenant_id, "usr_staff", Role.STAFF)
        self.token = self.engine.verifier.issue("usr_staff")

    def test_resolves_role_in_hinted_tenant(self):
        context = self.resolver.resolve(self.token, self.tenant.tenant_id)
        self.assertEqual(context.tenant_id, self.tenant.tenant_id)
        self.assertEqual(context.role, Role.STAFF)
        self.assertEqual(context.principal.user_id, "usr_staff")

    def test_accepts_embedded_tenant_reference(self):
        context = self.resolver.resolve(self.token, {"_id": self.tenant.tenant_id})
        self.assertEqual(context.tenant_id, self.tenant.tenant_id)

    def test_failure_order(self):
        with self.assertRaises(Unauthenticated):
            self.resolver.resolve("garbage", None)
        with self.assertRaises(TenantHintRequired):
            self.resolver.resolve(self.token, None)
        with self.assertRaises(TenantNotFound):
            self.resolver.resolve(self.token, "ten_missing")
        with self.assertRaises(NotAMember):
            self.resolver.resolve(self.token, self.other.tenant_id)

    def test_disabled_tenant_is_not_found(self):
        self.directory.disable_tenant(self.tenant.tenant_id)
        with self.assertRaises(TenantNotFound):
            self.resolver.resolve(self.token, self.tenant.tenant_id)

    def test_tenant_hint_header_lookup(self):
        self.assertEqual(tenant_hint_from_headers({"x-tenant-id": " ten_1 "}), "ten_1")
        self.assertIsNone(tenant_hint_from_headers({"Authorization": "Bearer x"}))
        self.assertIsNone(tenant_hint_from_headers(None))

if __name__ == "__main__":
    unittest.main()

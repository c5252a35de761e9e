import unittest
from moto import mock_aws
import boto3
from src.tenantgate.core.exceptions import PersistenceError
from src.tenantgate.secrets import SecretsManager
from tests.unit.helpers import JWT_KEY, WEBHOOK_SECRET, create_secrets, make_settings

@mock_aws
class TestSecretsManager(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        create_secrets(self.settings)
        self.manager = SecretsManager(self.settings)

    def test_signing_material(self):
        self.assertEqual(self.manager.token_signing_key(), JWT_KEY)
        self.assertEqual(self.manager.webhook_signing_secret(), WEBHOOK_SECRET)

    def test_caching(self):
        self.manager.token_signing_key()
        self.assertIn(self.settings.jwt_secret_name, self.manager._cache)

        # Rotate the secret in the backend
        client = boto3.client("secretsmanager", region_name=self.settings.region_name)
        client.put_secret_value(SecretId=self.settings.jwt_secret_name, SecretString="rotated")

        # Still served from cache
        self.assertEqual(self.manager.token_signing_key(), JWT_KEY)

        self.manager.invalidate(self.settings.jwt_secret_name)
        self.assertEqual(self.manager.token_signing_key(), "rotated")

    def test_missing_secret(self):
        with self.assertRaises(PersistenceError):
            self.manager.get_secret("/tenantgate/does-not-exist")

if __name__ == "__main__":
    unittest.main()

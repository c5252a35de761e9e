import time
from typing import Optional, Dict, Any

import boto3
from botocore.exceptions import ClientError

from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import PersistenceError
from src.tenantgate.core.logging import get_logger

log = get_logger(__name__)


class SecretsManager:
    """Reads signing material from Secrets Manager with a short in-process cache."""

    def __init__(self, settings: Optional[Settings] = None, cache_ttl: int = 300):
        self.settings = settings or Settings.from_env()
        self.client = boto3.client("secretsmanager", region_name=self.settings.region_name)
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._cache_ttl = cache_ttl

    def get_secret(self, secret_name: str) -> str:
        if secret_name in self._cache:
            entry = self._cache[secret_name]
            if time.time() - entry["timestamp"] < self._cache_ttl:
                return entry["value"]

        try:
            response = self.client.get_secret_value(SecretId=secret_name)
        except ClientError as e:
            log.error("secret_read_failed", secret_name=secret_name, error=e.response["Error"]["Code"])
            raise PersistenceError(f"Unable to read secret {secret_name}") from e

        value = response["SecretString"]
        self._cache[secret_name] = {"value": value, "timestamp": time.time()}
        return value

    def token_signing_key(self) -> str:
        return self.get_secret(self.settings.jwt_secret_name)

    def webhook_signing_secret(self) -> str:
        return self.get_secret(self.settings.webhook_secret_name)

    def invalidate(self, secret_name: Optional[str] = None) -> None:
        if secret_name is None:
            self._cache.clear()
        else:
            self._cache.pop(secret_name, None)

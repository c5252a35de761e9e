from datetime import timedelta
from typing import Optional

import jwt

from src.tenantgate.core.clock import utcnow
from src.tenantgate.core.exceptions import Unauthenticated
from src.tenantgate.core.logging import get_logger
from src.tenantgate.models import Principal
from src.tenantgate.secrets import SecretsManager

log = get_logger(__name__)


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


class TokenVerifier:
    """Verifies identity tokens.

    Tokens identify the principal only. Tenant and role are looked up per
    request from memberships, so any such claims in a token are ignored.
    """

    def __init__(
        self,
        signing_key: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ):
        self._signing_key = signing_key
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer

    @classmethod
    def from_secrets(cls, secrets: SecretsManager) -> "TokenVerifier":
        settings = secrets.settings
        return cls(
            signing_key=secrets.token_signing_key(),
            algorithm=settings.jwt_algorithm,
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )

    def verify(self, token: Optional[str]) -> Principal:
        if not token:
            raise Unauthenticated("Missing bearer token")
        try:
            claims = jwt.decode(
                token,
                self._signing_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["sub", "exp"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            log.info("token_expired")
            raise Unauthenticated("Token has expired")
        except jwt.InvalidTokenError as e:
            log.info("token_invalid", reason=type(e).__name__)
            raise Unauthenticated("Token could not be verified")

        return Principal(user_id=str(claims["sub"]), email=claims.get("email"))

    def issue(self, user_id: str, email: Optional[str] = None, ttl: timedelta = timedelta(hours=1)) -> str:
        """Mint a token; used by the identity service and in tests."""
        now = utcnow()
        payload = {"sub": user_id, "iat": now, "exp": now + ttl}
        if email:
            payload["email"] = email
        if self.audience:
            payload["aud"] = self.audience
        if self.issuer:
            payload["iss"] = self.issuer
        return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)

from typing import Dict, Any, Optional

from src.tenantgate.core.exceptions import TenantGateError
from src.tenantgate.core.logging import configure_logging, get_logger
from src.tenantgate.functions.http import credentials
from src.tenantgate.models import TenantContext
from src.tenantgate.services import Engine

log = get_logger(__name__)


class Authorizer:
    """API Gateway REQUEST authorizer: bearer token plus ``X-Tenant-ID``."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or Engine()

    def resolve(self, event: dict) -> Optional[TenantContext]:
        token, hint = credentials(event)
        try:
            return self.engine.facade.resolve(token, hint)
        except TenantGateError as e:
            log.info("authorizer_denied", reason=e.code)
            return None

    def generate_policy(self, principal_id: str, effect: str, method_arn: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generates an IAM policy for API Gateway.
        """
        return {
            "principalId": principal_id,
            "policyDocument": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Action": "execute-api:Invoke",
                        "Effect": effect,
                        "Resource": method_arn
                    }
                ]
            },
            "context": context
        }


def handler(event, context):
    authorizer = Authorizer()
    configure_logging(authorizer.engine.settings.log_level, authorizer.engine.settings.log_json)
    method_arn = event.get("methodArn")

    tenant_context = authorizer.resolve(event)
    if tenant_context is None:
        return authorizer.generate_policy(
            principal_id="anonymous",
            effect="Deny",
            method_arn=method_arn,
            context={}
        )

    return authorizer.generate_policy(
        principal_id=tenant_context.principal.user_id,
        effect="Allow",
        method_arn=method_arn,
        context={
            "tenant_id": tenant_context.tenant_id,
            "principal_id": tenant_context.principal.user_id,
            "role": tenant_context.role.value,
        }
    )

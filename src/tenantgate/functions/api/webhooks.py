"""Billing provider webhook.

The provider signs the raw request body with HMAC-SHA256 and sends the
hex digest in ``X-Billing-Signature``. Any 2xx tells the provider to stop
retrying, so only transient persistence failures answer 503. Events that
can never apply (unknown tenant or subscription) are acknowledged with
``applied: false`` and audited.
"""

import hashlib
import hmac
import json
from typing import Optional

from pydantic import ValidationError

from src.tenantgate.core.exceptions import InvalidWebhook, TenantGateError, TransientPersistenceError
from src.tenantgate.core.logging import configure_logging, get_logger
from src.tenantgate.functions.http import error_response, header, http_method, raw_body, respond
from src.tenantgate.models import BillingEvent, WebhookOutcome
from src.tenantgate.services import Engine

log = get_logger(__name__)

SIGNATURE_HEADER = "X-Billing-Signature"


def sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign(secret, payload), signature.strip().lower())


class WebhookAPI:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or Engine()

    def parse(self, event: dict) -> BillingEvent:
        payload = raw_body(event)
        secret = self.engine.secrets.webhook_signing_secret()
        if not verify_signature(secret, payload, header(event, SIGNATURE_HEADER)):
            log.warning("webhook_signature_invalid")
            raise InvalidWebhook("Signature verification failed")
        try:
            return BillingEvent(**json.loads(payload))
        except (json.JSONDecodeError, TypeError) as e:
            raise InvalidWebhook(f"Malformed payload: {e}")
        except ValidationError as e:
            raise InvalidWebhook("Malformed payload", context={"errors": e.error_count()})

    def receive(self, event: dict):
        billing_event = self.parse(event)
        log.info(
            "webhook_received",
            event_id=billing_event.event_id,
            type=billing_event.type,
            tenant_id=billing_event.tenant_id,
        )
        try:
            outcome = self.engine.subscriptions.apply_event(billing_event)
        except TransientPersistenceError:
            raise
        except TenantGateError as e:
            log.warning(
                "webhook_rejected",
                event_id=billing_event.event_id,
                tenant_id=billing_event.tenant_id,
                reason=e.code,
            )
            self.engine.audit.log_action(
                tenant_id=billing_event.tenant_id,
                action="WEBHOOK_REJECTED",
                resource=billing_event.event_id,
                outcome="denied",
                metadata={"type": billing_event.type, "reason": e.code},
            )
            outcome = WebhookOutcome(event_id=billing_event.event_id, tenant_id=billing_event.tenant_id)
        return 200, outcome


def handler(event, context):
    try:
        api = WebhookAPI()
        configure_logging(api.engine.settings.log_level, api.engine.settings.log_json)
        if http_method(event) != "POST":
            return respond(405, {"error": "method_not_allowed", "message": "Use POST"})
        status, body = api.receive(event)
        return respond(status, body)
    except Exception as e:
        return error_response(e)

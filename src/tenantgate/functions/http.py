"""Request/response plumbing shared by the API Gateway handlers."""

import base64
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from src.tenantgate.core.exceptions import TenantGateError
from src.tenantgate.core.logging import get_logger
from src.tenantgate.services.resolver import tenant_hint_from_headers
from src.tenantgate.services.tokens import parse_bearer

log = get_logger(__name__)


class BadRequest(ValueError):
    pass


def header(event: dict, name: str) -> Optional[str]:
    for key, value in (event.get("headers") or {}).items():
        if key.lower() == name.lower():
            return value
    return None


def credentials(event: dict):
    """(bearer token, tenant hint) from the request headers."""
    return parse_bearer(header(event, "Authorization")), tenant_hint_from_headers(event.get("headers"))


def http_method(event: dict) -> str:
    method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method") or ""
    return method.upper()


def route(event: dict) -> str:
    """The matched resource template, e.g. ``/tenant/members/{user_id}``."""
    return event.get("resource") or event.get("path") or ""


def raw_body(event: dict) -> bytes:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body.encode("utf-8")


def json_body(event: dict) -> Dict[str, Any]:
    raw = raw_body(event)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BadRequest(f"Body is not valid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise BadRequest("Body must be a JSON object")
    return data


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def respond(status_code: int, body: Any) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(_jsonable(body)),
    }


def error_response(error: Exception) -> dict:
    if isinstance(error, TenantGateError):
        return respond(error.status_code, error.to_dict())
    if isinstance(error, ValidationError):
        return respond(400, {"error": "invalid_request", "message": "Request validation failed",
                             "details": json.loads(error.json(include_url=False))})
    if isinstance(error, (BadRequest, ValueError, KeyError)):
        return respond(400, {"error": "invalid_request", "message": str(error)})
    log.exception("unhandled_error")
    return respond(500, {"error": "internal_error", "message": "Internal server error"})

"""Helpers shared by every DynamoDB-backed service."""

from decimal import Decimal
from typing import Any, List

from botocore.exceptions import ClientError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.tenantgate.core.exceptions import PersistenceError, TransientPersistenceError
from src.tenantgate.core.logging import get_logger

log = get_logger(__name__)

TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TransactionConflictException",
    "InternalServerError",
}


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def wrap_client_error(error: ClientError, operation: str) -> PersistenceError:
    code = error_code(error)
    if code in TRANSIENT_ERROR_CODES:
        return TransientPersistenceError(
            f"Transient failure during {operation}", context={"aws_error": code}
        )
    return PersistenceError(f"Persistence failure during {operation}", context={"aws_error": code})


def _log_retry(retry_state) -> None:
    log.warning(
        "persistence_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


retry_transient = retry(
    retry=retry_if_exception_type(TransientPersistenceError),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
    before_sleep=_log_retry,
)


def to_plain(value: Any) -> Any:
    """Convert DynamoDB ``Decimal`` numbers back to ``int``/``float``."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


def to_item(value: Any) -> Any:
    """Convert floats to ``Decimal`` so boto3 accepts the item."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_item(v) for v in value]
    return value


def transact_item(item: dict) -> dict:
    """An item for ``transact_write_items`` on a resource's ``meta.client``.

    That client applies boto3's own type serialization, so items stay plain
    Python values (floats as ``Decimal``, ``None`` attributes dropped).
    """
    return {k: to_item(v) for k, v in item.items() if v is not None}


def transact_values(values: dict) -> dict:
    return {k: to_item(v) for k, v in values.items()}


def cancellation_reasons(error: ClientError) -> List[str]:
    """Per-item codes of a ``TransactionCanceledException``, in request order."""
    return [reason.get("Code", "None") for reason in error.response.get("CancellationReasons", [])]

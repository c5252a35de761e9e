import threading
from datetime import datetime
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from src.tenantgate.core.clock import ensure_aware, month_key, utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import LimitExceeded, TransientPersistenceError
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.persistence import (
    error_code,
    retry_transient,
    to_plain,
    transact_item,
    transact_values,
    wrap_client_error,
)
from src.tenantgate.models import (
    LimitWarning,
    MetricKind,
    Plan,
    ResourceKind,
    UsageCounter,
    UsageDelta,
    UsageLine,
    UsageSnapshot,
)
from src.tenantgate.services.audit import AuditService

log = get_logger(__name__)

USAGE_PREFIX = "USAGE#"
LOCK_STRIPES = 64


def counter_key(resource: ResourceKind, period: Optional[str]) -> str:
    if resource.metric == MetricKind.FLOW:
        return f"{USAGE_PREFIX}{resource.value}#{period}"
    return USAGE_PREFIX + resource.value


def crossed_thresholds(previous: int, current: int, limit: Optional[int], thresholds: List[float]) -> List[float]:
    if not limit:
        return []
    return [t for t in thresholds if previous < t * limit <= current]


class UsageMeter:
    """Per-tenant usage counters checked against the plan's limits.

    Stock metrics (users, products, storage) hold a live count. Flow
    metrics (transactions) get one counter per calendar month (UTC); a
    closed month's counter is never touched again.

    The check and the increment are one conditional ``UpdateItem`` (or one
    transaction when an operation meters several resources), so two
    requests racing for the last unit cannot both succeed.
    """

    def __init__(self, settings: Optional[Settings] = None, audit: Optional[AuditService] = None):
        self.settings = settings or Settings.from_env()
        self.audit = audit
        self.thresholds = sorted(self.settings.usage_warning_thresholds)
        self.dynamodb = boto3.resource("dynamodb", region_name=self.settings.region_name)
        self.client = self.dynamodb.meta.client
        self.table_name = self.settings.tenants_table
        self.table = self.dynamodb.Table(self.table_name)
        # Serializes same-counter updates inside one worker; the condition
        # expression covers races between workers. Locks are striped so their
        # number stays fixed.
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    # ── Reads ────────────────────────────────────────────────────

    def current(self, tenant_id: str, resource: ResourceKind, now: Optional[datetime] = None) -> int:
        period = month_key(now or utcnow()) if resource.metric == MetricKind.FLOW else None
        response = self.table.get_item(
            Key={"tenant_id": tenant_id, "sk": counter_key(resource, period)},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return int(item.get("count", 0)) if item else 0

    def stock_levels(self, tenant_id: str) -> Dict[ResourceKind, int]:
        return {r: self.current(tenant_id, r) for r in ResourceKind if r.metric == MetricKind.STOCK}

    def snapshot(self, tenant_id: str, plan: Plan, now: Optional[datetime] = None) -> UsageSnapshot:
        now = ensure_aware(now or utcnow())
        lines = []
        for resource in ResourceKind:
            used = self.current(tenant_id, resource, now)
            limit = plan.limits.for_resource(resource)
            percentage = round(used / limit * 100, 2) if limit else None
            lines.append(UsageLine(resource=resource, used=used, limit=limit, percentage=percentage))
        return UsageSnapshot(tenant_id=tenant_id, period=month_key(now), lines=lines)

    def history(self, tenant_id: str, resource: ResourceKind = ResourceKind.TRANSACTIONS) -> List[UsageCounter]:
        """Every period counter of a flow metric, oldest first."""
        prefix = f"{USAGE_PREFIX}{resource.value}#"
        response = self.table.query(
            KeyConditionExpression=Key("tenant_id").eq(tenant_id) & Key("sk").begins_with(prefix)
        )
        return [
            UsageCounter(
                tenant_id=tenant_id,
                resource=resource,
                period=item["sk"][len(prefix):],
                count=int(to_plain(item.get("count", 0))),
            )
            for item in response.get("Items", [])
        ]

    # ── Writes ───────────────────────────────────────────────────

    def reserve(
        self,
        tenant_id: str,
        plan: Plan,
        deltas: List[UsageDelta],
        now: Optional[datetime] = None,
    ) -> List[LimitWarning]:
        """Check and commit ``deltas`` atomically, or raise ``LimitExceeded``."""
        if not deltas:
            return []
        now = ensure_aware(now or utcnow())
        merged = _merge(deltas)

        for resource, amount in merged.items():
            limit = plan.limits.for_resource(resource)
            if limit is not None and amount > limit:
                self._deny(tenant_id, resource, self.current(tenant_id, resource, now), limit)

        # Stripes are taken once each, in index order.
        locks = [self._locks[i] for i in sorted({self._stripe(tenant_id, r) for r in merged})]
        for lock in locks:
            lock.acquire()
        try:
            if len(merged) == 1:
                resource, amount = next(iter(merged.items()))
                new_value = self._increment(tenant_id, plan, resource, amount, now)
                results = {resource: new_value}
            else:
                results = self._increment_many(tenant_id, plan, merged, now)
        finally:
            for lock in reversed(locks):
                lock.release()

        warnings = []
        for resource, new_value in results.items():
            limit = plan.limits.for_resource(resource)
            for threshold in crossed_thresholds(new_value - merged[resource], new_value, limit, self.thresholds):
                warnings.append(LimitWarning(resource=resource, threshold=threshold, current=new_value, limit=limit))
        for warning in warnings:
            log.info(
                "usage_limit_warning",
                tenant_id=tenant_id,
                resource=warning.resource.value,
                threshold=warning.threshold,
                current=warning.current,
                limit=warning.limit,
            )
            if self.audit is not None:
                self.audit.log_action(
                    tenant_id=tenant_id,
                    action="USAGE_WARNING",
                    resource=warning.resource.value,
                    outcome="recorded",
                    metadata=warning.model_dump(mode="json"),
                )
        return warnings

    @retry_transient
    def release(self, tenant_id: str, resource: ResourceKind, amount: int = 1) -> int:
        """Give back stock after a resource is deleted. Flow metrics are never decremented."""
        if resource.metric == MetricKind.FLOW:
            log.debug("usage_release_ignored_flow_metric", tenant_id=tenant_id, resource=resource.value)
            return self.current(tenant_id, resource)

        key = {"tenant_id": tenant_id, "sk": counter_key(resource, None)}
        with self._lock_for(tenant_id, resource):
            try:
                response = self.table.update_item(
                    Key=key,
                    UpdateExpression="ADD #c :neg SET updated_at = :now",
                    ConditionExpression="#c >= :amt",
                    ExpressionAttributeNames={"#c": "count"},
                    ExpressionAttributeValues={":neg": -amount, ":amt": amount, ":now": utcnow().isoformat()},
                    ReturnValues="UPDATED_NEW",
                )
                return int(response["Attributes"]["count"])
            except ClientError as e:
                if error_code(e) != "ConditionalCheckFailedException":
                    raise wrap_client_error(e, "release_usage")

            log.warning("usage_release_underflow", tenant_id=tenant_id, resource=resource.value, amount=amount)
            self.table.update_item(
                Key=key,
                UpdateExpression="SET #c = :zero, updated_at = :now",
                ExpressionAttributeNames={"#c": "count"},
                ExpressionAttributeValues={":zero": 0, ":now": utcnow().isoformat()},
            )
            return 0

    def set_stock(self, tenant_id: str, resource: ResourceKind, value: int) -> None:
        """Overwrite a stock counter, for onboarding and reconciliation jobs."""
        if resource.metric != MetricKind.STOCK:
            raise ValueError(f"{resource.value} is a flow metric")
        self.table.update_item(
            Key={"tenant_id": tenant_id, "sk": counter_key(resource, None)},
            UpdateExpression="SET #c = :v, updated_at = :now",
            ExpressionAttributeNames={"#c": "count"},
            ExpressionAttributeValues={":v": value, ":now": utcnow().isoformat()},
        )

    # ── Internals ────────────────────────────────────────────────

    @retry_transient
    def _increment(self, tenant_id: str, plan: Plan, resource: ResourceKind, amount: int, now: datetime) -> int:
        period = month_key(now)
        limit = plan.limits.for_resource(resource)
        kwargs = {
            "Key": {"tenant_id": tenant_id, "sk": counter_key(resource, period)},
            "UpdateExpression": "ADD #c :d SET updated_at = :now",
            "ExpressionAttributeNames": {"#c": "count"},
            "ExpressionAttributeValues": {":d": amount, ":now": now.isoformat()},
            "ReturnValues": "UPDATED_NEW",
        }
        if limit is not None:
            kwargs["ConditionExpression"] = "attribute_not_exists(#c) OR #c <= :ceiling"
            kwargs["ExpressionAttributeValues"][":ceiling"] = limit - amount
        try:
            response = self.table.update_item(**kwargs)
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                self._deny(tenant_id, resource, self.current(tenant_id, resource, now), limit)
            raise wrap_client_error(e, "reserve_usage")
        return int(response["Attributes"]["count"])

    @retry_transient
    def _increment_many(
        self, tenant_id: str, plan: Plan, merged: Dict[ResourceKind, int], now: datetime
    ) -> Dict[ResourceKind, int]:
        period = month_key(now)
        items = []
        for resource, amount in merged.items():
            limit = plan.limits.for_resource(resource)
            update = {
                "TableName": self.table_name,
                "Key": transact_item({"tenant_id": tenant_id, "sk": counter_key(resource, period)}),
                "UpdateExpression": "ADD #c :d SET updated_at = :now",
                "ExpressionAttributeNames": {"#c": "count"},
                "ExpressionAttributeValues": transact_values({":d": amount, ":now": now.isoformat()}),
            }
            if limit is not None:
                update["ConditionExpression"] = "attribute_not_exists(#c) OR #c <= :ceiling"
                update["ExpressionAttributeValues"] = transact_values(
                    {":d": amount, ":now": now.isoformat(), ":ceiling": limit - amount}
                )
            items.append({"Update": update})

        try:
            self.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if error_code(e) != "TransactionCanceledException":
                raise wrap_client_error(e, "reserve_usage")
            for resource, amount in merged.items():
                limit = plan.limits.for_resource(resource)
                current = self.current(tenant_id, resource, now)
                if limit is not None and current + amount > limit:
                    self._deny(tenant_id, resource, current, limit)
            raise TransientPersistenceError("Usage counters changed concurrently", context={"tenant_id": tenant_id})

        return {resource: self.current(tenant_id, resource, now) for resource in merged}

    def _deny(self, tenant_id: str, resource: ResourceKind, current: int, limit: int) -> None:
        log.warning("usage_limit_exceeded", tenant_id=tenant_id, resource=resource.value, current=current, limit=limit)
        if self.audit is not None:
            self.audit.log_action(
                tenant_id=tenant_id,
                action="LIMIT_EXCEEDED",
                resource=resource.value,
                outcome="denied",
                metadata={"current": current, "limit": limit},
            )
        raise LimitExceeded(resource.value, current, limit)

    def _stripe(self, tenant_id: str, resource: ResourceKind) -> int:
        return hash((tenant_id, resource.value)) % LOCK_STRIPES

    def _lock_for(self, tenant_id: str, resource: ResourceKind) -> threading.Lock:
        return self._locks[self._stripe(tenant_id, resource)]


def _merge(deltas: List[UsageDelta]) -> Dict[ResourceKind, int]:
    merged: Dict[ResourceKind, int] = {}
    for delta in deltas:
        merged[delta.resource] = merged.get(delta.resource, 0) + delta.amount
    return merged

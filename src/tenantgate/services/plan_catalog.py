"""Versioned subscription plans.

A plan version is written once and never overwritten: changing a plan
publishes ``version + 1`` so every subscription that references an older
version can still read the limits it was sold with.
"""

from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from src.tenantgate.core.clock import utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import PlanNotFound, TransientPersistenceError
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.persistence import error_code, to_item, to_plain, wrap_client_error
from src.tenantgate.models import Plan, PlanFeatures, PlanLimits, PlanPrice

log = get_logger(__name__)

GIB = 1024 ** 3

DEFAULT_PLANS: List[Plan] = [
    Plan(
        plan_id="starter",
        name="Starter",
        description="Perfect for small shops and new businesses",
        price=PlanPrice(monthly=29, yearly=290),
        limits=PlanLimits(
            max_users=3,
            max_products=500,
            max_transactions_per_month=1000,
            max_storage_bytes=1 * GIB,
        ),
        features=PlanFeatures(),
        trial_days=14,
        order=1,
    ),
    Plan(
        plan_id="professional",
        name="Professional",
        description="For growing businesses with advanced needs",
        price=PlanPrice(monthly=79, yearly=790),
        limits=PlanLimits(
            max_users=10,
            max_products=2000,
            max_transactions_per_month=5000,
            max_storage_bytes=10 * GIB,
        ),
        features=PlanFeatures(loyalty=True, analytics=True, advanced_reporting=True, custom_branding=True),
        trial_days=14,
        order=2,
    ),
    Plan(
        plan_id="enterprise",
        name="Enterprise",
        description="Complete solution for large businesses",
        price=PlanPrice(monthly=199, yearly=1990),
        limits=PlanLimits(
            max_users=50,
            max_products=10000,
            max_transactions_per_month=50000,
            max_storage_bytes=100 * GIB,
        ),
        features=PlanFeatures(
            loyalty=True,
            analytics=True,
            multi_location=True,
            advanced_analytics=True,
            advanced_reporting=True,
            api_access=True,
            custom_branding=True,
            priority_support=True,
        ),
        trial_days=30,
        order=3,
    ),
]


class PlanCatalog:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.dynamodb = boto3.resource("dynamodb", region_name=self.settings.region_name)
        self.table = self.dynamodb.Table(self.settings.plans_table)

    def _latest_item(self, plan_id: str) -> Optional[dict]:
        response = self.table.query(
            KeyConditionExpression=Key("plan_id").eq(plan_id),
            ScanIndexForward=False,
            Limit=1,
        )
        items = response.get("Items", [])
        return to_plain(items[0]) if items else None

    def get(self, plan_id: str, version: Optional[int] = None) -> Plan:
        """Exact version when given, otherwise the newest active version."""
        if version is not None:
            response = self.table.get_item(Key={"plan_id": plan_id, "version": version})
            item = response.get("Item")
            if not item:
                raise PlanNotFound(f"Plan {plan_id}@v{version} does not exist", context={"plan_id": plan_id})
            return Plan(**to_plain(item))

        item = self._latest_item(plan_id)
        if not item or not item.get("is_active", True):
            raise PlanNotFound(f"Plan {plan_id} is not available", context={"plan_id": plan_id})
        return Plan(**item)

    def publish(self, plan: Plan, max_attempts: int = 5) -> Plan:
        """Store ``plan`` as the next version of its plan id."""
        for _ in range(max_attempts):
            latest = self._latest_item(plan.plan_id)
            version = (latest["version"] + 1) if latest else 1
            published = plan.model_copy(update={"version": version, "published_at": utcnow()})
            item = to_item(published.model_dump(mode="json"))
            try:
                self.table.put_item(
                    Item=item,
                    ConditionExpression="attribute_not_exists(plan_id)",
                )
            except ClientError as e:
                if error_code(e) == "ConditionalCheckFailedException":
                    # Another publisher took this version number.
                    continue
                raise wrap_client_error(e, "publish_plan")
            log.info("plan_published", plan_id=plan.plan_id, version=version)
            return published
        raise TransientPersistenceError(
            f"Could not allocate a version for plan {plan.plan_id}", context={"plan_id": plan.plan_id}
        )

    def retire(self, plan_id: str) -> Plan:
        """Publish an inactive version; existing subscriptions keep their version."""
        current = self.get(plan_id)
        return self.publish(current.model_copy(update={"is_active": False}))

    def list_active(self) -> List[Plan]:
        newest: Dict[str, dict] = {}
        kwargs: dict = {}
        while True:
            response = self.table.scan(**kwargs)
            for item in response.get("Items", []):
                item = to_plain(item)
                seen = newest.get(item["plan_id"])
                if seen is None or item["version"] > seen["version"]:
                    newest[item["plan_id"]] = item
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        plans = [Plan(**item) for item in newest.values() if item.get("is_active", True)]
        return sorted(plans, key=lambda p: (p.order, p.plan_id))

    def seed_defaults(self) -> List[Plan]:
        """Publish the default plans that have never been published."""
        seeded = []
        for plan in DEFAULT_PLANS:
            if self._latest_item(plan.plan_id) is None:
                seeded.append(self.publish(plan))
        return seeded

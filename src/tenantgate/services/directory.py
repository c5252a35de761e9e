import re
import uuid
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from src.tenantgate.core.clock import utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.exceptions import (
    CannotRemoveLastAdmin,
    MemberAlreadyExists,
    MemberNotFound,
    SlugTaken,
    TenantNotFound,
    TransientPersistenceError,
)
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.persistence import (
    cancellation_reasons,
    error_code,
    to_item,
    to_plain,
    transact_item,
    transact_values,
    wrap_client_error,
)
from src.tenantgate.models import Membership, Role, Tenant, TenantSettings, TenantStatus

log = get_logger(__name__)

METADATA = "METADATA"
MEMBER_PREFIX = "MEMBER#"
SLUG_PARTITION = "SLUG#"
MAX_SLUG_SUFFIX = 50


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "shop"


class TenantDirectory:
    """Tenant records and memberships in the tenants table.

    Layout (partition ``tenant_id``, sort ``sk``):

    * ``METADATA`` holds the tenant and its ``admin_count``.
    * ``MEMBER#<user_id>`` holds one membership.
    * partition ``SLUG#<slug>`` reserves a slug for exactly one tenant.

    Every change to an owner/admin membership is written in the same
    transaction as a conditional update of ``admin_count``, so the tenant
    can never be left without an owner or admin even when two demotions
    race.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.dynamodb = boto3.resource("dynamodb", region_name=self.settings.region_name)
        self.client = self.dynamodb.meta.client
        self.table_name = self.settings.tenants_table
        self.table = self.dynamodb.Table(self.table_name)

    # ── Tenants ──────────────────────────────────────────────────

    def create_tenant(
        self,
        name: str,
        owner_user_id: str,
        settings: Optional[TenantSettings] = None,
        slug: Optional[str] = None,
        owner_email: Optional[str] = None,
    ) -> Tenant:
        tenant_id = f"ten_{uuid.uuid4().hex[:12]}"
        base_slug = slugify(slug or name)
        candidates = [base_slug] if slug else [base_slug] + [f"{base_slug}-{n}" for n in range(1, MAX_SLUG_SUFFIX + 1)]

        for candidate in candidates:
            tenant = Tenant(
                tenant_id=tenant_id,
                name=name,
                slug=candidate,
                owner_id=owner_user_id,
                settings=settings or TenantSettings(),
                admin_count=1,
            )
            owner = Membership(
                tenant_id=tenant_id,
                user_id=owner_user_id,
                role=Role.OWNER,
                email=owner_email,
            )
            slug_item = {"tenant_id": SLUG_PARTITION + candidate, "sk": "SLUG", "owner_tenant_id": tenant_id}
            try:
                self.client.transact_write_items(
                    TransactItems=[
                        {
                            "Put": {
                                "TableName": self.table_name,
                                "Item": transact_item(slug_item),
                                "ConditionExpression": "attribute_not_exists(tenant_id)",
                            }
                        },
                        {
                            "Put": {
                                "TableName": self.table_name,
                                "Item": transact_item(self._tenant_item(tenant)),
                                "ConditionExpression": "attribute_not_exists(tenant_id)",
                            }
                        },
                        {
                            "Put": {
                                "TableName": self.table_name,
                                "Item": transact_item(self._member_item(owner)),
                            }
                        },
                    ]
                )
            except ClientError as e:
                if error_code(e) == "TransactionCanceledException" and self._slug_owner(candidate):
                    continue
                raise wrap_client_error(e, "create_tenant")

            log.info("tenant_created", tenant_id=tenant_id, slug=candidate, owner_id=owner_user_id)
            return tenant

        raise SlugTaken(f"Slug {base_slug} is already in use", context={"slug": base_slug})

    def get_tenant(self, tenant_id: str, include_disabled: bool = False) -> Optional[Tenant]:
        if not tenant_id or tenant_id.startswith(SLUG_PARTITION):
            return None
        response = self.table.get_item(Key={"tenant_id": tenant_id, "sk": METADATA})
        item = response.get("Item")
        if not item:
            return None
        tenant = self._to_tenant(item)
        if not include_disabled and not tenant.is_active:
            return None
        return tenant

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        owner = self._slug_owner(slug)
        return self.get_tenant(owner) if owner else None

    def update_settings(self, tenant_id: str, settings: TenantSettings) -> Tenant:
        try:
            response = self.table.update_item(
                Key={"tenant_id": tenant_id, "sk": METADATA},
                UpdateExpression="SET #st = :s",
                ConditionExpression="attribute_exists(tenant_id)",
                ExpressionAttributeNames={"#st": "settings"},
                ExpressionAttributeValues={":s": serialize_settings(settings)},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise TenantNotFound(f"Tenant {tenant_id} does not exist", context={"tenant_id": tenant_id})
            raise wrap_client_error(e, "update_settings")
        return self._to_tenant(response["Attributes"])

    def disable_tenant(self, tenant_id: str) -> Tenant:
        return self._set_status(tenant_id, TenantStatus.SUSPENDED)

    def enable_tenant(self, tenant_id: str) -> Tenant:
        return self._set_status(tenant_id, TenantStatus.ACTIVE)

    def _set_status(self, tenant_id: str, status: TenantStatus) -> Tenant:
        disabled_at = utcnow().isoformat() if status == TenantStatus.SUSPENDED else None
        try:
            response = self.table.update_item(
                Key={"tenant_id": tenant_id, "sk": METADATA},
                UpdateExpression="SET #s = :s, disabled_at = :d",
                ConditionExpression="attribute_exists(tenant_id)",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={":s": status.value, ":d": disabled_at},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise TenantNotFound(f"Tenant {tenant_id} does not exist", context={"tenant_id": tenant_id})
            raise wrap_client_error(e, "set_tenant_status")
        log.info("tenant_status_changed", tenant_id=tenant_id, status=status.value)
        return self._to_tenant(response["Attributes"])

    # ── Memberships ──────────────────────────────────────────────

    def get_membership(self, tenant_id: str, user_id: str) -> Optional[Membership]:
        response = self.table.get_item(Key={"tenant_id": tenant_id, "sk": MEMBER_PREFIX + user_id})
        item = response.get("Item")
        return self._to_membership(item) if item else None

    def list_members(self, tenant_id: str) -> List[Membership]:
        members = []
        kwargs = {"KeyConditionExpression": Key("tenant_id").eq(tenant_id) & Key("sk").begins_with(MEMBER_PREFIX)}
        while True:
            response = self.table.query(**kwargs)
            members.extend(self._to_membership(item) for item in response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                return members
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    def add_member(
        self,
        tenant_id: str,
        user_id: str,
        role: Role,
        email: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> Membership:
        membership = Membership(tenant_id=tenant_id, user_id=user_id, role=role, email=email, invited_by=invited_by)
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": transact_item(self._member_item(membership)),
                            "ConditionExpression": "attribute_not_exists(sk)",
                        }
                    },
                    self._admin_count_update(tenant_id, 1 if membership.role.is_admin else 0),
                ]
            )
        except ClientError as e:
            if error_code(e) == "TransactionCanceledException":
                if self.get_membership(tenant_id, user_id):
                    raise MemberAlreadyExists(
                        f"User {user_id} is already a member", context={"user_id": user_id}
                    )
                raise TenantNotFound(f"Tenant {tenant_id} does not exist", context={"tenant_id": tenant_id})
            raise wrap_client_error(e, "add_member")

        log.info("member_added", tenant_id=tenant_id, user_id=user_id, role=membership.role.value)
        return membership

    def change_role(self, tenant_id: str, user_id: str, new_role: Role) -> Membership:
        current = self._require_member(tenant_id, user_id)
        if current.role == new_role:
            return current

        admin_delta = int(new_role.is_admin) - int(current.role.is_admin)
        items = [
            {
                "Update": {
                    "TableName": self.table_name,
                    "Key": transact_item({"tenant_id": tenant_id, "sk": MEMBER_PREFIX + user_id}),
                    "UpdateExpression": "SET #r = :new",
                    "ConditionExpression": "#r = :old",
                    "ExpressionAttributeNames": {"#r": "role"},
                    "ExpressionAttributeValues": transact_values(
                        {":new": new_role.value, ":old": current.role.value}
                    ),
                }
            },
            self._admin_count_update(tenant_id, admin_delta),
        ]
        self._commit_member_change(tenant_id, user_id, items, "change_role")
        log.info(
            "member_role_changed",
            tenant_id=tenant_id,
            user_id=user_id,
            old_role=current.role.value,
            new_role=new_role.value,
        )
        return current.model_copy(update={"role": new_role})

    def remove_member(self, tenant_id: str, user_id: str) -> Membership:
        current = self._require_member(tenant_id, user_id)
        items = [
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": transact_item({"tenant_id": tenant_id, "sk": MEMBER_PREFIX + user_id}),
                    "ConditionExpression": "#r = :old",
                    "ExpressionAttributeNames": {"#r": "role"},
                    "ExpressionAttributeValues": transact_values({":old": current.role.value}),
                }
            },
            self._admin_count_update(tenant_id, -1 if current.role.is_admin else 0),
        ]
        self._commit_member_change(tenant_id, user_id, items, "remove_member")
        log.info("member_removed", tenant_id=tenant_id, user_id=user_id, role=current.role.value)
        return current

    def count_admins(self, tenant_id: str) -> int:
        tenant = self.get_tenant(tenant_id, include_disabled=True)
        return tenant.admin_count if tenant else 0

    # ── Internals ────────────────────────────────────────────────

    def _commit_member_change(self, tenant_id: str, user_id: str, items: list, operation: str) -> None:
        try:
            self.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if error_code(e) != "TransactionCanceledException":
                raise wrap_client_error(e, operation)
            reasons = cancellation_reasons(e)
            # Item 0 is the member row, item 1 the admin_count guard.
            if reasons[:1] == ["ConditionalCheckFailed"]:
                if self.get_membership(tenant_id, user_id) is None:
                    raise MemberNotFound(f"User {user_id} is not a member", context={"user_id": user_id})
                raise TransientPersistenceError(
                    f"Membership of {user_id} changed concurrently", context={"user_id": user_id}
                )
            if reasons[1:2] == ["ConditionalCheckFailed"] or (not reasons and self.count_admins(tenant_id) <= 1):
                raise CannotRemoveLastAdmin(
                    "The tenant must keep at least one owner or admin",
                    context={"tenant_id": tenant_id, "user_id": user_id},
                )
            raise TransientPersistenceError(
                f"Membership of {user_id} changed concurrently", context={"user_id": user_id}
            )

    def _admin_count_update(self, tenant_id: str, delta: int) -> dict:
        update = {
            "TableName": self.table_name,
            "Key": transact_item({"tenant_id": tenant_id, "sk": METADATA}),
            "UpdateExpression": "ADD admin_count :d",
            "ConditionExpression": "attribute_exists(tenant_id)",
            "ExpressionAttributeValues": transact_values({":d": delta}),
        }
        if delta < 0:
            update["ConditionExpression"] = "attribute_exists(tenant_id) AND admin_count > :one"
            update["ExpressionAttributeValues"] = transact_values({":d": delta, ":one": 1})
        return {"Update": update}

    def _require_member(self, tenant_id: str, user_id: str) -> Membership:
        membership = self.get_membership(tenant_id, user_id)
        if membership is None:
            raise MemberNotFound(f"User {user_id} is not a member", context={"user_id": user_id})
        return membership

    def _slug_owner(self, slug: str) -> Optional[str]:
        response = self.table.get_item(Key={"tenant_id": SLUG_PARTITION + slug, "sk": "SLUG"})
        item = response.get("Item")
        return item["owner_tenant_id"] if item else None

    @staticmethod
    def _tenant_item(tenant: Tenant) -> dict:
        item = tenant.model_dump(mode="json")
        item["sk"] = METADATA
        return item

    @staticmethod
    def _member_item(membership: Membership) -> dict:
        item = membership.model_dump(mode="json")
        item["sk"] = MEMBER_PREFIX + membership.user_id
        return item

    @staticmethod
    def _to_tenant(item: dict) -> Tenant:
        item = to_plain(dict(item))
        item.pop("sk", None)
        return Tenant(**item)

    @staticmethod
    def _to_membership(item: dict) -> Membership:
        item = to_plain(dict(item))
        item.pop("sk", None)
        return Membership(**item)


def serialize_settings(settings: TenantSettings) -> dict:
    return to_item(settings.model_dump(mode="json"))

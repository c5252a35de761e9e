import time
from typing import Dict, Any, Optional, List

import boto3
import ulid
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from src.tenantgate.core.clock import utcnow
from src.tenantgate.core.config import Settings
from src.tenantgate.core.logging import get_logger
from src.tenantgate.core.persistence import to_item, to_plain
from src.tenantgate.models import AuditEntry

log = get_logger(__name__)


class AuditService:
    """Append-only audit trail, one partition per tenant."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.dynamodb = boto3.resource("dynamodb", region_name=self.settings.region_name)
        self.table = self.dynamodb.Table(self.settings.audit_table)
        self.retention_days = self.settings.audit_retention_days

    def log_action(
        self,
        tenant_id: str,
        action: str,
        resource: str,
        outcome: str = "allowed",
        principal_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """
        Logs an action to the audit table. Never raises.
        """
        now = utcnow()
        expires_at = int(time.time()) + (self.retention_days * 24 * 60 * 60)

        entry = AuditEntry(
            tenant_id=tenant_id,
            entry_id=str(ulid.new()),
            timestamp=now,
            action=action,
            resource=resource,
            outcome=outcome,
            principal_id=principal_id,
            metadata=metadata or {},
            request_id=request_id,
        )

        item = to_item(entry.model_dump(mode="json"))
        item["sk"] = f"{now.strftime('%Y-%m-%dT%H:%M:%S.%f')}#{entry.entry_id}"
        item["expires_at"] = expires_at

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            log.error("audit_write_failed", tenant_id=tenant_id, action=action, error=str(e))

    def get_tenant_audit(self, tenant_id: str, limit: int = 50) -> List[AuditEntry]:
        """
        Retrieves audit entries for a tenant, newest first.
        """
        response = self.table.query(
            KeyConditionExpression=Key("tenant_id").eq(tenant_id),
            ScanIndexForward=False,
            Limit=limit,
        )
        entries = []
        for item in response.get("Items", []):
            item = to_plain(item)
            item.pop("sk", None)
            item.pop("expires_at", None)
            entries.append(AuditEntry(**item))
        return entries

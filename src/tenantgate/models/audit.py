from datetime import datetime
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from src.tenantgate.core.clock import utcnow


class AuditEntry(BaseModel):
    tenant_id: str
    entry_id: str = Field(..., description="ULID, orders entries written in the same instant")
    timestamp: datetime = Field(default_factory=utcnow)
    action: str = Field(..., description="e.g., ACCESS_DENIED, CHANGE_ROLE, WEBHOOK_DUPLICATE")
    resource: str = Field(..., description="e.g., user id, subscription id, event id")
    outcome: str = Field("allowed", description="allowed, denied or recorded")
    principal_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None

    class Config:
        from_attributes = True

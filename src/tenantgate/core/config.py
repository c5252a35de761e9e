import os
from typing import List, Optional
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    region_name: str = "us-east-1"
    tenants_table: str = "tenantgate-tenants-prod"
    plans_table: str = "tenantgate-plans-prod"
    audit_table: str = "tenantgate-audit-prod"
    audit_retention_days: int = 90

    jwt_secret_name: str = "/tenantgate/signing/jwt"
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None
    jwt_issuer: Optional[str] = None
    webhook_secret_name: str = "/tenantgate/signing/webhook"

    past_due_grace_days: int = Field(7, ge=0)
    usage_warning_thresholds: List[float] = Field(default_factory=lambda: [0.8, 0.9])

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        thresholds = os.environ.get("USAGE_WARNING_THRESHOLDS", "0.8,0.9")
        return cls(
            region_name=os.environ.get("AWS_REGION", "us-east-1"),
            tenants_table=os.environ.get("TENANTS_TABLE", "tenantgate-tenants-prod"),
            plans_table=os.environ.get("PLANS_TABLE", "tenantgate-plans-prod"),
            audit_table=os.environ.get("AUDIT_TABLE", "tenantgate-audit-prod"),
            audit_retention_days=int(os.environ.get("AUDIT_RETENTION_DAYS", "90")),
            jwt_secret_name=os.environ.get("JWT_SECRET_NAME", "/tenantgate/signing/jwt"),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
            jwt_audience=os.environ.get("JWT_AUDIENCE") or None,
            jwt_issuer=os.environ.get("JWT_ISSUER") or None,
            webhook_secret_name=os.environ.get("WEBHOOK_SECRET_NAME", "/tenantgate/signing/webhook"),
            past_due_grace_days=int(os.environ.get("PAST_DUE_GRACE_DAYS", "7")),
            usage_warning_thresholds=sorted(float(t) for t in thresholds.split(",") if t.strip()),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
        )

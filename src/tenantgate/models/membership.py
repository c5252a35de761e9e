from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from src.tenantgate.core.clock import utcnow

_RANKS = {"staff": 1, "manager": 2, "admin": 3, "owner": 4}

# Older records used "cashier" for the lowest tier.
_LEGACY_ROLES = {"cashier": "staff"}


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid role: {value!r}")
        normalized = value.strip().lower()
        return cls(_LEGACY_ROLES.get(normalized, normalized))

    @property
    def rank(self) -> int:
        return _RANKS[self.value]

    @property
    def is_admin(self) -> bool:
        return self in (Role.OWNER, Role.ADMIN)

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank


class Membership(BaseModel):
    tenant_id: str
    user_id: str
    role: Role
    email: Optional[str] = None
    invited_by: Optional[str] = None
    joined_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value):
        return Role.parse(value)

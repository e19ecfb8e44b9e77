"""
Organization and member models.

An organization is the tenant: every brand kit, video and subscription
belongs to exactly one. Members carry a role; there is exactly one owner.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Organization(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    slug: str
    plan: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "plan": self.plan,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrganizationUser(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    organization_id: str
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

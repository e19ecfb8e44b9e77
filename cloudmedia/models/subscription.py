"""
Subscription model.

One subscription per organization: the plan, its billing status and period,
and the credits remaining in the current period.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    organization_id: str
    plan: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    video_credits: int
    image_credits: int
    storage_limit: int
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("current_period_start", "current_period_end", "last_event_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "plan": self.plan,
            "status": self.status.value,
            "current_period_start": self.current_period_start.isoformat(),
            "current_period_end": self.current_period_end.isoformat(),
            "cancel_at_period_end": self.cancel_at_period_end,
            "video_credits": self.video_credits,
            "image_credits": self.image_credits,
            "storage_limit": self.storage_limit,
        }

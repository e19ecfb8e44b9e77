"""
Usage record model (audit trail only; never read for enforcement).
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageType(str, Enum):
    VIDEO_UPLOAD = "videoUpload"
    VIDEO_TRANSFORM = "videoTransform"
    LOGO_UPLOAD = "logoUpload"


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    organization_id: str
    type: UsageType
    year: int
    month: int
    count: int = 1
    created_at: Optional[datetime] = None

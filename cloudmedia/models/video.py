"""
Video and transform models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class TransformType(str, Enum):
    RESIZE = "resize"
    SOCIAL = "social"
    TRIM = "trim"
    WATERMARK = "watermark"
    BRAND_KIT = "brandKit"


class Video(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    organization_id: str
    user_id: str
    brand_kit_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    public_id: str
    original_size: Optional[str] = None
    compressed_size: Optional[str] = None
    duration: int = 0
    format: str = "mp4"
    resolution: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "brand_kit_id": self.brand_kit_id,
            "title": self.title,
            "description": self.description,
            "public_id": self.public_id,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "duration": self.duration,
            "format": self.format,
            "resolution": self.resolution,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class VideoTransform(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    video_id: str
    brand_kit_id: Optional[str] = None
    name: str
    transform_type: TransformType
    settings: Dict[str, Any]
    output_url: Optional[str] = None
    output_public_id: Optional[str] = None
    status: str = "completed"
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "video_id": self.video_id,
            "brand_kit_id": self.brand_kit_id,
            "name": self.name,
            "transform_type": self.transform_type.value,
            "settings": self.settings,
            "output_url": self.output_url,
            "output_public_id": self.output_public_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

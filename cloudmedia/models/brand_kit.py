from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class BrandKit(BaseModel):
    """Logo, colors and font applied to branded transforms."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    organization_id: str
    name: str
    logo_public_id: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    font_family: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "logo_public_id": self.logo_public_id,
            "primary_color": self.primary_color,
            "secondary_color": self.secondary_color,
            "font_family": self.font_family,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

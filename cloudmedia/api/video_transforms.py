"""Video transform routes. Creation is capped per video by the plan."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.encoding.cloudinary_provider import get_encoder
from cloudmedia.features.encoding.provider import EncodeProvider
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog
from cloudmedia.features.transforms.service import create_transform, delete_transform, list_transforms


router = APIRouter(prefix="/api/video-transforms", tags=["video-transforms"])


class CreateTransformRequest(BaseModel):
    video_id: str
    transform_type: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None
    brand_kit_id: Optional[str] = None


@router.get("")
def list_transforms_endpoint(
    video_id: str = Query(..., alias="videoId"),
    user_id: str = Depends(get_current_user_id),
):
    return list_transforms(user_id, video_id)


@router.post("")
def create_transform_endpoint(
    request: CreateTransformRequest,
    user_id: str = Depends(get_current_user_id),
    encoder: EncodeProvider = Depends(get_encoder),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return create_transform(
        user_id,
        request.video_id,
        request.transform_type,
        encoder=encoder,
        settings=request.settings,
        name=request.name,
        brand_kit_id=request.brand_kit_id,
        catalog=catalog,
    )


@router.delete("")
def delete_transform_endpoint(
    transform_id: str = Query(..., alias="id"),
    user_id: str = Depends(get_current_user_id),
    encoder: EncodeProvider = Depends(get_encoder),
):
    delete_transform(user_id, transform_id, encoder=encoder)
    return {"success": True}

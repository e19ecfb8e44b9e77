"""
Video routes.

Uploads are multipart and cost one video credit; the file is encoded at the
quality and maximum height of the organization's plan.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.encoding.cloudinary_provider import get_encoder
from cloudmedia.features.encoding.provider import EncodeProvider
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog
from cloudmedia.features.videos.service import list_videos, upload_video


router = APIRouter(prefix="/api/videos", tags=["videos"])


@router.get("")
def list_videos_endpoint(user_id: str = Depends(get_current_user_id)):
    return list_videos(user_id)


@router.post("")
def upload_video_endpoint(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: Optional[str] = Form(None),
    brand_kit_id: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    encoder: EncodeProvider = Depends(get_encoder),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Upload a video.

    Errors:
        402: credits_exhausted, with details {credit_type, resets_at}
        502: Encode service failure (nothing is charged)
    """
    size = getattr(file, "size", None)
    return upload_video(
        user_id,
        file.file,
        title=title,
        encoder=encoder,
        description=description,
        original_size=str(size) if size is not None else None,
        brand_kit_id=brand_kit_id or None,
        catalog=catalog,
    )

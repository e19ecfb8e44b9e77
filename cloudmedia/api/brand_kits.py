"""
Brand kit routes.

- GET/POST/PUT/DELETE /api/brand-kits
- POST /api/brand-kits/logo: multipart logo upload (one image credit)
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.brand_kits.service import (
    create_brand_kit,
    delete_brand_kit,
    list_brand_kits,
    update_brand_kit,
    upload_logo,
)
from cloudmedia.features.encoding.cloudinary_provider import get_encoder
from cloudmedia.features.encoding.provider import EncodeProvider
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog


router = APIRouter(prefix="/api/brand-kits", tags=["brand-kits"])


class CreateBrandKitRequest(BaseModel):
    name: str
    logo_public_id: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    font_family: Optional[str] = None


class UpdateBrandKitRequest(BaseModel):
    id: str
    name: Optional[str] = None
    logo_public_id: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    font_family: Optional[str] = None


@router.get("")
def list_brand_kits_endpoint(user_id: str = Depends(get_current_user_id)):
    return list_brand_kits(user_id)


@router.post("")
def create_brand_kit_endpoint(
    request: CreateBrandKitRequest,
    user_id: str = Depends(get_current_user_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Create a brand kit.

    Errors:
        403: limit_reached, with details {limit, current, resource}
    """
    return create_brand_kit(
        user_id,
        request.name,
        logo_public_id=request.logo_public_id,
        primary_color=request.primary_color,
        secondary_color=request.secondary_color,
        font_family=request.font_family,
        catalog=catalog,
    )


@router.put("")
def update_brand_kit_endpoint(request: UpdateBrandKitRequest, user_id: str = Depends(get_current_user_id)):
    # Only fields present in the body are changed
    changes = request.model_dump(exclude_unset=True, exclude={"id"})
    return update_brand_kit(user_id, request.id, changes)


@router.delete("")
def delete_brand_kit_endpoint(
    brand_kit_id: str = Query(..., alias="id"),
    user_id: str = Depends(get_current_user_id),
):
    delete_brand_kit(user_id, brand_kit_id)
    return {"success": True}


@router.post("/logo")
def upload_logo_endpoint(
    file: UploadFile = File(...),
    brand_kit_id: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    encoder: EncodeProvider = Depends(get_encoder),
):
    return upload_logo(user_id, file.file, encoder=encoder, brand_kit_id=brand_kit_id or None)

"""
Organization API routes.

- GET  /api/organization: current organization with subscription
- POST /api/organization: signup (organization + owner + free subscription)
- PUT  /api/organization: rename (owner/admin)
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.organizations.service import (
    create_organization,
    get_organization_details,
    rename_organization,
)
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog


router = APIRouter(prefix="/api/organization", tags=["organization"])


class CreateOrganizationRequest(BaseModel):
    name: str
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class RenameOrganizationRequest(BaseModel):
    name: str


@router.get("")
def get_current_organization(user_id: str = Depends(get_current_user_id)):
    return get_organization_details(user_id)


@router.post("")
def create_organization_endpoint(
    request: CreateOrganizationRequest,
    user_id: str = Depends(get_current_user_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Create the caller's organization.

    Errors:
        400: Empty name
        409: Caller already has an organization, or the slug is taken
    """
    return create_organization(
        user_id,
        request.name,
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name,
        catalog=catalog,
    )


@router.put("")
def rename_organization_endpoint(request: RenameOrganizationRequest, user_id: str = Depends(get_current_user_id)):
    return rename_organization(user_id, request.name)

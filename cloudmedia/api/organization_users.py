"""
Organization member routes.

Inviting is capped by the plan's user limit. Role changes are owner-only.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog
from cloudmedia.features.users.service import change_role, invite_member, list_members, remove_member


router = APIRouter(prefix="/api/organization/users", tags=["organization-users"])


class InviteMemberRequest(BaseModel):
    new_user_id: str
    email: str = ""
    role: Optional[str] = None


class ChangeRoleRequest(BaseModel):
    target_user_id: str
    role: str


@router.get("")
def list_members_endpoint(user_id: str = Depends(get_current_user_id)):
    return list_members(user_id)


@router.post("")
def invite_member_endpoint(
    request: InviteMemberRequest,
    user_id: str = Depends(get_current_user_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Add a user to the caller's organization.

    Errors:
        403: Caller is a member, or the plan's user limit is reached
        409: User already belongs to an organization
    """
    return invite_member(user_id, request.new_user_id, email=request.email, role=request.role, catalog=catalog)


@router.put("")
def change_role_endpoint(request: ChangeRoleRequest, user_id: str = Depends(get_current_user_id)):
    return change_role(user_id, request.target_user_id, request.role)


@router.delete("")
def remove_member_endpoint(
    target_user_id: str = Query(..., alias="userId"),
    user_id: str = Depends(get_current_user_id),
):
    remove_member(user_id, target_user_id)
    return {"success": True}

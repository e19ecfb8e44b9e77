"""
cloudmedia/features/users/service.py

Organization membership management.

Role rules:
- owner or admin may invite (capped by the plan's user limit)
- only the owner changes roles
- the owner removes admins and members; an admin removes members and itself
- the owner can never be demoted or removed, so every organization keeps
  exactly one owner
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cloudmedia.core.database import get_db_session, organization_lock, users
from cloudmedia.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from cloudmedia.core.logging import log_event
from cloudmedia.features.entitlements.service import enforce_limit
from cloudmedia.features.organizations.service import count_members, get_membership, get_organization, require_role
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog, ResourceKind
from cloudmedia.models.organization import OrganizationUser, Role


_ASSIGNABLE_ROLES = (Role.ADMIN.value, Role.MEMBER.value)


def _assignable_role(role: Optional[str]) -> Role:
    role = role or Role.MEMBER.value
    if role not in _ASSIGNABLE_ROLES:
        raise ValidationError("Role must be admin or member", details={"role": role})
    return Role(role)


def _get_member(session: Session, organization_id: str, target_user_id: str) -> OrganizationUser:
    row = session.execute(
        select(users).where(users.c.id == target_user_id).where(users.c.organization_id == organization_id)
    ).mappings().first()
    if not row:
        raise NotFoundError("Target user not found")
    return OrganizationUser.model_validate(dict(row))


def list_members(user_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        rows = session.execute(
            select(users)
            .where(users.c.organization_id == membership.organization_id)
            .order_by(users.c.created_at.asc())
        ).mappings().all()
    return [OrganizationUser.model_validate(dict(row)).to_dict() for row in rows]


def invite_member(
    user_id: str,
    new_user_id: str,
    *,
    email: str = "",
    role: Optional[str] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """Add a user to the requester's organization if the plan allows one more seat."""
    if not new_user_id:
        raise ValidationError("New user id is required")
    new_role = _assignable_role(role)

    with get_db_session() as session:
        membership = get_membership(session, user_id)
    require_role(membership, (Role.OWNER, Role.ADMIN), "You don't have permission to add users")
    organization_id = membership.organization_id

    try:
        with organization_lock(organization_id) as session:
            if session.execute(select(users.c.id).where(users.c.id == new_user_id)).first():
                raise ConflictError("User already belongs to an organization")
            organization = get_organization(session, organization_id)
            enforce_limit(
                ResourceKind.ORG_USERS,
                organization.plan,
                count_members(session, organization_id),
                catalog=catalog,
                organization_id=organization_id,
            )
            session.execute(
                insert(users).values(
                    id=new_user_id,
                    organization_id=organization_id,
                    email=email or "",
                    role=new_role.value,
                )
            )
            member = get_membership(session, new_user_id)
    except IntegrityError:
        raise ConflictError("User already belongs to an organization")

    log_event(
        "info",
        "member.invited",
        organization_id=organization_id,
        user_id=user_id,
        extra={"member_id": new_user_id, "role": new_role.value},
    )
    return member.to_dict()


def change_role(user_id: str, target_user_id: str, role: str) -> Dict[str, Any]:
    """Owner-only. The owner's own role cannot change and ownership cannot be granted."""
    new_role = _assignable_role(role)
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        require_role(membership, (Role.OWNER,), "Only organization owners can change roles")
        target = _get_member(session, membership.organization_id, target_user_id)
        if target.role == Role.OWNER:
            raise ForbiddenError("Cannot change the role of the organization owner")
        session.execute(update(users).where(users.c.id == target_user_id).values(role=new_role.value))
        updated = get_membership(session, target_user_id)

    log_event(
        "info",
        "member.role_changed",
        organization_id=membership.organization_id,
        user_id=user_id,
        extra={"member_id": target_user_id, "role": new_role.value},
    )
    return updated.to_dict()


def remove_member(user_id: str, target_user_id: str) -> None:
    if not target_user_id:
        raise ValidationError("User ID is required")
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        require_role(membership, (Role.OWNER, Role.ADMIN), "You don't have permission to remove users")
        target = _get_member(session, membership.organization_id, target_user_id)
        if target.role == Role.OWNER:
            raise ForbiddenError("Cannot remove the organization owner")
        if target.role == Role.ADMIN and membership.role != Role.OWNER and target.id != membership.id:
            raise ForbiddenError("Only the organization owner can remove admins")
        session.execute(delete(users).where(users.c.id == target_user_id))

    log_event(
        "info",
        "member.removed",
        organization_id=membership.organization_id,
        user_id=user_id,
        extra={"member_id": target_user_id},
    )

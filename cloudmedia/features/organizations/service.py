"""
cloudmedia/features/organizations/service.py

Organizations (tenants).

Handles:
- Resolving the requester to their organization and role
- Signup: organization + owner + free subscription in one transaction
- Renaming (owner/admin)
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cloudmedia.core.config import settings
from cloudmedia.core.database import get_db_session, organizations, subscriptions, users
from cloudmedia.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from cloudmedia.core.logging import log_event
from cloudmedia.features.credits.ledger import get_subscription
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, FREE_PLAN_ID, PlanCatalog
from cloudmedia.models.organization import Organization, OrganizationUser, Role


_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_STRIP.sub("-", name.lower()).strip("-")


def get_membership(session: Session, user_id: str) -> OrganizationUser:
    """The requester's own membership row. The only way services learn an organization id."""
    row = session.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise NotFoundError("User or organization not found")
    return OrganizationUser.model_validate(dict(row))


def require_role(membership: OrganizationUser, allowed: Iterable[Role], message: str) -> None:
    if membership.role not in set(allowed):
        raise ForbiddenError(message)


def get_organization(session: Session, organization_id: str) -> Organization:
    row = session.execute(
        select(organizations).where(organizations.c.id == organization_id)
    ).mappings().first()
    if not row:
        raise NotFoundError("Organization not found")
    return Organization.model_validate(dict(row))


def count_members(session: Session, organization_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(users).where(users.c.organization_id == organization_id)
    ).scalar_one()


def get_organization_details(user_id: str) -> Dict[str, Any]:
    """Current organization with its subscription, or has_organization=False before signup."""
    with get_db_session() as session:
        row = session.execute(select(users.c.organization_id).where(users.c.id == user_id)).first()
        if not row:
            return {"has_organization": False}
        organization = get_organization(session, row.organization_id)
        subscription = get_subscription(session, organization.id)
        return {
            "has_organization": True,
            "organization": {
                **organization.to_dict(),
                "subscription": subscription.to_dict() if subscription else None,
                "member_count": count_members(session, organization.id),
            },
        }


def create_organization(
    user_id: str,
    name: str,
    *,
    email: str = "",
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Create an organization with the caller as owner and a free subscription.

    All three rows are written in one transaction; any failure leaves none.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Organization name is required")
    slug = slugify(name)
    if not slug:
        raise ValidationError("Organization name must contain letters or digits")

    now = now or datetime.now(timezone.utc)
    free = catalog.free_plan
    organization_id = str(uuid.uuid4())
    subscription_id = str(uuid.uuid4())

    try:
        with get_db_session() as session:
            if session.execute(select(users.c.id).where(users.c.id == user_id)).first():
                raise ConflictError("User already belongs to an organization")
            if session.execute(select(organizations.c.id).where(organizations.c.slug == slug)).first():
                raise ConflictError("An organization with a similar name already exists")

            session.execute(
                insert(organizations).values(id=organization_id, name=name, slug=slug, plan=FREE_PLAN_ID)
            )
            session.execute(
                insert(users).values(
                    id=user_id,
                    organization_id=organization_id,
                    email=email or "",
                    first_name=first_name,
                    last_name=last_name,
                    role=Role.OWNER.value,
                )
            )
            session.execute(
                insert(subscriptions).values(
                    id=subscription_id,
                    organization_id=organization_id,
                    plan=FREE_PLAN_ID,
                    status="active",
                    current_period_start=now,
                    current_period_end=now + timedelta(days=settings.FREE_PERIOD_DAYS),
                    cancel_at_period_end=False,
                    video_credits=free.video_credits,
                    image_credits=free.image_credits,
                    storage_limit=free.storage_limit,
                )
            )
            organization = get_organization(session, organization_id)
            owner = get_membership(session, user_id)
            subscription = get_subscription(session, organization_id)
    except IntegrityError:
        # Lost a race on slug or user id
        raise ConflictError("An organization with a similar name already exists")

    log_event(
        "info",
        "organization.created",
        organization_id=organization_id,
        user_id=user_id,
        extra={"slug": slug, "catalog_version": catalog.version},
    )
    return {
        "organization": organization.to_dict(),
        "user": owner.to_dict(),
        "subscription": subscription.to_dict(),
    }


def rename_organization(user_id: str, name: str) -> Dict[str, Any]:
    """Owner or admin renames their own organization. The slug is kept."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Organization name is required")
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        require_role(
            membership,
            (Role.OWNER, Role.ADMIN),
            "You don't have permission to update this organization",
        )
        session.execute(
            update(organizations)
            .where(organizations.c.id == membership.organization_id)
            .values(name=name)
        )
        return get_organization(session, membership.organization_id).to_dict()

"""
cloudmedia/features/brand_kits/service.py

Brand kits: logo, colors and font applied to branded transforms.

Handles:
- Listing and editing an organization's brand kits
- Creation gated by the plan's brand-kit limit
- Logo upload, charged one image credit
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session

from cloudmedia.core.database import brand_kits, get_db_session, organization_lock
from cloudmedia.core.errors import NotFoundError, ValidationError
from cloudmedia.core.logging import log_event
from cloudmedia.features.billing.service import roll_free_period
from cloudmedia.features.credits.ledger import CreditType, consume, ensure_credit, get_subscription
from cloudmedia.features.encoding.provider import EncodeProvider, UploadSource
from cloudmedia.features.encoding.service import discard_asset, run_encode
from cloudmedia.features.entitlements.service import enforce_limit
from cloudmedia.features.organizations.service import get_membership, get_organization
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog, ResourceKind
from cloudmedia.features.usage.service import record_usage
from cloudmedia.models.brand_kit import BrandKit
from cloudmedia.models.usage import UsageType


_EDITABLE_FIELDS = ("name", "logo_public_id", "primary_color", "secondary_color", "font_family")


def logo_folder(organization_id: str) -> str:
    return f"brand-kits/{organization_id}"


def validate_logo_public_id(organization_id: str, logo_public_id: Optional[str]) -> None:
    """Logos must come from this organization's own upload folder."""
    if logo_public_id and not logo_public_id.startswith(logo_folder(organization_id) + "/"):
        raise ValidationError("Logo does not belong to this organization")


def get_owned_brand_kit(session: Session, organization_id: str, brand_kit_id: str) -> BrandKit:
    # Another tenant's id is indistinguishable from an unknown one
    row = session.execute(
        select(brand_kits)
        .where(brand_kits.c.id == brand_kit_id)
        .where(brand_kits.c.organization_id == organization_id)
    ).mappings().first()
    if not row:
        raise NotFoundError("Brand kit not found")
    return BrandKit.model_validate(dict(row))


def count_brand_kits(session: Session, organization_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(brand_kits).where(brand_kits.c.organization_id == organization_id)
    ).scalar_one()


def list_brand_kits(user_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        rows = session.execute(
            select(brand_kits)
            .where(brand_kits.c.organization_id == membership.organization_id)
            .order_by(brand_kits.c.created_at.asc())
        ).mappings().all()
    return [BrandKit.model_validate(dict(row)).to_dict() for row in rows]


def create_brand_kit(
    user_id: str,
    name: str,
    *,
    logo_public_id: Optional[str] = None,
    primary_color: Optional[str] = None,
    secondary_color: Optional[str] = None,
    font_family: Optional[str] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """Create a brand kit if the plan's brand-kit limit allows one more."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Brand kit name is required")

    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id
    validate_logo_public_id(organization_id, logo_public_id)

    brand_kit_id = str(uuid.uuid4())
    with organization_lock(organization_id) as session:
        organization = get_organization(session, organization_id)
        enforce_limit(
            ResourceKind.BRAND_KITS,
            organization.plan,
            count_brand_kits(session, organization_id),
            catalog=catalog,
            organization_id=organization_id,
        )
        session.execute(
            insert(brand_kits).values(
                id=brand_kit_id,
                organization_id=organization_id,
                name=name,
                logo_public_id=logo_public_id,
                primary_color=primary_color,
                secondary_color=secondary_color,
                font_family=font_family,
            )
        )
        brand_kit = get_owned_brand_kit(session, organization_id, brand_kit_id)

    log_event("info", "brand_kit.created", organization_id=organization_id, user_id=user_id, extra={"brand_kit_id": brand_kit_id})
    return brand_kit.to_dict()


def update_brand_kit(user_id: str, brand_kit_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the provided fields; fields left out keep their values."""
    values = {key: value for key, value in changes.items() if key in _EDITABLE_FIELDS}
    if "name" in values:
        values["name"] = (values["name"] or "").strip()
        if not values["name"]:
            raise ValidationError("Brand kit name is required")

    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id
        get_owned_brand_kit(session, organization_id, brand_kit_id)
        validate_logo_public_id(organization_id, values.get("logo_public_id"))
        if values:
            session.execute(update(brand_kits).where(brand_kits.c.id == brand_kit_id).values(**values))
        return get_owned_brand_kit(session, organization_id, brand_kit_id).to_dict()


def delete_brand_kit(user_id: str, brand_kit_id: str) -> None:
    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id
        get_owned_brand_kit(session, organization_id, brand_kit_id)
        session.execute(delete(brand_kits).where(brand_kits.c.id == brand_kit_id))
    log_event("info", "brand_kit.deleted", organization_id=organization_id, user_id=user_id, extra={"brand_kit_id": brand_kit_id})


def upload_logo(
    user_id: str,
    source: UploadSource,
    *,
    encoder: EncodeProvider,
    brand_kit_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Upload a logo image, charging one image credit.

    Credit availability is checked before the upload; the debit, the usage
    record and the optional brand-kit update commit together after it. If
    that commit fails the uploaded image is destroyed.
    """
    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id

    result = None
    try:
        with organization_lock(organization_id) as session:
            subscription = get_subscription(session, organization_id)
            if subscription is None:
                raise NotFoundError("Subscription not found")
            subscription = roll_free_period(session, subscription)
            if brand_kit_id:
                get_owned_brand_kit(session, organization_id, brand_kit_id)
            ensure_credit(subscription, CreditType.IMAGE)

            result = run_encode(
                lambda: encoder.upload_image(source, folder=logo_folder(organization_id)),
                action="logo upload",
                organization_id=organization_id,
            )

            consume(session, subscription.id, CreditType.IMAGE)
            record_usage(session, organization_id, UsageType.LOGO_UPLOAD)
            if brand_kit_id:
                session.execute(
                    update(brand_kits)
                    .where(brand_kits.c.id == brand_kit_id)
                    .values(logo_public_id=result.public_id)
                )
    except Exception:
        if result is not None:
            discard_asset(encoder, result.public_id, "image", organization_id)
        raise

    log_event("info", "brand_kit.logo_uploaded", organization_id=organization_id, user_id=user_id, extra={"public_id": result.public_id})
    return {"success": True, "public_id": result.public_id, "url": result.url, "brand_kit_id": brand_kit_id}


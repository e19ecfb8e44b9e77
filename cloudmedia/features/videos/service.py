"""
cloudmedia/features/videos/service.py

Video upload and listing.

An upload costs one video credit. Availability is checked before the file is
sent to the encode service; the debit, the video row and the usage record
commit together afterwards.
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from cloudmedia.core.database import get_db_session, organization_lock, videos
from cloudmedia.core.errors import NotFoundError, ValidationError
from cloudmedia.core.logging import log_event
from cloudmedia.features.billing.service import roll_free_period
from cloudmedia.features.brand_kits.service import get_owned_brand_kit
from cloudmedia.features.credits.ledger import CreditType, consume, ensure_credit, get_subscription
from cloudmedia.features.encoding.provider import EncodeProvider, UploadSource
from cloudmedia.features.encoding.service import discard_asset, run_encode
from cloudmedia.features.organizations.service import get_membership, get_organization
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog
from cloudmedia.features.usage.service import record_usage
from cloudmedia.models.usage import UsageType
from cloudmedia.models.video import Video


def upload_folder(organization_id: str) -> str:
    return f"cloudmedia/{organization_id}"


def get_owned_video(session: Session, organization_id: str, video_id: str) -> Video:
    row = session.execute(
        select(videos).where(videos.c.id == video_id).where(videos.c.organization_id == organization_id)
    ).mappings().first()
    if not row:
        raise NotFoundError("Video not found")
    return Video.model_validate(dict(row))


def list_videos(user_id: str) -> List[Dict[str, Any]]:
    """Newest first, scoped to the requester's organization."""
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        rows = session.execute(
            select(videos)
            .where(videos.c.organization_id == membership.organization_id)
            .order_by(videos.c.created_at.desc())
        ).mappings().all()
    return [Video.model_validate(dict(row)).to_dict() for row in rows]


def upload_video(
    user_id: str,
    source: UploadSource,
    *,
    title: str,
    encoder: EncodeProvider,
    description: Optional[str] = None,
    original_size: Optional[str] = None,
    brand_kit_id: Optional[str] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """
    Upload and encode a video at the plan's quality, charging one video credit.

    Raises CreditsExhaustedError before any upload when no credit remains.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Video title is required")

    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id

    video_id = str(uuid.uuid4())
    result = None
    try:
        with organization_lock(organization_id) as session:
            organization = get_organization(session, organization_id)
            subscription = get_subscription(session, organization_id)
            if subscription is None:
                raise NotFoundError("Subscription not found")
            subscription = roll_free_period(session, subscription, catalog=catalog)
            if brand_kit_id:
                get_owned_brand_kit(session, organization_id, brand_kit_id)
            ensure_credit(subscription, CreditType.VIDEO)

            plan = catalog.get_plan(organization.plan)
            result = run_encode(
                lambda: encoder.upload_video(
                    source,
                    folder=upload_folder(organization_id),
                    quality=plan.quality,
                    max_height=plan.max_height,
                ),
                action="video upload",
                organization_id=organization_id,
            )

            session.execute(
                insert(videos).values(
                    id=video_id,
                    organization_id=organization_id,
                    user_id=user_id,
                    brand_kit_id=brand_kit_id,
                    title=title,
                    description=description,
                    public_id=result.public_id,
                    original_size=original_size,
                    compressed_size=str(result.bytes) if result.bytes is not None else None,
                    duration=int(result.duration or 0),
                    format="mp4",
                    resolution=f"{min(result.height or plan.max_height, plan.max_height)}p",
                )
            )
            consume(session, subscription.id, CreditType.VIDEO)
            record_usage(session, organization_id, UsageType.VIDEO_UPLOAD)
            video = get_owned_video(session, organization_id, video_id)
    except Exception:
        if result is not None:
            discard_asset(encoder, result.public_id, "video", organization_id)
        raise

    log_event(
        "info",
        "video.uploaded",
        organization_id=organization_id,
        user_id=user_id,
        extra={"video_id": video_id, "public_id": result.public_id, "plan": organization.plan},
    )
    return video.to_dict()

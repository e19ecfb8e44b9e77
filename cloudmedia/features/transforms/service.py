"""
cloudmedia/features/transforms/service.py

Video transforms (resize, social crop, trim, watermark, brand-kit overlay).

Creation is capped per video by the plan's transforms-per-video limit and is
recorded in usage. Transforms do not consume credits.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from cloudmedia.core.database import get_db_session, organization_lock, video_transforms, videos
from cloudmedia.core.errors import NotFoundError
from cloudmedia.core.logging import log_event
from cloudmedia.features.brand_kits.service import get_owned_brand_kit, validate_logo_public_id
from cloudmedia.features.encoding.provider import EncodeError, EncodeProvider, build_transform_spec
from cloudmedia.features.encoding.service import discard_asset, run_encode
from cloudmedia.features.entitlements.service import enforce_limit
from cloudmedia.features.organizations.service import get_membership, get_organization
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog, ResourceKind
from cloudmedia.features.usage.service import record_usage
from cloudmedia.features.videos.service import get_owned_video
from cloudmedia.models.usage import UsageType
from cloudmedia.models.video import VideoTransform


def count_transforms(session: Session, video_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(video_transforms).where(video_transforms.c.video_id == video_id)
    ).scalar_one()


def _get_transform(session: Session, transform_id: str) -> VideoTransform:
    row = session.execute(
        select(video_transforms).where(video_transforms.c.id == transform_id)
    ).mappings().first()
    if not row:
        raise NotFoundError("Transform not found")
    return VideoTransform.model_validate(dict(row))


def list_transforms(user_id: str, video_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        get_owned_video(session, membership.organization_id, video_id)
        rows = session.execute(
            select(video_transforms)
            .where(video_transforms.c.video_id == video_id)
            .order_by(video_transforms.c.created_at.asc())
        ).mappings().all()
    return [VideoTransform.model_validate(dict(row)).to_dict() for row in rows]


def create_transform(
    user_id: str,
    video_id: str,
    transform_type: str,
    *,
    encoder: EncodeProvider,
    settings: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    brand_kit_id: Optional[str] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """
    Apply a transform to one of the organization's videos.

    Counting, the limit check and the insert all happen under the
    organization lock, so two concurrent requests at limit - 1 cannot both pass.
    """
    settings = dict(settings or {})

    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id

    transform_id = str(uuid.uuid4())
    result = None
    try:
        with organization_lock(organization_id) as session:
            organization = get_organization(session, organization_id)
            video = get_owned_video(session, organization_id, video_id)
            brand_kit = get_owned_brand_kit(session, organization_id, brand_kit_id) if brand_kit_id else None
            validate_logo_public_id(organization_id, settings.get("logo_public_id"))
            spec = build_transform_spec(transform_type, settings, brand_kit=brand_kit)

            enforce_limit(
                ResourceKind.TRANSFORMS_PER_VIDEO,
                organization.plan,
                count_transforms(session, video_id),
                catalog=catalog,
                organization_id=organization_id,
            )

            result = run_encode(
                lambda: encoder.apply_transform(video.public_id, spec),
                action="transform",
                organization_id=organization_id,
            )

            session.execute(
                insert(video_transforms).values(
                    id=transform_id,
                    video_id=video_id,
                    brand_kit_id=brand_kit_id,
                    name=name or f"{spec.transform_type.value} {datetime.now(timezone.utc).isoformat()}",
                    transform_type=spec.transform_type.value,
                    settings=settings,
                    output_url=result.url,
                    output_public_id=result.public_id,
                    status="completed",
                )
            )
            record_usage(session, organization_id, UsageType.VIDEO_TRANSFORM)
            transform = _get_transform(session, transform_id)
    except Exception:
        # Only a separately stored output is ours to remove; the source video stays
        if result is not None and result.public_id != video.public_id:
            discard_asset(encoder, result.public_id, "video", organization_id)
        raise

    log_event(
        "info",
        "transform.created",
        organization_id=organization_id,
        user_id=user_id,
        extra={"video_id": video_id, "transform_id": transform_id, "transform_type": spec.transform_type.value},
    )
    return transform.to_dict()


def delete_transform(user_id: str, transform_id: str, *, encoder: EncodeProvider) -> None:
    """Remove a transform. A separately stored output asset is destroyed best effort."""
    with get_db_session() as session:
        organization_id = get_membership(session, user_id).organization_id
        transform = _get_transform(session, transform_id)
        video_row = session.execute(
            select(videos.c.organization_id, videos.c.public_id).where(videos.c.id == transform.video_id)
        ).first()
        if video_row is None or video_row.organization_id != organization_id:
            raise NotFoundError("Transform not found")
        session.execute(delete(video_transforms).where(video_transforms.c.id == transform_id))

    if transform.output_public_id and transform.output_public_id != video_row.public_id:
        try:
            encoder.destroy(transform.output_public_id, resource_type="video")
        except EncodeError as e:
            log_event(
                "error",
                "encode.orphan_asset",
                organization_id=organization_id,
                error_code="external_service_failure",
                extra={"public_id": transform.output_public_id, "reason": e},
            )

    log_event("info", "transform.deleted", organization_id=organization_id, user_id=user_id, extra={"transform_id": transform_id})

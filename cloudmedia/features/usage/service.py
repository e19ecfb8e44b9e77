"""
cloudmedia/features/usage/service.py

Usage accounting service.

Handles:
- Appending usage records inside the gatekeeper's transaction
- Monthly usage summaries for the dashboard

Usage records are an audit trail; enforcement reads live counts and credits.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from cloudmedia.core.database import get_db_session, organization_lock, usage_records
from cloudmedia.features.billing.service import roll_free_period
from cloudmedia.features.credits.ledger import get_subscription
from cloudmedia.features.organizations.service import get_membership
from cloudmedia.models.usage import UsageRecord, UsageType


def record_usage(
    session: Session,
    organization_id: str,
    usage_type: Union[UsageType, str],
    occurred_at: Optional[datetime] = None,
) -> UsageRecord:
    """
    Append one usage record in the caller's transaction.

    Args:
        session: Open session of the mutation being recorded
        organization_id: Organization charged
        usage_type: videoUpload, videoTransform or logoUpload
        occurred_at: Timestamp of usage (defaults to now)
    """
    if occurred_at is None:
        occurred_at = datetime.now(timezone.utc)
    usage_type = UsageType(usage_type)

    record = UsageRecord(
        organization_id=organization_id,
        type=usage_type,
        year=occurred_at.year,
        month=occurred_at.month,
        count=1,
        created_at=occurred_at,
    )
    session.execute(
        insert(usage_records).values(
            organization_id=record.organization_id,
            type=record.type.value,
            year=record.year,
            month=record.month,
            count=record.count,
            created_at=record.created_at,
        )
    )
    return record


def count_usage(session: Session, organization_id: str, year: int, month: int) -> Dict[str, int]:
    rows = session.execute(
        select(usage_records.c.type, func.sum(usage_records.c.count))
        .where(usage_records.c.organization_id == organization_id)
        .where(usage_records.c.year == year)
        .where(usage_records.c.month == month)
        .group_by(usage_records.c.type)
    ).all()
    counts = {usage_type.value: 0 for usage_type in UsageType}
    for usage_type, total in rows:
        counts[usage_type] = int(total or 0)
    return counts


def get_usage_summary(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current-month usage for the requester's organization plus remaining credits."""
    now = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        membership = get_membership(session, user_id)
    with organization_lock(membership.organization_id) as session:
        counts = count_usage(session, membership.organization_id, now.year, now.month)
        subscription = get_subscription(session, membership.organization_id)
        if subscription is not None:
            subscription = roll_free_period(session, subscription, now=now)
    return {
        "organization_id": membership.organization_id,
        "year": now.year,
        "month": now.month,
        "usage": counts,
        "credits": {
            "video_credits": subscription.video_credits if subscription else 0,
            "image_credits": subscription.image_credits if subscription else 0,
            "resets_at": subscription.current_period_end.isoformat() if subscription else None,
        },
    }

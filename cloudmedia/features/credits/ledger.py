"""
cloudmedia/features/credits/ledger.py

Credit ledger.

Per-period video/image credits stored on the subscription row. Every plan,
free included, is charged the same way. Debits are a single conditional
UPDATE so concurrent consumers can never drive a balance below zero.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cloudmedia.core.database import subscriptions
from cloudmedia.core.errors import CreditsExhaustedError, NotFoundError, ValidationError
from cloudmedia.core.logging import log_event
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog
from cloudmedia.models.subscription import Subscription


class CreditType(str, Enum):
    VIDEO = "video_credits"
    IMAGE = "image_credits"


def _column(credit_type: Union[CreditType, str]):
    return subscriptions.c[CreditType(credit_type).value]


def get_subscription(session: Session, organization_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.organization_id == organization_id)
    ).mappings().first()
    return Subscription.model_validate(dict(row)) if row else None


def get_subscription_by_id(session: Session, subscription_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.id == subscription_id)
    ).mappings().first()
    return Subscription.model_validate(dict(row)) if row else None


def has_credit(subscription: Subscription, credit_type: Union[CreditType, str]) -> bool:
    """True iff at least one credit of this type remains in the period."""
    return getattr(subscription, CreditType(credit_type).value) > 0


def ensure_credit(subscription: Subscription, credit_type: Union[CreditType, str]) -> None:
    """Raise CreditsExhaustedError when no credit remains. Used before costly external calls."""
    credit_type = CreditType(credit_type)
    if not has_credit(subscription, credit_type):
        log_event(
            "info",
            "credits.exhausted",
            organization_id=subscription.organization_id,
            error_code="credits_exhausted",
            extra={"credit_type": credit_type.value, "plan": subscription.plan},
        )
        raise CreditsExhaustedError(
            credit_type.value,
            resets_at=subscription.current_period_end,
            remaining=getattr(subscription, credit_type.value),
        )


def consume(
    session: Session,
    subscription_id: str,
    credit_type: Union[CreditType, str],
    amount: int = 1,
) -> None:
    """
    Debit `amount` credits atomically.

    Runs as one conditional UPDATE inside the caller's transaction. When the
    balance is insufficient nothing changes and CreditsExhaustedError is raised.
    """
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Credit amount must be a positive integer")

    credit_type = CreditType(credit_type)
    column = _column(credit_type)

    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription_id)
        .where(column >= amount)
        .values({column.name: column - amount})
    )
    if result.rowcount == 1:
        return

    current = get_subscription_by_id(session, subscription_id)
    if current is None:
        raise NotFoundError("Subscription not found")

    log_event(
        "info",
        "credits.exhausted",
        organization_id=current.organization_id,
        error_code="credits_exhausted",
        extra={"credit_type": credit_type.value, "requested": amount, "plan": current.plan},
    )
    raise CreditsExhaustedError(
        credit_type.value,
        resets_at=current.current_period_end,
        remaining=getattr(current, credit_type.value),
    )


def reset_for_new_period(
    session: Session,
    subscription_id: str,
    plan: str,
    period_start: datetime,
    period_end: datetime,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> None:
    """
    Refill credits and storage to the plan's catalog values and move the period.

    Only the billing synchronizer (webhooks, free-period rollover) and the
    owner-initiated free downgrade call this.
    """
    definition = catalog.get_plan(plan)
    result = session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription_id)
        .values(
            video_credits=definition.video_credits,
            image_credits=definition.image_credits,
            storage_limit=definition.storage_limit,
            current_period_start=period_start,
            current_period_end=period_end,
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Subscription not found")

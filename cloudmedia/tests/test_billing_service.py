"""
Billing state synchronizer against the database: idempotency, resets and
cancellation normalization.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from cloudmedia.core.database import billing_events, get_db_session, subscriptions
from cloudmedia.core.errors import BillingDisabledError, WebhookSignatureError
from cloudmedia.features.billing.service import (
    DROPPED,
    DUPLICATE,
    handle_webhook,
    process_billing_event,
    roll_free_period,
)
from cloudmedia.features.billing.state_machine import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
)
from cloudmedia.features.credits.ledger import CreditType, consume, get_subscription
from cloudmedia.features.organizations.service import get_organization
from cloudmedia.models.subscription import SubscriptionStatus
from cloudmedia.tests.mocks import make_event


def _state(organization_id):
    with get_db_session() as session:
        return get_subscription(session, organization_id), get_organization(session, organization_id)


def _set_period(organization_id, start, end):
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.organization_id == organization_id)
            .values(current_period_start=start, current_period_end=end)
        )


def _event_count():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(billing_events)).scalar_one()


def test_checkout_completed_moves_org_to_paid_plan(make_org):
    organization_id = make_org()
    start = datetime.now(timezone.utc).replace(microsecond=0)
    event = make_event(
        CHECKOUT_COMPLETED,
        organization_id=organization_id,
        plan_id="business",
        customer_id="cus_42",
        subscription_id="sub_42",
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
    )

    result = process_billing_event(event)

    subscription, organization = _state(organization_id)
    assert result.outcome == "applied"
    assert subscription.plan == organization.plan == "business"
    assert subscription.video_credits == 100
    assert subscription.image_credits == 500
    assert subscription.stripe_subscription_id == "sub_42"
    assert subscription.current_period_end == start + timedelta(days=30)


def test_duplicate_event_is_a_no_op(make_org):
    organization_id = make_org()
    start = datetime.now(timezone.utc).replace(microsecond=0)
    event = make_event(
        CHECKOUT_COMPLETED,
        event_id="evt_dup",
        organization_id=organization_id,
        plan_id="creator",
        subscription_id="sub_dup",
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
    )
    process_billing_event(event)

    # Spend a credit between deliveries; a replay must not refill it
    subscription, _ = _state(organization_id)
    with get_db_session() as session:
        consume(session, subscription.id, CreditType.VIDEO)

    second = process_billing_event(event)

    after, _ = _state(organization_id)
    assert second.outcome == DUPLICATE
    assert after.video_credits == 19
    assert _event_count() == 1


def test_agency_invoice_resets_credits_and_period(make_org):
    organization_id = make_org(plan="agency", video_credits=12, image_credits=40, stripe_subscription_id="sub_agency")
    before, _ = _state(organization_id)
    new_start = before.current_period_end
    new_end = new_start + timedelta(days=30)

    result = process_billing_event(
        make_event(
            INVOICE_PAID,
            subscription_id="sub_agency",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=new_start,
            current_period_end=new_end,
        )
    )

    after, _ = _state(organization_id)
    assert result.outcome == "applied"
    assert after.video_credits == 500
    assert after.image_credits == 2000
    assert after.current_period_end == new_end


@pytest.mark.parametrize(
    "event_type,status",
    [
        (SUBSCRIPTION_DELETED, None),
        (SUBSCRIPTION_UPDATED, SubscriptionStatus.CANCELED),
    ],
)
def test_cancellation_normalizes_to_free(make_org, event_type, status):
    organization_id = make_org(plan="business", video_credits=1, stripe_subscription_id="sub_biz")

    process_billing_event(make_event(event_type, subscription_id="sub_biz", status=status))

    subscription, organization = _state(organization_id)
    assert subscription.plan == organization.plan == "free"
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.stripe_subscription_id is None
    assert subscription.video_credits == 5
    assert subscription.image_credits == 20
    assert subscription.cancel_at_period_end is False


def test_stale_update_leaves_state_unchanged(make_org):
    organization_id = make_org(plan="creator", stripe_subscription_id="sub_c")
    before, _ = _state(organization_id)

    result = process_billing_event(
        make_event(
            SUBSCRIPTION_UPDATED,
            subscription_id="sub_c",
            status=SubscriptionStatus.ACTIVE,
            current_period_end=before.current_period_end - timedelta(days=30),
        )
    )

    after, _ = _state(organization_id)
    assert result.outcome == "stale"
    assert after == before


def test_older_update_does_not_overwrite_newer_one(make_org):
    organization_id = make_org(plan="business", stripe_subscription_id="sub_biz")
    before, _ = _state(organization_id)
    t0 = datetime.now(timezone.utc).replace(microsecond=0)
    later = make_event(
        SUBSCRIPTION_UPDATED,
        event_id="evt_later",
        subscription_id="sub_biz",
        status=SubscriptionStatus.ACTIVE,
        cancel_at_period_end=False,
        current_period_end=before.current_period_end,
        occurred_at=t0 + timedelta(minutes=5),
    )
    earlier = make_event(
        SUBSCRIPTION_UPDATED,
        event_id="evt_earlier",
        subscription_id="sub_biz",
        status=SubscriptionStatus.PAST_DUE,
        cancel_at_period_end=True,
        current_period_end=before.current_period_end,
        occurred_at=t0,
    )

    assert process_billing_event(later).outcome == "applied"
    assert process_billing_event(earlier).outcome == "stale"

    after, _ = _state(organization_id)
    assert after.status == SubscriptionStatus.ACTIVE
    assert after.cancel_at_period_end is False
    assert after.last_event_at == t0 + timedelta(minutes=5)


def test_event_for_unknown_subscription_is_dropped(make_org):
    make_org()
    result = process_billing_event(make_event(INVOICE_PAID, subscription_id="sub_missing"))
    assert result.outcome == DROPPED
    assert _event_count() == 1


def test_checkout_replacing_old_subscription_cancels_it(make_org, billing_provider):
    organization_id = make_org(plan="creator", stripe_subscription_id="sub_old")
    before, _ = _state(organization_id)

    process_billing_event(
        make_event(
            CHECKOUT_COMPLETED,
            organization_id=organization_id,
            plan_id="agency",
            subscription_id="sub_new",
            current_period_start=before.current_period_start,
            current_period_end=before.current_period_end + timedelta(days=1),
        ),
        provider=billing_provider,
    )

    after, _ = _state(organization_id)
    assert after.plan == "agency"
    assert after.stripe_subscription_id == "sub_new"
    assert billing_provider.canceled == ["sub_old"]


def test_handle_webhook_rejects_bad_signature_without_side_effects(make_org, billing_provider):
    make_org()
    with pytest.raises(WebhookSignatureError):
        handle_webhook({"stripe-signature": "forged"}, b"{}", provider=billing_provider)
    assert _event_count() == 0


def test_handle_webhook_without_provider_is_disabled():
    with pytest.raises(BillingDisabledError):
        handle_webhook({}, b"{}", provider=None)


def test_free_period_rolls_forward_from_stored_end(make_org):
    organization_id = make_org(video_credits=0, image_credits=3)
    end = datetime(2026, 1, 1, tzinfo=timezone.utc)
    _set_period(organization_id, end - timedelta(days=30), end)

    with get_db_session() as session:
        rolled = roll_free_period(session, get_subscription(session, organization_id), now=end + timedelta(days=45))

    assert rolled.current_period_start == end + timedelta(days=30)
    assert rolled.current_period_end == end + timedelta(days=60)
    assert rolled.video_credits == 5
    assert rolled.image_credits == 20


def test_paid_period_is_left_to_the_processor(make_org):
    organization_id = make_org(plan="creator", video_credits=0, stripe_subscription_id="sub_c")
    end = datetime(2026, 1, 1, tzinfo=timezone.utc)
    _set_period(organization_id, end - timedelta(days=30), end)

    with get_db_session() as session:
        rolled = roll_free_period(session, get_subscription(session, organization_id), now=end + timedelta(days=1))

    assert rolled.video_credits == 0
    assert rolled.current_period_end == end


def test_running_free_period_is_untouched(make_org):
    organization_id = make_org(video_credits=2)
    with get_db_session() as session:
        before = get_subscription(session, organization_id)
        rolled = roll_free_period(session, before)
    assert rolled == before

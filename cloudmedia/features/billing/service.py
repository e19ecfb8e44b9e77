"""
Billing service orchestrator.

Coordinates:
- Webhook intake: verify, dedupe by event id, apply through the state machine
- Owner plan changes (free downgrade, paid checkout)
- Cancel at period end

All Stripe-specific code is in stripe_provider.py; all transition rules are
in state_machine.py.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cloudmedia.core.config import settings
from cloudmedia.core.database import billing_events, get_db_session, organization_lock, organizations, subscriptions
from cloudmedia.core.errors import (
    BillingDisabledError,
    ExternalServiceError,
    ValidationError,
    WebhookSignatureError,
)
from cloudmedia.core.logging import log_event
from cloudmedia.features.billing.provider import (
    BillingConfigurationError,
    BillingEvent,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    CheckoutRequest,
)
from cloudmedia.features.billing.state_machine import (
    CHECKOUT_COMPLETED,
    HANDLED_EVENT_TYPES,
    BillingState,
    Outcome,
    Phase,
    free_state,
    transition,
)
from cloudmedia.features.billing.stripe_provider import StripeProvider
from cloudmedia.features.credits.ledger import get_subscription, reset_for_new_period
from cloudmedia.features.organizations.service import get_membership, get_organization, require_role
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, FREE_PLAN_ID, PlanCatalog
from cloudmedia.models.organization import Role
from cloudmedia.models.subscription import Subscription


DUPLICATE = "duplicate"
DROPPED = "dropped"


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_billing_provider() -> Optional[BillingProvider]:
    """FastAPI dependency: the Stripe provider, or None when billing is disabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _free_period() -> timedelta:
    return timedelta(days=settings.FREE_PERIOD_DAYS)


def _provider_failure(action: str, exc: BillingProviderError) -> ExternalServiceError:
    log_event(
        "error",
        "billing.provider_failed",
        error_code="external_service_failure",
        extra={"action": action, "reason": exc, "transient": exc.transient},
    )
    return ExternalServiceError("stripe", f"Stripe {action} failed: {exc}", retryable=exc.transient)


def _write_state(
    session: Session,
    subscription: Subscription,
    new_state: BillingState,
    *,
    reset_credits: bool,
    catalog: PlanCatalog,
) -> None:
    """Persist a billing state. Organization plan and subscription plan move together."""
    session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription.id)
        .values(
            plan=new_state.plan,
            status=new_state.status.value,
            current_period_start=new_state.current_period_start,
            current_period_end=new_state.current_period_end,
            cancel_at_period_end=new_state.cancel_at_period_end,
            stripe_customer_id=new_state.stripe_customer_id,
            stripe_subscription_id=new_state.stripe_subscription_id,
            last_event_at=new_state.last_event_at,
        )
    )
    if reset_credits:
        reset_for_new_period(
            session,
            subscription.id,
            new_state.plan,
            new_state.current_period_start,
            new_state.current_period_end,
            catalog=catalog,
        )
    if new_state.plan != subscription.plan:
        session.execute(
            update(organizations)
            .where(organizations.c.id == subscription.organization_id)
            .values(plan=new_state.plan)
        )


def _find_subscription(session: Session, event: BillingEvent) -> Optional[Subscription]:
    """Match an event to a local subscription. Never creates one."""
    if event.event_type == CHECKOUT_COMPLETED:
        if not event.organization_id:
            return None
        return get_subscription(session, event.organization_id)
    if not event.subscription_id:
        return None
    row = session.execute(
        select(subscriptions.c.organization_id).where(
            subscriptions.c.stripe_subscription_id == event.subscription_id
        )
    ).first()
    return get_subscription(session, row.organization_id) if row else None


def _record_event(session: Session, event: BillingEvent) -> bool:
    """Insert the event id; False when it was already processed."""
    existing = session.execute(
        select(billing_events.c.id).where(billing_events.c.stripe_event_id == event.event_id)
    ).first()
    if existing:
        return False
    session.execute(
        insert(billing_events).values(
            stripe_event_id=event.event_id,
            event_type=event.event_type,
            payload_hash=event.payload_hash,
            outcome="pending",
        )
    )
    return True


def _event_transaction(subscription: Optional[Subscription]):
    """Events for a known organization apply under its lock, serialized with its other writers."""
    if subscription is None:
        return get_db_session()
    return organization_lock(subscription.organization_id)


def process_billing_event(
    event: BillingEvent,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
    provider: Optional[BillingProvider] = None,
) -> WebhookResult:
    """
    Apply one verified event (idempotent).

    The event id is recorded in the same transaction that applies it, so a
    redelivery, concurrent or later, changes nothing. The subscription is
    re-read under the organization lock before the transition runs.
    """
    replaced_subscription_id: Optional[str] = None
    organization_id: Optional[str] = None

    matched = None
    if event.event_type in HANDLED_EVENT_TYPES:
        with get_db_session() as session:
            matched = _find_subscription(session, event)

    try:
        with _event_transaction(matched) as session:
            if not _record_event(session, event):
                outcome = DUPLICATE
            else:
                subscription = None
                if event.event_type in HANDLED_EVENT_TYPES:
                    subscription = _find_subscription(session, event)
                if event.event_type not in HANDLED_EVENT_TYPES:
                    outcome = Outcome.IGNORED.value
                elif subscription is None:
                    outcome = DROPPED
                else:
                    organization_id = subscription.organization_id
                    state = BillingState.from_subscription(subscription)
                    result = transition(state, event, catalog=catalog, free_period=_free_period())
                    if result.outcome == Outcome.APPLIED:
                        _write_state(
                            session,
                            subscription,
                            result.state,
                            reset_credits=result.reset_credits,
                            catalog=catalog,
                        )
                        if (
                            state.stripe_subscription_id
                            and result.state.stripe_subscription_id
                            and state.stripe_subscription_id != result.state.stripe_subscription_id
                        ):
                            replaced_subscription_id = state.stripe_subscription_id
                    elif result.reason:
                        log_event(
                            "info",
                            "billing.event_not_applied",
                            organization_id=organization_id,
                            event_type=event.event_type,
                            extra={"event_id": event.event_id, "reason": result.reason},
                        )
                    outcome = result.outcome.value
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event.event_id)
                    .values(outcome=outcome)
                )
    except IntegrityError:
        # Concurrent delivery inserted the same event id first
        with get_db_session() as session:
            if not session.execute(
                select(billing_events.c.id).where(billing_events.c.stripe_event_id == event.event_id)
            ).first():
                raise
        outcome = DUPLICATE

    level = "warning" if outcome == DROPPED else "info"
    log_event(
        level,
        f"billing.event_{outcome}",
        organization_id=organization_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id},
    )

    if replaced_subscription_id and provider is not None:
        # Checkout for a new plan supersedes the old processor subscription
        try:
            provider.cancel_subscription(replaced_subscription_id)
        except BillingProviderError as e:
            log_event(
                "error",
                "billing.replaced_subscription_cancel_failed",
                organization_id=organization_id,
                error_code="external_service_failure",
                extra={"stripe_subscription_id": replaced_subscription_id, "reason": e},
            )

    return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome=outcome)


def handle_webhook(
    headers: Mapping[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider],
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> WebhookResult:
    """Verify the signature before anything else, then process the event."""
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    try:
        event = provider.parse_webhook(headers, body)
    except BillingWebhookError as e:
        log_event("warning", "billing.webhook_rejected", error_code="invalid_signature", extra={"reason": e})
        raise WebhookSignatureError("Invalid webhook signature")
    except BillingConfigurationError as e:
        log_event("error", "billing.webhook_unconfigured", error_code="billing_disabled", extra={"reason": e})
        raise BillingDisabledError("Billing webhook is not configured")
    except BillingProviderError as e:
        raise _provider_failure("webhook lookup", e)
    return process_billing_event(event, catalog=catalog, provider=provider)


def get_subscription_details(user_id: str, *, catalog: PlanCatalog = DEFAULT_CATALOG) -> Dict[str, Any]:
    """The organization's subscription plus the plan list with the current one flagged."""
    with get_db_session() as session:
        membership = get_membership(session, user_id)
    with organization_lock(membership.organization_id) as session:
        subscription = get_subscription(session, membership.organization_id)
        if subscription is not None:
            subscription = roll_free_period(session, subscription, catalog=catalog)
    current_plan = subscription.plan if subscription else None
    return {
        "subscription": subscription.to_dict() if subscription else None,
        "catalog_version": catalog.version,
        "available_plans": [
            {**plan.to_public_dict(), "current": plan.plan_id == current_plan}
            for plan in catalog.plans()
        ],
    }


def _load_owner_subscription(user_id: str, action: str):
    with get_db_session() as session:
        membership = get_membership(session, user_id)
        require_role(membership, (Role.OWNER,), f"Only organization owners can {action}")
        subscription = get_subscription(session, membership.organization_id)
        organization = get_organization(session, membership.organization_id)
    if subscription is None:
        raise ValidationError("Organization has no subscription")
    return membership, organization, subscription


def _apply_free(subscription: Subscription, catalog: PlanCatalog, now: datetime) -> Subscription:
    with organization_lock(subscription.organization_id) as session:
        current = get_subscription(session, subscription.organization_id)
        _write_state(
            session,
            current,
            free_state(
                now,
                stripe_customer_id=current.stripe_customer_id,
                free_period=_free_period(),
                last_event_at=current.last_event_at,
            ),
            reset_credits=True,
            catalog=catalog,
        )
        return get_subscription(session, subscription.organization_id)


def roll_free_period(
    session: Session,
    subscription: Subscription,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Start the next free period once the stored one has ended.

    Free organizations get no processor events, so their rollover runs here,
    in the caller's transaction (under the organization lock), before credits
    are read. Periods stay anchored to the stored end; missed periods are not
    accumulated.
    """
    now = now or datetime.now(timezone.utc)
    if BillingState.from_subscription(subscription).phase != Phase.FREE:
        return subscription
    if now < subscription.current_period_end:
        return subscription

    period = _free_period()
    missed = (now - subscription.current_period_end) // period
    period_start = subscription.current_period_end + missed * period
    reset_for_new_period(
        session,
        subscription.id,
        FREE_PLAN_ID,
        period_start,
        period_start + period,
        catalog=catalog,
    )
    log_event(
        "info",
        "billing.free_period_rolled",
        organization_id=subscription.organization_id,
        extra={"period_start": period_start.isoformat()},
    )
    return get_subscription(session, subscription.organization_id)


def change_plan(
    user_id: str,
    plan_id: str,
    *,
    provider: Optional[BillingProvider],
    catalog: PlanCatalog = DEFAULT_CATALOG,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Owner-initiated plan change.

    free: cancel any live processor subscription first, then apply the free
    tier locally. Paid: return a hosted checkout URL; nothing changes locally
    until checkout.session.completed arrives.
    """
    plan = catalog.get_plan(plan_id)
    membership, organization, subscription = _load_owner_subscription(user_id, "change subscription plans")
    now = now or datetime.now(timezone.utc)

    if plan.plan_id == FREE_PLAN_ID:
        state = BillingState.from_subscription(subscription)
        if state.phase == Phase.FREE:
            return {"subscription": subscription.to_dict(), "redirect_url": None}
        if subscription.stripe_subscription_id:
            if provider is None:
                raise BillingDisabledError("Billing is not configured")
            try:
                provider.cancel_subscription(subscription.stripe_subscription_id)
            except BillingProviderError as e:
                raise _provider_failure("subscription cancel", e)
        updated = _apply_free(subscription, catalog, now)
        log_event(
            "info",
            "billing.downgraded_to_free",
            organization_id=organization.id,
            user_id=user_id,
            extra={"previous_plan": subscription.plan},
        )
        return {"subscription": updated.to_dict(), "redirect_url": None}

    if provider is None:
        raise BillingDisabledError("Billing is not configured")

    name = None
    if membership.first_name and membership.last_name:
        name = f"{membership.first_name} {membership.last_name}"
    try:
        customer_id = provider.ensure_customer(
            organization.id,
            user_id,
            email=membership.email or None,
            name=name,
            existing_customer_id=subscription.stripe_customer_id,
        )
        url = provider.create_checkout_session(
            CheckoutRequest(
                customer_id=customer_id,
                plan_id=plan.plan_id,
                plan_name=plan.name,
                description=", ".join(plan.features),
                unit_amount=plan.price,
                success_url=f"{settings.APP_URL}/settings/billing?success=true",
                cancel_url=f"{settings.APP_URL}/settings/billing?canceled=true",
                metadata={"userId": user_id, "organizationId": organization.id, "planId": plan.plan_id},
            )
        )
    except BillingProviderError as e:
        raise _provider_failure("checkout", e)

    if customer_id != subscription.stripe_customer_id:
        with get_db_session() as session:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription.id)
                .values(stripe_customer_id=customer_id)
            )

    log_event(
        "info",
        "billing.checkout_started",
        organization_id=organization.id,
        user_id=user_id,
        extra={"plan": plan.plan_id},
    )
    return {"subscription": None, "redirect_url": url}


def cancel_subscription(
    user_id: str,
    *,
    provider: Optional[BillingProvider],
    catalog: PlanCatalog = DEFAULT_CATALOG,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Cancel at the end of the current period.

    With a processor subscription only the cancel flag changes (at Stripe and
    locally); the downgrade arrives later as customer.subscription.deleted.
    Without one the organization drops to free immediately.
    """
    _, organization, subscription = _load_owner_subscription(user_id, "cancel subscription plans")
    now = now or datetime.now(timezone.utc)

    if subscription.stripe_subscription_id:
        if provider is None:
            raise BillingDisabledError("Billing is not configured")
        try:
            provider.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
        except BillingProviderError as e:
            raise _provider_failure("subscription update", e)
        with get_db_session() as session:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription.id)
                .values(cancel_at_period_end=True)
            )
            updated = get_subscription(session, organization.id)
    elif BillingState.from_subscription(subscription).phase == Phase.FREE:
        updated = subscription
    else:
        updated = _apply_free(subscription, catalog, now)

    log_event("info", "billing.cancel_requested", organization_id=organization.id, user_id=user_id)
    return {"success": True, "subscription": updated.to_dict()}

"""
cloudmedia/features/billing/state_machine.py

Billing state machine.

Pure transition function from (stored billing state, verified processor event)
to the next state. No network, no storage; the synchronizer in service.py
loads the state, calls transition(), and writes the result.

Phases:
    free            no paid subscription at the processor
    active(plan)    paid and current
    past_due(plan)  payment failing; plan kept until the processor cancels
    canceled        processor ended the subscription; normalized to free at once

Rules:
    checkout.session.completed    -> active(P); ids stored; credits reset to P
    invoice.payment_succeeded     -> status from processor; credits reset only
                                     on a real period rollover
    customer.subscription.updated -> status, period end, cancel flag; a
                                     processor status of canceled cancels
    customer.subscription.deleted -> canceled, normalized to free
    anything else                 -> ignored
    an event created before the last applied one -> stale
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from cloudmedia.features.billing.provider import BillingEvent
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, FREE_PLAN_ID, PlanCatalog
from cloudmedia.models.subscription import Subscription, SubscriptionStatus


CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.payment_succeeded"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

HANDLED_EVENT_TYPES = (CHECKOUT_COMPLETED, INVOICE_PAID, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED)

DEFAULT_FREE_PERIOD = timedelta(days=30)


class Phase(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    STALE = "stale"


@dataclass(frozen=True)
class BillingState:
    phase: Phase
    plan: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    last_event_at: Optional[datetime] = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "BillingState":
        return cls(
            phase=phase_for(subscription.plan, subscription.status, subscription.stripe_subscription_id),
            plan=subscription.plan,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            stripe_customer_id=subscription.stripe_customer_id,
            stripe_subscription_id=subscription.stripe_subscription_id,
            last_event_at=subscription.last_event_at,
        )


@dataclass(frozen=True)
class Transition:
    state: BillingState
    outcome: Outcome
    reset_credits: bool = False
    reason: Optional[str] = None


def phase_for(plan: str, status: SubscriptionStatus, stripe_subscription_id: Optional[str]) -> Phase:
    if status == SubscriptionStatus.CANCELED:
        return Phase.CANCELED
    if plan == FREE_PLAN_ID and not stripe_subscription_id:
        return Phase.FREE
    if status == SubscriptionStatus.PAST_DUE:
        return Phase.PAST_DUE
    return Phase.ACTIVE


def _ignored(state: BillingState, reason: str) -> Transition:
    return Transition(state=state, outcome=Outcome.IGNORED, reason=reason)


def _stale(state: BillingState, reason: str) -> Transition:
    return Transition(state=state, outcome=Outcome.STALE, reason=reason)


def free_state(
    now: datetime,
    *,
    stripe_customer_id: Optional[str] = None,
    free_period: timedelta = DEFAULT_FREE_PERIOD,
    last_event_at: Optional[datetime] = None,
) -> BillingState:
    """The normalized free tier: active, no processor subscription, fresh period."""
    return BillingState(
        phase=Phase.FREE,
        plan=FREE_PLAN_ID,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=now,
        current_period_end=now + free_period,
        cancel_at_period_end=False,
        stripe_customer_id=stripe_customer_id,
        stripe_subscription_id=None,
        last_event_at=last_event_at,
    )


def _cancel(state: BillingState, event: BillingEvent, free_period: timedelta) -> Transition:
    return Transition(
        state=free_state(event.occurred_at, stripe_customer_id=state.stripe_customer_id, free_period=free_period),
        outcome=Outcome.APPLIED,
        reset_credits=True,
        reason="canceled",
    )


def _phase_from_status(status: SubscriptionStatus) -> Phase:
    return Phase.PAST_DUE if status == SubscriptionStatus.PAST_DUE else Phase.ACTIVE


def _checkout_completed(state: BillingState, event: BillingEvent, catalog: PlanCatalog) -> Transition:
    if not event.plan_id or not catalog.has_plan(event.plan_id) or event.plan_id == FREE_PLAN_ID:
        return _ignored(state, f"checkout without a paid plan: {event.plan_id!r}")
    if not event.subscription_id:
        return _ignored(state, "checkout without a subscription")
    if (
        state.stripe_subscription_id == event.subscription_id
        and event.current_period_end is not None
        and event.current_period_end < state.current_period_end
    ):
        return _stale(state, "checkout period older than stored period")

    status = event.status or SubscriptionStatus.ACTIVE
    if status == SubscriptionStatus.CANCELED:
        return _ignored(state, "checkout for a subscription already canceled")

    new_state = replace(
        state,
        phase=_phase_from_status(status),
        plan=event.plan_id,
        status=status,
        current_period_start=event.current_period_start or state.current_period_start,
        current_period_end=event.current_period_end or state.current_period_end,
        cancel_at_period_end=bool(event.cancel_at_period_end),
        stripe_customer_id=event.customer_id or state.stripe_customer_id,
        stripe_subscription_id=event.subscription_id,
    )
    return Transition(state=new_state, outcome=Outcome.APPLIED, reset_credits=True)


def _invoice_paid(state: BillingState, event: BillingEvent) -> Transition:
    if state.phase not in (Phase.ACTIVE, Phase.PAST_DUE):
        return _ignored(state, f"invoice paid while {state.phase.value}")
    if event.current_period_start is None or event.current_period_end is None:
        return _ignored(state, "invoice without a subscription period")
    if event.current_period_start < state.current_period_start:
        return _stale(state, "invoice period older than stored period")

    status = event.status or SubscriptionStatus.ACTIVE
    if status == SubscriptionStatus.CANCELED:
        return _ignored(state, "invoice for a canceled subscription")

    rollover = event.current_period_start != state.current_period_start
    new_state = replace(
        state,
        phase=_phase_from_status(status),
        status=status,
        current_period_start=event.current_period_start,
        current_period_end=event.current_period_end,
        cancel_at_period_end=(
            state.cancel_at_period_end if event.cancel_at_period_end is None else event.cancel_at_period_end
        ),
    )
    return Transition(state=new_state, outcome=Outcome.APPLIED, reset_credits=rollover)


def _subscription_updated(state: BillingState, event: BillingEvent, free_period: timedelta) -> Transition:
    if state.phase in (Phase.FREE, Phase.CANCELED):
        return _ignored(state, "update for a subscription no longer tracked")
    if event.status == SubscriptionStatus.CANCELED:
        return _cancel(state, event, free_period)
    if event.current_period_end is not None and event.current_period_end < state.current_period_end:
        return _stale(state, "update period older than stored period")

    status = event.status or state.status
    new_state = replace(
        state,
        phase=_phase_from_status(status),
        status=status,
        # Period start moves only with a paid invoice, which is what detects rollover
        current_period_end=event.current_period_end or state.current_period_end,
        cancel_at_period_end=(
            state.cancel_at_period_end if event.cancel_at_period_end is None else event.cancel_at_period_end
        ),
    )
    return Transition(state=new_state, outcome=Outcome.APPLIED)


def _apply(state: BillingState, event: BillingEvent, catalog: PlanCatalog, free_period: timedelta) -> Transition:
    if event.event_type == CHECKOUT_COMPLETED:
        return _checkout_completed(state, event, catalog)
    if event.event_type == INVOICE_PAID:
        return _invoice_paid(state, event)
    if event.event_type == SUBSCRIPTION_UPDATED:
        return _subscription_updated(state, event, free_period)
    if event.event_type == SUBSCRIPTION_DELETED:
        if state.phase == Phase.FREE:
            return _ignored(state, "subscription already removed")
        return _cancel(state, event, free_period)
    return _ignored(state, f"unhandled event type {event.event_type}")


def transition(
    state: BillingState,
    event: BillingEvent,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
    free_period: timedelta = DEFAULT_FREE_PERIOD,
) -> Transition:
    """
    Apply one verified processor event to the stored billing state.

    The caller has already matched the event to this state's subscription.
    Deliveries are unordered; an event created before the last applied one is
    stale even when it carries the same period.
    """
    if state.last_event_at is not None and event.occurred_at < state.last_event_at:
        return _stale(state, "event older than the last applied event")
    result = _apply(state, event, catalog, free_period)
    if result.outcome == Outcome.APPLIED:
        return replace(result, state=replace(result.state, last_event_at=event.occurred_at))
    return result

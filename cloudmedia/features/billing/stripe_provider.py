"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
import hashlib
import json
from typing import Any, Dict, Mapping, Optional
from datetime import datetime, timezone
import stripe

from cloudmedia.core.config import settings
from cloudmedia.features.billing.provider import (
    BillingConfigurationError,
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CheckoutRequest,
)
from cloudmedia.models.subscription import SubscriptionStatus


# Stripe subscription status -> local status
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Events that need the subscription fetched to learn status and period
_LOOKUP_EVENTS = ("checkout.session.completed", "invoice.payment_succeeded")

# Errors worth retrying: network, rate limit, Stripe-side 5xx
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def normalize_status(stripe_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not stripe_status:
        return None
    return STATUS_MAP.get(stripe_status)


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict; missing keys yield default."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _subscription_period(subscription: Any):
    """Return (start, end); newer API versions carry the period on the first item."""
    start = _field(subscription, "current_period_start")
    end = _field(subscription, "current_period_end")
    if start is None or end is None:
        items = _field(_field(subscription, "items"), "data", [])
        if items:
            start = start if start is not None else _field(items[0], "current_period_start")
            end = end if end is not None else _field(items[0], "current_period_end")
    return _timestamp(start), _timestamp(end)


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub_id = _field(invoice, "subscription")
    if sub_id is None:
        details = _field(_field(invoice, "parent"), "subscription_details")
        sub_id = _field(details, "subscription")
    if isinstance(sub_id, Mapping):
        sub_id = _field(sub_id, "id")
    return sub_id


def _wrap(action: str, exc: "stripe.StripeError") -> BillingProviderError:
    return BillingProviderError(
        f"Stripe {action} failed: {exc.user_message or exc.__class__.__name__}",
        transient=isinstance(exc, _TRANSIENT_ERRORS),
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout: Seconds per Stripe request (defaults to EXTERNAL_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingConfigurationError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout or settings.EXTERNAL_TIMEOUT_SECONDS
        )

    def ensure_customer(
        self,
        organization_id: str,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """Reuse the stored Stripe customer or create one."""
        if existing_customer_id:
            return existing_customer_id
        customer_data: Dict[str, Any] = {
            "metadata": {"organizationId": organization_id, "userId": user_id},
        }
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(**customer_data)
        except stripe.StripeError as e:
            raise _wrap("customer creation", e)
        return customer["id"]

    def create_checkout_session(self, request: CheckoutRequest) -> str:
        """Create Stripe checkout session with inline monthly price data."""
        try:
            session = stripe.checkout.Session.create(
                customer=request.customer_id,
                payment_method_types=["card"],
                mode="subscription",
                billing_address_collection="auto",
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "product_data": {
                                "name": f"CloudMedia Pro - {request.plan_name} Plan",
                                "description": request.description,
                            },
                            "unit_amount": request.unit_amount,
                            "recurring": {"interval": "month"},
                        },
                        "quantity": 1,
                    }
                ],
                metadata=request.metadata,
                success_url=request.success_url,
                cancel_url=request.cancel_url,
            )
        except stripe.StripeError as e:
            raise _wrap("checkout session creation", e)
        return session["url"]

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.InvalidRequestError as e:
            # Already gone at Stripe: nothing left to cancel
            if getattr(e, "code", None) == "resource_missing":
                return
            raise _wrap("subscription cancel", e)
        except stripe.StripeError as e:
            raise _wrap("subscription cancel", e)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise _wrap("subscription update", e)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature, then normalize the event."""
        if not self.webhook_secret:
            raise BillingConfigurationError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        event = json.loads(body)
        return self._parse_event(event, hashlib.sha256(body).hexdigest())

    def _retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _wrap("subscription lookup", e)

    def _parse_event(self, event: Dict[str, Any], payload_hash: str) -> BillingEvent:
        """Parse Stripe event into normalized BillingEvent."""
        event_type = event["type"]
        data = _field(_field(event, "data"), "object", {})
        metadata = dict(_field(data, "metadata", {}))

        fields: Dict[str, Any] = {
            "event_id": event["id"],
            "event_type": event_type,
            "occurred_at": _timestamp(_field(event, "created")) or datetime.now(timezone.utc),
            "payload_hash": payload_hash,
            "customer_id": _field(data, "customer"),
            "metadata": metadata,
        }

        subscription = None
        if event_type.startswith("customer.subscription."):
            fields["subscription_id"] = _field(data, "id")
            subscription = data
        elif event_type == "checkout.session.completed":
            fields["subscription_id"] = _field(data, "subscription")
            fields["organization_id"] = metadata.get("organizationId")
            fields["plan_id"] = metadata.get("planId")
        elif event_type == "invoice.payment_succeeded":
            fields["subscription_id"] = _invoice_subscription_id(data)

        if subscription is None and event_type in _LOOKUP_EVENTS and fields.get("subscription_id"):
            subscription = self._retrieve_subscription(fields["subscription_id"])

        if subscription is not None:
            start, end = _subscription_period(subscription)
            fields["status"] = normalize_status(_field(subscription, "status"))
            fields["current_period_start"] = start
            fields["current_period_end"] = end
            fields["cancel_at_period_end"] = bool(_field(subscription, "cancel_at_period_end", False))

        return BillingEvent(**fields)

"""
Billing provider protocol.

Defines the interface for the payment processor (Stripe).
This allows swapping providers without changing business logic, and lets
tests run against an in-memory fake.
"""
from typing import Protocol, Dict, Any, Mapping, Optional
from dataclasses import dataclass, field
from datetime import datetime

from cloudmedia.models.subscription import SubscriptionStatus


@dataclass(frozen=True)
class BillingEvent:
    """A verified processor event, normalized to the fields the synchronizer needs."""
    event_id: str
    event_type: str
    occurred_at: datetime
    payload_hash: str
    organization_id: Optional[str] = None  # checkout metadata only
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything needed to open a hosted subscription checkout."""
    customer_id: str
    plan_id: str
    plan_name: str
    description: str
    unit_amount: int  # cents per month
    success_url: str
    cancel_url: str
    metadata: Dict[str, str] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Subscription cancellation (immediate or at period end)
    - Webhook signature verification and parsing

    Every call is bounded by a timeout; failures raise BillingProviderError.
    """

    def ensure_customer(
        self,
        organization_id: str,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """Return the existing customer id, or create one tagged with organization/user ids."""
        ...

    def create_checkout_session(self, request: CheckoutRequest) -> str:
        """Create a subscription checkout session and return its hosted URL."""
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True) -> None:
        """Flag a subscription to end when the current period does."""
        ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """
        Verify the signature header, then normalize the event.

        Raises:
            BillingWebhookError: signature missing/invalid or body unparsable.
            BillingProviderError: a follow-up lookup at the processor failed.
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""

    def __init__(self, message: str, *, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class BillingConfigurationError(BillingProviderError):
    """Provider credentials or webhook secret missing."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification and parsing errors."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)

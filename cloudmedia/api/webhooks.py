"""
Stripe webhook intake.

The raw body is passed through untouched; the signature is verified against
it before any state is read or written.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from cloudmedia.features.billing.provider import BillingProvider
from cloudmedia.features.billing.service import get_billing_provider, handle_webhook
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Returns:
        {"received": true, "event_id": ..., "outcome": applied|ignored|stale|duplicate|dropped}

    Errors:
        400: invalid_signature
        503: billing_disabled
    """
    body = await request.body()
    result = handle_webhook(dict(request.headers), body, provider=provider, catalog=catalog)
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}

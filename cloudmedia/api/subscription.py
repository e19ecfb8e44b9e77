"""
Subscription API routes.

- GET    /api/subscription: current subscription and available plans
- POST   /api/subscription: change plan (free applies now, paid returns a checkout URL)
- DELETE /api/subscription: cancel at period end
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.billing.provider import BillingProvider
from cloudmedia.features.billing.service import (
    cancel_subscription,
    change_plan,
    get_billing_provider,
    get_subscription_details,
)
from cloudmedia.features.plans.catalog import PlanCatalog, get_catalog


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class ChangePlanRequest(BaseModel):
    plan_id: str


@router.get("")
def get_subscription_endpoint(
    user_id: str = Depends(get_current_user_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return get_subscription_details(user_id, catalog=catalog)


@router.post("")
def change_plan_endpoint(
    request: ChangePlanRequest,
    user_id: str = Depends(get_current_user_id),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Change the organization's plan. Owner only.

    Returns:
        {"subscription": {...}, "redirect_url": null} for free
        {"subscription": null, "redirect_url": "https://checkout.stripe.com/..."} for paid plans

    Errors:
        400: invalid_plan
        403: Caller is not the owner
        503: Billing disabled
    """
    return change_plan(user_id, request.plan_id, provider=provider, catalog=catalog)


@router.delete("")
def cancel_subscription_endpoint(
    user_id: str = Depends(get_current_user_id),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return cancel_subscription(user_id, provider=provider, catalog=catalog)

"""
Stripe webhook intake through the API with real signature verification.
"""
import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from cloudmedia.core.database import billing_events, get_db_session
from cloudmedia.features.billing.service import get_billing_provider
from cloudmedia.features.billing.stripe_provider import StripeProvider
from cloudmedia.features.credits.ledger import get_subscription


WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_id, event_type, obj):
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    ).encode("utf-8")


@pytest.fixture
def stripe_client(client):
    from cloudmedia.main import app

    app.dependency_overrides[get_billing_provider] = lambda: StripeProvider(
        secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET
    )
    return client


def _stored_events():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(billing_events)).scalar_one()


def test_valid_signature_applies_deletion(stripe_client, make_org):
    organization_id = make_org(plan="business", video_credits=0, stripe_subscription_id="sub_biz")
    payload = _event(
        "evt_del_1",
        "customer.subscription.deleted",
        {"id": "sub_biz", "object": "subscription", "customer": "cus_test", "status": "canceled"},
    )

    resp = stripe_client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": _sign(payload), "content-type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_del_1", "outcome": "applied"}
    with get_db_session() as session:
        subscription = get_subscription(session, organization_id)
    assert subscription.plan == "free"
    assert subscription.video_credits == 5


def test_redelivery_is_reported_as_duplicate(stripe_client, make_org):
    make_org(plan="creator", stripe_subscription_id="sub_c")
    payload = _event(
        "evt_dup_1",
        "customer.subscription.deleted",
        {"id": "sub_c", "object": "subscription", "customer": "cus_test", "status": "canceled"},
    )
    headers = {"stripe-signature": _sign(payload), "content-type": "application/json"}

    first = stripe_client.post("/api/webhooks/stripe", content=payload, headers=headers)
    second = stripe_client.post("/api/webhooks/stripe", content=payload, headers=headers)

    assert first.json()["outcome"] == "applied"
    assert second.json()["outcome"] == "duplicate"
    assert _stored_events() == 1


def test_checkout_completed_fetches_subscription_period(stripe_client, make_org):
    organization_id = make_org()
    start = int(time.time())
    end = start + 30 * 86400
    payload = _event(
        "evt_checkout_1",
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "object": "checkout.session",
            "customer": "cus_new",
            "subscription": "sub_new",
            "metadata": {"organizationId": organization_id, "planId": "agency", "userId": "user_owner"},
        },
    )
    retrieved = {
        "id": "sub_new",
        "object": "subscription",
        "status": "active",
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": False,
    }

    with patch("stripe.Subscription.retrieve", return_value=retrieved) as mock_retrieve:
        resp = stripe_client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload), "content-type": "application/json"},
        )

    assert resp.status_code == 200
    mock_retrieve.assert_called_once_with("sub_new")
    with get_db_session() as session:
        subscription = get_subscription(session, organization_id)
    assert subscription.plan == "agency"
    assert subscription.video_credits == 500
    assert subscription.image_credits == 2000
    assert subscription.stripe_customer_id == "cus_new"
    assert int(subscription.current_period_end.timestamp()) == end


def test_invalid_signature_is_rejected_without_side_effects(stripe_client, make_org):
    organization_id = make_org(plan="business", stripe_subscription_id="sub_biz")
    payload = _event(
        "evt_forged",
        "customer.subscription.deleted",
        {"id": "sub_biz", "object": "subscription", "status": "canceled"},
    )

    resp = stripe_client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": _sign(payload, secret="whsec_wrong"), "content-type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"
    assert _stored_events() == 0
    with get_db_session() as session:
        assert get_subscription(session, organization_id).plan == "business"


def test_missing_signature_header_is_rejected(stripe_client):
    resp = stripe_client.post("/api/webhooks/stripe", content=b"{}", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_missing_webhook_secret_is_billing_disabled(client):
    from cloudmedia.main import app

    app.dependency_overrides[get_billing_provider] = lambda: StripeProvider(secret_key="sk_test_123", webhook_secret=None)
    resp = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_billing_not_configured_is_503(client):
    from cloudmedia.main import app

    app.dependency_overrides[get_billing_provider] = lambda: None
    resp = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert resp.status_code == 503

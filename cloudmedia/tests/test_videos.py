"""
Video upload gatekeeping: credits, encode failures and rollback.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from cloudmedia.core.database import get_db_session, subscriptions, usage_records, videos
from cloudmedia.core.errors import CreditsExhaustedError, ExternalServiceError, NotFoundError
from cloudmedia.features.brand_kits.service import create_brand_kit
from cloudmedia.features.credits.ledger import get_subscription
from cloudmedia.features.encoding.provider import EncodeError
from cloudmedia.features.videos.service import list_videos, upload_video
from cloudmedia.tests.mocks import auth_headers


def _counts(organization_id):
    with get_db_session() as session:
        video_count = session.execute(
            select(func.count()).select_from(videos).where(videos.c.organization_id == organization_id)
        ).scalar_one()
        usage_count = session.execute(
            select(func.count()).select_from(usage_records).where(usage_records.c.organization_id == organization_id)
        ).scalar_one()
        credits = get_subscription(session, organization_id).video_credits
    return video_count, usage_count, credits


def test_upload_charges_one_credit_and_records_usage(make_org, encoder):
    organization_id = make_org(plan="business")

    video = upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)

    assert video["public_id"].startswith(f"cloudmedia/{organization_id}/")
    assert video["resolution"] == "1080p"
    assert encoder.uploads[0]["quality"] == "90"
    assert encoder.uploads[0]["max_height"] == 1440
    assert _counts(organization_id) == (1, 1, 99)


def test_free_plan_resolution_is_capped(make_org, encoder):
    make_org()
    video = upload_video("user_owner", b"mp4", title="Clip", encoder=encoder)
    assert video["resolution"] == "720p"
    assert encoder.uploads[0]["max_height"] == 720


def test_business_with_zero_credits_cannot_upload(make_org, encoder):
    organization_id = make_org(plan="business", video_credits=0)

    with pytest.raises(CreditsExhaustedError) as exc_info:
        upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)

    assert exc_info.value.details["resets_at"] is not None
    assert encoder.uploads == []
    assert _counts(organization_id) == (0, 0, 0)


def test_zero_credits_over_http_is_402(client, make_org):
    make_org(plan="business", video_credits=0)
    resp = client.post(
        "/api/videos",
        data={"title": "Launch"},
        files={"file": ("launch.mp4", b"mp4", "video/mp4")},
        headers=auth_headers("user_owner"),
    )
    assert resp.status_code == 402
    assert resp.json()["error"]["code"] == "credits_exhausted"
    assert resp.json()["error"]["details"]["credit_type"] == "video_credits"


def test_encode_failure_leaves_state_unchanged(make_org, encoder):
    organization_id = make_org(plan="creator")
    encoder.fail_with = EncodeError("timeout", transient=True)

    with pytest.raises(ExternalServiceError) as exc_info:
        upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)

    assert exc_info.value.retryable is True
    assert _counts(organization_id) == (0, 0, 20)


def test_failed_commit_destroys_uploaded_asset(make_org, encoder):
    organization_id = make_org(plan="creator")

    with patch("cloudmedia.features.videos.service.record_usage", side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)

    assert len(encoder.destroyed) == 1
    assert encoder.destroyed[0][0].startswith(f"cloudmedia/{organization_id}/")
    assert _counts(organization_id) == (0, 0, 20)


def test_foreign_brand_kit_is_not_found(make_org, encoder):
    make_org("user_a", "Org A")
    make_org("user_b", "Org B")
    kit = create_brand_kit("user_a", "A kit")

    with pytest.raises(NotFoundError):
        upload_video("user_b", b"mp4", title="Launch", encoder=encoder, brand_kit_id=kit["id"])
    assert encoder.uploads == []


def test_list_is_scoped_to_organization(make_org, encoder):
    make_org("user_a", "Org A")
    make_org("user_b", "Org B")
    upload_video("user_a", b"mp4", title="A", encoder=encoder)

    assert [v["title"] for v in list_videos("user_a")] == ["A"]
    assert list_videos("user_b") == []


def test_upload_over_http(client, make_org, encoder):
    make_org(plan="creator")
    headers = auth_headers("user_owner")
    resp = client.post(
        "/api/videos",
        data={"title": "Launch", "description": "first cut"},
        files={"file": ("launch.mp4", b"mp4-bytes", "video/mp4")},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["title"] == "Launch"
    assert [v["id"] for v in client.get("/api/videos", headers=headers).json()] == [resp.json()["id"]]


def test_free_org_with_ended_period_uploads_after_refill(make_org, encoder):
    organization_id = make_org(video_credits=0)
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.organization_id == organization_id)
            .values(current_period_start=now - timedelta(days=40), current_period_end=now - timedelta(days=10))
        )

    upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)

    with get_db_session() as session:
        subscription = get_subscription(session, organization_id)
    assert subscription.video_credits == 4
    assert subscription.current_period_end > now


def test_exhausted_free_org_is_told_a_future_reset(make_org, encoder):
    make_org(video_credits=0)
    with pytest.raises(CreditsExhaustedError) as exc_info:
        upload_video("user_owner", b"mp4", title="Launch", encoder=encoder)
    assert exc_info.value.resets_at > datetime.now(timezone.utc)
    assert encoder.uploads == []

"""
Organization signup and rename.
"""
import pytest
from sqlalchemy import func, select

from cloudmedia.core.database import get_db_session, organizations, subscriptions
from cloudmedia.core.errors import ConflictError, ForbiddenError, ValidationError
from cloudmedia.features.organizations.service import (
    create_organization,
    get_organization_details,
    rename_organization,
    slugify,
)
from cloudmedia.features.users.service import invite_member
from cloudmedia.tests.mocks import auth_headers


def test_slugify():
    assert slugify("Acme Media, Inc.") == "acme-media-inc"
    assert slugify("  --  ") == ""


def test_signup_creates_org_owner_and_free_subscription():
    created = create_organization("user_1", "Acme Media", email="a@example.com", first_name="Ada")

    assert created["organization"]["slug"] == "acme-media"
    assert created["organization"]["plan"] == "free"
    assert created["user"]["role"] == "owner"
    subscription = created["subscription"]
    assert subscription["plan"] == "free"
    assert subscription["status"] == "active"
    assert subscription["video_credits"] == 5
    assert subscription["image_credits"] == 20


def test_duplicate_slug_conflicts_and_writes_nothing():
    create_organization("user_1", "Acme Media")
    with pytest.raises(ConflictError):
        create_organization("user_2", "ACME  media")
    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(organizations)).scalar_one() == 1
        assert session.execute(select(func.count()).select_from(subscriptions)).scalar_one() == 1


def test_user_with_org_cannot_sign_up_again():
    create_organization("user_1", "Acme Media")
    with pytest.raises(ConflictError):
        create_organization("user_1", "Second Org")


@pytest.mark.parametrize("name", ["", "   ", "!!!"])
def test_unusable_names_are_rejected(name):
    with pytest.raises(ValidationError):
        create_organization("user_1", name)


def test_details_before_signup():
    assert get_organization_details("user_nobody") == {"has_organization": False}


def test_details_include_subscription_and_member_count(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_2")
    details = get_organization_details("user_owner")
    assert details["has_organization"] is True
    assert details["organization"]["subscription"]["plan"] == "business"
    assert details["organization"]["member_count"] == 2


def test_rename_requires_owner_or_admin(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_admin", role="admin")
    invite_member("user_owner", "user_member")

    assert rename_organization("user_admin", "New Name")["name"] == "New Name"
    with pytest.raises(ForbiddenError):
        rename_organization("user_member", "Hijacked")


def test_organization_over_http(client):
    headers = auth_headers("user_http")

    before = client.get("/api/organization", headers=headers)
    created = client.post("/api/organization", json={"name": "Http Org", "email": "h@example.com"}, headers=headers)
    renamed = client.put("/api/organization", json={"name": "Renamed Org"}, headers=headers)
    after = client.get("/api/organization", headers=headers)

    assert before.json() == {"has_organization": False}
    assert created.status_code == 200
    assert renamed.json()["name"] == "Renamed Org"
    assert after.json()["organization"]["slug"] == "http-org"
    assert after.json()["organization"]["member_count"] == 1

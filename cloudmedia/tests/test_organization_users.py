"""
Membership rules: invites are plan-capped, the owner is untouchable.
"""
import random

import pytest

from cloudmedia.core.errors import ConflictError, ForbiddenError, LimitReachedError, NotFoundError, ValidationError
from cloudmedia.features.users.service import change_role, invite_member, list_members, remove_member
from cloudmedia.tests.mocks import auth_headers


def _roles(user_id="user_owner"):
    return {member["id"]: member["role"] for member in list_members(user_id)}


def test_free_plan_cannot_invite(make_org):
    make_org()
    with pytest.raises(LimitReachedError) as exc_info:
        invite_member("user_owner", "user_new", email="new@example.com")
    assert exc_info.value.details["limit"] == 1
    assert exc_info.value.details["current"] == 1


def test_business_invites_up_to_five(make_org):
    make_org(plan="business")
    for i in range(4):
        invite_member("user_owner", f"user_{i}", role="member")
    with pytest.raises(LimitReachedError):
        invite_member("user_owner", "user_extra")
    assert len(list_members("user_owner")) == 5


def test_member_cannot_invite(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_member")
    with pytest.raises(ForbiddenError):
        invite_member("user_member", "user_other")


def test_admin_can_invite(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_admin", role="admin")
    invited = invite_member("user_admin", "user_other")
    assert invited["role"] == "member"


def test_invite_cannot_grant_ownership(make_org):
    make_org(plan="business")
    with pytest.raises(ValidationError):
        invite_member("user_owner", "user_new", role="owner")


def test_invite_existing_user_conflicts(make_org):
    make_org(plan="business")
    make_org("user_elsewhere", "Elsewhere")
    with pytest.raises(ConflictError):
        invite_member("user_owner", "user_elsewhere")


def test_only_owner_changes_roles(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_admin", role="admin")
    invite_member("user_owner", "user_member")

    with pytest.raises(ForbiddenError):
        change_role("user_admin", "user_member", "admin")

    assert change_role("user_owner", "user_member", "admin")["role"] == "admin"


def test_owner_cannot_be_demoted_or_removed(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_admin", role="admin")

    with pytest.raises(ForbiddenError):
        change_role("user_owner", "user_owner", "member")
    with pytest.raises(ForbiddenError):
        remove_member("user_admin", "user_owner")
    with pytest.raises(ForbiddenError):
        remove_member("user_owner", "user_owner")
    assert _roles()["user_owner"] == "owner"


def test_admin_removes_members_but_not_other_admins(make_org):
    make_org(plan="business")
    invite_member("user_owner", "user_admin", role="admin")
    invite_member("user_owner", "user_admin2", role="admin")
    invite_member("user_owner", "user_member")

    remove_member("user_admin", "user_member")
    with pytest.raises(ForbiddenError):
        remove_member("user_admin", "user_admin2")

    remove_member("user_owner", "user_admin2")
    assert set(_roles()) == {"user_owner", "user_admin"}


def test_cross_org_targets_are_not_found(make_org):
    make_org("user_a", "Org A", plan="business")
    make_org("user_b", "Org B", plan="business")
    invite_member("user_b", "user_b_member")

    with pytest.raises(NotFoundError):
        change_role("user_a", "user_b_member", "admin")
    with pytest.raises(NotFoundError):
        remove_member("user_a", "user_b_member")


def test_missing_target_is_not_found(make_org):
    make_org(plan="business")
    with pytest.raises(NotFoundError):
        remove_member("user_owner", "ghost")


def test_exactly_one_owner_after_random_operations(make_org):
    make_org(plan="agency")
    rng = random.Random(7)
    members = []
    for i in range(8):
        user_id = f"user_{i}"
        invite_member("user_owner", user_id, role=rng.choice(["admin", "member"]))
        members.append(user_id)

    actors = ["user_owner"] + members
    for _ in range(60):
        actor = rng.choice(actors)
        target = rng.choice(actors)
        try:
            if rng.random() < 0.5:
                change_role(actor, target, rng.choice(["admin", "member", "owner"]))
            else:
                remove_member(actor, target)
                actors.remove(target)
        except (ForbiddenError, NotFoundError, ValidationError):
            pass

    owners = [uid for uid, role in _roles().items() if role == "owner"]
    assert owners == ["user_owner"]


def test_members_over_http(client, make_org):
    make_org(plan="business")
    headers = auth_headers("user_owner")

    invited = client.post(
        "/api/organization/users",
        json={"new_user_id": "user_new", "email": "new@example.com", "role": "admin"},
        headers=headers,
    )
    changed = client.put("/api/organization/users", json={"target_user_id": "user_new", "role": "member"}, headers=headers)
    removed = client.delete("/api/organization/users", params={"userId": "user_new"}, headers=headers)
    demote_owner = client.put("/api/organization/users", json={"target_user_id": "user_owner", "role": "admin"}, headers=headers)

    assert invited.status_code == 200
    assert changed.json()["role"] == "member"
    assert removed.json() == {"success": True}
    assert demote_owner.status_code == 403
    assert [m["id"] for m in client.get("/api/organization/users", headers=headers).json()] == ["user_owner"]

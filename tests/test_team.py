import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from catering_ops.errors import BadRequestError, ForbiddenError, NotFoundError
from catering_ops.models import MemberStatus
from catering_ops.optimistic import is_temporary
from catering_ops.roles import ProviderRole
from catering_ops.team import TeamService, invitations_key, members_key


@pytest.mark.asyncio
async def test_members_are_enriched_with_user_metadata(seeded, make_service):
    team = make_service(TeamService)

    members = await team.members()

    by_id = {m.id: m for m in members}
    assert [m.id for m in members] == ["m-owner", "m-admin", "m-super", "m-staff", "m-viewer"]
    assert by_id["m-owner"].full_name == "Olivia Santos"
    assert by_id["m-admin"].avatar_url == "https://cdn.example/arnel.png"
    assert by_id["m-staff"].full_name == "jun"
    # legacy role names are normalized on read
    assert by_id["m-super"].role == ProviderRole.SUPERVISOR


@pytest.mark.asyncio
async def test_invite_member_predicts_then_confirms(
    seeded, make_service, cache, notifier, monkeypatch
):
    team = make_service(TeamService, role=ProviderRole.ADMIN, user_id="user-admin")
    await team.invitations()
    observed = []
    real_insert = seeded.insert

    async def insert(table, row):
        observed.extend(cache.get_query_data(invitations_key("prov-1")))
        return await real_insert(table, row)

    monkeypatch.setattr(seeded, "insert", insert)

    invitation = await team.invite_member("  New.Hire@Example.com ", ProviderRole.STAFF)

    [pending] = observed
    assert is_temporary(pending)
    assert pending.email == "new.hire@example.com"
    expected_expiry = datetime.now(UTC) + timedelta(hours=48)
    assert abs(pending.expires_at - expected_expiry) < timedelta(minutes=1)

    listed = cache.get_query_data(invitations_key("prov-1"))
    assert [i.id for i in listed] == [invitation.id]
    assert invitation.invited_by == "user-admin"
    assert invitation.token
    [note] = notifier.recent()
    assert note.title == "Invitation sent successfully"
    assert note.description == "An invitation was sent to new.hire@example.com"


@pytest.mark.asyncio
async def test_duplicate_invitation_is_rejected(seeded, make_service, cache, notifier):
    team = make_service(TeamService)
    await team.invitations()
    first = await team.invite_member("dup@example.com", ProviderRole.VIEWER)

    with pytest.raises(BadRequestError, match="already pending"):
        await team.invite_member("dup@example.com", ProviderRole.STAFF)

    assert [i.id for i in cache.get_query_data(invitations_key("prov-1"))] == [first.id]
    error = notifier.recent()[0]
    assert error.title == "Failed to send invitation"
    assert "already pending" in error.description


@pytest.mark.asyncio
async def test_owner_role_is_not_invitable(seeded, make_service):
    team = make_service(TeamService)
    with pytest.raises(BadRequestError):
        await team.invite_member("boss@example.com", ProviderRole.OWNER)


@pytest.mark.asyncio
async def test_invitations_list_pending_newest_first(seeded, make_service):
    seeded.seed(
        "provider_invitations",
        [
            {
                "id": "inv-old",
                "provider_id": "prov-1",
                "email": "old@example.com",
                "role": "staff",
                "created_at": "2025-06-01T00:00:00+00:00",
            },
            {
                "id": "inv-new",
                "provider_id": "prov-1",
                "email": "new@example.com",
                "role": "manager",
                "created_at": "2025-06-10T00:00:00+00:00",
            },
            {
                "id": "inv-accepted",
                "provider_id": "prov-1",
                "email": "done@example.com",
                "role": "staff",
                "accepted_at": "2025-06-02T00:00:00+00:00",
                "created_at": "2025-06-01T12:00:00+00:00",
            },
        ],
    )
    team = make_service(TeamService, role=ProviderRole.VIEWER, user_id="user-viewer")

    invitations = await team.invitations()

    assert [i.id for i in invitations] == ["inv-new", "inv-old"]
    assert invitations[0].role == ProviderRole.SUPERVISOR


@pytest.mark.asyncio
async def test_resend_invitation_extends_expiry(seeded, make_service):
    seeded.seed(
        "provider_invitations",
        [
            {
                "id": "inv-1",
                "provider_id": "prov-1",
                "email": "late@example.com",
                "role": "staff",
                "token": "stale",
                "expires_at": "2025-01-01T00:00:00+00:00",
            }
        ],
    )
    team = make_service(TeamService)

    resent = await team.resend_invitation("inv-1")

    assert resent.token != "stale"
    assert resent.expires_at > datetime.now(UTC)


@pytest.mark.asyncio
async def test_suspend_member_is_optimistic(seeded, make_service, cache, monkeypatch):
    team = make_service(TeamService, role=ProviderRole.SUPERVISOR, user_id="user-super")
    await team.members()
    gate = asyncio.Event()
    real_update = seeded.update

    async def slow_update(table, values, *, filters):
        await gate.wait()
        return await real_update(table, values, filters=filters)

    monkeypatch.setattr(seeded, "update", slow_update)
    task = asyncio.create_task(team.update_member_status("m-staff", MemberStatus.SUSPENDED))
    await asyncio.sleep(0.01)

    pending = {m.id: m for m in cache.get_query_data(members_key("prov-1"))}
    assert pending["m-staff"].status == MemberStatus.SUSPENDED
    assert seeded.table("provider_members").get("m-staff")["status"] == "active"

    gate.set()
    await task
    assert seeded.table("provider_members").get("m-staff")["status"] == "suspended"


@pytest.mark.asyncio
async def test_owner_is_protected(seeded, make_service):
    team = make_service(TeamService, role=ProviderRole.ADMIN, user_id="user-admin")

    with pytest.raises(ForbiddenError):
        await team.update_member_status("m-owner", MemberStatus.SUSPENDED)
    with pytest.raises(ForbiddenError):
        await team.update_member_role("m-owner", ProviderRole.STAFF)
    with pytest.raises(ForbiddenError):
        await team.remove_member("m-owner")


@pytest.mark.asyncio
async def test_cannot_suspend_yourself(seeded, make_service):
    team = make_service(TeamService, role=ProviderRole.ADMIN, user_id="user-admin")
    with pytest.raises(BadRequestError):
        await team.update_member_status("m-admin", MemberStatus.SUSPENDED)


@pytest.mark.asyncio
async def test_role_changes_require_admin(seeded, make_service):
    supervisor = make_service(TeamService, role=ProviderRole.SUPERVISOR, user_id="user-super")
    with pytest.raises(ForbiddenError):
        await supervisor.update_member_role("m-staff", ProviderRole.ADMIN)

    admin = make_service(TeamService, role=ProviderRole.ADMIN, user_id="user-admin")
    updated = await admin.update_member_role("m-staff", ProviderRole.SUPERVISOR)
    assert updated.role == ProviderRole.SUPERVISOR


@pytest.mark.asyncio
async def test_assign_member_team_and_remove_member(seeded, make_service, cache, notifier):
    team = make_service(TeamService)
    await team.members()

    moved = await team.assign_member_team("m-viewer", "team-a")
    assert moved.team_id == "team-a"

    await team.remove_member("m-viewer")
    assert seeded.table("provider_members").get("m-viewer") is None
    assert "m-viewer" not in [m.id for m in cache.get_query_data(members_key("prov-1"))]

    with pytest.raises(NotFoundError):
        await team.assign_member_team("m-staff", "no-such-team")
    assert notifier.recent()[0].title == "Failed to update team assignment"

"""Access changes through AccessAdministration reach cached decisions at once."""

from __future__ import annotations

import pytest

from tenantguard.authz.administration import AccessAdministration
from tenantguard.exceptions import TenantGuardError
from tenantguard.types import SecurityEventType


async def _events(sink, event_type):
    return await sink.list_events(event_type=event_type, limit=500)


@pytest.mark.integration
class TestMemberships:
    @pytest.mark.asyncio
    async def test_change_role_refreshes_cached_ability(
        self, engine, admin_service, repos, sink, world
    ) -> None:
        member = await repos.memberships.active_membership(world.member.id, world.acme.id)
        viewer = await repos.memberships.active_membership(world.viewer.id, world.acme.id)
        assert not await engine.can(world.member, "change_role", viewer)

        await admin_service.change_role(member.id, role="admin", actor_id=world.owner.id)

        assert await engine.can(world.member, "change_role", viewer)
        (event,) = await _events(sink, SecurityEventType.USER_MANAGEMENT)
        assert event.user_id == world.owner.id
        assert event.org_id == world.acme.id
        assert event.payload["action"] == "role_changed"
        assert event.payload["member_user_id"] == world.member.id

    @pytest.mark.asyncio
    async def test_assign_owner_demotes_previous_owner(
        self, engine, admin_service, repos, world
    ) -> None:
        assert await engine.owner_of(world.owner, world.acme)
        admin = await repos.memberships.active_membership(world.admin.id, world.acme.id)

        await admin_service.assign_owner(admin.id, actor_id=world.owner.id)

        assert await engine.owner_of(world.admin, world.acme)
        assert not await engine.owner_of(world.owner, world.acme)
        assert await engine.role_in(world.owner, world.acme) == "admin"
        owners = await repos.memberships.owners(world.acme.id)
        assert [m.user_id for m in owners] == [world.admin.id]

    @pytest.mark.asyncio
    async def test_assign_owner_uses_dynamic_owner_role(
        self, engine, admin_service, repos, world
    ) -> None:
        roles = await repos.roles.seed_default_roles(world.globex.id)
        membership = await admin_service.add_member(
            world.globex.id, world.admin.id, role_id=roles["member"].id
        )

        updated = await admin_service.assign_owner(membership.id)

        assert updated.role_id == roles["owner"].id
        assert await engine.owner_of(world.admin, world.globex)

    @pytest.mark.asyncio
    async def test_deactivation_revokes_access(self, engine, admin_service, repos, world) -> None:
        membership = await repos.memberships.active_membership(world.viewer.id, world.acme.id)
        assert await engine.can_access(world.viewer, world.acme)

        await admin_service.set_member_active(membership.id, False)
        assert not await engine.can_access(world.viewer, world.acme)

        await admin_service.set_member_active(membership.id, True)
        assert await engine.can_access(world.viewer, world.acme)

    @pytest.mark.asyncio
    async def test_unknown_membership(self, admin_service) -> None:
        assert await admin_service.change_role("missing", role="admin") is None
        assert await admin_service.assign_owner("missing") is None
        assert await admin_service.set_member_active("missing", False) is None


@pytest.mark.integration
class TestRoles:
    @pytest.mark.asyncio
    async def test_revoke_permission_is_visible_immediately(
        self, engine, admin_service, repos, sink, world
    ) -> None:
        role = await admin_service.create_role(world.globex.id, "Reporter", priority=20)
        await admin_service.grant_permission(role.id, "Report", "export")
        await admin_service.add_member(world.globex.id, world.admin.id, role_id=role.id)
        assert await engine.can(world.admin, "export", "Report", world.globex)

        assert await admin_service.revoke_permission(role.id, "Report", "export")
        assert not await engine.can(world.admin, "export", "Report", world.globex)
        assert not await admin_service.revoke_permission(role.id, "Report", "export")

        actions = [
            e.payload["action"]
            for e in reversed(await _events(sink, SecurityEventType.CONFIGURATION_CHANGE))
        ]
        assert actions == ["role_created", "permission_granted", "permission_revoked"]

    @pytest.mark.asyncio
    async def test_update_role_records_changed_fields(self, admin_service, sink, world) -> None:
        role = await admin_service.create_role(world.globex.id, "Reviewer", priority=10)
        await admin_service.update_role(role.id, priority=25, description="Reviews work")

        latest = (await _events(sink, SecurityEventType.CONFIGURATION_CHANGE))[0]
        assert latest.payload["action"] == "role_updated"
        assert latest.payload["fields"] == ["description", "priority"]

    @pytest.mark.asyncio
    async def test_delete_role(self, admin_service, world) -> None:
        role = await admin_service.create_role(world.globex.id, "Temporary")
        assert await admin_service.delete_role(role.id)
        assert not await admin_service.delete_role(role.id)

    @pytest.mark.asyncio
    async def test_grant_on_unknown_role(self, admin_service) -> None:
        with pytest.raises(TenantGuardError):
            await admin_service.grant_permission("missing", "Task", "read")


@pytest.mark.integration
class TestWithoutAudit:
    @pytest.mark.asyncio
    async def test_changes_still_invalidate(self, engine, repos, cache, world) -> None:
        admin = AccessAdministration(
            memberships=repos.memberships,
            roles=repos.roles,
            permissions=repos.permissions,
            delegations=repos.delegations,
            cache=cache,
        )
        membership = await repos.memberships.active_membership(world.viewer.id, world.acme.id)
        assert await engine.viewer_of(world.viewer, world.acme)

        await admin.change_role(membership.id, role="member")
        assert await engine.role_in(world.viewer, world.acme) == "member"

    @pytest.mark.asyncio
    async def test_team_and_instance_grants_need_their_stores(self, repos, cache, world) -> None:
        admin = AccessAdministration(
            memberships=repos.memberships,
            roles=repos.roles,
            permissions=repos.permissions,
            delegations=repos.delegations,
            cache=cache,
        )
        with pytest.raises(TenantGuardError):
            await admin.add_team_member(world.acme.id, "team-red", world.member.id)
        with pytest.raises(TenantGuardError):
            await admin.revoke_resource_permission("missing")


@pytest.mark.integration
class TestTeams:
    @pytest.mark.asyncio
    async def test_seat_changes_are_audited(self, admin_service, repos, sink, world) -> None:
        await admin_service.add_team_member(
            world.acme.id, "team-red", world.member.id, actor_id=world.owner.id
        )
        assert await admin_service.remove_team_member(world.acme.id, "team-red", world.member.id)
        assert not await admin_service.remove_team_member(
            world.acme.id, "team-red", world.member.id
        )

        events = list(reversed(await _events(sink, SecurityEventType.USER_MANAGEMENT)))
        assert [e.payload["action"] for e in events] == [
            "team_member_added",
            "team_member_removed",
        ]
        assert events[0].user_id == world.owner.id
        assert events[0].payload["team_id"] == "team-red"
        assert await repos.teams.team_ids_for(world.member.id, world.acme.id) == ()

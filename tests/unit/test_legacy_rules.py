"""Unit tests for the fixed legacy role rule tables."""

import pytest

from tenantguard.authz.legacy import legacy_rules
from tenantguard.authz.resources import ResourceRef
from tenantguard.authz.rules import Ability

ORG = "org-1"
ME = "user-me"


def _ability(role: str) -> Ability:
    return Ability(principal_id=ME, tenant_id=ORG, rules=tuple(legacy_rules(role, ME, ORG)))


def _ref(resource_type: str, **attributes) -> ResourceRef:
    return ResourceRef(resource_type=resource_type, org_id=ORG, id="r-1", attributes=attributes)


def _membership(user_id: str, role: str) -> ResourceRef:
    return _ref("OrganizationMembership", user_id=user_id, role=role, active=True)


def _org() -> ResourceRef:
    return ResourceRef(
        resource_type="Organization", org_id=ORG, id=ORG, attributes={"active": True}
    )


@pytest.mark.unit
class TestOwner:
    def test_manages_everything(self) -> None:
        ability = _ability("owner")
        assert ability.can("destroy", _org())
        assert ability.can("manage_billing", _org())
        assert ability.can("change_role", _membership("someone", "admin"))
        assert ability.can("manage", _ref("Role", system_role=True))


@pytest.mark.unit
class TestAdmin:
    def test_manages_work(self) -> None:
        ability = _ability("admin")
        assert ability.can("destroy", _ref("Task"))
        assert ability.can("update", _org())

    def test_cannot_destroy_organization(self) -> None:
        assert not _ability("admin").can("destroy", _org())

    def test_cannot_touch_system_roles(self) -> None:
        ability = _ability("admin")
        assert not ability.can("update", _ref("Role", system_role=True))
        assert ability.can("update", _ref("Role", system_role=False))

    @pytest.mark.parametrize("action", ["update", "destroy", "change_role", "toggle_active"])
    def test_cannot_change_owner_membership(self, action: str) -> None:
        ability = _ability("admin")
        assert not ability.can(action, _membership("the-owner", "owner"))
        assert ability.can(action, _membership("someone", "member"))

    def test_owner_level_database_role_is_protected(self) -> None:
        ref = _ref("OrganizationMembership", user_id="x", role=None, role_id="r", owner_level=True)
        assert not _ability("admin").can("change_role", ref)


@pytest.mark.unit
class TestMember:
    def test_reads_work(self) -> None:
        ability = _ability("member")
        for resource in ("Organization", "Service", "Task", "Sprint", "Team", "User"):
            assert ability.can("read", _ref(resource))

    def test_cannot_read_audit_log_or_manage_roles(self) -> None:
        ability = _ability("member")
        assert not ability.can("read", _ref("PermissionAuditLog"))
        assert not ability.can("update", _ref("Role"))

    def test_updates_only_own_work(self) -> None:
        ability = _ability("member")
        assert ability.can("update", _ref("Task", created_by_id=ME))
        assert ability.can("update", _ref("Task", assignee_id=ME))
        assert not ability.can("update", _ref("Task", created_by_id="other"))

    def test_cannot_destroy_shared_resources(self) -> None:
        ability = _ability("member")
        assert not ability.can("destroy", _ref("Task", created_by_id=ME))
        assert not ability.can("destroy", _org())

    def test_completes_assigned_tasks(self) -> None:
        ability = _ability("member")
        assert ability.can("complete", _ref("Task", assignee_id=ME))
        assert not ability.can("complete", _ref("Task", assignee_id="other"))

    def test_can_leave_but_not_as_owner(self) -> None:
        ability = _ability("member")
        assert ability.can("destroy", _membership(ME, "member"))
        assert not ability.can("destroy", _membership(ME, "owner"))
        assert not ability.can("destroy", _membership("other", "member"))

    def test_reads_active_memberships_only(self) -> None:
        ability = _ability("member")
        assert ability.can("read", _membership("other", "member"))
        inactive = _ref("OrganizationMembership", user_id="other", active=False)
        assert not ability.can("read", inactive)

    def test_updates_own_profile_only(self) -> None:
        ability = _ability("member")
        me = ResourceRef(resource_type="User", id=ME, attributes={"id": ME})
        other = ResourceRef(resource_type="User", id="other", attributes={"id": "other"})
        assert ability.can("update", me)
        assert not ability.can("update", other)
        assert ability.can("read", other)

    def test_switches_into_own_tenant_only(self) -> None:
        ability = _ability("member")
        assert ability.can("switch", _org())
        elsewhere = ResourceRef(resource_type="Organization", org_id="org-2", id="org-2")
        assert not ability.can("switch", elsewhere)


@pytest.mark.unit
class TestViewer:
    def test_read_only(self) -> None:
        ability = _ability("viewer")
        assert ability.can("read", _ref("Task"))
        for action in ("create", "update", "destroy"):
            assert not ability.can(action, _ref("Task"))

    def test_still_switches(self) -> None:
        assert _ability("viewer").can("switch", _org())


@pytest.mark.unit
def test_unknown_role_grants_nothing() -> None:
    assert legacy_rules("superuser", ME, ORG) == []

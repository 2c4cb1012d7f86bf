"""Fixed rule table for memberships carrying a legacy role name."""

from __future__ import annotations

from datetime import datetime

from tenantguard.authz.resources import ResourceRef
from tenantguard.authz.rules import ALL, MANAGE, Condition, Rule, can, cannot
from tenantguard.types import LegacyRole

READABLE = ("Organization", "Service", "Task", "Sprint", "Team", "User")
WORK_RESOURCES = ("Task", "Sprint", "Service", "Team", "PomodoroSession", "Milestone")
PROTECTED_FROM_MEMBERS = ("Organization", "Service", "Task", "Sprint", "Team")
MEMBERSHIP_CHANGES = ("update", "destroy", "change_role", "toggle_active")


def is_owner_membership(ref: ResourceRef, _now: datetime | None = None) -> bool:
    return ref.get("role") == LegacyRole.OWNER or ref.get("owner_level") is True


def is_active(ref: ResourceRef, _now: datetime) -> bool:
    return ref.get("active", True) is not False


def owned_by(principal_id: str) -> Condition:
    """Resources the principal created, is assigned to, or belongs to."""

    def condition(ref: ResourceRef, _now: datetime) -> bool:
        return principal_id in (
            ref.get("created_by_id"),
            ref.get("assignee_id"),
            ref.get("user_id"),
        )

    return condition


def attribute_equals(name: str, value: object) -> Condition:
    return lambda ref, _now: ref.get(name) == value


def legacy_rules(role: str, principal_id: str, tenant_id: str) -> list[Rule]:
    source = f"legacy:{role}"
    rules: list[Rule] = []

    if role == LegacyRole.OWNER:
        rules += [
            can(MANAGE, ALL, source=source),
            can(
                ["manage_settings", "manage_members", "manage_billing"],
                "Organization",
                source=source,
            ),
        ]
    elif role == LegacyRole.ADMIN:
        rules += [
            can(MANAGE, ALL, source=source),
            cannot("destroy", "Organization", source=source),
            cannot(MANAGE, "Role", attribute_equals("system_role", True), source=source),
            cannot(
                MEMBERSHIP_CHANGES, "OrganizationMembership", is_owner_membership, source=source
            ),
        ]
    elif role == LegacyRole.MEMBER:
        own = owned_by(principal_id)
        assigned = attribute_equals("assignee_id", principal_id)
        self_owned = attribute_equals("user_id", principal_id)
        rules += [
            can("read", READABLE, source=source),
            can("read", "OrganizationMembership", is_active, source=source),
            cannot("read", "PermissionAuditLog", source=source),
            cannot(MANAGE, "Role", source=source),
            can("create", ["Task", "Sprint", "PomodoroSession"], source=source),
            can("update", WORK_RESOURCES, own, source=source),
            can(["complete", "start_pomodoro"], "Task", assigned, source=source),
            can(MANAGE, "PomodoroSession", self_owned, source=source),
            can("update", "OrganizationMembership", self_owned, source=source),
            can(
                "destroy",
                "OrganizationMembership",
                lambda ref, now: ref.get("user_id") == principal_id
                and not is_owner_membership(ref, now),
                source=source,
            ),
            cannot("destroy", PROTECTED_FROM_MEMBERS, source=source),
        ]
    elif role == LegacyRole.VIEWER:
        rules += [
            can("read", READABLE, source=source),
            can("read", "OrganizationMembership", is_active, source=source),
            cannot(["create", "update", "destroy"], ALL, source=source),
        ]
    else:
        return rules

    return rules + baseline_rules(principal_id, tenant_id, source)


def baseline_rules(principal_id: str, tenant_id: str, source: str) -> list[Rule]:
    """Granted to every member regardless of role kind."""
    return [
        can("switch", "Organization", lambda ref, _now: ref.id == tenant_id, source=source),
        can("update", "User", attribute_equals("id", principal_id), source=source),
        can("read", "User", source=source),
    ]

"""Rules derived from the database-defined role/permission graph."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tenantguard.authz.legacy import MEMBERSHIP_CHANGES, is_owner_membership, owned_by
from tenantguard.authz.resources import ResourceRef
from tenantguard.authz.rules import ALL, MANAGE, Condition, Rule, can, cannot
from tenantguard.models.database import Permission, ResourcePermission, Role, RolePermission


def _in_hours(allowed_hours: dict[str, Any] | None) -> Condition:
    allowed_hours = allowed_hours or {}
    start = int(allowed_hours.get("start", 0))
    end = int(allowed_hours.get("end", 24))
    return lambda _ref, now: start <= now.hour < end


def _attribute_in(name: str, values: Iterable[Any]) -> Condition:
    allowed = {str(v) for v in values}
    return lambda ref, _now: ref.get(name) is not None and str(ref.get(name)) in allowed


def grant_condition(
    grant: RolePermission | None,
    principal_id: str,
    team_ids: Iterable[str] = (),
) -> Condition | None:
    """Combine a grant's conditions and scope into one predicate (all must hold)."""
    if grant is None or grant.unconditional():
        return None

    checks: list[Condition] = []
    conditions = grant.conditions or {}
    scope = grant.scope or {}

    if conditions.get("own_only"):
        checks.append(owned_by(principal_id))
    if conditions.get("team_only"):
        checks.append(_attribute_in("team_id", team_ids))
    if conditions.get("time_restricted"):
        checks.append(_in_hours(conditions.get("allowed_hours")))
    if scope.get("service_ids"):
        checks.append(_attribute_in("service_id", scope["service_ids"]))
    if scope.get("team_ids"):
        checks.append(_attribute_in("team_id", scope["team_ids"]))

    if not checks:
        return None

    def condition(ref: ResourceRef, now: datetime) -> bool:
        return all(check(ref, now) for check in checks)

    return condition


def permission_rules(
    grants: Iterable[tuple[Permission, RolePermission | None]],
    principal_id: str,
    *,
    team_ids: Iterable[str] = (),
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    source: str = "",
) -> list[Rule]:
    team_ids = tuple(team_ids)
    return [
        can(
            permission.action,
            permission.resource,
            grant_condition(grant, principal_id, team_ids),
            starts_at=starts_at,
            ends_at=ends_at,
            source=source,
        )
        for permission, grant in grants
    ]


def priority_rules(
    role: Role,
    *,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    source: str = "",
) -> list[Rule]:
    """Extra rules unlocked by admin-level (>=80) and owner-level (>=100) priority."""
    window = {
        "starts_at": starts_at,
        "ends_at": ends_at,
        "source": source or f"role:{role.key}",
    }
    rules: list[Rule] = []
    if role.admin_level():
        rules += [
            can(MANAGE, "OrganizationMembership", **window),
            can(["change_role", "toggle_active"], "OrganizationMembership", **window),
            cannot(MEMBERSHIP_CHANGES, "OrganizationMembership", is_owner_membership, **window),
            can("assign", "Task", **window),
            can(["plan", "metrics"], "Sprint", **window),
        ]
    if role.owner_level():
        rules += [
            can(MANAGE, ALL, **window),
            can(["manage_settings", "manage_members", "manage_billing"], "Organization", **window),
        ]
    return rules


def _is_instance(resource_id: str) -> Condition:
    return lambda ref, _now: ref.id is not None and str(ref.id) == resource_id


def resource_rules(grants: Iterable[tuple[Permission, ResourcePermission]]) -> list[Rule]:
    """One rule per instance grant, expiring with the grant."""
    return [
        can(
            permission.action,
            grant.resource_type,
            _is_instance(grant.resource_id),
            ends_at=grant.expires_at,
            source=f"resource:{grant.id}",
        )
        for permission, grant in grants
        if grant.granted
    ]

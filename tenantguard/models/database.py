"""SQLModel database table models."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from tenantguard.types import LegacyRole, PermissionKind

OWNER_PRIORITY = 100
ADMIN_PRIORITY = 80

CRUD_ACTIONS = frozenset({"create", "read", "update", "delete"})
MANAGEMENT_ACTIONS = frozenset({"manage", "administer", "control"})


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def role_key_from_name(name: str) -> str:
    """Derive a role key (``[a-z0-9_]+``) from a display name."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def _pascal_case(value: str) -> str:
    if not value or value[0].isupper():
        return value
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[_\s]+", value) if part)


# ---------------------------------------------------------------------------
# Role assignment (tagged union carried by a membership)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LegacyRoleAssignment:
    name: str


@dataclass(frozen=True, slots=True)
class DynamicRoleAssignment:
    role_id: str


RoleAssignment = LegacyRoleAssignment | DynamicRoleAssignment


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    name: str
    subdomain: str = Field(unique=True, index=True)
    active: bool = Field(default=True)
    plan: str = Field(default="free")  # free | starter | pro
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def is_active(self) -> bool:
        return bool(self.active)

    @property
    def display_name(self) -> str:
        return self.name or self.subdomain


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    email: str = Field(index=True)
    name: str = ""
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class OrganizationMembership(SQLModel, table=True):
    __tablename__ = "organization_memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_membership_org_user"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    role: str | None = Field(default=None)  # owner | admin | member | viewer
    role_id: str | None = Field(default=None, foreign_key="roles.id", index=True)
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def assignment(self) -> RoleAssignment | None:
        """Return the authoritative role representation, role_id first."""
        if self.role_id:
            return DynamicRoleAssignment(self.role_id)
        if self.role:
            return LegacyRoleAssignment(self.role)
        return None

    def fingerprint(self) -> str:
        """Role id or name; cache entries segregate on this value."""
        return self.role_id or self.role or "none"

    def is_legacy_owner(self) -> bool:
        return not self.role_id and self.role == LegacyRole.OWNER


class TeamMembership(SQLModel, table=True):
    """A principal's seat on a team inside one tenant (``team_only`` grants)."""

    __tablename__ = "team_memberships"
    __table_args__ = (
        UniqueConstraint("org_id", "team_id", "user_id", name="uq_team_membership"),
    )

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    team_id: str = Field(index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Dynamic RBAC
# ---------------------------------------------------------------------------


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("org_id", "key", name="uq_role_org_key"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    name: str
    key: str = Field(index=True)
    description: str = ""
    priority: int = Field(default=0, ge=0)
    system_role: bool = Field(default=False)
    editable: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def admin_level(self) -> bool:
        return self.priority >= ADMIN_PRIORITY

    def owner_level(self) -> bool:
        return self.priority >= OWNER_PRIORITY

    def is_editable(self) -> bool:
        if self.system_role:
            return False
        return bool(self.editable)


LEGACY_ROLE_PRIORITIES: dict[str, int] = {
    LegacyRole.OWNER.value: OWNER_PRIORITY,
    LegacyRole.ADMIN.value: ADMIN_PRIORITY,
    LegacyRole.MEMBER.value: 50,
    LegacyRole.VIEWER.value: 10,
}

DEFAULT_ROLES: dict[str, dict[str, Any]] = {
    "owner": {
        "name": "Owner",
        "priority": OWNER_PRIORITY,
        "editable": False,
        "description": "Full control of the organization",
    },
    "admin": {
        "name": "Admin",
        "priority": ADMIN_PRIORITY,
        "editable": False,
        "description": "Manages the organization and its members",
    },
    "member": {
        "name": "Member",
        "priority": 50,
        "editable": True,
        "description": "Works on tasks and sprints",
    },
    "viewer": {
        "name": "Viewer",
        "priority": 10,
        "editable": True,
        "description": "Read-only access",
    },
}


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permission_resource_action"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    resource: str = Field(index=True)
    action: str = Field(index=True)
    name: str = ""
    description: str = ""
    category: str | None = None
    system_permission: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utc_now)

    def normalize(self) -> Permission:
        """PascalCase the resource and lowercase the action in place."""
        self.resource = _pascal_case(self.resource)
        self.action = self.action.lower()
        return self

    @property
    def full_key(self) -> str:
        return f"{self.resource}:{self.action}"

    @property
    def kind(self) -> PermissionKind:
        if self.action in CRUD_ACTIONS:
            return PermissionKind.CRUD
        if self.action in MANAGEMENT_ACTIONS:
            return PermissionKind.MANAGEMENT
        return PermissionKind.CUSTOM

    def matches(self, resource: str, action: str) -> bool:
        if self.resource.lower() != resource.lower():
            return False
        return self.action == "manage" or self.action.lower() == action.lower()


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),)

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    role_id: str = Field(foreign_key="roles.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id", index=True)
    conditions: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    scope: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utc_now)

    def own_only(self) -> bool:
        return self.conditions.get("own_only") is True

    def team_only(self) -> bool:
        return self.conditions.get("team_only") is True

    def unconditional(self) -> bool:
        return not self.conditions and not self.scope


class PermissionDelegation(SQLModel, table=True):
    __tablename__ = "permission_delegations"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    delegator_id: str = Field(foreign_key="users.id", index=True)
    delegatee_id: str = Field(foreign_key="users.id", index=True)
    role_id: str | None = Field(default=None, foreign_key="roles.id")
    permission_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    starts_at: datetime
    ends_at: datetime
    active: bool = Field(default=True)
    reason: str = ""
    created_at: datetime = Field(default_factory=_utc_now)

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or _utc_now()
        return bool(self.active) and self.starts_at <= now < self.ends_at

    def is_upcoming(self, now: datetime | None = None) -> bool:
        return self.starts_at > (now or _utc_now())

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.ends_at <= (now or _utc_now())


class ResourcePermission(SQLModel, table=True):
    """A permission on one resource instance, granted to one principal."""

    __tablename__ = "resource_permissions"
    __table_args__ = (
        UniqueConstraint(
            "org_id",
            "user_id",
            "resource_type",
            "resource_id",
            "permission_id",
            name="uq_resource_permission",
        ),
    )

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    org_id: str = Field(foreign_key="organizations.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id", index=True)
    resource_type: str = Field(index=True)
    resource_id: str = Field(index=True)
    granted: bool = Field(default=True)
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def is_active(self, now: datetime | None = None) -> bool:
        if not self.granted:
            return False
        return self.expires_at is None or self.expires_at > (now or _utc_now())


# ---------------------------------------------------------------------------
# Security audit
# ---------------------------------------------------------------------------


class SecurityEvent(SQLModel, table=True):
    __tablename__ = "security_events"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    event_type: str = Field(index=True)
    risk_level: str = Field(index=True)
    occurred_at: datetime = Field(default_factory=_utc_now, index=True)
    org_id: str | None = Field(default=None, index=True)
    user_id: str | None = Field(default=None, index=True)
    email: str | None = None
    ip_address: str | None = Field(default=None, index=True)
    user_agent: str | None = None
    payload_json: str = "{}"

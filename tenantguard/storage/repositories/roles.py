"""Role and permission repositories, PostgreSQL-backed."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.exceptions import RoleNotEditable
from tenantguard.models.database import (
    DEFAULT_ROLES,
    OrganizationMembership,
    Permission,
    Role,
    RolePermission,
    _utc_now,
    role_key_from_name,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

PERMISSION_ACTIONS = ("read", "create", "update", "delete", "manage")

PERMISSION_RESOURCES = (
    "Organization",
    "Service",
    "Task",
    "Sprint",
    "Team",
    "User",
    "OrganizationMembership",
    "Role",
    "Permission",
    "PomodoroSession",
    "PermissionAuditLog",
)

_CATEGORIES = {
    "Organization": "organization_management",
    "OrganizationMembership": "organization_management",
    "Service": "service_management",
    "Task": "task_management",
    "PomodoroSession": "task_management",
    "Sprint": "sprint_management",
    "Team": "team_management",
    "User": "user_management",
    "Role": "permission_management",
    "Permission": "permission_management",
    "PermissionAuditLog": "permission_management",
}


class DatabasePermissionRepository:
    """Global (resource, action) catalog."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find(self, resource: str, action: str) -> Permission | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(Permission).where(
                func.lower(col(Permission.resource)) == resource.lower(),
                func.lower(col(Permission.action)) == action.lower(),
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get(self, permission_id: str) -> Permission | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(Permission, permission_id)

    async def get_many(self, permission_ids: list[str]) -> list[Permission]:
        if not permission_ids:
            return []
        async with AsyncSession(self._engine) as session:
            stmt = select(Permission).where(col(Permission.id).in_(permission_ids))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_or_create(
        self,
        resource: str,
        action: str,
        *,
        description: str = "",
        category: str | None = None,
        system_permission: bool = False,
    ) -> Permission:
        existing = await self.find(resource, action)
        if existing is not None:
            return existing
        permission = Permission(
            resource=resource,
            action=action,
            name=f"{resource} {action}",
            description=description or f"Permission to {action} {resource}",
            category=category,
            system_permission=system_permission,
        ).normalize()
        async with AsyncSession(self._engine) as session:
            session.add(permission)
            await session.commit()
            await session.refresh(permission)
        return permission

    async def create_crud_for(self, resource: str) -> list[Permission]:
        return [
            await self.find_or_create(resource, action)
            for action in ("create", "read", "update", "delete")
        ]

    async def seed_defaults(self) -> int:
        """Create the default catalog. Returns the number of catalog entries."""
        count = 0
        for resource in PERMISSION_RESOURCES:
            for action in PERMISSION_ACTIONS:
                if action == "manage" and resource == "Permission":
                    continue
                await self.find_or_create(
                    resource,
                    action,
                    category=_CATEGORIES.get(resource, "system_administration"),
                    system_permission=True,
                )
                count += 1
        logger.info("permission_catalog_seeded", count=count)
        return count


class DatabaseRoleRepository:
    """Tenant-scoped roles and their permission grants."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(
        self,
        org_id: str,
        name: str,
        *,
        key: str | None = None,
        priority: int = 0,
        description: str = "",
        system_role: bool = False,
        editable: bool = True,
    ) -> Role:
        if priority < 0:
            msg = "Role priority must be >= 0"
            raise ValueError(msg)
        async with AsyncSession(self._engine) as session:
            role = Role(
                org_id=org_id,
                name=name,
                key=key or role_key_from_name(name),
                priority=priority,
                description=description,
                system_role=system_role,
                editable=editable,
            )
            session.add(role)
            await session.commit()
            await session.refresh(role)
            logger.info("role_created", role_id=role.id, org_id=org_id, key=role.key)
            return role

    async def seed_default_roles(self, org_id: str) -> dict[str, Role]:
        roles: dict[str, Role] = {}
        for key, attrs in DEFAULT_ROLES.items():
            existing = await self.get_by_key(org_id, key)
            roles[key] = existing or await self.create(
                org_id,
                attrs["name"],
                key=key,
                priority=attrs["priority"],
                description=attrs["description"],
                system_role=True,
                editable=attrs["editable"],
            )
        return roles

    async def get(self, role_id: str) -> Role | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(Role, role_id)

    async def get_by_key(self, org_id: str, key: str) -> Role | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(Role).where(col(Role.org_id) == org_id, col(Role.key) == key)
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list_for_org(self, org_id: str) -> list[Role]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(Role)
                .where(col(Role.org_id) == org_id)
                .order_by(col(Role.priority).desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update(self, role_id: str, **changes: Any) -> Role | None:
        allowed = {"name", "description", "priority", "editable"}
        unknown = set(changes) - allowed
        if unknown:
            msg = f"Cannot update role fields: {sorted(unknown)}"
            raise ValueError(msg)
        async with AsyncSession(self._engine) as session:
            role = await session.get(Role, role_id)
            if role is None:
                return None
            if not role.is_editable():
                raise RoleNotEditable(f"Role {role.key} cannot be edited")
            for field, value in changes.items():
                setattr(role, field, value)
            role.updated_at = _utc_now()
            session.add(role)
            await session.commit()
            await session.refresh(role)
            return role

    async def delete(self, role_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            role = await session.get(Role, role_id)
            if role is None:
                return False
            if role.system_role:
                raise RoleNotEditable(f"System role {role.key} cannot be deleted")
            in_use = await session.execute(
                select(OrganizationMembership).where(
                    col(OrganizationMembership.role_id) == role_id
                )
            )
            if in_use.scalars().first() is not None:
                raise RoleNotEditable(f"Role {role.key} still has memberships")
            grants = await session.execute(
                select(RolePermission).where(col(RolePermission.role_id) == role_id)
            )
            for grant in grants.scalars().all():
                await session.delete(grant)
            await session.delete(role)
            await session.commit()
            logger.info("role_deleted", role_id=role_id, org_id=role.org_id)
            return True

    async def permissions_for(self, role_id: str) -> list[tuple[Permission, RolePermission]]:
        """Every permission granted to the role together with its grant row."""
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(Permission, RolePermission)
                .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
                .where(col(RolePermission.role_id) == role_id)
            )
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    async def has_permission(self, role_id: str, resource: str, action: str) -> bool:
        grants = await self.permissions_for(role_id)
        return any(
            p.resource.lower() == resource.lower() and p.action.lower() == action.lower()
            for p, _ in grants
        )

    async def add_permission(
        self,
        role_id: str,
        permission: Permission,
        *,
        conditions: dict[str, Any] | None = None,
        scope: dict[str, Any] | None = None,
    ) -> RolePermission:
        """Grant a permission; an existing grant is returned unchanged."""
        async with AsyncSession(self._engine) as session:
            stmt = select(RolePermission).where(
                col(RolePermission.role_id) == role_id,
                col(RolePermission.permission_id) == permission.id,
            )
            existing = (await session.execute(stmt)).scalars().first()
            if existing is not None:
                return existing
            grant = RolePermission(
                role_id=role_id,
                permission_id=permission.id,
                conditions=conditions or {},
                scope=scope or {},
            )
            session.add(grant)
            await session.commit()
            await session.refresh(grant)
            logger.info("role_permission_added", role_id=role_id, permission=permission.full_key)
            return grant

    async def remove_permission(self, role_id: str, permission: Permission) -> bool:
        async with AsyncSession(self._engine) as session:
            stmt = select(RolePermission).where(
                col(RolePermission.role_id) == role_id,
                col(RolePermission.permission_id) == permission.id,
            )
            grants = (await session.execute(stmt)).scalars().all()
            for grant in grants:
                await session.delete(grant)
            await session.commit()
            if grants:
                logger.info(
                    "role_permission_removed", role_id=role_id, permission=permission.full_key
                )
            return bool(grants)

    async def clone_permissions(self, source_role_id: str, target_role_id: str) -> int:
        copied = 0
        for permission, grant in await self.permissions_for(source_role_id):
            await self.add_permission(
                target_role_id,
                permission,
                conditions=dict(grant.conditions),
                scope=dict(grant.scope),
            )
            copied += 1
        return copied

    async def duplicate(self, role_id: str, new_name: str) -> Role | None:
        source = await self.get(role_id)
        if source is None:
            return None
        copy = await self.create(
            source.org_id,
            new_name,
            priority=source.priority,
            description=f"Duplicated from {source.name}",
        )
        await self.clone_permissions(source.id, copy.id)
        return copy

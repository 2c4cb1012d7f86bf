"""Access changes that must be followed by permission cache invalidation.

Going through this service instead of the repositories directly is what
keeps cached decisions honest: a role's permission set can change without
any membership fingerprint changing.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.exceptions import TenantGuardError
from tenantguard.models.database import (
    OrganizationMembership,
    PermissionDelegation,
    ResourcePermission,
    Role,
    RolePermission,
    TeamMembership,
)
from tenantguard.types import LegacyRole, SecurityEventType

if TYPE_CHECKING:
    from tenantguard.audit.service import SecurityAuditService
    from tenantguard.authz.cache import PermissionCache
    from tenantguard.storage.repositories.delegations import DatabaseDelegationRepository
    from tenantguard.storage.repositories.memberships import DatabaseMembershipRepository
    from tenantguard.storage.repositories.resource_permissions import (
        DatabaseResourcePermissionRepository,
    )
    from tenantguard.storage.repositories.roles import (
        DatabasePermissionRepository,
        DatabaseRoleRepository,
    )
    from tenantguard.storage.repositories.teams import DatabaseTeamRepository

logger = structlog.get_logger(__name__)


class AccessAdministration:
    def __init__(
        self,
        *,
        memberships: DatabaseMembershipRepository,
        roles: DatabaseRoleRepository,
        permissions: DatabasePermissionRepository,
        delegations: DatabaseDelegationRepository,
        cache: PermissionCache,
        teams: DatabaseTeamRepository | None = None,
        resource_permissions: DatabaseResourcePermissionRepository | None = None,
        audit: SecurityAuditService | None = None,
    ) -> None:
        self._memberships = memberships
        self._roles = roles
        self._permissions = permissions
        self._delegations = delegations
        self._teams = teams
        self._resource_permissions = resource_permissions
        self._cache = cache
        self._audit = audit

    # -- memberships -----------------------------------------------------------

    async def add_member(
        self,
        org_id: str,
        user_id: str,
        *,
        role: str | None = LegacyRole.MEMBER.value,
        role_id: str | None = None,
        actor_id: str | None = None,
    ) -> OrganizationMembership:
        membership = await self._memberships.create(
            org_id, user_id, role=None if role_id else role, role_id=role_id
        )
        await self._after_membership_change(membership, "member_added", actor_id)
        return membership

    async def change_role(
        self,
        membership_id: str,
        *,
        role: str | None = None,
        role_id: str | None = None,
        actor_id: str | None = None,
    ) -> OrganizationMembership | None:
        membership = await self._memberships.change_role(membership_id, role=role, role_id=role_id)
        if membership is None:
            return None
        await self._after_membership_change(membership, "role_changed", actor_id)
        return membership

    async def assign_owner(
        self, membership_id: str, *, actor_id: str | None = None
    ) -> OrganizationMembership | None:
        """Make the membership the tenant's single owner; the previous owner becomes admin.

        Dynamic memberships receive the tenant's ``owner`` role when it
        exists, legacy memberships the ``owner`` role name.
        """
        membership = await self._memberships.get(membership_id)
        if membership is None:
            return None
        owner_role: Role | None = None
        if membership.role_id:
            owner_role = await self._roles.get_by_key(membership.org_id, LegacyRole.OWNER.value)
        if owner_role is not None:
            return await self.change_role(membership_id, role_id=owner_role.id, actor_id=actor_id)
        return await self.change_role(
            membership_id, role=LegacyRole.OWNER.value, actor_id=actor_id
        )

    async def set_member_active(
        self, membership_id: str, active: bool, *, actor_id: str | None = None
    ) -> OrganizationMembership | None:
        membership = await self._memberships.set_active(membership_id, active)
        if membership is None:
            return None
        await self._after_membership_change(
            membership, "member_activated" if active else "member_deactivated", actor_id
        )
        return membership

    async def _after_membership_change(
        self, membership: OrganizationMembership, action: str, actor_id: str | None
    ) -> None:
        owner_assigned = membership.is_legacy_owner() or (
            membership.role_id is not None and await self._is_owner_role(membership.role_id)
        )
        if owner_assigned:
            # The previous owner was demoted in the same transaction
            self._cache.invalidate_tenant(membership.org_id)
        else:
            self._cache.invalidate(membership.org_id, membership.user_id)
        await self._record(
            SecurityEventType.USER_MANAGEMENT,
            action,
            org_id=membership.org_id,
            actor_id=actor_id,
            membership_id=membership.id,
            member_user_id=membership.user_id,
            role=membership.fingerprint(),
        )

    async def _is_owner_role(self, role_id: str) -> bool:
        role = await self._roles.get(role_id)
        return role is not None and role.owner_level()

    # -- roles -----------------------------------------------------------------

    async def create_role(self, org_id: str, name: str, **attrs: Any) -> Role:
        role = await self._roles.create(org_id, name, **attrs)
        await self._record(
            SecurityEventType.CONFIGURATION_CHANGE, "role_created", org_id=org_id, role_id=role.id
        )
        return role

    async def update_role(self, role_id: str, **changes: Any) -> Role | None:
        role = await self._roles.update(role_id, **changes)
        if role is not None:
            self._cache.invalidate_tenant(role.org_id)
            await self._record(
                SecurityEventType.CONFIGURATION_CHANGE,
                "role_updated",
                org_id=role.org_id,
                role_id=role.id,
                fields=sorted(changes),
            )
        return role

    async def delete_role(self, role_id: str) -> bool:
        role = await self._roles.get(role_id)
        if role is None:
            return False
        deleted = await self._roles.delete(role_id)
        if deleted:
            self._cache.invalidate_tenant(role.org_id)
            await self._record(
                SecurityEventType.CONFIGURATION_CHANGE,
                "role_deleted",
                org_id=role.org_id,
                role_id=role_id,
            )
        return deleted

    async def grant_permission(
        self,
        role_id: str,
        resource: str,
        action: str,
        *,
        conditions: dict[str, Any] | None = None,
        scope: dict[str, Any] | None = None,
    ) -> RolePermission:
        role = await self._require_role(role_id)
        permission = await self._permissions.find_or_create(resource, action)
        grant = await self._roles.add_permission(
            role.id, permission, conditions=conditions, scope=scope
        )
        self._cache.invalidate_tenant(role.org_id)
        await self._record(
            SecurityEventType.CONFIGURATION_CHANGE,
            "permission_granted",
            org_id=role.org_id,
            role_id=role.id,
            permission=permission.full_key,
        )
        return grant

    async def revoke_permission(self, role_id: str, resource: str, action: str) -> bool:
        role = await self._require_role(role_id)
        permission = await self._permissions.find(resource, action)
        if permission is None:
            return False
        removed = await self._roles.remove_permission(role.id, permission)
        if removed:
            self._cache.invalidate_tenant(role.org_id)
            await self._record(
                SecurityEventType.CONFIGURATION_CHANGE,
                "permission_revoked",
                org_id=role.org_id,
                role_id=role.id,
                permission=permission.full_key,
            )
        return removed

    async def _require_role(self, role_id: str) -> Role:
        role = await self._roles.get(role_id)
        if role is None:
            raise TenantGuardError(f"Role {role_id} does not exist")
        return role

    # -- delegations -----------------------------------------------------------

    async def delegate(
        self,
        *,
        org_id: str,
        delegator_id: str,
        delegatee_id: str,
        starts_at: datetime,
        ends_at: datetime,
        role_id: str | None = None,
        permission_ids: list[str] | None = None,
        reason: str = "",
    ) -> PermissionDelegation:
        delegation = await self._delegations.create(
            org_id=org_id,
            delegator_id=delegator_id,
            delegatee_id=delegatee_id,
            starts_at=starts_at,
            ends_at=ends_at,
            role_id=role_id,
            permission_ids=permission_ids,
            reason=reason,
        )
        self._cache.invalidate(org_id, delegatee_id)
        await self._record(
            SecurityEventType.USER_MANAGEMENT,
            "permission_delegated",
            org_id=org_id,
            actor_id=delegator_id,
            delegation_id=delegation.id,
            member_user_id=delegatee_id,
        )
        return delegation

    async def revoke_delegation(self, delegation_id: str) -> PermissionDelegation | None:
        delegation = await self._delegations.revoke(delegation_id)
        if delegation is not None:
            self._cache.invalidate(delegation.org_id, delegation.delegatee_id)
            await self._record(
                SecurityEventType.USER_MANAGEMENT,
                "delegation_revoked",
                org_id=delegation.org_id,
                delegation_id=delegation.id,
                member_user_id=delegation.delegatee_id,
            )
        return delegation

    async def extend_delegation(
        self, delegation_id: str, ends_at: datetime
    ) -> PermissionDelegation | None:
        delegation = await self._delegations.extend(delegation_id, ends_at)
        if delegation is not None:
            self._cache.invalidate(delegation.org_id, delegation.delegatee_id)
        return delegation

    # -- teams -----------------------------------------------------------------

    async def add_team_member(
        self, org_id: str, team_id: str, user_id: str, *, actor_id: str | None = None
    ) -> TeamMembership:
        seat = await self._require_teams().add_member(org_id, team_id, user_id)
        self._cache.invalidate(org_id, user_id)
        await self._record(
            SecurityEventType.USER_MANAGEMENT,
            "team_member_added",
            org_id=org_id,
            actor_id=actor_id,
            team_id=team_id,
            member_user_id=user_id,
        )
        return seat

    async def remove_team_member(
        self, org_id: str, team_id: str, user_id: str, *, actor_id: str | None = None
    ) -> bool:
        removed = await self._require_teams().remove_member(org_id, team_id, user_id)
        if removed:
            self._cache.invalidate(org_id, user_id)
            await self._record(
                SecurityEventType.USER_MANAGEMENT,
                "team_member_removed",
                org_id=org_id,
                actor_id=actor_id,
                team_id=team_id,
                member_user_id=user_id,
            )
        return removed

    def _require_teams(self) -> DatabaseTeamRepository:
        if self._teams is None:
            raise TenantGuardError("Team administration is not configured")
        return self._teams

    # -- instance grants -------------------------------------------------------

    async def grant_resource_permission(
        self,
        *,
        org_id: str,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        expires_at: datetime | None = None,
        actor_id: str | None = None,
    ) -> ResourcePermission:
        """Let one principal perform ``action`` on one resource instance."""
        repository = self._require_resource_permissions()
        permission = await self._permissions.find_or_create(resource_type, action)
        grant = await repository.grant(
            org_id=org_id,
            user_id=user_id,
            permission=permission,
            resource_type=permission.resource,
            resource_id=resource_id,
            expires_at=expires_at,
        )
        self._cache.invalidate(org_id, user_id)
        await self._record(
            SecurityEventType.USER_MANAGEMENT,
            "resource_permission_granted",
            org_id=org_id,
            actor_id=actor_id,
            grant_id=grant.id,
            member_user_id=user_id,
            permission=permission.full_key,
            resource_id=resource_id,
        )
        return grant

    async def revoke_resource_permission(
        self, grant_id: str, *, actor_id: str | None = None
    ) -> ResourcePermission | None:
        grant = await self._require_resource_permissions().revoke(grant_id)
        if grant is not None:
            self._cache.invalidate(grant.org_id, grant.user_id)
            await self._record(
                SecurityEventType.USER_MANAGEMENT,
                "resource_permission_revoked",
                org_id=grant.org_id,
                actor_id=actor_id,
                grant_id=grant.id,
                member_user_id=grant.user_id,
            )
        return grant

    def _require_resource_permissions(self) -> DatabaseResourcePermissionRepository:
        if self._resource_permissions is None:
            raise TenantGuardError("Instance grants are not configured")
        return self._resource_permissions

    async def _record(
        self,
        event_type: SecurityEventType,
        action: str,
        *,
        actor_id: str | None = None,
        **payload: Any,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log_event(event_type, user_id=actor_id, action=action, **payload)

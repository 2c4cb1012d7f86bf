"""Permission engine: ``can(principal, action, resource)`` for one tenant.

Tenant isolation is decided here and nowhere else: an ability is built for
exactly one tenant and refuses every instance that belongs to another.
Legacy role names and database roles are evaluated by separate rule
builders and never merged for the same membership.
"""

from __future__ import annotations

import dataclasses
import hashlib
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.authz.cache import PermissionCache
from tenantguard.authz.graph import permission_rules, priority_rules, resource_rules
from tenantguard.authz.legacy import baseline_rules, legacy_rules
from tenantguard.authz.resources import ResourceRef, describe
from tenantguard.authz.rules import Ability, Rule, guest_ability, no_access
from tenantguard.exceptions import AccessDenied
from tenantguard.models.database import (
    DynamicRoleAssignment,
    LegacyRoleAssignment,
    Organization,
    OrganizationMembership,
    PermissionDelegation,
    Role,
    _utc_now,
)
from tenantguard.tenancy.context import current_tenant
from tenantguard.types import LegacyRole

if TYPE_CHECKING:
    from tenantguard.audit.service import SecurityAuditService
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
    from tenantguard.storage.repositories.tenants import DatabaseTenantRepository

logger = structlog.get_logger(__name__)


def principal_id_of(principal: Any) -> str | None:
    """Accept a user object or a bare user id."""
    if principal is None:
        return None
    if isinstance(principal, str):
        return principal or None
    return getattr(principal, "id", None)


def cache_fingerprint(membership: OrganizationMembership, team_ids: tuple[str, ...]) -> str:
    """Role fingerprint, extended by a digest of the team seats that shape the rules."""
    fingerprint = membership.fingerprint()
    if not team_ids:
        return fingerprint
    digest = hashlib.sha256(",".join(sorted(team_ids)).encode()).hexdigest()[:16]
    return f"{fingerprint}+teams-{digest}"


class PermissionEngine:
    def __init__(
        self,
        *,
        tenants: DatabaseTenantRepository,
        memberships: DatabaseMembershipRepository,
        roles: DatabaseRoleRepository,
        permissions: DatabasePermissionRepository,
        delegations: DatabaseDelegationRepository,
        teams: DatabaseTeamRepository | None = None,
        resource_permissions: DatabaseResourcePermissionRepository | None = None,
        cache: PermissionCache | None = None,
        clock: Callable[[], datetime] = _utc_now,
        audit: SecurityAuditService | None = None,
    ) -> None:
        self._tenants = tenants
        self._memberships = memberships
        self._roles = roles
        self._permissions = permissions
        self._delegations = delegations
        self._teams = teams
        self._resource_permissions = resource_permissions
        self._cache = cache if cache is not None else PermissionCache(enabled=False)
        self._clock = clock
        self._audit = audit

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    def attach_audit(self, audit: SecurityAuditService) -> None:
        self._audit = audit

    # -- abilities ---------------------------------------------------------

    async def ability_for(self, principal: Any, tenant: Organization | None) -> Ability:
        """Guest rules without a principal; nothing at all outside an active membership."""
        principal_id = principal_id_of(principal)
        if principal_id is None:
            return guest_ability()
        if tenant is None or not tenant.is_active():
            return no_access(principal_id, tenant.id if tenant is not None else None)

        membership = await self._memberships.active_membership(principal_id, tenant.id)
        if membership is None:
            return no_access(principal_id, tenant.id)

        team_ids = await self._team_ids(principal_id, tenant.id)

        async def load() -> Ability:
            return await self._build_ability(principal_id, tenant, membership, team_ids)

        return await self._cache.fetch(
            tenant.id, principal_id, cache_fingerprint(membership, team_ids), load
        )

    async def _team_ids(self, principal_id: str, org_id: str) -> tuple[str, ...]:
        if self._teams is None:
            return ()
        return await self._teams.team_ids_for(principal_id, org_id)

    async def _build_ability(
        self,
        principal_id: str,
        tenant: Organization,
        membership: OrganizationMembership,
        team_ids: tuple[str, ...],
    ) -> Ability:
        assignment = membership.assignment()
        rules: list[Rule] = []
        match assignment:
            case LegacyRoleAssignment(name=name):
                rules += legacy_rules(name, principal_id, tenant.id)
            case DynamicRoleAssignment(role_id=role_id):
                rules += await self._role_rules(role_id, principal_id, tenant, team_ids)
            case None:
                logger.warning(
                    "membership_without_role",
                    membership_id=membership.id,
                    org_id=tenant.id,
                )

        for delegation in await self._delegations.in_force_for(
            principal_id, tenant.id, self._clock()
        ):
            rules += await self._delegation_rules(delegation, principal_id, team_ids)

        # Instance grants come last so they win over role-wide denials
        if self._resource_permissions is not None:
            rules += resource_rules(
                await self._resource_permissions.active_for(
                    principal_id, tenant.id, self._clock()
                )
            )

        logger.debug(
            "ability_built",
            principal_id=principal_id,
            org_id=tenant.id,
            fingerprint=membership.fingerprint(),
            rules=len(rules),
        )
        return Ability(
            principal_id=principal_id,
            tenant_id=tenant.id,
            rules=tuple(rules),
            fingerprint=membership.fingerprint(),
            clock=self._clock,
        )

    async def _role_rules(
        self,
        role_id: str,
        principal_id: str,
        tenant: Organization,
        team_ids: tuple[str, ...],
    ) -> list[Rule]:
        role = await self._roles.get(role_id)
        if role is None or role.org_id != tenant.id:
            logger.warning("membership_role_missing", role_id=role_id, org_id=tenant.id)
            return []
        source = f"role:{role.key}"
        grants = await self._roles.permissions_for(role.id)
        return (
            baseline_rules(principal_id, tenant.id, source)
            + permission_rules(grants, principal_id, team_ids=team_ids, source=source)
            + priority_rules(role)
        )

    async def _delegation_rules(
        self,
        delegation: PermissionDelegation,
        principal_id: str,
        team_ids: tuple[str, ...],
    ) -> list[Rule]:
        window = {
            "starts_at": delegation.starts_at,
            "ends_at": delegation.ends_at,
            "source": f"delegation:{delegation.id}",
        }
        if delegation.role_id is not None:
            role = await self._roles.get(delegation.role_id)
            if role is None or role.org_id != delegation.org_id:
                return []
            grants = await self._roles.permissions_for(role.id)
            return permission_rules(grants, principal_id, team_ids=team_ids, **window) + (
                priority_rules(role, **window)
            )

        granted = await self._permissions.get_many(list(delegation.permission_ids))
        return permission_rules(
            [(permission, None) for permission in granted],
            principal_id,
            team_ids=team_ids,
            **window,
        )

    # -- decisions ---------------------------------------------------------

    async def can(
        self,
        principal: Any,
        action: str,
        subject: Any,
        tenant: Organization | None = None,
    ) -> bool:
        """Decide one action; denial is an ordinary ``False``, never an exception.

        The tenant defaults to the bound request context, then to the
        resource's own tenant when nothing is bound.
        """
        ref = describe(subject)
        tenant = await self._tenant_for(ref, tenant)
        ability = await self.ability_for(principal, tenant)
        ref = await self._with_role_level(ref)
        return ability.can(action, ref)

    async def cannot(
        self,
        principal: Any,
        action: str,
        subject: Any,
        tenant: Organization | None = None,
    ) -> bool:
        return not await self.can(principal, action, subject, tenant)

    async def authorize(
        self,
        principal: Any,
        action: str,
        subject: Any,
        tenant: Organization | None = None,
        **request_meta: Any,
    ) -> None:
        """Like :meth:`can`, but raise ``AccessDenied`` and record the denial."""
        if await self.can(principal, action, subject, tenant):
            return
        ref = describe(subject)
        bound = tenant or current_tenant()
        if self._audit is not None:
            await self._audit.log_unauthorized_access(
                user_id=principal_id_of(principal),
                email=getattr(principal, "email", None),
                org_id=bound.id if bound is not None else ref.org_id,
                resource_type=ref.resource_type,
                resource_id=ref.id,
                action=action,
                **request_meta,
            )
        raise AccessDenied(f"Not allowed to {action} {ref.resource_type}")

    async def permission_keys(self, principal: Any, tenant: Organization | None) -> set[str]:
        ability = await self.ability_for(principal, tenant)
        return ability.permission_keys()

    # -- membership predicates ---------------------------------------------

    async def can_access(self, principal: Any, tenant: Organization | None) -> bool:
        principal_id = principal_id_of(principal)
        if principal_id is None or tenant is None or not tenant.is_active():
            return False
        return await self._memberships.active_membership(principal_id, tenant.id) is not None

    async def member_of(self, principal: Any, tenant: Organization | None) -> bool:
        return await self._membership(principal, tenant) is not None

    async def role_in(self, principal: Any, tenant: Organization | None) -> str | None:
        """Legacy role name, or the database role's key."""
        membership = await self._membership(principal, tenant)
        if membership is None:
            return None
        role = await self._dynamic_role(membership)
        if role is not None:
            return role.key
        return membership.role

    async def owner_of(self, principal: Any, tenant: Organization | None) -> bool:
        membership = await self._membership(principal, tenant)
        if membership is None:
            return False
        role = await self._dynamic_role(membership)
        if role is not None:
            return role.owner_level()
        return membership.role == LegacyRole.OWNER

    async def admin_of(self, principal: Any, tenant: Organization | None) -> bool:
        membership = await self._membership(principal, tenant)
        if membership is None:
            return False
        role = await self._dynamic_role(membership)
        if role is not None:
            return role.admin_level()
        return membership.role in (LegacyRole.OWNER, LegacyRole.ADMIN)

    async def viewer_of(self, principal: Any, tenant: Organization | None) -> bool:
        return await self.role_in(principal, tenant) == LegacyRole.VIEWER

    # -- helpers -----------------------------------------------------------

    async def _membership(
        self, principal: Any, tenant: Organization | None
    ) -> OrganizationMembership | None:
        principal_id = principal_id_of(principal)
        if principal_id is None or tenant is None:
            return None
        return await self._memberships.active_membership(principal_id, tenant.id)

    async def _dynamic_role(self, membership: OrganizationMembership) -> Role | None:
        if not membership.role_id:
            return None
        role = await self._roles.get(membership.role_id)
        if role is None or role.org_id != membership.org_id:
            return None
        return role

    async def _tenant_for(
        self, ref: ResourceRef, tenant: Organization | None
    ) -> Organization | None:
        if tenant is not None:
            return tenant
        bound = current_tenant()
        if bound is not None:
            return bound
        if ref.org_id is not None:
            return await self._tenants.get(ref.org_id)
        return None

    async def _with_role_level(self, ref: ResourceRef) -> ResourceRef:
        """Mark memberships holding an owner-level database role."""
        if ref.resource_type != "OrganizationMembership" or ref.is_class:
            return ref
        role_id = ref.get("role_id")
        if not role_id or "owner_level" in ref.attributes:
            return ref
        role = await self._roles.get(role_id)
        owner_level = role is not None and role.owner_level()
        return dataclasses.replace(ref, attributes={**ref.attributes, "owner_level": owner_level})

"""Membership repository, PostgreSQL-backed.

Owner uniqueness is enforced here: whenever a membership becomes
owner-level, every other owner-level membership of the same tenant is
demoted to admin inside the same transaction. The tenant row is locked
first so two concurrent owner assignments serialize instead of both
surviving the demotion pass.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import (
    Organization,
    OrganizationMembership,
    Role,
    _utc_now,
)
from tenantguard.types import LegacyRole

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine
    from sqlmodel.sql.expression import SelectOfScalar

logger = structlog.get_logger(__name__)

_LEGACY_ROLES = frozenset(r.value for r in LegacyRole)


def tenant_lock_statement(org_id: str) -> SelectOfScalar[Organization]:
    """Row lock on the tenant; SQLite renders it without FOR UPDATE."""
    return select(Organization).where(col(Organization.id) == org_id).with_for_update()


def _validate_role_fields(role: str | None, role_id: str | None) -> None:
    if role is None and role_id is None:
        msg = "Membership needs either a legacy role name or a role id"
        raise ValueError(msg)
    if role is not None and role_id is not None:
        msg = "Membership cannot carry both a legacy role name and a role id"
        raise ValueError(msg)
    if role is not None and role not in _LEGACY_ROLES:
        msg = f"Unknown legacy role: {role}"
        raise ValueError(msg)


class DatabaseMembershipRepository:
    """Principal-to-tenant bindings."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(
        self,
        org_id: str,
        user_id: str,
        role: str | None = LegacyRole.MEMBER.value,
        role_id: str | None = None,
        active: bool = True,
    ) -> OrganizationMembership:
        if role_id is not None and role == LegacyRole.MEMBER.value:
            role = None
        _validate_role_fields(role, role_id)
        async with AsyncSession(self._engine) as session:
            membership = OrganizationMembership(
                org_id=org_id,
                user_id=user_id,
                role=role,
                role_id=role_id,
                active=active,
            )
            owner_level = await self._is_owner_level(session, membership)
            if owner_level:
                await self._lock_tenant(session, org_id)
            session.add(membership)
            await session.flush()
            if owner_level:
                await self._demote_other_owners(session, membership)
            await session.commit()
            await session.refresh(membership)
            logger.info(
                "membership_created",
                membership_id=membership.id,
                org_id=org_id,
                user_id=user_id,
                role=membership.fingerprint(),
            )
            return membership

    async def get(self, membership_id: str) -> OrganizationMembership | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(OrganizationMembership, membership_id)

    async def active_membership(self, user_id: str, org_id: str) -> OrganizationMembership | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(OrganizationMembership).where(
                col(OrganizationMembership.user_id) == user_id,
                col(OrganizationMembership.org_id) == org_id,
                col(OrganizationMembership.active).is_(True),
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list_for_org(
        self, org_id: str, include_inactive: bool = False
    ) -> list[OrganizationMembership]:
        async with AsyncSession(self._engine) as session:
            stmt = select(OrganizationMembership).where(
                col(OrganizationMembership.org_id) == org_id
            )
            if not include_inactive:
                stmt = stmt.where(col(OrganizationMembership.active).is_(True))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_with_role(self, role_id: str) -> list[OrganizationMembership]:
        async with AsyncSession(self._engine) as session:
            stmt = select(OrganizationMembership).where(
                col(OrganizationMembership.role_id) == role_id
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def change_role(
        self,
        membership_id: str,
        role: str | None = None,
        role_id: str | None = None,
    ) -> OrganizationMembership | None:
        """Switch the membership to exactly one role representation."""
        _validate_role_fields(role, role_id)
        async with AsyncSession(self._engine) as session:
            membership = await session.get(OrganizationMembership, membership_id)
            if membership is None:
                return None
            membership.role = role
            membership.role_id = role_id
            membership.updated_at = _utc_now()
            owner_level = await self._is_owner_level(session, membership)
            if owner_level:
                await self._lock_tenant(session, membership.org_id)
            session.add(membership)
            await session.flush()
            if owner_level:
                await self._demote_other_owners(session, membership)
            await session.commit()
            await session.refresh(membership)
            logger.info(
                "membership_role_changed",
                membership_id=membership_id,
                org_id=membership.org_id,
                role=membership.fingerprint(),
            )
            return membership

    async def set_active(self, membership_id: str, active: bool) -> OrganizationMembership | None:
        async with AsyncSession(self._engine) as session:
            membership = await session.get(OrganizationMembership, membership_id)
            if membership is None:
                return None
            membership.active = active
            membership.updated_at = _utc_now()
            session.add(membership)
            await session.commit()
            await session.refresh(membership)
            logger.info("membership_active_changed", membership_id=membership_id, active=active)
            return membership

    async def owners(self, org_id: str) -> list[OrganizationMembership]:
        """Memberships of the tenant holding an owner-level role."""
        async with AsyncSession(self._engine) as session:
            memberships = (
                await session.execute(
                    select(OrganizationMembership).where(
                        col(OrganizationMembership.org_id) == org_id
                    )
                )
            ).scalars().all()
            return [m for m in memberships if await self._is_owner_level(session, m)]

    # ------------------------------------------------------------------

    @staticmethod
    async def _lock_tenant(session: AsyncSession, org_id: str) -> None:
        await session.execute(tenant_lock_statement(org_id))

    @staticmethod
    async def _is_owner_level(session: AsyncSession, membership: OrganizationMembership) -> bool:
        if membership.role_id:
            role = await session.get(Role, membership.role_id)
            return role is not None and role.owner_level()
        return membership.role == LegacyRole.OWNER

    async def _demote_other_owners(
        self, session: AsyncSession, new_owner: OrganizationMembership
    ) -> None:
        stmt = select(OrganizationMembership).where(
            col(OrganizationMembership.org_id) == new_owner.org_id,
            col(OrganizationMembership.id) != new_owner.id,
        )
        others = (await session.execute(stmt)).scalars().all()
        admin_role: Role | None = None
        admin_role_loaded = False
        for other in others:
            if not await self._is_owner_level(session, other):
                continue
            if other.role_id:
                if not admin_role_loaded:
                    admin_stmt = select(Role).where(
                        col(Role.org_id) == new_owner.org_id,
                        col(Role.key) == LegacyRole.ADMIN.value,
                    )
                    admin_role = (await session.execute(admin_stmt)).scalars().first()
                    admin_role_loaded = True
                if admin_role is not None:
                    other.role_id = admin_role.id
                else:
                    other.role_id = None
                    other.role = LegacyRole.ADMIN.value
            else:
                other.role = LegacyRole.ADMIN.value
            other.updated_at = _utc_now()
            session.add(other)
            logger.info(
                "previous_owner_demoted",
                membership_id=other.id,
                org_id=other.org_id,
                new_owner_membership_id=new_owner.id,
            )

"""Permission delegation repository, PostgreSQL-backed."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.exceptions import InvalidDelegation
from tenantguard.models.database import (
    LEGACY_ROLE_PRIORITIES,
    OrganizationMembership,
    PermissionDelegation,
    Role,
    _utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


class DatabaseDelegationRepository:
    """Time-bounded loans of a role's permissions.

    Expired and revoked delegations are kept for audit; only the query
    methods decide what is still in force.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(
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
        if ends_at <= starts_at:
            raise InvalidDelegation("Delegation must end after it starts")
        if delegator_id == delegatee_id:
            raise InvalidDelegation("Cannot delegate permissions to yourself")
        if role_id is None and not permission_ids:
            raise InvalidDelegation("Delegation needs a role or explicit permissions")

        async with AsyncSession(self._engine) as session:
            delegator_membership = (
                await session.execute(
                    select(OrganizationMembership).where(
                        col(OrganizationMembership.org_id) == org_id,
                        col(OrganizationMembership.user_id) == delegator_id,
                        col(OrganizationMembership.active).is_(True),
                    )
                )
            ).scalars().first()
            if delegator_membership is None:
                raise InvalidDelegation("Delegator is not a member of this organization")

            if role_id is not None:
                role = await session.get(Role, role_id)
                if role is None or role.org_id != org_id:
                    raise InvalidDelegation("Delegated role does not belong to this organization")
                delegator_priority = await self._priority_of(session, delegator_membership)
                if delegator_priority < role.priority:
                    raise InvalidDelegation("Cannot delegate a role above your own")

            delegation = PermissionDelegation(
                org_id=org_id,
                delegator_id=delegator_id,
                delegatee_id=delegatee_id,
                role_id=role_id,
                permission_ids=list(permission_ids or []),
                starts_at=starts_at,
                ends_at=ends_at,
                reason=reason,
            )
            session.add(delegation)
            await session.commit()
            await session.refresh(delegation)
            logger.info(
                "delegation_created",
                delegation_id=delegation.id,
                org_id=org_id,
                delegator_id=delegator_id,
                delegatee_id=delegatee_id,
                role_id=role_id,
            )
            return delegation

    async def get(self, delegation_id: str) -> PermissionDelegation | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(PermissionDelegation, delegation_id)

    async def in_force_for(
        self, delegatee_id: str, org_id: str, now: datetime | None = None
    ) -> list[PermissionDelegation]:
        """Active and upcoming delegations; the caller checks each window at use time."""
        now = now or _utc_now()
        async with AsyncSession(self._engine) as session:
            stmt = select(PermissionDelegation).where(
                col(PermissionDelegation.delegatee_id) == delegatee_id,
                col(PermissionDelegation.org_id) == org_id,
                col(PermissionDelegation.active).is_(True),
                col(PermissionDelegation.ends_at) > now,
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_for_org(self, org_id: str) -> list[PermissionDelegation]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(PermissionDelegation)
                .where(col(PermissionDelegation.org_id) == org_id)
                .order_by(col(PermissionDelegation.starts_at))
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def revoke(self, delegation_id: str) -> PermissionDelegation | None:
        async with AsyncSession(self._engine) as session:
            delegation = await session.get(PermissionDelegation, delegation_id)
            if delegation is None:
                return None
            delegation.active = False
            delegation.ends_at = min(delegation.ends_at, _utc_now())
            session.add(delegation)
            await session.commit()
            await session.refresh(delegation)
            logger.info("delegation_revoked", delegation_id=delegation_id)
            return delegation

    async def extend(self, delegation_id: str, ends_at: datetime) -> PermissionDelegation | None:
        async with AsyncSession(self._engine) as session:
            delegation = await session.get(PermissionDelegation, delegation_id)
            if delegation is None:
                return None
            if ends_at <= delegation.starts_at:
                raise InvalidDelegation("Delegation must end after it starts")
            delegation.ends_at = ends_at
            session.add(delegation)
            await session.commit()
            await session.refresh(delegation)
            return delegation

    @staticmethod
    async def _priority_of(session: AsyncSession, membership: OrganizationMembership) -> int:
        if membership.role_id:
            role = await session.get(Role, membership.role_id)
            return role.priority if role else 0
        return LEGACY_ROLE_PRIORITIES.get(membership.role or "", 0)

"""Per-instance permission grants, PostgreSQL-backed.

Revoked and expired grants stay in the table for audit; ``active_for``
is the only query the permission engine consults.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, or_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import Permission, ResourcePermission, _utc_now

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


class DatabaseResourcePermissionRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def grant(
        self,
        *,
        org_id: str,
        user_id: str,
        permission: Permission,
        resource_type: str,
        resource_id: str,
        expires_at: datetime | None = None,
    ) -> ResourcePermission:
        """Grant, or re-grant with a new expiry, one permission on one instance."""
        async with AsyncSession(self._engine) as session:
            stmt = select(ResourcePermission).where(
                col(ResourcePermission.org_id) == org_id,
                col(ResourcePermission.user_id) == user_id,
                col(ResourcePermission.permission_id) == permission.id,
                col(ResourcePermission.resource_type) == resource_type,
                col(ResourcePermission.resource_id) == resource_id,
            )
            grant = (await session.execute(stmt)).scalars().first()
            if grant is None:
                grant = ResourcePermission(
                    org_id=org_id,
                    user_id=user_id,
                    permission_id=permission.id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
            grant.granted = True
            grant.expires_at = expires_at
            grant.updated_at = _utc_now()
            session.add(grant)
            await session.commit()
            await session.refresh(grant)
            logger.info(
                "resource_permission_granted",
                grant_id=grant.id,
                org_id=org_id,
                user_id=user_id,
                permission=permission.full_key,
                resource_id=resource_id,
            )
            return grant

    async def get(self, grant_id: str) -> ResourcePermission | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(ResourcePermission, grant_id)

    async def revoke(self, grant_id: str) -> ResourcePermission | None:
        async with AsyncSession(self._engine) as session:
            grant = await session.get(ResourcePermission, grant_id)
            if grant is None:
                return None
            grant.granted = False
            grant.expires_at = _utc_now()
            grant.updated_at = grant.expires_at
            session.add(grant)
            await session.commit()
            await session.refresh(grant)
            logger.info("resource_permission_revoked", grant_id=grant_id, org_id=grant.org_id)
            return grant

    async def active_for(
        self, user_id: str, org_id: str, now: datetime | None = None
    ) -> list[tuple[Permission, ResourcePermission]]:
        """Granted, unexpired instance grants together with their permission."""
        now = now or _utc_now()
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(Permission, ResourcePermission)
                .join(
                    ResourcePermission,
                    col(ResourcePermission.permission_id) == col(Permission.id),
                )
                .where(
                    col(ResourcePermission.user_id) == user_id,
                    col(ResourcePermission.org_id) == org_id,
                    col(ResourcePermission.granted).is_(True),
                    or_(
                        col(ResourcePermission.expires_at).is_(None),
                        col(ResourcePermission.expires_at) > now,
                    ),
                )
                .order_by(col(ResourcePermission.created_at))
            )
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

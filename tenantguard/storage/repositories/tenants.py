"""Organization and user repository, PostgreSQL-backed."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import Organization, OrganizationMembership, User, _utc_now

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


class DatabaseTenantRepository:
    """Tenant (organization) lookups used by the resolver, context and switcher."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(self, name: str, subdomain: str, plan: str = "free") -> Organization:
        async with AsyncSession(self._engine) as session:
            org = Organization(name=name, subdomain=subdomain.lower(), plan=plan)
            session.add(org)
            await session.commit()
            await session.refresh(org)
            logger.info("organization_created", org_id=org.id, subdomain=org.subdomain)
            return org

    async def get(self, org_id: str) -> Organization | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(Organization, org_id)

    async def find_by_subdomain(self, subdomain: str) -> Organization | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(Organization).where(col(Organization.subdomain) == subdomain.lower())
            result = await session.execute(stmt)
            return result.scalars().first()

    async def set_active(self, org_id: str, active: bool) -> Organization | None:
        """Deactivate or reactivate a tenant. Tenants are never hard-deleted."""
        async with AsyncSession(self._engine) as session:
            org = await session.get(Organization, org_id)
            if org is None:
                return None
            org.active = active
            org.updated_at = _utc_now()
            session.add(org)
            await session.commit()
            await session.refresh(org)
            logger.info("organization_active_changed", org_id=org_id, active=active)
            return org

    async def list_accessible(self, user_id: str) -> list[Organization]:
        """Active tenants where the user holds an active membership, by subdomain."""
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(Organization)
                .join(
                    OrganizationMembership,
                    col(OrganizationMembership.org_id) == col(Organization.id),
                )
                .where(
                    col(OrganizationMembership.user_id) == user_id,
                    col(OrganizationMembership.active).is_(True),
                    col(Organization.active).is_(True),
                )
                .order_by(col(Organization.subdomain))
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_active_members(self, org_id: str) -> int:
        async with AsyncSession(self._engine) as session:
            stmt = select(OrganizationMembership).where(
                col(OrganizationMembership.org_id) == org_id,
                col(OrganizationMembership.active).is_(True),
            )
            result = await session.execute(stmt)
            return len(result.scalars().all())


class DatabaseUserRepository:
    """PostgreSQL-backed user store."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(self, email: str, name: str = "") -> User:
        async with AsyncSession(self._engine) as session:
            user = User(email=email, name=name or email, is_active=True)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            logger.info("user_created", user_id=user.id, email=email)
            return user

    async def get_by_id(self, user_id: str) -> User | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(User).where(col(User.id) == user_id, col(User.is_active).is_(True))
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_by_email(self, email: str) -> User | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(User).where(col(User.email) == email, col(User.is_active).is_(True))
            result = await session.execute(stmt)
            return result.scalars().first()

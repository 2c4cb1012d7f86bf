"""Team seat repository, PostgreSQL-backed."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import TeamMembership

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


class DatabaseTeamRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def add_member(self, org_id: str, team_id: str, user_id: str) -> TeamMembership:
        """Seat the user on the team; an existing seat is returned unchanged."""
        async with AsyncSession(self._engine) as session:
            stmt = select(TeamMembership).where(
                col(TeamMembership.org_id) == org_id,
                col(TeamMembership.team_id) == team_id,
                col(TeamMembership.user_id) == user_id,
            )
            existing = (await session.execute(stmt)).scalars().first()
            if existing is not None:
                return existing
            seat = TeamMembership(org_id=org_id, team_id=team_id, user_id=user_id)
            session.add(seat)
            await session.commit()
            await session.refresh(seat)
            logger.info("team_member_added", org_id=org_id, team_id=team_id, user_id=user_id)
            return seat

    async def remove_member(self, org_id: str, team_id: str, user_id: str) -> bool:
        async with AsyncSession(self._engine) as session:
            stmt = select(TeamMembership).where(
                col(TeamMembership.org_id) == org_id,
                col(TeamMembership.team_id) == team_id,
                col(TeamMembership.user_id) == user_id,
            )
            seats = (await session.execute(stmt)).scalars().all()
            for seat in seats:
                await session.delete(seat)
            await session.commit()
            if seats:
                logger.info(
                    "team_member_removed", org_id=org_id, team_id=team_id, user_id=user_id
                )
            return bool(seats)

    async def team_ids_for(self, user_id: str, org_id: str) -> tuple[str, ...]:
        """Sorted team ids of the user within one tenant."""
        async with AsyncSession(self._engine) as session:
            stmt = select(TeamMembership.team_id).where(
                col(TeamMembership.user_id) == user_id,
                col(TeamMembership.org_id) == org_id,
            )
            result = await session.execute(stmt)
            return tuple(sorted(set(result.scalars().all())))

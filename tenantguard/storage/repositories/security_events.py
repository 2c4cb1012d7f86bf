"""Security event sinks: insert-only history with windowed queries.

The in-memory sink is the default for single-process deployments and
tests; the database repository persists events to ``security_events``.
Neither exposes an update path: events are write-once.
"""

from __future__ import annotations

import json
import threading
from collections import Counter, deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantguard.models.database import SecurityEvent
from tenantguard.models.domain import SecurityEventRecord, SecurityMetrics
from tenantguard.types import RiskLevel, SecurityEventType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

_COLUMN_FIELDS = frozenset({"org_id", "user_id", "email", "ip_address"})


def _matches(record: SecurityEventRecord, match: dict[str, Any]) -> bool:
    return all(record.field(key) == value for key, value in match.items())


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _build_metrics(records: list[SecurityEventRecord], window_seconds: int) -> SecurityMetrics:
    by_type = Counter(r.event_type.value for r in records)
    by_risk = Counter(r.risk_level.value for r in records)
    ips = Counter(r.ip_address for r in records if r.ip_address)
    return SecurityMetrics(
        window_seconds=window_seconds,
        total_events=len(records),
        events_by_type=dict(by_type),
        events_by_risk_level=dict(by_risk),
        top_source_ips=[ip for ip, _ in ips.most_common(5)],
        failed_logins=by_type.get(SecurityEventType.LOGIN_FAILURE.value, 0),
        unauthorized_access_attempts=by_type.get(SecurityEventType.UNAUTHORIZED_ACCESS.value, 0),
        cross_tenant_access_attempts=by_type.get(SecurityEventType.CROSS_TENANT_ACCESS.value, 0),
    )


class InMemorySecurityEventSink:
    """Bounded in-process event history.

    Oldest events fall off once ``max_events`` is reached; detectors only
    look back over a short window so this is enough for a single process.
    """

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: deque[SecurityEventRecord] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    async def write(self, record: SecurityEventRecord) -> None:
        with self._lock:
            self._events.append(record)

    async def count(
        self,
        event_type: SecurityEventType,
        since: datetime,
        **match: Any,
    ) -> int:
        since = _aware_utc(since)
        with self._lock:
            snapshot = list(self._events)
        return sum(
            1
            for r in snapshot
            if r.event_type == event_type and r.timestamp >= since and _matches(r, match)
        )

    async def list_events(
        self,
        *,
        org_id: str | None = None,
        event_type: SecurityEventType | None = None,
        risk_level: RiskLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SecurityEventRecord]:
        with self._lock:
            snapshot = list(self._events)
        selected = [
            r
            for r in reversed(snapshot)
            if (org_id is None or r.org_id == org_id)
            and (event_type is None or r.event_type == event_type)
            and (risk_level is None or r.risk_level == risk_level)
        ]
        return selected[offset : offset + limit]

    async def metrics(
        self, since: datetime, window_seconds: int, org_id: str | None = None
    ) -> SecurityMetrics:
        since = _aware_utc(since)
        with self._lock:
            snapshot = list(self._events)
        records = [
            r for r in snapshot if r.timestamp >= since and (org_id is None or r.org_id == org_id)
        ]
        return _build_metrics(records, window_seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class DatabaseSecurityEventRepository:
    """Insert-only security event store backed by ``security_events``."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def write(self, record: SecurityEventRecord) -> None:
        async with AsyncSession(self._engine) as session:
            session.add(
                SecurityEvent(
                    id=record.event_id,
                    event_type=record.event_type.value,
                    risk_level=record.risk_level.value,
                    occurred_at=_naive_utc(record.timestamp),
                    org_id=record.org_id,
                    user_id=record.user_id,
                    email=record.email,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    payload_json=json.dumps(record.payload, default=str),
                )
            )
            await session.commit()

    async def count(
        self,
        event_type: SecurityEventType,
        since: datetime,
        **match: Any,
    ) -> int:
        column_match = {k: v for k, v in match.items() if k in _COLUMN_FIELDS}
        payload_match = {k: v for k, v in match.items() if k not in _COLUMN_FIELDS}

        async with AsyncSession(self._engine) as session:
            if not payload_match:
                stmt = select(func.count()).select_from(SecurityEvent)
                stmt = self._where(stmt, event_type, since, column_match)
                result = await session.execute(stmt)
                return int(result.scalar_one())

            stmt = select(SecurityEvent)
            stmt = self._where(stmt, event_type, since, column_match)
            rows = (await session.execute(stmt)).scalars().all()
            return sum(1 for row in rows if _matches(self._to_record(row), payload_match))

    async def list_events(
        self,
        *,
        org_id: str | None = None,
        event_type: SecurityEventType | None = None,
        risk_level: RiskLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SecurityEventRecord]:
        async with AsyncSession(self._engine) as session:
            stmt = select(SecurityEvent)
            if org_id is not None:
                stmt = stmt.where(col(SecurityEvent.org_id) == org_id)
            if event_type is not None:
                stmt = stmt.where(col(SecurityEvent.event_type) == event_type.value)
            if risk_level is not None:
                stmt = stmt.where(col(SecurityEvent.risk_level) == risk_level.value)
            stmt = stmt.order_by(col(SecurityEvent.occurred_at).desc()).offset(offset).limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_record(row) for row in rows]

    async def metrics(
        self, since: datetime, window_seconds: int, org_id: str | None = None
    ) -> SecurityMetrics:
        async with AsyncSession(self._engine) as session:
            stmt = select(SecurityEvent).where(
                col(SecurityEvent.occurred_at) >= _naive_utc(since)
            )
            if org_id is not None:
                stmt = stmt.where(col(SecurityEvent.org_id) == org_id)
            rows = (await session.execute(stmt)).scalars().all()
        return _build_metrics([self._to_record(row) for row in rows], window_seconds)

    @staticmethod
    def _where(
        stmt: Any, event_type: SecurityEventType, since: datetime, match: dict[str, Any]
    ) -> Any:
        stmt = stmt.where(
            col(SecurityEvent.event_type) == event_type.value,
            col(SecurityEvent.occurred_at) >= _naive_utc(since),
        )
        for key, value in match.items():
            stmt = stmt.where(getattr(SecurityEvent, key) == value)
        return stmt

    @staticmethod
    def _to_record(row: SecurityEvent) -> SecurityEventRecord:
        try:
            payload = json.loads(row.payload_json or "{}")
        except ValueError:
            logger.warning("security_event_payload_unreadable", event_id=row.id)
            payload = {}
        return SecurityEventRecord(
            event_id=row.id,
            event_type=SecurityEventType(row.event_type),
            risk_level=RiskLevel(row.risk_level),
            timestamp=_aware_utc(row.occurred_at),
            org_id=row.org_id,
            user_id=row.user_id,
            email=row.email,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            payload=payload,
        )

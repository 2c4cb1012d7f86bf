"""Pattern detectors run after each security event is written.

Detectors only read history through the sink. Each returns a ``Finding``
describing the suspicious activity; the audit service records it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from tenantguard.models.domain import SecurityEventRecord
from tenantguard.types import RiskLevel, SecurityEventType

BRUTE_FORCE_ATTACK = "brute_force_attack"
UNUSUAL_ACCESS_TIME = "unusual_access_time"
EXCESSIVE_TENANT_SWITCHING = "excessive_tenant_switching"


class EventHistory(Protocol):
    async def count(self, event_type: SecurityEventType, since: Any, **match: Any) -> int: ...


@dataclass(frozen=True, slots=True)
class Finding:
    activity_type: str
    risk_level: RiskLevel
    user_id: str | None = None
    ip_address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class Detector(Protocol):
    name: str

    async def inspect(
        self, record: SecurityEventRecord, history: EventHistory
    ) -> Finding | None: ...


class BruteForceDetector:
    """Login failures from one IP reaching ``threshold`` within the window.

    Fires when the count equals the threshold, so once per crossing.
    """

    name = "brute_force"

    def __init__(self, threshold: int = 10, window_seconds: int = 3600) -> None:
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)

    async def inspect(self, record: SecurityEventRecord, history: EventHistory) -> Finding | None:
        if record.event_type != SecurityEventType.LOGIN_FAILURE or not record.ip_address:
            return None
        failures = await history.count(
            SecurityEventType.LOGIN_FAILURE,
            record.timestamp - self.window,
            ip_address=record.ip_address,
        )
        if failures != self.threshold:
            return None
        return Finding(
            activity_type=BRUTE_FORCE_ATTACK,
            risk_level=RiskLevel.CRITICAL,
            ip_address=record.ip_address,
            details={
                "failure_count": failures,
                "time_window_seconds": int(self.window.total_seconds()),
            },
        )


class UnusualHourDetector:
    """Authenticated activity at night in the configured timezone, once per user per hour."""

    name = "unusual_hour"

    def __init__(self, timezone: str = "UTC", start_hour: int = 2, end_hour: int = 6) -> None:
        self.zone = ZoneInfo(timezone)
        self.start_hour = start_hour
        self.end_hour = end_hour

    async def inspect(self, record: SecurityEventRecord, history: EventHistory) -> Finding | None:
        if not record.user_id:
            return None
        local = record.timestamp.astimezone(self.zone)
        if not self.start_hour <= local.hour < self.end_hour:
            return None
        hour_start = local.replace(minute=0, second=0, microsecond=0)
        already = await history.count(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            hour_start,
            user_id=record.user_id,
            activity_type=UNUSUAL_ACCESS_TIME,
        )
        if already:
            return None
        return Finding(
            activity_type=UNUSUAL_ACCESS_TIME,
            risk_level=RiskLevel.MEDIUM,
            user_id=record.user_id,
            details={"access_hour": local.hour, "timezone": str(self.zone)},
        )


class ExcessiveSwitchingDetector:
    name = "excessive_switching"

    def __init__(self, threshold: int = 20, window_seconds: int = 3600) -> None:
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)

    async def inspect(self, record: SecurityEventRecord, history: EventHistory) -> Finding | None:
        if record.event_type != SecurityEventType.TENANT_SWITCH or not record.user_id:
            return None
        switches = await history.count(
            SecurityEventType.TENANT_SWITCH,
            record.timestamp - self.window,
            user_id=record.user_id,
        )
        if switches != self.threshold:
            return None
        return Finding(
            activity_type=EXCESSIVE_TENANT_SWITCHING,
            risk_level=RiskLevel.HIGH,
            user_id=record.user_id,
            details={
                "switch_count": switches,
                "time_window_seconds": int(self.window.total_seconds()),
            },
        )

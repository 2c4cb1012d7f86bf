"""Security audit service: structured, write-once security events.

Every write goes to the structured log and the event sink. High and
critical events also go to the alerter, and the pattern detectors run
last. Sink, alerter and detector failures are logged and swallowed: an
audit problem must never fail the operation that triggered it.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.audit.alerts import Alerter, LogAlerter, WebhookAlerter
from tenantguard.audit.detectors import (
    BruteForceDetector,
    Detector,
    ExcessiveSwitchingDetector,
    UnusualHourDetector,
)
from tenantguard.config.logging import SECURITY_LOGGER, SENSITIVE_FIELDS
from tenantguard.models.domain import SecurityEventRecord, SecurityMetrics
from tenantguard.types import RiskLevel, SecurityEventType

if TYPE_CHECKING:
    from tenantguard.config.settings import Settings
    from tenantguard.storage.repositories.security_events import InMemorySecurityEventSink

logger = structlog.get_logger(__name__)
security_logger = structlog.get_logger(SECURITY_LOGGER)

_MAX_PAYLOAD_BYTES = 10_240

_RECORD_FIELDS = ("org_id", "user_id", "email", "ip_address", "user_agent")

DEFAULT_RISK: dict[SecurityEventType, RiskLevel] = {
    SecurityEventType.LOGIN_SUCCESS: RiskLevel.LOW,
    SecurityEventType.LOGOUT: RiskLevel.LOW,
    SecurityEventType.PASSWORD_CHANGE: RiskLevel.MEDIUM,
    SecurityEventType.ACCOUNT_LOCKED: RiskLevel.HIGH,
    SecurityEventType.UNAUTHORIZED_ACCESS: RiskLevel.MEDIUM,
    SecurityEventType.PRIVILEGE_ESCALATION: RiskLevel.CRITICAL,
    SecurityEventType.PERMISSION_DENIED: RiskLevel.MEDIUM,
    SecurityEventType.TENANT_SWITCH: RiskLevel.LOW,
    SecurityEventType.CROSS_TENANT_ACCESS: RiskLevel.HIGH,
    SecurityEventType.TENANT_DATA_BREACH: RiskLevel.CRITICAL,
    SecurityEventType.SENSITIVE_DATA_ACCESS: RiskLevel.MEDIUM,
    SecurityEventType.DATA_EXPORT: RiskLevel.MEDIUM,
    SecurityEventType.BULK_OPERATION: RiskLevel.MEDIUM,
    SecurityEventType.SUSPICIOUS_ACTIVITY: RiskLevel.HIGH,
    SecurityEventType.INVALID_REQUEST: RiskLevel.LOW,
    SecurityEventType.ADMIN_ACTION: RiskLevel.MEDIUM,
    SecurityEventType.CONFIGURATION_CHANGE: RiskLevel.MEDIUM,
    SecurityEventType.USER_MANAGEMENT: RiskLevel.MEDIUM,
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def login_failure_risk(recent_failures: int) -> RiskLevel:
    if recent_failures <= 2:
        return RiskLevel.LOW
    if recent_failures <= 5:
        return RiskLevel.MEDIUM
    if recent_failures <= 10:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def rate_limit_risk(current_count: int, max_count: int) -> RiskLevel:
    if max_count <= 0:
        return RiskLevel.CRITICAL
    ratio = current_count / max_count
    if ratio <= 1.5:
        return RiskLevel.LOW
    if ratio <= 3.0:
        return RiskLevel.MEDIUM
    if ratio <= 5.0:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Strip sensitive keys, stringify what JSON cannot hold, cap the size."""
    kept = {k: v for k, v in payload.items() if k.lower() not in SENSITIVE_FIELDS}
    encoded = json.dumps(kept, default=str)
    if len(encoded) > _MAX_PAYLOAD_BYTES:
        return {"truncated": True, "preview": encoded[:_MAX_PAYLOAD_BYTES]}
    decoded: dict[str, Any] = json.loads(encoded)
    return decoded


def _id_of(obj: Any) -> str | None:
    return getattr(obj, "id", None) if obj is not None else None


class SecurityAuditService:
    def __init__(
        self,
        sink: InMemorySecurityEventSink | Any,
        *,
        alerter: Alerter | None = None,
        detectors: Sequence[Detector] | None = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utc_now,
        failure_window_seconds: int = 3600,
    ) -> None:
        self._sink = sink
        self._alerter = alerter if alerter is not None else LogAlerter()
        self._detectors = list(detectors) if detectors is not None else [
            BruteForceDetector(),
            UnusualHourDetector(),
            ExcessiveSwitchingDetector(),
        ]
        self._enabled = enabled
        self._clock = clock
        self._failure_window = timedelta(seconds=failure_window_seconds)

    @classmethod
    def from_settings(
        cls, settings: Settings, sink: Any, clock: Callable[[], datetime] = _utc_now
    ) -> SecurityAuditService:
        alerter: Alerter = (
            WebhookAlerter(settings.security_alert_webhook_url)
            if settings.security_alert_webhook_url
            else LogAlerter()
        )
        window = settings.detector_window_seconds
        return cls(
            sink,
            alerter=alerter,
            detectors=[
                BruteForceDetector(settings.brute_force_threshold, window),
                UnusualHourDetector(
                    settings.security_audit_timezone,
                    settings.unusual_hours_start,
                    settings.unusual_hours_end,
                ),
                ExcessiveSwitchingDetector(settings.tenant_switch_threshold, window),
            ],
            enabled=settings.security_audit_enabled,
            clock=clock,
            failure_window_seconds=window,
        )

    @property
    def sink(self) -> Any:
        return self._sink

    async def log_event(
        self,
        event_type: SecurityEventType | str,
        *,
        risk_level: RiskLevel | str | None = None,
        **fields: Any,
    ) -> SecurityEventRecord | None:
        """Record one event and run the side effects.

        Returns ``None`` when auditing is disabled or the event cannot be
        built; the latter still leaves a minimal log line behind.
        """
        if not self._enabled:
            return None

        try:
            record = await self._build(event_type, risk_level, fields)
        except (ValueError, TypeError) as exc:
            security_logger.warning(
                "security_event_malformed",
                event_type=str(event_type),
                error=str(exc),
            )
            return None

        security_logger.info(
            "security_event",
            event_id=record.event_id,
            event_type=record.event_type.value,
            risk_level=record.risk_level.value,
            org_id=record.org_id,
            user_id=record.user_id,
            ip_address=record.ip_address,
            **{f"payload_{k}": v for k, v in record.payload.items()},
        )

        try:
            await self._sink.write(record)
        except Exception:
            logger.exception("security_event_write_failed", event_id=record.event_id)

        if record.risk_level.alerts:
            try:
                await self._alerter.send(record)
            except Exception:
                logger.exception("security_alert_failed", event_id=record.event_id)

        if record.event_type != SecurityEventType.SUSPICIOUS_ACTIVITY:
            await self._run_detectors(record)

        return record

    async def _build(
        self,
        event_type: SecurityEventType | str,
        risk_level: RiskLevel | str | None,
        fields: dict[str, Any],
    ) -> SecurityEventRecord:
        if isinstance(event_type, str) and not isinstance(event_type, SecurityEventType):
            event_type = SecurityEventType(event_type.upper())
        record_fields = {name: fields.pop(name, None) for name in _RECORD_FIELDS}
        payload = sanitize_payload(fields)

        if risk_level is not None:
            risk = RiskLevel(str(risk_level).upper())
        else:
            risk = await self._computed_risk(event_type, record_fields, payload)

        return SecurityEventRecord(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            risk_level=risk,
            timestamp=self._clock(),
            payload=payload,
            **record_fields,
        )

    async def _computed_risk(
        self,
        event_type: SecurityEventType,
        record_fields: dict[str, Any],
        payload: dict[str, Any],
    ) -> RiskLevel:
        if event_type == SecurityEventType.LOGIN_FAILURE:
            return login_failure_risk(
                await self.recent_login_failures(
                    record_fields.get("email"), record_fields.get("ip_address")
                )
            )
        if event_type == SecurityEventType.RATE_LIMIT_EXCEEDED:
            return rate_limit_risk(
                int(payload.get("current_count", 0)), int(payload.get("max_count", 0))
            )
        return DEFAULT_RISK.get(event_type, RiskLevel.LOW)

    async def recent_login_failures(self, email: str | None, ip_address: str | None) -> int:
        """Failures in the last hour for the email or the IP, whichever is higher."""
        since = self._clock() - self._failure_window
        counts = [0]
        try:
            if email:
                counts.append(
                    await self._sink.count(SecurityEventType.LOGIN_FAILURE, since, email=email)
                )
            if ip_address:
                counts.append(
                    await self._sink.count(
                        SecurityEventType.LOGIN_FAILURE, since, ip_address=ip_address
                    )
                )
        except Exception:
            logger.exception("security_history_unavailable")
        return max(counts)

    async def _run_detectors(self, record: SecurityEventRecord) -> None:
        for detector in self._detectors:
            try:
                finding = await detector.inspect(record, self._sink)
                if finding is None:
                    continue
                await self.log_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    risk_level=finding.risk_level,
                    user_id=finding.user_id,
                    ip_address=finding.ip_address,
                    org_id=record.org_id,
                    activity_type=finding.activity_type,
                    trigger_event_id=record.event_id,
                    **finding.details,
                )
            except Exception:
                logger.exception(
                    "security_detector_failed",
                    detector=detector.name,
                    event_id=record.event_id,
                )

    # -- convenience loggers -------------------------------------------------

    async def log_login_success(self, user: Any, **meta: Any) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.LOGIN_SUCCESS,
            risk_level=RiskLevel.LOW,
            user_id=_id_of(user),
            email=getattr(user, "email", None),
            **meta,
        )

    async def log_login_failure(
        self, email: str | None, reason: str | None = None, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.LOGIN_FAILURE, email=email, reason=reason, **meta
        )

    async def log_unauthorized_access(
        self,
        *,
        user_id: str | None,
        resource_type: str,
        resource_id: str | None = None,
        action: str | None = None,
        **meta: Any,
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            risk_level=RiskLevel.MEDIUM,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            **meta,
        )

    async def log_tenant_switch(
        self, user: Any, from_tenant: Any, to_tenant: Any, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.TENANT_SWITCH,
            risk_level=RiskLevel.LOW,
            user_id=_id_of(user),
            email=getattr(user, "email", None),
            org_id=_id_of(to_tenant),
            from_tenant_id=_id_of(from_tenant),
            from_tenant_subdomain=getattr(from_tenant, "subdomain", None),
            to_tenant_id=_id_of(to_tenant),
            to_tenant_subdomain=getattr(to_tenant, "subdomain", None),
            **meta,
        )

    async def log_cross_tenant_access(
        self, user: Any, requested_tenant: Any, current: Any, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.CROSS_TENANT_ACCESS,
            risk_level=RiskLevel.HIGH,
            user_id=_id_of(user),
            email=getattr(user, "email", None),
            org_id=_id_of(current),
            requested_tenant_id=_id_of(requested_tenant),
            requested_tenant_subdomain=getattr(requested_tenant, "subdomain", None),
            current_tenant_id=_id_of(current),
            current_tenant_subdomain=getattr(current, "subdomain", None),
            **meta,
        )

    async def log_invalid_request(self, reason: str, **meta: Any) -> SecurityEventRecord | None:
        return await self.log_event(SecurityEventType.INVALID_REQUEST, reason=reason, **meta)

    async def log_sensitive_data_access(
        self, user: Any, data_type: str, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.SENSITIVE_DATA_ACCESS,
            risk_level=RiskLevel.MEDIUM,
            user_id=_id_of(user),
            email=getattr(user, "email", None),
            data_type=data_type,
            **meta,
        )

    async def log_rate_limit_exceeded(
        self, *, limit_type: str, current_count: int, max_count: int, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            limit_type=limit_type,
            current_count=current_count,
            max_count=max_count,
            **meta,
        )

    async def log_admin_action(
        self, admin_user: Any, action: str, target: Any, **meta: Any
    ) -> SecurityEventRecord | None:
        return await self.log_event(
            SecurityEventType.ADMIN_ACTION,
            risk_level=RiskLevel.MEDIUM,
            user_id=_id_of(admin_user),
            email=getattr(admin_user, "email", None),
            action=action,
            target_type=getattr(target, "resource_type", None) or type(target).__name__,
            target_id=_id_of(target),
            **meta,
        )

    # -- reporting -------------------------------------------------------------

    async def security_metrics(
        self, window_seconds: int = 86_400, org_id: str | None = None
    ) -> SecurityMetrics:
        since = self._clock() - timedelta(seconds=window_seconds)
        return await self._sink.metrics(since, window_seconds, org_id=org_id)

    async def recent_events(
        self,
        *,
        org_id: str | None = None,
        event_type: SecurityEventType | None = None,
        risk_level: RiskLevel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SecurityEventRecord]:
        return await self._sink.list_events(
            org_id=org_id,
            event_type=event_type,
            risk_level=risk_level,
            limit=limit,
            offset=offset,
        )

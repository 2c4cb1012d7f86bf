"""Inter-module data contracts (not persisted directly)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from tenantguard.types import (
    ContextState,
    HostKind,
    RiskLevel,
    SecurityEventType,
    SwitchFailure,
)


class HostResolution(BaseModel):
    model_config = {"frozen": True}

    kind: HostKind
    name: str

    @property
    def is_reserved(self) -> bool:
        return self.kind == HostKind.RESERVED


class TenantInfo(BaseModel):
    id: str
    name: str
    subdomain: str
    display_name: str
    plan: str
    user_role: str | None = None


class ContextSnapshot(BaseModel):
    """Read-only view of a request's tenant context for operational tooling."""

    host: str | None = None
    subdomain: str | None = None
    reserved: bool = False
    state: ContextState = ContextState.UNSET
    tenant_id: str | None = None
    tenant_subdomain: str | None = None
    principal_id: str | None = None
    principal_can_access: bool | None = None
    principal_role: str | None = None


class SwitchHistoryEntry(BaseModel):
    subdomain: str
    name: str
    switched_at: datetime


class SwitchResult(BaseModel):
    ok: bool
    error: SwitchFailure | None = None
    message: str = ""
    tenant: TenantInfo | None = None
    current_tenant: TenantInfo | None = None
    redirect_url: str | None = None

    def raise_for_error(self) -> None:
        """Raise the typed failure matching ``error``; no-op on success."""
        from tenantguard.exceptions import InvalidTenant, TenantNotFound, UnauthorizedSwitch

        if self.ok or self.error is None:
            return
        if self.error == SwitchFailure.TARGET_NOT_FOUND:
            raise TenantNotFound(self.message)
        if self.error == SwitchFailure.TARGET_INACTIVE:
            raise InvalidTenant(self.message)
        raise UnauthorizedSwitch(self.message)


class SecurityEventRecord(BaseModel):
    """A structured, write-once security event."""

    model_config = {"frozen": True}

    event_id: str
    event_type: SecurityEventType
    risk_level: RiskLevel
    timestamp: datetime
    org_id: str | None = None
    user_id: str | None = None
    email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def field(self, name: str) -> Any:
        """Look a value up on the record first, then in the payload."""
        if name in type(self).model_fields and name != "payload":
            return getattr(self, name)
        return self.payload.get(name)


class SecurityMetrics(BaseModel):
    window_seconds: int
    total_events: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
    events_by_risk_level: dict[str, int] = Field(default_factory=dict)
    top_source_ips: list[str] = Field(default_factory=list)
    failed_logins: int = 0
    unauthorized_access_attempts: int = 0
    cross_tenant_access_attempts: int = 0

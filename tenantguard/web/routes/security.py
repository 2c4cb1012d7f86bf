"""Security event query API routes (tenant admins only)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from tenantguard.tenancy.context import TenantContextManager
from tenantguard.types import RiskLevel, SecurityEventType
from tenantguard.web.dependencies import Services, get_context, get_services, require_tenant_admin

router = APIRouter(
    prefix="/api/security",
    tags=["security"],
    dependencies=[Depends(require_tenant_admin)],
)


@router.get("/events")
async def list_security_events(
    context: TenantContextManager = Depends(get_context),
    services: Services = Depends(get_services),
    event_type: SecurityEventType | None = None,
    risk_level: RiskLevel | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    """Newest security events of the current organization."""
    tenant = context.current()
    events = await services.audit.recent_events(
        org_id=tenant.id if tenant else None,
        event_type=event_type,
        risk_level=risk_level,
        limit=limit,
        offset=offset,
    )
    return [event.model_dump(mode="json") for event in events]


@router.get("/metrics")
async def security_metrics(
    context: TenantContextManager = Depends(get_context),
    services: Services = Depends(get_services),
    window_seconds: int = Query(default=86_400, ge=60, le=30 * 86_400),
) -> dict[str, Any]:
    tenant = context.current()
    metrics = await services.audit.security_metrics(
        window_seconds, org_id=tenant.id if tenant else None
    )
    return metrics.model_dump()

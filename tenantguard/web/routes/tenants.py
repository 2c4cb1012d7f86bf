"""Tenant switching API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tenantguard.models.database import User
from tenantguard.tenancy.context import TenantContextManager
from tenantguard.tenancy.switcher import TenantSwitcher
from tenantguard.types import SwitchFailure
from tenantguard.web.dependencies import (
    get_context,
    get_principal,
    get_switcher,
    request_meta,
)

router = APIRouter(prefix="/api", tags=["tenants"])

_FAILURE_STATUS = {
    SwitchFailure.TARGET_NOT_FOUND: 404,
    SwitchFailure.TARGET_INACTIVE: 403,
    SwitchFailure.UNAUTHORIZED: 403,
    SwitchFailure.ALREADY_CURRENT: 409,
}


class SwitchRequest(BaseModel):
    subdomain: str


@router.get("/tenants")
async def list_tenants(switcher: TenantSwitcher = Depends(get_switcher)) -> dict[str, Any]:
    """Tenants the principal can switch to, with the current one and recent history."""
    return await switcher.switcher_data()


@router.post("/tenants/switch")
async def switch_tenant(
    body: SwitchRequest,
    request: Request,
    switcher: TenantSwitcher = Depends(get_switcher),
) -> JSONResponse:
    result = await switcher.switch_to(body.subdomain, **request_meta(request))
    status = 200 if result.ok else _FAILURE_STATUS.get(result.error, 400)  # type: ignore[arg-type]
    return JSONResponse(result.model_dump(mode="json"), status_code=status)


@router.post("/tenants/leave")
async def leave_tenant(switcher: TenantSwitcher = Depends(get_switcher)) -> JSONResponse:
    result = switcher.leave_current()
    return JSONResponse(result.model_dump(mode="json"), status_code=200 if result.ok else 400)


@router.get("/context")
async def context_info(
    context: TenantContextManager = Depends(get_context),
    principal: User | None = Depends(get_principal),
) -> dict[str, Any]:
    return await context.context_info(principal)

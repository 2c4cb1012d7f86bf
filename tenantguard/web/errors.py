"""Mapping of tenantguard errors to JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantguard.exceptions import (
    AccessDenied,
    InvalidDelegation,
    InvalidTarget,
    InvalidTenant,
    MalformedAuthorizationRequest,
    RoleNotEditable,
    TenantGuardError,
    TenantNotFound,
    UnauthorizedSwitch,
)

_STATUS: list[tuple[type[TenantGuardError], int]] = [
    (TenantNotFound, 404),
    (InvalidTenant, 403),
    (AccessDenied, 403),
    (UnauthorizedSwitch, 403),
    (InvalidTarget, 400),
    (MalformedAuthorizationRequest, 400),
    (RoleNotEditable, 409),
    (InvalidDelegation, 422),
]


def status_for(exc: TenantGuardError) -> int:
    for exc_type, status in _STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


def error_response(exc: TenantGuardError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TenantGuardError)
    async def tenantguard_error_handler(_request: Request, exc: TenantGuardError) -> JSONResponse:
        return error_response(exc)

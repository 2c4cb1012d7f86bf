"""FastAPI dependency injection and the shared service container."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import Depends, HTTPException, Request

from tenantguard.audit.service import SecurityAuditService
from tenantguard.authz.administration import AccessAdministration
from tenantguard.authz.cache import PermissionCache
from tenantguard.authz.engine import PermissionEngine
from tenantguard.models.database import User
from tenantguard.storage.repositories.delegations import DatabaseDelegationRepository
from tenantguard.storage.repositories.memberships import DatabaseMembershipRepository
from tenantguard.storage.repositories.resource_permissions import (
    DatabaseResourcePermissionRepository,
)
from tenantguard.storage.repositories.roles import (
    DatabasePermissionRepository,
    DatabaseRoleRepository,
)
from tenantguard.storage.repositories.security_events import (
    DatabaseSecurityEventRepository,
    InMemorySecurityEventSink,
)
from tenantguard.storage.repositories.teams import DatabaseTeamRepository
from tenantguard.storage.repositories.tenants import (
    DatabaseTenantRepository,
    DatabaseUserRepository,
)
from tenantguard.tenancy.context import TenantContextManager
from tenantguard.tenancy.resolver import DomainResolver
from tenantguard.tenancy.switcher import TenantSwitcher
from tenantguard.web.session import SessionStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tenantguard.config.settings import Settings

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Process-wide collaborators; request state lives elsewhere."""

    settings: Settings
    resolver: DomainResolver
    tenants: DatabaseTenantRepository
    users: DatabaseUserRepository
    memberships: DatabaseMembershipRepository
    roles: DatabaseRoleRepository
    permissions: DatabasePermissionRepository
    delegations: DatabaseDelegationRepository
    teams: DatabaseTeamRepository
    resource_permissions: DatabaseResourcePermissionRepository
    cache: PermissionCache
    audit: SecurityAuditService
    engine: PermissionEngine
    administration: AccessAdministration
    sessions: SessionStore

    def context_manager(self) -> TenantContextManager:
        return TenantContextManager(self.resolver, self.tenants, self.engine)


def build_services(
    settings: Settings,
    db_engine: AsyncEngine,
    *,
    audit_clock: Callable[[], datetime] | None = None,
) -> Services:
    resolver = DomainResolver(
        settings.base_domain,
        reserved=settings.reserved_subdomains,
        use_https=settings.use_https,
    )
    tenants = DatabaseTenantRepository(db_engine)
    memberships = DatabaseMembershipRepository(db_engine)
    roles = DatabaseRoleRepository(db_engine)
    permissions = DatabasePermissionRepository(db_engine)
    delegations = DatabaseDelegationRepository(db_engine)
    teams = DatabaseTeamRepository(db_engine)
    resource_permissions = DatabaseResourcePermissionRepository(db_engine)

    sink: Any
    if settings.use_database:
        sink = DatabaseSecurityEventRepository(db_engine)
    else:
        sink = InMemorySecurityEventSink(settings.security_event_buffer_size)
    audit = SecurityAuditService.from_settings(
        settings, sink, clock=audit_clock or (lambda: datetime.now(UTC))
    )

    cache = PermissionCache(
        ttl_seconds=settings.permission_cache_ttl_seconds,
        enabled=settings.permission_cache_enabled,
    )
    engine = PermissionEngine(
        tenants=tenants,
        memberships=memberships,
        roles=roles,
        permissions=permissions,
        delegations=delegations,
        teams=teams,
        resource_permissions=resource_permissions,
        cache=cache,
        audit=audit,
    )
    administration = AccessAdministration(
        memberships=memberships,
        roles=roles,
        permissions=permissions,
        delegations=delegations,
        teams=teams,
        resource_permissions=resource_permissions,
        cache=cache,
        audit=audit,
    )
    return Services(
        settings=settings,
        resolver=resolver,
        tenants=tenants,
        users=DatabaseUserRepository(db_engine),
        memberships=memberships,
        roles=roles,
        permissions=permissions,
        delegations=delegations,
        teams=teams,
        resource_permissions=resource_permissions,
        cache=cache,
        audit=audit,
        engine=engine,
        administration=administration,
        sessions=SessionStore(settings.secret_key),
    )


def request_meta(request: Request) -> dict[str, Any]:
    """Request attributes attached to security events."""
    resolution = getattr(request.state, "tenant_context", None)
    subdomain = None
    if resolution is not None and resolution.resolution is not None:
        subdomain = resolution.resolution.name
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "subdomain": subdomain,
        "path": request.url.path,
        "method": request.method,
        "request_id": request.headers.get("x-request-id"),
    }


def get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


def get_context(request: Request) -> TenantContextManager:
    context = getattr(request.state, "tenant_context", None)
    if context is None:
        context = get_services(request).context_manager()
        request.state.tenant_context = context
    return context


def get_session_bag(request: Request) -> dict[str, Any]:
    return getattr(request.state, "session", None) or {}


async def get_principal(request: Request) -> User | None:
    return getattr(request.state, "principal", None)


async def require_principal(principal: User | None = Depends(get_principal)) -> User:
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


async def require_tenant_admin(
    principal: User = Depends(require_principal),
    context: TenantContextManager = Depends(get_context),
    services: Services = Depends(get_services),
) -> User:
    """Require an admin-level role in the bound tenant."""
    tenant = context.current()
    if tenant is None:
        raise HTTPException(status_code=400, detail="No organization selected")
    if not await services.engine.admin_of(principal, tenant):
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def get_switcher(
    request: Request,
    principal: User = Depends(require_principal),
    context: TenantContextManager = Depends(get_context),
    services: Services = Depends(get_services),
) -> TenantSwitcher:
    return TenantSwitcher(
        principal,
        get_session_bag(request),
        context=context,
        engine=services.engine,
        audit=services.audit,
        tenants=services.tenants,
        resolver=services.resolver,
        history_limit=services.settings.switch_history_limit,
    )

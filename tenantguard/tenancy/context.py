"""Request-scoped current-tenant binding.

The binding lives in a ``ContextVar``: each request (or asyncio task)
sees only its own tenant, and scoped overrides are restored on every exit
path.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.exceptions import AccessDenied, InvalidTenant, TenantNotFound
from tenantguard.models.database import Organization
from tenantguard.models.domain import ContextSnapshot, HostResolution, TenantInfo
from tenantguard.types import ContextState

if TYPE_CHECKING:
    from tenantguard.authz.engine import PermissionEngine
    from tenantguard.storage.repositories.tenants import DatabaseTenantRepository
    from tenantguard.tenancy.resolver import DomainResolver

logger = structlog.get_logger(__name__)

_current_tenant: ContextVar[Organization | None] = ContextVar("current_tenant", default=None)


def current_tenant() -> Organization | None:
    """The tenant bound to the running request or task, if any."""
    return _current_tenant.get()


def tenant_info(tenant: Organization, role: str | None = None) -> TenantInfo:
    return TenantInfo(
        id=tenant.id,
        name=tenant.name,
        subdomain=tenant.subdomain,
        display_name=tenant.display_name,
        plan=tenant.plan,
        user_role=role,
    )


class TenantContextManager:
    """Resolves and binds the tenant for one request.

    ``UNSET -> RESOLVING -> BOUND`` on success; ``RESOLVING -> REJECTED``
    when the host names a tenant that is missing, inactive, or closed to the
    principal. Reserved or absent subdomains leave the state ``UNSET``.
    """

    def __init__(
        self,
        resolver: DomainResolver,
        tenants: DatabaseTenantRepository,
        engine: PermissionEngine,
    ) -> None:
        self._resolver = resolver
        self._tenants = tenants
        self._engine = engine
        self._state = ContextState.UNSET
        self._host: str | None = None
        self._resolution: HostResolution | None = None
        self._principal_id: str | None = None
        self._principal_can_access: bool | None = None

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def resolution(self) -> HostResolution | None:
        return self._resolution

    async def establish(self, host: str | None, principal: Any = None) -> Organization | None:
        self._host = host
        self._state = ContextState.RESOLVING
        self._resolution = self._resolver.resolve(host)
        self._principal_id = getattr(principal, "id", principal) if principal else None
        self._principal_can_access = None

        if self._resolution is None or self._resolution.is_reserved:
            self._state = ContextState.UNSET
            return None

        subdomain = self._resolution.name
        tenant = await self._tenants.find_by_subdomain(subdomain)
        if tenant is None:
            self._reject("tenant_not_found", subdomain)
            raise TenantNotFound(f"No organization for subdomain '{subdomain}'")
        if not tenant.is_active():
            self._reject("tenant_inactive", subdomain)
            raise InvalidTenant(f"Organization '{subdomain}' is not active")

        if principal is not None:
            self._principal_can_access = await self._engine.can_access(principal, tenant)
            if not self._principal_can_access:
                self._reject("tenant_access_denied", subdomain)
                raise AccessDenied(f"No access to organization '{subdomain}'")

        self.bind(tenant)
        return tenant

    def bind(self, tenant: Organization) -> None:
        _current_tenant.set(tenant)
        self._state = ContextState.BOUND
        structlog.contextvars.bind_contextvars(org_id=tenant.id)
        logger.debug("tenant_bound", org_id=tenant.id, subdomain=tenant.subdomain)

    def clear(self) -> None:
        _current_tenant.set(None)
        self._state = ContextState.UNSET
        structlog.contextvars.unbind_contextvars("org_id")

    def current(self) -> Organization | None:
        return _current_tenant.get()

    def is_bound(self) -> bool:
        return _current_tenant.get() is not None

    @contextmanager
    def scoped(self, tenant: Organization | None) -> Iterator[Organization | None]:
        """Temporarily bind ``tenant``; the previous binding always comes back."""
        token = _current_tenant.set(tenant)
        try:
            yield tenant
        finally:
            _current_tenant.reset(token)

    async def with_tenant(
        self, tenant: Organization | None, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        with self.scoped(tenant):
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

    def snapshot(self) -> ContextSnapshot:
        """Observability only; never feed this into an authorization decision."""
        tenant = self.current()
        resolution = self._resolution
        return ContextSnapshot(
            host=self._host,
            subdomain=resolution.name if resolution else None,
            reserved=bool(resolution and resolution.is_reserved),
            state=self._state,
            tenant_id=tenant.id if tenant else None,
            tenant_subdomain=tenant.subdomain if tenant else None,
            principal_id=self._principal_id,
            principal_can_access=self._principal_can_access,
        )

    async def context_info(self, principal: Any = None) -> dict[str, Any]:
        tenant = self.current()
        info: dict[str, Any] = {
            "current_organization": None,
            "accessible_organizations_count": 0,
            "context": self.snapshot().model_dump(mode="json"),
        }
        if tenant is not None:
            role = await self._engine.role_in(principal, tenant) if principal else None
            info["current_organization"] = tenant_info(tenant, role).model_dump()
        principal_id = getattr(principal, "id", principal) if principal else None
        if principal_id:
            info["accessible_organizations_count"] = len(
                await self._tenants.list_accessible(principal_id)
            )
        return info

    def _reject(self, reason: str, subdomain: str) -> None:
        self._state = ContextState.REJECTED
        _current_tenant.set(None)
        logger.info("tenant_context_rejected", reason=reason, subdomain=subdomain)

"""Moving a signed-in principal between the tenants they belong to."""

from __future__ import annotations

from collections.abc import Callable, MutableMapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.exceptions import InvalidTarget
from tenantguard.models.database import Organization
from tenantguard.models.domain import SwitchHistoryEntry, SwitchResult, TenantInfo
from tenantguard.tenancy.context import tenant_info
from tenantguard.types import SwitchFailure

if TYPE_CHECKING:
    from tenantguard.audit.service import SecurityAuditService
    from tenantguard.authz.engine import PermissionEngine
    from tenantguard.storage.repositories.tenants import DatabaseTenantRepository
    from tenantguard.tenancy.context import TenantContextManager
    from tenantguard.tenancy.resolver import DomainResolver

logger = structlog.get_logger(__name__)

CURRENT_KEY = "current_organization_id"
RETURN_KEY = "return_organization"
LAST_ACCESSED_KEY = "last_accessed_organizations"
HISTORY_KEY = "organization_switch_history"

_LAST_ACCESSED_LIMIT = 20
MAX_HISTORY = 10


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TenantSwitcher:
    """Per-request switcher bound to one principal and their session bag.

    Every switch attempt that reaches an existing, active tenant is audited:
    success as ``TENANT_SWITCH``, refusal as ``CROSS_TENANT_ACCESS``.
    """

    def __init__(
        self,
        principal: Any,
        session: MutableMapping[str, Any],
        *,
        context: TenantContextManager,
        engine: PermissionEngine,
        audit: SecurityAuditService,
        tenants: DatabaseTenantRepository,
        resolver: DomainResolver,
        history_limit: int = MAX_HISTORY,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._principal = principal
        self._session = session
        self._context = context
        self._engine = engine
        self._audit = audit
        self._tenants = tenants
        self._resolver = resolver
        self._history_limit = max(1, min(history_limit, MAX_HISTORY))
        self._clock = clock

    @property
    def principal_id(self) -> str | None:
        return getattr(self._principal, "id", None)

    async def available_tenants(self) -> list[Organization]:
        if self.principal_id is None:
            return []
        return await self._tenants.list_accessible(self.principal_id)

    async def can_switch_to(self, target: str | Organization) -> bool:
        try:
            tenant = await self._resolve_target(target)
        except InvalidTarget:
            return False
        return tenant is not None and await self._engine.can_access(self._principal, tenant)

    async def switch_to(self, target: str | Organization, **request_meta: Any) -> SwitchResult:
        tenant = await self._resolve_target(target)
        current = self._context.current()

        if tenant is None:
            await self._audit.log_invalid_request(
                "switch_target_not_found",
                user_id=self.principal_id,
                target=target if isinstance(target, str) else target.subdomain,
                **request_meta,
            )
            return await self._failure(
                SwitchFailure.TARGET_NOT_FOUND, "Organization not found", current
            )

        if not tenant.is_active():
            await self._audit.log_invalid_request(
                "switch_target_inactive",
                user_id=self.principal_id,
                target=tenant.subdomain,
                **request_meta,
            )
            return await self._failure(
                SwitchFailure.TARGET_INACTIVE, "Organization is not active", current
            )

        if not await self._engine.can_access(self._principal, tenant):
            await self._audit.log_cross_tenant_access(
                self._principal, tenant, current, **request_meta
            )
            logger.warning(
                "tenant_switch_denied",
                user_id=self.principal_id,
                target=tenant.subdomain,
            )
            return await self._failure(
                SwitchFailure.UNAUTHORIZED, "No access to this organization", current
            )

        if current is not None and current.id == tenant.id:
            return await self._failure(
                SwitchFailure.ALREADY_CURRENT, "Already in this organization", current
            )

        self._context.bind(tenant)
        self._session[CURRENT_KEY] = tenant.id
        self._session.pop(RETURN_KEY, None)
        self._touch_last_accessed(tenant)
        self._record_history(tenant)

        await self._audit.log_tenant_switch(self._principal, current, tenant, **request_meta)
        logger.info(
            "tenant_switched",
            user_id=self.principal_id,
            from_subdomain=current.subdomain if current else None,
            to_subdomain=tenant.subdomain,
        )
        role = await self._engine.role_in(self._principal, tenant)
        return SwitchResult(
            ok=True,
            message=f"Switched to {tenant.display_name}",
            tenant=tenant_info(tenant, role),
            redirect_url=self._resolver.organization_url(tenant.subdomain),
        )

    def leave_current(self) -> SwitchResult:
        """Drop the binding without choosing another tenant."""
        current = self._context.current()
        if current is None:
            return SwitchResult(ok=False, message="No current organization")
        self._context.clear()
        self._session.pop(CURRENT_KEY, None)
        logger.info("tenant_left", user_id=self.principal_id, subdomain=current.subdomain)
        return SwitchResult(
            ok=True,
            message=f"Left {current.display_name}",
            redirect_url=self._resolver.auth_url("/organization_selection"),
        )

    def recent_switch_history(self, limit: int = 5) -> list[SwitchHistoryEntry]:
        history = self._session.get(HISTORY_KEY) or []
        entries: list[SwitchHistoryEntry] = []
        for raw in history[-limit:] if limit > 0 else []:
            try:
                entries.append(SwitchHistoryEntry.model_validate(raw))
            except ValueError:
                logger.warning("switch_history_entry_unreadable", entry=raw)
        return entries

    async def switcher_data(self) -> dict[str, Any]:
        current = self._context.current()
        last_accessed = self._session.get(LAST_ACCESSED_KEY) or {}
        organizations = []
        for tenant in await self.available_tenants():
            organizations.append(
                {
                    **tenant_info(
                        tenant, await self._engine.role_in(self._principal, tenant)
                    ).model_dump(),
                    "is_current": current is not None and tenant.id == current.id,
                    "url": self._resolver.organization_url(tenant.subdomain),
                    "member_count": await self._tenants.count_active_members(tenant.id),
                    "last_accessed": last_accessed.get(tenant.subdomain),
                }
            )
        current_info = await self._info(current)
        return {
            "current_organization": current_info.model_dump() if current_info else None,
            "available_organizations": organizations,
            "total_organizations": len(organizations),
            "switch_history": [
                entry.model_dump(mode="json") for entry in self.recent_switch_history()
            ],
        }

    async def quick_switch_options(self, limit: int = 5) -> list[dict[str, Any]]:
        current = self._context.current()
        return [
            {
                "subdomain": tenant.subdomain,
                "display_name": tenant.display_name,
                "role": await self._engine.role_in(self._principal, tenant),
                "is_current": current is not None and tenant.id == current.id,
                "url": self._resolver.organization_url(tenant.subdomain),
            }
            for tenant in (await self.available_tenants())[:limit]
        ]

    async def switch_statistics(self) -> dict[str, Any]:
        tenants = await self.available_tenants()
        owned = administered = 0
        for tenant in tenants:
            if await self._engine.owner_of(self._principal, tenant):
                owned += 1
            if await self._engine.admin_of(self._principal, tenant):
                administered += 1
        current = self._context.current()
        return {
            "total_organizations": len(tenants),
            "owned_organizations": owned,
            "administered_organizations": administered,
            "recent_switches": len(self.recent_switch_history(self._history_limit)),
            "current_role": await self._engine.role_in(self._principal, current)
            if current
            else None,
        }

    async def _resolve_target(self, target: Any) -> Organization | None:
        if isinstance(target, Organization):
            # Re-read so a stale instance cannot hide a deactivation
            return await self._tenants.get(target.id)
        if isinstance(target, str) and target.strip():
            return await self._tenants.find_by_subdomain(target.strip().lower())
        raise InvalidTarget(f"Invalid organization identifier: {target!r}")

    async def _failure(
        self, error: SwitchFailure, message: str, current: Organization | None
    ) -> SwitchResult:
        return SwitchResult(
            ok=False,
            error=error,
            message=message,
            current_tenant=await self._info(current),
        )

    async def _info(self, tenant: Organization | None) -> TenantInfo | None:
        if tenant is None:
            return None
        return tenant_info(tenant, await self._engine.role_in(self._principal, tenant))

    def _touch_last_accessed(self, tenant: Organization) -> None:
        last_accessed = dict(self._session.get(LAST_ACCESSED_KEY) or {})
        last_accessed[tenant.subdomain] = self._clock().isoformat()
        if len(last_accessed) > _LAST_ACCESSED_LIMIT:
            newest = sorted(last_accessed.items(), key=lambda item: item[1])
            last_accessed = dict(newest[-_LAST_ACCESSED_LIMIT:])
        self._session[LAST_ACCESSED_KEY] = last_accessed

    def _record_history(self, tenant: Organization) -> None:
        history = [
            entry
            for entry in self._session.get(HISTORY_KEY) or []
            if entry.get("subdomain") != tenant.subdomain
        ]
        history.append(
            {
                "subdomain": tenant.subdomain,
                "name": tenant.name,
                "switched_at": self._clock().isoformat(),
            }
        )
        self._session[HISTORY_KEY] = history[-self._history_limit :]

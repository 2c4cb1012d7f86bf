"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from tenantguard.audit.service import SecurityAuditService
from tenantguard.authz.administration import AccessAdministration
from tenantguard.authz.cache import PermissionCache
from tenantguard.authz.engine import PermissionEngine
from tenantguard.models.database import Organization, User
from tenantguard.storage.repositories.delegations import DatabaseDelegationRepository
from tenantguard.storage.repositories.memberships import DatabaseMembershipRepository
from tenantguard.storage.repositories.resource_permissions import (
    DatabaseResourcePermissionRepository,
)
from tenantguard.storage.repositories.roles import (
    DatabasePermissionRepository,
    DatabaseRoleRepository,
)
from tenantguard.storage.repositories.security_events import InMemorySecurityEventSink
from tenantguard.storage.repositories.teams import DatabaseTeamRepository
from tenantguard.storage.repositories.tenants import (
    DatabaseTenantRepository,
    DatabaseUserRepository,
)
from tenantguard.tenancy.resolver import DomainResolver

# Midday keeps the unusual-hour detector quiet unless a test moves the clock
NOON = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    import tenantguard.models.database  # noqa: F401

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@dataclass
class Repos:
    tenants: DatabaseTenantRepository
    users: DatabaseUserRepository
    memberships: DatabaseMembershipRepository
    roles: DatabaseRoleRepository
    permissions: DatabasePermissionRepository
    delegations: DatabaseDelegationRepository
    teams: DatabaseTeamRepository
    resource_permissions: DatabaseResourcePermissionRepository


@pytest.fixture()
def repos(async_engine) -> Repos:
    return Repos(
        tenants=DatabaseTenantRepository(async_engine),
        users=DatabaseUserRepository(async_engine),
        memberships=DatabaseMembershipRepository(async_engine),
        roles=DatabaseRoleRepository(async_engine),
        permissions=DatabasePermissionRepository(async_engine),
        delegations=DatabaseDelegationRepository(async_engine),
        teams=DatabaseTeamRepository(async_engine),
        resource_permissions=DatabaseResourcePermissionRepository(async_engine),
    )


@pytest.fixture()
def sink() -> InMemorySecurityEventSink:
    return InMemorySecurityEventSink()


@pytest.fixture()
def audit(sink) -> SecurityAuditService:
    return SecurityAuditService(sink, clock=lambda: NOON)


@pytest.fixture()
def cache() -> PermissionCache:
    return PermissionCache(ttl_seconds=300)


@pytest.fixture()
def engine(repos, cache, audit) -> PermissionEngine:
    return PermissionEngine(
        tenants=repos.tenants,
        memberships=repos.memberships,
        roles=repos.roles,
        permissions=repos.permissions,
        delegations=repos.delegations,
        teams=repos.teams,
        resource_permissions=repos.resource_permissions,
        cache=cache,
        audit=audit,
    )


@pytest.fixture()
def admin_service(repos, cache, audit) -> AccessAdministration:
    return AccessAdministration(
        memberships=repos.memberships,
        roles=repos.roles,
        permissions=repos.permissions,
        delegations=repos.delegations,
        teams=repos.teams,
        resource_permissions=repos.resource_permissions,
        cache=cache,
        audit=audit,
    )


@pytest.fixture()
def resolver() -> DomainResolver:
    return DomainResolver("creatia.local")


@dataclass
class World:
    acme: Organization
    globex: Organization
    dormant: Organization
    owner: User
    admin: User
    member: User
    viewer: User
    outsider: User


@pytest.fixture()
async def world(repos) -> World:
    """Two active tenants and one inactive, with one user per legacy role in acme."""
    acme = await repos.tenants.create("Acme", "acme", plan="pro")
    globex = await repos.tenants.create("Globex", "globex")
    dormant = await repos.tenants.create("Dormant", "dormant")
    await repos.tenants.set_active(dormant.id, False)
    dormant = await repos.tenants.get(dormant.id)

    owner = await repos.users.create("owner@acme.test", "Olive Owner")
    admin = await repos.users.create("admin@acme.test", "Adam Admin")
    member = await repos.users.create("member@acme.test", "Mia Member")
    viewer = await repos.users.create("viewer@acme.test", "Vic Viewer")
    outsider = await repos.users.create("outsider@globex.test", "Otto Outsider")

    await repos.memberships.create(acme.id, owner.id, role="owner")
    await repos.memberships.create(acme.id, admin.id, role="admin")
    await repos.memberships.create(acme.id, member.id, role="member")
    await repos.memberships.create(acme.id, viewer.id, role="viewer")
    await repos.memberships.create(globex.id, outsider.id, role="owner")
    await repos.memberships.create(globex.id, member.id, role="viewer")
    await repos.memberships.create(dormant.id, member.id, role="member")

    return World(
        acme=acme,
        globex=globex,
        dormant=dormant,
        owner=owner,
        admin=admin,
        member=member,
        viewer=viewer,
        outsider=outsider,
    )


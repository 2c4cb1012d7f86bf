from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantguard.config.settings import Settings
from tenantguard.types import SecurityEventType
from tenantguard.web.app import create_app
from tenantguard.web.session import SESSION_COOKIE


def _settings(**overrides) -> Settings:
    values = {
        "base_domain": "creatia.local",
        "secret_key": "test-secret",
        "rate_limit_max_requests": 1000,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def app(async_engine):
    return create_app(_settings(), async_engine)


@pytest.fixture()
def client_for(app):
    """Build a client addressing ``host``, signed in as ``user`` when given."""
    clients: list[AsyncClient] = []

    def factory(host: str = "creatia.local", user=None) -> AsyncClient:
        cookies = {}
        if user is not None:
            cookies[SESSION_COOKIE] = app.state.services.sessions.create_session(user.id)
        client = AsyncClient(
            transport=ASGITransport(app=app), base_url=f"http://{host}", cookies=cookies
        )
        clients.append(client)
        return client

    yield factory


async def _events(app, event_type):
    return await app.state.services.audit.recent_events(event_type=event_type, limit=500)


@pytest.mark.integration
class TestAppFactory:
    def test_app_creates_successfully(self, app) -> None:
        assert app is not None
        assert app.title == "tenantguard"

    @pytest.mark.asyncio
    async def test_health_endpoint(self, client_for) -> None:
        async with client_for() as client:
            resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"

    @pytest.mark.asyncio
    async def test_request_id_header(self, client_for) -> None:
        async with client_for() as client:
            resp = await client.get("/api/health")
            assert "x-request-id" in resp.headers
            resp = await client.get("/api/health", headers={"x-request-id": "req-123"})
            assert resp.headers["x-request-id"] == "req-123"

    @pytest.mark.asyncio
    async def test_404_for_unknown_route(self, client_for) -> None:
        async with client_for() as client:
            resp = await client.get("/api/nonexistent")
        assert resp.status_code == 404


@pytest.mark.integration
class TestTenantResolution:
    @pytest.mark.asyncio
    async def test_unknown_subdomain_is_404(self, client_for, world) -> None:
        async with client_for("nowhere.creatia.local") as client:
            resp = await client.get("/api/health")
        assert resp.status_code == 404
        assert resp.json()["error"] == "TenantNotFound"

    @pytest.mark.asyncio
    async def test_inactive_tenant_is_403(self, client_for, world) -> None:
        async with client_for("dormant.creatia.local", world.member) as client:
            resp = await client.get("/api/context")
        assert resp.status_code == 403
        assert resp.json()["error"] == "InvalidTenant"

    @pytest.mark.asyncio
    async def test_non_member_is_403(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.outsider) as client:
            resp = await client.get("/api/context")
        assert resp.status_code == 403
        assert resp.json()["error"] == "AccessDenied"

    @pytest.mark.asyncio
    async def test_member_sees_bound_tenant(self, client_for, world) -> None:
        async with client_for("acme.creatia.local:8000", world.member) as client:
            resp = await client.get("/api/context")
        assert resp.status_code == 200
        data = resp.json()
        assert data["current_organization"]["subdomain"] == "acme"
        assert data["current_organization"]["user_role"] == "member"
        assert data["accessible_organizations_count"] == 2
        assert data["context"]["state"] == "bound"

    @pytest.mark.asyncio
    async def test_reserved_host_is_tenant_agnostic(self, client_for, world) -> None:
        async with client_for("auth.creatia.local", world.member) as client:
            resp = await client.get("/api/context")
        assert resp.status_code == 200
        data = resp.json()
        assert data["current_organization"] is None
        assert data["context"]["reserved"] is True

    @pytest.mark.asyncio
    async def test_binding_does_not_leak_between_requests(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            await client.get("/api/context")
        async with client_for("creatia.local", world.member) as client:
            resp = await client.get("/api/context")
        assert resp.json()["current_organization"] is None


@pytest.mark.integration
class TestSwitchRoutes:
    @pytest.mark.asyncio
    async def test_switch_requires_principal(self, client_for, world) -> None:
        async with client_for("acme.creatia.local") as client:
            resp = await client.post("/api/tenants/switch", json={"subdomain": "globex"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_switch_success(self, app, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            resp = await client.post("/api/tenants/switch", json={"subdomain": "globex"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["redirect_url"] == "http://globex.creatia.local"

        (event,) = await _events(app, SecurityEventType.TENANT_SWITCH)
        assert event.payload["from_tenant_subdomain"] == "acme"
        assert event.payload["path"] == "/api/tenants/switch"

    @pytest.mark.asyncio
    async def test_switch_unauthorized(self, app, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.owner) as client:
            resp = await client.post("/api/tenants/switch", json={"subdomain": "globex"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "unauthorized"
        assert len(await _events(app, SecurityEventType.CROSS_TENANT_ACCESS)) == 1
        assert await _events(app, SecurityEventType.TENANT_SWITCH) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("subdomain", "status"), [("nowhere", 404), ("dormant", 403), ("acme", 409)]
    )
    async def test_switch_failures(self, client_for, world, subdomain, status) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            resp = await client.post("/api/tenants/switch", json={"subdomain": subdomain})
        assert resp.status_code == status

    @pytest.mark.asyncio
    async def test_switch_blank_target(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            resp = await client.post("/api/tenants/switch", json={"subdomain": " "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidTarget"

    @pytest.mark.asyncio
    async def test_list_tenants(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            await client.post("/api/tenants/switch", json={"subdomain": "globex"})
            resp = await client.get("/api/tenants")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_organizations"] == 2
        assert data["current_organization"]["subdomain"] == "acme"
        assert [entry["subdomain"] for entry in data["switch_history"]] == ["globex"]

    @pytest.mark.asyncio
    async def test_leave(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            resp = await client.post("/api/tenants/leave")
        assert resp.status_code == 200
        assert resp.json()["redirect_url"].startswith("http://auth.creatia.local")

    @pytest.mark.asyncio
    async def test_leave_without_tenant(self, client_for, world) -> None:
        async with client_for("creatia.local", world.member) as client:
            resp = await client.post("/api/tenants/leave")
        assert resp.status_code == 400


@pytest.mark.integration
class TestSecurityRoutes:
    @pytest.mark.asyncio
    async def test_admin_lists_tenant_events(self, app, client_for, world) -> None:
        audit = app.state.services.audit
        await audit.log_event(SecurityEventType.DATA_EXPORT, org_id=world.acme.id)
        await audit.log_event(SecurityEventType.DATA_EXPORT, org_id=world.globex.id)

        async with client_for("acme.creatia.local", world.admin) as client:
            resp = await client.get("/api/security/events", params={"event_type": "DATA_EXPORT"})
        assert resp.status_code == 200
        events = resp.json()
        assert [e["org_id"] for e in events] == [world.acme.id]

    @pytest.mark.asyncio
    async def test_metrics(self, app, client_for, world) -> None:
        await app.state.services.audit.log_login_failure(
            "x@acme.test", org_id=world.acme.id, ip_address="198.51.100.1"
        )
        async with client_for("acme.creatia.local", world.owner) as client:
            resp = await client.get("/api/security/metrics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["failed_logins"] == 1
        assert data["top_source_ips"] == ["198.51.100.1"]

    @pytest.mark.asyncio
    async def test_member_is_forbidden(self, client_for, world) -> None:
        async with client_for("acme.creatia.local", world.member) as client:
            resp = await client.get("/api/security/events")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_requires_bound_tenant(self, client_for, world) -> None:
        async with client_for("creatia.local", world.admin) as client:
            resp = await client.get("/api/security/metrics")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_anonymous_is_401(self, client_for, world) -> None:
        async with client_for("acme.creatia.local") as client:
            resp = await client.get("/api/security/events")
        assert resp.status_code == 401


@pytest.mark.integration
class TestRateLimit:
    @pytest.mark.asyncio
    async def test_refusal_is_audited(self, async_engine) -> None:
        app = create_app(_settings(rate_limit_max_requests=2), async_engine)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://creatia.local") as client:
            for _ in range(2):
                assert (await client.get("/api/health")).status_code == 200
            resp = await client.get("/api/health")

        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "60"
        (event,) = await _events(app, SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert event.payload["current_count"] == 3
        assert event.payload["max_count"] == 2
        assert event.ip_address == "127.0.0.1"

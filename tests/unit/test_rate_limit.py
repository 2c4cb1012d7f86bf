"""Per-IP sliding window limiter on the API prefix."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from tenantguard.types import RiskLevel, SecurityEventType
from tenantguard.web.middleware import RateLimitMiddleware


def _make_app(
    max_requests: int = 5,
    window_seconds: int = 60,
    prefix: str = "/api/",
    services: object | None = None,
) -> FastAPI:
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=max_requests,
        window_seconds=window_seconds,
        prefix=prefix,
    )
    if services is not None:
        app.state.services = services

    @app.get("/api/ping")
    async def api_ping() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/login")
    async def login_page() -> dict[str, str]:
        return {"status": "ok"}

    return app


def _client(app: FastAPI, ip: str = "127.0.0.1") -> AsyncClient:
    return AsyncClient(
        transport=ASGITransport(app=app, client=(ip, 4321)), base_url="http://creatia.local"
    )


@pytest.mark.unit
class TestConstructor:
    def test_defaults(self) -> None:
        middleware = RateLimitMiddleware(FastAPI())
        assert (middleware._max_requests, middleware._window, middleware._prefix) == (
            60,
            60,
            "/api/",
        )
        assert len(middleware._hits) == 0

    def test_custom(self) -> None:
        middleware = RateLimitMiddleware(
            FastAPI(), max_requests=10, window_seconds=30, prefix="/v1/"
        )
        assert middleware._max_requests == 10
        assert middleware._window == 30
        assert middleware._prefix == "/v1/"


@pytest.mark.unit
class TestLimiting:
    @pytest.mark.asyncio
    async def test_limit_is_inclusive(self) -> None:
        app = _make_app(max_requests=3)
        async with _client(app) as client:
            statuses = [(await client.get("/api/ping")).status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]

    @pytest.mark.asyncio
    async def test_refusal_shape(self) -> None:
        app = _make_app(max_requests=1, window_seconds=45)
        async with _client(app) as client:
            await client.get("/api/ping")
            resp = await client.get("/api/ping")
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "45"
        assert "detail" in resp.json()

    @pytest.mark.asyncio
    async def test_paths_outside_prefix_are_free(self) -> None:
        app = _make_app(max_requests=1)
        async with _client(app) as client:
            for _ in range(5):
                assert (await client.get("/login")).status_code == 200

    @pytest.mark.asyncio
    async def test_counted_per_ip(self) -> None:
        app = _make_app(max_requests=1)
        async with _client(app, "10.0.0.1") as first, _client(app, "10.0.0.2") as second:
            assert (await first.get("/api/ping")).status_code == 200
            assert (await second.get("/api/ping")).status_code == 200
            assert (await first.get("/api/ping")).status_code == 429

    @pytest.mark.asyncio
    async def test_zero_blocks_everything(self) -> None:
        app = _make_app(max_requests=0)
        async with _client(app) as client:
            assert (await client.get("/api/ping")).status_code == 429

    @pytest.mark.asyncio
    async def test_window_slides(self) -> None:
        app = _make_app(max_requests=2, window_seconds=1)
        # one monotonic() call per request; the third lands after both hits aged out
        with patch("tenantguard.web.middleware.time") as mock_time:
            mock_time.monotonic.side_effect = [0.0, 0.5, 2.0]
            async with _client(app) as client:
                statuses = [(await client.get("/api/ping")).status_code for _ in range(3)]
        assert statuses == [200, 200, 200]

    @pytest.mark.asyncio
    async def test_warning_logged(self) -> None:
        app = _make_app(max_requests=1)
        with patch("tenantguard.web.middleware.logger") as mock_logger:
            async with _client(app, "10.0.0.9") as client:
                await client.get("/api/ping")
                await client.get("/api/ping")
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.kwargs == {"ip": "10.0.0.9", "path": "/api/ping"}


@pytest.mark.unit
class TestAuditing:
    @pytest.mark.asyncio
    async def test_refusal_recorded(self, audit, sink) -> None:
        app = _make_app(max_requests=2, services=SimpleNamespace(audit=audit))
        async with _client(app, "203.0.113.7") as client:
            for _ in range(4):
                await client.get("/api/ping", headers={"user-agent": "bot/1.0"})

        events = await sink.list_events(event_type=SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert len(events) == 2
        latest = events[0]
        assert latest.ip_address == "203.0.113.7"
        assert latest.user_agent == "bot/1.0"
        assert latest.payload["limit_type"] == "api_requests_per_ip"
        assert latest.payload["path"] == "/api/ping"
        assert latest.payload["current_count"] == 4
        assert latest.risk_level == RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_no_audit_without_services(self) -> None:
        app = _make_app(max_requests=0)
        async with _client(app) as client:
            assert (await client.get("/api/ping")).status_code == 429

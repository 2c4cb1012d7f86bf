"""Starlette middleware: request ID injection, tenant context, rate limiting."""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from typing import TYPE_CHECKING

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from tenantguard.exceptions import TenantGuardError
from tenantguard.web.dependencies import get_services, request_meta
from tenantguard.web.errors import error_response
from tenantguard.web.session import SESSION_COOKIE

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

logger = structlog.get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Adds a unique X-Request-ID header to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Loads the principal and binds the host's tenant for the request.

    Tenant-agnostic hosts pass through unbound. The binding is cleared after
    the response on every path.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        services = get_services(request)
        bag = services.sessions.load(request.cookies.get(SESSION_COOKIE))
        principal = None
        if bag is not None:
            principal = await services.users.get_by_id(bag["user_id"])
            if principal is not None:
                structlog.contextvars.bind_contextvars(user_id=principal.id)
        request.state.session = bag
        request.state.principal = principal

        context = services.context_manager()
        request.state.tenant_context = context
        try:
            await context.establish(request.headers.get("host"), principal)
        except TenantGuardError as exc:
            logger.info(
                "tenant_context_refused",
                error=type(exc).__name__,
                host=request.headers.get("host"),
            )
            return error_response(exc)

        try:
            return await call_next(request)
        finally:
            context.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter per client IP for API endpoints.

    Limits requests per IP to `max_requests` within `window_seconds`.
    Each refusal is recorded as a ``RATE_LIMIT_EXCEEDED`` security event.
    """

    def __init__(
        self,
        app: object,
        max_requests: int = 60,
        window_seconds: int = 60,
        prefix: str = "/api/",
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_requests = max_requests
        self._window = window_seconds
        self._prefix = prefix
        self._hits: dict[str, list[float]] = defaultdict(list)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self._prefix):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()

        self._hits[client_ip] = [t for t in self._hits[client_ip] if now - t < self._window]
        self._hits[client_ip].append(now)
        current = len(self._hits[client_ip])

        if current > self._max_requests:
            logger.warning("rate_limit_exceeded", ip=client_ip, path=request.url.path)
            services = getattr(request.app.state, "services", None)
            if services is not None:
                await services.audit.log_rate_limit_exceeded(
                    limit_type="api_requests_per_ip",
                    current_count=current,
                    max_count=self._max_requests,
                    **request_meta(request),
                )
            return JSONResponse(
                {"detail": "Rate limit exceeded. Try again later."},
                status_code=429,
                headers={"Retry-After": str(self._window)},
            )

        return await call_next(request)

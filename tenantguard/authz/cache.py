"""Permission decision cache.

Entries are keyed by ``(tenant, principal, role fingerprint)`` so a role
reassignment lands on a fresh key by itself. A role's permission set can
change without its fingerprint changing, so callers must still invalidate
explicitly; the TTL is only a backstop. The cache is an optimization:
any backend failure falls through to the loader.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from tenantguard.authz.rules import Ability

logger = structlog.get_logger(__name__)

KEY_PREFIX = "permissions"


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...


class InMemoryCacheBackend:
    """Thread-safe key-value store with per-entry expiry.

    Expired entries are lazily cleaned on ``set`` and ``get``.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[Any, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._cleanup()
            self._store[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._store if k.startswith(prefix)]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _cleanup(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._store.items() if now >= exp]
        for k in expired:
            del self._store[k]


class PermissionCache:
    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_seconds: int = 300,
        enabled: bool = True,
    ) -> None:
        self._backend: CacheBackend = backend if backend is not None else InMemoryCacheBackend()
        self._ttl = ttl_seconds
        self._enabled = enabled
        # Bumped on invalidation so a load that raced an invalidation is not stored
        self._generations: dict[str, int] = {}
        self._gen_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def key(tenant_id: str, principal_id: str, fingerprint: str) -> str:
        return f"{KEY_PREFIX}:{tenant_id}:{principal_id}:{fingerprint}"

    async def fetch(
        self,
        tenant_id: str,
        principal_id: str,
        fingerprint: str,
        loader: Callable[[], Awaitable[Ability]],
    ) -> Ability:
        if not self._enabled:
            return await loader()

        key = self.key(tenant_id, principal_id, fingerprint)
        try:
            cached = self._backend.get(key)
        except Exception:
            logger.exception("permission_cache_read_failed", key=key)
            return await loader()
        if cached is not None:
            return cached

        generation = self._generation(tenant_id, principal_id)
        ability = await loader()
        if generation != self._generation(tenant_id, principal_id):
            logger.debug("permission_cache_store_skipped", key=key)
            return ability
        try:
            self._backend.set(key, ability, self._ttl)
        except Exception:
            logger.exception("permission_cache_write_failed", key=key)
        return ability

    def invalidate(self, tenant_id: str, principal_id: str) -> None:
        """Drop every cached decision set of one principal in one tenant."""
        self._bump(f"{tenant_id}:{principal_id}")
        self._delete_prefix(f"{KEY_PREFIX}:{tenant_id}:{principal_id}:")

    def invalidate_tenant(self, tenant_id: str) -> None:
        """Drop every cached decision set of a tenant (role permission changes)."""
        self._bump(f"{tenant_id}:*")
        self._delete_prefix(f"{KEY_PREFIX}:{tenant_id}:")

    def clear(self) -> None:
        self._bump("*")
        self._delete_prefix(f"{KEY_PREFIX}:")

    def _delete_prefix(self, prefix: str) -> None:
        try:
            removed = self._backend.delete_prefix(prefix)
        except Exception:
            logger.exception("permission_cache_invalidate_failed", prefix=prefix)
            return
        logger.debug("permission_cache_invalidated", prefix=prefix, removed=removed)

    def _bump(self, scope: str) -> None:
        with self._gen_lock:
            self._generations[scope] = self._generations.get(scope, 0) + 1

    def _generation(self, tenant_id: str, principal_id: str) -> tuple[int, int, int]:
        with self._gen_lock:
            return (
                self._generations.get(f"{tenant_id}:{principal_id}", 0),
                self._generations.get(f"{tenant_id}:*", 0),
                self._generations.get("*", 0),
            )

"""Unit tests for the permission decision cache."""

from unittest.mock import patch

import pytest

from tenantguard.authz.cache import InMemoryCacheBackend, PermissionCache
from tenantguard.authz.rules import Ability


def _ability(tenant_id: str = "t1", principal_id: str = "p1") -> Ability:
    return Ability(principal_id=principal_id, tenant_id=tenant_id)


class _Loader:
    def __init__(self, on_load=None) -> None:
        self.calls = 0
        self._on_load = on_load

    async def __call__(self) -> Ability:
        self.calls += 1
        if self._on_load is not None:
            self._on_load()
        return _ability()


class _BrokenBackend:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    def delete(self, key):
        raise ConnectionError("cache down")

    def delete_prefix(self, prefix):
        raise ConnectionError("cache down")


@pytest.mark.unit
class TestInMemoryCacheBackend:
    def test_set_and_get(self) -> None:
        backend = InMemoryCacheBackend()
        backend.set("k", "v", 60)
        assert backend.get("k") == "v"
        assert len(backend) == 1

    def test_expired_entry_is_gone(self) -> None:
        backend = InMemoryCacheBackend()
        with patch("tenantguard.authz.cache.time") as mock_time:
            mock_time.monotonic.return_value = 100.0
            backend.set("k", "v", 10)
            mock_time.monotonic.return_value = 111.0
            assert backend.get("k") is None

    def test_delete_prefix(self) -> None:
        backend = InMemoryCacheBackend()
        backend.set("permissions:t1:a:x", 1, 60)
        backend.set("permissions:t1:b:x", 2, 60)
        backend.set("permissions:t2:a:x", 3, 60)
        assert backend.delete_prefix("permissions:t1:") == 2
        assert backend.get("permissions:t2:a:x") == 3


@pytest.mark.unit
class TestPermissionCache:
    def test_key_layout(self) -> None:
        assert PermissionCache.key("t1", "p1", "admin") == "permissions:t1:p1:admin"

    @pytest.mark.asyncio
    async def test_second_fetch_hits_cache(self) -> None:
        cache = PermissionCache()
        loader = _Loader()
        first = await cache.fetch("t1", "p1", "member", loader)
        second = await cache.fetch("t1", "p1", "member", loader)
        assert loader.calls == 1
        assert first is second

    @pytest.mark.asyncio
    async def test_fingerprint_change_misses(self) -> None:
        cache = PermissionCache()
        loader = _Loader()
        await cache.fetch("t1", "p1", "member", loader)
        await cache.fetch("t1", "p1", "admin", loader)
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_disabled_cache_always_loads(self) -> None:
        cache = PermissionCache(enabled=False)
        loader = _Loader()
        await cache.fetch("t1", "p1", "member", loader)
        await cache.fetch("t1", "p1", "member", loader)
        assert loader.calls == 2
        assert cache.enabled is False

    @pytest.mark.asyncio
    async def test_invalidate_principal(self) -> None:
        cache = PermissionCache()
        mine, theirs = _Loader(), _Loader()
        await cache.fetch("t1", "p1", "member", mine)
        await cache.fetch("t1", "p2", "member", theirs)
        cache.invalidate("t1", "p1")
        await cache.fetch("t1", "p1", "member", mine)
        await cache.fetch("t1", "p2", "member", theirs)
        assert mine.calls == 2
        assert theirs.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_tenant(self) -> None:
        cache = PermissionCache()
        here, elsewhere = _Loader(), _Loader()
        await cache.fetch("t1", "p1", "member", here)
        await cache.fetch("t2", "p1", "member", elsewhere)
        cache.invalidate_tenant("t1")
        await cache.fetch("t1", "p1", "member", here)
        await cache.fetch("t2", "p1", "member", elsewhere)
        assert here.calls == 2
        assert elsewhere.calls == 1

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        cache = PermissionCache()
        loader = _Loader()
        await cache.fetch("t1", "p1", "member", loader)
        cache.clear()
        await cache.fetch("t1", "p1", "member", loader)
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_load_racing_invalidation_is_not_stored(self) -> None:
        cache = PermissionCache()
        racing = _Loader(on_load=lambda: cache.invalidate("t1", "p1"))
        await cache.fetch("t1", "p1", "member", racing)

        follow_up = _Loader()
        await cache.fetch("t1", "p1", "member", follow_up)
        assert follow_up.calls == 1

    @pytest.mark.asyncio
    async def test_load_racing_tenant_invalidation_is_not_stored(self) -> None:
        cache = PermissionCache()
        racing = _Loader(on_load=lambda: cache.invalidate_tenant("t1"))
        await cache.fetch("t1", "p1", "member", racing)

        follow_up = _Loader()
        await cache.fetch("t1", "p1", "member", follow_up)
        assert follow_up.calls == 1

    @pytest.mark.asyncio
    async def test_backend_failure_falls_through_to_loader(self) -> None:
        cache = PermissionCache(backend=_BrokenBackend())
        loader = _Loader()
        ability = await cache.fetch("t1", "p1", "member", loader)
        assert ability.tenant_id == "t1"
        await cache.fetch("t1", "p1", "member", loader)
        assert loader.calls == 2

    def test_invalidation_survives_backend_failure(self) -> None:
        cache = PermissionCache(backend=_BrokenBackend())
        cache.invalidate("t1", "p1")
        cache.invalidate_tenant("t1")
        cache.clear()

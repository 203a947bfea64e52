"""Tests for tier2_reliability modules."""
from __future__ import annotations

import asyncio

import pytest

from schemabus.tier0_core.errors import InvalidSchemaError, NotFoundError, RegistryError
from schemabus.tier2_reliability.cache import SchemaCache
from schemabus.tier4_advanced.schemas import InMemorySchemaRegistry


class SlowRegistry(InMemorySchemaRegistry):
    """Yields to the loop on every lookup so concurrent misses overlap."""

    async def resolve_global_id(self, artifact_id: str) -> int:
        await asyncio.sleep(0.01)
        return await super().resolve_global_id(artifact_id)

    async def fetch_schema(self, global_id: int):
        await asyncio.sleep(0.01)
        return await super().fetch_schema(global_id)


class TestSchemaCache:
    @pytest.mark.asyncio
    async def test_resolves_once(self, registry):
        cache = SchemaCache(registry)
        assert await cache.global_id("user-created") == 7
        assert await cache.global_id("user-created") == 7
        assert registry.calls["resolve_global_id"] == 1
        assert "user-created" in cache

    @pytest.mark.asyncio
    async def test_invalidate_re_resolves(self, registry, user_created_schema):
        cache = SchemaCache(registry)
        assert await cache.global_id("user-created") == 7

        registry.add("user-created", {**user_created_schema, "title": "v2"}, global_id=8)
        assert await cache.global_id("user-created") == 7

        cache.invalidate("user-created")
        assert "user-created" not in cache
        assert await cache.global_id("user-created") == 8
        assert registry.calls["resolve_global_id"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_all(self, registry):
        cache = SchemaCache(registry)
        await cache.global_id("user-created")
        cache.invalidate()
        await cache.global_id("user-created")
        assert registry.calls["resolve_global_id"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_lookup(self, user_created_schema):
        registry = SlowRegistry()
        registry.add("user-created", user_created_schema, global_id=7)
        cache = SchemaCache(registry)

        ids = await asyncio.gather(*(cache.global_id("user-created") for _ in range(10)))
        validators = await asyncio.gather(*(cache.validator(7) for _ in range(10)))

        assert ids == [7] * 10
        assert all(v is validators[0] for v in validators)
        assert registry.calls["resolve_global_id"] == 1
        assert registry.calls["fetch_schema"] == 1

    @pytest.mark.asyncio
    async def test_validator_is_shared_per_global_id(self, registry):
        cache = SchemaCache(registry)
        first = await cache.validator(7)
        second = await cache.validator(7)
        assert first is second
        assert first.global_id == 7
        assert registry.calls["fetch_schema"] == 1

    @pytest.mark.asyncio
    async def test_invalidate_keeps_compiled_validators(self, registry):
        cache = SchemaCache(registry)
        await cache.validator(7)
        cache.invalidate()
        await cache.validator(7)
        assert registry.calls["fetch_schema"] == 1

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self, registry):
        cache = SchemaCache(registry)
        await cache.validator(7)
        cache.clear()
        await cache.validator(7)
        assert registry.calls["fetch_schema"] == 2

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self, registry, user_created_schema):
        cache = SchemaCache(registry)
        with pytest.raises(NotFoundError):
            await cache.global_id("order-placed")

        registry.add("order-placed", user_created_schema)
        assert await cache.global_id("order-placed") == 8

    @pytest.mark.asyncio
    async def test_unknown_global_id(self, registry):
        cache = SchemaCache(registry)
        with pytest.raises(RegistryError) as exc_info:
            await cache.validator(99)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_unusable_schema(self, registry):
        registry.add("broken", {"type": 12}, global_id=40)
        cache = SchemaCache(registry)
        with pytest.raises(InvalidSchemaError):
            await cache.validator(40)

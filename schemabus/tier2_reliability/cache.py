"""
schemabus.tier2_reliability.cache
──────────────────────────────────
Read-through schema cache: artifact → global id, global id → schema
document, global id → compiled validator. Stampede protection via a mutex
per key on cache miss.

Global ids are immutable in the registry, so id-keyed entries never go
stale. Only the artifact → id table changes meaning over time (a new version
gets registered); invalidate() clears it.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Hashable, TypeVar

from schemabus.tier0_core.logging import get_logger
from schemabus.tier1_runtime.validate import SchemaValidator, compile_validator

T = TypeVar("T")

log = get_logger(__name__)


class SchemaCache:
    """
    Per-owner memo tables in front of a schema registry.

    Usage::

        cache = SchemaCache(registry)
        global_id = await cache.global_id("user-created")
        validator = await cache.validator(global_id)
    """

    def __init__(self, registry: Any) -> None:
        self._registry = registry
        self._ids: dict[str, int] = {}
        self._schemas: dict[int, dict[str, Any]] = {}
        self._validators: dict[int, SchemaValidator] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _get_or_set(
        self,
        table: dict,
        key: Hashable,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        if key in table:
            return table[key]
        async with self._lock_for((id(table), key)):
            if key in table:
                return table[key]
            value = await fn()
            table[key] = value
            return value

    async def global_id(self, artifact_id: str) -> int:
        """Latest global id for an artifact. Raises NotFoundError / RegistryError."""
        async def resolve() -> int:
            global_id = await self._registry.resolve_global_id(artifact_id)
            log.debug("schema_cache.resolved", artifact_id=artifact_id, global_id=global_id)
            return global_id

        return await self._get_or_set(self._ids, artifact_id, resolve)

    async def schema(self, global_id: int) -> dict[str, Any]:
        """Schema document for a global id. Raises RegistryError."""
        return await self._get_or_set(
            self._schemas, global_id, lambda: self._registry.fetch_schema(global_id)
        )

    async def validator(self, global_id: int) -> SchemaValidator:
        """Compiled validator for a global id. Raises RegistryError / InvalidSchemaError."""
        async def build() -> SchemaValidator:
            schema = await self.schema(global_id)
            validator = compile_validator(schema, global_id=global_id)
            log.debug("schema_cache.compiled", global_id=global_id)
            return validator

        return await self._get_or_set(self._validators, global_id, build)

    def invalidate(self, artifact_id: str | None = None) -> None:
        """
        Forget the resolved id for one artifact, or for all artifacts when
        ``artifact_id`` is None. The next lookup goes back to the registry.
        """
        if artifact_id is None:
            self._ids.clear()
        else:
            self._ids.pop(artifact_id, None)
        log.debug("schema_cache.invalidated", artifact_id=artifact_id)

    def clear(self) -> None:
        """Drop every table, compiled validators included."""
        self._ids.clear()
        self._schemas.clear()
        self._validators.clear()
        self._locks.clear()

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._ids


__all__ = ["SchemaCache"]

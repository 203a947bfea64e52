"""
schemabus.tier4_advanced.schemas
─────────────────────────────────
Schema registry protocol, plus an in-memory registry for tests and local
dev. Production code talks to Apicurio through
``schemabus.tier3_platform.registry.ApicurioRegistryClient``; both satisfy
the same async protocol, so Publisher and Subscriber never know which one
they hold.
"""
from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from schemabus.tier0_core.errors import InvalidSchemaError, NotFoundError, RegistryError
from schemabus.tier1_runtime.validate import compile_validator
from schemabus.tier3_platform.registry import CompatibilityLevel


@runtime_checkable
class SchemaRegistry(Protocol):
    async def resolve_global_id(self, artifact_id: str) -> int: ...
    async def fetch_schema(self, global_id: int) -> dict[str, Any]: ...
    async def register_or_update(self, artifact_id: str, content: str | dict[str, Any]) -> int: ...
    async def test_compatibility(self, artifact_id: str, proposed: str | dict[str, Any]) -> None: ...
    async def set_compatibility_rule(
        self, artifact_id: str, level: CompatibilityLevel | str = ...
    ) -> None: ...


@dataclass(frozen=True)
class SchemaVersion:
    artifact_id: str
    version: int
    global_id: int
    schema: dict[str, Any]


def _parse(content: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(content, dict):
        return content
    try:
        schema = json.loads(content)
    except json.JSONDecodeError as exc:
        raise InvalidSchemaError(
            user_message=f"Schema is not valid JSON: {exc.msg}"
        ) from exc
    if not isinstance(schema, dict):
        raise InvalidSchemaError(user_message="Schema must be a JSON object.")
    return schema


class InMemorySchemaRegistry:
    """
    In-memory schema registry for tests and local dev. NOT a compatibility
    checker: test_compatibility only verifies the proposal is a usable schema.

    ``calls`` counts every protocol call by operation name, so tests can
    assert how often a cache actually reached the registry.
    """

    def __init__(self, *, first_global_id: int = 1) -> None:
        self._versions: dict[str, list[SchemaVersion]] = {}
        self._by_global_id: dict[int, SchemaVersion] = {}
        self._rules: dict[str, CompatibilityLevel] = {}
        self._next_id = first_global_id
        self.calls: Counter[str] = Counter()

    def add(
        self, artifact_id: str, schema: dict[str, Any], *, global_id: int | None = None
    ) -> SchemaVersion:
        """Seed a new version directly, optionally pinning its global id."""
        if global_id is None:
            global_id = self._next_id
        if global_id in self._by_global_id:
            raise ValueError(f"global id {global_id} already assigned")
        self._next_id = max(self._next_id, global_id + 1)
        versions = self._versions.setdefault(artifact_id, [])
        entry = SchemaVersion(
            artifact_id=artifact_id,
            version=len(versions) + 1,
            global_id=global_id,
            schema=schema,
        )
        versions.append(entry)
        self._by_global_id[global_id] = entry
        return entry

    def latest(self, artifact_id: str) -> SchemaVersion | None:
        versions = self._versions.get(artifact_id)
        return versions[-1] if versions else None

    def rule(self, artifact_id: str) -> CompatibilityLevel | None:
        return self._rules.get(artifact_id)

    async def resolve_global_id(self, artifact_id: str) -> int:
        self.calls["resolve_global_id"] += 1
        latest = self.latest(artifact_id)
        if latest is None:
            raise NotFoundError(
                user_message=f"Artifact {artifact_id!r} not found.",
                artifact_id=artifact_id,
            )
        return latest.global_id

    async def fetch_schema(self, global_id: int) -> dict[str, Any]:
        self.calls["fetch_schema"] += 1
        entry = self._by_global_id.get(global_id)
        if entry is None:
            raise RegistryError(
                "fetch schema failed",
                status=404,
                body=f"No content with global id {global_id}",
                global_id=global_id,
            )
        return entry.schema

    async def register_or_update(self, artifact_id: str, content: str | dict[str, Any]) -> int:
        self.calls["register_or_update"] += 1
        schema = _parse(content)
        for entry in self._versions.get(artifact_id, []):
            if entry.schema == schema:
                return entry.global_id
        return self.add(artifact_id, schema).global_id

    async def test_compatibility(self, artifact_id: str, proposed: str | dict[str, Any]) -> None:
        self.calls["test_compatibility"] += 1
        compile_validator(_parse(proposed))

    async def set_compatibility_rule(
        self,
        artifact_id: str,
        level: CompatibilityLevel | str = CompatibilityLevel.FORWARD,
    ) -> None:
        self.calls["set_compatibility_rule"] += 1
        self._rules[artifact_id] = CompatibilityLevel.parse(level)


__all__ = ["SchemaRegistry", "SchemaVersion", "InMemorySchemaRegistry"]

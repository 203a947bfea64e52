"""Tests for tier3_platform modules. Registry HTTP is faked with httpx.MockTransport."""
from __future__ import annotations

import base64
import json

import httpx
import pytest

from schemabus.tier0_core.config import load_config
from schemabus.tier0_core.errors import (
    IncompatibleSchemaError,
    InvalidSchemaError,
    NotFoundError,
    RegistryError,
)
from schemabus.tier3_platform import registry as registry_module
from schemabus.tier3_platform.registry import ApicurioRegistryClient, CompatibilityLevel

BASE = "http://registry.test"
API = f"{BASE}/apis/registry/v3"
ARTIFACTS = f"{API}/groups/default/artifacts"


class FakeApicurio:
    """Records requests and answers from a route table of (method, path) → response."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response | Exception]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get((request.method, request.url.path))
        if answer is None:
            return httpx.Response(404, json={"detail": "no route"})
        if isinstance(answer, Exception):
            raise answer
        return answer

    def client(self, **kwargs) -> ApicurioRegistryClient:
        return ApicurioRegistryClient(BASE, transport=httpx.MockTransport(self), **kwargs)


def _path(url: str) -> str:
    return httpx.URL(url).path


LATEST = _path(f"{ARTIFACTS}/user-created/versions/branch=latest")


# ── compatibility levels ───────────────────────────────────────────────────

class TestCompatibilityLevel:
    def test_parse_case_insensitive(self):
        assert CompatibilityLevel.parse("forward") is CompatibilityLevel.FORWARD
        assert CompatibilityLevel.parse(CompatibilityLevel.FULL) is CompatibilityLevel.FULL

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="BACKWARD, FORWARD, FULL"):
            CompatibilityLevel.parse("SIDEWAYS")


# ── lookups ────────────────────────────────────────────────────────────────

class TestResolveAndFetch:
    @pytest.mark.asyncio
    async def test_resolve_latest_global_id(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(200, json={"globalId": 7, "version": "1"})})
        async with fake.client() as registry:
            assert await registry.resolve_global_id("user-created") == 7
        assert str(fake.requests[0].url) == f"{ARTIFACTS}/user-created/versions/branch=latest"
        assert "authorization" not in fake.requests[0].headers

    @pytest.mark.asyncio
    async def test_bearer_token(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(200, json={"globalId": 7})})
        async with fake.client(token="t0k") as registry:
            await registry.resolve_global_id("user-created")
        assert fake.requests[0].headers["authorization"] == "Bearer t0k"

    @pytest.mark.asyncio
    async def test_basic_credentials(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(200, json={"globalId": 7})})
        async with fake.client(username="svc", password="pw") as registry:
            await registry.resolve_global_id("user-created")
        expected = base64.b64encode(b"svc:pw").decode("ascii")
        assert fake.requests[0].headers["authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_artifact_id_is_escaped(self):
        fake = FakeApicurio({})
        async with fake.client() as registry:
            with pytest.raises(NotFoundError):
                await registry.resolve_global_id("orders/placed")
        assert "orders%2Fplaced" in str(fake.requests[0].url)

    @pytest.mark.asyncio
    async def test_unknown_artifact(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(404, json={"detail": "nope"})})
        async with fake.client() as registry:
            with pytest.raises(NotFoundError) as exc_info:
                await registry.resolve_global_id("user-created")
        assert exc_info.value.metadata["artifact_id"] == "user-created"

    @pytest.mark.asyncio
    async def test_server_error(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(500, text="boom")})
        async with fake.client() as registry:
            with pytest.raises(RegistryError) as exc_info:
                await registry.resolve_global_id("user-created")
        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"

    @pytest.mark.asyncio
    async def test_metadata_without_global_id(self):
        fake = FakeApicurio({("GET", LATEST): httpx.Response(200, json={"version": "1"})})
        async with fake.client() as registry:
            with pytest.raises(RegistryError):
                await registry.resolve_global_id("user-created")

    @pytest.mark.asyncio
    async def test_fetch_schema(self, user_created_schema):
        fake = FakeApicurio({
            ("GET", _path(f"{API}/ids/globalIds/7")): httpx.Response(200, json=user_created_schema),
        })
        async with fake.client() as registry:
            assert await registry.fetch_schema(7) == user_created_schema

    @pytest.mark.asyncio
    async def test_fetch_unknown_id_is_registry_error(self):
        fake = FakeApicurio({})
        async with fake.client() as registry:
            with pytest.raises(RegistryError) as exc_info:
                await registry.fetch_schema(99)
        assert not isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_unreachable_registry(self):
        fake = FakeApicurio({("GET", LATEST): httpx.ConnectError("refused")})
        async with fake.client() as registry:
            with pytest.raises(RegistryError) as exc_info:
                await registry.resolve_global_id("user-created")
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_from_config(self, monkeypatch):
        monkeypatch.setenv("APICURIO_TOKEN", "cfg-token")
        monkeypatch.setenv("APICURIO_GROUP", "events")
        fake = FakeApicurio({})
        registry = ApicurioRegistryClient.from_config(
            load_config(_env_file=None), transport=httpx.MockTransport(fake)
        )
        async with registry:
            with pytest.raises(NotFoundError):
                await registry.resolve_global_id("user-created")
        request = fake.requests[0]
        assert "/groups/events/artifacts/" in str(request.url)
        assert request.headers["authorization"] == "Bearer cfg-token"


# ── registration and compatibility ─────────────────────────────────────────

class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_returns_version_global_id(self, user_created_schema):
        fake = FakeApicurio({
            ("POST", _path(ARTIFACTS)): httpx.Response(200, json={"version": {"globalId": 12}}),
        })
        async with fake.client() as registry:
            assert await registry.register_or_update("user-created", user_created_schema) == 12

        request = fake.requests[0]
        assert request.url.params["ifExists"] == "FIND_OR_CREATE_VERSION"
        body = json.loads(request.content)
        assert body["artifactId"] == "user-created"
        assert body["artifactType"] == "JSON"
        assert json.loads(body["firstVersion"]["content"]["content"]) == user_created_schema

    @pytest.mark.asyncio
    async def test_register_falls_back_to_latest(self):
        fake = FakeApicurio({
            ("POST", _path(ARTIFACTS)): httpx.Response(200, json={"artifact": {}}),
            ("GET", LATEST): httpx.Response(200, json={"globalId": 13}),
        })
        async with fake.client() as registry:
            assert await registry.register_or_update("user-created", '{"type": "object"}') == 13
        assert [r.method for r in fake.requests] == ["POST", "GET"]

    @pytest.mark.asyncio
    async def test_register_rejected(self):
        fake = FakeApicurio({("POST", _path(ARTIFACTS)): httpx.Response(400, text="bad")})
        async with fake.client() as registry:
            with pytest.raises(RegistryError) as exc_info:
                await registry.register_or_update("user-created", "{}")
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_dry_run_passes(self, user_created_schema):
        widened = {**user_created_schema, "properties": {
            **user_created_schema["properties"], "email": {"type": "string"},
        }}
        fake = FakeApicurio({
            ("GET", LATEST): httpx.Response(200, json={"globalId": 7}),
            ("GET", _path(f"{API}/ids/globalIds/7")): httpx.Response(200, json=user_created_schema),
            ("POST", _path(ARTIFACTS)): httpx.Response(200, json={"version": {"globalId": 8}}),
        })
        async with fake.client() as registry:
            await registry.test_compatibility("user-created", widened)

        post = fake.requests[-1]
        assert post.method == "POST"
        assert post.url.params["dryRun"] == "true"

    @pytest.mark.asyncio
    async def test_dry_run_reports_current_and_proposed(self, monkeypatch, user_created_schema):
        events: list[tuple[str, str, dict]] = []

        class RecordingLog:
            def __getattr__(self, level):
                return lambda event, **fields: events.append((level, event, fields))

        monkeypatch.setattr(registry_module, "log", RecordingLog())
        proposed = {"type": "object"}
        fake = FakeApicurio({
            ("GET", LATEST): httpx.Response(200, json={"globalId": 7}),
            ("GET", _path(f"{API}/ids/globalIds/7")): httpx.Response(200, json=user_created_schema),
            ("POST", _path(ARTIFACTS)): httpx.Response(200, json={"version": {"globalId": 8}}),
        })
        async with fake.client() as registry:
            await registry.test_compatibility("user-created", proposed)

        [(level, _, fields)] = [e for e in events if e[1] == "registry.compat_check"]
        assert level == "info"
        assert fields["current"] == user_created_schema
        assert fields["proposed"] == proposed

    @pytest.mark.asyncio
    async def test_dry_run_rejected(self):
        problem = {"title": "Incompatible", "causes": [{"description": "removed field", "context": "/id"}]}
        fake = FakeApicurio({("POST", _path(ARTIFACTS)): httpx.Response(409, json=problem)})
        async with fake.client() as registry:
            with pytest.raises(IncompatibleSchemaError) as exc_info:
                await registry.test_compatibility("user-created", '{"type": "object"}')
        assert exc_info.value.status == 409
        assert exc_info.value.causes == problem["causes"]

    @pytest.mark.asyncio
    async def test_dry_run_invalid_json(self):
        fake = FakeApicurio({})
        async with fake.client() as registry:
            with pytest.raises(InvalidSchemaError):
                await registry.test_compatibility("user-created", "{not json")
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_set_rule_updates_existing(self):
        rule = _path(f"{ARTIFACTS}/user-created/rules/COMPATIBILITY")
        fake = FakeApicurio({("PUT", rule): httpx.Response(200, json={"config": "FULL"})})
        async with fake.client() as registry:
            await registry.set_compatibility_rule("user-created", "full")
        assert len(fake.requests) == 1
        assert json.loads(fake.requests[0].content) == {"config": "FULL"}

    @pytest.mark.asyncio
    async def test_set_rule_creates_when_absent(self):
        rules = _path(f"{ARTIFACTS}/user-created/rules")
        fake = FakeApicurio({("POST", rules): httpx.Response(204)})
        async with fake.client() as registry:
            await registry.set_compatibility_rule("user-created")
        assert [r.method for r in fake.requests] == ["PUT", "POST"]
        assert json.loads(fake.requests[1].content) == {
            "ruleType": "COMPATIBILITY",
            "config": "FORWARD",
        }

    @pytest.mark.asyncio
    async def test_set_rule_failure(self):
        rule = _path(f"{ARTIFACTS}/user-created/rules/COMPATIBILITY")
        fake = FakeApicurio({("PUT", rule): httpx.Response(403, text="denied")})
        async with fake.client() as registry:
            with pytest.raises(RegistryError) as exc_info:
                await registry.set_compatibility_rule("user-created", CompatibilityLevel.BACKWARD)
        assert exc_info.value.status == 403

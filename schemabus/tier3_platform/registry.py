"""
schemabus.tier3_platform.registry
──────────────────────────────────
Async client for an Apicurio Registry (v3 REST API). Resolves artifacts to
immutable global ids, fetches schema documents, registers new versions,
dry-runs compatibility checks, and manages the COMPATIBILITY rule.

Backed by: httpx (async HTTP). Auth: bearer token or basic credentials.
"""
from __future__ import annotations

import base64
import enum
import json
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from schemabus.tier0_core.errors import (
    IncompatibleSchemaError,
    InvalidSchemaError,
    NotFoundError,
    RegistryError,
)
from schemabus.tier0_core.logging import get_logger

if TYPE_CHECKING:
    from schemabus.tier0_core.config import BusConfig

log = get_logger(__name__)

DEFAULT_API_PATH = "/apis/registry/v3"


class CompatibilityLevel(str, enum.Enum):
    BACKWARD = "BACKWARD"
    FORWARD = "FORWARD"
    FULL = "FULL"

    @classmethod
    def parse(cls, value: "CompatibilityLevel | str") -> "CompatibilityLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            allowed = ", ".join(level.value for level in cls)
            raise ValueError(
                f"Unknown compatibility level {value!r}. Expected one of: {allowed}"
            ) from None


def _segment(value: str | int) -> str:
    return quote(str(value), safe="")


def _schema_text(content: str | dict[str, Any]) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content)


class ApicurioRegistryClient:
    """
    Schema registry client.

    Usage::

        async with ApicurioRegistryClient("http://registry:8080", token="...") as registry:
            global_id = await registry.resolve_global_id("user-created")
            schema = await registry.fetch_schema(global_id)
    """

    def __init__(
        self,
        base_url: str,
        group_id: str = "default",
        *,
        token: str | None = None,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 10.0,
        api_path: str = DEFAULT_API_PATH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api = f"{self._base_url}/{api_path.strip('/')}"
        self._group = _segment(group_id)
        self._token = token
        self._username = username
        self._password = password
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: "BusConfig", **kwargs: Any) -> "ApicurioRegistryClient":
        return cls(
            config.registry_url,
            config.registry_group,
            token=config.registry_token.get_secret_value() if config.registry_token else None,
            username=config.registry_username,
            password=(
                config.registry_password.get_secret_value() if config.registry_password else None
            ),
            timeout=config.registry_timeout,
            **kwargs,
        )

    async def __aenter__(self) -> "ApicurioRegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── HTTP plumbing ─────────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        if self._username and self._password:
            creds = base64.b64encode(
                f"{self._username}:{self._password}".encode()
            ).decode("ascii")
            return {"Authorization": f"Basic {creds}"}
        return {}

    def _artifact_url(self, artifact_id: str) -> str:
        return f"{self._api}/groups/{self._group}/artifacts/{_segment(artifact_id)}"

    async def _request(
        self, method: str, url: str, context: str, **kwargs: Any
    ) -> httpx.Response:
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            log.error("registry.unreachable", context=context, url=url, error=str(exc))
            raise RegistryError(
                f"{context} failed: registry unreachable",
                detail=f"{context} failed: {exc}",
            ) from exc

    @staticmethod
    def _check(response: httpx.Response, context: str) -> httpx.Response:
        if response.is_success:
            return response
        log.warning(
            "registry.request_failed",
            context=context,
            status=response.status_code,
            body=response.text[:500],
        )
        raise RegistryError(
            f"{context} failed",
            status=response.status_code,
            body=response.text,
        )

    @staticmethod
    def _json(response: httpx.Response, context: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RegistryError(
                f"{context} returned a non-JSON body",
                status=response.status_code,
                body=response.text,
            ) from exc

    def _create_payload(self, artifact_id: str, content: str) -> dict[str, Any]:
        return {
            "artifactId": artifact_id,
            "artifactType": "JSON",
            "firstVersion": {
                "content": {
                    "content": content,
                    "contentType": "application/json",
                },
            },
        }

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def _latest_version(self, artifact_id: str) -> dict[str, Any] | None:
        context = "fetch latest version metadata"
        url = f"{self._artifact_url(artifact_id)}/versions/branch=latest"
        response = await self._request("GET", url, context)
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        return self._json(self._check(response, context), context)

    async def resolve_global_id(self, artifact_id: str) -> int:
        """
        Global id of the latest version of ``artifact_id``.
        Raises NotFoundError if the artifact has no version.
        """
        meta = await self._latest_version(artifact_id)
        if meta is None:
            raise NotFoundError(
                user_message=f"Artifact {artifact_id!r} not found.",
                artifact_id=artifact_id,
            )
        global_id = meta.get("globalId") if isinstance(meta, dict) else None
        if not isinstance(global_id, int):
            raise RegistryError(
                "fetch latest version metadata returned no globalId",
                body=json.dumps(meta),
                artifact_id=artifact_id,
            )
        return global_id

    async def fetch_schema(self, global_id: int) -> dict[str, Any]:
        """
        Schema document for an immutable global id. A 404 here is a hard
        RegistryError: the id was handed out by the registry itself.
        """
        context = "fetch schema"
        url = f"{self._api}/ids/globalIds/{_segment(global_id)}"
        response = self._check(
            await self._request("GET", url, context, headers={"Accept": "application/json"}),
            context,
        )
        schema = self._json(response, context)
        if not isinstance(schema, dict):
            raise RegistryError(
                f"{context} returned a non-object schema",
                status=response.status_code,
                body=response.text,
                global_id=global_id,
            )
        return schema

    # ── Registration ──────────────────────────────────────────────────────────

    async def register_or_update(
        self, artifact_id: str, content: str | dict[str, Any]
    ) -> int:
        """
        Create the artifact, or find/create a version with this exact content.
        Returns the global id of that version.
        """
        context = "register/update artifact"
        url = f"{self._api}/groups/{self._group}/artifacts"
        response = self._check(
            await self._request(
                "POST",
                url,
                context,
                params={"ifExists": "FIND_OR_CREATE_VERSION"},
                json=self._create_payload(artifact_id, _schema_text(content)),
            ),
            context,
        )
        data = self._json(response, context)
        global_id = (data.get("version") or {}).get("globalId") if isinstance(data, dict) else None
        if isinstance(global_id, int):
            log.info("registry.registered", artifact_id=artifact_id, global_id=global_id)
            return global_id
        return await self.resolve_global_id(artifact_id)

    async def test_compatibility(
        self, artifact_id: str, proposed: str | dict[str, Any]
    ) -> None:
        """
        Dry-run registration of ``proposed``. Nothing is persisted. Raises
        IncompatibleSchemaError when the registry's rules reject it.
        """
        content = _schema_text(proposed)
        try:
            proposed_schema = json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvalidSchemaError(
                user_message=f"Proposed schema is not valid JSON: {exc.msg}",
                artifact_id=artifact_id,
            ) from exc

        current_schema = None
        meta = await self._latest_version(artifact_id)
        if meta and isinstance(meta.get("globalId"), int):
            try:
                current_schema = await self.fetch_schema(meta["globalId"])
            except RegistryError:
                log.warning("registry.compat_current_unavailable", artifact_id=artifact_id)
        if current_schema is None:
            log.info("registry.compat_new_artifact", artifact_id=artifact_id)
        log.info(
            "registry.compat_check",
            artifact_id=artifact_id,
            current=current_schema,
            proposed=proposed_schema,
        )

        context = "compatibility test (dry-run)"
        url = f"{self._api}/groups/{self._group}/artifacts"
        response = await self._request(
            "POST",
            url,
            context,
            params={"ifExists": "FIND_OR_CREATE_VERSION", "dryRun": "true"},
            json=self._create_payload(artifact_id, content),
        )
        if response.status_code in (httpx.codes.CONFLICT, httpx.codes.UNPROCESSABLE_ENTITY):
            causes: list[dict] = []
            try:
                problem = response.json()
                if isinstance(problem, dict):
                    causes = list(problem.get("causes") or [])
            except ValueError:
                pass
            raise IncompatibleSchemaError(
                f"Schema for {artifact_id!r} rejected by compatibility rule",
                status=response.status_code,
                body=response.text,
                causes=causes,
                artifact_id=artifact_id,
            )
        self._check(response, context)
        log.info("registry.compat_passed", artifact_id=artifact_id)

    async def set_compatibility_rule(
        self,
        artifact_id: str,
        level: CompatibilityLevel | str = CompatibilityLevel.FORWARD,
    ) -> None:
        """Set the COMPATIBILITY rule for an artifact, creating it if absent."""
        level = CompatibilityLevel.parse(level)
        rules_url = f"{self._artifact_url(artifact_id)}/rules"

        response = await self._request(
            "PUT",
            f"{rules_url}/COMPATIBILITY",
            "set compatibility rule",
            json={"config": level.value},
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            context = "create compatibility rule"
            self._check(
                await self._request(
                    "POST",
                    rules_url,
                    context,
                    json={"ruleType": "COMPATIBILITY", "config": level.value},
                ),
                context,
            )
        else:
            self._check(response, "set compatibility rule")
        log.info("registry.compat_rule_set", artifact_id=artifact_id, level=level.value)


__all__ = ["ApicurioRegistryClient", "CompatibilityLevel", "DEFAULT_API_PATH"]

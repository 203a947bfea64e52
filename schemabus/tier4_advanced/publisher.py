"""
schemabus.tier4_advanced.publisher
───────────────────────────────────
Schema-validated publisher. Resolves the latest schema for an artifact,
validates the payload against it, stamps ``x-schema-id`` and hands the
message to the broker. An invalid payload is never sent.

Usage:
    publisher = Publisher(transport, registry)
    result = await publisher.publish("user-created", {"id": "u1", "name": "A"}, exchange="events")
    result.global_id   # → 7
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from schemabus.tier0_core.errors import ValidationError
from schemabus.tier0_core.logging import get_logger
from schemabus.tier1_runtime.serialize import encode_body, to_jsonable
from schemabus.tier2_reliability.cache import SchemaCache
from schemabus.tier4_advanced.messaging import (
    SCHEMA_ID_HEADER,
    BrokerTransport,
    Envelope,
    check_headers,
)
from schemabus.tier4_advanced.schemas import SchemaRegistry


@dataclass(frozen=True)
class PublishResult:
    """
    ``delivered`` is False when the broker pushed back (flow control). The
    message was not sent; retry or queue it locally.
    """
    delivered: bool
    global_id: int


class Publisher:
    def __init__(
        self,
        transport: BrokerTransport,
        registry: SchemaRegistry,
        *,
        validate: bool = True,
        name: str = "publisher",
        cache: SchemaCache | None = None,
    ) -> None:
        self._transport = transport
        self._cache = cache or SchemaCache(registry)
        self._validate = validate
        self.name = name
        self._log = get_logger(f"schemabus.{name}")

    @property
    def cache(self) -> SchemaCache:
        return self._cache

    def invalidate(self, artifact_id: str | None = None) -> None:
        """Re-resolve ``artifact_id`` (or every artifact) on the next publish."""
        self._cache.invalidate(artifact_id)

    async def publish(
        self,
        artifact_id: str,
        payload: BaseModel | dict | list | Any,
        *,
        exchange: str,
        headers: Mapping[str, str | int] | None = None,
        routing_key: str = "",
        message_id: str | None = None,
    ) -> PublishResult:
        """
        Validate and publish one payload.

        Raises NotFoundError / RegistryError if the schema cannot be resolved,
        ValidationError if the payload does not conform. Nothing is sent in
        either case.
        """
        self._log.debug("publish.start", artifact_id=artifact_id, exchange=exchange)
        global_id = await self._cache.global_id(artifact_id)

        data = to_jsonable(payload)
        if self._validate:
            validator = await self._cache.validator(global_id)
            try:
                validator.validate(data)
            except ValidationError as exc:
                self._log.warning(
                    "publish.rejected",
                    artifact_id=artifact_id,
                    global_id=global_id,
                    errors=exc.errors,
                )
                raise

        envelope = Envelope(
            body=encode_body(data),
            headers={**check_headers(headers or {}), SCHEMA_ID_HEADER: global_id},
            routing_key=routing_key,
            message_id=message_id,
        )
        delivered = await self._transport.publish(exchange, envelope)
        if delivered:
            self._log.info(
                "publish.sent", artifact_id=artifact_id, global_id=global_id, exchange=exchange
            )
        else:
            self._log.warning(
                "publish.backpressure", artifact_id=artifact_id, global_id=global_id, exchange=exchange
            )
        return PublishResult(delivered=delivered, global_id=global_id)


__all__ = ["Publisher", "PublishResult"]

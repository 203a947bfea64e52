"""
schemabus.tier4_advanced.subscriber
────────────────────────────────────
Schema-validated subscriber. Each delivery runs through its own pipeline:

    header → parse JSON → validate → handler → ack

Any failure along the way discards the message (nack, no requeue), which
routes it to the dead-letter exchange when the queue has one. Failures are
logged and never escape the delivery task, so one poisoned message cannot
stop the consumer.

Concurrency is bounded by ``prefetch``: the broker holds back deliveries
beyond it, and an in-flight semaphore enforces the same limit locally.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from schemabus.tier0_core.errors import MalformedMessageError, SchemaBusError, TransportError
from schemabus.tier0_core.logging import get_logger
from schemabus.tier1_runtime.context import DeliveryContext, delivery_context, set_schema_id
from schemabus.tier1_runtime.retry import retry_policy
from schemabus.tier1_runtime.serialize import decode_body
from schemabus.tier2_reliability.cache import SchemaCache
from schemabus.tier4_advanced.messaging import BrokerTransport, Delivery, parse_schema_id
from schemabus.tier4_advanced.schemas import SchemaRegistry

Handler = Callable[[Any, Delivery], "Awaitable[None] | None"]


class SubscriberState(str, enum.Enum):
    IDLE = "idle"
    CONSUMING = "consuming"
    STOPPED = "stopped"


class Subscriber:
    """
    Usage::

        subscriber = Subscriber(transport, registry, queue="events.q", prefetch=10)

        async def on_user_created(payload, delivery):
            ...

        await subscriber.start(on_user_created)
        ...
        await subscriber.stop()
    """

    def __init__(
        self,
        transport: BrokerTransport,
        registry: SchemaRegistry,
        *,
        queue: str,
        prefetch: int | None = None,
        validate: bool = True,
        name: str = "subscriber",
        cache: SchemaCache | None = None,
        handler_attempts: int = 1,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 10.0,
    ) -> None:
        if prefetch is not None and prefetch < 0:
            raise ValueError("prefetch must be >= 0")
        if handler_attempts < 1:
            raise ValueError("handler_attempts must be >= 1")
        self._transport = transport
        self._cache = cache or SchemaCache(registry)
        self._queue = queue
        self._prefetch = prefetch or None
        self._validate = validate
        self.name = name
        self._log = get_logger(f"schemabus.{name}")
        self._handler_attempts = handler_attempts
        self._retry_wait = (retry_min_wait, retry_max_wait)

        self._state = SubscriberState.IDLE
        self._consumer_tag: str | None = None
        self._slots = asyncio.Semaphore(self._prefetch) if self._prefetch else None
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def cache(self) -> SchemaCache:
        return self._cache

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, handler: Handler) -> None:
        """idle → consuming. Applies prefetch, then registers the consumer."""
        if self._state is not SubscriberState.IDLE:
            raise RuntimeError(f"{self.name} cannot start from state {self._state.value!r}")
        call = self._wrap(handler)

        async def on_delivery(delivery: Delivery) -> None:
            await self._on_delivery(delivery, call)

        self._consumer_tag = await self._transport.consume(self._queue, self._prefetch, on_delivery)
        self._state = SubscriberState.CONSUMING
        self._log.info(
            "subscriber.started",
            queue=self._queue,
            prefetch=self._prefetch,
            consumer_tag=self._consumer_tag,
        )

    async def stop(self) -> None:
        """
        consuming → stopped. Cancels the consumer so no new deliveries arrive,
        then waits for in-flight deliveries to settle on their own.
        """
        if self._state is not SubscriberState.CONSUMING:
            return
        self._state = SubscriberState.STOPPED
        if self._consumer_tag is not None:
            await self._transport.cancel(self._consumer_tag)
            self._consumer_tag = None
        await self._idle.wait()
        self._log.info("subscriber.stopped", queue=self._queue)

    # ── Per-delivery pipeline ─────────────────────────────────────────────────

    def _wrap(self, handler: Handler) -> Callable[[Any, Delivery], Awaitable[None]]:
        async def call(payload: Any, delivery: Delivery) -> None:
            result = handler(payload, delivery)
            if inspect.isawaitable(result):
                await result

        if self._handler_attempts == 1:
            return call
        min_wait, max_wait = self._retry_wait
        return retry_policy(
            max_attempts=self._handler_attempts,
            min_wait=min_wait,
            max_wait=max_wait,
            jitter=min_wait,
        )(call)

    async def _on_delivery(
        self, delivery: Delivery, call: Callable[[Any, Delivery], Awaitable[None]]
    ) -> None:
        self._pending += 1
        self._idle.clear()
        try:
            if self._slots is not None:
                async with self._slots:
                    await self._run(delivery, call)
            else:
                await self._run(delivery, call)
        finally:
            self._pending -= 1
            if self._pending == 0:
                self._idle.set()

    async def _run(
        self, delivery: Delivery, call: Callable[[Any, Delivery], Awaitable[None]]
    ) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        ctx = DeliveryContext(
            consumer=self.name,
            queue=self._queue,
            delivery_tag=delivery.delivery_tag,
            message_id=delivery.message_id,
        )
        try:
            with delivery_context(ctx):
                try:
                    await self._process(delivery, call)
                except Exception as exc:
                    self._log.error(
                        "message.discarded", reason="unexpected_error", error=str(exc), exc_info=True
                    )
                    if not delivery.settled:
                        self._settle(delivery, ack=False)
        finally:
            self.in_flight -= 1

    async def _process(
        self, delivery: Delivery, call: Callable[[Any, Delivery], Awaitable[None]]
    ) -> None:
        try:
            global_id = parse_schema_id(delivery.headers)
        except MalformedMessageError as exc:
            self._discard(delivery, "missing_schema_id", error=exc.user_message)
            return
        set_schema_id(global_id)

        try:
            payload = decode_body(delivery.body)
        except MalformedMessageError as exc:
            self._discard(delivery, "malformed_body", level="error", error=exc.detail)
            return

        if self._validate:
            try:
                validator = await self._cache.validator(global_id)
                errors = validator.errors(payload)
            except SchemaBusError as exc:
                self._discard(delivery, "schema_unavailable", level="error", error=exc.detail)
                return
            if errors:
                self._discard(delivery, "validation_failed", errors=errors)
                return

        try:
            await call(payload, delivery)
        except Exception as exc:
            self._log.error(
                "message.discarded", reason="handler_failed", error=str(exc), exc_info=True
            )
            self._settle(delivery, ack=False)
            return

        self._settle(delivery, ack=True)

    def _discard(self, delivery: Delivery, reason: str, level: str = "warning", **fields: Any) -> None:
        getattr(self._log, level)("message.discarded", reason=reason, **fields)
        self._settle(delivery, ack=False)

    def _settle(self, delivery: Delivery, *, ack: bool) -> None:
        try:
            if ack:
                self._transport.ack(delivery)
            else:
                self._transport.nack(delivery, requeue=False)
        except TransportError as exc:
            self._log.error("message.settle_failed", ack=ack, error=exc.detail)


__all__ = ["Subscriber", "SubscriberState", "Handler"]

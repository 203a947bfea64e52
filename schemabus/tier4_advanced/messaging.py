"""
schemabus.tier4_advanced.messaging
───────────────────────────────────
Broker transport abstraction: message envelopes, topology descriptors, the
transport protocol shared by Publisher and Subscriber, and an in-process
broker for tests.

Production transport is RabbitMQ via ``schemabus.tier4_advanced.rabbit``.
Delivery is at-least-once; every message carries an ``x-schema-id`` header.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol, Union, runtime_checkable

from schemabus.tier0_core.errors import MalformedMessageError, TransportError
from schemabus.tier0_core.logging import get_logger
from schemabus.tier1_runtime.serialize import CONTENT_TYPE

log = get_logger(__name__)

SCHEMA_ID_HEADER = "x-schema-id"

HeaderValue = Union[str, int]
Headers = dict[str, HeaderValue]


# ── Headers ───────────────────────────────────────────────────────────────────

def check_headers(headers: Mapping[str, Any]) -> Headers:
    """Return a copy of ``headers``, rejecting values that are not str or int."""
    checked: Headers = {}
    for key, value in headers.items():
        if not isinstance(key, str):
            raise MalformedMessageError(user_message=f"Header name {key!r} is not a string.")
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise MalformedMessageError(
                user_message=f"Header {key!r} must be a string or integer, got {type(value).__name__}.",
            )
        checked[key] = value
    return checked


def parse_schema_id(headers: Mapping[str, Any] | None) -> int:
    """
    Extract the global schema id from message headers.

    Accepts a positive int, or a decimal string some producers send. Raises
    MalformedMessageError for anything else, including a missing header.
    """
    value = (headers or {}).get(SCHEMA_ID_HEADER)
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    if isinstance(value, str):
        digits = value.strip()
        # str.isdigit() also admits "²" and other non-ASCII digits int() rejects
        if digits.isascii() and digits.isdecimal():
            value = int(digits)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedMessageError(
            user_message=f"Message has no numeric {SCHEMA_ID_HEADER} header.",
            header=repr(value) if value is not None else None,
        )
    if value < 1:
        raise MalformedMessageError(
            user_message=f"Message has an invalid {SCHEMA_ID_HEADER} header: {value}.",
        )
    return value


# ── Domain model ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Envelope:
    """A message ready to publish. Cannot exist without a schema id header."""
    body: bytes
    headers: Headers
    routing_key: str = ""
    content_type: str = CONTENT_TYPE
    persistent: bool = True
    message_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", check_headers(self.headers))
        parse_schema_id(self.headers)

    @property
    def schema_id(self) -> int:
        return parse_schema_id(self.headers)


@dataclass
class Delivery:
    """A message handed to a consumer. Settled exactly once via ack or nack."""
    body: bytes
    headers: dict[str, Any]
    delivery_tag: int
    consumer_tag: str = ""
    exchange: str = ""
    routing_key: str = ""
    redelivered: bool = False
    content_type: str | None = None
    message_id: str | None = None
    settled: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class Topology:
    """Exchange, queue and binding declared at startup. Safe to re-declare."""
    exchange: str
    queue: str
    routing_pattern: str = "#"
    dead_letter_exchange: str | None = None
    dead_letter_queue: str | None = None

    def queue_arguments(self) -> dict[str, Any]:
        if self.dead_letter_exchange:
            return {"x-dead-letter-exchange": self.dead_letter_exchange}
        return {}


DeliveryCallback = Callable[[Delivery], Awaitable[None]]


@runtime_checkable
class BrokerTransport(Protocol):
    async def declare_topology(self, topology: Topology) -> None: ...
    async def publish(self, exchange: str, envelope: Envelope) -> bool: ...
    async def consume(
        self, queue: str, prefetch: int | None, on_delivery: DeliveryCallback
    ) -> str: ...
    async def cancel(self, consumer_tag: str) -> None: ...
    def ack(self, delivery: Delivery) -> None: ...
    def nack(self, delivery: Delivery, requeue: bool = False) -> None: ...
    async def close(self) -> None: ...


# ── In-memory broker ──────────────────────────────────────────────────────────

def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` is zero or more."""
    return _match_words(
        pattern.split(".") if pattern else [],
        routing_key.split(".") if routing_key else [],
    )


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


@dataclass
class StoredMessage:
    """A message sitting in an in-memory queue, as the broker would hold it."""
    body: bytes
    headers: dict[str, Any]
    exchange: str
    routing_key: str = ""
    content_type: str | None = CONTENT_TYPE
    message_id: str | None = None
    redelivered: bool = False

    @classmethod
    def from_envelope(cls, exchange: str, envelope: Envelope) -> "StoredMessage":
        return cls(
            body=envelope.body,
            headers=dict(envelope.headers),
            exchange=exchange,
            routing_key=envelope.routing_key,
            content_type=envelope.content_type,
            message_id=envelope.message_id,
        )


@dataclass
class _Queue:
    name: str
    arguments: dict[str, Any]
    messages: deque[StoredMessage] = field(default_factory=deque)


@dataclass
class _Consumer:
    tag: str
    queue: str
    prefetch: int
    on_delivery: DeliveryCallback
    unacked: set[int] = field(default_factory=set)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    task: asyncio.Task | None = None


class InMemoryBroker:
    """
    In-process AMQP-like broker for tests. NOT suitable for production.

    Implements topic routing, durable-queue declaration checks, prefetch
    limits, requeue and dead-lettering. Records what happened:
    ``published``, ``acked``, ``nacked``, ``discarded`` and the highest
    number of unacknowledged deliveries any consumer held (``max_unacked``).
    """

    def __init__(self) -> None:
        self._exchanges: dict[str, str] = {}
        self._queues: dict[str, _Queue] = {}
        self._bindings: list[tuple[str, str, str]] = []  # (exchange, queue, pattern)
        self._consumers: dict[str, _Consumer] = {}
        self._unacked: dict[int, tuple[_Consumer, StoredMessage]] = {}
        self._tags = itertools.count(1)
        self._consumer_ids = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()
        self._changed = asyncio.Event()
        self._blocked = False
        self.closed = False
        self.published: list[tuple[str, Envelope]] = []
        self.acked: list[Delivery] = []
        self.nacked: list[Delivery] = []
        self.discarded: list[StoredMessage] = []
        self.declarations = 0
        self.max_unacked = 0

    # ── Topology ──────────────────────────────────────────────────────────────

    def declare_exchange(self, name: str, exchange_type: str) -> None:
        existing = self._exchanges.get(name)
        if existing is not None and existing != exchange_type:
            raise TransportError(
                user_message=f"Exchange {name!r} already declared as {existing!r}.",
                detail=f"PRECONDITION_FAILED - inequivalent arg 'type' for exchange '{name}'",
            )
        self._exchanges[name] = exchange_type

    def declare_queue(self, name: str, arguments: dict[str, Any] | None = None) -> None:
        arguments = arguments or {}
        existing = self._queues.get(name)
        if existing is not None:
            if existing.arguments != arguments:
                raise TransportError(
                    user_message=f"Queue {name!r} already declared with different arguments.",
                    detail=f"PRECONDITION_FAILED - inequivalent args for queue '{name}'",
                )
            return
        self._queues[name] = _Queue(name=name, arguments=dict(arguments))

    def bind(self, queue: str, exchange: str, pattern: str) -> None:
        if exchange not in self._exchanges:
            raise TransportError(user_message=f"NOT_FOUND - no exchange {exchange!r}.")
        if queue not in self._queues:
            raise TransportError(user_message=f"NOT_FOUND - no queue {queue!r}.")
        binding = (exchange, queue, pattern)
        if binding not in self._bindings:
            self._bindings.append(binding)

    async def declare_topology(self, topology: Topology) -> None:
        self.declarations += 1
        self.declare_exchange(topology.exchange, "topic")
        self.declare_queue(topology.queue, topology.queue_arguments())
        self.bind(topology.queue, topology.exchange, topology.routing_pattern)
        if topology.dead_letter_exchange and topology.dead_letter_queue:
            self.declare_exchange(topology.dead_letter_exchange, "fanout")
            self.declare_queue(topology.dead_letter_queue)
            self.bind(topology.dead_letter_queue, topology.dead_letter_exchange, "")

    @property
    def exchanges(self) -> dict[str, str]:
        return dict(self._exchanges)

    @property
    def queues(self) -> list[str]:
        return list(self._queues)

    @property
    def bindings(self) -> list[tuple[str, str, str]]:
        return list(self._bindings)

    def messages(self, queue: str) -> list[StoredMessage]:
        """Messages currently waiting (not delivered) in ``queue``."""
        return list(self._queues[queue].messages)

    # ── Publishing ────────────────────────────────────────────────────────────

    def block(self) -> None:
        """Simulate broker flow control: publish() returns False until unblock()."""
        self._blocked = True

    def unblock(self) -> None:
        self._blocked = False

    def _route(self, message: StoredMessage) -> int:
        exchange_type = self._exchanges.get(message.exchange)
        if exchange_type is None:
            raise TransportError(user_message=f"NOT_FOUND - no exchange {message.exchange!r}.")
        routed = 0
        for bound_exchange, queue, pattern in self._bindings:
            if bound_exchange != message.exchange:
                continue
            if exchange_type == "topic" and not topic_matches(pattern, message.routing_key):
                continue
            self._queues[queue].messages.append(replace(message))
            routed += 1
        self._notify()
        return routed

    async def publish(self, exchange: str, envelope: Envelope) -> bool:
        self._ensure_open()
        if self._blocked:
            return False
        self.published.append((exchange, envelope))
        self._route(StoredMessage.from_envelope(exchange, envelope))
        return True

    def inject(
        self,
        exchange: str,
        body: bytes,
        headers: dict[str, Any] | None = None,
        routing_key: str = "",
        content_type: str | None = CONTENT_TYPE,
    ) -> int:
        """
        Route a raw message as a foreign producer would, bypassing Envelope
        checks. Returns the number of queues it reached.
        """
        self._ensure_open()
        return self._route(
            StoredMessage(
                body=body,
                headers=dict(headers or {}),
                exchange=exchange,
                routing_key=routing_key,
                content_type=content_type,
            )
        )

    # ── Consuming ─────────────────────────────────────────────────────────────

    async def consume(
        self, queue: str, prefetch: int | None, on_delivery: DeliveryCallback
    ) -> str:
        self._ensure_open()
        if queue not in self._queues:
            raise TransportError(user_message=f"NOT_FOUND - no queue {queue!r}.")
        consumer = _Consumer(
            tag=f"ctag-{next(self._consumer_ids)}",
            queue=queue,
            prefetch=prefetch or 0,
            on_delivery=on_delivery,
        )
        self._consumers[consumer.tag] = consumer
        consumer.task = asyncio.get_running_loop().create_task(self._dispatch(consumer))
        return consumer.tag

    def _take(self, consumer: _Consumer) -> Delivery | None:
        if consumer.prefetch and len(consumer.unacked) >= consumer.prefetch:
            return None
        messages = self._queues[consumer.queue].messages
        if not messages:
            return None
        message = messages.popleft()
        tag = next(self._tags)
        consumer.unacked.add(tag)
        self._unacked[tag] = (consumer, message)
        self.max_unacked = max(self.max_unacked, len(consumer.unacked))
        return Delivery(
            body=message.body,
            headers=dict(message.headers),
            delivery_tag=tag,
            consumer_tag=consumer.tag,
            exchange=message.exchange,
            routing_key=message.routing_key,
            redelivered=message.redelivered,
            content_type=message.content_type,
            message_id=message.message_id,
        )

    async def _dispatch(self, consumer: _Consumer) -> None:
        while not consumer.cancelled:
            delivery = self._take(consumer)
            if delivery is None:
                consumer.wakeup.clear()
                await consumer.wakeup.wait()
                continue
            task = asyncio.get_running_loop().create_task(consumer.on_delivery(delivery))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("broker.delivery_task_failed", error=str(task.exception()))

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        consumer.cancelled = True
        consumer.wakeup.set()
        if consumer.task is not None:
            await consumer.task

    def _notify(self) -> None:
        for consumer in self._consumers.values():
            consumer.wakeup.set()
        self._changed.set()

    # ── Settlement ────────────────────────────────────────────────────────────

    def _settle(self, delivery: Delivery) -> tuple[_Consumer, StoredMessage]:
        entry = self._unacked.pop(delivery.delivery_tag, None)
        if entry is None or delivery.settled:
            raise TransportError(
                user_message=f"PRECONDITION_FAILED - unknown delivery tag {delivery.delivery_tag}.",
            )
        delivery.settled = True
        consumer, message = entry
        consumer.unacked.discard(delivery.delivery_tag)
        return consumer, message

    def ack(self, delivery: Delivery) -> None:
        self._settle(delivery)
        self.acked.append(delivery)
        self._notify()

    def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        consumer, message = self._settle(delivery)
        self.nacked.append(delivery)
        queue = self._queues[consumer.queue]
        if requeue:
            queue.messages.appendleft(replace(message, redelivered=True))
        else:
            dlx = queue.arguments.get("x-dead-letter-exchange")
            self.discarded.append(message)
            if dlx and dlx in self._exchanges:
                self._route(replace(message, exchange=dlx, redelivered=False))
        self._notify()

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    async def drain(self, queue: str, timeout: float = 5.0) -> None:
        """Wait until ``queue`` is empty and every delivery from it is settled."""
        async def settled() -> None:
            while self._queues[queue].messages or any(
                c.queue == queue for c, _ in self._unacked.values()
            ):
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(settled(), timeout)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self.closed:
            raise TransportError(user_message="Connection is closed.")

    async def close(self) -> None:
        for tag in list(self._consumers):
            await self.cancel(tag)
        self.closed = True


__all__ = [
    "SCHEMA_ID_HEADER", "Headers", "Envelope", "Delivery", "Topology",
    "BrokerTransport", "DeliveryCallback", "InMemoryBroker", "StoredMessage",
    "check_headers", "parse_schema_id", "topic_matches",
]

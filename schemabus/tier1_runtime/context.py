"""
schemabus.tier1_runtime.context
────────────────────────────────
Delivery context: which message a consumer task is working on, propagated
across async boundaries into logs.

Uses Python contextvars: each delivery runs in its own asyncio task, so each
task sees only its own context. Mirrored into structlog contextvars so every
log line emitted while handling a message carries its delivery tag and
schema id.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

import structlog


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class DeliveryContext:
    """Per-delivery metadata available throughout message handling."""
    consumer: str
    queue: str
    delivery_tag: int
    message_id: str | None = None
    schema_id: int | None = None

    def log_fields(self) -> dict:
        return {
            "consumer": self.consumer,
            "queue": self.queue,
            "delivery_tag": self.delivery_tag,
            "message_id": self.message_id,
            "schema_id": self.schema_id,
        }


# ── ContextVar storage ────────────────────────────────────────────────────────

_ctx: ContextVar[DeliveryContext | None] = ContextVar(
    "schemabus_delivery_context",
    default=None,
)


# ── Public API ────────────────────────────────────────────────────────────────

def get_delivery_context() -> DeliveryContext | None:
    """Return the delivery being handled in this task, if any."""
    return _ctx.get()


def set_schema_id(schema_id: int) -> None:
    """Record the parsed schema id on the current delivery context."""
    ctx = _ctx.get()
    if ctx is not None:
        ctx.schema_id = schema_id
    structlog.contextvars.bind_contextvars(schema_id=schema_id)


@contextmanager
def delivery_context(ctx: DeliveryContext) -> Iterator[DeliveryContext]:
    """Activate ``ctx`` for the duration of the block, then restore."""
    token = _ctx.set(ctx)
    log_tokens = structlog.contextvars.bind_contextvars(**ctx.log_fields())
    try:
        yield ctx
    finally:
        structlog.contextvars.reset_contextvars(**log_tokens)
        _ctx.reset(token)


__all__ = ["DeliveryContext", "delivery_context", "get_delivery_context", "set_schema_id"]

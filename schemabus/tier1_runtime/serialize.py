"""
schemabus.tier1_runtime.serialize
──────────────────────────────────
Canonical JSON encoding for message bodies, and the inverse used by
consumers. Pydantic models are dumped in JSON mode so producers can publish
typed events directly.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from schemabus.tier0_core.errors import MalformedMessageError

CONTENT_TYPE = "application/json"


def to_jsonable(obj: BaseModel | dict | list | Any) -> Any:
    """Convert a Pydantic model to plain JSON data; other values pass through."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return obj


def encode_body(payload: BaseModel | dict | list | Any) -> bytes:
    """
    Serialize a payload to canonical JSON bytes: sorted keys, no insignificant
    whitespace, UTF-8.

    Usage:
        body = encode_body({"id": "u1", "name": "A"})   # → b'{"id":"u1","name":"A"}'
    """
    return json.dumps(
        to_jsonable(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def decode_body(body: bytes | str) -> Any:
    """Parse a message body. Raises MalformedMessageError on bad UTF-8 or JSON."""
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(
            user_message="Message body is not valid JSON.",
            detail=f"Failed to parse JSON payload: {exc}",
        ) from exc


__all__ = ["CONTENT_TYPE", "to_jsonable", "encode_body", "decode_body"]

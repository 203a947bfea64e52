"""
schemabus.tier0_core.errors
────────────────────────────
Error taxonomy for the schema-validated bus. Every error has a stable code,
a user-safe message, and internal detail. Raising a SchemaBusError reports
it to Sentry when an error backend is configured.

Configure via: SCHEMABUS_ERROR_BACKEND=sentry|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class SchemaBusError(Exception):
    """
    Base class for all schemabus errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to surface to callers
    - detail: internal context
    - metadata: structured extras (artifact_id, global_id, ...)
    """

    code: str = "internal_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Registry lookups ──────────────────────────────────────────────────────────

class NotFoundError(SchemaBusError):
    """Artifact has no registered version."""
    code = "not_found"


class UpstreamError(SchemaBusError):
    """An external service (registry, broker) failed."""
    code = "upstream_error"


class RegistryError(UpstreamError):
    """
    Schema registry answered with a non-success status, or could not be
    reached at all (``status`` is None then).
    """
    code = "registry_error"

    def __init__(
        self,
        user_message: str = "Schema registry request failed.",
        *,
        status: int | None = None,
        body: str = "",
        code: str | None = None,
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.status = status
        self.body = body
        if detail is None and status is not None:
            detail = f"{user_message} ({status}): {body}"
        super().__init__(code, user_message, detail=detail, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["error"]["status"] = self.status
        return d


class IncompatibleSchemaError(RegistryError):
    """Proposed schema was rejected by the registry's compatibility rule."""
    code = "incompatible_schema"

    def __init__(
        self,
        user_message: str = "Schema is not compatible with the registered versions.",
        *,
        status: int | None = None,
        body: str = "",
        causes: list[dict] | None = None,
        **metadata: Any,
    ) -> None:
        self.causes = causes or []
        super().__init__(user_message, status=status, body=body, **metadata)


class TransportError(UpstreamError):
    """Broker connection or channel failure."""
    code = "transport_error"


# ── Payloads and messages ─────────────────────────────────────────────────────

class ValidationError(SchemaBusError):
    """Payload does not conform to its schema."""
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        errors: list[dict] | None = None,
        **metadata: Any,
    ) -> None:
        self.errors = errors or []
        self.fields = {e["path"]: e["message"] for e in self.errors}
        detail = user_message
        if self.errors:
            detail = f"{user_message} " + "; ".join(
                f"{e['path']}: {e['message']}" for e in self.errors
            )
        super().__init__(code, user_message, detail=detail, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.errors:
            d["error"]["fields"] = self.fields
        return d


class MalformedMessageError(SchemaBusError):
    """Delivered message has an unusable body or schema header."""
    code = "malformed_message"


class InvalidSchemaError(SchemaBusError):
    """Schema content is not valid JSON or not a valid JSON Schema."""
    code = "invalid_schema"


class ConfigurationError(SchemaBusError):
    """Misconfiguration detected at startup."""
    code = "configuration_error"


# ── Error capture backend ─────────────────────────────────────────────────────

# Expected per-message outcomes; reported as warnings, not exceptions.
_WARNING_ONLY = (NotFoundError, ValidationError, MalformedMessageError)


def _capture(error: SchemaBusError) -> None:
    """Send error to configured backend. Called automatically by SchemaBusError.__init__."""
    backend = os.getenv("SCHEMABUS_ERROR_BACKEND", "none").lower()
    if backend == "sentry":
        _capture_sentry(error)


def _capture_sentry(error: SchemaBusError) -> None:
    import sentry_sdk

    if isinstance(error, _WARNING_ONLY):
        sentry_sdk.capture_message(
            str(error),
            level="warning",
            extras={"code": error.code, **error.metadata},
        )
    else:
        sentry_sdk.capture_exception(error)


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry. Call once at application startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["SCHEMABUS_ERROR_BACKEND"] = "sentry"


__all__ = [
    "SchemaBusError", "NotFoundError", "UpstreamError", "RegistryError",
    "IncompatibleSchemaError", "TransportError", "ValidationError",
    "MalformedMessageError", "InvalidSchemaError", "ConfigurationError",
    "configure_sentry",
]

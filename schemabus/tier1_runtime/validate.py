"""
schemabus.tier1_runtime.validate
─────────────────────────────────
Compiled JSON Schema validators. A schema document is checked and compiled
once into a SchemaValidator; running it collects every error rather than
stopping at the first, and failures surface as the bus ValidationError
(never raw jsonschema errors) so callers always see the same shape.
"""
from __future__ import annotations

from typing import Any

from jsonschema import FormatChecker
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for
from referencing.exceptions import Unresolvable

from schemabus.tier0_core.errors import InvalidSchemaError, ValidationError


def _error_path(error: Any) -> str:
    path = ".".join(str(part) for part in error.absolute_path)
    return path or "$"


class SchemaValidator:
    """
    A compiled predicate over payloads for one schema document.

    Usage:
        validator = compile_validator({"type": "object", "required": ["id"]})
        validator.errors({})      # → [{"path": "$", "message": "'id' is a required property", ...}]
        validator.validate({})    # raises ValidationError
    """

    def __init__(self, schema: dict[str, Any], global_id: int | None = None) -> None:
        cls = validator_for(schema)
        try:
            cls.check_schema(schema)
        except SchemaError as exc:
            raise InvalidSchemaError(
                user_message="Schema is not a valid JSON Schema.",
                detail=f"Invalid schema (global_id={global_id}): {exc.message}",
                global_id=global_id,
            ) from exc
        self.schema = schema
        self.global_id = global_id
        self._validator = cls(schema, format_checker=FormatChecker())

    def _collect(self, payload: Any) -> list:
        # $ref targets are only resolved while validating, not by check_schema
        try:
            return list(self._validator.iter_errors(payload))
        except Unresolvable as exc:
            raise InvalidSchemaError(
                user_message="Schema has an unresolvable reference.",
                detail=f"Unresolvable reference (global_id={self.global_id}): {exc}",
                global_id=self.global_id,
            ) from exc

    def errors(self, payload: Any) -> list[dict[str, str]]:
        """
        Return every violation, ordered by path, or an empty list.
        Raises InvalidSchemaError if the schema cannot be applied.
        """
        found = sorted(
            self._collect(payload),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        return [
            {
                "path": _error_path(e),
                "message": e.message,
                "validator": str(e.validator),
            }
            for e in found
        ]

    def is_valid(self, payload: Any) -> bool:
        return not self._collect(payload)

    def validate(self, payload: Any) -> None:
        errors = self.errors(payload)
        if errors:
            raise ValidationError(
                user_message="Payload validation failed.",
                errors=errors,
                global_id=self.global_id,
            )

    def __call__(self, payload: Any) -> bool:
        return self.is_valid(payload)


def compile_validator(schema: dict[str, Any], global_id: int | None = None) -> SchemaValidator:
    """Check and compile a schema document. Raises InvalidSchemaError."""
    if not isinstance(schema, dict):
        raise InvalidSchemaError(
            user_message="Schema must be a JSON object.",
            global_id=global_id,
        )
    return SchemaValidator(schema, global_id=global_id)


__all__ = ["SchemaValidator", "compile_validator"]

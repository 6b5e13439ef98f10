"""JSON Schema helpers for tool input schemas."""

from typing import Any

from jsonschema import Draft7Validator, SchemaError

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def check_schema(schema: dict[str, Any]) -> list[str]:
    """
    Check that a tool input schema is itself a valid JSON Schema.

    Args:
        schema: Schema advertised by the tool server

    Returns:
        List of problems; empty when the schema is valid
    """
    if not isinstance(schema, dict):
        return [f"schema must be an object, got {type(schema).__name__}"]

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        path = ".".join(str(p) for p in e.path)
        return [f"{path}: {e.message}" if path else e.message]

    if schema.get("type", "object") != "object":
        return [f"input schema type must be 'object', got {schema.get('type')!r}"]

    return []


def validate_arguments(arguments: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate tool arguments against the tool's input schema.

    Args:
        arguments: Arguments proposed by the model
        schema: JSON Schema of the tool

    Returns:
        List of error messages; empty when the arguments conform. A schema
        that cannot be evaluated is reported as a problem, never raised.
    """
    if not schema:
        return []

    try:
        validator = Draft7Validator(schema)
        return [
            f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
            for e in validator.iter_errors(arguments)
        ]
    except Exception as e:
        # unknown types, bad patterns and unresolvable refs only surface here
        return [f"schema could not be evaluated: {e}"]

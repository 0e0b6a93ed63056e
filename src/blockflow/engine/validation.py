"""JSON Schema checks for node input and output.

Node ``inputSchema``/``outputSchema`` documents are JSON Schema (draft
2020-12) validated with ``jsonschema``. Keywords jsonschema does not know
are ignored.

Schema documents inside workflow definitions may use ``$ref`` to point at
``workflow.schemas`` entries, either as ``#/schemas/<name>`` or as the bare
``<name>``. Both forms are served from a ``referencing`` registry built from
the workflow's schemas.
"""

from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from referencing import Registry
from referencing.exceptions import Unresolvable
from referencing.jsonschema import DRAFT202012

# Base URI of the schema being checked, used to resolve "#/schemas/..." refs
ROOT_URI = "urn:blockflow:schema"


def _with_schemas(schema: dict[str, Any], schemas: dict[str, Any] | None) -> dict[str, Any]:
    # "#/schemas/<name>" is a JSON pointer into the document itself
    return {**schema, "schemas": schemas} if schemas else schema


def build_registry(schema: dict[str, Any], schemas: dict[str, Any] | None = None) -> Registry:
    """Registry holding ``schema`` at ROOT_URI and every workflow schema under its name."""
    resources = [(ROOT_URI, DRAFT202012.create_resource(_with_schemas(schema, schemas)))]
    for name, target in (schemas or {}).items():
        if isinstance(target, dict):
            resources.append((name, DRAFT202012.create_resource(_with_schemas(target, schemas))))
    return Registry().with_resources(resources)


def validate_schema(
    data: Any, schema: dict[str, Any], schemas: dict[str, Any] | None = None
) -> list[str]:
    """
    Check ``data`` against ``schema``.

    Returns:
        Human-readable error strings (``"$.user.name: 5 is not of type 'string'"``),
        ordered by location; empty when the data conforms

    Raises:
        jsonschema.exceptions.SchemaError: ``schema`` itself is not valid JSON Schema
    """
    Draft202012Validator.check_schema(schema)
    validator = Draft202012Validator(
        _with_schemas(schema, schemas), registry=build_registry(schema, schemas)
    )
    errors = sorted(validator.iter_errors(data), key=lambda e: e.json_path)
    return [f"{error.json_path}: {error.message}" for error in errors]


def _check_subschemas(schema: dict[str, Any], registry: Registry, path: str) -> list[str]:
    if "$ref" in schema:
        ref = schema["$ref"]
        try:
            registry.resolver(base_uri=ROOT_URI).lookup(ref)
        except Unresolvable:
            return [f"{path}: unresolved $ref '{ref}'"]
        return []

    errors: list[str] = []
    if "type" not in schema:
        errors.append(f"{path}: missing 'type'")

    properties = schema.get("properties")
    if isinstance(properties, dict):
        for key, sub in properties.items():
            if isinstance(sub, dict):
                errors.extend(_check_subschemas(sub, registry, f"{path}.properties.{key}"))
    items = schema.get("items")
    if isinstance(items, dict):
        errors.extend(_check_subschemas(items, registry, f"{path}.items"))
    return errors


def check_schema_definition(
    schema: Any, schemas: dict[str, Any] | None = None, path: str = "schema"
) -> list[str]:
    """
    Check that a schema document is itself well formed.

    The document must be valid JSON Schema, and every (sub)schema needs
    either a ``type`` or a ``$ref`` that resolves against ``schemas``.
    """
    if not isinstance(schema, dict):
        return [f"{path}: must be an object"]
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        return [f"{path}: {e.message}"]
    return _check_subschemas(schema, build_registry(schema, schemas), path)


__all__ = [
    "ROOT_URI",
    "build_registry",
    "check_schema_definition",
    "validate_schema",
]

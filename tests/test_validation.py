"""Tests for node schema checks and workflow schema references."""

import pytest
from jsonschema.exceptions import SchemaError

from blockflow.engine.validation import check_schema_definition, validate_schema

SCHEMAS = {
    "user": {
        "type": "object",
        "properties": {"email": {"type": "string"}, "address": {"$ref": "#/schemas/address"}},
        "required": ["email"],
    },
    "address": {"type": "object", "required": ["city"]},
}


def test_conforming_data_has_no_errors() -> None:
    schema = {"type": "array", "items": {"type": "object", "required": ["id"]}}
    assert validate_schema([{"id": 1}, {"id": 2}], schema) == []


def test_errors_are_located_and_ordered() -> None:
    schema = {
        "type": "object",
        "properties": {"a": {"type": "integer"}, "b": {"enum": ["x", "y"]}},
    }
    assert validate_schema({"b": "z", "a": True}, schema) == [
        "$.a: True is not of type 'integer'",
        "$.b: 'z' is not one of ['x', 'y']",
    ]


def test_unknown_keywords_are_ignored() -> None:
    assert validate_schema({"x": 1}, {"type": "object", "x-ui": {"widget": "table"}}) == []


@pytest.mark.parametrize("ref", ["#/schemas/user", "user"])
def test_refs_resolve_against_workflow_schemas(ref: str) -> None:
    """Test both reference forms, including a nested reference."""
    schema = {"type": "array", "items": {"$ref": ref}}

    assert validate_schema([{"email": "a@example.com"}], schema, SCHEMAS) == []
    assert validate_schema([{"address": {}}], schema, SCHEMAS) == [
        "$[0]: 'email' is a required property",
        "$[0].address: 'city' is a required property",
    ]


def test_invalid_schema_raises() -> None:
    with pytest.raises(SchemaError):
        validate_schema({}, {"type": "banana"})


def test_check_schema_definition() -> None:
    """Test the well-formedness rules the workflow validator reports."""
    assert check_schema_definition({"$ref": "#/schemas/user"}, SCHEMAS) == []
    assert check_schema_definition({"$ref": "user"}, SCHEMAS) == []
    assert check_schema_definition(SCHEMAS["user"], SCHEMAS, "user") == []
    assert check_schema_definition("nope") == ["schema: must be an object"]
    assert check_schema_definition({"$ref": "#/schemas/ghost"}, SCHEMAS, "inputSchema") == [
        "inputSchema: unresolved $ref '#/schemas/ghost'"
    ]
    assert check_schema_definition({"properties": {}}) == ["schema: missing 'type'"]
    assert check_schema_definition(
        {"type": "object", "properties": {"n": {"minimum": 1}}}
    ) == ["schema.properties.n: missing 'type'"]

    problems = check_schema_definition({"type": "banana"}, path="outputSchema")
    assert len(problems) == 1
    assert problems[0].startswith("outputSchema: ")

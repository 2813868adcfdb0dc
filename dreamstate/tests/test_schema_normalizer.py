"""Tests for projecting untrusted JSON onto sanitized schemas."""

import json

import pytest

from dreamstate.core.errors import SchemaError
from dreamstate.features.normalizer.schema import (
    MAX_ARRAY_ITEMS,
    ArraySchema,
    BooleanSchema,
    NumberSchema,
    ObjectSchema,
    StringSchema,
    coerce,
    normalize,
    parse_text,
    sanitize_schema,
)


def nested_object(depth):
    schema = {"type": "string"}
    for _ in range(depth):
        schema = {"type": "object", "properties": {"child": schema}}
    return schema


def describe(schema):
    if isinstance(schema, StringSchema):
        described = {"type": "string"}
        if schema.enum is not None:
            described["enum"] = list(schema.enum)
        return described
    if isinstance(schema, ArraySchema):
        described = {"type": "array"}
        if schema.items is not None:
            described["items"] = describe(schema.items)
        return described
    if isinstance(schema, ObjectSchema):
        return {"type": "object", "properties": {k: describe(v) for k, v in schema.properties}}
    return {"type": schema.type}


class TestSanitizeSchema:
    def test_scalar_types_case_insensitive(self):
        assert sanitize_schema({"type": "STRING"}) == StringSchema()
        assert sanitize_schema({"type": "Number"}) == NumberSchema()
        assert sanitize_schema({"type": "integer"}) == NumberSchema(integer=True)
        assert sanitize_schema({"type": "boolean"}) == BooleanSchema()

    def test_unknown_or_malformed_root_is_none(self):
        assert sanitize_schema({"type": "date"}) is None
        assert sanitize_schema({"properties": {}}) is None
        assert sanitize_schema("string") is None
        assert sanitize_schema(None) is None

    def test_enum_keeps_only_strings(self):
        assert sanitize_schema({"type": "string", "enum": ["A", 1, "B", None]}) == StringSchema(enum=("A", "B"))

    def test_invalid_nested_properties_skipped(self):
        schema = sanitize_schema({
            "type": "object",
            "properties": {"ok": {"type": "number"}, "bad": {"type": "wat"}, "junk": 5},
        })
        assert schema == ObjectSchema(properties=(("ok", NumberSchema()),))

    def test_array_without_items(self):
        assert sanitize_schema({"type": "array"}) == ArraySchema()
        assert sanitize_schema({"type": "array", "items": {"type": "nope"}}) == ArraySchema()

    def test_depth_limit(self):
        deep_ok = sanitize_schema(nested_object(6))
        assert deep_ok is not None
        too_deep = sanitize_schema(nested_object(7))
        # The string leaf at depth 7 is dropped, leaving an empty innermost object
        innermost = too_deep
        for _ in range(6):
            innermost = dict(innermost.properties)["child"]
        assert innermost == ObjectSchema()

    def test_property_budget_is_tree_wide(self):
        properties = {
            f"group{g}": {"type": "object", "properties": {f"p{i}": {"type": "string"} for i in range(60)}}
            for g in range(5)
        }
        schema = sanitize_schema({"type": "object", "properties": properties})

        def count(s):
            if isinstance(s, ObjectSchema):
                return sum(1 + count(child) for _, child in s.properties)
            if isinstance(s, ArraySchema) and s.items is not None:
                return count(s.items)
            return 0

        assert count(schema) == 200

    def test_sanitized_schema_preserves_declared_shape(self):
        raw = {
            "type": "object",
            "properties": {
                "title": {"type": "string", "enum": ["a", "b"]},
                "tags": {"type": "array", "items": {"type": "string"}},
                "n": {"type": "integer"},
            },
        }
        assert describe(sanitize_schema(raw)) == raw


class TestCoerce:
    def test_defaults_for_wrong_types(self):
        assert coerce(5, StringSchema()) == ""
        assert coerce("5", NumberSchema()) == 0
        assert coerce(True, NumberSchema()) == 0
        assert coerce(float("nan"), NumberSchema()) == 0
        assert coerce("true", BooleanSchema()) is False
        assert coerce({"a": 1}, ArraySchema()) == []
        assert coerce([1], ObjectSchema()) == {}

    def test_integer_truncates(self):
        assert coerce(2.9, NumberSchema(integer=True)) == 2
        assert coerce(-2.9, NumberSchema(integer=True)) == -2

    def test_enum_substitution(self):
        schema = StringSchema(enum=("A", "B"))
        assert coerce("B", schema) == "B"
        assert coerce("Z", schema) == "A"
        assert coerce(None, schema) == "A"

    def test_empty_enum_is_unconstrained(self):
        assert coerce("Z", StringSchema(enum=())) == "Z"

    def test_object_is_a_projection(self):
        schema = ObjectSchema(properties=(("a", NumberSchema()), ("b", StringSchema())))
        assert coerce({"a": 1, "extra": "dropped"}, schema) == {"a": 1, "b": ""}

    def test_arrays_truncated_and_recursed(self):
        schema = ArraySchema(items=NumberSchema())
        assert coerce(["x", 2] + [1] * 300, schema)[:2] == [0, 2]
        assert len(coerce(list(range(300)), schema)) == MAX_ARRAY_ITEMS
        assert len(coerce(list(range(300)), ArraySchema())) == MAX_ARRAY_ITEMS


class TestNormalize:
    def test_missing_field_gets_default(self):
        assert normalize({"type": "object", "properties": {"n": {"type": "number"}}}, "{}") == {"n": 0}

    def test_enum_mismatch_gets_first_value(self):
        assert normalize({"type": "string", "enum": ["A", "B"]}, '"Z"') == "A"

    @pytest.mark.parametrize(
        "raw_schema,value",
        [
            ({"type": "string"}, "hello"),
            ({"type": "number"}, 3.5),
            ({"type": "integer"}, 7),
            ({"type": "boolean"}, True),
            ({"type": "array", "items": {"type": "number"}}, [1, 2.5, 3]),
            (
                {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "scores": {"type": "array", "items": {"type": "integer"}},
                        "meta": {"type": "object", "properties": {"ok": {"type": "boolean"}}},
                    },
                },
                {"name": "n", "scores": [1, 2], "meta": {"ok": True}},
            ),
        ],
    )
    def test_matching_value_passes_through(self, raw_schema, value):
        assert normalize(raw_schema, json.dumps(value)) == value

    @pytest.mark.parametrize("text", ["", "not json", "{", "NaN", None])
    def test_unparseable_text_is_null_input(self, text):
        assert normalize({"type": "object", "properties": {"a": {"type": "boolean"}}}, text) == {"a": False}

    def test_invalid_root_schema_raises(self):
        with pytest.raises(SchemaError) as exc_info:
            normalize({"type": "mystery"}, "{}")
        assert exc_info.value.status_code == 400

    def test_parse_text_rejects_non_standard_constants(self):
        assert parse_text("Infinity") is None
        assert parse_text("[1, 2]") == [1, 2]

    def test_integer_beyond_float_range_is_default(self):
        assert coerce(10**400, NumberSchema()) == 0
        assert normalize({"type": "integer"}, "1" + "0" * 400) == 0

    def test_deeply_nested_text_is_null_input(self):
        assert parse_text("[" * 50_000) is None
        assert normalize({"type": "string"}, "[" * 50_000) == ""

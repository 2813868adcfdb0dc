"""
dreamstate/features/normalizer/schema.py

Project untrusted generated JSON onto a bounded schema description.

Schemas are developer-controlled: an invalid root schema raises SchemaError.
Values are untrusted: coerce() never raises and substitutes a type-correct
default for anything missing or wrong-typed. Objects are projections, so
undeclared input keys are dropped.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from dreamstate.core.errors import SchemaError
from dreamstate.core.metrics import schema_normalizations_total

MAX_SCHEMA_DEPTH = 6
MAX_SCHEMA_PROPERTIES = 200
MAX_ARRAY_ITEMS = 200


@dataclass(frozen=True)
class StringSchema:
    enum: Optional[Tuple[str, ...]] = None
    type: str = "string"


@dataclass(frozen=True)
class NumberSchema:
    integer: bool = False

    @property
    def type(self) -> str:
        return "integer" if self.integer else "number"


@dataclass(frozen=True)
class BooleanSchema:
    type: str = "boolean"


@dataclass(frozen=True)
class ArraySchema:
    items: Optional["Schema"] = None
    type: str = "array"


@dataclass(frozen=True)
class ObjectSchema:
    properties: Tuple[Tuple[str, "Schema"], ...] = field(default_factory=tuple)
    type: str = "object"


Schema = Union[StringSchema, NumberSchema, BooleanSchema, ArraySchema, ObjectSchema]


class _PropertyBudget:
    """Tree-wide count of accepted object properties."""

    def __init__(self, limit: int = MAX_SCHEMA_PROPERTIES):
        self.limit = limit
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit


def sanitize_schema(raw: Any, depth: int = 0, budget: Optional[_PropertyBudget] = None) -> Optional[Schema]:
    """
    Validate a raw schema description.

    Returns:
        A Schema, or None when `raw` is not a usable schema (unknown type,
        not an object, nested deeper than MAX_SCHEMA_DEPTH)
    """
    if not isinstance(raw, dict) or depth > MAX_SCHEMA_DEPTH:
        return None
    budget = budget or _PropertyBudget()

    schema_type = raw.get("type")
    if isinstance(schema_type, str):
        schema_type = schema_type.lower()

    if schema_type == "string":
        enum = raw.get("enum")
        if isinstance(enum, list):
            return StringSchema(enum=tuple(v for v in enum if isinstance(v, str)))
        return StringSchema()

    if schema_type in ("number", "integer"):
        return NumberSchema(integer=schema_type == "integer")

    if schema_type == "boolean":
        return BooleanSchema()

    if schema_type == "array":
        return ArraySchema(items=sanitize_schema(raw.get("items"), depth + 1, budget))

    if schema_type == "object":
        raw_properties = raw.get("properties")
        if not isinstance(raw_properties, dict):
            raw_properties = {}
        properties: List[Tuple[str, Schema]] = []
        for key, value in raw_properties.items():
            if budget.exhausted:
                break
            # Reserve the slot before descending so nested properties cannot overshoot
            budget.count += 1
            child = sanitize_schema(value, depth + 1, budget)
            if child is None:
                budget.count -= 1
                continue
            properties.append((key, child))
        return ObjectSchema(properties=tuple(properties))

    return None


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int beyond float range
        return False


def coerce(value: Any, schema: Schema) -> Any:
    """Best-effort type-correct projection of `value` onto `schema`. Never raises."""
    if isinstance(schema, StringSchema):
        candidate = value if isinstance(value, str) else ""
        if schema.enum:
            return candidate if candidate in schema.enum else schema.enum[0]
        return candidate

    if isinstance(schema, NumberSchema):
        if not _is_finite_number(value):
            return 0
        return math.trunc(value) if schema.integer else value

    if isinstance(schema, BooleanSchema):
        return value if isinstance(value, bool) else False

    if isinstance(schema, ArraySchema):
        if not isinstance(value, list):
            return []
        if schema.items is None:
            return value[:MAX_ARRAY_ITEMS]
        return [coerce(item, schema.items) for item in value[:MAX_ARRAY_ITEMS]]

    if isinstance(schema, ObjectSchema):
        record = value if isinstance(value, dict) else {}
        return {key: coerce(record.get(key), child) for key, child in schema.properties}

    return None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


def parse_text(text: Any) -> Any:
    """Strict JSON parse; empty, non-string or unparseable text becomes None."""
    if not isinstance(text, str) or not text:
        return None
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return None


def normalize(raw_schema: Any, text: Any) -> Any:
    """
    Parse `text` as JSON and coerce it onto `raw_schema`.

    Raises:
        SchemaError if the root schema is invalid
    """
    schema = sanitize_schema(raw_schema)
    if schema is None:
        schema_normalizations_total.inc(labels={"outcome": "invalid_schema"})
        raise SchemaError("Invalid schema")

    parsed = parse_text(text)
    schema_normalizations_total.inc(labels={"outcome": "ok" if parsed is not None else "unparseable"})
    return coerce(parsed, schema)

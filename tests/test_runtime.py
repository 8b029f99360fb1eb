import collections.abc
import dataclasses
import datetime
import decimal
import enum
import typing
import uuid
from typing import Any, Generic, Literal, Optional, TypeVar, Union

import pytest

import schemagen
from schemagen import to_schema

T = TypeVar("T")


class Mood(enum.Enum):
    HAPPY = "happy"
    SAD = "sad"


class Plain:
    pass


@to_schema
@dataclasses.dataclass
class Tree:
    label: str
    children: "list[Tree]"
    parent: Optional["Tree"] = None


@pytest.mark.parametrize(
    ("annotation", "expected"),
    [
        (bool, {"type": "boolean"}),
        (int, {"type": "integer"}),
        (float, {"type": "number"}),
        (str, {"type": "string"}),
        (bytes, {"type": "string", "format": "binary"}),
        (datetime.datetime, {"type": "string", "format": "date-time"}),
        (datetime.date, {"type": "string", "format": "date"}),
        (uuid.UUID, {"type": "string", "format": "uuid"}),
        (decimal.Decimal, {"type": "string", "format": "decimal"}),
        (None, {"type": "null"}),
        (Any, {}),
        (object, {}),
        (list[int], {"type": "array", "items": {"type": "integer"}}),
        (collections.abc.Sequence[str], {"type": "array", "items": {"type": "string"}}),
        (set[str], {"type": "array", "items": {"type": "string"}, "uniqueItems": True}),
        (tuple[int, ...], {"type": "array", "items": {"type": "integer"}}),
        (
            tuple[int, str],
            {
                "type": "array",
                "prefixItems": [{"type": "integer"}, {"type": "string"}],
                "minItems": 2,
                "maxItems": 2,
            },
        ),
        (dict[str, float], {"type": "object", "additionalProperties": {"type": "number"}}),
        (Literal["a", "b"], {"type": "string", "enum": ["a", "b"]}),
        (Optional[int], {"type": ["integer", "null"]}),
        (Union[int, str], {"oneOf": [{"type": "integer"}, {"type": "string"}]}),
        (Mood, {"type": "string", "enum": ["happy", "sad"]}),
    ],
)
def test_field_schema_maps_runtime_types(annotation: object, expected: dict) -> None:
    assert schemagen.field_schema(annotation) == expected


def test_field_schema_resolves_type_variables_through_args() -> None:
    assert schemagen.field_schema(list[T], {T: int}) == {
        "type": "array",
        "items": {"type": "integer"},
    }
    assert schemagen.field_schema(T) == {}


def test_field_schema_rejects_undecorated_classes() -> None:
    with pytest.raises(schemagen.BoundError, match="does not implement ToSchema"):
        schemagen.field_schema(Plain)


def test_field_schema_rejects_unresolvable_names() -> None:
    with pytest.raises(schemagen.BoundError, match="cannot resolve"):
        schemagen.field_schema("NoSuchType", owner=Tree)


def test_self_referencing_record_derives_without_recursion(components) -> None:
    result = schemagen.schema_for(Tree, components)
    tree_ref = {"$ref": result.ref_location}

    assert components.schemas[result.name] == {
        "type": "object",
        "properties": {
            "label": {"type": "string"},
            "children": {"type": "array", "items": tree_ref},
            "parent": {"oneOf": [{"type": "null"}, tree_ref], "default": None},
        },
        "required": ["label", "children"],
    }
    assert components.pending == set()


@pytest.mark.parametrize(
    ("tp", "expected"),
    [
        (int, "int"),
        (list[int], "list<int>"),
        (dict[str, list[int]], "dict<str, list<int>>"),
        (T, "T"),
        (Mood, f"{__name__}.Mood"),
        (None, "None"),
    ],
)
def test_type_name(tp: object, expected: str) -> None:
    assert schemagen.type_name(tp) == expected


def test_components_insert_overwrites(components) -> None:
    components.insert("A", {"type": "string"})
    components.insert("A", {"type": "integer"})

    assert components.schemas == {"A": {"type": "integer"}}
    assert len(components) == 1
    assert components.to_dict() == {"schemas": {"A": {"type": "integer"}}}


def test_ref_points_into_component_schemas() -> None:
    ref = schemagen.Ref.schema("Pet")

    assert ref.ref_location == "#/components/schemas/Pet"
    assert ref.name == "Pet"
    assert ref.to_dict() == {"$ref": "#/components/schemas/Pet"}


def test_empty_is_a_fresh_dict() -> None:
    first = schemagen.empty()
    first["type"] = "string"

    assert schemagen.empty() == {}


@pytest.mark.parametrize(
    ("schema", "expected"),
    [
        ({"type": "string"}, {"type": ["string", "null"]}),
        ({"type": ["string", "null"]}, {"type": ["string", "null"]}),
        ({"type": "string", "enum": ["a"]}, {"type": ["string", "null"], "enum": ["a", None]}),
        ({"$ref": "#/components/schemas/X"}, {"oneOf": [{"type": "null"}, {"$ref": "#/components/schemas/X"}]}),
        ({}, {}),
    ],
)
def test_nullable(schema: dict, expected: dict) -> None:
    assert schemagen.nullable(schema) == expected


def test_implements_to_schema() -> None:
    assert schemagen.implements_to_schema(int)
    assert schemagen.implements_to_schema(list[Tree])
    assert not schemagen.implements_to_schema(Plain)
    assert not schemagen.implements_to_schema(dict[str, Plain])


def test_resolve_capability_finds_module_names_and_builtins() -> None:
    assert schemagen.resolve_capability("ToSchema", Tree) == "ToSchema"
    assert schemagen.resolve_capability("Plain", Tree) is Plain
    assert schemagen.resolve_capability("int", Tree) is int
    assert schemagen.resolve_capability("collections.abc.Hashable", Tree) is collections.abc.Hashable
    with pytest.raises(schemagen.BoundError):
        schemagen.resolve_capability("NoSuchCapability", Tree)


@to_schema
@dataclasses.dataclass
class Slot(Generic[T]):
    item: T


@to_schema
@dataclasses.dataclass
class IntSlot(Slot[int]):
    label: str


@to_schema
@dataclasses.dataclass
class Leaf:
    name: str


def test_concrete_subclass_binds_inherited_type_arguments(components) -> None:
    result = schemagen.schema_for(IntSlot, components)

    assert schemagen.bind_type_args(IntSlot) == {T: int}
    assert components.schemas[result.name] == {
        "type": "object",
        "properties": {"item": {"type": "integer"}, "label": {"type": "string"}},
        "required": ["item", "label"],
    }


def test_string_type_argument_resolves_in_owner_module(components) -> None:
    result = schemagen.schema_for(Slot["Leaf"], components)

    assert schemagen.bind_type_args(Slot["Leaf"]) == {T: Leaf}
    assert result.name == f"{__name__}.Slot<{__name__}.Leaf>"
    assert components.schemas[result.name] == {
        "type": "object",
        "properties": {"item": {"$ref": f"#/components/schemas/{__name__}.Leaf"}},
        "required": ["item"],
    }


def test_evaluate_annotation_uses_given_namespaces() -> None:
    assert schemagen.evaluate_annotation("list[Plain]", {"Plain": Plain}, {}) == list[Plain]
    assert schemagen.evaluate_annotation("Optional[Tree]", vars(typing), {"Tree": Tree}) == Optional[Tree]
    with pytest.raises(NameError):
        schemagen.evaluate_annotation("Missing", {}, {})

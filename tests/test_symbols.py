import copy
import dataclasses
from typing import Generic, NamedTuple, TypeVar

import pytest

import schemagen
from schemagen import to_schema

T = TypeVar("T")


@to_schema(symbol="Pair")
@dataclasses.dataclass
class Pair(Generic[T]):
    first: T
    second: T


@to_schema
class Status:
    pass


@to_schema(inline=True)
class Wrapper(NamedTuple):
    value: int


@to_schema(symbol="api :: Pet")
@dataclasses.dataclass
class Pet:
    name: str


@to_schema
@dataclasses.dataclass
class Owner:
    name: str


def _plan_symbol(cls: type, **options: object) -> str | None:
    definition = schemagen.describe_type(cls, options)
    shape = schemagen.classify(definition)
    return schemagen.plan_symbol(shape, definition)


def test_generic_symbol_override_registers_instantiated_name(components) -> None:
    result = schemagen.schema_for(Pair[int], components)

    assert result == schemagen.Ref("#/components/schemas/Pair<int>")
    assert result.to_dict() == {"$ref": "#/components/schemas/Pair<int>"}
    assert components.schemas == {
        "Pair<int>": {
            "type": "object",
            "properties": {
                "first": {"type": "integer"},
                "second": {"type": "integer"},
            },
            "required": ["first", "second"],
        }
    }


def test_distinct_instantiations_register_separately(components) -> None:
    schemagen.schema_for(Pair[int], components)
    schemagen.schema_for(Pair[str], components)

    assert set(components.schemas) == {"Pair<int>", "Pair<str>"}
    assert components.schemas["Pair<str>"]["properties"]["first"] == {"type": "string"}


def test_bare_generic_with_override_falls_back_to_runtime_name(components) -> None:
    result = schemagen.schema_for(Pair, components)

    assert result.name == f"{Pair.__module__}.Pair"
    assert components.schemas[result.name]["properties"]["first"] == {}


def test_unit_marker_returns_empty_schema_without_registering(components) -> None:
    assert schemagen.schema_for(Status, components) == {}
    assert components.schemas == {}


def test_inline_positional_newtype_returns_field_schema(components) -> None:
    assert schemagen.schema_for(Wrapper, components) == {"type": "integer"}
    assert components.schemas == {}
    assert schemagen.get_plan(Wrapper).symbol_source is None


def test_symbol_override_without_generics_normalizes_separators(components) -> None:
    result = schemagen.schema_for(Pet, components)

    assert result.name == "api.Pet"
    assert "api.Pet" in components


def test_no_override_uses_runtime_name(components) -> None:
    result = schemagen.schema_for(Owner, components)

    assert result.name == f"{Owner.__module__}.Owner"
    assert result.ref_location == f"#/components/schemas/{Owner.__module__}.Owner"


def test_registering_same_symbol_twice_is_idempotent(components) -> None:
    schemagen.schema_for(Owner, components)
    snapshot = copy.deepcopy(components.schemas)

    schemagen.schema_for(Owner, components)

    assert components.schemas == snapshot


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("api::Pet", "api.Pet"),
        ("api :: v1 :: Pet", "api.v1.Pet"),
        ("Pet", "Pet"),
    ],
)
def test_normalize_symbol_replaces_separators(raw: str, expected: str) -> None:
    assert schemagen.normalize_symbol(raw) == expected


def test_instantiated_symbol_uses_structural_arguments() -> None:
    assert schemagen.instantiated_symbol("Pair", Pair[list[int]]) == "Pair<list<int>>"
    assert (
        schemagen.instantiated_symbol("Pair", Pair[Owner])
        == f"Pair<{Owner.__module__}.Owner>"
    )
    assert schemagen.instantiated_symbol("Pair", Pair) == f"{Pair.__module__}.Pair"


def test_plan_symbol_sources_follow_precedence() -> None:
    assert _plan_symbol(Owner) == "type_name(ty).replace('::', '.')"
    assert _plan_symbol(Owner, symbol="a::B") == "normalize_symbol('a::B')"
    assert _plan_symbol(Pair, symbol="Pair") == "instantiated_symbol('Pair', ty)"
    assert _plan_symbol(Owner, inline=True) is None
    assert _plan_symbol(Owner, inline=False) == "type_name(ty).replace('::', '.')"


def test_plan_symbol_ignores_options_on_unit_marker() -> None:
    assert _plan_symbol(Status, symbol="Ignored", inline=False) is None


def test_plan_registration_inline_returns_schema_directly() -> None:
    assert schemagen.plan_registration(None, "empty()") == ("return empty()",)


def test_plan_registration_inserts_before_returning_reference() -> None:
    body = schemagen.plan_registration("'X'", "{'type': 'object'}")

    assert body[0] == "symbol = 'X'"
    insert_at = body.index("components.insert(symbol, schema)")
    assert body.index("    schema = {'type': 'object'}") < insert_at
    assert body[insert_at + 1] == "return Ref.schema(symbol)"
    assert body[-1] == "return Ref.schema(symbol)"

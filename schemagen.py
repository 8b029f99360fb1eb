"""OpenAPI schema derivation for Python classes.

Decorating a class with `@to_schema(...)` reads its structure, plans a
schema-construction procedure for it, compiles that procedure and attaches
it to the class. Running the procedure against a `Components` registry
yields an OpenAPI 3.1 schema, registered by name unless the class is
inlined.

Usage:
    python -m schemagen --module myapp.models --output openapi.json
"""

import argparse
import builtins
import collections
import collections.abc
import copy
import ctypes
import dataclasses
import datetime
import decimal
import enum
import importlib
import inspect
import json
import math
import re
import sys
import types
import typing
import uuid
import warnings
from collections.abc import Callable
from dataclasses import MISSING, dataclass
from pathlib import Path
from typing import Any


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    module: str
    type_names: tuple[str, ...]
    output: Path | None
    indent: int


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    module: str
    type_name: str | None


VALID_ERROR_CODES = {
    "MISSING_MODULE",
    "MODULE_NOT_FOUND",
    "TYPE_NOT_FOUND",
    "CONFLICT_GENERATE_DISCOVERY",
    "INVALID_INDENT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schemagen",
        description="Derive OpenAPI schemas from classes decorated with @to_schema",
    )

    parser.add_argument("--module", type=str, default=None)
    parser.add_argument("--type", dest="types", action="append", default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--indent", type=int, default=2)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--list-types", action="store_true", default=False)
    discovery_group.add_argument("--show-source", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    type_names = tuple(args.types or ())
    has_generate_input = bool(type_names or args.output is not None)
    has_discovery_command = bool(args.list_types or args.show_source)

    if has_generate_input and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode (--type/--output) or one discovery command.",
        )

    if not args.module:
        raise ConfigError(
            "MISSING_MODULE",
            "A target module is required.",
            "Pass an importable module path: --module myapp.models",
        )

    if has_discovery_command:
        command = "list-types" if args.list_types else "show-source"
        return DiscoveryConfig(
            command=command,
            module=args.module,
            type_name=args.show_source,
        )

    if args.indent < 0:
        raise ConfigError(
            "INVALID_INDENT",
            f"--indent must be zero or positive, got {args.indent}",
            "Use --indent 0 for compact output.",
        )

    return GenerateConfig(
        module=args.module,
        type_names=type_names,
        output=args.output,
        indent=args.indent,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Diagnostics ---=== #


VALID_DIAGNOSTIC_CODES = {
    "UNKNOWN_FEATURE",
    "INVALID_FEATURE",
    "INVALID_RENAME_RULE",
    "INVALID_BOUND",
    "UNSUPPORTED_DATA",
}


class Diagnostic(Exception):
    """Generation-time error pointing at the offending class definition.

    Raised while a class is read, classified or planned. Generation for that
    class aborts and no procedure is attached to it.

    Attributes:
        code: One of VALID_DIAGNOSTIC_CODES.
        message: Human-readable description of the problem.
        location: "module:qualname (file:line)" of the definition, if known.
        suggestion: Optional hint printed after the error.
    """

    def __init__(
        self,
        code: str,
        message: str,
        location: str | None = None,
        suggestion: str | None = None,
    ):
        if code not in VALID_DIAGNOSTIC_CODES:
            raise ValueError(f"Unknown diagnostic code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.location = location
        self.suggestion = suggestion

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


class BoundError(TypeError):
    """A type argument does not satisfy the bounds of a schema procedure."""


class ConflictingFeaturesWarning(UserWarning):
    pass


def source_location(obj: object) -> str:
    module = getattr(obj, "__module__", None) or "?"
    qualname = getattr(obj, "__qualname__", None) or repr(obj)
    location = f"{module}:{qualname}"
    try:
        filename = inspect.getsourcefile(obj)
        _, line = inspect.getsourcelines(obj)
    except (OSError, TypeError):
        return location
    if filename is None:
        return location
    return f"{location} ({filename}:{line})"


# ===--- Runtime ---=== #


SCHEMA_REF_PREFIX = "#/components/schemas/"
TO_SCHEMA = "ToSchema"
PROCEDURE_ATTR = "__schema_procedure__"
PLAN_ATTR = "__schema_plan__"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# A field default or example that was never given. None is a real value.
UNSET = _Unset()


@dataclass(frozen=True)
class Ref:
    ref_location: str

    @classmethod
    def schema(cls, name: str) -> "Ref":
        return cls(f"{SCHEMA_REF_PREFIX}{name}")

    @property
    def name(self) -> str:
        return self.ref_location.removeprefix(SCHEMA_REF_PREFIX)

    def to_dict(self) -> dict:
        return {"$ref": self.ref_location}


class Components:
    """Named schemas shared by every procedure run for one document.

    `insert` overwrites: the last schema registered under a name wins.
    `pending` holds the symbols whose schemas are being built further up
    the current call stack.
    """

    def __init__(self):
        self.schemas: dict[str, dict] = {}
        self.pending: set[str] = set()

    def insert(self, name: str, schema: dict) -> None:
        self.schemas[name] = schema

    def __contains__(self, name: object) -> bool:
        return name in self.schemas

    def __len__(self) -> int:
        return len(self.schemas)

    def to_dict(self) -> dict:
        return {"schemas": dict(self.schemas)}


def empty() -> dict:
    return {}


def type_name(tp: object) -> str:
    """Runtime name of a type, with type arguments as `origin<arg, ...>`.

    Builtins print bare (`int`), other classes as `module.qualname`.
    """
    if isinstance(tp, typing.TypeVar):
        return tp.__name__
    if isinstance(tp, typing.ForwardRef):
        return tp.__forward_arg__
    if isinstance(tp, str):
        return tp
    if tp is None or tp is type(None):
        return "None"
    if tp is Ellipsis:
        return "..."
    if tp is Any:
        return "Any"
    origin = typing.get_origin(tp)
    if origin is typing.Annotated:
        return type_name(typing.get_args(tp)[0])
    if origin is not None:
        args = typing.get_args(tp)
        if not args:
            return type_name(origin)
        return f"{type_name(origin)}<{', '.join(type_name(arg) for arg in args)}>"
    if isinstance(tp, type):
        if tp.__module__ == "builtins":
            return tp.__qualname__
        return f"{tp.__module__}.{tp.__qualname__}"
    return repr(tp)


def type_arguments(tp: object) -> tuple:
    if typing.get_origin(tp) is typing.Annotated:
        tp = typing.get_args(tp)[0]
    if typing.get_origin(tp) is None:
        return ()
    return typing.get_args(tp)


def instantiated_symbol(symbol: str, ty: object) -> str:
    """Splice the type arguments of `ty` after an overridden symbol.

    `instantiated_symbol("Pair", Pair[int])` is `"Pair<int>"`. Without type
    arguments the raw runtime name of `ty` is returned.
    """
    args = type_arguments(ty)
    if not args:
        return type_name(ty)
    return f"{symbol}<{', '.join(type_name(arg) for arg in args)}>"


_SEPARATOR_RE = re.compile(r"\s*::\s*")


def normalize_symbol(symbol: str) -> str:
    return _SEPARATOR_RE.sub(".", symbol)


_PRIMITIVE_SCHEMAS = {
    bool: {"type": "boolean"},
    int: {"type": "integer"},
    float: {"type": "number"},
    str: {"type": "string"},
    bytes: {"type": "string", "format": "binary"},
    datetime.datetime: {"type": "string", "format": "date-time"},
    datetime.date: {"type": "string", "format": "date"},
    datetime.time: {"type": "string", "format": "time"},
    datetime.timedelta: {"type": "string", "format": "duration"},
    uuid.UUID: {"type": "string", "format": "uuid"},
    decimal.Decimal: {"type": "string", "format": "decimal"},
}

_SEQUENCE_ORIGINS = {
    list,
    collections.deque,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Collection,
    collections.abc.Iterable,
}

_SET_ORIGINS = {
    set,
    frozenset,
    collections.abc.Set,
    collections.abc.MutableSet,
}

_MAPPING_ORIGINS = {
    dict,
    collections.OrderedDict,
    collections.defaultdict,
    collections.abc.Mapping,
    collections.abc.MutableMapping,
}

_UNION_ORIGINS = {typing.Union, types.UnionType}


def nullable(schema: dict) -> dict:
    if not schema:
        return schema
    kind = schema.get("type")
    if isinstance(kind, str) and "$ref" not in schema:
        widened = {**schema, "type": [kind, "null"]}
        if "enum" in widened and None not in widened["enum"]:
            widened["enum"] = [*widened["enum"], None]
        return widened
    if isinstance(kind, list):
        if "null" in kind:
            return schema
        return {**schema, "type": [*kind, "null"]}
    return {"oneOf": [{"type": "null"}, schema]}


def _json_kind(value: object) -> str | None:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "null"
    return None


def _values_schema(values) -> dict:
    values = list(values)
    kinds: list[str] = []
    for value in values:
        kind = _json_kind(value)
        if kind is not None and kind not in kinds:
            kinds.append(kind)
    schema: dict = {}
    if len(kinds) == 1:
        schema["type"] = kinds[0]
    elif kinds:
        schema["type"] = kinds
    schema["enum"] = values
    return schema


def _const_schema(value: object) -> dict:
    schema: dict = {}
    kind = _json_kind(value)
    if kind is not None:
        schema["type"] = kind
    schema["const"] = value
    return schema


def enum_discriminant(member: enum.Enum) -> object:
    value = member.value
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    return member.name


def _json_value(value: object) -> object:
    if isinstance(value, enum.Enum):
        return enum_discriminant(value)
    return value


def _is_optional(annotation: object) -> bool:
    if typing.get_origin(annotation) is typing.Annotated:
        annotation = typing.get_args(annotation)[0]
    if typing.get_origin(annotation) not in _UNION_ORIGINS:
        return False
    return type(None) in typing.get_args(annotation)


def resolve_annotation(annotation: object, owner: type | None = None) -> object:
    """Evaluate a string or forward-reference annotation in its owner's module.

    The owner class and its type parameters are visible by name, so
    self-references resolve. Names that still cannot be found leave the
    annotation as a string.
    """
    if isinstance(annotation, typing.ForwardRef):
        annotation = annotation.__forward_arg__
    if not isinstance(annotation, str):
        return annotation
    module = sys.modules.get(getattr(owner, "__module__", None) or "")
    namespace = dict(vars(module)) if module is not None else {}
    if owner is not None:
        namespace.setdefault(owner.__name__, owner)
        for param in getattr(owner, "__parameters__", ()) or ():
            namespace.setdefault(getattr(param, "__name__", ""), param)
    try:
        return evaluate_annotation(annotation, namespace, namespace)
    except NameError:
        return annotation


def evaluate_annotation(text: str, globalns: dict, localns: dict) -> object:
    """Evaluate annotation text with `typing.get_type_hints`.

    Raises:
        NameError: The text names something missing from both namespaces.
    """

    def holder():
        pass

    holder.__annotations__ = {"value": text}
    return typing.get_type_hints(holder, globalns, localns, include_extras=True)["value"]


def _typevar_default(param: typing.TypeVar) -> object:
    has_default = getattr(param, "has_default", None)
    if has_default is None or not has_default():
        return UNSET
    return param.__default__


def _substitute(annotation: object, args: dict) -> object:
    if not args:
        return annotation
    if isinstance(annotation, typing.TypeVar):
        return args.get(annotation, annotation)
    params = getattr(annotation, "__parameters__", ())
    if not params or typing.get_origin(annotation) is None:
        return annotation
    return annotation[tuple(args.get(param, param) for param in params)]


def _own_type_args(ty: object) -> dict:
    origin = typing.get_origin(ty)
    if origin is None:
        return {}
    bound = {}
    params = getattr(origin, "__parameters__", ()) or ()
    for param, value in zip(params, typing.get_args(ty)):
        if not isinstance(param, typing.TypeVar):
            break
        bound[param] = resolve_annotation(value, origin)
    return bound


def _inherited_type_args(cls: type, args: dict) -> dict:
    args = dict(args)
    for base in cls.__dict__.get("__orig_bases__", ()):
        origin = typing.get_origin(base)
        if not isinstance(origin, type) or origin is typing.Generic:
            continue
        params = getattr(origin, "__parameters__", ()) or ()
        values = {
            param: resolve_annotation(_substitute(value, args), cls)
            for param, value in zip(params, typing.get_args(base))
            if isinstance(param, typing.TypeVar)
        }
        args.update(_inherited_type_args(origin, values))
    return args


def bind_type_args(ty: object) -> dict:
    """Type arguments of `ty` keyed by TypeVar, plus those fixed by its bases.

    `class IntBox(Box[int])` binds Box's parameter to int, so inherited
    fields annotated with it resolve. String arguments are evaluated in the
    module of the class they parameterize.
    """
    cls = typing.get_origin(ty) or ty
    own = _own_type_args(ty)
    if not isinstance(cls, type):
        return own
    return _inherited_type_args(cls, own)


def field_schema(
    annotation: object,
    args: dict | None = None,
    components: "Components | None" = None,
    *,
    inline: bool = False,
    owner: type | None = None,
) -> dict:
    """Schema for one field annotation.

    Args:
        annotation: The field's type annotation, possibly a string.
        args: Type arguments of the running procedure, keyed by TypeVar.
        components: Registry that decorated classes register into.
        inline: Embed a referenced schema instead of returning a `$ref`.
        owner: Class the annotation belongs to, for forward references.

    Returns:
        A JSON schema dict.

    Raises:
        BoundError: The annotation names a type that cannot produce a schema.
    """
    args = args or {}
    if components is None:
        components = Components()
    annotation = resolve_annotation(annotation, owner)
    if isinstance(annotation, str):
        raise BoundError(f"cannot resolve annotation {annotation!r} of {type_name(owner)}")

    def nested(item: object) -> dict:
        return field_schema(item, args, components, inline=inline, owner=owner)

    if isinstance(annotation, typing.TypeVar):
        if annotation in args:
            return field_schema(args[annotation], None, components, inline=inline, owner=owner)
        default = _typevar_default(annotation)
        if default is UNSET:
            return {}
        return nested(default)

    origin = typing.get_origin(annotation)
    type_args = typing.get_args(annotation)

    if origin is typing.Annotated:
        return nested(type_args[0])
    if annotation is Any or annotation is object:
        return {}
    if annotation is None or annotation is type(None):
        return {"type": "null"}
    if origin is typing.Literal:
        return _values_schema(_json_value(value) for value in type_args)

    if origin in _UNION_ORIGINS:
        members = [item for item in type_args if item is not type(None)]
        if len(members) == 1:
            schema = nested(members[0])
        else:
            schema = {"oneOf": [nested(item) for item in members]}
        if len(members) < len(type_args):
            schema = nullable(schema)
        return schema

    target = origin if origin is not None else annotation
    if has_procedure(target):
        result = schema_for(_substitute(annotation, args), components)
        if isinstance(result, Ref):
            if inline and result.name in components.schemas:
                return copy.deepcopy(components.schemas[result.name])
            return result.to_dict()
        return result

    if isinstance(annotation, type) and annotation in _PRIMITIVE_SCHEMAS:
        return dict(_PRIMITIVE_SCHEMAS[annotation])

    if target is tuple:
        if not type_args:
            return {"type": "array"}
        if len(type_args) == 2 and type_args[1] is Ellipsis:
            return {"type": "array", "items": nested(type_args[0])}
        return {
            "type": "array",
            "prefixItems": [nested(item) for item in type_args],
            "minItems": len(type_args),
            "maxItems": len(type_args),
        }

    if target in _SEQUENCE_ORIGINS:
        items = nested(type_args[0]) if type_args else {}
        return {"type": "array", "items": items}

    if target in _SET_ORIGINS:
        items = nested(type_args[0]) if type_args else {}
        return {"type": "array", "items": items, "uniqueItems": True}

    if target in _MAPPING_ORIGINS:
        values = nested(type_args[1]) if len(type_args) == 2 else {}
        return {"type": "object", "additionalProperties": values}

    if isinstance(annotation, type) and issubclass(annotation, enum.Enum):
        return _values_schema(enum_discriminant(member) for member in annotation)

    raise BoundError(
        f"{type_name(annotation)} does not implement {TO_SCHEMA}; "
        "decorate it with @to_schema"
    )


def implements_to_schema(tp: object) -> bool:
    try:
        field_schema(tp, None, Components())
    except BoundError:
        return False
    return True


def _lookup_dotted(name: str) -> object:
    parts = name.split(".")
    for index in range(len(parts) - 1, 0, -1):
        try:
            found: object = importlib.import_module(".".join(parts[:index]))
        except ImportError:
            continue
        for attr in parts[index:]:
            found = getattr(found, attr, None)
            if found is None:
                return None
        return found
    return None


def resolve_capability(name: str, owner: type | None) -> object:
    """Resolve a capability named in a bound to a class, or to TO_SCHEMA."""
    if name == TO_SCHEMA:
        return TO_SCHEMA
    module = sys.modules.get(getattr(owner, "__module__", None) or "")
    namespace = vars(module) if module is not None else {}
    head, *rest = name.split(".")
    if head in namespace:
        found = namespace[head]
        for attr in rest:
            found = getattr(found, attr, None)
    elif not rest and hasattr(builtins, head):
        found = getattr(builtins, head)
    else:
        found = _lookup_dotted(name)
    if not isinstance(found, type):
        raise BoundError(f"bound {name!r} of {type_name(owner)} does not name a class")
    return found


def _satisfies(arg: object, required: object) -> bool:
    if required == TO_SCHEMA:
        return implements_to_schema(arg)
    target = typing.get_origin(arg) or arg
    required = typing.get_origin(required) or required
    return isinstance(target, type) and isinstance(required, type) and issubclass(target, required)


def _check_capability(
    arg: object,
    capability: str,
    param: str,
    owner: type | None,
    bound_types: tuple = (),
) -> None:
    if bound_types:
        alternatives = (_resolve_bound_type(item, owner) for item in bound_types)
    else:
        alternatives = (resolve_capability(name.strip(), owner) for name in capability.split("|"))
    if any(_satisfies(arg, required) for required in alternatives):
        return
    raise BoundError(
        f"{type_name(arg)} does not satisfy {param}: {capability} "
        f"required by {type_name(owner)}"
    )


def _resolve_bound_type(bound: object, owner: type | None) -> object:
    resolved = resolve_annotation(bound, owner)
    if isinstance(resolved, str):
        raise BoundError(f"cannot resolve bound {resolved!r} of {type_name(owner)}")
    return resolved


def require_bounds(ty: object, generics: "Generics", owner: type | None = None) -> dict:
    """Bind the type arguments of `ty` and check them against `generics`.

    Declared TypeVar bounds are checked against the bound classes kept on
    each parameter; where-clause predicates are resolved by name. Parameters
    without an argument (a bare generic class) are not checked.

    Returns:
        The bound type arguments, keyed by TypeVar.

    Raises:
        BoundError: An argument does not satisfy a bound.
    """
    args = bind_type_args(ty)
    by_name = {param.__name__: value for param, value in _own_type_args(ty).items()}
    for param in generics.type_params():
        if param.name not in by_name:
            continue
        for bound in param.bounds:
            _check_capability(by_name[param.name], bound, param.name, owner, param.bound_types)
    for predicate in generics.where:
        if predicate.param not in by_name:
            continue
        for capability in predicate.capabilities:
            _check_capability(by_name[predicate.param], capability, predicate.param, owner)
    return args


def has_procedure(cls: object) -> bool:
    return isinstance(cls, type) and PROCEDURE_ATTR in vars(cls)


def get_procedure(cls: object) -> Callable:
    if not has_procedure(cls):
        raise BoundError(
            f"{type_name(cls)} does not implement {TO_SCHEMA}; "
            "decorate it with @to_schema"
        )
    return vars(cls)[PROCEDURE_ATTR]


def schema_for(tp: object, components: Components) -> "dict | Ref":
    """Run the procedure of `tp` (a decorated class, or one parameterized)."""
    origin = typing.get_origin(tp) or tp
    return get_procedure(origin)(_resolve_type_args(tp), components)


def _resolve_type_args(tp: object) -> object:
    origin = typing.get_origin(tp)
    if not isinstance(origin, type):
        return tp
    args = typing.get_args(tp)
    resolved = tuple(resolve_annotation(arg, origin) for arg in args)
    if any(isinstance(arg, str) for arg in resolved) or resolved == args:
        return tp
    return origin[resolved if len(resolved) > 1 else resolved[0]]


RUNTIME_NAMESPACE = {
    "Components": Components,
    "Ref": Ref,
    "bind_type_args": bind_type_args,
    "deepcopy": copy.deepcopy,
    "empty": empty,
    "field_schema": field_schema,
    "instantiated_symbol": instantiated_symbol,
    "normalize_symbol": normalize_symbol,
    "nullable": nullable,
    "require_bounds": require_bounds,
    "type_name": type_name,
}


# ===--- Data model ---=== #


@dataclass(frozen=True)
class GenericParam:
    name: str
    bounds: tuple[str, ...] = ()
    default: str | None = None
    kind: str = "type"
    bound_types: tuple = dataclasses.field(default=(), compare=False, repr=False)

    def render(self) -> str:
        text = self.name if self.kind == "type" else f"*{self.name}"
        if self.bounds:
            text += ": " + " + ".join(self.bounds)
        if self.default is not None:
            text += f" = {self.default}"
        return text


@dataclass(frozen=True)
class WherePredicate:
    param: str
    capabilities: tuple[str, ...]

    def render(self) -> str:
        return f"{self.param}: {' + '.join(self.capabilities)}"


@dataclass(frozen=True)
class Generics:
    """Generic signature of a schema procedure.

    Attributes:
        params: Class type parameters in declaration order.
        where: Extra predicates attached by the bound planner.
    """

    params: tuple[GenericParam, ...] = ()
    where: tuple[WherePredicate, ...] = ()

    def type_params(self) -> tuple[GenericParam, ...]:
        return tuple(param for param in self.params if param.kind == "type")

    def render_params(self) -> str:
        if not self.params:
            return ""
        return "[" + ", ".join(param.render() for param in self.params) + "]"

    def render_type_args(self) -> str:
        if not self.params:
            return ""
        return "[" + ", ".join(param.name for param in self.params) + "]"

    def render_where(self) -> str:
        if not self.where:
            return ""
        return " where " + ", ".join(predicate.render() for predicate in self.where)


@dataclass(frozen=True)
class XmlAttr:
    """OpenAPI `xml` object for a record or one of its fields."""

    name: str | None = None
    namespace: str | None = None
    prefix: str | None = None
    attribute: bool = False
    wrapped: bool = False

    def to_dict(self) -> dict:
        result: dict = {}
        for key in ("name", "namespace", "prefix"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.attribute:
            result["attribute"] = True
        if self.wrapped:
            result["wrapped"] = True
        return result


@dataclass(frozen=True)
class SchemaField:
    """Field attributes given as `Annotated` metadata.

    Every attribute left at None (or UNSET for `default` and `example`)
    is unset. Several SchemaField entries on one field are merged; setting
    the same attribute twice is an error.
    """

    rename: str | None = None
    skip: bool | None = None
    flatten: bool | None = None
    inline: bool | None = None
    nullable: bool | None = None
    default: Any = UNSET
    example: Any = UNSET
    description: str | None = None
    deprecated: bool | None = None
    read_only: bool | None = None
    write_only: bool | None = None
    format: str | None = None
    schema_with: Callable[[], dict] | None = None
    xml: XmlAttr | None = None


def schema_field(*, default=MISSING, default_factory=MISSING, **attrs):
    """`dataclasses.field` carrying SchemaField attributes in its metadata."""
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={"schema": SchemaField(**attrs)},
    )


@dataclass(frozen=True)
class FieldAttrs:
    rename: str | None = None
    skip: bool = False
    flatten: bool = False
    inline: bool = False
    nullable: bool = False
    default: Any = UNSET
    example: Any = UNSET
    description: str | None = None
    deprecated: bool = False
    read_only: bool = False
    write_only: bool = False
    format: str | None = None
    schema_with: Callable[[], dict] | None = None
    xml: XmlAttr | None = None


@dataclass(frozen=True)
class FieldDef:
    name: str | None
    annotation: Any
    attrs: FieldAttrs = FieldAttrs()
    default: Any = UNSET
    has_default: bool = False


@dataclass(frozen=True)
class Fields:
    style: str
    items: tuple[FieldDef, ...] = ()


@dataclass(frozen=True)
class VariantAttrs:
    rename: str | None = None
    skip: bool = False


VARIANT_ATTR = "__schema_variant__"


def variant(cls=None, /, *, rename: str | None = None, skip: bool = False):
    """Attach variant options to a nested class of a SumType."""
    attrs = VariantAttrs(rename=rename, skip=skip)

    def decorate(cls):
        setattr(cls, VARIANT_ATTR, attrs)
        return cls

    if cls is None:
        return decorate
    return decorate(cls)


@dataclass(frozen=True)
class VariantDef:
    name: str
    fields: Fields
    attrs: VariantAttrs = VariantAttrs()
    source: Any = None


@dataclass(frozen=True)
class Data:
    kind: str
    fields: Fields | None = None
    variants: tuple[VariantDef, ...] = ()

    def iter_fields(self):
        if self.fields is not None:
            yield from self.fields.items
        for item in self.variants:
            if not item.attrs.skip:
                yield from item.fields.items


@dataclass(frozen=True)
class TypeDefinition:
    """A class read by the driver. The planners only read it.

    Attributes:
        ident: Bare class name.
        cls: The class itself.
        generics: Generic parameters from `cls.__parameters__`.
        options: Keyword options given to `@to_schema`.
        data: Structural form of the class.
        location: Source location used by diagnostics.
    """

    ident: str
    cls: type
    generics: Generics
    options: dict
    data: Data
    location: str

    @property
    def module(self) -> str:
        return self.cls.__module__

    @property
    def qualname(self) -> str:
        return self.cls.__qualname__


class SumType:
    """Base class for tagged unions.

    Each class nested directly in the body is one variant, in definition
    order. A variant with annotations is a named variant, a NamedTuple is a
    positional variant and a bare class is a unit variant.
    """


# ===--- Type driver ---=== #


def describe_type(cls: object, options: dict | None = None) -> TypeDefinition:
    if not inspect.isclass(cls):
        raise Diagnostic(
            "UNSUPPORTED_DATA",
            f"cannot derive a schema for {cls!r}: not a class",
            source_location(cls),
            "Apply @to_schema to a class definition.",
        )
    location = source_location(cls)
    return TypeDefinition(
        ident=cls.__name__,
        cls=cls,
        generics=describe_generics(cls),
        options=dict(options or {}),
        data=describe_data(cls, location),
        location=location,
    )


def describe_generics(cls: type) -> Generics:
    params = []
    for param in getattr(cls, "__parameters__", ()) or ():
        if not isinstance(param, typing.TypeVar):
            params.append(GenericParam(getattr(param, "__name__", repr(param)), kind="variadic"))
            continue
        if param.__constraints__:
            bound_types = tuple(param.__constraints__)
        elif param.__bound__ is not None:
            bound_types = (param.__bound__,)
        else:
            bound_types = ()
        bounds = (" | ".join(type_name(item) for item in bound_types),) if bound_types else ()
        default = _typevar_default(param)
        params.append(
            GenericParam(
                name=param.__name__,
                bounds=bounds,
                default=None if default is UNSET else type_name(default),
                bound_types=bound_types,
            )
        )
    return Generics(tuple(params))


def describe_data(cls: type, location: str | None = None) -> Data:
    if issubclass(cls, ctypes.Union):
        return Data("union")
    if getattr(cls, "_is_protocol", False):
        raise Diagnostic(
            "UNSUPPORTED_DATA",
            f"{cls.__qualname__} is a Protocol and describes no data",
            location,
        )
    if issubclass(cls, enum.Enum):
        variants = tuple(
            VariantDef(name=member.name, fields=Fields("unit"), source=member)
            for member in cls
        )
        return Data("enum", variants=variants)
    if issubclass(cls, SumType):
        variants = tuple(
            VariantDef(
                name=item.__name__,
                fields=describe_fields(item, location),
                attrs=vars(item).get(VARIANT_ATTR, VariantAttrs()),
                source=item,
            )
            for item in _nested_variants(cls)
        )
        return Data("enum", variants=variants)
    return Data("struct", fields=describe_fields(cls, location))


def _nested_variants(cls: type) -> list[type]:
    prefix = f"{cls.__qualname__}."
    return [
        value
        for value in vars(cls).values()
        if inspect.isclass(value) and value.__qualname__ == prefix + value.__name__
    ]


def describe_fields(cls: type, location: str | None = None) -> Fields:
    annotations = _class_annotations(cls)

    if issubclass(cls, tuple) and hasattr(cls, "_fields"):
        defaults = getattr(cls, "_field_defaults", {})
        items = tuple(
            _field_def(
                None,
                annotations.get(name, Any),
                defaults.get(name, UNSET),
                name in defaults,
                None,
                location,
            )
            for name in cls._fields
        )
        return Fields("unnamed", items)

    if dataclasses.is_dataclass(cls):
        items = []
        for item in dataclasses.fields(cls):
            has_default = item.default is not MISSING or item.default_factory is not MISSING
            items.append(
                _field_def(
                    item.name,
                    annotations.get(item.name, item.type),
                    UNSET if item.default is MISSING else item.default,
                    has_default,
                    item.metadata.get("schema"),
                    location,
                )
            )
        return Fields("named", tuple(items))

    if not annotations:
        return Fields("unit")
    items = []
    for name, annotation in annotations.items():
        default = getattr(cls, name, UNSET)
        items.append(_field_def(name, annotation, default, default is not UNSET, None, location))
    return Fields("named", tuple(items))


def _field_def(name, annotation, default, has_default, extra, location) -> FieldDef:
    annotation, metadata = _split_annotated(annotation)
    if extra is not None:
        metadata = (*metadata, extra)
    return FieldDef(
        name=name,
        annotation=annotation,
        attrs=parse_field_attrs(metadata, location),
        default=default,
        has_default=has_default,
    )


def _class_annotations(cls: type) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for base in reversed(cls.__mro__):
        if base is object:
            continue
        module = sys.modules.get(base.__module__)
        globalns = dict(vars(module)) if module is not None else {}
        localns = {cls.__name__: cls, base.__name__: base}
        for param in getattr(base, "__parameters__", ()) or ():
            localns[getattr(param, "__name__", "")] = param
        for name, raw in _raw_annotations(base).items():
            merged[name] = _resolve_field_annotation(raw, globalns, localns)
    return {name: value for name, value in merged.items() if not _is_classvar(value)}


def _raw_annotations(cls: type) -> dict[str, Any]:
    if sys.version_info >= (3, 14):
        import annotationlib

        return annotationlib.get_annotations(cls, format=annotationlib.Format.FORWARDREF)
    return dict(cls.__dict__.get("__annotations__", {}))


def _resolve_field_annotation(raw: object, globalns: dict, localns: dict) -> object:
    if isinstance(raw, typing.ForwardRef):
        raw = raw.__forward_arg__
    if not isinstance(raw, str) or _is_classvar(raw):
        return raw
    try:
        return evaluate_annotation(raw, globalns, localns)
    except NameError:
        # Resolved again when the procedure runs.
        return raw


def _split_annotated(annotation: object) -> tuple[object, tuple]:
    if typing.get_origin(annotation) is typing.Annotated:
        inner, *metadata = typing.get_args(annotation)
        return inner, tuple(metadata)
    return annotation, ()


def _is_classvar(annotation: object) -> bool:
    if isinstance(annotation, str):
        return annotation.startswith(("ClassVar", "typing.ClassVar"))
    return annotation is typing.ClassVar or typing.get_origin(annotation) is typing.ClassVar


_FIELD_ATTR_TYPES = {
    "rename": str,
    "skip": bool,
    "flatten": bool,
    "inline": bool,
    "nullable": bool,
    "description": str,
    "deprecated": bool,
    "read_only": bool,
    "write_only": bool,
    "format": str,
    "xml": XmlAttr,
}


def parse_field_attrs(metadata, location: str | None = None) -> FieldAttrs:
    """Merge the SchemaField entries of one field into FieldAttrs.

    Metadata entries that are not SchemaField instances are ignored.

    Raises:
        Diagnostic: INVALID_FEATURE for a repeated attribute, a value of the
            wrong type, or attributes that cannot be combined.
    """
    values: dict[str, Any] = {}
    for entry in metadata:
        if not isinstance(entry, SchemaField):
            continue
        for item in dataclasses.fields(entry):
            value = getattr(entry, item.name)
            if value is UNSET or (value is None and item.name not in ("default", "example")):
                continue
            if item.name in values:
                raise Diagnostic(
                    "INVALID_FEATURE",
                    f"field attribute {item.name!r} given more than once",
                    location,
                )
            expected = _FIELD_ATTR_TYPES.get(item.name)
            if expected is not None and not isinstance(value, expected):
                raise Diagnostic(
                    "INVALID_FEATURE",
                    f"field attribute {item.name!r} expects {expected.__name__}, "
                    f"got {type(value).__name__}",
                    location,
                )
            if item.name == "schema_with" and not callable(value):
                raise Diagnostic(
                    "INVALID_FEATURE",
                    "field attribute 'schema_with' expects a callable",
                    location,
                )
            values[item.name] = value

    if values.get("skip") and values.get("flatten"):
        raise Diagnostic("INVALID_FEATURE", "a field cannot be both skipped and flattened", location)
    if values.get("read_only") and values.get("write_only"):
        raise Diagnostic(
            "INVALID_FEATURE", "a field cannot be both read_only and write_only", location
        )
    return FieldAttrs(**values)


# ===--- Features ---=== #


@dataclass(frozen=True)
class Feature:
    value: Any


class Symbol(Feature):
    pass


class Inline(Feature):
    pass


@dataclass(frozen=True)
class Bound(Feature):
    predicates: tuple[WherePredicate, ...] = ()


class SkipBound(Feature):
    pass


class RenameAll(Feature):
    pass


class Description(Feature):
    pass


class Deprecated(Feature):
    pass


class Default(Feature):
    pass


class Example(Feature):
    pass


class Xml(Feature):
    pass


class Format(Feature):
    pass


class Tag(Feature):
    pass


class Content(Feature):
    pass


_FEATURE_SPECS = {
    "symbol": (Symbol, str),
    "inline": (Inline, bool),
    "bound": (Bound, str),
    "skip_bound": (SkipBound, bool),
    "rename_all": (RenameAll, str),
    "description": (Description, str),
    "deprecated": (Deprecated, bool),
    "default": (Default, object),
    "example": (Example, object),
    "xml": (Xml, XmlAttr),
    "format": (Format, str),
    "tag": (Tag, str),
    "content": (Content, str),
}

NAMED_RECORD_FEATURES = frozenset(
    {
        "symbol",
        "inline",
        "bound",
        "skip_bound",
        "rename_all",
        "description",
        "deprecated",
        "default",
        "example",
        "xml",
    }
)
POSITIONAL_RECORD_FEATURES = frozenset(
    {
        "symbol",
        "inline",
        "bound",
        "skip_bound",
        "description",
        "deprecated",
        "default",
        "example",
        "format",
    }
)
TAGGED_UNION_FEATURES = frozenset(
    {
        "symbol",
        "inline",
        "bound",
        "skip_bound",
        "rename_all",
        "description",
        "deprecated",
        "default",
        "example",
        "tag",
        "content",
    }
)


class FeatureSet:
    """Owned bag of parsed features.

    `pop` removes the feature it returns, so each feature is consumed by
    exactly one stage of planning.
    """

    def __init__(self, features=()):
        self._features: list[Feature] = list(features)

    def pop(self, kind: type[Feature]) -> Feature | None:
        for index, feature in enumerate(self._features):
            if type(feature) is kind:
                return self._features.pop(index)
        return None

    def has(self, kind: type[Feature]) -> bool:
        return any(type(feature) is kind for feature in self._features)

    def __iter__(self):
        return iter(tuple(self._features))

    def __len__(self) -> int:
        return len(self._features)

    def __repr__(self) -> str:
        return f"FeatureSet({self._features!r})"


def parse_features(
    options: dict,
    allowed: frozenset[str],
    subject: str,
    location: str | None = None,
    generics: Generics | None = None,
) -> FeatureSet:
    """Type-check decorator options against the features allowed for a shape.

    Args:
        options: Keyword options given to `@to_schema`.
        allowed: Option names valid for this shape.
        subject: Description used in messages, e.g. "named record Pet".
        location: Source location for diagnostics.
        generics: Declared generics, to check bound predicates against.

    Returns:
        A FeatureSet in option order.

    Raises:
        Diagnostic: UNKNOWN_FEATURE, INVALID_FEATURE, INVALID_RENAME_RULE or
            INVALID_BOUND.
    """
    features: list[Feature] = []
    for name, value in options.items():
        if name not in allowed:
            raise Diagnostic(
                "UNKNOWN_FEATURE",
                f"unknown option {name!r} for {subject}",
                location,
                f"Expected one of: {', '.join(sorted(allowed))}.",
            )
        kind, expected = _FEATURE_SPECS[name]
        if not isinstance(value, expected):
            raise Diagnostic(
                "INVALID_FEATURE",
                f"option {name!r} expects {expected.__name__}, got {type(value).__name__}",
                location,
            )
        if kind in (Symbol, Tag, Content) and not value.strip():
            raise Diagnostic("INVALID_FEATURE", f"option {name!r} cannot be empty", location)
        if kind is RenameAll and value not in RENAME_RULES:
            raise Diagnostic(
                "INVALID_RENAME_RULE",
                f"unknown rename rule {value!r}",
                location,
                f"Use one of: {', '.join(RENAME_RULES)}.",
            )
        if kind is Bound:
            try:
                predicates = parse_where_predicates(value, generics)
            except ValueError as err:
                raise Diagnostic(
                    "INVALID_BOUND",
                    f"invalid bound {value!r}: {err}",
                    location,
                    "Write bounds as 'T: Capability + Other, U: Capability'.",
                ) from err
            features.append(Bound(value, predicates))
            continue
        features.append(kind(value))
    return FeatureSet(features)


def _feature_value(feature: Feature | None) -> Any:
    return None if feature is None else feature.value


# ===--- Rename rules ---=== #


RENAME_RULES = (
    "lowercase",
    "UPPERCASE",
    "PascalCase",
    "camelCase",
    "snake_case",
    "SCREAMING_SNAKE_CASE",
    "kebab-case",
    "SCREAMING-KEBAB-CASE",
)

_WORD_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z0-9])|[A-Z]?[a-z0-9]+|[A-Z]+|[0-9]+")


def split_words(name: str) -> list[str]:
    return _WORD_RE.findall(name)


def apply_rename_rule(name: str, rule: str) -> str:
    if rule == "lowercase":
        return name.lower()
    if rule == "UPPERCASE":
        return name.upper()
    words = split_words(name)
    if rule == "PascalCase":
        return "".join(word.capitalize() for word in words)
    if rule == "camelCase":
        if not words:
            return name
        return words[0].lower() + "".join(word.capitalize() for word in words[1:])
    if rule == "snake_case":
        return "_".join(word.lower() for word in words)
    if rule == "SCREAMING_SNAKE_CASE":
        return "_".join(word.upper() for word in words)
    if rule == "kebab-case":
        return "-".join(word.lower() for word in words)
    if rule == "SCREAMING-KEBAB-CASE":
        return "-".join(word.upper() for word in words)
    raise ValueError(f"Unknown rename rule: {rule}")


# ===--- Bound construction ---=== #


_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CAPABILITY_RE = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_.]*(\s*\|\s*[A-Za-z_][A-Za-z0-9_.]*)*$"
)
_NAME_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def parse_where_predicates(text: str, generics: Generics | None = None) -> tuple[WherePredicate, ...]:
    """Parse bound text such as "T: ToSchema + Hashable, U: ToSchema".

    Raises:
        ValueError: The text is malformed or names an unknown parameter.
    """
    known = None if generics is None else {param.name for param in generics.params}
    predicates = []
    for clause in text.split(","):
        clause = clause.strip()
        if not clause:
            continue
        param, sep, rest = clause.partition(":")
        param = param.strip()
        if not sep or not _IDENT_RE.match(param):
            raise ValueError(f"expected 'Param: Capability' in {clause!r}")
        if known is not None and param not in known:
            raise ValueError(f"{param!r} is not a type parameter")
        capabilities = tuple(part.strip() for part in rest.split("+"))
        for capability in capabilities:
            if not _CAPABILITY_RE.match(capability):
                raise ValueError(f"malformed capability {capability!r}")
        predicates.append(WherePredicate(param, capabilities))
    if not predicates:
        raise ValueError("no predicates given")
    return tuple(predicates)


def without_defaults(generics: Generics) -> Generics:
    return Generics(
        tuple(dataclasses.replace(param, default=None) for param in generics.params),
        generics.where,
    )


def with_where_predicates(generics: Generics, bound) -> Generics:
    """Attach explicit predicates, given as parsed predicates or bound text."""
    if isinstance(bound, str):
        bound = parse_where_predicates(bound, generics)
    return Generics(generics.params, generics.where + tuple(bound))


def with_bound(data: Data, generics: Generics, capabilities: tuple[str, ...]) -> Generics:
    """Require `capabilities` of every type parameter used by a kept field."""
    participating = referenced_type_params(data)
    predicates = tuple(
        WherePredicate(param.name, tuple(capabilities))
        for param in generics.type_params()
        if param.name in participating
    )
    return Generics(generics.params, generics.where + predicates)


def referenced_type_params(data: Data) -> set[str]:
    names: set[str] = set()
    for item in data.iter_fields():
        if item.attrs.skip:
            continue
        names |= _type_param_names(item.annotation)
    return names


def _type_param_names(annotation: object) -> set[str]:
    if isinstance(annotation, typing.TypeVar):
        return {annotation.__name__}
    if isinstance(annotation, typing.ForwardRef):
        annotation = annotation.__forward_arg__
    if isinstance(annotation, str):
        return set(_NAME_TOKEN_RE.findall(annotation))
    names: set[str] = set()
    for arg in typing.get_args(annotation):
        names |= _type_param_names(arg)
    return names


# ===--- Shape builders ---=== #


class Bindings:
    """Objects a generated procedure refers to by generated name."""

    def __init__(self):
        self.values: dict[str, object] = {}

    def bind(self, value: object, hint: str = "value") -> str:
        name = f"__{hint}_{len(self.values)}__"
        self.values[name] = value
        return name

    def bind_as(self, name: str, value: object) -> str:
        self.values[name] = value
        return name

    def literal(self, value: object) -> str:
        """Source for a JSON value: a repr, or a deep copy of a bound object."""
        value = _json_value(value)
        if _is_plain_literal(value):
            return repr(value)
        return f"deepcopy({self.bind(value)})"


def _is_plain_literal(value: object) -> bool:
    if value is None or isinstance(value, (bool, int, str)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, (list, tuple)):
        return all(_is_plain_literal(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(key, str) and _is_plain_literal(item) for key, item in value.items())
    return False


def _render_dict(pairs) -> str:
    """Render (key, source) pairs as a dict display; a None key spreads."""
    parts = [f"**{source}" if key is None else f"{key!r}: {source}" for key, source in pairs]
    return "{" + ", ".join(parts) + "}"


def _render_list(sources) -> str:
    return "[" + ", ".join(sources) + "]"


@dataclass(frozen=True)
class DirectSchema:
    """Schema derived from the field's annotation."""

    annotation: Any
    inline: bool = False

    def render(self, env: Bindings) -> str:
        annotation = env.bind(self.annotation, "ann")
        inline = ", inline=True" if self.inline else ""
        return f"field_schema({annotation}, args, components{inline}, owner=__owner__)"


@dataclass(frozen=True)
class OverrideSchema:
    """Schema returned by a user-supplied `schema_with` callable."""

    schema_with: Callable[[], dict]

    def render(self, env: Bindings) -> str:
        return f"{env.bind(self.schema_with, 'schema_with')}()"


@dataclass(frozen=True)
class FlattenedMapSchema:
    """Value schema of a flattened mapping, used as additionalProperties."""

    value_annotation: Any
    inline: bool = False

    def render(self, env: Bindings) -> str:
        return DirectSchema(self.value_annotation, self.inline).render(env)


Property = typing.Union[DirectSchema, OverrideSchema, FlattenedMapSchema]


def _map_value_annotation(annotation: object) -> object:
    origin = typing.get_origin(annotation)
    target = origin if origin is not None else annotation
    if target not in _MAPPING_ORIGINS:
        return UNSET
    args = typing.get_args(annotation)
    return args[1] if len(args) == 2 else Any


def field_property(item: FieldDef) -> Property:
    if item.attrs.schema_with is not None:
        return OverrideSchema(item.attrs.schema_with)
    if item.attrs.flatten:
        value = _map_value_annotation(item.annotation)
        if value is not UNSET:
            return FlattenedMapSchema(value, item.attrs.inline)
    return DirectSchema(item.annotation, item.attrs.inline)


def is_not_skipped(item: FieldDef) -> bool:
    return not item.attrs.skip


def is_flatten(item: FieldDef) -> bool:
    return item.attrs.flatten


def _field_attr_pairs(item: FieldDef, env: Bindings) -> list[tuple[str, str]]:
    attrs = item.attrs
    pairs = []
    if attrs.description is not None:
        pairs.append(("description", repr(attrs.description)))
    if attrs.deprecated:
        pairs.append(("deprecated", "True"))
    default = attrs.default if attrs.default is not UNSET else item.default
    if default is not UNSET:
        pairs.append(("default", env.literal(default)))
    if attrs.example is not UNSET:
        pairs.append(("example", env.literal(attrs.example)))
    if attrs.read_only:
        pairs.append(("readOnly", "True"))
    if attrs.write_only:
        pairs.append(("writeOnly", "True"))
    if attrs.format is not None:
        pairs.append(("format", repr(attrs.format)))
    if attrs.xml is not None:
        pairs.append(("xml", repr(attrs.xml.to_dict())))
    return pairs


def _render_property(item: FieldDef, env: Bindings) -> str:
    source = field_property(item).render(env)
    if item.attrs.nullable:
        source = f"nullable({source})"
    pairs = _field_attr_pairs(item, env)
    if not pairs:
        return source
    return _render_dict([(None, source), *pairs])


def _is_required(item: FieldDef) -> bool:
    if item.has_default or item.attrs.default is not UNSET:
        return False
    return not (item.attrs.nullable or _is_optional(item.annotation))


def _property_name(item: FieldDef, rename_rule: str | None) -> str:
    if item.attrs.rename is not None:
        return item.attrs.rename
    if rename_rule is not None:
        return apply_rename_rule(item.name, rename_rule)
    return item.name


def _object_source(
    fields: Fields,
    env: Bindings,
    location: str | None,
    rename_rule: str | None = None,
    extra_properties=(),
    extra_required=(),
) -> str:
    properties = list(extra_properties)
    required = list(extra_required)
    maps: list[FieldDef] = []
    merged: list[FieldDef] = []
    for item in fields.items:
        if not is_not_skipped(item):
            continue
        if is_flatten(item):
            if isinstance(field_property(item), FlattenedMapSchema):
                maps.append(item)
            else:
                merged.append(item)
            continue
        name = _property_name(item, rename_rule)
        properties.append((name, _render_property(item, env)))
        if _is_required(item):
            required.append(name)

    if len(maps) > 1:
        raise Diagnostic(
            "INVALID_FEATURE",
            "at most one flattened mapping field is allowed per record",
            location,
        )

    pairs = [("type", repr("object")), ("properties", _render_dict(properties))]
    if required:
        pairs.append(("required", repr(required)))
    if maps:
        pairs.append(("additionalProperties", field_property(maps[0]).render(env)))
    source = _render_dict(pairs)
    if merged:
        parts = [field_property(item).render(env) for item in merged]
        source = _render_dict([("allOf", _render_list([*parts, source]))])
    return source


def _tuple_source(items: list[FieldDef], env: Bindings) -> str:
    if len(items) == 1:
        return _render_property(items[0], env)
    return _render_dict(
        [
            ("type", repr("array")),
            ("prefixItems", _render_list(_render_property(item, env) for item in items)),
            ("minItems", repr(len(items))),
            ("maxItems", repr(len(items))),
        ]
    )


_TYPE_ATTR_FEATURES = (
    (Description, "description"),
    (Deprecated, "deprecated"),
    (Default, "default"),
    (Example, "example"),
    (Xml, "xml"),
    (Format, "format"),
)


def _pop_type_attrs(features: FeatureSet, env: Bindings) -> list[tuple[str, str]]:
    pairs = []
    for kind, key in _TYPE_ATTR_FEATURES:
        feature = features.pop(kind)
        if feature is None:
            continue
        if kind is Deprecated and not feature.value:
            continue
        value = feature.value.to_dict() if kind is Xml else feature.value
        pairs.append((key, env.literal(value)))
    return pairs


def _with_type_attrs(source: str, features: FeatureSet, env: Bindings) -> str:
    pairs = _pop_type_attrs(features, env)
    if not pairs:
        return source
    return _render_dict([(None, source), *pairs])


class _FeaturedShape:
    features: FeatureSet

    def pop_skip_bound(self) -> Feature | None:
        return self.features.pop(SkipBound)

    def pop_bound(self) -> Feature | None:
        return self.features.pop(Bound)


class NamedRecord(_FeaturedShape):
    kind = "named record"

    def __init__(self, definition: TypeDefinition):
        self.ident = definition.ident
        self.fields = definition.data.fields
        self.location = definition.location
        self.features = parse_features(
            definition.options,
            NAMED_RECORD_FEATURES,
            f"named record {definition.ident}",
            definition.location,
            definition.generics,
        )
        self.symbol = _feature_value(self.features.pop(Symbol))
        self.inline = _feature_value(self.features.pop(Inline))
        self.rename_rule = _feature_value(self.features.pop(RenameAll))

    def build(self, env: Bindings) -> str:
        source = _object_source(self.fields, env, self.location, self.rename_rule)
        return _with_type_attrs(source, self.features, env)


class PositionalRecord(_FeaturedShape):
    kind = "positional record"

    def __init__(self, definition: TypeDefinition):
        self.ident = definition.ident
        self.fields = definition.data.fields
        self.location = definition.location
        self.features = parse_features(
            definition.options,
            POSITIONAL_RECORD_FEATURES,
            f"positional record {definition.ident}",
            definition.location,
            definition.generics,
        )
        self.symbol = _feature_value(self.features.pop(Symbol))
        self.inline = _feature_value(self.features.pop(Inline))

    def build(self, env: Bindings) -> str:
        items = [item for item in self.fields.items if is_not_skipped(item)]
        return _with_type_attrs(_tuple_source(items, env), self.features, env)


class UnitMarker:
    """A class without fields. It always renders the empty schema."""

    kind = "unit marker"
    symbol = None
    inline = None

    def __init__(self):
        self.features = FeatureSet()

    def pop_skip_bound(self) -> None:
        return None

    def pop_bound(self) -> None:
        return None

    def build(self, env: Bindings) -> str:
        return "empty()"


class TaggedUnion(_FeaturedShape):
    """A union of variants, each a named, positional or unit sub-shape.

    Without `tag` the variants are externally tagged. `tag` alone tags them
    internally and `tag` with `content` tags them adjacently. A union of
    unit variants only, without a tag, renders as an `enum`.
    """

    kind = "tagged union"

    def __init__(
        self,
        ident: str,
        variants: tuple[VariantDef, ...],
        features: FeatureSet,
        location: str,
        symbol: str | None = None,
        inline: bool | None = None,
        rename_rule: str | None = None,
        tag: str | None = None,
        content: str | None = None,
    ):
        self.ident = ident
        self.variants = variants
        self.features = features
        self.location = location
        self.symbol = symbol
        self.inline = inline
        self.rename_rule = rename_rule
        self.tag = tag
        self.content = content

    @classmethod
    def new(cls, definition: TypeDefinition) -> "TaggedUnion":
        location = definition.location
        features = parse_features(
            definition.options,
            TAGGED_UNION_FEATURES,
            f"tagged union {definition.ident}",
            location,
            definition.generics,
        )
        symbol = _feature_value(features.pop(Symbol))
        inline = _feature_value(features.pop(Inline))
        rename_rule = _feature_value(features.pop(RenameAll))
        tag = _feature_value(features.pop(Tag))
        content = _feature_value(features.pop(Content))

        if content is not None and tag is None:
            raise Diagnostic(
                "INVALID_FEATURE",
                "option 'content' requires 'tag'",
                location,
                "Add tag=... for adjacent tagging, or remove content.",
            )
        variants = tuple(definition.data.variants)
        if tag is not None and content is None:
            for item in variants:
                if not item.attrs.skip and item.fields.style == "unnamed":
                    raise Diagnostic(
                        "INVALID_FEATURE",
                        f"internally tagged union cannot hold positional variant {item.name!r}",
                        location,
                        "Add content=... for adjacent tagging, or give the variant named fields.",
                    )

        return cls(
            definition.ident,
            variants,
            features,
            location,
            symbol=symbol,
            inline=inline,
            rename_rule=rename_rule,
            tag=tag,
            content=content,
        )

    def discriminant(self, item: VariantDef) -> object:
        if item.attrs.rename is not None:
            return item.attrs.rename
        if isinstance(item.source, enum.Enum):
            value = item.source.value
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                return value
        if self.rename_rule is not None:
            return apply_rename_rule(item.name, self.rename_rule)
        return item.name

    def build(self, env: Bindings) -> str:
        variants = [item for item in self.variants if not item.attrs.skip]
        if self.tag is None and all(item.fields.style == "unit" for item in variants):
            source = env.literal(_values_schema(self.discriminant(item) for item in variants))
        else:
            schemas = [self._variant_source(item, env) for item in variants]
            if len(schemas) == 1:
                source = schemas[0]
            else:
                source = _render_dict([("oneOf", _render_list(schemas))])
        return _with_type_attrs(source, self.features, env)

    def _variant_body(self, item: VariantDef, env: Bindings) -> str | None:
        if item.fields.style == "unit":
            return None
        if item.fields.style == "named":
            return _object_source(item.fields, env, self.location)
        return _tuple_source([field for field in item.fields.items if is_not_skipped(field)], env)

    def _variant_source(self, item: VariantDef, env: Bindings) -> str:
        name = self.discriminant(item)
        body = self._variant_body(item, env)

        if self.tag is None:
            if body is None:
                return env.literal(_values_schema([name]))
            return _render_dict(
                [
                    ("type", repr("object")),
                    ("properties", _render_dict([(name, body)])),
                    ("required", repr([name])),
                ]
            )

        tag_property = (self.tag, env.literal(_const_schema(name)))
        if self.content is None and body is not None:
            return _object_source(
                item.fields,
                env,
                self.location,
                extra_properties=[tag_property],
                extra_required=[self.tag],
            )

        properties = [tag_property]
        required = [self.tag]
        if body is not None:
            properties.append((self.content, body))
            required.append(self.content)
        return _render_dict(
            [
                ("type", repr("object")),
                ("properties", _render_dict(properties)),
                ("required", repr(required)),
            ]
        )


Shape = typing.Union[NamedRecord, PositionalRecord, UnitMarker, TaggedUnion]


# ===--- Shape classification ---=== #


def classify(definition: TypeDefinition) -> Shape:
    """Map a TypeDefinition to exactly one Shape.

    Raises:
        Diagnostic: UNSUPPORTED_DATA for untagged (ctypes) unions, or any
            feature-parse failure of the shape's options.
    """
    data = definition.data
    if data.kind == "struct":
        if data.fields.style == "named":
            return NamedRecord(definition)
        if data.fields.style == "unnamed":
            return PositionalRecord(definition)
        return UnitMarker()
    if data.kind == "enum":
        return TaggedUnion.new(definition)
    raise Diagnostic(
        "UNSUPPORTED_DATA",
        f"{definition.ident}: untagged unions are not supported",
        definition.location,
        "Use a SumType subclass or an Enum for sum types.",
    )


# ===--- Symbol and registration planning ---=== #


def plan_symbol(shape: Shape, definition: TypeDefinition) -> str | None:
    """Source of the symbol expression, or None when nothing is registered."""
    if isinstance(shape, UnitMarker):
        return None
    if shape.inline:
        return None
    if shape.symbol is not None:
        if definition.generics.type_params():
            return f"instantiated_symbol({shape.symbol!r}, ty)"
        return f"normalize_symbol({shape.symbol!r})"
    return "type_name(ty).replace('::', '.')"


def plan_registration(symbol_source: str | None, schema_source: str) -> tuple[str, ...]:
    """Procedure body lines that build the schema and register it.

    A named schema is built completely, inserted, and only then referenced.
    A symbol already pending further up the call stack is referenced
    straight away, which ends recursion through self-referencing fields.
    """
    if symbol_source is None:
        return (f"return {schema_source}",)
    return (
        f"symbol = {symbol_source}",
        "if symbol in components.pending:",
        "    return Ref.schema(symbol)",
        "components.pending.add(symbol)",
        "try:",
        f"    schema = {schema_source}",
        "finally:",
        "    components.pending.discard(symbol)",
        "components.insert(symbol, schema)",
        "return Ref.schema(symbol)",
    )


# ===--- Bound planning ---=== #


def plan_bounds(shape: Shape, definition: TypeDefinition) -> Generics:
    stripped = without_defaults(definition.generics)

    skip_bound = shape.pop_skip_bound()
    if skip_bound is not None and skip_bound.value:
        if shape.features.has(Bound):
            warnings.warn(
                f"{definition.ident}: skip_bound=True drops the explicit bound",
                ConflictingFeaturesWarning,
                stacklevel=2,
            )
        return stripped

    bound = shape.pop_bound()
    if bound is not None:
        return with_where_predicates(stripped, bound.predicates)

    return with_bound(definition.data, stripped, (TO_SCHEMA,))


# ===--- Generation assembly ---=== #


@dataclass(frozen=True)
class GenerationPlan:
    """The single schema procedure planned for one class.

    Attributes:
        ident: Bare class name.
        shape_kind: Label of the classified shape, e.g. "named record".
        generics: Planned signature: declared bounds, no defaults, where-clause.
        type_generics: The class's own generics, defaults included.
        symbol_source: Symbol expression source, None when nothing is registered.
        inline: True when the shape was marked inline.
        body: Procedure body lines, unindented.
        bindings: Objects the body refers to by generated name.
    """

    ident: str
    shape_kind: str
    generics: Generics
    type_generics: Generics
    symbol_source: str | None
    inline: bool
    body: tuple[str, ...]
    bindings: dict

    def signature(self) -> str:
        return f"{TO_SCHEMA} for {self.ident}{self.generics.render_params()}{self.generics.render_where()}"


def assemble(definition: TypeDefinition) -> GenerationPlan:
    shape = classify(definition)
    symbol_source = plan_symbol(shape, definition)
    generics = plan_bounds(shape, definition)

    env = Bindings()
    env.bind_as("__owner__", definition.cls)
    env.bind_as("__generics__", generics)
    schema_source = shape.build(env)

    if definition.generics.type_params():
        body: tuple[str, ...] = ("args = require_bounds(ty, __generics__, __owner__)",)
    elif _has_parameterized_bases(definition.cls):
        body = ("args = bind_type_args(ty)",)
    else:
        body = ("args = {}",)
    body += plan_registration(symbol_source, schema_source)

    return GenerationPlan(
        ident=definition.ident,
        shape_kind=shape.kind,
        generics=generics,
        type_generics=definition.generics,
        symbol_source=symbol_source,
        inline=bool(shape.inline),
        body=body,
        bindings=env.values,
    )


def _has_parameterized_bases(cls: type) -> bool:
    return any(
        isinstance(typing.get_origin(base), type) and typing.get_origin(base) is not typing.Generic
        for klass in cls.__mro__
        for base in klass.__dict__.get("__orig_bases__", ())
    )


def render_procedure(plan: GenerationPlan) -> str:
    lines = ["def to_schema(ty, components):", f'    """{plan.signature()}"""']
    lines.extend(f"    {line}" for line in plan.body)
    return "\n".join(lines) + "\n"


def compile_procedure(plan: GenerationPlan) -> Callable:
    source = render_procedure(plan)
    namespace = {**RUNTIME_NAMESPACE, **plan.bindings}
    exec(compile(source, f"<schema procedure {plan.ident}>", "exec"), namespace)
    procedure = namespace["to_schema"]
    procedure.__qualname__ = f"{plan.ident}.to_schema"
    procedure.__schema_source__ = source
    return procedure


# ===--- Public API ---=== #


def to_schema(cls=None, /, **options):
    """Class decorator attaching a compiled schema procedure.

    Usable bare (`@to_schema`) or with options
    (`@to_schema(symbol="Pet", rename_all="camelCase")`).

    Raises:
        Diagnostic: The class cannot be classified or an option is invalid.
            Nothing is attached in that case.
    """

    def decorate(cls):
        definition = describe_type(cls, options)
        plan = assemble(definition)
        procedure = compile_procedure(plan)
        setattr(cls, PLAN_ATTR, plan)
        setattr(cls, PROCEDURE_ATTR, procedure)
        return cls

    if cls is None:
        return decorate
    return decorate(cls)


def get_plan(cls: type) -> GenerationPlan:
    if not isinstance(cls, type) or PLAN_ATTR not in vars(cls):
        raise BoundError(f"{type_name(cls)} is not decorated with @to_schema")
    return vars(cls)[PLAN_ATTR]


def get_source(cls: type) -> str:
    return get_procedure(cls).__schema_source__


# ===--- Module loading ---=== #


def load_target_module(name: str) -> types.ModuleType:
    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    try:
        return importlib.import_module(name)
    except ModuleNotFoundError as err:
        if err.name is None or not (name == err.name or name.startswith(f"{err.name}.")):
            raise
        raise ConfigError(
            "MODULE_NOT_FOUND",
            f"Cannot import module {name!r}",
            "Run from the project root or add the module's directory to PYTHONPATH.",
        ) from err


def collect_schema_types(module: types.ModuleType) -> list[type]:
    found: list[type] = []
    for value in vars(module).values():
        if has_procedure(value) and value.__module__ == module.__name__ and value not in found:
            found.append(value)
    return found


def select_schema_types(available: list[type], names: tuple[str, ...]) -> list[type]:
    if not names:
        return list(available)
    return [find_schema_type(available, name) for name in names]


def find_schema_type(available: list[type], name: str) -> type:
    for cls in available:
        if name in (cls.__name__, cls.__qualname__):
            return cls
    known = ", ".join(cls.__name__ for cls in available) or "none"
    raise ConfigError(
        "TYPE_NOT_FOUND",
        f"No @to_schema class named {name!r}",
        f"Decorated classes in this module: {known}.",
    )


# ===--- Document generation ---=== #


OPENAPI_VERSION = "3.1.0"


@dataclass(frozen=True)
class DerivedType:
    name: str
    shape: str
    symbol: str | None


def derive_all(classes: list[type], components: Components) -> list[DerivedType]:
    derived = []
    for cls in classes:
        result = schema_for(cls, components)
        derived.append(
            DerivedType(
                name=cls.__name__,
                shape=get_plan(cls).shape_kind,
                symbol=result.name if isinstance(result, Ref) else None,
            )
        )
    return derived


def build_document(components: Components) -> dict:
    return {"openapi": OPENAPI_VERSION, "components": components.to_dict()}


def render_document(components: Components, indent: int) -> str:
    return json.dumps(build_document(components), indent=indent or None, default=str)


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class ShapeCounts:
    named_records: int
    positional_records: int
    unit_markers: int
    tagged_unions: int

    @property
    def total(self) -> int:
        return self.named_records + self.positional_records + self.unit_markers + self.tagged_unions


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation report.

    Attributes:
        module: Target module name.
        counts: Derived types per shape.
        registered: Schemas in the components registry after the run.
        inline: Derived types whose procedure returned a schema, not a reference.
        output: Output path, or None for stdout.
    """

    module: str
    counts: ShapeCounts
    registered: int
    inline: int
    output: str | None


def build_generation_summary(
    module: str,
    derived: list[DerivedType],
    components: Components,
    output: Path | None,
) -> GenerationSummary:
    shapes = [item.shape for item in derived]
    return GenerationSummary(
        module=module,
        counts=ShapeCounts(
            named_records=shapes.count(NamedRecord.kind),
            positional_records=shapes.count(PositionalRecord.kind),
            unit_markers=shapes.count(UnitMarker.kind),
            tagged_unions=shapes.count(TaggedUnion.kind),
        ),
        registered=len(components),
        inline=sum(1 for item in derived if item.symbol is None),
        output=None if output is None else str(output),
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    counts = summary.counts
    lines = [
        f"Module: {summary.module}",
        "",
        f"Types derived: {counts.total}",
        f"  named records:      {counts.named_records}",
        f"  positional records: {counts.positional_records}",
        f"  unit markers:       {counts.unit_markers}",
        f"  tagged unions:      {counts.tagged_unions}",
        "",
        f"Schemas registered: {summary.registered}",
        f"Inline schemas:     {summary.inline}",
        f"Output: {summary.output or 'stdout'}",
    ]
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary, file=None) -> None:
    print(format_generation_summary(summary), file=file)


def format_types_table(derived: list[DerivedType]) -> str:
    if not derived:
        return "No @to_schema classes found."
    name_width = max(len(item.name) for item in derived)
    shape_width = max(len(item.shape) for item in derived)
    lines = []
    for item in derived:
        symbol = item.symbol if item.symbol is not None else "(inline)"
        lines.append(f"{item.name:<{name_width}}  {item.shape:<{shape_width}}  {symbol}")
    return "\n".join(lines)


# ===--- Commands ---=== #


def run_generate(config: GenerateConfig) -> GenerationSummary:
    module = load_target_module(config.module)
    classes = select_schema_types(collect_schema_types(module), config.type_names)

    components = Components()
    derived = derive_all(classes, components)
    document = render_document(components, config.indent)

    if config.output is None:
        print(document)
        report = sys.stderr
    else:
        config.output.parent.mkdir(parents=True, exist_ok=True)
        config.output.write_text(document + "\n", encoding="utf-8")
        report = sys.stdout

    summary = build_generation_summary(config.module, derived, components, config.output)
    print_generation_summary(summary, file=report)
    return summary


def run_discovery(config: DiscoveryConfig) -> None:
    module = load_target_module(config.module)
    classes = collect_schema_types(module)

    if config.command == "list-types":
        print(format_types_table(derive_all(classes, Components())))
        return

    print(get_source(find_schema_type(classes, config.type_name)), end="")


# ===--- Main ---=== #


def _print_config_error(err: ConfigError) -> None:
    print(f"Config error [{err.code}]: {err.message}")
    if err.suggestion:
        print(f"Hint: {err.suggestion}")


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err
    except Diagnostic as err:
        print(f"error[{err.code}]: {err.message}")
        if err.location:
            print(f"  --> {err.location}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except BoundError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    import schemagen

    schemagen.main()

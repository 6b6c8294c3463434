"""
formula-orchestrator — annotation type resolution

File: src/formula_orchestrator/analysis/type_resolver.py

Purpose
- Map Python annotation expressions onto the recursive ``TypeModel``.

What is included in this file
- ``SymbolTable``: enums, structured classes (dataclasses, TypedDicts,
  NamedTuples, annotated classes) and type aliases declared across every
  analyzed unit, so annotations can name types from sibling units.
- ``TypeResolver``: the primary, structural strategy. Names it cannot resolve
  are reported as unresolved so the caller can switch to the textual
  fallback in ``textual_types``.

Functional requirements
- Numeric wrappers classify as number and never expand properties.
- Arrays unwrap one level; element properties stay on the array model.
- Unions prefer number > string > boolean, else object.
- Structured expansion stops on cycles and beyond ``MAX_STRUCT_DEPTH``.
"""

from __future__ import annotations

import ast
import dataclasses
import json
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from formula_orchestrator.analysis.textual_types import infer_type_from_text
from formula_orchestrator.domain.models import (
    BaseType,
    JSONValue,
    PropertySpec,
    TypeConstraints,
    TypeModel,
)

MAX_STRUCT_DEPTH: Final[int] = 4

NUMERIC_PRIMITIVES: Final[frozenset[str]] = frozenset({"int", "float", "complex"})
NUMERIC_WRAPPERS: Final[frozenset[str]] = frozenset({"Decimal", "Fraction", "BigNumber", "Big", "BN"})
OBJECT_NAMES: Final[frozenset[str]] = frozenset(
    {"dict", "Dict", "Mapping", "MutableMapping", "Any", "object", "TypedDict"}
)
ARRAY_NAMES: Final[frozenset[str]] = frozenset(
    {
        "list",
        "List",
        "Sequence",
        "MutableSequence",
        "Iterable",
        "Collection",
        "tuple",
        "Tuple",
        "set",
        "Set",
        "frozenset",
        "FrozenSet",
    }
)
PASSTHROUGH_WRAPPERS: Final[frozenset[str]] = frozenset(
    {"NotRequired", "Required", "ReadOnly", "ClassVar", "Final"}
)
NULL_NAMES: Final[frozenset[str]] = frozenset({"None", "NoneType"})
ENUM_BASES: Final[frozenset[str]] = frozenset({"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag"})
STRUCT_BASES: Final[frozenset[str]] = frozenset({"TypedDict", "NamedTuple"})
STRUCT_DECORATORS: Final[frozenset[str]] = frozenset({"dataclass", "dataclasses.dataclass", "define", "frozen"})
ENUM_BUILTIN_MEMBERS: Final[frozenset[str]] = frozenset({"name", "value"})

_UNION_PREFERENCE: Final[tuple[BaseType, ...]] = (BaseType.NUMBER, BaseType.STRING, BaseType.BOOLEAN)
_RANGE_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?P<min>-?\d+(?:\.\d+)?)?\s*\.\.\s*(?P<max>-?\d+(?:\.\d+)?)?\s*$"
)
_PATTERN_RE: Final[re.Pattern[str]] = re.compile(r"^\s*pattern\s*:\s*(?P<pattern>.+)$", re.DOTALL)
_MIN_KEYWORDS: Final[frozenset[str]] = frozenset({"ge", "gt", "min", "minimum"})
_MAX_KEYWORDS: Final[frozenset[str]] = frozenset({"le", "lt", "max", "maximum"})
_PATTERN_KEYWORDS: Final[frozenset[str]] = frozenset({"pattern", "regex"})


@dataclass(frozen=True, slots=True)
class EnumDecl:
    name: str
    base_type: BaseType
    members: tuple[tuple[str, JSONValue], ...]


@dataclass(frozen=True, slots=True)
class FieldDecl:
    name: str
    annotation: ast.expr | None
    default: JSONValue = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class StructDecl:
    name: str
    fields: tuple[FieldDecl, ...]


class SymbolTable:
    """Type declarations collected from module bodies."""

    def __init__(self) -> None:
        self.enums: dict[str, EnumDecl] = {}
        self.structs: dict[str, StructDecl] = {}
        self.aliases: dict[str, ast.expr] = {}

    @classmethod
    def from_modules(cls, modules: Iterable[ast.Module]) -> SymbolTable:
        table = cls()
        for module in modules:
            table.register_module(module)
        return table

    def register_module(self, module: ast.Module) -> None:
        type_alias_node = getattr(ast, "TypeAlias", None)
        for statement in module.body:
            if isinstance(statement, ast.ClassDef):
                self._register_class(statement)
            elif isinstance(statement, ast.Assign):
                if len(statement.targets) == 1 and isinstance(statement.targets[0], ast.Name):
                    self._register_assignment(statement.targets[0].id, statement.value)
            elif isinstance(statement, ast.AnnAssign):
                if (
                    isinstance(statement.target, ast.Name)
                    and statement.value is not None
                    and dotted_name(statement.annotation) in {"TypeAlias", "typing.TypeAlias"}
                ):
                    self.aliases.setdefault(statement.target.id, statement.value)
            elif type_alias_node is not None and isinstance(statement, type_alias_node):
                self.aliases.setdefault(statement.name.id, statement.value)

    def _register_class(self, node: ast.ClassDef) -> None:
        bases = {_tail(dotted_name(base)) for base in node.bases}
        if bases & ENUM_BASES:
            self.enums.setdefault(node.name, _enum_decl(node, bases))
            return
        decorated = any(
            dotted_name(decorator.func if isinstance(decorator, ast.Call) else decorator)
            in STRUCT_DECORATORS
            for decorator in node.decorator_list
        )
        fields = _class_fields(node)
        if decorated or bases & STRUCT_BASES or fields:
            self.structs.setdefault(node.name, StructDecl(name=node.name, fields=fields))

    def _register_assignment(self, name: str, value: ast.expr) -> None:
        if isinstance(value, ast.Call):
            factory = _tail(dotted_name(value.func))
            if factory == "TypedDict":
                self.structs.setdefault(name, StructDecl(name=name, fields=_typed_dict_fields(value)))
            elif factory == "NamedTuple":
                self.structs.setdefault(name, StructDecl(name=name, fields=_named_tuple_fields(value)))
            elif factory == "namedtuple":
                self.structs.setdefault(name, StructDecl(name=name, fields=_namedtuple_fields(value)))
            return
        if isinstance(value, (ast.Name, ast.Attribute, ast.Subscript)) or (
            isinstance(value, ast.BinOp) and isinstance(value.op, ast.BitOr)
        ):
            self.aliases.setdefault(name, value)


class TypeResolver:
    """Structural annotation classifier backed by a ``SymbolTable``."""

    def __init__(self, symbols: SymbolTable | None = None, *, max_depth: int = MAX_STRUCT_DEPTH) -> None:
        self._symbols = symbols if symbols is not None else SymbolTable()
        self._max_depth = max_depth

    def resolve(self, node: ast.expr | None, *, fallback_text: str | None = None) -> TypeModel:
        """Resolve ``node``; unresolved names fall back to ``fallback_text``."""

        if node is not None:
            model = self._resolve(node, 0, frozenset())
            if model is not None:
                return model
        if fallback_text is not None and fallback_text.strip():
            return self.resolve_text(fallback_text)
        return TypeModel(base_type=BaseType.OBJECT)

    def resolve_text(self, text: str) -> TypeModel:
        """Resolve a type written as text, structurally when it parses."""

        try:
            node = ast.parse(text.strip(), mode="eval").body
        except SyntaxError:
            return infer_type_from_text(text)
        model = self._resolve(node, 0, frozenset())
        return model if model is not None else infer_type_from_text(text)

    def _resolve(self, node: ast.expr, depth: int, visiting: frozenset[str]) -> TypeModel | None:
        if isinstance(node, ast.Constant):
            if node.value is None:
                return TypeModel(base_type=BaseType.OBJECT, nullable=True)
            if isinstance(node.value, str):
                return self._resolve_string_annotation(node.value, depth, visiting)
            return None
        if isinstance(node, (ast.Name, ast.Attribute)):
            return self._resolve_name(dotted_name(node), depth, visiting)
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            return self._resolve_union(_flatten_bitor(node), depth, visiting)
        if isinstance(node, ast.Subscript):
            return self._resolve_subscript(node, depth, visiting)
        return None

    def _resolve_string_annotation(
        self, text: str, depth: int, visiting: frozenset[str]
    ) -> TypeModel | None:
        try:
            node = ast.parse(text.strip(), mode="eval").body
        except SyntaxError:
            return infer_type_from_text(text)
        return self._resolve(node, depth, visiting)

    def _resolve_name(self, name: str, depth: int, visiting: frozenset[str]) -> TypeModel | None:
        tail = _tail(name)
        if tail in NULL_NAMES:
            return TypeModel(base_type=BaseType.OBJECT, nullable=True)
        if tail in NUMERIC_PRIMITIVES or tail in NUMERIC_WRAPPERS:
            return TypeModel(base_type=BaseType.NUMBER)
        if tail == "str":
            return TypeModel(base_type=BaseType.STRING)
        if tail == "bool":
            return TypeModel(base_type=BaseType.BOOLEAN)
        if tail in OBJECT_NAMES:
            return TypeModel(base_type=BaseType.OBJECT)
        if tail in ARRAY_NAMES:
            return TypeModel(base_type=BaseType.OBJECT, is_array=True)

        alias = self._symbols.aliases.get(name) or self._symbols.aliases.get(tail)
        if alias is not None:
            marker = f"alias:{tail}"
            if marker in visiting:
                return TypeModel(base_type=BaseType.OBJECT)
            return self._resolve(alias, depth, visiting | {marker})

        enum_decl = self._symbols.enums.get(tail)
        if enum_decl is not None:
            return _enum_model(enum_decl)

        struct = self._symbols.structs.get(tail)
        if struct is not None:
            return self._struct_model(struct, depth, visiting)
        return None

    def _resolve_subscript(
        self, node: ast.Subscript, depth: int, visiting: frozenset[str]
    ) -> TypeModel | None:
        head = _tail(dotted_name(node.value))
        args = _subscript_args(node)

        if head == "Optional" and args:
            inner = self._resolve(args[0], depth, visiting)
            return None if inner is None else _replace(inner, nullable=True)
        if head == "Union":
            return self._resolve_union(args, depth, visiting)
        if head == "Literal":
            return _literal_model(args)
        if head == "Annotated" and args:
            inner = self._resolve(args[0], depth, visiting)
            if inner is None:
                return None
            return _apply_metadata(inner, args[1:])
        if head in PASSTHROUGH_WRAPPERS and args:
            return self._resolve(args[0], depth, visiting)
        if head in ARRAY_NAMES:
            if not args:
                return TypeModel(base_type=BaseType.OBJECT, is_array=True)
            element = self._resolve(args[0], depth, visiting)
            if element is None:
                return None
            return _replace(element, is_array=True)
        if head in OBJECT_NAMES:
            return TypeModel(base_type=BaseType.OBJECT)
        # Generic alias or user generic: classify by its origin.
        return self._resolve(node.value, depth, visiting)

    def _resolve_union(
        self, members: Iterable[ast.expr], depth: int, visiting: frozenset[str]
    ) -> TypeModel | None:
        nullable = False
        non_null: list[ast.expr] = []
        for member in members:
            if _is_null(member):
                nullable = True
            else:
                non_null.append(member)
        if not non_null:
            return TypeModel(base_type=BaseType.OBJECT, nullable=True)
        if len(non_null) == 1:
            inner = self._resolve(non_null[0], depth, visiting)
            if inner is None:
                return None
            return _replace(inner, nullable=inner.nullable or nullable)

        base_types = set()
        for member in non_null:
            model = self._resolve(member, depth, visiting)
            base_types.add(model.base_type if model is not None else BaseType.OBJECT)
        for preferred in _UNION_PREFERENCE:
            if preferred in base_types:
                return TypeModel(base_type=preferred, nullable=nullable)
        return TypeModel(base_type=BaseType.OBJECT, nullable=nullable)

    def _struct_model(self, struct: StructDecl, depth: int, visiting: frozenset[str]) -> TypeModel:
        marker = f"struct:{struct.name}"
        if marker in visiting or depth >= self._max_depth:
            return TypeModel(base_type=BaseType.OBJECT)
        nested = visiting | {marker}
        properties: list[PropertySpec] = []
        for field_decl in struct.fields:
            model: TypeModel | None = None
            if field_decl.annotation is not None:
                model = self._resolve(field_decl.annotation, depth + 1, nested)
            if model is None:
                model = TypeModel(base_type=BaseType.OBJECT)
            properties.append(
                PropertySpec(
                    key=field_decl.name,
                    base_type=model.base_type,
                    type_model=model,
                    default=field_decl.default,
                    description=field_decl.description,
                )
            )
        return TypeModel(base_type=BaseType.OBJECT, properties=tuple(properties) or None)


def dotted_name(node: ast.expr) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        parent = dotted_name(node.value)
        return f"{parent}.{node.attr}" if parent else node.attr
    return ""


def literal_default(node: ast.expr | None) -> tuple[JSONValue, bool]:
    """Return ``(value, present)`` for a signature default expression.

    Literals that are JSON-compatible are returned as values; anything else is
    kept as its source text.
    """

    if node is None:
        return None, False
    try:
        value = ast.literal_eval(node)
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return ast.unparse(node), True
    converted = _to_json(value)
    if converted is _NOT_JSON:
        return ast.unparse(node), True
    return converted, True  # type: ignore[return-value]


_NOT_JSON: Final[object] = object()


def _to_json(value: object) -> object:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _NOT_JSON
    if isinstance(value, (list, tuple)):
        items = [_to_json(item) for item in value]
        return _NOT_JSON if any(item is _NOT_JSON for item in items) else items
    if isinstance(value, dict):
        out: dict[str, object] = {}
        for key, item in value.items():
            converted = _to_json(item)
            if not isinstance(key, str) or converted is _NOT_JSON:
                return _NOT_JSON
            out[key] = converted
        return out
    return _NOT_JSON


def _tail(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def _is_null(node: ast.expr) -> bool:
    if isinstance(node, ast.Constant):
        return node.value is None
    return _tail(dotted_name(node)) in NULL_NAMES


def _flatten_bitor(node: ast.expr) -> list[ast.expr]:
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return [*_flatten_bitor(node.left), *_flatten_bitor(node.right)]
    return [node]


def _subscript_args(node: ast.Subscript) -> list[ast.expr]:
    if isinstance(node.slice, ast.Tuple):
        return [
            element
            for element in node.slice.elts
            if not (isinstance(element, ast.Constant) and element.value is Ellipsis)
        ]
    return [node.slice]


def _replace(model: TypeModel, **changes: object) -> TypeModel:
    return dataclasses.replace(model, **changes)  # type: ignore[arg-type]


def _literal_model(args: list[ast.expr]) -> TypeModel:
    values: list[object] = []
    nullable = False
    for arg in args:
        if isinstance(arg, ast.Constant):
            if arg.value is None:
                nullable = True
            else:
                values.append(arg.value)
    if not values:
        return TypeModel(base_type=BaseType.OBJECT, nullable=nullable)
    return TypeModel(
        base_type=_literal_base_type(values[0]),
        nullable=nullable,
        constraints=TypeConstraints(enum_values=tuple(_literal_text(value) for value in values)),
    )


def _literal_base_type(value: object) -> BaseType:
    if isinstance(value, bool):
        return BaseType.BOOLEAN
    if isinstance(value, (int, float)):
        return BaseType.NUMBER
    if isinstance(value, str):
        return BaseType.STRING
    return BaseType.OBJECT


def _literal_text(value: object) -> str:
    if isinstance(value, bool):
        return json.dumps(value)
    return str(value)


def _apply_metadata(model: TypeModel, metadata: list[ast.expr]) -> TypeModel:
    constraints = model.constraints
    minimum = constraints.min if constraints else None
    maximum = constraints.max if constraints else None
    pattern = constraints.pattern if constraints else None
    for meta in metadata:
        if isinstance(meta, ast.Constant) and isinstance(meta.value, str):
            range_match = _RANGE_RE.match(meta.value)
            if range_match is not None:
                if range_match.group("min") is not None:
                    minimum = _number(range_match.group("min"))
                if range_match.group("max") is not None:
                    maximum = _number(range_match.group("max"))
                continue
            pattern_match = _PATTERN_RE.match(meta.value)
            if pattern_match is not None:
                pattern = pattern_match.group("pattern").strip()
        elif isinstance(meta, ast.Call):
            for keyword in meta.keywords:
                if keyword.arg is None:
                    continue
                value, present = literal_default(keyword.value)
                if not present:
                    continue
                if keyword.arg in _MIN_KEYWORDS and _is_number(value):
                    minimum = value  # type: ignore[assignment]
                elif keyword.arg in _MAX_KEYWORDS and _is_number(value):
                    maximum = value  # type: ignore[assignment]
                elif keyword.arg in _PATTERN_KEYWORDS and isinstance(value, str):
                    pattern = value
    if minimum is None and maximum is None and pattern is None and constraints is None:
        return model
    return _replace(
        model,
        constraints=TypeConstraints(
            min=minimum,
            max=maximum,
            enum_values=constraints.enum_values if constraints else None,
            pattern=pattern,
        ),
    )


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(text: str) -> int | float:
    return float(text) if "." in text else int(text)


def _enum_decl(node: ast.ClassDef, bases: set[str]) -> EnumDecl:
    members: list[tuple[str, JSONValue]] = []
    auto_index = 0
    for statement in node.body:
        if not isinstance(statement, ast.Assign) or len(statement.targets) != 1:
            continue
        target = statement.targets[0]
        if not isinstance(target, ast.Name):
            continue
        name = target.id
        if name.startswith("_") or name in ENUM_BUILTIN_MEMBERS:
            continue
        if isinstance(statement.value, ast.Call) and _tail(dotted_name(statement.value.func)) == "auto":
            auto_index += 1
            members.append((name, name.lower() if "StrEnum" in bases else auto_index))
            continue
        value, _ = literal_default(statement.value)
        members.append((name, value))

    if members:
        base_type = _literal_base_type(members[0][1])
        if base_type is BaseType.BOOLEAN:
            base_type = BaseType.NUMBER
        if base_type is BaseType.OBJECT:
            base_type = BaseType.STRING
    elif bases & {"IntEnum", "IntFlag", "Flag"}:
        base_type = BaseType.NUMBER
    else:
        base_type = BaseType.STRING
    return EnumDecl(name=node.name, base_type=base_type, members=tuple(members))


def _enum_model(decl: EnumDecl) -> TypeModel:
    properties = tuple(
        PropertySpec(
            key=name,
            base_type=decl.base_type,
            type_model=TypeModel(base_type=decl.base_type),
            default=value,
        )
        for name, value in decl.members
    )
    return TypeModel(
        base_type=decl.base_type,
        constraints=TypeConstraints(
            enum_values=tuple(_literal_text(value) for _, value in decl.members)
        )
        if decl.members
        else None,
        properties=properties or None,
    )


def _class_fields(node: ast.ClassDef) -> tuple[FieldDecl, ...]:
    fields: list[FieldDecl] = []
    body = node.body
    for index, statement in enumerate(body):
        if not isinstance(statement, ast.AnnAssign) or not isinstance(statement.target, ast.Name):
            continue
        name = statement.target.id
        if name.startswith("_"):
            continue
        if _tail(dotted_name(_subscript_origin(statement.annotation))) == "ClassVar":
            continue
        fields.append(
            FieldDecl(
                name=name,
                annotation=statement.annotation,
                default=_field_default(statement.value),
                description=_attribute_docstring(body, index),
            )
        )
    return tuple(fields)


def _subscript_origin(node: ast.expr) -> ast.expr:
    return node.value if isinstance(node, ast.Subscript) else node


def _field_default(value: ast.expr | None) -> JSONValue:
    if value is None:
        return None
    if isinstance(value, ast.Call) and _tail(dotted_name(value.func)) == "field":
        for keyword in value.keywords:
            if keyword.arg == "default":
                return literal_default(keyword.value)[0]
        return None
    return literal_default(value)[0]


def _attribute_docstring(body: list[ast.stmt], index: int) -> str | None:
    if index + 1 >= len(body):
        return None
    following = body[index + 1]
    if (
        isinstance(following, ast.Expr)
        and isinstance(following.value, ast.Constant)
        and isinstance(following.value.value, str)
    ):
        return " ".join(following.value.value.split()) or None
    return None


def _typed_dict_fields(call: ast.Call) -> tuple[FieldDecl, ...]:
    spec = call.args[1] if len(call.args) > 1 else None
    if not isinstance(spec, ast.Dict):
        return ()
    fields: list[FieldDecl] = []
    for key, value in zip(spec.keys, spec.values, strict=True):
        if isinstance(key, ast.Constant) and isinstance(key.value, str):
            fields.append(FieldDecl(name=key.value, annotation=value))
    return tuple(fields)


def _named_tuple_fields(call: ast.Call) -> tuple[FieldDecl, ...]:
    spec = call.args[1] if len(call.args) > 1 else None
    if not isinstance(spec, (ast.List, ast.Tuple)):
        return ()
    fields: list[FieldDecl] = []
    for item in spec.elts:
        if (
            isinstance(item, ast.Tuple)
            and len(item.elts) == 2
            and isinstance(item.elts[0], ast.Constant)
            and isinstance(item.elts[0].value, str)
        ):
            fields.append(FieldDecl(name=item.elts[0].value, annotation=item.elts[1]))
    return tuple(fields)


def _namedtuple_fields(call: ast.Call) -> tuple[FieldDecl, ...]:
    spec = call.args[1] if len(call.args) > 1 else None
    names: list[str] = []
    if isinstance(spec, ast.Constant) and isinstance(spec.value, str):
        names = spec.value.replace(",", " ").split()
    elif isinstance(spec, (ast.List, ast.Tuple)):
        names = [
            item.value
            for item in spec.elts
            if isinstance(item, ast.Constant) and isinstance(item.value, str)
        ]
    return tuple(FieldDecl(name=name, annotation=None) for name in names)


__all__ = [
    "MAX_STRUCT_DEPTH",
    "EnumDecl",
    "FieldDecl",
    "StructDecl",
    "SymbolTable",
    "TypeResolver",
    "dotted_name",
    "literal_default",
]

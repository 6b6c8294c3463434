"""
formula-orchestrator — textual structural-literal fallback

File: src/formula_orchestrator/analysis/textual_types.py

Purpose
- Secondary type strategy, used only when structural resolution of an
  annotation fails but a structural literal text is available
  (``{price: float; qty: int}`` from a ``@param {…}`` tag, or a string
  annotation that is not a valid expression).

Functional requirements
- Fields split on top-level ``;``, ``,`` and newlines; ``#``, ``//`` and
  ``/* */`` comments are stripped first.
- ``name[?]: type`` pairs are matched; other fragments are ignored.
- Field types are inferred from name patterns only: number-like,
  string-like, boolean-like, else object. ``X[]`` and ``list[X]`` mark arrays;
  nested ``{…}`` literals recurse.
"""

from __future__ import annotations

import re
from typing import Final

from formula_orchestrator.domain.models import (
    BaseType,
    PropertySpec,
    TypeConstraints,
    TypeModel,
)

MAX_TEXTUAL_DEPTH: Final[int] = 4

_BLOCK_COMMENT_RE: Final[re.Pattern[str]] = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT_RE: Final[re.Pattern[str]] = re.compile(r"(#|//)[^\n]*")
_FIELD_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>[A-Za-z_$][\w$]*)\s*(?P<optional>\?)?\s*:\s*(?P<type>.+)$", re.DOTALL
)
_ARRAY_WRAPPER_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:list|List|Sequence|Iterable|Array|ReadonlyArray|set|Set|frozenset|tuple|Tuple)"
    r"\s*[\[<](?P<inner>.+)[\]>]$",
    re.DOTALL,
)
_OPTIONAL_WRAPPER_RE: Final[re.Pattern[str]] = re.compile(r"^Optional\s*\[(?P<inner>.+)\]$", re.DOTALL)
_NUMBER_LIKE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:[\w.]*\.)?(?:number|int|integer|float|double|complex|decimal|bigint|bignumber|big|bn|fraction)$",
    re.IGNORECASE,
)
_STRING_LIKE_RE: Final[re.Pattern[str]] = re.compile(r"^(?:str|string|text)$", re.IGNORECASE)
_BOOLEAN_LIKE_RE: Final[re.Pattern[str]] = re.compile(r"^(?:bool|boolean|true|false)$", re.IGNORECASE)
_NUMERIC_LITERAL_RE: Final[re.Pattern[str]] = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?$")
_NULL_NAMES: Final[frozenset[str]] = frozenset({"None", "null", "undefined", "NoneType"})
_OPENERS: Final[dict[str, str]] = {"(": ")", "[": "]", "{": "}", "<": ">"}
_UNION_PREFERENCE: Final[tuple[BaseType, ...]] = (BaseType.NUMBER, BaseType.STRING, BaseType.BOOLEAN)


def strip_comments(text: str) -> str:
    return _LINE_COMMENT_RE.sub("", _BLOCK_COMMENT_RE.sub("", text))


def split_top_level(text: str, separators: str) -> list[str]:
    """Split on ``separators`` outside brackets and quotes."""

    parts: list[str] = []
    stack: list[str] = []
    quote: str | None = None
    current: list[str] = []
    for char in text:
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in "\"'":
            quote = char
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif stack and char == stack[-1]:
            stack.pop()
        elif not stack and char in separators:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def is_structural_literal(text: str | None) -> bool:
    if text is None:
        return False
    stripped = text.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def parse_structural_literal(text: str, *, depth: int = 0) -> tuple[PropertySpec, ...]:
    """Parse ``{name: type; ...}`` into property specs."""

    body = text.strip()
    if body.startswith("{") and body.endswith("}"):
        body = body[1:-1]
    properties: list[PropertySpec] = []
    seen: set[str] = set()
    for fragment in split_top_level(strip_comments(body), ";,\n"):
        match = _FIELD_RE.match(fragment)
        if match is None:
            continue
        name = match.group("name")
        if name in seen:
            continue
        seen.add(name)
        model = infer_type_from_text(match.group("type"), depth=depth + 1)
        if match.group("optional") and not model.nullable:
            model = TypeModel(
                base_type=model.base_type,
                nullable=True,
                is_array=model.is_array,
                constraints=model.constraints,
                properties=model.properties,
            )
        properties.append(PropertySpec(key=name, base_type=model.base_type, type_model=model))
    return tuple(properties)


def infer_type_from_text(text: str, *, depth: int = 0) -> TypeModel:
    """Classify a textual type expression by recognized name patterns."""

    candidate = strip_comments(text).strip()
    nullable = False
    is_array = False

    optional = _OPTIONAL_WRAPPER_RE.match(candidate)
    if optional is not None:
        candidate = optional.group("inner").strip()
        nullable = True

    members = split_top_level(candidate, "|")
    if len(members) > 1:
        non_null = [member for member in members if member not in _NULL_NAMES]
        nullable = nullable or len(non_null) != len(members)
        if len(non_null) > 1:
            return _union_model(non_null, nullable=nullable, depth=depth)
        candidate = non_null[0] if non_null else "object"

    if candidate.endswith("?"):
        candidate = candidate[:-1].strip()
        nullable = True

    if candidate.endswith("[]"):
        candidate = candidate[:-2].strip()
        is_array = True
    else:
        wrapper = _ARRAY_WRAPPER_RE.match(candidate)
        if wrapper is not None:
            inner = split_top_level(wrapper.group("inner"), ",")
            candidate = inner[0] if inner else "object"
            is_array = True

    if candidate.startswith("(") and candidate.endswith(")"):
        inner_model = infer_type_from_text(candidate[1:-1], depth=depth)
        return _with_flags(inner_model, nullable=nullable, is_array=is_array)

    if is_structural_literal(candidate):
        properties = (
            parse_structural_literal(candidate, depth=depth)
            if depth < MAX_TEXTUAL_DEPTH
            else None
        )
        return TypeModel(
            base_type=BaseType.OBJECT,
            nullable=nullable,
            is_array=is_array,
            properties=properties or None,
        )

    literal = _literal_values(candidate)
    if literal is not None:
        base_type, values = literal
        return TypeModel(
            base_type=base_type,
            nullable=nullable,
            is_array=is_array,
            constraints=TypeConstraints(enum_values=values),
        )

    return TypeModel(base_type=classify_name(candidate), nullable=nullable, is_array=is_array)


def classify_name(name: str) -> BaseType:
    stripped = name.strip()
    if _NUMBER_LIKE_RE.match(stripped):
        return BaseType.NUMBER
    if _STRING_LIKE_RE.match(stripped):
        return BaseType.STRING
    if _BOOLEAN_LIKE_RE.match(stripped):
        return BaseType.BOOLEAN
    return BaseType.OBJECT


def _union_model(members: list[str], *, nullable: bool, depth: int) -> TypeModel:
    models = [infer_type_from_text(member, depth=depth) for member in members]
    base_types = {model.base_type for model in models}
    for preferred in _UNION_PREFERENCE:
        if preferred in base_types:
            return TypeModel(base_type=preferred, nullable=nullable)
    return TypeModel(base_type=BaseType.OBJECT, nullable=nullable)


def _literal_values(text: str) -> tuple[BaseType, tuple[str, ...]] | None:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return BaseType.STRING, (text[1:-1],)
    if _NUMERIC_LITERAL_RE.match(text):
        return BaseType.NUMBER, (text,)
    return None


def _with_flags(model: TypeModel, *, nullable: bool, is_array: bool) -> TypeModel:
    return TypeModel(
        base_type=model.base_type,
        nullable=model.nullable or nullable,
        is_array=model.is_array or is_array,
        constraints=model.constraints,
        properties=model.properties,
    )


__all__ = [
    "MAX_TEXTUAL_DEPTH",
    "classify_name",
    "infer_type_from_text",
    "is_structural_literal",
    "parse_structural_literal",
    "split_top_level",
    "strip_comments",
]

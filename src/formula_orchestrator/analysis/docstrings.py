"""
formula-orchestrator — documentation tag parsing

File: src/formula_orchestrator/analysis/docstrings.py

Purpose
- Split a function docstring into its free-text summary and ``@tag`` blocks,
  and decode the per-parameter, return, tag-list, and engine-hint tags.

Functional requirements
- A tag starts a line with ``@name``; following lines continue it until the
  next tag line.
- ``@unit`` and ``@default`` inside a parameter tag are markers, not tags.
- ``@default`` values are JSON-parsed when possible, else kept as raw text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Final

from formula_orchestrator.constants import DEFAULT_HINT_SCALE
from formula_orchestrator.domain.models import EngineHint, JSONValue, RoundingStrategy

_TAG_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^@(?P<name>[A-Za-z][\w.]*)\b\s*(?P<text>.*)$")
_PARAM_HEAD_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>[A-Za-z_]\w*)\s*(?:-\s*)?(?P<rest>.*)$", re.DOTALL
)
_MARKER_RE: Final[re.Pattern[str]] = re.compile(r"@(?P<marker>unit|default)\b\s*", re.IGNORECASE)
_ENGINE_HINT_RE: Final[re.Pattern[str]] = re.compile(
    r"^engineHint\.(?P<backend>[\w-]+)\.(?P<field>rounding|scale)$"
)


@dataclass(frozen=True, slots=True)
class Tag:
    name: str
    text: str


@dataclass(frozen=True, slots=True)
class ParamDoc:
    name: str
    type_text: str | None = None
    description: str | None = None
    unit: str | None = None
    default: JSONValue = None
    has_default: bool = False


@dataclass(frozen=True, slots=True)
class ReturnDoc:
    description: str | None = None
    unit: str | None = None


@dataclass(frozen=True, slots=True)
class DocBlock:
    summary: str | None
    tags: tuple[Tag, ...] = field(default=())

    def first(self, name: str) -> str | None:
        for tag in self.tags:
            if tag.name == name:
                return tag.text or None
        return None

    def all(self, name: str) -> list[str]:
        return [tag.text for tag in self.tags if tag.name == name]

    def params(self) -> dict[str, ParamDoc]:
        docs: dict[str, ParamDoc] = {}
        for text in self.all("param"):
            parsed = parse_param_tag(text)
            if parsed is not None and parsed.name not in docs:
                docs[parsed.name] = parsed
        return docs

    def returns(self) -> ReturnDoc | None:
        text = self.first("returns") or self.first("return")
        if text is None:
            return None
        description, unit, _, _ = _split_markers(text)
        return ReturnDoc(description=description, unit=unit)

    def engine_hints(self) -> dict[str, EngineHint] | None:
        return parse_engine_hints(self.tags)


def parse_docblock(docstring: str) -> DocBlock:
    """Parse a cleaned docstring (``ast.get_docstring(..., clean=True)``)."""

    summary_lines: list[str] = []
    tags: list[tuple[str, list[str]]] = []
    for raw_line in docstring.splitlines():
        line = raw_line.strip()
        match = _TAG_LINE_RE.match(line)
        if match:
            tags.append((match.group("name"), [match.group("text")]))
            continue
        if tags:
            if line:
                tags[-1][1].append(line)
            continue
        summary_lines.append(line)

    summary = _collapse(" ".join(summary_lines))
    return DocBlock(
        summary=summary or None,
        tags=tuple(Tag(name=name, text=_collapse(" ".join(parts))) for name, parts in tags),
    )


def parse_param_tag(text: str) -> ParamDoc | None:
    """Decode ``[{type}] name [-] description [@unit U] [@default D]``."""

    remaining = text.strip()
    type_text: str | None = None
    if remaining.startswith("{"):
        end = _balanced_brace_end(remaining)
        if end is None:
            return None
        type_text = remaining[1:end].strip() or None
        remaining = remaining[end + 1 :].strip()

    head = _PARAM_HEAD_RE.match(remaining)
    if head is None:
        return None
    description, unit, default, has_default = _split_markers(head.group("rest"))
    return ParamDoc(
        name=head.group("name"),
        type_text=type_text,
        description=description,
        unit=unit,
        default=default,
        has_default=has_default,
    )


def parse_default(raw: str) -> JSONValue:
    text = raw.strip()
    try:
        parsed: JSONValue = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text
    return parsed


def parse_tags(text: str | None) -> tuple[str, ...] | None:
    """Tags accept a JSON array or a comma-separated fallback."""

    if text is None or not text.strip():
        return None
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            values = tuple(str(item).strip() for item in parsed if str(item).strip())
            return values or None
        stripped = stripped.strip("[]")
    values = tuple(
        part.strip().strip("\"'") for part in stripped.split(",") if part.strip().strip("\"'")
    )
    return values or None


def parse_engine_hints(tags: tuple[Tag, ...]) -> dict[str, EngineHint] | None:
    """Collect ``engineHint.<backend>.<rounding|scale>`` tags per backend.

    Unknown rounding names are ignored; a scale that is not an integer
    becomes the default scale.
    """

    hints: dict[str, dict[str, object]] = {}
    for tag in tags:
        match = _ENGINE_HINT_RE.match(tag.name)
        if match is None:
            continue
        slot = hints.setdefault(match.group("backend"), {})
        value = tag.text.strip().split(" ", 1)[0] if tag.text.strip() else ""
        if match.group("field") == "scale":
            try:
                slot["scale"] = int(value)
            except ValueError:
                slot["scale"] = DEFAULT_HINT_SCALE
        else:
            try:
                slot["rounding"] = RoundingStrategy(value.lower())
            except ValueError:
                continue
    if not hints:
        return None
    return {
        backend: EngineHint(
            rounding=values.get("rounding"),  # type: ignore[arg-type]
            scale=values.get("scale"),  # type: ignore[arg-type]
        )
        for backend, values in hints.items()
    }


def _split_markers(text: str) -> tuple[str | None, str | None, JSONValue, bool]:
    markers = list(_MARKER_RE.finditer(text))
    description = text[: markers[0].start()] if markers else text
    unit: str | None = None
    default: JSONValue = None
    has_default = False
    for index, marker in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
        value = text[marker.end() : end].strip()
        if marker.group("marker").lower() == "unit":
            unit = value or None
        elif value:
            default = parse_default(value)
            has_default = True
    return _collapse(description) or None, unit, default, has_default


def _balanced_brace_end(text: str) -> int | None:
    depth = 0
    for index, char in enumerate(text):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def _collapse(text: str) -> str:
    return " ".join(text.split())


__all__ = [
    "DocBlock",
    "ParamDoc",
    "ReturnDoc",
    "Tag",
    "parse_default",
    "parse_docblock",
    "parse_engine_hints",
    "parse_param_tag",
    "parse_tags",
]

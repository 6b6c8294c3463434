"""
formula-orchestrator — source analyzer

File: src/formula_orchestrator/analysis/analyzer.py

Purpose
- Turn annotated Python source units into ``FormulaDefinition`` records.

What is included in this file
- ``SourceAnalyzer.analyze``: parse every unit, build one symbol table across
  them, then extract a definition for each exported, documented function.

Functional requirements
- A unit that fails to parse is logged and skipped; the rest still run.
- Functions without a docstring are skipped silently.
- Positional parameters become inputs in signature order; keyword-only and
  variadic parameters are not bindable positionally and are left out.
- Exactly one output, keyed ``result``, is produced per formula.
- ``source_text`` holds the function plus the module-level definitions it
  references (helpers, constants), in unit order; imports and annotations are
  not followed. ``function_name`` names the entry point inside it.
"""

from __future__ import annotations

import ast
import re
from collections.abc import Iterable, Mapping
from typing import Any, Final

import structlog

from formula_orchestrator.analysis.docstrings import (
    DocBlock,
    ParamDoc,
    parse_docblock,
    parse_tags,
)
from formula_orchestrator.analysis.textual_types import is_structural_literal
from formula_orchestrator.analysis.type_resolver import (
    SymbolTable,
    TypeResolver,
    literal_default,
)
from formula_orchestrator.constants import DEFAULT_FORMULA_VERSION
from formula_orchestrator.domain.models import (
    BaseType,
    CreationKind,
    FormulaDefinition,
    InputSpec,
    JSONValue,
    OutputSpec,
    SourceUnit,
    TypeModel,
)

_CAMEL_BOUNDARY_RE: Final[re.Pattern[str]] = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9_]+")
_ANNOTATION_FIELDS: Final[frozenset[str]] = frozenset({"annotation", "returns"})

FunctionNode = ast.FunctionDef | ast.AsyncFunctionDef


def to_snake_case(name: str) -> str:
    """``calculateFundingFee`` -> ``calculate_funding_fee``."""

    spaced = _CAMEL_BOUNDARY_RE.sub("_", name.strip())
    collapsed = _NON_IDENTIFIER_RE.sub("_", spaced).strip("_")
    return re.sub(r"_+", "_", collapsed).lower()


class SourceAnalyzer:
    """Extract formula definitions from documented functions."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def analyze(
        self,
        units: Iterable[SourceUnit | Mapping[str, str]],
        *,
        creation_kind: CreationKind = CreationKind.USER_AUTHORED,
    ) -> list[FormulaDefinition]:
        parsed: list[tuple[SourceUnit, ast.Module]] = []
        for raw_unit in units:
            unit = _as_unit(raw_unit)
            try:
                module = ast.parse(unit.text, filename=unit.path)
            except (SyntaxError, ValueError) as exc:
                self._logger.warning(
                    "source_unit_parse_failed",
                    path=unit.path,
                    line=getattr(exc, "lineno", None),
                    error=str(exc),
                )
                continue
            parsed.append((unit, module))

        resolver = TypeResolver(SymbolTable.from_modules(module for _, module in parsed))
        formulas: list[FormulaDefinition] = []
        seen: dict[str, str] = {}
        for unit, module in parsed:
            for function in exported_functions(module):
                docstring = ast.get_docstring(function, clean=True)
                if not docstring:
                    continue
                try:
                    formula = self._build(
                        unit, module, function, parse_docblock(docstring), resolver, creation_kind
                    )
                except ValueError as exc:
                    self._logger.warning(
                        "formula_extraction_failed",
                        path=unit.path,
                        function=function.name,
                        error=str(exc),
                    )
                    continue
                if formula.id in seen:
                    self._logger.warning(
                        "duplicate_formula_id",
                        formula_id=formula.id,
                        path=unit.path,
                        first_path=seen[formula.id],
                    )
                    continue
                seen[formula.id] = unit.path
                formulas.append(formula)

        self._logger.info("source_analyzed", units=len(parsed), formulas=len(formulas))
        return formulas

    def _build(
        self,
        unit: SourceUnit,
        module: ast.Module,
        function: FunctionNode,
        doc: DocBlock,
        resolver: TypeResolver,
        creation_kind: CreationKind,
    ) -> FormulaDefinition:
        param_docs = doc.params()
        inputs = tuple(
            _input_spec(argument, default, param_docs.get(argument.arg), resolver)
            for argument, default in positional_parameters(function)
        )

        returns = doc.returns()
        if function.returns is not None:
            output_model = resolver.resolve(function.returns)
        else:
            output_model = TypeModel(base_type=BaseType.NUMBER)
        output = OutputSpec.result(
            output_model,
            unit=returns.unit if returns else None,
            description=returns.description if returns else None,
        )

        return FormulaDefinition(
            id=doc.first("formulaId") or to_snake_case(function.name),
            name=doc.first("name") or function.name,
            version=doc.first("version") or DEFAULT_FORMULA_VERSION,
            description=doc.first("description") or doc.summary,
            tags=parse_tags(doc.first("tags")),
            engine_hints=doc.engine_hints(),
            inputs=inputs,
            outputs=(output,),
            source_text=formula_source(module, function, unit.text),
            function_name=function.name,
            formula_text=doc.first("formula"),
            source_path=unit.path,
            creation_kind=creation_kind,
        )


def exported_functions(module: ast.Module) -> list[FunctionNode]:
    exported = _declared_exports(module)
    return [
        statement
        for statement in module.body
        if isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef))
        and not statement.name.startswith("_")
        and (exported is None or statement.name in exported)
    ]


def formula_source(module: ast.Module, function: FunctionNode, text: str) -> str:
    """Source of ``function`` plus the module-level definitions it reaches."""

    definitions: dict[str, ast.stmt] = {}
    for statement in module.body:
        for name in _defined_names(statement):
            definitions[name] = statement

    included: set[int] = {id(function)}
    pending: list[ast.AST] = [function]
    while pending:
        for name in _loaded_names(pending.pop()):
            statement = definitions.get(name)
            if statement is None or id(statement) in included:
                continue
            included.add(id(statement))
            pending.append(statement)

    segments = [
        ast.get_source_segment(text, statement)
        for statement in module.body
        if id(statement) in included
    ]
    return "\n\n\n".join(segment for segment in segments if segment) + "\n"


def _defined_names(statement: ast.stmt) -> list[str]:
    if isinstance(statement, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        return [statement.name]
    targets: list[ast.expr] = []
    if isinstance(statement, ast.Assign):
        targets = list(statement.targets)
    elif isinstance(statement, ast.AnnAssign) and statement.value is not None:
        targets = [statement.target]
    names: list[str] = []
    for target in targets:
        nodes = target.elts if isinstance(target, (ast.Tuple, ast.List)) else [target]
        names.extend(node.id for node in nodes if isinstance(node, ast.Name))
    return [name for name in names if name != "__all__"]


def _loaded_names(node: ast.AST) -> set[str]:
    names: set[str] = set()
    stack: list[ast.AST] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, ast.Name) and isinstance(current.ctx, ast.Load):
            names.add(current.id)
        for field_name, value in ast.iter_fields(current):
            if field_name in _ANNOTATION_FIELDS:
                continue
            if isinstance(value, ast.AST):
                stack.append(value)
            elif isinstance(value, list):
                stack.extend(item for item in value if isinstance(item, ast.AST))
    return names


def positional_parameters(function: FunctionNode) -> list[tuple[ast.arg, ast.expr | None]]:
    arguments = [*function.args.posonlyargs, *function.args.args]
    defaults: list[ast.expr | None] = [None] * (len(arguments) - len(function.args.defaults))
    defaults.extend(function.args.defaults)
    return list(zip(arguments, defaults, strict=True))


def _input_spec(
    argument: ast.arg,
    default_node: ast.expr | None,
    param_doc: ParamDoc | None,
    resolver: TypeResolver,
) -> InputSpec:
    type_text = param_doc.type_text if param_doc else None
    if argument.annotation is not None:
        fallback = type_text if is_structural_literal(type_text) else None
        model = resolver.resolve(argument.annotation, fallback_text=fallback)
    elif type_text is not None:
        model = resolver.resolve_text(type_text)
    else:
        model = _model_from_default(default_node)

    default: JSONValue = None
    if param_doc is not None and param_doc.has_default:
        default = param_doc.default
    else:
        default, _ = literal_default(default_node)

    return InputSpec(
        key=argument.arg,
        base_type=model.base_type,
        type_model=model,
        unit=param_doc.unit if param_doc else None,
        default=default,
        description=param_doc.description if param_doc else None,
    )


def _model_from_default(node: ast.expr | None) -> TypeModel:
    if isinstance(node, ast.Constant):
        value = node.value
        if isinstance(value, bool):
            return TypeModel(base_type=BaseType.BOOLEAN)
        if isinstance(value, (int, float)):
            return TypeModel(base_type=BaseType.NUMBER)
        if isinstance(value, str):
            return TypeModel(base_type=BaseType.STRING)
        if value is None:
            return TypeModel(base_type=BaseType.OBJECT, nullable=True)
    if isinstance(node, ast.UnaryOp) and isinstance(node.operand, ast.Constant):
        if isinstance(node.operand.value, (int, float)) and not isinstance(node.operand.value, bool):
            return TypeModel(base_type=BaseType.NUMBER)
    if isinstance(node, (ast.List, ast.Tuple)):
        return TypeModel(base_type=BaseType.OBJECT, is_array=True)
    return TypeModel(base_type=BaseType.OBJECT)


def _declared_exports(module: ast.Module) -> set[str] | None:
    for statement in module.body:
        if not isinstance(statement, ast.Assign):
            continue
        if any(isinstance(target, ast.Name) and target.id == "__all__" for target in statement.targets):
            try:
                names = ast.literal_eval(statement.value)
            except ValueError:
                return None
            if isinstance(names, (list, tuple)):
                return {str(name) for name in names}
    return None


def _as_unit(unit: SourceUnit | Mapping[str, str]) -> SourceUnit:
    if isinstance(unit, SourceUnit):
        return unit
    return SourceUnit(path=str(unit["path"]), text=str(unit["text"]))


__all__ = [
    "SourceAnalyzer",
    "exported_functions",
    "formula_source",
    "positional_parameters",
    "to_snake_case",
]

"""Source analysis: annotated functions to formula definitions."""

from formula_orchestrator.analysis.analyzer import SourceAnalyzer, to_snake_case
from formula_orchestrator.analysis.docstrings import DocBlock, ParamDoc, parse_docblock
from formula_orchestrator.analysis.textual_types import (
    infer_type_from_text,
    parse_structural_literal,
)
from formula_orchestrator.analysis.type_resolver import SymbolTable, TypeResolver

__all__ = [
    "DocBlock",
    "ParamDoc",
    "SourceAnalyzer",
    "SymbolTable",
    "TypeResolver",
    "infer_type_from_text",
    "parse_docblock",
    "parse_structural_literal",
    "to_snake_case",
]

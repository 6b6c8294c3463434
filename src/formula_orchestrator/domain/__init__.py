"""
formula-orchestrator — domain layer

File: src/formula_orchestrator/domain/__init__.py

Purpose
- Domain types shared across analysis, execution, and persistence:
  FormulaDefinition, TypeModel, RemoteBundleCacheEntry, ExecutionResult.

Functional requirements
- Domain objects are plain records, serializable to canonical JSON and back.
- Keep the domain layer free of IO side effects.
"""

from formula_orchestrator.domain.models import (
    BackendKind,
    BaseType,
    CacheStats,
    CreationKind,
    EngineHint,
    ExecutionResult,
    FormulaDefinition,
    InputSpec,
    OutputSpec,
    PropertySpec,
    RemoteBundleCacheEntry,
    RemoteBundleInfo,
    RoundingStrategy,
    SourceUnit,
    StaticModuleInfo,
    TypeConstraints,
    TypeModel,
    bundle_entry_id,
)

__all__ = [
    "BackendKind",
    "BaseType",
    "CacheStats",
    "CreationKind",
    "EngineHint",
    "ExecutionResult",
    "FormulaDefinition",
    "InputSpec",
    "OutputSpec",
    "PropertySpec",
    "RemoteBundleCacheEntry",
    "RemoteBundleInfo",
    "RoundingStrategy",
    "SourceUnit",
    "StaticModuleInfo",
    "TypeConstraints",
    "TypeModel",
    "bundle_entry_id",
]

"""Formula execution: backend dispatch, bundle caching, and precision normalization."""

from formula_orchestrator.execution.backends import (
    EmbeddedBackend,
    ModuleRegistry,
    NativeFunctionRegistry,
    RemoteBundleBackend,
    StaticModuleBackend,
)
from formula_orchestrator.execution.cache_manager import BundleCacheManager
from formula_orchestrator.execution.fetch import FetchResponse, Fetcher, HttpxFetcher
from formula_orchestrator.execution.orchestrator import ComparisonReport, ExecutionOrchestrator
from formula_orchestrator.execution.precision import apply_engine_hint, normalize

__all__ = [
    "BundleCacheManager",
    "ComparisonReport",
    "EmbeddedBackend",
    "ExecutionOrchestrator",
    "FetchResponse",
    "Fetcher",
    "HttpxFetcher",
    "ModuleRegistry",
    "NativeFunctionRegistry",
    "RemoteBundleBackend",
    "StaticModuleBackend",
    "apply_engine_hint",
    "normalize",
]

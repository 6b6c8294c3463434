"""
formula-orchestrator — runtime wiring

File: src/formula_orchestrator/runtime.py

Purpose
- Build one consistent object graph from an effective config: record store,
  sandbox compiler, bundle cache manager, backend handlers, orchestrator,
  repositories, and analyzer.

Functional requirements
- ``cache.persistent`` selects the SQLite store at ``cache.db_path``; otherwise
  records live in memory for the lifetime of the runtime.
- ``sandbox.allowed_modules`` names are imported once and offered to remote
  bundles that request them.
- ``reset()`` clears in-memory caches only; persisted records stay.
- ``configure_logging=True`` applies the ``[observability]`` section through
  ``setup_logging``; otherwise logging is left to the embedding application.
- Executing an unknown stored id returns a failed ``ExecutionResult``
  (resolution) listing the stored ids; it never raises.
"""

from __future__ import annotations

import importlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from formula_orchestrator.analysis.analyzer import SourceAnalyzer
from formula_orchestrator.config.schema import assert_valid_config, default_config
from formula_orchestrator.domain.models import (
    BackendKind,
    CreationKind,
    ExecutionResult,
    FormulaDefinition,
    SourceUnit,
)
from formula_orchestrator.errors import ConfigurationError, FormulaError, ResolutionError
from formula_orchestrator.execution.backends import (
    EmbeddedBackend,
    ModuleRegistry,
    NativeFunctionRegistry,
    RemoteBundleBackend,
    StaticModuleBackend,
)
from formula_orchestrator.execution.cache_manager import BundleCacheManager
from formula_orchestrator.execution.fetch import Fetcher, HttpxFetcher
from formula_orchestrator.execution.orchestrator import ExecutionOrchestrator
from formula_orchestrator.observability.logging import LoggingHandle, setup_logging, shutdown_logging
from formula_orchestrator.persistence.repositories import FormulaRepository
from formula_orchestrator.persistence.store import (
    InMemoryRecordStore,
    RecordStore,
    RecordStoreError,
    SQLiteRecordStore,
)
from formula_orchestrator.sandbox.compiler import CompilerBackend, SandboxCompiler


def import_allowed_modules(names: Iterable[str]) -> dict[str, object]:
    modules: dict[str, object] = {}
    for name in names:
        try:
            modules[name] = importlib.import_module(name)
        except ImportError as exc:
            raise ConfigurationError(
                f"sandbox.allowed_modules entry {name!r} cannot be imported: {exc}"
            ) from exc
    return modules


@dataclass(slots=True)
class FormulaRuntime:
    """Fully wired orchestrator with its collaborators."""

    config: dict[str, Any]
    store: RecordStore
    compiler: SandboxCompiler
    cache: BundleCacheManager
    natives: NativeFunctionRegistry
    modules: ModuleRegistry
    orchestrator: ExecutionOrchestrator
    formulas: FormulaRepository
    analyzer: SourceAnalyzer
    logging_handle: LoggingHandle | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object] | None = None,
        *,
        fetcher: Fetcher | None = None,
        store: RecordStore | None = None,
        natives: NativeFunctionRegistry | None = None,
        modules: ModuleRegistry | None = None,
        logger: Any | None = None,
        configure_logging: bool = False,
    ) -> FormulaRuntime:
        effective = assert_valid_config(config if config is not None else default_config())
        logging_handle = setup_logging(effective["observability"]) if configure_logging else None
        log = logger if logger is not None else structlog.get_logger(__name__)

        cache_cfg = effective["cache"]
        remote_cfg = effective["remote"]
        if store is None:
            store = (
                SQLiteRecordStore(cache_cfg["db_path"])
                if cache_cfg["persistent"]
                else InMemoryRecordStore()
            )
        if fetcher is None:
            fetcher = HttpxFetcher(
                timeout_seconds=remote_cfg["timeout_seconds"],
                user_agent=remote_cfg["user_agent"],
                follow_redirects=remote_cfg["follow_redirects"],
            )

        compiler = SandboxCompiler(CompilerBackend())
        cache = BundleCacheManager(store, fetcher, compiler)
        natives = natives if natives is not None else NativeFunctionRegistry()
        modules = modules if modules is not None else ModuleRegistry()
        allowed = import_allowed_modules(effective["sandbox"]["allowed_modules"])
        orchestrator = ExecutionOrchestrator(
            [
                EmbeddedBackend(compiler, natives),
                StaticModuleBackend(modules),
                RemoteBundleBackend(cache, allowed_modules=allowed),
            ]
        )
        log.info(
            "runtime_initialized",
            store=type(store).__name__,
            allowed_modules=sorted(allowed),
            native_formulas=len(natives),
        )
        return cls(
            config=effective,
            store=store,
            compiler=compiler,
            cache=cache,
            natives=natives,
            modules=modules,
            orchestrator=orchestrator,
            formulas=FormulaRepository(store),
            analyzer=SourceAnalyzer(),
            logging_handle=logging_handle,
        )

    def analyze(
        self,
        units: Iterable[SourceUnit | Mapping[str, str]],
        *,
        creation_kind: CreationKind = CreationKind.USER_AUTHORED,
        save: bool = False,
    ) -> list[FormulaDefinition]:
        formulas = self.analyzer.analyze(units, creation_kind=creation_kind)
        if save:
            self.formulas.save_many(formulas)
        return formulas

    async def execute(
        self,
        formula: FormulaDefinition | str,
        inputs: Mapping[str, object] | None = None,
        backend: BackendKind | str | None = None,
    ) -> ExecutionResult:
        """Execute a definition, or a stored one looked up by id."""

        if isinstance(formula, str):
            try:
                stored = self.formulas.get(formula)
            except (RecordStoreError, ValueError) as exc:
                return self._lookup_failure(
                    formula,
                    backend,
                    ResolutionError(
                        f"stored formula {formula!r} could not be loaded: {exc}",
                        context={"formula_id": formula},
                    ),
                )
            if stored is None:
                return self._lookup_failure(
                    formula,
                    backend,
                    ResolutionError(
                        f"no stored formula with id {formula!r}",
                        available=self._stored_ids(),
                        context={"formula_id": formula},
                    ),
                )
            formula = stored
        return await self.orchestrator.execute(formula, inputs, backend)

    def _stored_ids(self) -> list[str]:
        try:
            return sorted(item.id for item in self.formulas.list())
        except (RecordStoreError, ValueError):
            return []

    def _lookup_failure(
        self, formula_id: str, backend: BackendKind | str | None, error: FormulaError
    ) -> ExecutionResult:
        try:
            kind = BackendKind(backend) if backend is not None else BackendKind.EMBEDDED
        except ValueError:
            kind = BackendKind.EMBEDDED
        structlog.get_logger(__name__).warning(
            "formula_lookup_failed",
            formula_id=formula_id,
            error_kind=error.kind.value,
            error=error.describe(),
        )
        return ExecutionResult(
            success=False,
            backend_id=kind,
            duration_ms=0.0,
            error=error.describe(),
            error_kind=error.kind.value,
        )

    async def prune(self, formula_id: str) -> int:
        return await self.cache.prune_versions(formula_id, self.config["cache"]["keep_latest_versions"])

    def close(self) -> None:
        """Flush and detach logging sinks installed by ``configure_logging``."""

        if self.logging_handle is not None:
            shutdown_logging()
            self.logging_handle = None

    def reset(self) -> dict[str, int]:
        """Drop in-memory caches and forget imported static modules."""

        return {
            "bundle_functions": self.cache.clear_memory(),
            "compiled_modules": self.compiler.clear(),
            "imported_modules": self.modules.clear(),
        }


__all__ = ["FormulaRuntime", "import_allowed_modules"]

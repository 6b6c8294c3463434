"""
formula-orchestrator — execution orchestrator

File: src/formula_orchestrator/execution/orchestrator.py

Purpose
- Public entry point: pick a backend for a formula, bind inputs positionally,
  invoke, normalize, and report an ``ExecutionResult``.

Functional requirements
- ``execute`` never raises; every failure becomes ``success=False`` with the
  error class name, message, and kind.
- Backend resolution without an explicit choice: static, then remote, then
  embedded. Embedded chosen implicitly must have user source or a native
  implementation, else the formula has no backend configured.
- Duration covers dispatch, invocation, and normalization.
- Engine hints: the backend's own entry, then ``default``, else raw value.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from formula_orchestrator.constants import DEFAULT_HINT_KEY, RESULT_OUTPUT_KEY
from formula_orchestrator.domain.models import (
    BackendKind,
    EngineHint,
    ExecutionResult,
    FormulaDefinition,
)
from formula_orchestrator.errors import (
    ConfigurationError,
    ErrorKind,
    FormulaError,
    FormulaRuntimeError,
)
from formula_orchestrator.execution.backends import BackendHandler
from formula_orchestrator.execution.precision import (
    DEFAULT_EQUALITY_THRESHOLD,
    OutputDifference,
    apply_engine_hint,
    compare_outputs,
)
from formula_orchestrator.observability.logging import correlation_scope


def select_engine_hint(formula: FormulaDefinition, backend: BackendKind | str) -> EngineHint | None:
    hints = formula.engine_hints
    if not hints:
        return None
    key = backend.value if isinstance(backend, BackendKind) else backend
    hint = hints.get(key)
    return hint if hint is not None else hints.get(DEFAULT_HINT_KEY)


def bind_arguments(formula: FormulaDefinition, inputs: Mapping[str, object]) -> list[object]:
    """Positional arguments in ``formula.inputs`` order; missing keys bind ``None``."""

    return [inputs.get(spec.key) for spec in formula.inputs]


@dataclass(frozen=True, slots=True)
class BackendComparison:
    baseline: BackendKind
    other: BackendKind
    differences: tuple[OutputDifference, ...]

    @property
    def consistent(self) -> bool:
        return all(diff.equal for diff in self.differences)


@dataclass(frozen=True, slots=True)
class ComparisonReport:
    formula_id: str
    results: Mapping[BackendKind, ExecutionResult]
    comparisons: tuple[BackendComparison, ...] = field(default=())

    @property
    def consistent(self) -> bool:
        """True when every successful backend agreed with the first one."""

        return all(comparison.consistent for comparison in self.comparisons)


class ExecutionOrchestrator:
    """Dispatch formulas to one handler per backend kind."""

    def __init__(
        self,
        handlers: Iterable[BackendHandler],
        *,
        logger: Any | None = None,
    ) -> None:
        self._handlers: dict[BackendKind, BackendHandler] = {
            handler.kind: handler for handler in handlers
        }
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backends(self) -> tuple[BackendKind, ...]:
        return tuple(self._handlers)

    def handler(self, kind: BackendKind) -> BackendHandler | None:
        return self._handlers.get(kind)

    def resolve_backend(self, formula: FormulaDefinition) -> BackendKind:
        static = formula.static_module_info
        if static is not None and static.enabled and static.module_name:
            return BackendKind.STATIC
        remote = formula.remote_bundle_info
        if remote is not None and remote.enabled and remote.url:
            return BackendKind.REMOTE
        return BackendKind.EMBEDDED

    async def execute(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, object] | None = None,
        backend: BackendKind | str | None = None,
    ) -> ExecutionResult:
        started = time.perf_counter()
        kind = self.resolve_backend(formula)
        with correlation_scope(formula_id=formula.id):
            try:
                if backend is not None:
                    kind = _parse_backend(backend)
                with correlation_scope(backend=kind.value):
                    value = await self._dispatch(formula, inputs or {}, kind, explicit=backend is not None)
            except FormulaError as exc:
                return self._failure(formula, kind, started, exc.describe(), exc.kind)
            except Exception as exc:  # noqa: BLE001
                message = f"{type(exc).__name__}: {exc}"
                return self._failure(formula, kind, started, message, ErrorKind.RUNTIME)

            duration_ms = _elapsed_ms(started)
            self._logger.info(
                "formula_executed",
                formula_id=formula.id,
                backend=kind.value,
                duration_ms=round(duration_ms, 3),
            )
            return ExecutionResult(
                success=True,
                backend_id=kind,
                duration_ms=duration_ms,
                outputs={RESULT_OUTPUT_KEY: value},
            )

    def execute_sync(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, object] | None = None,
        backend: BackendKind | str | None = None,
    ) -> ExecutionResult:
        """Run ``execute`` from synchronous code (no running event loop)."""

        return asyncio.run(self.execute(formula, inputs, backend))

    async def compare(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, object] | None = None,
        backends: Sequence[BackendKind | str] | None = None,
        *,
        threshold: float = DEFAULT_EQUALITY_THRESHOLD,
    ) -> ComparisonReport:
        """Execute on several backends and diff numeric outputs against the first success."""

        kinds = [_parse_backend(item) for item in backends] if backends else list(self._handlers)
        results = await asyncio.gather(*(self.execute(formula, inputs, kind) for kind in kinds))
        by_kind = dict(zip(kinds, results, strict=True))

        successful = [(kind, result) for kind, result in by_kind.items() if result.success]
        comparisons: list[BackendComparison] = []
        if successful:
            baseline_kind, baseline = successful[0]
            for other_kind, other in successful[1:]:
                comparisons.append(
                    BackendComparison(
                        baseline=baseline_kind,
                        other=other_kind,
                        differences=compare_outputs(
                            baseline.outputs or {}, other.outputs or {}, threshold=threshold
                        ),
                    )
                )
        report = ComparisonReport(formula_id=formula.id, results=by_kind, comparisons=tuple(comparisons))
        self._logger.info(
            "formula_compared",
            formula_id=formula.id,
            backends=[kind.value for kind in kinds],
            consistent=report.consistent,
        )
        return report

    async def _dispatch(
        self,
        formula: FormulaDefinition,
        inputs: Mapping[str, object],
        kind: BackendKind,
        *,
        explicit: bool,
    ) -> object:
        handler = self._handlers.get(kind)
        if handler is None:
            raise ConfigurationError(
                f"backend {kind.value!r} is not available",
                context={"formula_id": formula.id},
            )
        if not explicit and kind is BackendKind.EMBEDDED and not handler.is_configured(formula):
            raise ConfigurationError(
                "no backend configured for formula",
                context={"formula_id": formula.id, "creation_kind": formula.creation_kind.value},
            )

        function = await handler.resolve(formula)
        arguments = bind_arguments(formula, inputs)
        try:
            raw = function(*arguments)
            if inspect.isawaitable(raw):
                raw = await raw
        except FormulaError:
            raise
        except Exception as exc:
            raise FormulaRuntimeError(
                f"formula raised {type(exc).__name__}: {exc}",
                context={"formula_id": formula.id, "backend": kind.value},
            ) from exc
        return apply_engine_hint(raw, select_engine_hint(formula, kind))

    def _failure(
        self,
        formula: FormulaDefinition,
        kind: BackendKind,
        started: float,
        message: str,
        error_kind: ErrorKind,
    ) -> ExecutionResult:
        duration_ms = _elapsed_ms(started)
        self._logger.warning(
            "formula_execution_failed",
            formula_id=formula.id,
            backend=kind.value,
            error_kind=error_kind.value,
            error=message,
        )
        return ExecutionResult(
            success=False,
            backend_id=kind,
            duration_ms=duration_ms,
            error=message,
            error_kind=error_kind.value,
        )


def _parse_backend(value: BackendKind | str) -> BackendKind:
    try:
        return BackendKind(value)
    except ValueError as exc:
        raise ConfigurationError(
            f"unknown backend {value!r}",
            context={"known": ", ".join(kind.value for kind in BackendKind)},
        ) from exc


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


__all__ = [
    "BackendComparison",
    "ComparisonReport",
    "ExecutionOrchestrator",
    "bind_arguments",
    "select_engine_hint",
]

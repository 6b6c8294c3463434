"""
formula-orchestrator — sandbox compiler/loader

File: src/formula_orchestrator/sandbox/compiler.py

Purpose
- Compile untrusted formula source with RestrictedPython and extract a
  callable from an isolated scope built from the capability table.

What is included in this file
- ``CompilerBackend``: lazily imports RestrictedPython and assembles the
  guard/builtins toolkit at most once; concurrent first callers share one
  initialization task. ``reset()`` drops it for test isolation.
- ``SandboxCompiler``: compile cache keyed by caller-supplied keys,
  compilation on a worker thread, and function extraction.

Functional requirements
- Syntax and policy failures raise ``CompilationError`` with line, column,
  and the offending source line when available.
- Missing exports raise ``ResolutionError`` listing what was available.
- Modules outside the allow-list raise ``ModuleNotAllowedError``.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import importlib
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import CodeType, MappingProxyType, ModuleType
from typing import Any, Final

import structlog

from formula_orchestrator.errors import (
    CompilationError,
    FormulaError,
    ResolutionError,
)
from formula_orchestrator.sandbox.capabilities import (
    ControlledResolver,
    apply_call,
    build_builtins,
    build_scope,
    inplace_var,
)
from formula_orchestrator.utils.concurrency import OnceInitializer
from formula_orchestrator.utils.hashing import sha256_text

_REPORTED_LINE_RE: Final[re.Pattern[str]] = re.compile(r"\bLine (\d+):")
_MODULE_NAME_PREFIX: Final[str] = "formula_sandbox"
_PATH_SEPARATOR: Final[str] = "."


@dataclass(frozen=True, slots=True)
class RestrictedToolkit:
    """Compile function, builtins table, and guard hooks for sandboxed code."""

    compile_restricted: Callable[..., CodeType]
    builtins: Mapping[str, object]
    guards: Mapping[str, object]
    library_version: str


@dataclass(frozen=True, slots=True)
class CompiledModule:
    cache_key: str | None
    filename: str
    source_digest: str
    code: CodeType = field(repr=False)
    toolkit: RestrictedToolkit = field(repr=False)


def _load_toolkit() -> RestrictedToolkit:
    restricted = importlib.import_module("RestrictedPython")
    guards_module = importlib.import_module("RestrictedPython.Guards")
    eval_module = importlib.import_module("RestrictedPython.Eval")

    guards: dict[str, object] = {
        "_getattr_": guards_module.safer_getattr,
        "_getitem_": eval_module.default_guarded_getitem,
        "_getiter_": eval_module.default_guarded_getiter,
        "_iter_unpack_sequence_": guards_module.guarded_iter_unpack_sequence,
        "_unpack_sequence_": guards_module.guarded_unpack_sequence,
        "_write_": guards_module.full_write_guard,
        "_inplacevar_": inplace_var,
        "_apply_": apply_call,
    }
    builtins_table = build_builtins(restricted.safe_builtins)
    builtins_table["__build_class__"] = builtins.__build_class__
    return RestrictedToolkit(
        compile_restricted=restricted.compile_restricted,
        builtins=MappingProxyType(builtins_table),
        guards=MappingProxyType(guards),
        library_version=str(getattr(restricted, "__version__", "unknown")),
    )


class CompilerBackend:
    """Process-level compiler state, modeled as an explicit context object."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._once: OnceInitializer[RestrictedToolkit] = OnceInitializer(self._initialize)

    @property
    def is_ready(self) -> bool:
        return self._once.is_initialized

    @property
    def init_count(self) -> int:
        return self._once.runs

    async def ensure_ready(self) -> RestrictedToolkit:
        return await self._once.get()

    def reset(self) -> None:
        self._once.reset()

    async def _initialize(self) -> RestrictedToolkit:
        toolkit = await asyncio.to_thread(_load_toolkit)
        self._logger.info(
            "sandbox_compiler_initialized",
            restricted_python=toolkit.library_version,
            builtins=len(toolkit.builtins),
        )
        return toolkit


_DEFAULT_BACKEND_LOCK = threading.Lock()
_DEFAULT_BACKEND: CompilerBackend | None = None


def default_compiler_backend() -> CompilerBackend:
    """Return the shared backend, creating it on first use."""

    global _DEFAULT_BACKEND
    with _DEFAULT_BACKEND_LOCK:
        if _DEFAULT_BACKEND is None:
            _DEFAULT_BACKEND = CompilerBackend()
        return _DEFAULT_BACKEND


def reset_default_compiler_backend() -> None:
    global _DEFAULT_BACKEND
    with _DEFAULT_BACKEND_LOCK:
        _DEFAULT_BACKEND = None


class SandboxCompiler:
    """Compile and load untrusted formula code inside a capability-limited scope."""

    def __init__(
        self,
        backend: CompilerBackend | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._backend = backend if backend is not None else default_compiler_backend()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._cache: dict[str, CompiledModule] = {}
        self._compilations = 0

    @property
    def backend(self) -> CompilerBackend:
        return self._backend

    async def compile(self, source_text: str, cache_key: str | None = None) -> CompiledModule:
        digest = sha256_text(source_text)
        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None and cached.source_digest == digest:
                return cached

        toolkit = await self._backend.ensure_ready()
        label = cache_key if cache_key is not None else digest[:12]
        filename = f"<sandbox:{label}>"
        code = await asyncio.to_thread(_compile_source, toolkit, source_text, filename)
        compiled = CompiledModule(
            cache_key=cache_key,
            filename=filename,
            source_digest=digest,
            code=code,
            toolkit=toolkit,
        )
        self._compilations += 1
        if cache_key is not None:
            self._cache[cache_key] = compiled
        self._logger.debug("sandbox_compiled", cache_key=cache_key, source_chars=len(source_text))
        return compiled

    def extract_function(
        self,
        compiled: CompiledModule,
        function_name: str | None = None,
        allowed_modules: Mapping[str, object] | None = None,
    ) -> Callable[..., Any]:
        resolver = ControlledResolver(allowed_modules)
        module_name = f"{_MODULE_NAME_PREFIX}_{compiled.source_digest[:12]}"
        scope = build_scope(
            module_name=module_name,
            builtins=compiled.toolkit.builtins,
            guards=compiled.toolkit.guards,
            resolver=resolver,
        )
        baseline = dict(scope)
        try:
            exec(compiled.code, scope)  # noqa: S102
        except FormulaError:
            raise
        except Exception as exc:
            raise CompilationError(
                f"module initialisation failed: {type(exc).__name__}: {exc}",
                context={"module": compiled.filename},
            ) from exc

        exports = {
            name: value
            for name, value in scope.items()
            if not name.startswith("_")
            and (name not in baseline or baseline[name] is not value)
            and not isinstance(value, ModuleType)
        }
        if function_name is None:
            return _first_callable_export(exports, module_name, compiled.filename)
        return _named_export(exports, function_name, compiled.filename)

    async def load_function(
        self,
        source_text: str,
        *,
        cache_key: str | None = None,
        function_name: str | None = None,
        allowed_modules: Mapping[str, object] | None = None,
    ) -> Callable[..., Any]:
        compiled = await self.compile(source_text, cache_key)
        return self.extract_function(compiled, function_name, allowed_modules)

    def clear(self) -> int:
        removed = len(self._cache)
        self._cache.clear()
        return removed

    def stats(self) -> dict[str, int]:
        return {"cached_modules": len(self._cache), "compilations": self._compilations}


def _compile_source(toolkit: RestrictedToolkit, source_text: str, filename: str) -> CodeType:
    try:
        tree = ast.parse(source_text, filename=filename)
    except SyntaxError as exc:
        raise CompilationError(
            f"syntax error: {exc.msg}",
            line=exc.lineno,
            column=exc.offset,
            source_line=exc.text or _line_at(source_text, exc.lineno),
            context={"module": filename},
        ) from exc

    tree = ast.fix_missing_locations(_AnnotationStripper().visit(tree))
    try:
        return toolkit.compile_restricted(tree, filename=filename, mode="exec")
    except SyntaxError as exc:
        messages = _policy_messages(exc)
        line = _reported_line(messages)
        raise CompilationError(
            f"restricted code policy violation: {'; '.join(messages)}",
            line=line,
            source_line=_line_at(source_text, line),
            context={"module": filename},
        ) from exc


class _AnnotationStripper(ast.NodeTransformer):
    """Drop annotations; sandboxed code never evaluates them.

    Source extracted from a larger unit may annotate with names that are not
    defined inside the sandbox scope.
    """

    def visit_arg(self, node: ast.arg) -> ast.arg:
        node.annotation = None
        return node

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
        node.returns = None
        self.generic_visit(node)
        return node

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AsyncFunctionDef:
        node.returns = None
        self.generic_visit(node)
        return node

    def visit_AnnAssign(self, node: ast.AnnAssign) -> ast.stmt:
        if node.value is None:
            return ast.copy_location(ast.Pass(), node)
        assign = ast.Assign(targets=[node.target], value=self.visit(node.value))
        return ast.copy_location(assign, node)

    def visit_TypeAlias(self, node: ast.stmt) -> ast.stmt:
        return ast.copy_location(ast.Pass(), node)


def _policy_messages(exc: SyntaxError) -> tuple[str, ...]:
    if exc.args and isinstance(exc.args[0], (tuple, list)):
        return tuple(str(item) for item in exc.args[0])
    return (str(exc.msg if exc.msg else exc),)


def _reported_line(messages: tuple[str, ...]) -> int | None:
    for message in messages:
        match = _REPORTED_LINE_RE.search(message)
        if match:
            return int(match.group(1))
    return None


def _line_at(source_text: str, line: int | None) -> str | None:
    if line is None or line < 1:
        return None
    lines = source_text.splitlines()
    if line > len(lines):
        return None
    return lines[line - 1]


def _first_callable_export(
    exports: Mapping[str, object], module_name: str, filename: str
) -> Callable[..., Any]:
    fallback: Callable[..., Any] | None = None
    for value in exports.values():
        if not callable(value):
            continue
        if getattr(value, "__module__", None) == module_name:
            return value
        if fallback is None:
            fallback = value
    if fallback is not None:
        return fallback
    raise ResolutionError(
        "no callable export found",
        available=tuple(exports),
        context={"module": filename},
    )


def _named_export(
    exports: Mapping[str, object], function_name: str, filename: str
) -> Callable[..., Any]:
    target = _walk_path(exports, function_name)
    if target is not None and callable(target):
        return target

    available = list(exports)
    if _PATH_SEPARATOR in function_name:
        available.extend(_nested_export_names(exports))
    reason = "is not callable" if target is not None else "was not found"
    raise ResolutionError(
        f"export {function_name!r} {reason}",
        available=available,
        context={"module": filename},
    )


def _walk_path(root: Mapping[str, object], path: str) -> object | None:
    parts = path.split(_PATH_SEPARATOR)
    if any(not part or part.startswith("_") for part in parts):
        return None
    current: object | None = root.get(parts[0])
    for part in parts[1:]:
        if current is None:
            return None
        current = member(current, part)
    return current


def member(container: object, name: str) -> object | None:
    """Public member lookup on mappings, modules, classes, and namespaces."""

    if name.startswith("_"):
        return None
    if isinstance(container, Mapping):
        return container.get(name)
    return getattr(container, name, None)


def public_names(container: object) -> list[str]:
    if isinstance(container, Mapping):
        return [str(key) for key in container if not str(key).startswith("_")]
    if isinstance(container, ModuleType):
        exported = getattr(container, "__all__", None)
        if isinstance(exported, (list, tuple)):
            return [str(name) for name in exported]
    names = getattr(container, "__dict__", None)
    if not isinstance(names, Mapping):
        return []
    return [str(key) for key in names if not str(key).startswith("_")]


def _nested_export_names(exports: Mapping[str, object]) -> list[str]:
    nested: list[str] = []
    for name, value in exports.items():
        if callable(value) and not isinstance(value, type):
            continue
        nested.extend(f"{name}.{child}" for child in public_names(value))
    return nested


__all__ = [
    "CompiledModule",
    "CompilerBackend",
    "RestrictedToolkit",
    "SandboxCompiler",
    "default_compiler_backend",
    "member",
    "public_names",
    "reset_default_compiler_backend",
]

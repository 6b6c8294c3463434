"""
formula-orchestrator — execution backends

File: src/formula_orchestrator/execution/backends.py

Purpose
- One handler per ``BackendKind`` that turns a formula definition into a
  callable: embedded (sandboxed user source or native table), static module,
  and remote bundle.

What is included in this file
- ``NativeFunctionRegistry``: formula id to in-process implementation,
  seeded with the built-in trading formulas.
- ``ModuleRegistry``: pre-registered or dynamically imported modules with
  their own cache.
- ``resolve_export``: dotted export navigation shared by the static backend.
- ``EmbeddedBackend``, ``StaticModuleBackend``, ``RemoteBundleBackend``.

Functional requirements
- Handlers raise ``ConfigurationError`` when their config block is missing or
  disabled and ``ResolutionError`` (with the available names) when the target
  cannot be found. They never invoke the formula.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType, ModuleType
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from formula_orchestrator.domain.models import BackendKind, CreationKind, FormulaDefinition, bundle_entry_id
from formula_orchestrator.errors import ConfigurationError, ResolutionError
from formula_orchestrator.sandbox.compiler import SandboxCompiler, member, public_names

if TYPE_CHECKING:
    from formula_orchestrator.execution.cache_manager import BundleCacheManager

DEFAULT_EXPORT: Final[str] = "default"


def funding_fee(position_size: float, funding_rate: float) -> float:
    return position_size * funding_rate


def liquidation_price(
    entry_price: float,
    leverage: float,
    is_long: bool,
    maintenance_margin_rate: float = 0.005,
) -> float:
    margin_rate = 1 / leverage
    if is_long:
        return entry_price * (1 - margin_rate + maintenance_margin_rate)
    return entry_price * (1 + margin_rate - maintenance_margin_rate)


def pnl_calculation(entry_price: float, exit_price: float, quantity: float, is_long: bool) -> float:
    if is_long:
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def margin_requirement(position_value: float, leverage: float) -> float:
    return position_value / leverage


def percentage_change(old_value: float, new_value: float) -> float:
    if old_value == 0:
        return 0
    return (new_value - old_value) / old_value * 100


BUILTIN_NATIVE_FUNCTIONS: Final[Mapping[str, Callable[..., Any]]] = MappingProxyType(
    {
        "funding_fee": funding_fee,
        "liquidation_price": liquidation_price,
        "pnl_calculation": pnl_calculation,
        "margin_requirement": margin_requirement,
        "percentage_change": percentage_change,
    }
)


class NativeFunctionRegistry:
    """In-process implementations keyed by formula id."""

    def __init__(
        self,
        functions: Mapping[str, Callable[..., Any]] | None = None,
        *,
        include_builtins: bool = True,
    ) -> None:
        self._functions: dict[str, Callable[..., Any]] = (
            dict(BUILTIN_NATIVE_FUNCTIONS) if include_builtins else {}
        )
        for formula_id, function in (functions or {}).items():
            self.register(formula_id, function)

    def register(self, formula_id: str, function: Callable[..., Any]) -> None:
        if not callable(function):
            raise TypeError(f"native implementation for {formula_id!r} is not callable")
        self._functions[formula_id] = function

    def unregister(self, formula_id: str) -> bool:
        return self._functions.pop(formula_id, None) is not None

    def get(self, formula_id: str) -> Callable[..., Any] | None:
        return self._functions.get(formula_id)

    def ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._functions))

    def __contains__(self, formula_id: object) -> bool:
        return formula_id in self._functions

    def __len__(self) -> int:
        return len(self._functions)


class ModuleRegistry:
    """Modules for the static backend: registered objects first, then imports."""

    def __init__(
        self,
        modules: Mapping[str, object] | None = None,
        *,
        importer: Callable[[str], ModuleType] = importlib.import_module,
        logger: Any | None = None,
    ) -> None:
        self._registered: dict[str, object] = dict(modules or {})
        self._imported: dict[str, object] = {}
        self._importer = importer
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def register(self, name: str, module: object) -> None:
        self._registered[name] = module

    def unregister(self, name: str) -> bool:
        return self._registered.pop(name, None) is not None

    def load(self, module_name: str, import_path: str | None = None) -> object:
        target = module_target(module_name, import_path)
        registered = self._registered.get(target)
        if registered is not None:
            return registered
        if target != module_name and module_name in self._registered:
            nested = _walk(self._registered[module_name], target[len(module_name) + 1 :])
            if nested is not None:
                return nested
        cached = self._imported.get(target)
        if cached is not None:
            return cached
        try:
            module = self._importer(target)
        except ImportError as exc:
            raise ResolutionError(
                f"module {target!r} could not be imported: {exc}",
                available=sorted(self._registered),
                context={"module": target},
            ) from exc
        self._imported[target] = module
        self._logger.info("static_module_loaded", module_name=target)
        return module

    def clear(self) -> int:
        """Forget imported modules; registered modules stay."""

        removed = len(self._imported)
        self._imported.clear()
        return removed

    def stats(self) -> dict[str, int]:
        return {"registered": len(self._registered), "imported": len(self._imported)}


def module_target(module_name: str, import_path: str | None) -> str:
    if not import_path:
        return module_name
    suffix = import_path.strip("./").replace("/", ".")
    return f"{module_name}.{suffix}" if suffix else module_name


def resolve_export(module: object, path: str, *, label: str) -> Callable[..., Any]:
    """Named export, then member of the default export, then the bare default."""

    target = _walk(module, path)
    if callable(target):
        return target
    default = member(module, DEFAULT_EXPORT)
    if default is not None:
        nested = _walk(default, path)
        if callable(nested):
            return nested
        if callable(default) and not isinstance(default, type):
            return default

    available = public_names(module)
    for name in list(available):
        value = member(module, name)
        if value is None or isinstance(value, ModuleType) or (callable(value) and not isinstance(value, type)):
            continue
        available.extend(f"{name}.{child}" for child in public_names(value))
    raise ResolutionError(
        f"export {path!r} was not found in module {label!r}",
        available=available,
        context={"module": label},
    )


def _walk(root: object, path: str) -> object | None:
    current: object | None = root
    for part in (segment for segment in path.split(".") if segment):
        if current is None:
            return None
        current = member(current, part)
    return current


class BackendHandler(Protocol):
    kind: BackendKind

    def is_configured(self, formula: FormulaDefinition) -> bool: ...

    async def resolve(self, formula: FormulaDefinition) -> Callable[..., Any]: ...


class EmbeddedBackend:
    """User-authored source through the sandbox, else the native table."""

    kind = BackendKind.EMBEDDED

    def __init__(self, compiler: SandboxCompiler, natives: NativeFunctionRegistry | None = None) -> None:
        self._compiler = compiler
        self._natives = natives if natives is not None else NativeFunctionRegistry()

    @property
    def natives(self) -> NativeFunctionRegistry:
        return self._natives

    def is_configured(self, formula: FormulaDefinition) -> bool:
        return _has_user_source(formula) or formula.id in self._natives

    async def resolve(self, formula: FormulaDefinition) -> Callable[..., Any]:
        if _has_user_source(formula):
            return await self._compiler.load_function(
                formula.source_text or "",
                cache_key=bundle_entry_id(formula.id, formula.version),
                function_name=formula.function_name,
            )
        function = self._natives.get(formula.id)
        if function is None:
            raise ResolutionError(
                f"no embedded implementation for formula {formula.id!r}",
                available=self._natives.ids(),
                context={"formula_id": formula.id},
            )
        return function


class StaticModuleBackend:
    kind = BackendKind.STATIC

    def __init__(self, modules: ModuleRegistry | None = None) -> None:
        self._modules = modules if modules is not None else ModuleRegistry()

    @property
    def modules(self) -> ModuleRegistry:
        return self._modules

    def is_configured(self, formula: FormulaDefinition) -> bool:
        info = formula.static_module_info
        return info is not None and info.enabled and bool(info.module_name)

    async def resolve(self, formula: FormulaDefinition) -> Callable[..., Any]:
        info = formula.static_module_info
        if info is None or not self.is_configured(formula):
            raise ConfigurationError(
                "static module backend is not enabled for this formula",
                context={"formula_id": formula.id},
            )
        module = self._modules.load(info.module_name, info.import_path)
        return resolve_export(
            module,
            info.function_name,
            label=module_target(info.module_name, info.import_path),
        )


class RemoteBundleBackend:
    """Fetch, cache, and sandbox remote bundles through the cache manager.

    Module names a bundle asks for are mapped onto host modules through
    ``allowed_modules``; a name the host does not offer is a configuration
    problem, not a sandbox escape.
    """

    kind = BackendKind.REMOTE

    def __init__(
        self,
        cache: BundleCacheManager,
        *,
        allowed_modules: Mapping[str, object] | None = None,
    ) -> None:
        self._cache = cache
        self._allowed = dict(allowed_modules or {})

    @property
    def cache(self) -> BundleCacheManager:
        return self._cache

    def is_configured(self, formula: FormulaDefinition) -> bool:
        info = formula.remote_bundle_info
        return info is not None and info.enabled and bool(info.url)

    async def resolve(self, formula: FormulaDefinition) -> Callable[..., Any]:
        info = formula.remote_bundle_info
        if info is None or not self.is_configured(formula):
            raise ConfigurationError(
                "remote bundle backend is not enabled for this formula",
                context={"formula_id": formula.id},
            )
        allowed = self._allowed_for(formula.id, info.allowed_modules)
        return await self._cache.get_or_load(
            info.url,
            info.function_name,
            formula.id,
            info.version or formula.version,
            allowed or None,
        )

    def _allowed_for(self, formula_id: str, names: Iterable[str]) -> dict[str, object]:
        selected: dict[str, object] = {}
        for name in names:
            if name not in self._allowed:
                raise ConfigurationError(
                    f"bundle requests module {name!r}, which is not in sandbox.allowed_modules "
                    f"(offered: {', '.join(sorted(self._allowed)) or '<none>'})",
                    context={"formula_id": formula_id},
                )
            selected[name] = self._allowed[name]
        return selected


def _has_user_source(formula: FormulaDefinition) -> bool:
    return bool(formula.source_text) and formula.creation_kind is CreationKind.USER_AUTHORED


__all__ = [
    "BUILTIN_NATIVE_FUNCTIONS",
    "BackendHandler",
    "EmbeddedBackend",
    "ModuleRegistry",
    "NativeFunctionRegistry",
    "RemoteBundleBackend",
    "StaticModuleBackend",
    "module_target",
    "resolve_export",
]

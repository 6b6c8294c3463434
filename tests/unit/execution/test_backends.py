"""Backend handlers: native table, static modules, export resolution, remote allow-lists."""

from __future__ import annotations

import math
import types

import pytest

from formula_orchestrator.domain.models import (
    BackendKind,
    CreationKind,
    FormulaDefinition,
    RemoteBundleInfo,
    StaticModuleInfo,
)
from formula_orchestrator.errors import ConfigurationError, ResolutionError
from formula_orchestrator.execution.backends import (
    EmbeddedBackend,
    ModuleRegistry,
    NativeFunctionRegistry,
    RemoteBundleBackend,
    StaticModuleBackend,
    funding_fee,
    liquidation_price,
    margin_requirement,
    module_target,
    percentage_change,
    pnl_calculation,
    resolve_export,
)
from formula_orchestrator.sandbox.compiler import CompilerBackend, SandboxCompiler


def _module(name: str, **members: object) -> types.ModuleType:
    module = types.ModuleType(name)
    for key, value in members.items():
        setattr(module, key, value)
    return module


def test_builtin_native_formulas() -> None:
    assert funding_fee(10_000, 0.0001) == pytest.approx(1.0)
    assert liquidation_price(100.0, 10, True) == pytest.approx(90.5)
    assert liquidation_price(100.0, 10, False) == pytest.approx(109.5)
    assert pnl_calculation(100.0, 110.0, 2, True) == pytest.approx(20.0)
    assert pnl_calculation(100.0, 110.0, 2, False) == pytest.approx(-20.0)
    assert margin_requirement(5_000, 20) == pytest.approx(250.0)
    assert percentage_change(0, 50) == 0
    assert percentage_change(50, 75) == pytest.approx(50.0)


def test_native_registry_register_and_lookup() -> None:
    registry = NativeFunctionRegistry()
    assert "funding_fee" in registry
    assert len(registry) == 5

    registry.register("double", lambda x: x * 2)
    assert registry.get("double")(4) == 8  # type: ignore[misc]
    assert "double" in registry.ids()
    assert registry.unregister("double")
    assert not registry.unregister("double")

    with pytest.raises(TypeError):
        registry.register("bad", 42)  # type: ignore[arg-type]

    empty = NativeFunctionRegistry(include_builtins=False)
    assert len(empty) == 0


def test_module_target_joins_import_path() -> None:
    assert module_target("risk", None) == "risk"
    assert module_target("risk", "margin/calc") == "risk.margin.calc"
    assert module_target("risk", "./") == "risk"


def test_module_registry_prefers_registered_modules() -> None:
    imported: list[str] = []

    def importer(name: str) -> types.ModuleType:
        imported.append(name)
        return _module(name)

    risk = _module("risk", margin=types.SimpleNamespace(calc=_module("risk.margin.calc")))
    registry = ModuleRegistry({"risk": risk}, importer=importer)

    assert registry.load("risk") is risk
    assert registry.load("risk", "margin/calc") is risk.margin.calc
    assert imported == []

    loaded = registry.load("other")
    assert registry.load("other") is loaded
    assert imported == ["other"]
    assert registry.stats() == {"registered": 1, "imported": 1}
    assert registry.clear() == 1
    assert registry.stats() == {"registered": 1, "imported": 0}


def test_module_registry_import_failure_lists_registered() -> None:
    registry = ModuleRegistry({"risk": _module("risk")})
    with pytest.raises(ResolutionError) as excinfo:
        registry.load("formula_orchestrator_missing_module_for_tests")
    assert excinfo.value.available == ("risk",)


def test_resolve_export_named_then_default() -> None:
    def calc(x: float) -> float:
        return x + 1

    def fallback(x: float) -> float:
        return x - 1

    named = _module("named", calc=calc)
    assert resolve_export(named, "calc", label="named") is calc

    nested = _module("nested", default=types.SimpleNamespace(calc=calc))
    assert resolve_export(nested, "calc", label="nested") is calc

    bare_default = _module("bare", default=fallback)
    assert resolve_export(bare_default, "calc", label="bare") is fallback

    dotted = _module("dotted", pricing=types.SimpleNamespace(spot=calc))
    assert resolve_export(dotted, "pricing.spot", label="dotted") is calc


def test_resolve_export_missing_lists_names() -> None:
    module = _module("lib", pricing=types.SimpleNamespace(spot=len), helper=len)
    with pytest.raises(ResolutionError) as excinfo:
        resolve_export(module, "absent", label="lib")
    assert "helper" in excinfo.value.available
    assert "pricing.spot" in excinfo.value.available


async def test_static_backend_resolves_real_module() -> None:
    backend = StaticModuleBackend()
    formula = FormulaDefinition(
        id="hypot",
        name="hypot",
        static_module_info=StaticModuleInfo(module_name="math", function_name="hypot"),
    )
    assert backend.is_configured(formula)
    function = await backend.resolve(formula)
    assert function is math.hypot


async def test_static_backend_requires_enabled_config() -> None:
    backend = StaticModuleBackend()
    disabled = FormulaDefinition(
        id="hypot",
        name="hypot",
        static_module_info=StaticModuleInfo(module_name="math", function_name="hypot", enabled=False),
    )
    assert not backend.is_configured(disabled)
    with pytest.raises(ConfigurationError):
        await backend.resolve(disabled)


async def test_embedded_backend_prefers_user_source_then_natives() -> None:
    backend = EmbeddedBackend(SandboxCompiler(CompilerBackend()))
    authored = FormulaDefinition(
        id="funding_fee",
        name="fundingFee",
        source_text="def funding_fee(size, rate):\n    return size * rate * 2\n",
        creation_kind=CreationKind.USER_AUTHORED,
    )
    imported = FormulaDefinition(id="funding_fee", name="fundingFee", source_text=authored.source_text)
    unknown = FormulaDefinition(id="nothing_here", name="nothing")

    assert (await backend.resolve(authored))(10, 0.5) == 10
    assert await backend.resolve(imported) is funding_fee
    assert backend.is_configured(authored)
    assert backend.is_configured(imported)
    assert not backend.is_configured(unknown)
    with pytest.raises(ResolutionError) as excinfo:
        await backend.resolve(unknown)
    assert "funding_fee" in excinfo.value.available


def test_remote_backend_maps_requested_modules_through_allow_list() -> None:
    sentinel = object()

    class _Cache:
        pass

    backend = RemoteBundleBackend(_Cache(), allowed_modules={"decimal": sentinel})  # type: ignore[arg-type]
    assert backend.kind is BackendKind.REMOTE
    assert backend._allowed_for("f", ["decimal"]) == {"decimal": sentinel}
    with pytest.raises(ConfigurationError, match="numpy"):
        backend._allowed_for("f", ["numpy"])

    disabled = FormulaDefinition(
        id="f",
        name="f",
        remote_bundle_info=RemoteBundleInfo(url="https://x.test/f.py", enabled=False),
    )
    assert not backend.is_configured(disabled)

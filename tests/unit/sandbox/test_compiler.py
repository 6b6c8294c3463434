"""Sandbox compilation, extraction, and capability boundaries."""

from __future__ import annotations

import asyncio
import decimal
import json

import pytest

from formula_orchestrator.errors import (
    CompilationError,
    ModuleNotAllowedError,
    ResolutionError,
)
from formula_orchestrator.sandbox.compiler import CompilerBackend, SandboxCompiler

FUNDING_SOURCE = """
def funding_fee(position_size, funding_rate):
    return position_size * funding_rate
"""


@pytest.fixture
def compiler() -> SandboxCompiler:
    return SandboxCompiler(CompilerBackend())


async def test_load_function_returns_callable(compiler: SandboxCompiler) -> None:
    fee = await compiler.load_function(FUNDING_SOURCE, cache_key="funding_fee:1.0.0")
    assert fee(1000, 0.0001) == pytest.approx(0.1)


async def test_named_extraction_and_missing_export_lists_available(compiler: SandboxCompiler) -> None:
    source = "def helper(x):\n    return x\n\ndef main(x):\n    return helper(x) + 1\n"
    main = await compiler.load_function(source, function_name="main")
    assert main(1) == 2

    with pytest.raises(ResolutionError) as excinfo:
        await compiler.load_function(source, function_name="absent")
    assert set(excinfo.value.available) == {"helper", "main"}


async def test_first_callable_defined_in_unit_is_default(compiler: SandboxCompiler) -> None:
    source = "RATE = 2\n\ndef double(x):\n    return x * RATE\n"
    double = await compiler.load_function(source)
    assert double(21) == 42


async def test_loops_subscripts_and_augmented_assignment(compiler: SandboxCompiler) -> None:
    source = """
def exposure(positions, leverage):
    total = 0
    for position in positions:
        total += position["size"] * leverage
    return round(total, 2)
"""
    exposure = await compiler.load_function(source)
    assert exposure([{"size": 1.5}, {"size": 2.25}], 2) == 7.5


async def test_safe_globals_are_available(compiler: SandboxCompiler) -> None:
    source = "def hyp(a, b):\n    return math.sqrt(a * a + b * b)\n"
    hyp = await compiler.load_function(source)
    assert hyp(3, 4) == 5.0


async def test_annotations_are_ignored(compiler: SandboxCompiler) -> None:
    source = """
def scaled(value: Price, factor: float = 2.0) -> Money:
    result: Money = value * factor
    return result
"""
    scaled = await compiler.load_function(source)
    assert scaled(3) == 6.0


async def test_syntax_error_reports_line(compiler: SandboxCompiler) -> None:
    with pytest.raises(CompilationError) as excinfo:
        await compiler.compile("def broken(:\n    return 1\n")
    assert excinfo.value.line == 1
    assert excinfo.value.kind == "compilation"


async def test_policy_violation_reports_line(compiler: SandboxCompiler) -> None:
    source = "def escape(x):\n    return x.__class__\n"
    with pytest.raises(CompilationError) as excinfo:
        await compiler.compile(source)
    assert "policy violation" in str(excinfo.value)
    assert excinfo.value.line == 2
    assert excinfo.value.source_line == "    return x.__class__"


async def test_module_initialisation_failure_is_compilation_error(compiler: SandboxCompiler) -> None:
    with pytest.raises(CompilationError, match="module initialisation failed"):
        await compiler.load_function("BROKEN = 1 / 0\n\ndef f():\n    return BROKEN\n")


async def test_import_outside_allow_list_is_rejected(compiler: SandboxCompiler) -> None:
    with pytest.raises(ModuleNotAllowedError) as excinfo:
        await compiler.load_function("import os\n\ndef f():\n    return 1\n")
    assert excinfo.value.module_name == "os"


async def test_blocked_names_are_unbound(compiler: SandboxCompiler) -> None:
    source = "def unbound_names():\n    return [open is None, os is None, time is None, httpx is None]\n"
    unbound_names = await compiler.load_function(source)
    assert unbound_names() == [True, True, True, True]


@pytest.mark.parametrize(
    "expression",
    [
        "statistics.sys",
        "statistics.sys.modules['os'].getcwd()",
        "json.codecs",
        "json.codecs.open('/etc/hostname').read()",
        "re.functools",
    ],
)
async def test_host_modules_behind_safe_globals_are_unreachable(
    compiler: SandboxCompiler, expression: str
) -> None:
    escape = await compiler.load_function(f"def escape():\n    return {expression}\n")
    with pytest.raises(AttributeError, match="not reachable"):
        escape()


async def test_safe_global_members_still_resolve(compiler: SandboxCompiler) -> None:
    source = """
def summary(values):
    return [statistics.fmean(values), json.dumps({"n": len(values)}), re.sub("a", "b", "aa")]
"""
    summary = await compiler.load_function(source)
    assert summary([1, 2, 3]) == [2.0, '{"n": 3}', "bb"]


async def test_offered_submodule_stays_reachable(compiler: SandboxCompiler) -> None:
    source = "def decoder_module():\n    return json.decoder.JSONDecodeError\n"
    compiled = await compiler.compile(source, "decoder:1")
    offered = compiler.extract_function(compiled, None, {"json": json, "json.decoder": json.decoder})
    hidden = compiler.extract_function(compiled, None, None)

    assert offered() is json.JSONDecodeError
    with pytest.raises(AttributeError):
        hidden()


async def test_allow_list_binds_bare_names_and_require(compiler: SandboxCompiler) -> None:
    source = """
def to_decimal(value):
    return decimal.Decimal(str(value))

def via_require(value):
    return require("decimal").Decimal(str(value))

def forbidden():
    return require("socket")
"""
    allowed = {"decimal": decimal}
    compiled = await compiler.compile(source, "decimal_helpers:1")
    to_decimal = compiler.extract_function(compiled, "to_decimal", allowed)
    via_require = compiler.extract_function(compiled, "via_require", allowed)
    forbidden = compiler.extract_function(compiled, "forbidden", allowed)

    assert to_decimal(1.5) == decimal.Decimal("1.5")
    assert via_require(2) == decimal.Decimal("2")
    with pytest.raises(ModuleNotAllowedError):
        forbidden()


async def test_each_extraction_gets_its_own_scope(compiler: SandboxCompiler) -> None:
    source = "def has_decimal():\n    return require('decimal') is not None\n"
    compiled = await compiler.compile(source, "scope:1")
    with_module = compiler.extract_function(compiled, None, {"decimal": decimal})
    without_module = compiler.extract_function(compiled, None, None)

    assert with_module() is True
    with pytest.raises(ModuleNotAllowedError):
        without_module()


async def test_compile_cache_reuses_matching_source(compiler: SandboxCompiler) -> None:
    first = await compiler.compile(FUNDING_SOURCE, "funding_fee:1.0.0")
    second = await compiler.compile(FUNDING_SOURCE, "funding_fee:1.0.0")
    assert first is second
    assert compiler.stats() == {"cached_modules": 1, "compilations": 1}

    changed = await compiler.compile(FUNDING_SOURCE.replace("*", "+"), "funding_fee:1.0.0")
    assert changed is not first
    assert compiler.stats()["compilations"] == 2

    assert compiler.clear() == 1
    assert compiler.stats()["cached_modules"] == 0


async def test_compiler_backend_initializes_once_for_concurrent_callers() -> None:
    backend = CompilerBackend()
    toolkits = await asyncio.gather(*(backend.ensure_ready() for _ in range(6)))

    assert backend.is_ready
    assert backend.init_count == 1
    assert all(toolkit is toolkits[0] for toolkit in toolkits)

    backend.reset()
    assert not backend.is_ready
    await backend.ensure_ready()
    assert backend.init_count == 2

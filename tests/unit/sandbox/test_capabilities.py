"""Capability table and controlled module resolution."""

from __future__ import annotations

import decimal
import math

import pytest

from formula_orchestrator.errors import ModuleNotAllowedError
from formula_orchestrator.sandbox.capabilities import (
    BLOCKED_NAMES,
    ControlledResolver,
    build_builtins,
    build_scope,
    inplace_var,
    is_bare_identifier,
)


def test_build_builtins_strips_dangerous_entries() -> None:
    table = build_builtins({"open": open, "len": len, "__import__": __import__})
    assert "open" not in table
    assert "__import__" not in table
    assert table["len"] is len
    assert table["max"] is max


def test_scope_blocks_dangerous_names_even_when_allow_listed() -> None:
    sentinel = object()
    resolver = ControlledResolver({"os": sentinel, "numbers.extra": sentinel, "decimal": decimal})
    scope = build_scope(module_name="unit", builtins={}, guards={}, resolver=resolver)

    for name in BLOCKED_NAMES:
        assert scope[name] is None
    assert scope["decimal"] is decimal
    assert "numbers.extra" not in scope
    assert scope["math"] is math
    assert resolver.require("os") is sentinel
    assert resolver.require("numbers.extra") is sentinel


def test_resolver_import_hook_rejects_relative_and_unknown_imports() -> None:
    resolver = ControlledResolver({"decimal": decimal})
    assert resolver.import_module("decimal") is decimal
    with pytest.raises(ModuleNotAllowedError):
        resolver.import_module("decimal", level=1)
    with pytest.raises(ModuleNotAllowedError) as excinfo:
        resolver.require("subprocess")
    assert excinfo.value.available == ("decimal",)


def test_inplace_var_supports_arithmetic_and_rejects_unknown_ops() -> None:
    assert inplace_var("+=", 1, 2) == 3
    assert inplace_var("*=", [1], 2) == [1, 1]
    with pytest.raises(TypeError):
        inplace_var("?=", 1, 2)


@pytest.mark.parametrize(
    ("name", "expected"),
    [("decimal", True), ("np", True), ("numbers.extra", False), ("_private", False), ("class", False)],
)
def test_is_bare_identifier(name: str, expected: bool) -> None:
    assert is_bare_identifier(name) is expected

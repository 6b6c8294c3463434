"""
formula-orchestrator — sandbox capability table

File: src/formula_orchestrator/sandbox/capabilities.py

Purpose
- Declare exactly which facilities compiled formula code can reach.

What is included in this file
- Safe builtins and safe module globals bound into every sandbox scope.
- Dangerous names rebound to ``None`` inside the same scope.
- ``ControlledResolver``: the only path to named external dependencies,
  backed by an explicit caller-supplied allow-list.

Functional requirements
- Allow-list keys that are bare identifiers are bound directly into scope;
  every other key is reachable only through ``require(name)`` or ``import``.
- Dangerous names win over allow-list keys for direct binding; an explicitly
  allowed module with such a name stays reachable through ``require``.
- Attribute access never yields a module object that is not in the
  allow-list, so host modules imported by safe modules (``statistics.sys``,
  ``json.codecs``) stay out of reach.
"""

from __future__ import annotations

import datetime as _datetime
import json
import keyword
import math
import operator
import re
import statistics
from collections.abc import Callable, Mapping
from decimal import Decimal
from fractions import Fraction
from types import MappingProxyType, ModuleType
from typing import Any, Final

from formula_orchestrator.errors import ModuleNotAllowedError

SAFE_BUILTIN_ADDITIONS: Final[Mapping[str, object]] = MappingProxyType(
    {
        "abs": abs,
        "all": all,
        "any": any,
        "bool": bool,
        "chr": chr,
        "dict": dict,
        "divmod": divmod,
        "enumerate": enumerate,
        "filter": filter,
        "float": float,
        "format": format,
        "frozenset": frozenset,
        "int": int,
        "isinstance": isinstance,
        "iter": iter,
        "len": len,
        "list": list,
        "map": map,
        "max": max,
        "min": min,
        "next": next,
        "ord": ord,
        "pow": pow,
        "range": range,
        "repr": repr,
        "reversed": reversed,
        "round": round,
        "set": set,
        "slice": slice,
        "sorted": sorted,
        "str": str,
        "sum": sum,
        "tuple": tuple,
        "zip": zip,
        "ArithmeticError": ArithmeticError,
        "KeyError": KeyError,
        "TypeError": TypeError,
        "ValueError": ValueError,
        "ZeroDivisionError": ZeroDivisionError,
    }
)

# Arithmetic, date, JSON, regex, and numeric parsing helpers.
SAFE_MODULE_GLOBALS: Final[Mapping[str, object]] = MappingProxyType(
    {
        "math": math,
        "json": json,
        "datetime": _datetime,
        "date": _datetime.date,
        "timedelta": _datetime.timedelta,
        "Decimal": Decimal,
        "Fraction": Fraction,
        "statistics": statistics,
        "re": re,
    }
)

BLOCKED_NAMES: Final[tuple[str, ...]] = (
    # dynamic evaluation and introspection
    "eval",
    "exec",
    "compile",
    "globals",
    "locals",
    "vars",
    "setattr",
    "delattr",
    "importlib",
    "builtins",
    # files, processes, and host access
    "open",
    "input",
    "breakpoint",
    "os",
    "sys",
    "subprocess",
    "ctypes",
    "signal",
    # network
    "socket",
    "urllib",
    "http",
    "httpx",
    "requests",
    # persistent storage
    "sqlite3",
    "shelve",
    "pickle",
    # timers and cross-context messaging
    "time",
    "sched",
    "threading",
    "asyncio",
    "multiprocessing",
    "queue",
)

_INPLACE_OPERATORS: Final[Mapping[str, Callable[[Any, Any], Any]]] = MappingProxyType(
    {
        "+=": operator.iadd,
        "-=": operator.isub,
        "*=": operator.imul,
        "/=": operator.itruediv,
        "//=": operator.ifloordiv,
        "%=": operator.imod,
        "**=": operator.ipow,
        "<<=": operator.ilshift,
        ">>=": operator.irshift,
        "&=": operator.iand,
        "|=": operator.ior,
        "^=": operator.ixor,
        "@=": operator.imatmul,
    }
)


def is_bare_identifier(name: str) -> bool:
    """True when ``name`` can be bound directly into a sandbox scope."""

    return name.isidentifier() and not keyword.iskeyword(name) and not name.startswith("_")


class ControlledResolver:
    """Resolve named dependencies strictly from an allow-list map."""

    __slots__ = ("_allowed",)

    def __init__(self, allowed: Mapping[str, object] | None = None) -> None:
        self._allowed: Mapping[str, object] = MappingProxyType(dict(allowed or {}))

    @property
    def allowed(self) -> Mapping[str, object]:
        return self._allowed

    def require(self, name: str) -> object:
        if not isinstance(name, str) or name not in self._allowed:
            raise ModuleNotAllowedError(str(name), available=tuple(self._allowed))
        return self._allowed[name]

    def import_module(
        self,
        name: str,
        globals: Mapping[str, object] | None = None,  # noqa: A002
        locals: Mapping[str, object] | None = None,  # noqa: A002
        fromlist: tuple[str, ...] | None = (),
        level: int = 0,
    ) -> object:
        """``__import__`` replacement: absolute imports from the allow-list only."""

        del globals, locals, fromlist
        if level != 0:
            raise ModuleNotAllowedError(f"{'.' * level}{name}", available=tuple(self._allowed))
        return self.require(name)


def inplace_var(op: str, target: Any, value: Any) -> Any:
    """Augmented assignment hook used by restricted code (``x += 1``)."""

    handler = _INPLACE_OPERATORS.get(op)
    if handler is None:
        raise TypeError(f"unsupported augmented assignment operator {op!r}")
    return handler(target, value)


def apply_call(function: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Star-argument call hook used by restricted code (``f(*args)``)."""

    return function(*args, **kwargs)


def guard_module_attributes(
    getattr_hook: Callable[..., Any], allowed: Mapping[str, object]
) -> Callable[..., Any]:
    """Wrap ``_getattr_`` so it refuses module values outside ``allowed``."""

    offered = frozenset(id(value) for value in allowed.values() if isinstance(value, ModuleType))

    def guarded_getattr(obj: Any, name: str, *args: Any) -> Any:
        value = getattr_hook(obj, name, *args)
        if isinstance(value, ModuleType) and id(value) not in offered:
            raise AttributeError(f"module {name!r} is not reachable from formula code")
        return value

    return guarded_getattr


def build_builtins(base: Mapping[str, object]) -> dict[str, object]:
    """Merge ``base`` with the safe additions and strip dangerous builtins."""

    table = dict(base)
    table.update(SAFE_BUILTIN_ADDITIONS)
    for name in BLOCKED_NAMES:
        table.pop(name, None)
    table.pop("__import__", None)
    return table


def build_scope(
    *,
    module_name: str,
    builtins: Mapping[str, object],
    guards: Mapping[str, object],
    resolver: ControlledResolver,
) -> dict[str, object]:
    """Construct the isolated global scope for one compiled unit."""

    scoped_builtins = dict(builtins)
    scoped_builtins["__import__"] = resolver.import_module
    scope: dict[str, object] = {
        "__builtins__": scoped_builtins,
        "__name__": module_name,
        "__metaclass__": type,
        "__doc__": None,
    }
    scope.update(guards)
    getattr_hook = guards.get("_getattr_")
    if getattr_hook is not None:
        scope["_getattr_"] = guard_module_attributes(getattr_hook, resolver.allowed)
    scope.update(SAFE_MODULE_GLOBALS)
    for key, value in resolver.allowed.items():
        if is_bare_identifier(key):
            scope[key] = value
    scope["require"] = resolver.require
    for name in BLOCKED_NAMES:
        scope[name] = None
    return scope


__all__ = [
    "BLOCKED_NAMES",
    "SAFE_BUILTIN_ADDITIONS",
    "SAFE_MODULE_GLOBALS",
    "ControlledResolver",
    "apply_call",
    "build_builtins",
    "build_scope",
    "guard_module_attributes",
    "inplace_var",
    "is_bare_identifier",
]

"""
formula-orchestrator — error taxonomy

File: src/formula_orchestrator/errors.py

Purpose
- Distinctly tagged failures for configuration, resolution, compilation,
  network, integrity, and runtime problems.

Functional requirements
- Every error carries enough context (formula, module, url, export listing)
  to diagnose without re-running with added logging.
- ``IntegrityError`` is internal to the cache manager and never reaches callers.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import Final

_MAX_LISTED_NAMES: Final[int] = 50


class ErrorKind(StrEnum):
    CONFIGURATION = "configuration"
    RESOLUTION = "resolution"
    COMPILATION = "compilation"
    NETWORK = "network"
    INTEGRITY = "integrity"
    RUNTIME = "runtime"


class FormulaError(Exception):
    """Base class for failures raised by analysis and execution components."""

    kind: ErrorKind = ErrorKind.RUNTIME

    def __init__(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        self.message = message
        self.context: dict[str, object] = {
            key: value for key, value in (context or {}).items() if value is not None
        }
        super().__init__(_with_context(message, self.context))

    def describe(self) -> str:
        """Return ``"<ClassName>: <message>"`` as surfaced in execution results."""

        return f"{type(self).__name__}: {self}"


class ConfigurationError(FormulaError):
    """Backend is not enabled or not configured for a formula."""

    kind = ErrorKind.CONFIGURATION


class ResolutionError(FormulaError):
    """Target function, export, or module could not be found."""

    kind = ErrorKind.RESOLUTION

    def __init__(
        self,
        message: str,
        *,
        available: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.available = tuple(available)
        listed = list(self.available[:_MAX_LISTED_NAMES])
        if len(self.available) > _MAX_LISTED_NAMES:
            listed.append(f"... (+{len(self.available) - _MAX_LISTED_NAMES} more)")
        rendered = ", ".join(listed) if listed else "<none>"
        super().__init__(f"{message}; available: {rendered}", context=context)


class ModuleNotAllowedError(ResolutionError):
    """Sandboxed code asked for a module outside its allow-list."""

    def __init__(self, name: str, *, available: Sequence[str] = ()) -> None:
        self.module_name = name
        super().__init__(
            f"module {name!r} is not in the sandbox allow-list",
            available=sorted(available),
        )


class CompilationError(FormulaError):
    """Source text has diagnosable syntax or policy errors."""

    kind = ErrorKind.COMPILATION

    def __init__(
        self,
        message: str,
        *,
        line: int | None = None,
        column: int | None = None,
        source_line: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.line = line
        self.column = column
        self.source_line = source_line
        location = ""
        if line is not None:
            location = f" at line {line}"
            if column is not None:
                location = f"{location}, column {column}"
        detail = f"{message}{location}"
        if source_line:
            detail = f"{detail}: {source_line.strip()!r}"
        super().__init__(detail, context=context)


class NetworkError(FormulaError):
    """Fetching a remote bundle failed or returned a non-2xx status."""

    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.url = url
        self.status = status
        merged = {"url": url, "status": status, **(context or {})}
        super().__init__(message, context=merged)


class IntegrityError(FormulaError):
    """Stored bundle source no longer matches its recorded integrity hash."""

    kind = ErrorKind.INTEGRITY


class FormulaRuntimeError(FormulaError):
    """The formula function raised while being invoked."""

    kind = ErrorKind.RUNTIME


def _with_context(message: str, context: Mapping[str, object]) -> str:
    if not context:
        return message
    rendered = ", ".join(f"{key}={value}" for key, value in context.items())
    return f"{message} (context: {rendered})"


__all__ = [
    "CompilationError",
    "ConfigurationError",
    "ErrorKind",
    "FormulaError",
    "FormulaRuntimeError",
    "IntegrityError",
    "ModuleNotAllowedError",
    "NetworkError",
    "ResolutionError",
]

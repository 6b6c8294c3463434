"""Sandbox compilation and capability-limited loading of untrusted formula code."""

from formula_orchestrator.sandbox.capabilities import (
    BLOCKED_NAMES,
    SAFE_MODULE_GLOBALS,
    ControlledResolver,
)
from formula_orchestrator.sandbox.compiler import (
    CompiledModule,
    CompilerBackend,
    SandboxCompiler,
    default_compiler_backend,
    reset_default_compiler_backend,
)

__all__ = [
    "BLOCKED_NAMES",
    "SAFE_MODULE_GLOBALS",
    "CompiledModule",
    "CompilerBackend",
    "ControlledResolver",
    "SandboxCompiler",
    "default_compiler_backend",
    "reset_default_compiler_backend",
]

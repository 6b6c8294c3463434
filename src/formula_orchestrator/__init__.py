"""
formula-orchestrator — package root

File: src/formula_orchestrator/__init__.py

Purpose
- Turn documented Python functions into formula definitions and execute them
  through embedded, statically linked, or remotely fetched sandboxed backends.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules (sandbox, network) are imported by callers, not here.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]

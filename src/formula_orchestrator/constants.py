"""Stable constants shared across analysis, execution, and persistence."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RECORD_STORE_SCHEMA_VERSION: Final[int] = 1
RECORD_SCHEMA_VERSION: Final[int] = 1

# Formula defaults.
DEFAULT_FORMULA_VERSION: Final[str] = "1.0.0"
DEFAULT_HINT_SCALE: Final[int] = 8
DEFAULT_HINT_KEY: Final[str] = "default"
RESULT_OUTPUT_KEY: Final[str] = "result"

# Cache defaults.
DEFAULT_KEEP_LATEST_VERSIONS: Final[int] = 3
NO_ALLOWED_MODULES_FINGERPRINT: Final[str] = "none"

# Record store namespaces.
BUNDLE_NAMESPACE: Final[str] = "bundles"
FORMULA_NAMESPACE: Final[str] = "formulas"

# Default runtime paths (relative to the config file unless absolute).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_DB_PATH: Final[PurePosixPath] = STATE_DIR / "formulas.sqlite3"
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

__all__ = [
    "BUNDLE_NAMESPACE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_DB_PATH",
    "DEFAULT_FORMULA_VERSION",
    "DEFAULT_HINT_KEY",
    "DEFAULT_HINT_SCALE",
    "DEFAULT_KEEP_LATEST_VERSIONS",
    "FORMULA_NAMESPACE",
    "LOG_DIR",
    "NO_ALLOWED_MODULES_FINGERPRINT",
    "RECORD_SCHEMA_VERSION",
    "RECORD_STORE_SCHEMA_VERSION",
    "RESULT_OUTPUT_KEY",
    "STATE_DIR",
]

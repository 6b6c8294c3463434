"""Configuration schema, validation, and loading."""

from formula_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
    normalize_paths,
)
from formula_orchestrator.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    FormulaConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "FormulaConfig",
    "assert_valid_config",
    "default_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]

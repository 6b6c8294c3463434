"""
formula-orchestrator — configuration schema and validation.

File: src/formula_orchestrator/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helper.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Unknown keys are errors; sandbox module names must be importable dotted names.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from formula_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DB_PATH,
    DEFAULT_KEEP_LATEST_VERSIONS,
    LOG_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_MODULE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("cache", "db_path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class CacheConfig(TypedDict):
    db_path: str
    persistent: bool
    keep_latest_versions: int


class RemoteConfig(TypedDict):
    timeout_seconds: float
    user_agent: str
    follow_redirects: bool


class SandboxConfig(TypedDict):
    allowed_modules: list[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class FormulaConfig(TypedDict):
    meta: MetaConfig
    cache: CacheConfig
    remote: RemoteConfig
    sandbox: SandboxConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[FormulaConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "cache": {
        "db_path": str(DEFAULT_DB_PATH),
        "persistent": False,
        "keep_latest_versions": DEFAULT_KEEP_LATEST_VERSIONS,
    },
    "remote": {
        "timeout_seconds": 30.0,
        "user_agent": "formula-orchestrator/0.1",
        "follow_redirects": True,
    },
    "sandbox": {
        "allowed_modules": [],
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> FormulaConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade the config file to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the formula-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a complete config and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    sections: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "cache": _validate_cache,
        "remote": _validate_remote,
        "sandbox": _validate_sandbox,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(root, set(sections), "", issues)
    normalized: dict[str, Any] = {}
    for key, validator in sections.items():
        if key not in root:
            issues.add(key, "missing required section")
            continue
        section = _as_object(root[key], key, issues)
        if section is not None:
            normalized[key] = validator(section, key, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_cache(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"db_path", "persistent", "keep_latest_versions"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "db_path" in payload:
        db_path = _as_path_text(payload["db_path"], _join(path, "db_path"), issues)
        if db_path is not None:
            out["db_path"] = db_path
    if "persistent" in payload:
        persistent = _as_bool(payload["persistent"], _join(path, "persistent"), issues)
        if persistent is not None:
            out["persistent"] = persistent
    if "keep_latest_versions" in payload:
        keep = _as_int(
            payload["keep_latest_versions"], _join(path, "keep_latest_versions"), issues, minimum=0
        )
        if keep is not None:
            out["keep_latest_versions"] = keep
    return out


def _validate_remote(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"timeout_seconds", "user_agent", "follow_redirects"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "timeout_seconds" in payload:
        timeout = _as_float(payload["timeout_seconds"], _join(path, "timeout_seconds"), issues, minimum=0.0)
        if timeout is not None:
            if timeout == 0:
                issues.add(_join(path, "timeout_seconds"), "must be > 0")
            else:
                out["timeout_seconds"] = timeout
    if "user_agent" in payload:
        user_agent = _as_str(payload["user_agent"], _join(path, "user_agent"), issues)
        if user_agent is not None:
            out["user_agent"] = user_agent
    if "follow_redirects" in payload:
        follow = _as_bool(payload["follow_redirects"], _join(path, "follow_redirects"), issues)
        if follow is not None:
            out["follow_redirects"] = follow
    return out


def _validate_sandbox(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"allowed_modules"}, path, issues)
    _require_keys(payload, {"allowed_modules"}, path, issues)
    out: dict[str, Any] = {}
    raw = payload.get("allowed_modules")
    if raw is None:
        return out
    field_path = _join(path, "allowed_modules")
    if not isinstance(raw, (list, tuple)):
        issues.add(field_path, f"expected array, got {type(raw).__name__}")
        return out
    modules: list[str] = []
    for index, item in enumerate(raw):
        item_path = f"{field_path}[{index}]"
        name = _as_str(item, item_path, issues)
        if name is None:
            continue
        if not _MODULE_NAME_PATTERN.fullmatch(name):
            issues.add(item_path, f"invalid module name {name!r}")
            continue
        if name in modules:
            issues.add(item_path, f"duplicate module name {name!r}")
            continue
        modules.append(name)
    out["allowed_modules"] = modules
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if level is not None:
            out["log_level"] = level
    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir
    for flag in ("log_to_stdout", "redact_secrets"):
        if flag in payload:
            parsed = _as_bool(payload[flag], _join(path, flag), issues)
            if parsed is not None:
                out[flag] = parsed
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object, path: str, issues: _IssueCollector, *, minimum: float | None = None
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    normalized = parsed.upper()
    if normalized not in allowed_values:
        issues.add(path, f"invalid value {parsed!r}; expected one of: {', '.join(allowed_values)}")
        return None
    return normalized


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object], required: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return value


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "CacheConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "FormulaConfig",
    "MetaConfig",
    "ObservabilityConfig",
    "RemoteConfig",
    "SandboxConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]

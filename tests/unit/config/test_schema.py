"""
formula-orchestrator — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, and merging.

What this test file should cover
- Built-in defaults validate successfully.
- Unknown keys, missing sections, and invalid types are reported with dotted paths.
- Sandbox module names are checked for shape and duplicates.
- Deep merge replaces lists and leaves inputs untouched.
"""

from __future__ import annotations

import pytest

from formula_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_defaults_validate_successfully() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert result.config["cache"]["keep_latest_versions"] == 3
    assert result.config["cache"]["persistent"] is False
    assert result.config["sandbox"]["allowed_modules"] == []


def test_default_config_is_a_deep_copy() -> None:
    config = default_config()
    config["sandbox"]["allowed_modules"].append("math")
    assert DEFAULT_CONFIG["sandbox"]["allowed_modules"] == []


def test_unknown_keys_are_rejected_at_every_level() -> None:
    config = merge_config(default_config(), {"extra": 1, "cache": {"ttl": 5}})
    assert _issue_paths(config) == ["extra", "cache.ttl"]


def test_missing_sections_and_fields() -> None:
    config = default_config()
    del config["remote"]  # type: ignore[misc]
    del config["cache"]["persistent"]  # type: ignore[misc]

    result = validate_config(config)

    assert not result.is_valid
    assert result.config is None
    messages = {issue.path: issue.message for issue in result.issues}
    assert messages["remote"] == "missing required section"
    assert messages["cache.persistent"] == "missing required field"


@pytest.mark.parametrize(
    ("overlay", "path", "fragment"),
    [
        ({"cache": {"persistent": "yes"}}, "cache.persistent", "expected boolean"),
        ({"cache": {"keep_latest_versions": -1}}, "cache.keep_latest_versions", ">= 0"),
        ({"cache": {"keep_latest_versions": True}}, "cache.keep_latest_versions", "expected integer"),
        ({"cache": {"db_path": "  "}}, "cache.db_path", "must not be empty"),
        ({"remote": {"timeout_seconds": 0}}, "remote.timeout_seconds", "> 0"),
        ({"remote": {"timeout_seconds": float("inf")}}, "remote.timeout_seconds", "finite"),
        ({"remote": {"user_agent": 7}}, "remote.user_agent", "expected string"),
        ({"sandbox": {"allowed_modules": "math"}}, "sandbox.allowed_modules", "expected array"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level", "invalid value"),
        ({"meta": {"schema_version": 0}}, "meta.schema_version", ">= 1"),
    ],
)
def test_type_validation_reports_structured_paths(
    overlay: dict[str, object], path: str, fragment: str
) -> None:
    result = validate_config(merge_config(default_config(), overlay))

    assert not result.is_valid
    matching = [issue for issue in result.issues if issue.path == path]
    assert matching, result.issues
    assert fragment in matching[0].message


def test_allowed_modules_shape_and_duplicates() -> None:
    config = merge_config(default_config(), {"sandbox": {"allowed_modules": ["math", "1bad", "math", "decimal"]}})

    result = validate_config(config)

    messages = {issue.path: issue.message for issue in result.issues}
    assert "invalid module name" in messages["sandbox.allowed_modules[1]"]
    assert "duplicate module name" in messages["sandbox.allowed_modules[2]"]


def test_log_level_is_normalized() -> None:
    config = assert_valid_config(merge_config(default_config(), {"observability": {"log_level": "debug"}}))
    assert config["observability"]["log_level"] == "DEBUG"


def test_schema_version_mismatch_includes_guidance() -> None:
    result = validate_config(merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}}))
    assert "newer than supported" in result.issues[0].message

    assert "older than supported" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_non_mapping_root() -> None:
    assert _issue_paths(["not", "a", "mapping"]) == ["<root>"]


def test_assert_valid_config_raises_with_issues() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(merge_config(default_config(), {"cache": {"persistent": 1}}))

    assert str(excinfo.value).startswith("invalid config:")
    assert [issue.path for issue in excinfo.value.issues] == ["cache.persistent"]


def test_merge_config_is_deep_and_replaces_lists() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "z": 0}
    overlay = {"a": {"c": [3]}, "d": {"e": True}}

    merged = merge_config(base, overlay)

    assert merged == {"a": {"b": 1, "c": [3]}, "d": {"e": True}, "z": 0}
    assert base == {"a": {"b": 1, "c": [1, 2]}, "z": 0}
    merged["a"]["c"].append(4)
    assert overlay["a"]["c"] == [3]

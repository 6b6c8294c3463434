"""
formula-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and explicit overrides.

What this test file should cover
- Precedence: overrides > env > file > defaults.
- Env var path mapping and type coercion, including comma-separated lists.
- Path normalization relative to the config file.
- Actionable errors for missing files, bad TOML, and bad values.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from formula_orchestrator.config.loader import ConfigLoadError, load_config
from formula_orchestrator.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_defaults_when_no_file_is_present(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    base = tmp_path.resolve()
    assert config["cache"]["db_path"] == (base / "state" / "formulas.sqlite3").as_posix()
    assert config["observability"]["log_dir"] == (base / "logs").as_posix()
    assert config["remote"]["timeout_seconds"] == 30.0


def test_default_file_in_working_directory_is_used(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config(tmp_path / "formulas.toml", "[cache]\nkeep_latest_versions = 7\n")
    monkeypatch.chdir(tmp_path)

    assert load_config(environ={})["cache"]["keep_latest_versions"] == 7


def test_loader_precedence_file_env_overrides(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(
        config_path,
        """
[cache]
keep_latest_versions = 4
persistent = true

[remote]
user_agent = "from-file"
""".strip(),
    )
    environ = {"FORMULA_CACHE_KEEP_LATEST_VERSIONS": "5", "FORMULA_REMOTE_USER_AGENT": "from-env"}

    from_env = load_config(config_path, environ=environ)
    assert from_env["cache"]["keep_latest_versions"] == 5
    assert from_env["remote"]["user_agent"] == "from-env"

    overridden = load_config(
        config_path,
        environ=environ,
        overrides={"cache.keep_latest_versions": 6, "remote": {"user_agent": "from-override"}},
    )
    assert overridden["cache"]["keep_latest_versions"] == 6
    assert overridden["remote"]["user_agent"] == "from-override"
    assert overridden["cache"]["persistent"] is True


def test_env_values_are_coerced_to_default_types(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, "")

    config = load_config(
        config_path,
        environ={
            "FORMULA_CACHE_PERSISTENT": "on",
            "FORMULA_REMOTE_TIMEOUT_SECONDS": "5",
            "FORMULA_SANDBOX_ALLOWED_MODULES": "math, decimal ,,",
            "FORMULA_OBSERVABILITY_LOG_LEVEL": "debug",
            "UNRELATED": "ignored",
        },
    )

    assert config["cache"]["persistent"] is True
    assert config["remote"]["timeout_seconds"] == 5.0
    assert config["sandbox"]["allowed_modules"] == ["math", "decimal"]
    assert config["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value", "fragment"),
    [
        ("FORMULA_CACHE_PERSISTENT", "maybe", "must be a boolean"),
        ("FORMULA_CACHE_KEEP_LATEST_VERSIONS", "three", "must be an integer"),
        ("FORMULA_REMOTE_TIMEOUT_SECONDS", "soon", "must be a number"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, name: str, value: str, fragment: str) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=fragment):
        load_config(config_path, environ={name: value})


def test_relative_paths_resolve_against_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_dir = tmp_path / "conf"
    config_path = config_dir / "formulas.toml"
    absolute_logs = (tmp_path / "elsewhere" / "logs").as_posix()
    monkeypatch.setenv("FORMULA_TEST_STATE", "runtime-state")
    _write_config(
        config_path,
        f"""
[cache]
db_path = "$FORMULA_TEST_STATE/../state/./db.sqlite3"

[observability]
log_dir = "{absolute_logs}"
""".strip(),
    )

    config = load_config(config_path, environ={})

    assert config["cache"]["db_path"] == (config_dir.resolve() / "state" / "db.sqlite3").as_posix()
    assert config["observability"]["log_dir"] == absolute_logs


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "nope.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, "[cache\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_values_fail_validation(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, "[remote]\ntimeout_seconds = -1\n\n[cache]\nttl = 5\n")

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert {"remote.timeout_seconds", "cache.ttl"} <= paths


def test_invalid_override_key(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="invalid override key"):
        load_config(config_path, environ={}, overrides={".": 1})


def test_repeated_loads_are_identical(tmp_path: Path) -> None:
    config_path = tmp_path / "formulas.toml"
    _write_config(config_path, '[sandbox]\nallowed_modules = ["math"]\n')

    assert load_config(config_path, environ={}) == load_config(config_path, environ={})

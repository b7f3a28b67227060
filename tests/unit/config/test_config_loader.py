"""
Unit tests for the runtime config loader.

Coverage:
- Precedence: CLI > env > file > defaults.
- ``FORGE_`` env var mapping and type coercion.
- Path normalization relative to the config file.
- Load errors for missing or malformed files.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from forge_executor.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from forge_executor.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "[budget]\ntotal_tokens = 30000\n")
    env = {"FORGE_BUDGET_TOTAL_TOKENS": "20000"}

    defaults = load_config(_write_config(tmp_path / "empty.toml", ""), environ={})
    from_file = load_config(config_path, environ={})
    from_env = load_config(config_path, environ=env)
    from_cli = load_config(
        config_path, environ=env, cli_overrides={"budget.total_tokens": 10_000}
    )

    assert defaults["budget"]["total_tokens"] == 40_000
    assert from_file["budget"]["total_tokens"] == 30_000
    assert from_env["budget"]["total_tokens"] == 20_000
    assert from_cli["budget"]["total_tokens"] == 10_000


def test_env_values_are_coerced_to_the_default_types(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "")

    loaded = load_config(
        config_path,
        environ={
            "FORGE_VALIDATION_SCOPE_TO_CHANGED": "yes",
            "FORGE_VALIDATION_COMMAND": "mypy --strict .",
            "FORGE_GENERATION_TIMEOUT_SECONDS": "30",
            "FORGE_EDIT_NON_UNIQUE_POLICY": " reject_ambiguous ",
            "UNRELATED_VARIABLE": "ignored",
        },
    )

    assert loaded["validation"]["scope_to_changed"] is True
    assert loaded["validation"]["command"] == ["mypy", "--strict", "."]
    assert loaded["generation"]["timeout_seconds"] == 30.0
    assert loaded["edit"]["non_unique_policy"] == "reject_ambiguous"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FORGE_BUDGET_TOTAL_TOKENS", "lots"),
        ("FORGE_BUDGET_HIGH_SHARE", "most"),
        ("FORGE_APPROVAL_ENABLED", "maybe"),
    ],
)
def test_invalid_env_coercion_names_the_variable(tmp_path: Path, name: str, value: str) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "")

    with pytest.raises(ConfigLoadError, match=name):
        load_config(config_path, environ={name: value})


def test_cli_overrides_accept_nested_mappings(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "")

    loaded = load_config(
        config_path, environ={}, cli_overrides={"self_heal": {"max_attempts": 4}}
    )

    assert loaded["self_heal"] == {"max_attempts": 4, "max_diagnostics": 10}


def test_invalid_override_values_fail_schema_validation(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "")

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={}, cli_overrides={"self_heal.max_attempts": -2})

    assert [item.path for item in excinfo.value.issues] == ["self_heal.max_attempts"]


def test_invalid_file_values_fail_before_overrides_apply(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "[budget]\ntotal_tokens = 0\n")

    with pytest.raises(ConfigValidationError):
        load_config(
            config_path, environ={}, cli_overrides={"budget.total_tokens": 1_000}
        )


def test_log_dir_is_normalized_relative_to_the_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "nested" / "forge.toml", '[observability]\nlog_dir = "../logs/forge"\n'
    )

    loaded = load_config(config_path, environ={})

    expected = (config_path.resolve().parent.parent / "logs" / "forge").as_posix()
    assert loaded["observability"]["log_dir"] == expected


def test_absolute_log_dir_is_kept(tmp_path: Path) -> None:
    absolute = (tmp_path / "abs-logs").as_posix()
    config_path = _write_config(
        tmp_path / "forge.toml", f'[observability]\nlog_dir = "{absolute}"\n'
    )

    loaded = load_config(config_path, environ={})

    assert loaded["observability"]["log_dir"] == absolute


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_implicit_config_file_is_optional(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["self_heal"]["max_attempts"] == 2
    assert loaded["observability"]["log_dir"] == (tmp_path.resolve() / ".forge/logs").as_posix()


def test_malformed_toml_is_a_load_error(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "[budget\ntotal_tokens = \n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_dump_effective_config_is_deterministic_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "forge.toml", "")
    loaded = load_config(config_path, environ={})

    first = dump_effective_config(loaded)
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["provider"]["api_key_env"] == "ANTHROPIC_API_KEY"


def test_env_name_mapping() -> None:
    assert env_name_for_path(("self_heal", "max_attempts")) == "FORGE_SELF_HEAL_MAX_ATTEMPTS"

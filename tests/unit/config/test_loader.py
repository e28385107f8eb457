"""
policy-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from policy_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    default_path = tmp_path / "empty.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[workflow]
verification_threshold = 70
""".strip(),
    )

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(
        config_path, environ={"PORCH_WORKFLOW_VERIFICATION_THRESHOLD": "75.5"}
    )
    cli_loaded = load_config(
        config_path,
        environ={"PORCH_WORKFLOW_VERIFICATION_THRESHOLD": "75.5"},
        cli_overrides={"workflow.verification_threshold": 90},
    )

    assert default_loaded["workflow"]["verification_threshold"] == 80.0
    assert file_loaded["workflow"]["verification_threshold"] == 70.0
    assert env_loaded["workflow"]["verification_threshold"] == 75.5
    assert cli_loaded["workflow"]["verification_threshold"] == 90.0


def test_env_overrides_coerce_booleans_and_integers(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "PORCH_OBSERVABILITY_LOG_TO_STDERR": "yes",
            "PORCH_CLASSIFIER_AUTO_PROCEED_MAX_FILES": "4",
            "PORCH_SCORING_WEIGHTS_TESTS": "40",
        },
    )

    assert loaded["observability"]["log_to_stderr"] is True
    assert loaded["classifier"]["auto_proceed_max_files"] == 4
    assert loaded["scoring"]["weights"]["tests"] == 40.0


def test_invalid_env_coercion_raises_actionable_error(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="PORCH_CHECKS_DEFAULT_RETRIES"):
        load_config(config_path, environ={"PORCH_CHECKS_DEFAULT_RETRIES": "many"})


def test_profile_overlay_applies_before_env(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "")

    strict = load_config(config_path, profile="strict", environ={})
    env_profile = load_config(config_path, environ={"PORCH_PROFILE": "permissive"})
    strict_with_env = load_config(
        config_path,
        profile="strict",
        environ={"PORCH_CLASSIFIER_AUTO_PROCEED_MAX_FILES": "7"},
    )

    assert strict["workflow"]["verification_threshold"] == 95.0
    assert strict["classifier"]["auto_proceed_max_files"] == 3
    assert env_profile["workflow"]["verification_threshold"] == 60.0
    assert strict_with_env["classifier"]["auto_proceed_max_files"] == 7


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="profile"):
        load_config(config_path, profile="paranoid", environ={})


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "policy_orchestrator.toml"
    _write_config(
        config_path,
        """
[paths]
rules_dir = "policy/rules"
state_db = "/var/tmp/porch.sqlite"
log_dir = "../logs"
""".strip(),
    )

    loaded = load_config(config_path, environ={})
    root = tmp_path.resolve()

    assert loaded["paths"]["rules_dir"] == (root / "nested" / "policy" / "rules").as_posix()
    assert loaded["paths"]["state_db"] == "/var/tmp/porch.sqlite"
    assert loaded["paths"]["log_dir"] == (root / "logs").as_posix()


def test_missing_explicit_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_reported_with_path(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "[workflow\nverification_threshold = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "policy_orchestrator.toml"
    _write_config(config_path, "[checks]\ndefault_retries = 2\n")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["checks"]["default_retries"] == 2


def test_default_config_file_is_optional_in_working_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    expected = tmp_path.resolve() / "state" / "workflows.sqlite"
    assert loaded["paths"]["state_db"] == expected.as_posix()

"""
policy-orchestrator — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict schema behavior, structured issues, profile overlays, and redaction.
"""

from __future__ import annotations

import copy
import tomllib
from pathlib import Path

import pytest

from policy_orchestrator.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

SAMPLE_CONFIG = Path(__file__).resolve().parents[3] / "samples" / "policy_orchestrator.toml"


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_is_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion


def test_sample_config_file_is_valid() -> None:
    with SAMPLE_CONFIG.open("rb") as handle:
        payload = tomllib.load(handle)

    merged = merge_config(default_config(), payload)
    assert validate_config(merged).is_valid


def test_unknown_keys_and_bad_types_report_dotted_paths() -> None:
    config = copy.deepcopy(default_config())
    config["workflow"]["verification_threshold"] = 140  # type: ignore[typeddict-item]
    config["checks"]["default_retries"] = "two"  # type: ignore[typeddict-item]
    config["classifier"]["surprise"] = 1  # type: ignore[typeddict-unknown-key]

    paths = _issue_paths(config)

    assert "workflow.verification_threshold" in paths
    assert "checks.default_retries" in paths
    assert "classifier.surprise" in paths


def test_weights_require_one_positive_category() -> None:
    config = copy.deepcopy(default_config())
    config["scoring"]["weights"] = {"tests": 0.0, "lint": 0.0}

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert [issue.path for issue in excinfo.value.issues] == ["scoring.weights"]


def test_weight_category_names_are_validated() -> None:
    config = copy.deepcopy(default_config())
    config["scoring"]["weights"] = {"Tests": 10.0, "lint": 5.0}

    assert _issue_paths(config) == ["scoring.weights.Tests"]


def test_schema_version_mismatch_is_rejected_with_guidance() -> None:
    config = copy.deepcopy(default_config())
    config["meta"]["schema_version"] = ConfigSchemaVersion + 1

    assert "meta.schema_version" in _issue_paths(config)
    assert "newer" in migration_guidance(ConfigSchemaVersion + 1)
    assert "older" in migration_guidance(ConfigSchemaVersion - 1)


def test_profile_overlay_merges_partial_sections() -> None:
    overlaid = apply_profile_overlay(default_config(), "strict")

    assert overlaid["workflow"]["verification_threshold"] == 95.0
    assert overlaid["workflow"]["max_workers"] == 0
    assert overlaid["classifier"]["auto_proceed_max_files"] == 3


def test_redaction_is_recursive_and_non_destructive() -> None:
    config = {"notifier": {"api_key": "abc", "nested": [{"password": "p", "user": "u"}]}}

    redacted = redact_config(config)

    assert redacted == {
        "notifier": {"api_key": "<redacted>", "nested": [{"password": "<redacted>", "user": "u"}]}
    }
    assert config["notifier"]["api_key"] == "abc"


def test_redaction_leaves_orchestrator_settings_visible() -> None:
    redacted = redact_config(default_config())

    assert redacted["observability"]["redact_secrets"] is True
    assert redacted["scoring"]["weights"]["tests"] == 25.0
    assert redact_config({"github_token": "t", "tokens_per_minute": 5}) == {
        "github_token": "<redacted>",
        "tokens_per_minute": 5,
    }

"""
policy-orchestrator — configuration schema and validation.

File: src/policy_orchestrator/config/schema.py

Purpose
- Define the orchestrator's configuration defaults and strict validation rules.

What should be included in this file
- One field table per section; validation walks the table.
- Schema version check with migration guidance.
- Profile overlays (built-in: strict, permissive) and deep merge.
- Redaction of secret-looking keys for ``porch config`` output.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from policy_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_AUTO_PROCEED_MAX_FILES,
    DEFAULT_CATEGORY_WEIGHTS,
    DEFAULT_CHECK_RETRIES,
    DEFAULT_CHECK_TIMEOUT_SECONDS,
    DEFAULT_MAX_OUTPUT_CHARS,
    DEFAULT_VERIFICATION_THRESHOLD,
    LOG_DIR,
    RULES_DIR,
    STATE_DB_PATH,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_SENSITIVE_KEY_PATTERN = re.compile(
    r"(^|_)(secret|token|passw(or)?d|api_?key|private_?key|credentials?)(_|$)", re.IGNORECASE
)
_REDACTED: Final[str] = "<redacted>"


class OrchestratorConfig(TypedDict):
    meta: dict[str, int]
    paths: dict[str, str]
    workflow: dict[str, float | int]
    classifier: dict[str, int]
    checks: dict[str, float | int]
    scoring: dict[str, dict[str, float]]
    observability: dict[str, str | bool]
    profiles: dict[str, dict[str, dict[str, object]]]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "rules_dir": f"{RULES_DIR}/",
        "state_db": str(STATE_DB_PATH),
        "log_dir": f"{LOG_DIR}/",
    },
    "workflow": {
        "verification_threshold": DEFAULT_VERIFICATION_THRESHOLD,
        "max_workers": 0,
    },
    "classifier": {"auto_proceed_max_files": DEFAULT_AUTO_PROCEED_MAX_FILES},
    "checks": {
        "default_timeout_seconds": DEFAULT_CHECK_TIMEOUT_SECONDS,
        "default_retries": DEFAULT_CHECK_RETRIES,
        "max_output_chars": DEFAULT_MAX_OUTPUT_CHARS,
    },
    "scoring": {
        "weights": {key: float(value) for key, value in DEFAULT_CATEGORY_WEIGHTS.items()},
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "workflow": {"verification_threshold": 95.0},
            "classifier": {"auto_proceed_max_files": 3},
        },
        "permissive": {
            "workflow": {"verification_threshold": 60.0},
        },
    },
}


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["int", "float", "bool", "path", "choice"]
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()


_FIELDS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "paths": {
        "rules_dir": _Field("path"),
        "state_db": _Field("path"),
        "log_dir": _Field("path"),
    },
    "workflow": {
        "verification_threshold": _Field("float", minimum=0.0, maximum=100.0),
        "max_workers": _Field("int", minimum=0),
    },
    "classifier": {"auto_proceed_max_files": _Field("int", minimum=0)},
    "checks": {
        "default_timeout_seconds": _Field("float", minimum=0.001),
        "default_retries": _Field("int", minimum=0),
        "max_output_chars": _Field("int", minimum=1),
    },
    "observability": {
        "log_level": _Field("choice", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": _Field("choice", choices=("json", "text")),
        "log_to_stderr": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}

_SECTIONS: Final[tuple[str, ...]] = (*_FIELDS, "scoring")


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered or '- unknown validation failure'}")


def default_config() -> OrchestratorConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade policy_orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the policy-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested mappings merge key by key."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        existing = merged.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            merged[key] = merge_config(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile's sections over ``config`` and re-validate."""

    selected = (profile or "").strip()
    if not selected:
        return copy.deepcopy(dict(config))

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate ``config``; issues carry dotted field paths."""

    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(
            ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}")
        )
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized: dict[str, Any] = {}
    _reject_unknown(config, {*_SECTIONS, "profiles"}, "", issues)
    for section in _SECTIONS:
        if section not in config:
            issues.append(ConfigValidationIssue(section, "missing required field"))
            continue
        checked = _validate_section(section, config[section], section, issues, partial=False)
        if checked is not None:
            normalized[section] = checked

    meta = normalized.get("meta", {})
    version = meta.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))

    profiles = config.get("profiles", {})
    normalized["profiles"] = _validate_profiles(profiles, issues)
    selected = (active_profile or "").strip()
    if selected and selected not in normalized["profiles"]:
        issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a copy with every secret-looking key's value replaced."""

    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def _validate_section(
    section: str,
    payload: object,
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(payload).__name__}"))
        return None
    if section == "scoring":
        return _validate_scoring(payload, path, issues, partial=partial)

    fields = _FIELDS[section]
    _reject_unknown(payload, set(fields), path, issues)
    out: dict[str, Any] = {}
    for key, field in fields.items():
        field_path = f"{path}.{key}"
        if key not in payload:
            if not partial:
                issues.append(ConfigValidationIssue(field_path, "missing required field"))
            continue
        problem, value = _coerce(field, payload[key])
        if problem is not None:
            issues.append(ConfigValidationIssue(field_path, problem))
        else:
            out[key] = value
    return out


def _validate_scoring(
    payload: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown(payload, {"weights"}, path, issues)
    weights_path = f"{path}.weights"
    raw = payload.get("weights")
    if raw is None:
        if not partial:
            issues.append(ConfigValidationIssue(weights_path, "missing required field"))
        return {}
    if not isinstance(raw, Mapping):
        issues.append(
            ConfigValidationIssue(weights_path, f"expected object, got {type(raw).__name__}")
        )
        return {}

    weights: dict[str, float] = {}
    field = _Field("float", minimum=0.0)
    for category in sorted(raw):
        category_path = f"{weights_path}.{category}"
        if not _NAME_PATTERN.fullmatch(str(category)):
            issues.append(
                ConfigValidationIssue(category_path, "category name must match ^[a-z][a-z0-9_]*$")
            )
            continue
        problem, value = _coerce(field, raw[category])
        if problem is not None:
            issues.append(ConfigValidationIssue(category_path, problem))
        else:
            weights[category] = value
    if not partial and weights and not any(value > 0 for value in weights.values()):
        issues.append(
            ConfigValidationIssue(weights_path, "at least one category weight must be > 0")
        )
    return {"weights": weights}


def _validate_profiles(payload: object, issues: list[ConfigValidationIssue]) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        issues.append(
            ConfigValidationIssue("profiles", f"expected object, got {type(payload).__name__}")
        )
        return {}

    out: dict[str, Any] = {}
    overlay_sections = [section for section in _SECTIONS if section != "meta"]
    for name in sorted(payload):
        profile_path = f"profiles.{name}"
        overlay = payload[name]
        if not _PROFILE_NAME_PATTERN.fullmatch(str(name)):
            issues.append(
                ConfigValidationIssue(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            )
            continue
        if not isinstance(overlay, Mapping):
            issues.append(ConfigValidationIssue(profile_path, "profile overlay must be an object"))
            continue
        _reject_unknown(overlay, set(overlay_sections), profile_path, issues)
        checked: dict[str, Any] = {}
        for section in overlay_sections:
            if section in overlay:
                section_path = f"{profile_path}.{section}"
                value = _validate_section(
                    section, overlay[section], section_path, issues, partial=True
                )
                if value is not None:
                    checked[section] = value
        out[name] = checked
    return out


def _coerce(field: _Field, value: object) -> tuple[str | None, Any]:
    if field.kind == "bool":
        if isinstance(value, bool):
            return None, value
        return f"expected boolean, got {type(value).__name__}", None

    if field.kind in ("path", "choice"):
        if not isinstance(value, str) or not value.strip():
            return "expected a non-empty string", None
        text = value.strip()
        if field.kind == "choice" and text not in field.choices:
            expected = ", ".join(sorted(field.choices))
            return f"invalid value {text!r}; expected one of: {expected}", None
        return None, text

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        expected = "integer" if field.kind == "int" else "number"
        return f"expected {expected}, got {type(value).__name__}", None
    if field.kind == "int" and not isinstance(value, int):
        return f"expected integer, got {type(value).__name__}", None
    number: int | float = value if field.kind == "int" else float(value)
    if not math.isfinite(number):
        return "must be finite", None
    if field.minimum is not None and number < field.minimum:
        return f"must be >= {field.minimum}", None
    if field.maximum is not None and number > field.maximum:
        return f"must be <= {field.maximum}", None
    return None, number


def _reject_unknown(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(set(payload) - allowed):
        key_path = f"{path}.{key}" if path else key
        if _SENSITIVE_KEY_PATTERN.search(str(key)):
            issues.append(
                ConfigValidationIssue(key_path, "embedded secret values are forbidden in config")
            )
        else:
            issues.append(ConfigValidationIssue(key_path, "unknown field"))


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _REDACTED if _SENSITIVE_KEY_PATTERN.search(str(key)) else _redact(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "OrchestratorConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]

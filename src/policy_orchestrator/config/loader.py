"""
policy-orchestrator — runtime config loader.

File: src/policy_orchestrator/config/loader.py

Purpose
- Build the effective config in layers: defaults, ``policy_orchestrator.toml``,
  the selected profile, ``PORCH_`` environment variables, CLI overrides.

Notes
- Environment names mirror the dotted key: ``workflow.verification_threshold``
  is ``PORCH_WORKFLOW_VERIFICATION_THRESHOLD``; ``PORCH_PROFILE`` picks a profile.
- Relative ``paths.*`` entries resolve against the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from policy_orchestrator.config.schema import (
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "policy_orchestrator.toml"
ENV_PREFIX: Final[str] = "PORCH_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config; later layers win: CLI > env > profile > file > defaults.

    A missing default ``policy_orchestrator.toml`` is fine; a missing explicit
    ``config_path`` raises ``ConfigLoadError``.
    """

    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE if config_path is None else Path(config_path).expanduser()
    ).resolve()
    env = dict(os.environ if environ is None else environ)

    config = assert_valid_config(merge_config(default_config(), _read_toml(path, config_path)))
    selected = profile if profile is not None else env.get(f"{ENV_PREFIX}PROFILE")
    selected = (selected or "").strip() or None
    config = apply_profile_overlay(config, selected)

    config = merge_config(config, _env_layer(config, env))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    config = assert_valid_config(config, active_profile=selected)

    for key, raw in config["paths"].items():
        config["paths"][key] = _anchor(raw, path.parent)
    return config


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` for logs and ``porch config``."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, requested: str | Path | None) -> dict[str, Any]:
    if not path.exists():
        if requested is not None:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _scalars(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _scalars(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, current in _scalars(config):
        if dotted[0] in ("meta", "profiles"):
            continue
        name = ENV_PREFIX + "_".join(part.upper() for part in dotted)
        raw = env.get(name)
        if raw is not None:
            _assign(layer, dotted, _coerce(raw.strip(), current, name, dotted))
    return layer


def _coerce(raw: str, current: object, name: str, dotted: tuple[str, ...]) -> object:
    target = ".".join(dotted)
    if isinstance(current, bool):
        if raw.lower() in _TRUE_WORDS:
            return True
        if raw.lower() in _FALSE_WORDS:
            return False
        raise ConfigLoadError(
            f"{name} -> {target} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {target} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {target} must be a number") from exc
    return raw


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        dotted = tuple(part for part in key.split(".") if part)
        if not dotted:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, dotted, overrides[key])
    return layer


def _assign(target: dict[str, Any], dotted: tuple[str, ...], value: object) -> None:
    for part in dotted[:-1]:
        target = target.setdefault(part, {})
    target[dotted[-1]] = value


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "load_config",
]

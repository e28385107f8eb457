"""
policy-orchestrator — rule resolver

File: src/policy_orchestrator/knowledge_plane/rule_resolver.py

Purpose
- Merge an ordered list of rule documents into one ``EffectivePolicy``.

Merge algorithm
- Documents are visited in precedence order; for each directive key the first
  document to set it wins. Lower-precedence documents only fill unset keys.
- Two documents of the same rank setting the same key to different values
  resolve by registration order and emit ``PolicyConflictWarning``.
- A built-in default document, derived from configuration, is merged last so
  every documented directive has a value.
- Checks merge by name with the same first-wins rule.
"""

from __future__ import annotations

import copy
import logging
import warnings
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from policy_orchestrator.constants import (
    DEFAULT_AUTO_PROCEED_MAX_FILES,
    DEFAULT_CATEGORY_WEIGHTS,
    DEFAULT_CHECK_RETRIES,
    DEFAULT_CHECK_TIMEOUT_SECONDS,
    DEFAULT_VERIFICATION_THRESHOLD,
)
from policy_orchestrator.domain.errors import PolicyConflictWarning
from policy_orchestrator.domain.models import (
    WILDCARD,
    Applicability,
    CheckSpec,
    JSONValue,
    RuleContext,
    RuleDocument,
    RuleScope,
    extension_of,
)
from policy_orchestrator.knowledge_plane.rule_registry import (
    RuleRegistry,
    parse_duration_seconds,
    validate_document,
)

logger = logging.getLogger(__name__)

DEFAULT_RULE_ID: Final[str] = "builtin:defaults"

DOCUMENTED_DIRECTIVES: Final[tuple[str, ...]] = (
    "auto_proceed_max_files",
    "max_workers",
    "retries",
    "timeout",
    "verification_threshold",
    "weights",
)


@dataclass(frozen=True, slots=True)
class PolicyConflict:
    """Same-rank documents disagreeing on one key; ``winner`` registered first."""

    key: str
    winner: str
    loser: str
    precedence: int
    kind: str = "directive"

    def describe(self) -> str:
        return (
            f"{self.kind} {self.key!r}: {self.winner!r} and {self.loser!r} share precedence "
            f"{self.precedence}; {self.winner!r} wins by registration order"
        )


@dataclass(frozen=True, slots=True)
class EffectivePolicy:
    """Fully merged, conflict-resolved policy. Transient; never persisted."""

    directives: Mapping[str, JSONValue]
    provenance: Mapping[str, str]
    checks: tuple[CheckSpec, ...] = ()
    check_sources: Mapping[str, str] = field(default_factory=dict)
    document_ids: tuple[str, ...] = ()
    conflicts: tuple[PolicyConflict, ...] = ()
    context: RuleContext | None = None

    def __getitem__(self, key: str) -> JSONValue:
        return self.directives[key]

    def __contains__(self, key: object) -> bool:
        return key in self.directives

    def get(self, key: str, default: JSONValue = None) -> JSONValue:
        return self.directives.get(key, default)

    def source_of(self, key: str) -> str | None:
        return self.provenance.get(key)

    @property
    def timeout(self) -> float:
        return parse_duration_seconds(self.directives["timeout"])

    @property
    def retries(self) -> int:
        return int(_as_number(self.directives["retries"], "retries"))

    @property
    def verification_threshold(self) -> float:
        value = self.directives["verification_threshold"]
        return float(_as_number(value, "verification_threshold"))

    @property
    def auto_proceed_max_files(self) -> int:
        return int(_as_number(self.directives["auto_proceed_max_files"], "auto_proceed_max_files"))

    @property
    def max_workers(self) -> int:
        return int(_as_number(self.directives["max_workers"], "max_workers"))

    @property
    def weights(self) -> dict[str, float]:
        raw = self.directives["weights"]
        if not isinstance(raw, Mapping):
            raise ValueError("weights: must be a mapping")
        return {str(key): float(_as_number(value, f"weights.{key}")) for key, value in raw.items()}

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "directives": {key: self.directives[key] for key in sorted(self.directives)},
            "provenance": {key: self.provenance[key] for key in sorted(self.provenance)},
            "checks": [
                {**check.to_dict(), "source": self.check_sources.get(check.name)}
                for check in self.checks
            ],
            "documents": list(self.document_ids),
            "conflicts": [item.describe() for item in self.conflicts],
        }


@dataclass(frozen=True, slots=True)
class FilePolicyGroup:
    """Files sharing one extension and the policy resolved for them."""

    extension: str
    files: tuple[str, ...]
    policy: EffectivePolicy


def default_directives(config: Mapping[str, object] | None = None) -> dict[str, JSONValue]:
    """Derive documented default directive values from an effective config mapping."""

    cfg = config or {}
    workflow = _section(cfg, "workflow")
    classifier = _section(cfg, "classifier")
    checks = _section(cfg, "checks")
    scoring = _section(cfg, "scoring")
    weights = scoring.get("weights")
    return {
        "timeout": _json_number(
            checks.get("default_timeout_seconds"), DEFAULT_CHECK_TIMEOUT_SECONDS
        ),
        "retries": _json_number(checks.get("default_retries"), DEFAULT_CHECK_RETRIES),
        "verification_threshold": _json_number(
            workflow.get("verification_threshold"), DEFAULT_VERIFICATION_THRESHOLD
        ),
        "auto_proceed_max_files": _json_number(
            classifier.get("auto_proceed_max_files"), DEFAULT_AUTO_PROCEED_MAX_FILES
        ),
        "max_workers": _json_number(workflow.get("max_workers"), 0),
        "weights": (
            {str(key): _json_number(value, 0.0) for key, value in weights.items()}
            if isinstance(weights, Mapping)
            else {key: float(value) for key, value in DEFAULT_CATEGORY_WEIGHTS.items()}
        ),
    }


def default_rule_document(config: Mapping[str, object] | None = None) -> RuleDocument:
    """Built-in lowest-priority document carrying every documented directive."""

    directives = default_directives(config)
    return RuleDocument(
        id=DEFAULT_RULE_ID,
        scope=RuleScope.UNIVERSAL,
        applicability=Applicability(extensions=(WILDCARD,)),
        directives=tuple((key, directives[key]) for key in DOCUMENTED_DIRECTIVES),
        body="Built-in defaults derived from configuration.",
    )


class RuleResolver:
    """Turn ordered rule documents into one total ``EffectivePolicy``."""

    def __init__(
        self,
        registry: RuleRegistry | None = None,
        *,
        defaults: RuleDocument | None = None,
        warn: bool = True,
    ) -> None:
        self._registry = registry if registry is not None else RuleRegistry()
        self._defaults = defaults if defaults is not None else default_rule_document()
        validate_document(self._defaults)
        missing = [key for key in DOCUMENTED_DIRECTIVES if key not in self._defaults.directive_keys]
        if missing:
            raise ValueError(f"default rule document is missing directives: {missing}")
        self._warn = warn

    @classmethod
    def from_config(
        cls, registry: RuleRegistry, config: Mapping[str, object], *, warn: bool = True
    ) -> RuleResolver:
        return cls(registry, defaults=default_rule_document(config), warn=warn)

    @property
    def registry(self) -> RuleRegistry:
        return self._registry

    @property
    def defaults(self) -> RuleDocument:
        return self._defaults

    def resolve(
        self,
        documents: Sequence[RuleDocument],
        *,
        context: RuleContext | None = None,
    ) -> EffectivePolicy:
        """Merge ``documents`` (assumed in precedence order) plus defaults.

        The input is re-sorted stably by precedence, so callers passing an
        unordered list still get precedence semantics with their order used
        only to break ties.
        """

        ordered = sorted(
            (doc for doc in documents if doc.id != self._defaults.id),
            key=lambda doc: -doc.precedence,
        )

        values: dict[str, JSONValue] = {}
        provenance: dict[str, str] = {}
        winner_rank: dict[str, int] = {}
        checks: dict[str, CheckSpec] = {}
        check_sources: dict[str, str] = {}
        check_rank: dict[str, int] = {}
        conflicts: list[PolicyConflict] = []

        for doc in ordered:
            for key, value in doc.directives:
                if key not in values:
                    values[key] = copy.deepcopy(value)
                    provenance[key] = doc.id
                    winner_rank[key] = doc.precedence
                elif winner_rank[key] == doc.precedence and values[key] != value:
                    conflicts.append(
                        PolicyConflict(
                            key=key,
                            winner=provenance[key],
                            loser=doc.id,
                            precedence=doc.precedence,
                        )
                    )
            for check in doc.checks:
                if check.name not in checks:
                    checks[check.name] = check
                    check_sources[check.name] = doc.id
                    check_rank[check.name] = doc.precedence
                elif check_rank[check.name] == doc.precedence and checks[check.name] != check:
                    conflicts.append(
                        PolicyConflict(
                            key=check.name,
                            winner=check_sources[check.name],
                            loser=doc.id,
                            precedence=doc.precedence,
                            kind="check",
                        )
                    )

        for key, value in self._defaults.directives:
            if key not in values:
                values[key] = copy.deepcopy(value)
                provenance[key] = self._defaults.id
        for check in self._defaults.checks:
            if check.name not in checks:
                checks[check.name] = check
                check_sources[check.name] = self._defaults.id

        for conflict in conflicts:
            self._report_conflict(conflict)

        return EffectivePolicy(
            directives=values,
            provenance=provenance,
            checks=tuple(checks[name] for name in sorted(checks)),
            check_sources=check_sources,
            document_ids=(*(doc.id for doc in ordered), self._defaults.id),
            conflicts=tuple(conflicts),
            context=context,
        )

    def resolve_context(self, context: RuleContext) -> EffectivePolicy:
        return self.resolve(self._registry.match(context), context=context)

    def resolve_files(
        self,
        paths: Iterable[str],
        *,
        frameworks: Iterable[str] = (),
        project: str | None = None,
    ) -> list[FilePolicyGroup]:
        """Resolve one policy per file extension, in extension order."""

        framework_set = frozenset(frameworks)
        grouped: dict[str, list[str]] = defaultdict(list)
        for path in paths:
            grouped[extension_of(path)].append(path)

        groups: list[FilePolicyGroup] = []
        for extension in sorted(grouped):
            files = tuple(sorted(set(grouped[extension])))
            context = RuleContext(
                extensions=frozenset({extension}) if extension else frozenset(),
                frameworks=framework_set,
                project=project,
            )
            groups.append(
                FilePolicyGroup(
                    extension=extension,
                    files=files,
                    policy=self.resolve_context(context),
                )
            )
        return groups

    def _report_conflict(self, conflict: PolicyConflict) -> None:
        message = conflict.describe()
        logger.warning("policy conflict: %s", message)
        if self._warn:
            warnings.warn(message, PolicyConflictWarning, stacklevel=3)


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    if isinstance(value, Mapping):
        return value
    return {}


def _json_number(value: object, default: float | int) -> float | int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _as_number(value: JSONValue, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key}: expected number, got {type(value).__name__}")
    return float(value)


__all__ = [
    "DEFAULT_RULE_ID",
    "DOCUMENTED_DIRECTIVES",
    "EffectivePolicy",
    "FilePolicyGroup",
    "PolicyConflict",
    "RuleResolver",
    "default_directives",
    "default_rule_document",
]

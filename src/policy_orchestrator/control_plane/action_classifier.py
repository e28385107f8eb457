"""
policy-orchestrator — action classifier

File: src/policy_orchestrator/control_plane/action_classifier.py

Purpose
- Map an ``ActionRequest`` to a gating decision with a deterministic, ordered
  rule table. First match wins:

  1. ``auto_proceed_low_risk``: low-impact category within the file threshold
     proceeds without confirmation.
  2. ``confirm_high_impact``: high-impact category needs confirmation and
     carries a ``RecommendationSet`` (>= 2 options, exactly one recommended).
  3. ``clarify_unclassified``: everything else needs confirmation with one
     clarifying question and no recommendations.

Functional requirements
- ``classify`` is a pure function of the request and a static policy.
- Category spellings are normalized before matching (``lint-fix``,
  ``dependency-change``, ``docs`` and similar).
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from policy_orchestrator.constants import DEFAULT_AUTO_PROCEED_MAX_FILES
from policy_orchestrator.domain.models import (
    ActionRequest,
    Classification,
    GateDecision,
    Recommendation,
    RecommendationSet,
    RiskLevel,
)
from policy_orchestrator.observability.logging import get_decision_logger

RULE_AUTO_PROCEED: Final[str] = "auto_proceed_low_risk"
RULE_CONFIRM: Final[str] = "confirm_high_impact"
RULE_CLARIFY: Final[str] = "clarify_unclassified"

AUTO_PROCEED_CATEGORIES: Final[frozenset[str]] = frozenset({"bugfix", "doc", "lint_fix"})
CONFIRM_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"feature", "architecture", "dependency", "api_contract_change"}
)

CATEGORY_ALIASES: Final[Mapping[str, str]] = {
    "bug": "bugfix",
    "bug_fix": "bugfix",
    "docs": "doc",
    "documentation": "doc",
    "lintfix": "lint_fix",
    "dependency_change": "dependency",
    "dependencies": "dependency",
    "api_change": "api_contract_change",
}


def _options(*entries: tuple[str, tuple[str, ...], tuple[str, ...], bool]) -> RecommendationSet:
    return RecommendationSet(
        options=tuple(
            Recommendation(approach=approach, pros=pros, cons=cons, recommended=recommended)
            for approach, pros, cons, recommended in entries
        )
    )


DEFAULT_RECOMMENDATIONS: Final[Mapping[str, RecommendationSet]] = {
    "feature": _options(
        (
            "Ship incrementally behind a feature flag",
            ("small reviewable changes", "easy rollback"),
            ("flag cleanup needed later",),
            True,
        ),
        (
            "Implement the full feature in one change",
            ("single review", "no interim states"),
            ("large diff", "harder to revert"),
            False,
        ),
    ),
    "architecture": _options(
        (
            "Migrate incrementally behind an adapter layer",
            ("old and new paths coexist", "each step verifiable"),
            ("temporary duplication",),
            True,
        ),
        (
            "Rewrite the affected subsystem in one pass",
            ("clean end state",),
            ("high blast radius", "long-lived branch"),
            False,
        ),
    ),
    "dependency": _options(
        (
            "Upgrade the dependency alone and run the full check suite",
            ("isolates breakage", "clear changelog entry"),
            ("more upgrade rounds",),
            True,
        ),
        (
            "Upgrade together with related dependencies",
            ("one compatibility pass",),
            ("harder to attribute failures",),
            False,
        ),
    ),
    "api_contract_change": _options(
        (
            "Add a versioned, backward-compatible contract and deprecate the old one",
            ("existing consumers keep working",),
            ("two contracts to maintain for a while",),
            True,
        ),
        (
            "Change the contract in place and update all consumers together",
            ("no parallel versions",),
            ("coordinated release required", "breaks unknown consumers"),
            False,
        ),
    ),
}


def normalize_category(category: str) -> str:
    """Canonical spelling of ``category``: lowercase, ``_`` separators, aliases applied."""

    token = category.strip().lower().replace("-", "_").replace(" ", "_")
    return CATEGORY_ALIASES.get(token, token)


@dataclass(frozen=True, slots=True)
class ClassifierPolicy:
    """Static rule table parameters."""

    auto_proceed_max_files: int = DEFAULT_AUTO_PROCEED_MAX_FILES
    auto_proceed_categories: frozenset[str] = AUTO_PROCEED_CATEGORIES
    confirm_categories: frozenset[str] = CONFIRM_CATEGORIES
    recommendations: Mapping[str, RecommendationSet] = field(
        default_factory=lambda: dict(DEFAULT_RECOMMENDATIONS)
    )

    def __post_init__(self) -> None:
        if isinstance(self.auto_proceed_max_files, bool) or self.auto_proceed_max_files < 0:
            raise ValueError("ClassifierPolicy.auto_proceed_max_files: must be >= 0")
        overlap = self.auto_proceed_categories & self.confirm_categories
        if overlap:
            raise ValueError(
                f"ClassifierPolicy: categories both auto-proceed and confirm: {sorted(overlap)}"
            )

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> ClassifierPolicy:
        section = config.get("classifier")
        if isinstance(section, Mapping):
            value = section.get("auto_proceed_max_files")
            if isinstance(value, int) and not isinstance(value, bool):
                return cls(auto_proceed_max_files=value)
        return cls()

    def with_max_files(self, max_files: int) -> ClassifierPolicy:
        if max_files == self.auto_proceed_max_files:
            return self
        return dataclasses.replace(self, auto_proceed_max_files=max_files)

    def recommendations_for(self, category: str) -> RecommendationSet:
        found = self.recommendations.get(category)
        if found is not None:
            return found
        return _options(
            (
                f"Proceed with the {category} change in small verified steps",
                ("each step reviewable",),
                ("slower overall",),
                True,
            ),
            (
                f"Apply the {category} change in one step",
                ("fastest path",),
                ("larger blast radius",),
                False,
            ),
        )


def classify(request: ActionRequest, policy: ClassifierPolicy | None = None) -> Classification:
    """Decide whether ``request`` may proceed without confirmation."""

    table = policy if policy is not None else ClassifierPolicy()
    category = normalize_category(request.category)
    files = request.affected_file_count

    if category in table.auto_proceed_categories and files <= table.auto_proceed_max_files:
        return Classification(
            decision=GateDecision.AUTO_PROCEED,
            rule=RULE_AUTO_PROCEED,
            reason=(
                f"{category} touching {files} file(s) is within the auto-proceed limit "
                f"of {table.auto_proceed_max_files}"
            ),
            risk=RiskLevel.LOW,
        )

    if category in table.confirm_categories:
        return Classification(
            decision=GateDecision.NEEDS_CONFIRMATION,
            rule=RULE_CONFIRM,
            reason=f"{category} changes require confirmation",
            risk=RiskLevel.HIGH,
            recommendations=table.recommendations_for(category),
        )

    if category in table.auto_proceed_categories:
        reason = (
            f"{category} touching {files} file(s) exceeds the auto-proceed limit "
            f"of {table.auto_proceed_max_files}"
        )
    else:
        reason = f"category {request.category!r} is not classified"
    return Classification(
        decision=GateDecision.NEEDS_CONFIRMATION,
        rule=RULE_CLARIFY,
        reason=reason,
        risk=RiskLevel.UNKNOWN,
        question=(
            f"{reason}. What is the intended scope of {request.description!r}, and which "
            "category best describes it?"
        ),
    )


class ActionClassifier:
    """``classify`` plus a decision log entry per call."""

    def __init__(
        self, policy: ClassifierPolicy | None = None, *, logger: Any | None = None
    ) -> None:
        self._policy = policy if policy is not None else ClassifierPolicy()
        self._logger = logger if logger is not None else get_decision_logger(__name__)

    @property
    def policy(self) -> ClassifierPolicy:
        return self._policy

    def classify(
        self, request: ActionRequest, *, policy: ClassifierPolicy | None = None
    ) -> Classification:
        outcome = classify(request, policy if policy is not None else self._policy)
        self._logger.info(
            "action_classified",
            category=normalize_category(request.category),
            affected_files=request.affected_file_count,
            decision=outcome.decision.value,
            rule=outcome.rule,
            risk=outcome.risk.value,
        )
        return outcome


__all__ = [
    "AUTO_PROCEED_CATEGORIES",
    "CATEGORY_ALIASES",
    "CONFIRM_CATEGORIES",
    "DEFAULT_RECOMMENDATIONS",
    "RULE_AUTO_PROCEED",
    "RULE_CLARIFY",
    "RULE_CONFIRM",
    "ActionClassifier",
    "ClassifierPolicy",
    "classify",
    "normalize_category",
]

"""
policy-orchestrator — unit tests for the rule resolver

File: tests/unit/knowledge_plane/test_rule_resolver.py

Purpose
- Validate precedence merging, provenance, same-rank conflict reporting,
  default totality and per-extension file grouping.
"""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from policy_orchestrator.domain.errors import PolicyConflictWarning
from policy_orchestrator.domain.models import (
    Applicability,
    CheckKind,
    CheckSpec,
    RuleContext,
    RuleDocument,
    RuleScope,
)
from policy_orchestrator.knowledge_plane.rule_registry import RuleRegistry
from policy_orchestrator.knowledge_plane.rule_resolver import (
    DEFAULT_RULE_ID,
    DOCUMENTED_DIRECTIVES,
    RuleResolver,
    default_directives,
)

SAMPLE_RULES = Path(__file__).resolve().parents[3] / "samples" / "rules"


def _doc(
    rule_id: str,
    scope: RuleScope,
    directives: dict[str, object],
    *,
    checks: tuple[CheckSpec, ...] = (),
) -> RuleDocument:
    return RuleDocument(
        id=rule_id,
        scope=scope,
        applicability=Applicability(extensions=("*",)),
        directives=tuple(directives.items()),  # type: ignore[arg-type]
        checks=checks,
    )


def _check(name: str, *command: str) -> CheckSpec:
    return CheckSpec(name=name, kind=CheckKind.CUSTOM, command=command)


LAYERED = (
    _doc("u", RuleScope.UNIVERSAL, {"verification_threshold": 70, "timeout": "10s"}),
    _doc("l", RuleScope.LANGUAGE, {"verification_threshold": 75, "retries": 2}),
    _doc("f", RuleScope.FRAMEWORK, {"verification_threshold": 85}),
    _doc("p", RuleScope.PROJECT, {"verification_threshold": 90, "auto_proceed_max_files": 3}),
)


def test_higher_precedence_wins_and_provenance_recorded() -> None:
    policy = RuleResolver().resolve(list(LAYERED))

    assert policy.verification_threshold == 90
    assert policy.source_of("verification_threshold") == "p"
    assert policy.timeout == 10.0
    assert policy.source_of("timeout") == "u"
    assert policy.retries == 2
    assert policy.auto_proceed_max_files == 3
    assert policy.document_ids == ("p", "f", "l", "u", DEFAULT_RULE_ID)


@settings(max_examples=30, deadline=None)
@given(st.permutations(LAYERED))
def test_resolution_independent_of_input_order(documents: list[RuleDocument]) -> None:
    policy = RuleResolver().resolve(documents)

    assert dict(policy.directives) == dict(RuleResolver().resolve(list(LAYERED)).directives)
    assert dict(policy.provenance) == dict(RuleResolver().resolve(list(LAYERED)).provenance)


def test_defaults_make_policy_total() -> None:
    policy = RuleResolver().resolve([])

    for key in DOCUMENTED_DIRECTIVES:
        assert key in policy
        assert policy.source_of(key) == DEFAULT_RULE_ID
    assert policy.verification_threshold == 80.0
    assert policy.auto_proceed_max_files == 10
    assert sum(policy.weights.values()) == pytest.approx(100.0)
    assert policy.document_ids == (DEFAULT_RULE_ID,)


def test_defaults_follow_config() -> None:
    config = {
        "workflow": {"verification_threshold": 95, "max_workers": 2},
        "classifier": {"auto_proceed_max_files": 3},
        "checks": {"default_timeout_seconds": 12.5, "default_retries": 1},
        "scoring": {"weights": {"tests": 1}},
    }

    directives = default_directives(config)

    assert directives["verification_threshold"] == 95
    assert directives["max_workers"] == 2
    assert directives["auto_proceed_max_files"] == 3
    assert directives["timeout"] == 12.5
    assert directives["retries"] == 1
    assert directives["weights"] == {"tests": 1}
    policy = RuleResolver.from_config(RuleRegistry(), config).resolve([])
    assert policy.weights == {"tests": 1.0}


def test_weights_replaced_as_a_whole() -> None:
    project = _doc("p", RuleScope.PROJECT, {"weights": {"tests": 50, "lint": 50}})

    policy = RuleResolver().resolve([project])

    assert policy.weights == {"tests": 50.0, "lint": 50.0}
    assert policy.source_of("weights") == "p"


def test_policy_values_are_independent_of_rule_documents() -> None:
    project = _doc("p", RuleScope.PROJECT, {"weights": {"tests": 50, "lint": 50}})
    resolver = RuleResolver(RuleRegistry([project]))
    policy = resolver.resolve([project])

    weights = policy["weights"]
    assert isinstance(weights, dict)
    weights["tests"] = 0

    assert dict(project.directives)["weights"] == {"tests": 50, "lint": 50}
    assert resolver.resolve([project]).weights == {"tests": 50.0, "lint": 50.0}


def test_same_rank_conflict_warns_and_first_registered_wins() -> None:
    first = _doc("lang-a", RuleScope.LANGUAGE, {"timeout": "20s"})
    second = _doc("lang-b", RuleScope.LANGUAGE, {"timeout": "40s"})

    with pytest.warns(PolicyConflictWarning, match="lang-a"):
        policy = RuleResolver().resolve([first, second])

    assert policy.timeout == 20.0
    assert len(policy.conflicts) == 1
    conflict = policy.conflicts[0]
    assert (conflict.key, conflict.winner, conflict.loser) == ("timeout", "lang-a", "lang-b")


def test_same_rank_identical_values_are_not_conflicts() -> None:
    first = _doc("lang-a", RuleScope.LANGUAGE, {"timeout": "20s"})
    second = _doc("lang-b", RuleScope.LANGUAGE, {"timeout": "20s"})

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        policy = RuleResolver().resolve([first, second])

    assert policy.conflicts == ()


def test_conflict_warning_can_be_disabled() -> None:
    first = _doc("lang-a", RuleScope.LANGUAGE, {"retries": 1})
    second = _doc("lang-b", RuleScope.LANGUAGE, {"retries": 2})

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        policy = RuleResolver(warn=False).resolve([first, second])

    assert policy.retries == 1
    assert len(policy.conflicts) == 1


def test_checks_merge_by_name_first_wins() -> None:
    universal = _doc(
        "u", RuleScope.UNIVERSAL, {}, checks=(_check("lint", "old-lint"), _check("diff", "git"))
    )
    project = _doc("p", RuleScope.PROJECT, {}, checks=(_check("lint", "new-lint"),))

    policy = RuleResolver().resolve([universal, project])

    assert [check.name for check in policy.checks] == ["diff", "lint"]
    lint = next(check for check in policy.checks if check.name == "lint")
    assert lint.command == ("new-lint",)
    assert policy.check_sources == {"lint": "p", "diff": "u"}


def test_resolve_context_over_sample_rules() -> None:
    resolver = RuleResolver(RuleRegistry.from_directory(SAMPLE_RULES))
    context = RuleContext.from_paths(["billing/views.py"], frameworks=["django"], project="billing")

    policy = resolver.resolve_context(context)

    assert policy.verification_threshold == 90
    assert policy.source_of("verification_threshold") == "billing-project"
    assert policy.timeout == 120.0
    assert policy.source_of("retries") == "universal-baseline"
    assert policy.source_of("max_workers") == DEFAULT_RULE_ID
    assert [check.name for check in policy.checks] == [
        "django-check",
        "git-diff-check",
        "py-compile",
        "pytest",
        "ruff",
    ]
    payload = policy.to_dict()
    assert payload["documents"][-1] == DEFAULT_RULE_ID
    assert list(payload["directives"]) == sorted(payload["directives"])


def test_resolve_files_groups_by_extension() -> None:
    resolver = RuleResolver(RuleRegistry.from_directory(SAMPLE_RULES))

    groups = resolver.resolve_files(["src/b.py", "README.md", "Makefile", "src/a.py", "src/a.py"])

    assert [group.extension for group in groups] == ["", ".md", ".py"]
    by_extension = {group.extension: group for group in groups}
    assert by_extension[".py"].files == ("src/a.py", "src/b.py")
    assert by_extension[".py"].policy.timeout == 120.0
    assert by_extension[".md"].policy.timeout == 60.0
    assert by_extension[""].files == ("Makefile",)
    assert [check.name for check in by_extension[".md"].policy.checks] == ["git-diff-check"]


def test_defaults_document_must_be_total() -> None:
    partial = RuleDocument(
        id="partial",
        scope=RuleScope.UNIVERSAL,
        applicability=Applicability(extensions=("*",)),
        directives=(("timeout", 5),),
    )

    with pytest.raises(ValueError, match="missing directives"):
        RuleResolver(defaults=partial)

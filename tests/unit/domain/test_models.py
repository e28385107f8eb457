"""
policy-orchestrator — unit tests for domain models

File: tests/unit/domain/test_models.py

Purpose
- Validate constructor-time validation, normalization and JSON shapes of the
  shared domain entities.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from policy_orchestrator.domain.models import (
    Applicability,
    BlockInfo,
    BlockReason,
    CategoryScore,
    CheckKind,
    CheckResult,
    CheckSpec,
    CheckStatus,
    HealthReport,
    Recommendation,
    RecommendationSet,
    RuleContext,
    RuleDocument,
    RuleScope,
    Task,
    WorkflowState,
    extension_of,
)

FIXED_TS = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _result(name: str, category: str, status: CheckStatus) -> CheckResult:
    return CheckResult(name=name, kind=CheckKind.CUSTOM, category=category, status=status)


def test_scope_precedence_ranks_project_highest() -> None:
    ranks = [scope.precedence for scope in RuleScope]
    assert RuleScope.PROJECT.precedence > RuleScope.FRAMEWORK.precedence
    assert RuleScope.FRAMEWORK.precedence > RuleScope.LANGUAGE.precedence
    assert RuleScope.LANGUAGE.precedence > RuleScope.UNIVERSAL.precedence
    assert len(set(ranks)) == len(ranks)


def test_applicability_normalizes_extensions_and_matches_any_dimension() -> None:
    applicability = Applicability(extensions=("PY", ".ts"), frameworks=("Django",))

    assert applicability.extensions == (".py", ".ts")
    assert applicability.frameworks == ("django",)
    assert applicability.matches(RuleContext(extensions=frozenset({".py"})))
    assert applicability.matches(RuleContext(frameworks=frozenset({"DJANGO"})))
    assert not applicability.matches(RuleContext(extensions=frozenset({".go"})))


def test_wildcard_applicability_matches_empty_context() -> None:
    applicability = Applicability.from_mapping("*")

    assert applicability.matches_all
    assert applicability.matches(RuleContext())


def test_applicability_string_form_rejects_anything_but_wildcard() -> None:
    with pytest.raises(ValueError, match="applies_to"):
        Applicability.from_mapping("py")


def test_rule_context_from_paths_ignores_extensionless_files() -> None:
    context = RuleContext.from_paths(["src/app.py", "Makefile", "web/App.TSX"], project="billing")

    assert context.extensions == frozenset({".py", ".tsx"})
    assert context.project == "billing"


def test_extension_of_is_lowercase_and_empty_without_suffix() -> None:
    assert extension_of("src/App.PY") == ".py"
    assert extension_of("Makefile") == ""
    assert extension_of("win\\path\\mod.rs") == ".rs"


def test_check_spec_from_mapping_defaults_category_from_kind() -> None:
    spec = CheckSpec.from_mapping(
        {"name": "pytest", "kind": "test", "command": "pytest -q", "timeout": 12}
    )

    assert spec.category == "tests"
    assert spec.command == ("pytest -q",)
    assert spec.timeout_seconds == 12.0
    assert spec.retries is None


def test_check_spec_rejects_unknown_fields_and_empty_command() -> None:
    with pytest.raises(ValueError, match="unexpected fields"):
        CheckSpec.from_mapping({"name": "x", "kind": "lint", "command": ["a"], "shell": True})
    with pytest.raises(ValueError, match="CheckSpec.command"):
        CheckSpec(name="x", kind=CheckKind.LINT, command=())


def test_rule_document_rejects_duplicate_directives_and_check_names() -> None:
    with pytest.raises(ValueError, match="duplicate directive"):
        RuleDocument(
            id="dup",
            scope=RuleScope.UNIVERSAL,
            applicability=Applicability(extensions=("*",)),
            directives=(("timeout", 5), ("timeout", 6)),
        )
    check = CheckSpec(name="lint", kind=CheckKind.LINT, command=("ruff",))
    with pytest.raises(ValueError, match="unique"):
        RuleDocument(
            id="dup-checks",
            scope=RuleScope.UNIVERSAL,
            applicability=Applicability(extensions=("*",)),
            checks=(check, check),
        )


def test_task_file_count_prefers_explicit_affected_count() -> None:
    implicit = Task(id="a", description="d", category="bugfix", files=("a.py", "b.py"))
    explicit = Task(
        id="b", description="d", category="bugfix", files=("a.py",), affected_file_count=40
    )

    assert implicit.file_count == 2
    assert explicit.file_count == 40
    assert implicit.to_action_request().affected_file_count == 2


def test_task_requires_identifier() -> None:
    with pytest.raises(ValueError, match="Task.id: must not be empty"):
        Task(id="  ", description="d", category="doc")


def test_recommendation_set_requires_exactly_one_recommended_option() -> None:
    one = Recommendation(approach="one", recommended=True)
    two = Recommendation(approach="two")

    assert RecommendationSet(options=(one, two)).recommended is one
    with pytest.raises(ValueError, match="at least 2"):
        RecommendationSet(options=(one,))
    with pytest.raises(ValueError, match="exactly one"):
        RecommendationSet(options=(two, two))


def test_health_report_bounds_total_and_sorts_contents() -> None:
    results = (
        _result("z-check", "tests", CheckStatus.PASS),
        _result("a-check", "lint", CheckStatus.ERROR),
    )
    scores = (
        CategoryScore(category="tests", weight=25, passed=1, total=1),
        CategoryScore(category="lint", weight=10, passed=0, total=1, errors=1),
    )
    report = HealthReport(category_scores=scores, total=71.4, results=results, timestamp=FIXED_TS)

    assert [item.category for item in report.category_scores] == ["lint", "tests"]
    assert [item.name for item in report.results] == ["a-check", "z-check"]
    assert [item.name for item in report.error_results] == ["a-check"]
    assert report.failed_results == ()

    with pytest.raises(ValueError, match="HealthReport.total"):
        HealthReport(category_scores=(), total=100.5, results=(), timestamp=FIXED_TS)


def test_health_report_stable_dict_omits_volatile_fields() -> None:
    report = HealthReport(
        category_scores=(CategoryScore(category="tests", weight=25, passed=1, total=1),),
        total=100.0,
        results=(_result("pytest", "tests", CheckStatus.PASS),),
        timestamp=FIXED_TS,
    )

    stable = report.to_dict(include_volatile=False)
    full = report.to_dict()

    assert "timestamp" not in stable
    assert "duration_ms" not in stable["results"][0]
    assert full["timestamp"] == "2026-01-02T03:04:05.000000Z"
    assert HealthReport.from_dict(full) == report


def test_category_score_is_weight_times_pass_fraction() -> None:
    score = CategoryScore(category="tests", weight=20, passed=3, total=4)
    unevaluated = CategoryScore(category="docs", weight=5, passed=0, total=0)

    assert score.score == pytest.approx(15.0)
    assert not unevaluated.evaluated
    assert unevaluated.score == 0.0


def test_block_info_survives_dict_round_trip() -> None:
    options = RecommendationSet(
        options=(Recommendation(approach="flag", recommended=True), Recommendation(approach="big"))
    )
    block = BlockInfo(
        reason=BlockReason.UNAPPROVED_TASK,
        message="1 task(s) need confirmation",
        resume_state=WorkflowState.PLANNING,
        task_ids=("t1",),
        recommendations=(("t1", options),),
        questions=(("t2", "Which category?"),),
    )

    assert BlockInfo.from_dict(block.to_dict()) == block

"""
policy-orchestrator — unit tests for the rule registry

File: tests/unit/knowledge_plane/test_rule_registry.py

Purpose
- Cover Markdown and YAML parsing, load-time validation, applicability
  matching order and directory reload.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from policy_orchestrator.domain.errors import InvalidRuleError
from policy_orchestrator.domain.models import (
    Applicability,
    CheckKind,
    RuleContext,
    RuleDocument,
    RuleScope,
)
from policy_orchestrator.knowledge_plane.rule_registry import (
    RuleRegistry,
    parse_duration_seconds,
    parse_markdown_rule,
    parse_yaml_rule,
)

SAMPLE_RULES = Path(__file__).resolve().parents[3] / "samples" / "rules"

MARKDOWN_RULE = """---
id: py-style
scope: language
applies_to:
  extensions: [py]
directives:
  timeout: 45s
checks:
  - name: compile
    kind: syntax
    command: ["python", "-m", "py_compile", "{targets}"]
---
# Python style

Prose that is never interpreted.
"""


def _doc(
    rule_id: str,
    scope: RuleScope,
    *,
    extensions: tuple[str, ...] = ("*",),
    projects: tuple[str, ...] = (),
    directives: tuple[tuple[str, object], ...] = (),
) -> RuleDocument:
    return RuleDocument(
        id=rule_id,
        scope=scope,
        applicability=Applicability(extensions=extensions, projects=projects),
        directives=directives,  # type: ignore[arg-type]
    )


def test_parse_markdown_rule_reads_front_matter_and_body() -> None:
    doc = parse_markdown_rule(MARKDOWN_RULE, source="py.md")

    assert doc.id == "py-style"
    assert doc.scope is RuleScope.LANGUAGE
    assert doc.applicability.extensions == (".py",)
    assert doc.directive_map() == {"timeout": "45s"}
    assert doc.checks[0].kind is CheckKind.SYNTAX
    assert doc.checks[0].category == "syntax"
    assert doc.body.startswith("# Python style")
    assert doc.source_path == "py.md"


def test_parse_yaml_rule_with_body_key() -> None:
    doc = parse_yaml_rule(
        "id: billing\nscope: project\napplies_to:\n  projects: [billing]\n"
        "directives:\n  verification_threshold: 90\nbody: keep totals exact\n"
    )

    assert doc.precedence == 4
    assert doc.directive_map() == {"verification_threshold": 90}
    assert doc.body == "keep totals exact"


@pytest.mark.parametrize(
    ("text", "match"),
    [
        ("# no header\n", "missing '---' front-matter header"),
        ("---\nid: x\n", "unterminated front-matter header"),
        ("---\nid: x\nscope: universal\n---\n", "missing required fields"),
        ("---\nid: x\nscope: galaxy\napplies_to: '*'\n---\n", "scope"),
        ("---\nid: x\nscope: universal\napplies_to: '*'\nowner: me\n---\n", "unknown fields"),
        ("---\n[unclosed\n---\n", "invalid YAML"),
    ],
)
def test_malformed_markdown_rejected(text: str, match: str) -> None:
    with pytest.raises(InvalidRuleError, match=match):
        parse_markdown_rule(text)


def test_register_rejects_empty_applicability() -> None:
    registry = RuleRegistry()
    empty = RuleDocument(id="nothing", scope=RuleScope.UNIVERSAL, applicability=Applicability())

    with pytest.raises(InvalidRuleError, match="must not be empty"):
        registry.register(empty)
    assert len(registry) == 0


def test_register_rejects_bad_directive_values() -> None:
    registry = RuleRegistry()

    with pytest.raises(InvalidRuleError, match="timeout"):
        registry.register(_doc("t", RuleScope.UNIVERSAL, directives=(("timeout", "soon"),)))
    with pytest.raises(InvalidRuleError, match="must be <= 100"):
        registry.register(
            _doc("v", RuleScope.UNIVERSAL, directives=(("verification_threshold", 120),))
        )


def test_register_rejects_duplicate_ids() -> None:
    registry = RuleRegistry([_doc("base", RuleScope.UNIVERSAL)])

    with pytest.raises(InvalidRuleError, match="duplicate rule id"):
        registry.register(_doc("base", RuleScope.LANGUAGE, extensions=(".py",)))


def _project_doc(rule_id: str, project: str, retries: int) -> RuleDocument:
    return _doc(
        rule_id,
        RuleScope.PROJECT,
        extensions=(),
        projects=(project,),
        directives=(("retries", retries),),
    )


def test_overlapping_project_documents_with_shared_keys_rejected() -> None:
    registry = RuleRegistry([_project_doc("p1", "billing", 1)])

    with pytest.raises(InvalidRuleError, match="project-scope conflict"):
        registry.register(_project_doc("p2", "billing", 2))
    registry.register(_project_doc("p3", "ledger", 2))
    assert [doc.id for doc in registry.documents] == ["p1", "p3"]


def test_match_orders_by_precedence_then_registration() -> None:
    registry = RuleRegistry(
        [
            _doc("u", RuleScope.UNIVERSAL),
            _doc("lang-b", RuleScope.LANGUAGE, extensions=(".py",)),
            _doc("proj", RuleScope.PROJECT, extensions=(), projects=("billing",)),
            _doc("lang-a", RuleScope.LANGUAGE, extensions=(".py",)),
            _doc("js", RuleScope.LANGUAGE, extensions=(".js",)),
        ]
    )

    matched = registry.match(RuleContext.from_paths(["app/models.py"], project="billing"))

    assert [doc.id for doc in matched] == ["proj", "lang-b", "lang-a", "u"]


def test_load_directory_reads_sample_rules() -> None:
    registry = RuleRegistry.from_directory(SAMPLE_RULES)

    assert [doc.id for doc in registry.documents] == [
        "universal-baseline",
        "python-standards",
        "django-conventions",
        "billing-project",
    ]
    assert registry.source_dir == SAMPLE_RULES
    context = RuleContext.from_paths(["billing/views.py"], frameworks=["django"], project="billing")
    assert [doc.id for doc in registry.match(context)] == [
        "billing-project",
        "django-conventions",
        "python-standards",
        "universal-baseline",
    ]


def test_load_directory_missing_path(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RuleRegistry.from_directory(tmp_path / "absent")


def test_reload_swaps_snapshot_and_keeps_old_on_error(tmp_path: Path) -> None:
    rules = tmp_path / "rules"
    rules.mkdir()
    (rules / "a.yaml").write_text("id: a\nscope: universal\napplies_to: '*'\n", encoding="utf-8")
    registry = RuleRegistry.from_directory(rules)
    registry.register(_doc("in-memory", RuleScope.LANGUAGE, extensions=(".py",)))

    (rules / "b.yaml").write_text(
        "id: b\nscope: language\napplies_to:\n  extensions: [go]\n", encoding="utf-8"
    )
    reloaded = registry.reload()

    assert [doc.id for doc in reloaded] == ["a", "b"]
    assert registry.get("in-memory") is None

    (rules / "c.yaml").write_text("id: c\nscope: universal\n", encoding="utf-8")
    with pytest.raises(InvalidRuleError):
        registry.reload()
    assert [doc.id for doc in registry.documents] == ["a", "b"]


def test_reload_requires_directory() -> None:
    with pytest.raises(RuntimeError):
        RuleRegistry().reload()


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [(10, 10.0), (2.5, 2.5), ("10s", 10.0), ("500ms", 0.5), ("2m", 120.0), (" 7 ", 7.0)],
)
def test_parse_duration_seconds(raw: object, seconds: float) -> None:
    assert parse_duration_seconds(raw) == pytest.approx(seconds)


@pytest.mark.parametrize("raw", [0, -1, "abc", True, None])
def test_parse_duration_seconds_rejects(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_duration_seconds(raw)

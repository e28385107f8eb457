"""Unit tests for workflow definition parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from policy_orchestrator.control_plane.definition import (
    load_workflow_definition,
    parse_workflow_definition,
)
from policy_orchestrator.control_plane.workflow_engine import WorkflowEngine
from policy_orchestrator.domain.errors import WorkflowDefinitionError
from policy_orchestrator.utils.hashing import sha256_text

SAMPLE_WORKFLOW = (
    Path(__file__).resolve().parents[3] / "samples" / "workflows" / "fix-invoice-total.yaml"
)


def test_sample_workflow_loads() -> None:
    definition = load_workflow_definition(SAMPLE_WORKFLOW)

    assert definition.workflow_id is None
    assert definition.project == "billing"
    assert definition.frameworks == ("django",)
    assert [task.id for task in definition.tasks] == [
        "guard-missing-total",
        "document-rounding",
        "add-invoice-cache",
    ]
    assert definition.tasks[2].file_count == 2
    assert WorkflowEngine(definition).touched_files == (
        "billing/cache.py",
        "billing/invoices.py",
        "docs/rounding.md",
    )
    assert definition.digest == sha256_text(SAMPLE_WORKFLOW.read_text(encoding="utf-8"))


def test_optional_fields_are_parsed() -> None:
    definition = parse_workflow_definition(
        """
workflow_id: wf-manual.1
files: [setup.cfg]
tasks:
  - id: bump
    description: Bump the HTTP client
    category: dependency
    affected_file_count: 4
    command: make bump
"""
    )

    assert definition.workflow_id == "wf-manual.1"
    task = definition.tasks[0]
    assert task.file_count == 4
    assert task.command == ("make", "bump")
    assert WorkflowEngine(definition).touched_files == ("setup.cfg",)


@pytest.mark.parametrize(
    ("text", "match"),
    [
        ("tasks: [\n", "invalid YAML"),
        ("- just a list\n", "must be a mapping"),
        ("owner: me\ntasks: []\n", "unknown keys"),
        ("tasks: []\n", "non-empty list"),
        (
            "workflow_id: 'bad id!'\ntasks: [{id: a, description: d, category: doc}]\n",
            "workflow_id",
        ),
        ("tasks: [{id: a, category: doc}]\n", r"tasks\[0\]\.description"),
        ("tasks: [{id: a, description: d, category: doc, owner: x}]\n", "unknown keys"),
        ("tasks: [{id: a, description: d, category: doc, files: a.py}]\n", "list of strings"),
        (
            "tasks: [{id: a, description: d, category: doc, affected_file_count: -1}]\n",
            "affected_file_count",
        ),
        (
            "tasks:\n  - {id: a, description: d, category: doc}\n"
            "  - {id: a, description: e, category: doc}\n",
            "duplicate task id",
        ),
    ],
)
def test_invalid_definitions_rejected(text: str, match: str) -> None:
    with pytest.raises(WorkflowDefinitionError, match=match):
        parse_workflow_definition(text)


def test_missing_file_is_definition_error(tmp_path: Path) -> None:
    with pytest.raises(WorkflowDefinitionError, match="cannot read"):
        load_workflow_definition(tmp_path / "absent.yaml")


def test_string_command_is_split_like_a_shell() -> None:
    definition = parse_workflow_definition(
        """
tasks:
  - id: fix
    description: Apply the generated patch
    category: bugfix
    command: git apply "patches/fix null total.diff"
"""
    )

    assert definition.tasks[0].command == ("git", "apply", "patches/fix null total.diff")


def test_unbalanced_quotes_in_command_rejected() -> None:
    text = "tasks: [{id: a, description: d, category: doc, command: \"echo 'oops\"}]\n"

    with pytest.raises(WorkflowDefinitionError, match=r"tasks\[0\]\.command"):
        parse_workflow_definition(text)

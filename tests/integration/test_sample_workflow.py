"""
policy-orchestrator — integration tests over the shipped samples

File: tests/integration/test_sample_workflow.py

Purpose
- Load the sample rule set, config and workflow definition together and drive
  the engine from planning through approval, verification and persistence.
- Commands are answered by a scripted executor so no external tools run.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from policy_orchestrator.config import load_config
from policy_orchestrator.control_plane import (
    ActionClassifier,
    ClassifierPolicy,
    NoopTaskExecutor,
    WorkflowEngine,
    load_workflow_definition,
)
from policy_orchestrator.domain.models import (
    ApprovalDecision,
    ApprovalSignal,
    BlockReason,
    RuleContext,
    WorkflowState,
)
from policy_orchestrator.knowledge_plane import RuleRegistry, RuleResolver
from policy_orchestrator.persistence import WorkflowStore
from policy_orchestrator.verification_plane import CheckRunner
from policy_orchestrator.verification_plane.check_runner import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
)

SAMPLES = Path(__file__).resolve().parents[2] / "samples"


class ScriptedExecutor(CommandExecutor):
    def __init__(self, codes: dict[str, int] | None = None) -> None:
        self.codes = dict(codes or {})
        self.calls: list[tuple[str, ...]] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.calls.append(spec.argv)
        code = self.codes.get(spec.argv[0], 0)
        stderr = "" if code == 0 else f"{spec.argv[0]} reported problems"
        return CommandResult(
            argv=spec.argv, exit_code=code, stdout="", stderr=stderr, duration_ms=2
        )


def _engine(tmp_path: Path, executor: ScriptedExecutor) -> WorkflowEngine:
    config = load_config(SAMPLES / "policy_orchestrator.toml")
    registry = RuleRegistry()
    registry.load_directory(SAMPLES / "rules")
    definition = load_workflow_definition(SAMPLES / "workflows" / "fix-invoice-total.yaml")

    def runner_factory() -> CheckRunner:
        return CheckRunner(
            executor,
            default_timeout_seconds=5.0,
            default_retries=0,
            cwd=str(tmp_path),
        )

    return WorkflowEngine(
        definition,
        workflow_id="wf-sample",
        resolver=RuleResolver.from_config(registry, config),
        classifier=ActionClassifier(ClassifierPolicy.from_config(config)),
        task_executor=NoopTaskExecutor(),
        runner_factory=runner_factory,
    )


def _approve(engine: WorkflowEngine, **kwargs: Any) -> None:
    engine.signal(
        ApprovalSignal(workflow_id=engine.workflow_id, decision=ApprovalDecision.APPROVE, **kwargs)
    )


def test_sample_policy_layers() -> None:
    config = load_config(SAMPLES / "policy_orchestrator.toml")
    registry = RuleRegistry()
    registry.load_directory(SAMPLES / "rules")
    resolver = RuleResolver.from_config(registry, config)

    policy = resolver.resolve_context(
        RuleContext.from_paths(["billing/invoices.py"], frameworks=["django"], project="billing")
    )

    assert policy.document_ids[0] == "billing-project"
    assert policy.document_ids[-1] == "builtin:defaults"
    assert policy.provenance["verification_threshold"] == "billing-project"
    assert policy.provenance["timeout"] == "python-standards"
    assert policy.verification_threshold == 90
    assert {"django-check", "git-diff-check", "pytest", "ruff"} <= {c.name for c in policy.checks}


@pytest.mark.asyncio
async def test_sample_workflow_gates_feature_then_completes(tmp_path: Path) -> None:
    executor = ScriptedExecutor()
    engine = _engine(tmp_path, executor)

    blocked = await engine.run()

    assert blocked.state is WorkflowState.BLOCKED
    assert blocked.block is not None
    assert blocked.block.reason is BlockReason.UNAPPROVED_TASK
    assert blocked.block.task_ids == ("add-invoice-cache",)
    assert executor.calls == []

    _approve(engine, note="ship behind a flag")
    final = await engine.run()

    assert final.state is WorkflowState.COMPLETE
    assert final.health_report is not None
    assert final.health_report.total == 100.0
    assert any(call[:2] == ("git", "diff") for call in executor.calls)

    store = WorkflowStore(tmp_path / "state.sqlite")
    store.migrate()
    store.save(final)
    assert store.load("wf-sample").to_dict() == final.to_dict()
    assert len(store.health_history("wf-sample")) == 1


@pytest.mark.asyncio
async def test_sample_workflow_blocks_below_project_threshold(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"ruff": 1})
    engine = _engine(tmp_path, executor)
    await engine.run()
    _approve(engine)

    snapshot = await engine.run()

    assert snapshot.state is WorkflowState.BLOCKED
    assert snapshot.block is not None
    assert snapshot.block.reason is BlockReason.FAILED_VERIFICATION
    report = snapshot.block.health_report
    assert report is not None
    assert [result.name for result in report.failed_results] == ["ruff"]
    assert 0.0 < report.total < 90.0

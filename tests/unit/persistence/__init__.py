"""Shared deterministic builders for workflow store tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

from policy_orchestrator.control_plane.workflow_engine import WorkflowSnapshot
from policy_orchestrator.domain.models import (
    BlockInfo,
    CheckKind,
    CheckResult,
    CheckStatus,
    HealthReport,
    Task,
    TaskStatus,
    TransitionRecord,
    WorkflowState,
)
from policy_orchestrator.persistence.workflow_store import WorkflowStore
from policy_orchestrator.verification_plane.report import ReportAggregator

BASE_TS = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)


def make_store(tmp_path: Path) -> WorkflowStore:
    store = WorkflowStore(tmp_path / "state" / "workflows.sqlite")
    store.migrate()
    return store


def make_report(*statuses: CheckStatus, at: datetime = BASE_TS) -> HealthReport:
    results = [
        CheckResult(name=f"check-{index}", kind=CheckKind.TEST, category="tests", status=status)
        for index, status in enumerate(statuses)
    ]
    return ReportAggregator({"tests": 100}, clock=lambda: at).aggregate(results)


def make_snapshot(
    workflow_id: str,
    state: WorkflowState = WorkflowState.COMPLETE,
    *,
    report: HealthReport | None = None,
    block: BlockInfo | None = None,
    updated_offset: int = 0,
) -> WorkflowSnapshot:
    return WorkflowSnapshot(
        workflow_id=workflow_id,
        state=state,
        tasks=(
            Task(
                id="fix",
                description="Guard against a missing total",
                category="bugfix",
                files=("billing/invoices.py",),
                status=TaskStatus.DONE,
            ),
        ),
        project="billing",
        frameworks=("django",),
        block=block,
        health_report=report,
        history=(
            TransitionRecord(
                source=WorkflowState.PLANNING,
                target=WorkflowState.EXECUTION,
                reason="every task approved or auto-proceed",
                at=BASE_TS,
            ),
        ),
        definition_digest="a" * 64,
        created_at=BASE_TS,
        updated_at=BASE_TS + timedelta(seconds=updated_offset),
    )


__all__ = ["BASE_TS", "make_report", "make_snapshot", "make_store"]

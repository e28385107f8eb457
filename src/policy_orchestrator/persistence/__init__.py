"""Workflow snapshot persistence (SQLite)."""

from policy_orchestrator.persistence.workflow_store import (
    HealthReportRecord,
    WorkflowNotFoundError,
    WorkflowStore,
    WorkflowStoreBusyError,
    WorkflowStoreError,
    WorkflowStoreMigrationError,
    WorkflowSummary,
)

__all__ = [
    "HealthReportRecord",
    "WorkflowNotFoundError",
    "WorkflowStore",
    "WorkflowStoreBusyError",
    "WorkflowStoreError",
    "WorkflowStoreMigrationError",
    "WorkflowSummary",
]

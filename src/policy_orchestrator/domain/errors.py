"""Error taxonomy shared by every orchestrator plane.

Component-local failures (a single check failing or crashing) are represented
as data on ``CheckResult`` and never cross component boundaries as exceptions.
The types below are raised only where a caller must react: malformed rule
documents at load time, task execution failures inside the workflow engine,
and invalid state-machine usage.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


class InvalidRuleError(OrchestratorError, ValueError):
    """Raised when a rule document is malformed or conflicts irreconcilably."""

    def __init__(self, message: str, *, rule_id: str | None = None) -> None:
        self.rule_id = rule_id
        prefix = f"rule {rule_id!r}: " if rule_id else ""
        super().__init__(f"{prefix}{message}")


class PolicyConflictWarning(UserWarning):
    """Two same-rank rule documents set the same directive to different values."""


class UnweightedCategoryWarning(UserWarning):
    """Checks ran in a category the scoring weights do not name; they cannot affect readiness."""


class CheckExecutionError(OrchestratorError):
    """An external check tool crashed, could not start, or timed out.

    ``CheckRunner`` catches this and records ``status=error``; it is never
    propagated to the workflow engine.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class TaskExecutionError(OrchestratorError):
    """Fatal failure while performing one task; blocks the workflow run."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id!r} failed: {message}")


class ApprovalTimeoutNotApplicable(OrchestratorError):
    """Approval waits are indefinite; there is no timeout to configure or query."""


class InvalidTransitionError(OrchestratorError, RuntimeError):
    """Raised when a workflow state transition is not allowed."""

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(f"invalid workflow transition: {source} -> {target}")


class WorkflowDefinitionError(OrchestratorError, ValueError):
    """Raised when a workflow definition document cannot be parsed."""


__all__ = [
    "ApprovalTimeoutNotApplicable",
    "CheckExecutionError",
    "InvalidRuleError",
    "InvalidTransitionError",
    "OrchestratorError",
    "PolicyConflictWarning",
    "TaskExecutionError",
    "UnweightedCategoryWarning",
    "WorkflowDefinitionError",
]

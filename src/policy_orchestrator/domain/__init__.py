"""
policy-orchestrator — domain layer

File: src/policy_orchestrator/domain/__init__.py

Purpose
- Domain types shared across planes: RuleDocument, CheckSpec, CheckResult,
  HealthReport, Task, ActionRequest, ApprovalSignal.

Non-functional requirements
- Domain layer should have minimal dependencies and no IO side effects.
"""

from policy_orchestrator.domain.errors import (
    ApprovalTimeoutNotApplicable,
    CheckExecutionError,
    InvalidRuleError,
    InvalidTransitionError,
    OrchestratorError,
    PolicyConflictWarning,
    TaskExecutionError,
    UnweightedCategoryWarning,
    WorkflowDefinitionError,
)
from policy_orchestrator.domain.models import (
    ActionRequest,
    Applicability,
    ApprovalDecision,
    ApprovalSignal,
    BlockInfo,
    BlockReason,
    CategoryScore,
    CheckKind,
    CheckResult,
    CheckSpec,
    CheckStatus,
    Classification,
    GateDecision,
    HealthReport,
    Recommendation,
    RecommendationSet,
    RiskLevel,
    RuleContext,
    RuleDocument,
    RuleScope,
    Task,
    TaskStatus,
    TransitionRecord,
    WorkflowState,
)

__all__ = [
    "ActionRequest",
    "Applicability",
    "ApprovalDecision",
    "ApprovalSignal",
    "ApprovalTimeoutNotApplicable",
    "BlockInfo",
    "BlockReason",
    "CategoryScore",
    "CheckExecutionError",
    "CheckKind",
    "CheckResult",
    "CheckSpec",
    "CheckStatus",
    "Classification",
    "GateDecision",
    "HealthReport",
    "InvalidRuleError",
    "InvalidTransitionError",
    "OrchestratorError",
    "PolicyConflictWarning",
    "Recommendation",
    "RecommendationSet",
    "RiskLevel",
    "RuleContext",
    "RuleDocument",
    "RuleScope",
    "Task",
    "TaskExecutionError",
    "TaskStatus",
    "TransitionRecord",
    "UnweightedCategoryWarning",
    "WorkflowDefinitionError",
    "WorkflowState",
]

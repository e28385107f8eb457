"""
policy-orchestrator — control plane public API.

File: src/policy_orchestrator/control_plane/__init__.py

Purpose
- Gating decisions, workflow definitions, task execution and the phase state
  machine that ties the other planes together.
"""

from policy_orchestrator.control_plane.action_classifier import (
    RULE_AUTO_PROCEED,
    RULE_CLARIFY,
    RULE_CONFIRM,
    ActionClassifier,
    ClassifierPolicy,
    classify,
    normalize_category,
)
from policy_orchestrator.control_plane.definition import (
    WorkflowDefinition,
    load_workflow_definition,
    parse_workflow_definition,
)
from policy_orchestrator.control_plane.task_executor import (
    CommandTaskExecutor,
    NoopTaskExecutor,
    TaskExecutor,
)
from policy_orchestrator.control_plane.workflow_engine import (
    ACTIVE_STATES,
    ALLOWED_TRANSITIONS,
    WorkflowEngine,
    WorkflowSnapshot,
)

__all__ = [
    "ACTIVE_STATES",
    "ALLOWED_TRANSITIONS",
    "RULE_AUTO_PROCEED",
    "RULE_CLARIFY",
    "RULE_CONFIRM",
    "ActionClassifier",
    "ClassifierPolicy",
    "CommandTaskExecutor",
    "NoopTaskExecutor",
    "TaskExecutor",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowSnapshot",
    "classify",
    "load_workflow_definition",
    "normalize_category",
    "parse_workflow_definition",
]

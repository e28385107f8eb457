"""
policy-orchestrator — verification plane public API.

File: src/policy_orchestrator/verification_plane/__init__.py

Purpose
- Export the check runner, the bounded check pipeline and the report
  aggregator used by the workflow engine during VERIFICATION.
"""

from policy_orchestrator.verification_plane.check_runner import (
    TIMEOUT_MESSAGE,
    TRANSIENT_ERRNOS,
    CheckRunner,
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    expand_command,
    uses_targets,
)
from policy_orchestrator.verification_plane.pipeline import (
    PlannedCheck,
    VerificationPipeline,
    VerificationPlan,
    bind_policy_defaults,
    plan_checks,
)
from policy_orchestrator.verification_plane.report import ReportAggregator, fingerprint

__all__ = [
    "TIMEOUT_MESSAGE",
    "TRANSIENT_ERRNOS",
    "CheckRunner",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "PlannedCheck",
    "ReportAggregator",
    "VerificationPipeline",
    "VerificationPlan",
    "bind_policy_defaults",
    "expand_command",
    "fingerprint",
    "plan_checks",
    "uses_targets",
]

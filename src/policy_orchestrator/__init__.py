"""
policy-orchestrator — package root

File: src/policy_orchestrator/__init__.py

Purpose
- Policy-driven workflow orchestrator: layered rule documents drive verification
  checks, a weighted readiness score, and an approval-gated workflow state machine.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

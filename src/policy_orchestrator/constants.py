"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
WORKFLOW_STORE_SCHEMA_VERSION: Final[int] = 1
HEALTH_REPORT_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
RULES_DIR: Final[PurePosixPath] = PurePosixPath("rules")
STATE_DB_PATH: Final[PurePosixPath] = PurePosixPath("state/workflows.sqlite")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Rule scope precedence ranks; higher rank wins on conflicting directives.
SCOPE_PRECEDENCE: Final[dict[str, int]] = {
    "universal": 1,
    "language": 2,
    "framework": 3,
    "project": 4,
}

# Default category weights for the readiness score (sum = 100).
DEFAULT_CATEGORY_WEIGHTS: Final[dict[str, int]] = {
    "syntax": 15,
    "tests": 25,
    "security": 20,
    "dependencies": 15,
    "lint": 10,
    "documentation": 5,
    "git_hygiene": 10,
}

DEFAULT_VERIFICATION_THRESHOLD: Final[float] = 80.0
DEFAULT_AUTO_PROCEED_MAX_FILES: Final[int] = 10
DEFAULT_CHECK_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_CHECK_RETRIES: Final[int] = 0
DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000

# Process exit codes for ``porch run``.
EXIT_COMPLETE: Final[int] = 0
EXIT_BLOCKED: Final[int] = 1
EXIT_INTERNAL_ERROR: Final[int] = 2

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_AUTO_PROCEED_MAX_FILES",
    "DEFAULT_CATEGORY_WEIGHTS",
    "DEFAULT_CHECK_RETRIES",
    "DEFAULT_CHECK_TIMEOUT_SECONDS",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "DEFAULT_VERIFICATION_THRESHOLD",
    "EXIT_BLOCKED",
    "EXIT_COMPLETE",
    "EXIT_INTERNAL_ERROR",
    "HEALTH_REPORT_SCHEMA_VERSION",
    "LOG_DIR",
    "RULES_DIR",
    "SCOPE_PRECEDENCE",
    "STATE_DB_PATH",
    "WORKFLOW_STORE_SCHEMA_VERSION",
]

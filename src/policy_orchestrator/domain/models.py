"""
policy-orchestrator — canonical domain models

File: src/policy_orchestrator/domain/models.py

Purpose
- Typed, validated domain entities shared across planes: rule documents, check
  specs/results, health reports, tasks, action requests, approval signals.

Functional requirements
- Domain objects must be immutable once constructed and JSON-serializable.
- Validation failures raise ``ValueError`` with a dotted field path.

Non-functional requirements
- Keep the domain layer free of IO side effects.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePosixPath
from typing import NoReturn, TypeVar

from policy_orchestrator.constants import HEALTH_REPORT_SCHEMA_VERSION, SCOPE_PRECEDENCE

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
WILDCARD = "*"


class RuleScope(StrEnum):
    UNIVERSAL = "universal"
    LANGUAGE = "language"
    FRAMEWORK = "framework"
    PROJECT = "project"

    @property
    def precedence(self) -> int:
        return SCOPE_PRECEDENCE[self.value]


class CheckKind(StrEnum):
    SYNTAX = "syntax"
    LINT = "lint"
    TEST = "test"
    SECURITY = "security"
    DEPENDENCY = "dependency"
    CUSTOM = "custom"


DEFAULT_KIND_CATEGORIES: dict[CheckKind, str] = {
    CheckKind.SYNTAX: "syntax",
    CheckKind.LINT: "lint",
    CheckKind.TEST: "tests",
    CheckKind.SECURITY: "security",
    CheckKind.DEPENDENCY: "dependencies",
    CheckKind.CUSTOM: "custom",
}


class CheckStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class GateDecision(StrEnum):
    AUTO_PROCEED = "auto_proceed"
    NEEDS_CONFIRMATION = "needs_confirmation"


class RiskLevel(StrEnum):
    LOW = "low"
    HIGH = "high"
    UNKNOWN = "unknown"


class WorkflowState(StrEnum):
    PLANNING = "planning"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkflowState.COMPLETE, WorkflowState.CANCELLED}


class BlockReason(StrEnum):
    UNAPPROVED_TASK = "unapproved_task"
    EXECUTION_ERROR = "execution_error"
    FAILED_VERIFICATION = "failed_verification"
    REJECTED = "rejected"
    INTERNAL_ERROR = "internal_error"


class ApprovalDecision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    CLARIFY = "clarify"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleContext:
    """What a task touches: file extensions, detected frameworks, project name."""

    extensions: frozenset[str] = frozenset()
    frameworks: frozenset[str] = frozenset()
    project: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "extensions", frozenset(_normalize_extension(item) for item in self.extensions)
        )
        object.__setattr__(
            self, "frameworks", frozenset(item.strip().lower() for item in self.frameworks)
        )
        if self.project is not None:
            object.__setattr__(self, "project", _as_str(self.project, "RuleContext.project"))

    @classmethod
    def from_paths(
        cls,
        paths: Iterable[str],
        *,
        frameworks: Iterable[str] = (),
        project: str | None = None,
    ) -> RuleContext:
        extensions = {extension_of(path) for path in paths}
        extensions.discard("")
        return cls(
            extensions=frozenset(extensions), frameworks=frozenset(frameworks), project=project
        )


@dataclass(frozen=True, slots=True)
class Applicability:
    """Applicability predicate of a rule document.

    A document applies when any listed extension, framework, or project matches
    the context. ``*`` in any list matches every context.
    """

    extensions: tuple[str, ...] = ()
    frameworks: tuple[str, ...] = ()
    projects: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "extensions",
            _unique_sorted(
                item if item == WILDCARD else _normalize_extension(item) for item in self.extensions
            ),
        )
        object.__setattr__(
            self, "frameworks", _unique_sorted(item.strip().lower() for item in self.frameworks)
        )
        object.__setattr__(self, "projects", _unique_sorted(item.strip() for item in self.projects))

    @property
    def is_empty(self) -> bool:
        return not (self.extensions or self.frameworks or self.projects)

    @property
    def matches_all(self) -> bool:
        return any(
            WILDCARD in values for values in (self.extensions, self.frameworks, self.projects)
        )

    def matches(self, context: RuleContext) -> bool:
        if self.matches_all:
            return True
        if context.extensions.intersection(self.extensions):
            return True
        if context.frameworks.intersection(self.frameworks):
            return True
        return context.project is not None and context.project in self.projects

    def overlaps(self, other: Applicability) -> bool:
        """Return whether some context could match both predicates."""

        if self.matches_all or other.matches_all:
            return True
        return bool(
            set(self.extensions) & set(other.extensions)
            or set(self.frameworks) & set(other.frameworks)
            or set(self.projects) & set(other.projects)
        )

    @classmethod
    def from_mapping(cls, payload: object, path: str = "applies_to") -> Applicability:
        if isinstance(payload, str):
            if payload.strip() != WILDCARD:
                _fail(path, "string form only accepts '*'")
            return cls(extensions=(WILDCARD,))
        parsed = _expect_object(
            payload, path, required=set(), optional={"extensions", "frameworks", "projects"}
        )
        return cls(
            extensions=_as_str_tuple(parsed.get("extensions", ()), f"{path}.extensions"),
            frameworks=_as_str_tuple(parsed.get("frameworks", ()), f"{path}.frameworks"),
            projects=_as_str_tuple(parsed.get("projects", ()), f"{path}.projects"),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "extensions": list(self.extensions),
            "frameworks": list(self.frameworks),
            "projects": list(self.projects),
        }


@dataclass(frozen=True, slots=True)
class CheckSpec:
    """Declaration of one external verification command."""

    name: str
    kind: CheckKind
    command: tuple[str, ...]
    category: str = ""
    expected_exit_code: int = 0
    timeout_seconds: float | None = None
    retryable: bool = False
    retries: int | None = None
    severity: str = "error"

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "CheckSpec.name", max_len=128))
        kind = _as_enum(CheckKind, self.kind, "CheckSpec.kind")
        object.__setattr__(self, "kind", kind)
        command = _as_str_tuple(self.command, "CheckSpec.command")
        if not command:
            _fail("CheckSpec.command", "must not be empty")
        object.__setattr__(self, "command", command)
        category = self.category.strip() if isinstance(self.category, str) else ""
        object.__setattr__(self, "category", category or DEFAULT_KIND_CATEGORIES[kind])
        object.__setattr__(
            self,
            "expected_exit_code",
            _as_int(self.expected_exit_code, "CheckSpec.expected_exit_code"),
        )
        if self.timeout_seconds is not None:
            object.__setattr__(
                self,
                "timeout_seconds",
                _as_positive_float(self.timeout_seconds, "CheckSpec.timeout_seconds"),
            )
        object.__setattr__(self, "retryable", _as_bool(self.retryable, "CheckSpec.retryable"))
        if self.retries is not None:
            object.__setattr__(
                self, "retries", _as_int(self.retries, "CheckSpec.retries", minimum=0)
            )
        object.__setattr__(
            self, "severity", _as_str(self.severity, "CheckSpec.severity", max_len=32)
        )

    @classmethod
    def from_mapping(cls, payload: object, path: str = "CheckSpec") -> CheckSpec:
        parsed = _expect_object(
            payload,
            path,
            required={"name", "kind", "command"},
            optional={
                "category",
                "expected_exit_code",
                "timeout",
                "timeout_seconds",
                "retryable",
                "retries",
                "severity",
            },
        )
        raw_command = parsed["command"]
        command: tuple[str, ...]
        if isinstance(raw_command, str):
            command = (raw_command,)
        else:
            command = _as_str_tuple(raw_command, f"{path}.command")
        timeout = parsed.get("timeout_seconds", parsed.get("timeout"))
        try:
            return cls(
                name=_as_str(parsed["name"], f"{path}.name"),
                kind=_as_enum(CheckKind, parsed["kind"], f"{path}.kind"),
                command=command,
                category=_as_optional_str(parsed.get("category"), f"{path}.category") or "",
                expected_exit_code=_as_int(
                    parsed.get("expected_exit_code", 0), f"{path}.expected_exit_code"
                ),
                timeout_seconds=(
                    _as_positive_float(timeout, f"{path}.timeout") if timeout is not None else None
                ),
                retryable=_as_bool(parsed.get("retryable", False), f"{path}.retryable"),
                retries=(
                    _as_int(parsed["retries"], f"{path}.retries", minimum=0)
                    if parsed.get("retries") is not None
                    else None
                ),
                severity=_as_str(parsed.get("severity", "error"), f"{path}.severity"),
            )
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "category": self.category,
            "command": list(self.command),
            "expected_exit_code": self.expected_exit_code,
            "timeout_seconds": self.timeout_seconds,
            "retryable": self.retryable,
            "retries": self.retries,
            "severity": self.severity,
        }


@dataclass(frozen=True, slots=True)
class RuleDocument:
    """One unit of policy: scope, applicability predicate, directives, checks.

    ``directives`` preserves declaration order. ``body`` is opaque prose for
    humans and is never interpreted.
    """

    id: str
    scope: RuleScope
    applicability: Applicability
    directives: tuple[tuple[str, JSONValue], ...] = ()
    checks: tuple[CheckSpec, ...] = ()
    body: str = ""
    source_path: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "RuleDocument.id", max_len=256))
        object.__setattr__(self, "scope", _as_enum(RuleScope, self.scope, "RuleDocument.scope"))
        if not isinstance(self.applicability, Applicability):
            _fail("RuleDocument.applicability", "must be an Applicability instance")
        directives: list[tuple[str, JSONValue]] = []
        seen: set[str] = set()
        for index, item in enumerate(self.directives):
            key, value = item
            key = _as_str(key, f"RuleDocument.directives[{index}].key", max_len=256)
            if key in seen:
                _fail("RuleDocument.directives", f"duplicate directive key {key!r}")
            seen.add(key)
            directives.append((key, _as_json_value(value, f"RuleDocument.directives.{key}")))
        object.__setattr__(self, "directives", tuple(directives))
        checks = tuple(self.checks)
        names = [check.name for check in checks]
        if len(names) != len(set(names)):
            _fail("RuleDocument.checks", "check names must be unique within a document")
        object.__setattr__(self, "checks", checks)

    @property
    def precedence(self) -> int:
        return self.scope.precedence

    @property
    def directive_keys(self) -> tuple[str, ...]:
        return tuple(key for key, _ in self.directives)

    def directive_map(self) -> dict[str, JSONValue]:
        return dict(self.directives)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "scope": self.scope.value,
            "precedence": self.precedence,
            "applies_to": self.applicability.to_dict(),
            "directives": {key: value for key, value in self.directives},
            "checks": [check.to_dict() for check in self.checks],
            "source_path": self.source_path,
        }


# ---------------------------------------------------------------------------
# Check outcomes and reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CheckResult:
    """Normalized outcome of one CheckSpec run."""

    name: str
    kind: CheckKind
    category: str
    status: CheckStatus
    duration_ms: int = 0
    message: str = ""
    severity: str = "error"
    targets: tuple[str, ...] = ()
    attempts: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "CheckResult.name", max_len=128))
        object.__setattr__(self, "kind", _as_enum(CheckKind, self.kind, "CheckResult.kind"))
        object.__setattr__(self, "category", _as_str(self.category, "CheckResult.category"))
        object.__setattr__(
            self, "status", _as_enum(CheckStatus, self.status, "CheckResult.status")
        )
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "CheckResult.duration_ms", minimum=0)
        )
        if not isinstance(self.message, str):
            _fail("CheckResult.message", f"expected string, got {type(self.message).__name__}")
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(
            self, "attempts", _as_int(self.attempts, "CheckResult.attempts", minimum=0)
        )

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASS

    @property
    def could_not_run(self) -> bool:
        return self.status is CheckStatus.ERROR

    def sort_key(self) -> tuple[str, str, str]:
        return (self.category, self.name, ",".join(self.targets))

    def to_dict(self, *, include_volatile: bool = True) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "name": self.name,
            "kind": self.kind.value,
            "category": self.category,
            "status": self.status.value,
            "message": self.message,
            "severity": self.severity,
            "targets": list(self.targets),
        }
        if include_volatile:
            payload["duration_ms"] = self.duration_ms
            payload["attempts"] = self.attempts
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> CheckResult:
        return cls(
            name=_as_str(payload.get("name"), "CheckResult.name"),
            kind=_as_enum(CheckKind, payload.get("kind"), "CheckResult.kind"),
            category=_as_str(payload.get("category"), "CheckResult.category"),
            status=_as_enum(CheckStatus, payload.get("status"), "CheckResult.status"),
            duration_ms=_as_int(payload.get("duration_ms", 0), "CheckResult.duration_ms"),
            message=str(payload.get("message", "")),
            severity=str(payload.get("severity", "error")),
            targets=_as_str_tuple(payload.get("targets", ()), "CheckResult.targets"),
            attempts=_as_int(payload.get("attempts", 1), "CheckResult.attempts"),
        )


@dataclass(frozen=True, slots=True)
class CategoryScore:
    category: str
    weight: float
    passed: int
    total: int
    errors: int = 0

    @property
    def evaluated(self) -> bool:
        return self.total > 0 and self.weight > 0

    @property
    def score(self) -> float:
        if not self.evaluated:
            return 0.0
        return self.weight * (self.passed / self.total)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "category": self.category,
            "weight": self.weight,
            "passed": self.passed,
            "total": self.total,
            "errors": self.errors,
            "evaluated": self.evaluated,
            "score": round(self.score, 4),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> CategoryScore:
        return cls(
            category=_as_str(payload.get("category"), "CategoryScore.category"),
            weight=float(_as_number(payload.get("weight"), "CategoryScore.weight")),
            passed=_as_int(payload.get("passed"), "CategoryScore.passed", minimum=0),
            total=_as_int(payload.get("total"), "CategoryScore.total", minimum=0),
            errors=_as_int(payload.get("errors", 0), "CategoryScore.errors", minimum=0),
        )


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Aggregated, weighted outcome of one verification phase. Read-only."""

    category_scores: tuple[CategoryScore, ...]
    total: float
    results: tuple[CheckResult, ...]
    timestamp: datetime
    no_checks_run: bool = False

    def __post_init__(self) -> None:
        if not math.isfinite(self.total) or not 0.0 <= self.total <= 100.0:
            _fail("HealthReport.total", f"must be within [0, 100], got {self.total!r}")
        object.__setattr__(
            self,
            "category_scores",
            tuple(sorted(self.category_scores, key=lambda item: item.category)),
        )
        object.__setattr__(
            self, "results", tuple(sorted(self.results, key=lambda item: item.sort_key()))
        )
        if self.timestamp.tzinfo is None:
            _fail("HealthReport.timestamp", "must be timezone-aware")

    @property
    def error_results(self) -> tuple[CheckResult, ...]:
        """Checks that could not run, listed apart from checks that found problems."""

        return tuple(result for result in self.results if result.could_not_run)

    @property
    def failed_results(self) -> tuple[CheckResult, ...]:
        return tuple(result for result in self.results if result.status is CheckStatus.FAIL)

    def score_for(self, category: str) -> CategoryScore | None:
        for item in self.category_scores:
            if item.category == category:
                return item
        return None

    def to_dict(self, *, include_volatile: bool = True) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "schema_version": HEALTH_REPORT_SCHEMA_VERSION,
            "total": round(self.total, 4),
            "no_checks_run": self.no_checks_run,
            "categories": [item.to_dict() for item in self.category_scores],
            "results": [item.to_dict(include_volatile=include_volatile) for item in self.results],
            "errors": [item.name for item in self.error_results],
        }
        if include_volatile:
            payload["timestamp"] = _datetime_to_iso8601z(self.timestamp)
        return payload

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> HealthReport:
        categories = payload.get("categories", [])
        results = payload.get("results", [])
        if not isinstance(categories, list) or not isinstance(results, list):
            _fail("HealthReport", "categories and results must be arrays")
        return cls(
            category_scores=tuple(CategoryScore.from_dict(item) for item in categories),
            total=float(_as_number(payload.get("total"), "HealthReport.total")),
            results=tuple(CheckResult.from_dict(item) for item in results),
            timestamp=_as_datetime(payload.get("timestamp"), "HealthReport.timestamp"),
            no_checks_run=_as_bool(
                payload.get("no_checks_run", False), "HealthReport.no_checks_run"
            ),
        )


# ---------------------------------------------------------------------------
# Tasks, actions, approvals
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ActionRequest:
    """Pending change description consumed once by the action classifier."""

    description: str
    affected_file_count: int
    category: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "description", _as_str(self.description, "ActionRequest.description")
        )
        object.__setattr__(
            self,
            "affected_file_count",
            _as_int(self.affected_file_count, "ActionRequest.affected_file_count", minimum=0),
        )
        if not isinstance(self.category, str):
            _fail("ActionRequest.category", f"expected string, got {type(self.category).__name__}")


@dataclass(frozen=True, slots=True)
class Recommendation:
    approach: str
    pros: tuple[str, ...] = ()
    cons: tuple[str, ...] = ()
    recommended: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "approach": self.approach,
            "pros": list(self.pros),
            "cons": list(self.cons),
            "recommended": self.recommended,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> Recommendation:
        return cls(
            approach=_as_str(payload.get("approach"), "Recommendation.approach"),
            pros=_as_str_tuple(payload.get("pros", ()), "Recommendation.pros"),
            cons=_as_str_tuple(payload.get("cons", ()), "Recommendation.cons"),
            recommended=_as_bool(payload.get("recommended", False), "Recommendation.recommended"),
        )


@dataclass(frozen=True, slots=True)
class RecommendationSet:
    """Ordered alternatives; at least two, exactly one marked recommended."""

    options: tuple[Recommendation, ...]

    def __post_init__(self) -> None:
        options = tuple(self.options)
        if len(options) < 2:
            _fail("RecommendationSet.options", "must contain at least 2 approaches")
        recommended = [item for item in options if item.recommended]
        if len(recommended) != 1:
            _fail(
                "RecommendationSet.options",
                f"exactly one approach must be recommended, got {len(recommended)}",
            )
        object.__setattr__(self, "options", options)

    @property
    def recommended(self) -> Recommendation:
        return next(item for item in self.options if item.recommended)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"options": [item.to_dict() for item in self.options]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> RecommendationSet:
        options = payload.get("options", [])
        if not isinstance(options, list):
            _fail("RecommendationSet.options", "expected array")
        return cls(options=tuple(Recommendation.from_dict(item) for item in options))


@dataclass(frozen=True, slots=True)
class Classification:
    """Gating decision for one ActionRequest."""

    decision: GateDecision
    rule: str
    reason: str
    risk: RiskLevel
    recommendations: RecommendationSet | None = None
    question: str | None = None

    @property
    def auto_proceed(self) -> bool:
        return self.decision is GateDecision.AUTO_PROCEED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "decision": self.decision.value,
            "rule": self.rule,
            "reason": self.reason,
            "risk": self.risk.value,
            "recommendations": (
                self.recommendations.to_dict() if self.recommendations is not None else None
            ),
            "question": self.question,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> Classification:
        recommendations = payload.get("recommendations")
        return cls(
            decision=_as_enum(GateDecision, payload.get("decision"), "Classification.decision"),
            rule=_as_str(payload.get("rule"), "Classification.rule"),
            reason=_as_str(payload.get("reason"), "Classification.reason"),
            risk=_as_enum(RiskLevel, payload.get("risk"), "Classification.risk"),
            recommendations=(
                RecommendationSet.from_dict(recommendations)
                if isinstance(recommendations, Mapping)
                else None
            ),
            question=_as_optional_str(payload.get("question"), "Classification.question"),
        )


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of planned work. Only the workflow engine produces new versions."""

    id: str
    description: str
    category: str
    files: tuple[str, ...] = ()
    affected_file_count: int | None = None
    command: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    approved: bool = False
    classification: Classification | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Task.id", max_len=128))
        object.__setattr__(self, "description", _as_str(self.description, "Task.description"))
        if not isinstance(self.category, str):
            _fail("Task.category", f"expected string, got {type(self.category).__name__}")
        object.__setattr__(
            self,
            "files",
            tuple(_as_relative_path(item, f"Task.files[{i}]") for i, item in enumerate(self.files)),
        )
        if self.affected_file_count is not None:
            object.__setattr__(
                self,
                "affected_file_count",
                _as_int(self.affected_file_count, "Task.affected_file_count", minimum=0),
            )
        object.__setattr__(self, "command", _as_str_tuple(self.command, "Task.command"))
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "Task.status"))

    @property
    def file_count(self) -> int:
        if self.affected_file_count is not None:
            return self.affected_file_count
        return len(self.files)

    @property
    def risk(self) -> RiskLevel:
        if self.classification is None:
            return RiskLevel.UNKNOWN
        return self.classification.risk

    def to_action_request(self) -> ActionRequest:
        return ActionRequest(
            description=self.description,
            affected_file_count=self.file_count,
            category=self.category,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "category": self.category,
            "files": list(self.files),
            "affected_file_count": self.affected_file_count,
            "command": list(self.command),
            "status": self.status.value,
            "approved": self.approved,
            "risk": self.risk.value,
            "classification": (
                self.classification.to_dict() if self.classification is not None else None
            ),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> Task:
        classification = payload.get("classification")
        count = payload.get("affected_file_count")
        return cls(
            id=_as_str(payload.get("id"), "Task.id"),
            description=_as_str(payload.get("description"), "Task.description"),
            category=str(payload.get("category", "")),
            files=_as_str_tuple(payload.get("files", ()), "Task.files"),
            affected_file_count=(
                _as_int(count, "Task.affected_file_count") if count is not None else None
            ),
            command=_as_str_tuple(payload.get("command", ()), "Task.command"),
            status=_as_enum(TaskStatus, payload.get("status", "pending"), "Task.status"),
            approved=_as_bool(payload.get("approved", False), "Task.approved"),
            classification=(
                Classification.from_dict(classification)
                if isinstance(classification, Mapping)
                else None
            ),
            error=_as_optional_str(payload.get("error"), "Task.error"),
        )


@dataclass(frozen=True, slots=True)
class ApprovalSignal:
    """External input that unblocks (or keeps blocked) a workflow run."""

    workflow_id: str
    decision: ApprovalDecision
    note: str = ""
    task_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "workflow_id", _as_str(self.workflow_id, "ApprovalSignal.workflow_id")
        )
        object.__setattr__(
            self, "decision", _as_enum(ApprovalDecision, self.decision, "ApprovalSignal.decision")
        )
        if self.task_id is not None:
            object.__setattr__(self, "task_id", _as_str(self.task_id, "ApprovalSignal.task_id"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "workflow_id": self.workflow_id,
            "decision": self.decision.value,
            "note": self.note,
            "task_id": self.task_id,
        }


@dataclass(frozen=True, slots=True)
class BlockInfo:
    """Why a workflow is blocked, with remediation data where applicable."""

    reason: BlockReason
    message: str
    resume_state: WorkflowState
    task_ids: tuple[str, ...] = ()
    recommendations: tuple[tuple[str, RecommendationSet], ...] = ()
    questions: tuple[tuple[str, str], ...] = ()
    health_report: HealthReport | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "reason", _as_enum(BlockReason, self.reason, "BlockInfo.reason"))
        object.__setattr__(self, "message", _as_str(self.message, "BlockInfo.message"))
        object.__setattr__(
            self,
            "resume_state",
            _as_enum(WorkflowState, self.resume_state, "BlockInfo.resume_state"),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "resume_state": self.resume_state.value,
            "task_ids": list(self.task_ids),
            "recommendations": {task_id: rs.to_dict() for task_id, rs in self.recommendations},
            "questions": {task_id: question for task_id, question in self.questions},
            "health_report": (
                self.health_report.to_dict() if self.health_report is not None else None
            ),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> BlockInfo:
        recommendations = payload.get("recommendations") or {}
        questions = payload.get("questions") or {}
        report = payload.get("health_report")
        if not isinstance(recommendations, Mapping) or not isinstance(questions, Mapping):
            _fail("BlockInfo", "recommendations and questions must be objects")
        return cls(
            reason=_as_enum(BlockReason, payload.get("reason"), "BlockInfo.reason"),
            message=_as_str(payload.get("message"), "BlockInfo.message"),
            resume_state=_as_enum(
                WorkflowState, payload.get("resume_state"), "BlockInfo.resume_state"
            ),
            task_ids=_as_str_tuple(payload.get("task_ids", ()), "BlockInfo.task_ids"),
            recommendations=tuple(
                (str(key), RecommendationSet.from_dict(value))
                for key, value in recommendations.items()
            ),
            questions=tuple((str(key), str(value)) for key, value in questions.items()),
            health_report=HealthReport.from_dict(report) if isinstance(report, Mapping) else None,
            error=_as_optional_str(payload.get("error"), "BlockInfo.error"),
        )


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    source: WorkflowState
    target: WorkflowState
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source.value,
            "target": self.target.value,
            "reason": self.reason,
            "at": _datetime_to_iso8601z(self.at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> TransitionRecord:
        return cls(
            source=_as_enum(WorkflowState, payload.get("source"), "TransitionRecord.source"),
            target=_as_enum(WorkflowState, payload.get("target"), "TransitionRecord.target"),
            reason=str(payload.get("reason", "")),
            at=_as_datetime(payload.get("at"), "TransitionRecord.at"),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def extension_of(path: str) -> str:
    """Return the lowercase extension (with dot) of ``path``; ``""`` when none."""

    suffix = PurePosixPath(path.replace("\\", "/")).suffix
    return suffix.lower()


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _normalize_extension(value: str) -> str:
    if not isinstance(value, str):
        _fail("extension", f"expected string, got {type(value).__name__}")
    parsed = value.strip().lower()
    if not parsed:
        _fail("extension", "must not be empty")
    if not parsed.startswith("."):
        parsed = f".{parsed}"
    return parsed


def _unique_sorted(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({item for item in values if item}))


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str],
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object key must be string, got {type(key).__name__}")
        out[key] = item
    unknown = sorted(key for key in out if key not in required and key not in optional)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in out)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return out


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        _fail(path, "must not be empty")
    if len(parsed) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return parsed


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_positive_float(value: object, path: str) -> float:
    parsed = _as_number(value, path)
    if parsed <= 0.0:
        _fail(path, "must be > 0")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected {enum_type.__name__} or string, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray)):
        _fail(path, f"expected array of strings, got {type(value).__name__}")
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _as_relative_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=4096).replace("\\", "/")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            _fail(path, f"invalid ISO-8601 datetime {value!r}")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None:
        _fail(path, "datetime must be timezone-aware")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [
            _as_json_value(item, f"{path}[{i}]", depth=depth + 1) for i, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "ActionRequest",
    "Applicability",
    "ApprovalDecision",
    "ApprovalSignal",
    "BlockInfo",
    "BlockReason",
    "CategoryScore",
    "CheckKind",
    "CheckResult",
    "CheckSpec",
    "CheckStatus",
    "Classification",
    "DEFAULT_KIND_CATEGORIES",
    "GateDecision",
    "HealthReport",
    "JSONScalar",
    "JSONValue",
    "Recommendation",
    "RecommendationSet",
    "RiskLevel",
    "RuleContext",
    "RuleDocument",
    "RuleScope",
    "Task",
    "TaskStatus",
    "TransitionRecord",
    "WILDCARD",
    "WorkflowState",
    "canonical_json",
    "extension_of",
    "utc_now",
]

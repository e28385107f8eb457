"""
policy-orchestrator — workflow engine

File: src/policy_orchestrator/control_plane/workflow_engine.py

Purpose
- Drive one workflow run through PLANNING -> EXECUTION -> VERIFICATION ->
  COMPLETE, halting in BLOCKED whenever a task needs confirmation, a task
  fails, or the readiness score misses the threshold.

State machine
- BLOCKED is reachable from the three active states and waits indefinitely
  for an ``ApprovalSignal``; there is no approval timeout.
- CANCELLED is reachable from every non-terminal state.
- Every transition is validated against ``ALLOWED_TRANSITIONS`` and appended
  to an ordered history.

Ownership
- The engine is the only writer of task status and of the health report.
  Tasks are immutable values; the engine replaces them on every change.
- One engine instance drives one workflow run. ``snapshot`` and ``restore``
  carry the run across process boundaries.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final, TypeVar

from policy_orchestrator.constants import WORKFLOW_STORE_SCHEMA_VERSION
from policy_orchestrator.control_plane.action_classifier import ActionClassifier
from policy_orchestrator.control_plane.definition import WorkflowDefinition
from policy_orchestrator.control_plane.task_executor import CommandTaskExecutor, TaskExecutor
from policy_orchestrator.domain.errors import (
    ApprovalTimeoutNotApplicable,
    InvalidTransitionError,
    OrchestratorError,
    TaskExecutionError,
)
from policy_orchestrator.domain.ids import generate_workflow_id, validate_workflow_id
from policy_orchestrator.domain.models import (
    ApprovalDecision,
    ApprovalSignal,
    BlockInfo,
    BlockReason,
    HealthReport,
    JSONValue,
    RuleContext,
    Task,
    TaskStatus,
    TransitionRecord,
    WorkflowState,
    utc_now,
)
from policy_orchestrator.knowledge_plane.rule_resolver import FilePolicyGroup, RuleResolver
from policy_orchestrator.observability.logging import correlation_scope, get_decision_logger
from policy_orchestrator.utils.concurrency import CancellationToken
from policy_orchestrator.verification_plane.check_runner import CheckRunner
from policy_orchestrator.verification_plane.pipeline import VerificationPipeline, plan_checks
from policy_orchestrator.verification_plane.report import ReportAggregator, fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: Final[Mapping[WorkflowState, frozenset[WorkflowState]]] = {
    WorkflowState.PLANNING: frozenset(
        {WorkflowState.EXECUTION, WorkflowState.BLOCKED, WorkflowState.CANCELLED}
    ),
    WorkflowState.EXECUTION: frozenset(
        {WorkflowState.VERIFICATION, WorkflowState.BLOCKED, WorkflowState.CANCELLED}
    ),
    WorkflowState.VERIFICATION: frozenset(
        {WorkflowState.COMPLETE, WorkflowState.BLOCKED, WorkflowState.CANCELLED}
    ),
    WorkflowState.BLOCKED: frozenset(
        {
            WorkflowState.PLANNING,
            WorkflowState.EXECUTION,
            WorkflowState.VERIFICATION,
            WorkflowState.COMPLETE,
            WorkflowState.CANCELLED,
        }
    ),
    WorkflowState.COMPLETE: frozenset(),
    WorkflowState.CANCELLED: frozenset(),
}

ACTIVE_STATES: Final[frozenset[WorkflowState]] = frozenset(
    {WorkflowState.PLANNING, WorkflowState.EXECUTION, WorkflowState.VERIFICATION}
)


@dataclass(frozen=True, slots=True)
class WorkflowSnapshot:
    """Persistable view of one workflow run."""

    workflow_id: str
    state: WorkflowState
    tasks: tuple[Task, ...]
    project: str | None = None
    frameworks: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    block: BlockInfo | None = None
    health_report: HealthReport | None = None
    history: tuple[TransitionRecord, ...] = ()
    signals: tuple[ApprovalSignal, ...] = ()
    override: str | None = None
    definition_digest: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": WORKFLOW_STORE_SCHEMA_VERSION,
            "workflow_id": self.workflow_id,
            "state": self.state.value,
            "project": self.project,
            "frameworks": list(self.frameworks),
            "files": list(self.files),
            "tasks": [task.to_dict() for task in self.tasks],
            "block": self.block.to_dict() if self.block is not None else None,
            "health_report": (
                self.health_report.to_dict() if self.health_report is not None else None
            ),
            "history": [record.to_dict() for record in self.history],
            "signals": [item.to_dict() for item in self.signals],
            "override": self.override,
            "definition_digest": self.definition_digest,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> WorkflowSnapshot:
        version = payload.get("schema_version")
        if version != WORKFLOW_STORE_SCHEMA_VERSION:
            raise ValueError(
                f"WorkflowSnapshot.schema_version: unsupported version {version!r}; "
                f"expected {WORKFLOW_STORE_SCHEMA_VERSION}"
            )
        block = payload.get("block")
        report = payload.get("health_report")
        return cls(
            workflow_id=validate_workflow_id(payload["workflow_id"]),
            state=WorkflowState(payload["state"]),
            tasks=tuple(Task.from_dict(item) for item in payload.get("tasks", [])),
            project=payload.get("project"),
            frameworks=tuple(payload.get("frameworks", [])),
            files=tuple(payload.get("files", [])),
            block=BlockInfo.from_dict(block) if isinstance(block, Mapping) else None,
            health_report=HealthReport.from_dict(report) if isinstance(report, Mapping) else None,
            history=tuple(TransitionRecord.from_dict(item) for item in payload.get("history", [])),
            signals=tuple(
                ApprovalSignal(
                    workflow_id=item["workflow_id"],
                    decision=ApprovalDecision(item["decision"]),
                    note=item.get("note", ""),
                    task_id=item.get("task_id"),
                )
                for item in payload.get("signals", [])
            ),
            override=payload.get("override"),
            definition_digest=payload.get("definition_digest"),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


class WorkflowEngine:
    """Phase state machine for one workflow run."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        *,
        resolver: RuleResolver | None = None,
        classifier: ActionClassifier | None = None,
        task_executor: TaskExecutor | None = None,
        runner_factory: Callable[[], CheckRunner] | None = None,
        workflow_id: str | None = None,
        logger: Any | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._workflow_id = validate_workflow_id(
            workflow_id or definition.workflow_id or generate_workflow_id()
        )
        self._definition = definition
        self._resolver = resolver if resolver is not None else RuleResolver()
        self._classifier = classifier if classifier is not None else ActionClassifier()
        self._task_executor = task_executor if task_executor is not None else CommandTaskExecutor()
        self._runner_factory = runner_factory if runner_factory is not None else CheckRunner
        self._logger = logger if logger is not None else get_decision_logger(__name__)
        self._clock = clock

        self._tasks: list[Task] = list(definition.tasks)
        self._state = WorkflowState.PLANNING
        self._block: BlockInfo | None = None
        self._health_report: HealthReport | None = None
        self._history: list[TransitionRecord] = []
        self._signals: list[ApprovalSignal] = []
        self._override: str | None = None
        self._created_at = clock()
        self._updated_at = self._created_at

        self._cancel_token = CancellationToken()
        self._cancel_reason = "cancelled"
        self._signalled = asyncio.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    @property
    def block(self) -> BlockInfo | None:
        return self._block

    @property
    def health_report(self) -> HealthReport | None:
        return self._health_report

    @property
    def history(self) -> tuple[TransitionRecord, ...]:
        return tuple(self._history)

    @property
    def touched_files(self) -> tuple[str, ...]:
        """Workflow-level files plus every task's files, deduplicated and sorted."""

        paths = set(self._definition.files)
        for task in self._tasks:
            paths.update(task.files)
        return tuple(sorted(paths))

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            workflow_id=self._workflow_id,
            state=self._state,
            tasks=tuple(self._tasks),
            project=self._definition.project,
            frameworks=self._definition.frameworks,
            files=self._definition.files,
            block=self._block,
            health_report=self._health_report,
            history=tuple(self._history),
            signals=tuple(self._signals),
            override=self._override,
            definition_digest=self._definition.digest,
            created_at=self._created_at,
            updated_at=self._updated_at,
        )

    @classmethod
    def restore(cls, snapshot: WorkflowSnapshot, **dependencies: Any) -> WorkflowEngine:
        """Rebuild an engine from ``snapshot``; ``dependencies`` go to ``__init__``."""

        definition = WorkflowDefinition(
            tasks=snapshot.tasks,
            workflow_id=snapshot.workflow_id,
            project=snapshot.project,
            frameworks=snapshot.frameworks,
            files=snapshot.files,
            digest=snapshot.definition_digest,
        )
        engine = cls(definition, workflow_id=snapshot.workflow_id, **dependencies)
        engine._state = snapshot.state
        engine._block = snapshot.block
        engine._health_report = snapshot.health_report
        engine._history = list(snapshot.history)
        engine._signals = list(snapshot.signals)
        engine._override = snapshot.override
        engine._created_at = snapshot.created_at
        engine._updated_at = snapshot.updated_at
        return engine

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    async def run(self) -> WorkflowSnapshot:
        """Advance until COMPLETE, BLOCKED or CANCELLED and return the snapshot."""

        if self._running:
            raise RuntimeError(f"workflow {self._workflow_id} is already running")
        self._running = True
        try:
            with correlation_scope(workflow_id=self._workflow_id):
                await self._drive()
        finally:
            self._running = False
        return self.snapshot()

    async def _drive(self) -> None:
        while self._state in ACTIVE_STATES:
            phase = self._state
            if self._cancel_token.is_cancelled:
                self._transition(WorkflowState.CANCELLED, self._cancel_reason)
                return
            try:
                with correlation_scope(phase=phase.value):
                    await self._run_phase(phase)
            except asyncio.CancelledError:
                if not self._state.is_terminal:
                    self._transition(WorkflowState.CANCELLED, self._cancel_reason)
                if self._cancel_token.is_cancelled:
                    return
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("unexpected failure during %s", phase.value)
                self._enter_block(
                    BlockInfo(
                        reason=BlockReason.INTERNAL_ERROR,
                        message=f"unexpected failure during {phase.value}: {exc}",
                        resume_state=phase,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )

    async def _run_phase(self, phase: WorkflowState) -> None:
        if phase is WorkflowState.PLANNING:
            await self._plan()
        elif phase is WorkflowState.EXECUTION:
            await self._execute()
        else:
            await self._verify()

    async def _plan(self) -> None:
        waiting: list[Task] = []
        for index, task in enumerate(self._tasks):
            if task.status is TaskStatus.DONE:
                continue
            policy = self._resolver.resolve_context(self._context_for(task.files))
            classifier_policy = self._classifier.policy.with_max_files(
                policy.auto_proceed_max_files
            )
            with correlation_scope(task_id=task.id):
                classification = self._classifier.classify(
                    task.to_action_request(), policy=classifier_policy
                )
            task = dataclasses.replace(task, classification=classification)
            self._tasks[index] = task
            if not task.approved and not classification.auto_proceed:
                waiting.append(task)

        if waiting:
            self._enter_block(
                BlockInfo(
                    reason=BlockReason.UNAPPROVED_TASK,
                    message=(
                        f"{len(waiting)} task(s) need confirmation: "
                        + ", ".join(task.id for task in waiting)
                    ),
                    resume_state=WorkflowState.PLANNING,
                    task_ids=tuple(task.id for task in waiting),
                    recommendations=tuple(
                        (task.id, task.classification.recommendations)
                        for task in waiting
                        if task.classification is not None
                        and task.classification.recommendations is not None
                    ),
                    questions=tuple(
                        (task.id, task.classification.question)
                        for task in waiting
                        if task.classification is not None
                        and task.classification.question is not None
                    ),
                )
            )
            return
        self._transition(WorkflowState.EXECUTION, "every task approved or auto-proceed")

    async def _execute(self) -> None:
        for index, task in enumerate(self._tasks):
            if task.status is TaskStatus.DONE:
                continue
            if not _may_execute(task):
                self._enter_block(
                    BlockInfo(
                        reason=BlockReason.UNAPPROVED_TASK,
                        message=f"task {task.id!r} is not approved",
                        resume_state=WorkflowState.PLANNING,
                        task_ids=(task.id,),
                    )
                )
                return

            task = dataclasses.replace(task, status=TaskStatus.IN_PROGRESS, error=None)
            self._set_task(index, task)
            with correlation_scope(task_id=task.id):
                try:
                    await self._cancellable(self._task_executor.execute(task))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    error = (
                        exc
                        if isinstance(exc, TaskExecutionError)
                        else TaskExecutionError(task.id, f"{type(exc).__name__}: {exc}")
                    )
                    self._set_task(
                        index,
                        dataclasses.replace(task, status=TaskStatus.BLOCKED, error=str(error)),
                    )
                    self._enter_block(
                        BlockInfo(
                            reason=BlockReason.EXECUTION_ERROR,
                            message=str(error),
                            resume_state=WorkflowState.EXECUTION,
                            task_ids=(task.id,),
                            error=str(error),
                        )
                    )
                    return
                self._set_task(index, dataclasses.replace(task, status=TaskStatus.DONE))
                logger.info("task done")
        self._transition(WorkflowState.VERIFICATION, "every task done")

    async def _verify(self) -> None:
        touched = self.touched_files
        policy = self._resolver.resolve_context(self._context_for(touched))
        if touched:
            groups = self._resolver.resolve_files(
                touched,
                frameworks=self._definition.frameworks,
                project=self._definition.project,
            )
        else:
            groups = [FilePolicyGroup(extension="", files=(), policy=policy)]

        plan = plan_checks(groups)
        pipeline = VerificationPipeline(self._runner_factory())
        results = await pipeline.run(plan, cancel_token=self._cancel_token)
        report = ReportAggregator(policy.weights, clock=self._clock).aggregate(results)
        self._health_report = report
        threshold = policy.verification_threshold

        self._logger.info(
            "verification_scored",
            total=round(report.total, 4),
            threshold=threshold,
            checks=len(results),
            could_not_run=len(report.error_results),
            no_checks_run=report.no_checks_run,
            fingerprint=fingerprint(report),
        )

        if report.no_checks_run:
            message = "no checks ran; readiness cannot be established"
        elif report.total < threshold:
            message = f"readiness score {report.total:.1f} is below threshold {threshold:.1f}"
        else:
            self._transition(
                WorkflowState.COMPLETE,
                f"readiness score {report.total:.1f} meets threshold {threshold:.1f}",
            )
            return
        self._enter_block(
            BlockInfo(
                reason=BlockReason.FAILED_VERIFICATION,
                message=message,
                resume_state=WorkflowState.VERIFICATION,
                health_report=report,
            )
        )

    # ------------------------------------------------------------------
    # External input
    # ------------------------------------------------------------------

    def signal(self, signal: ApprovalSignal) -> WorkflowSnapshot:
        """Apply an approval signal to a BLOCKED workflow; ``run`` resumes it."""

        if signal.workflow_id != self._workflow_id:
            raise ValueError(
                f"signal for workflow {signal.workflow_id!r} sent to {self._workflow_id!r}"
            )
        if self._state is not WorkflowState.BLOCKED or self._block is None:
            raise OrchestratorError(
                f"workflow {self._workflow_id} is {self._state.value}; "
                "only blocked workflows accept approval signals"
            )
        if signal.task_id is not None and signal.task_id not in {task.id for task in self._tasks}:
            raise ValueError(f"unknown task id {signal.task_id!r}")

        block = self._block
        self._signals.append(signal)
        self._logger.info(
            "approval_signal",
            workflow_id=self._workflow_id,
            decision=signal.decision.value,
            block_reason=block.reason.value,
            task_id=signal.task_id,
        )
        if signal.decision is ApprovalDecision.APPROVE:
            self._approve(block, signal)
        elif signal.decision is ApprovalDecision.REJECT:
            self._reject(block, signal)
        else:
            self._touch()
        self._signalled.set()
        return self.snapshot()

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the run; in-flight checks and task commands are terminated."""

        if self._state.is_terminal:
            return
        self._cancel_reason = reason
        self._cancel_token.cancel()
        if not self._running:
            self._transition(WorkflowState.CANCELLED, reason)
        self._signalled.set()

    async def wait_for_signal(self, *, timeout: float | None = None) -> WorkflowState:
        """Wait while BLOCKED until a signal or cancellation arrives."""

        if timeout is not None:
            raise ApprovalTimeoutNotApplicable(
                "approval waits are indefinite; a timeout cannot be applied"
            )
        if self._state is WorkflowState.BLOCKED:
            self._signalled.clear()
            await self._signalled.wait()
        return self._state

    def _approve(self, block: BlockInfo, signal: ApprovalSignal) -> None:
        targets = self._signal_targets(block, signal)
        if block.reason is BlockReason.INTERNAL_ERROR:
            self._transition(block.resume_state, "retry after internal error")
            return

        resume = block.resume_state
        if resume is WorkflowState.PLANNING:
            for task_id in targets:
                self._update_task(
                    task_id,
                    approved=True,
                    status=TaskStatus.PENDING,
                    error=None,
                    keep_done=True,
                )
            self._transition(WorkflowState.PLANNING, f"approved: {', '.join(targets) or 'all'}")
        elif resume is WorkflowState.EXECUTION:
            for task_id in targets:
                self._update_task(task_id, status=TaskStatus.PENDING, error=None, keep_done=True)
            self._transition(WorkflowState.EXECUTION, f"re-queued: {', '.join(targets)}")
        else:
            self._override = signal.note or "verification result accepted by approval"
            self._transition(WorkflowState.COMPLETE, "verification override")

    def _reject(self, block: BlockInfo, signal: ApprovalSignal) -> None:
        targets = self._signal_targets(block, signal)
        for task_id in targets:
            self._update_task(task_id, status=TaskStatus.BLOCKED, keep_done=True)
        message = "rejected" + (f": {signal.note}" if signal.note else "")
        self._block = dataclasses.replace(
            block,
            reason=BlockReason.REJECTED,
            message=message,
            task_ids=targets,
        )
        self._touch()
        self._logger.info(
            "workflow_rejected", workflow_id=self._workflow_id, task_ids=list(targets)
        )

    def _signal_targets(self, block: BlockInfo, signal: ApprovalSignal) -> tuple[str, ...]:
        if signal.task_id is not None:
            return (signal.task_id,)
        return block.task_ids

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _context_for(self, files: tuple[str, ...]) -> RuleContext:
        return RuleContext.from_paths(
            files,
            frameworks=self._definition.frameworks,
            project=self._definition.project,
        )

    def _set_task(self, index: int, task: Task) -> None:
        self._tasks[index] = task
        self._touch()

    def _update_task(self, task_id: str, *, keep_done: bool = False, **changes: Any) -> None:
        for index, task in enumerate(self._tasks):
            if task.id != task_id:
                continue
            if keep_done and task.status is TaskStatus.DONE:
                changes = {key: value for key, value in changes.items() if key != "status"}
            self._set_task(index, dataclasses.replace(task, **changes))
            return

    def _enter_block(self, block: BlockInfo) -> None:
        self._block = block
        self._transition(WorkflowState.BLOCKED, block.message)

    def _transition(self, target: WorkflowState, reason: str) -> None:
        source = self._state
        if target not in ALLOWED_TRANSITIONS[source]:
            raise InvalidTransitionError(source.value, target.value)
        record = TransitionRecord(source=source, target=target, reason=reason, at=self._clock())
        self._history.append(record)
        self._state = target
        if target is not WorkflowState.BLOCKED:
            self._block = None
        self._updated_at = record.at
        self._logger.info(
            "workflow_transition",
            workflow_id=self._workflow_id,
            source=source.value,
            target=target.value,
            reason=reason,
        )

    def _touch(self) -> None:
        self._updated_at = self._clock()

    async def _cancellable(self, awaitable: Awaitable[T]) -> T:
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._cancel_token.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work not in done:
                raise asyncio.CancelledError("workflow cancelled")
            return work.result()
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)


def _may_execute(task: Task) -> bool:
    if task.approved:
        return True
    return task.classification is not None and task.classification.auto_proceed


def _iso(value: datetime) -> str:
    return value.isoformat()


__all__ = [
    "ACTIVE_STATES",
    "ALLOWED_TRANSITIONS",
    "WorkflowEngine",
    "WorkflowSnapshot",
]

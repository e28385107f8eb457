"""Task executors used by the workflow engine during EXECUTION."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from policy_orchestrator.domain.errors import TaskExecutionError
from policy_orchestrator.domain.models import Task
from policy_orchestrator.verification_plane.check_runner import (
    CommandExecutor,
    CommandSpec,
    LocalSubprocessExecutor,
)

_STDERR_TAIL_CHARS = 2000


@runtime_checkable
class TaskExecutor(Protocol):
    """Perform one task's change. Any exception blocks the workflow."""

    async def execute(self, task: Task) -> None: ...


class NoopTaskExecutor:
    """Treat every task as already performed by the caller."""

    async def execute(self, task: Task) -> None:
        return None


class CommandTaskExecutor:
    """Run ``task.command`` as a subprocess; tasks without a command are no-ops.

    A non-zero exit, a spawn failure or a timeout raises ``TaskExecutionError``.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._cwd = cwd
        self._env = dict(env or {})
        self._timeout_seconds = timeout_seconds

    async def execute(self, task: Task) -> None:
        if not task.command:
            return
        outcome = await self._executor.run(
            CommandSpec(
                argv=task.command,
                cwd=self._cwd,
                env=self._env,
                timeout_seconds=self._timeout_seconds,
            )
        )
        if outcome.timed_out:
            raise TaskExecutionError(task.id, "command timed out")
        if not outcome.started or outcome.exit_code is None:
            raise TaskExecutionError(task.id, outcome.error or "command did not start")
        if outcome.exit_code != 0:
            detail = outcome.stderr[-_STDERR_TAIL_CHARS:].strip()
            message = f"exit code {outcome.exit_code}"
            raise TaskExecutionError(task.id, f"{message}: {detail}" if detail else message)


__all__ = ["CommandTaskExecutor", "NoopTaskExecutor", "TaskExecutor"]

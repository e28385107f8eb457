"""Unit tests for task executors."""

from __future__ import annotations

import sys

import pytest

from policy_orchestrator.control_plane.task_executor import (
    CommandTaskExecutor,
    NoopTaskExecutor,
    TaskExecutor,
)
from policy_orchestrator.domain.errors import TaskExecutionError
from policy_orchestrator.domain.models import Task


def _task(*command: str) -> Task:
    return Task(id="t1", description="change", category="bugfix", command=command)


def test_executors_satisfy_protocol() -> None:
    assert isinstance(NoopTaskExecutor(), TaskExecutor)
    assert isinstance(CommandTaskExecutor(), TaskExecutor)


@pytest.mark.asyncio
async def test_task_without_command_is_noop() -> None:
    await CommandTaskExecutor().execute(_task())
    await NoopTaskExecutor().execute(_task("anything"))


@pytest.mark.asyncio
async def test_successful_command() -> None:
    await CommandTaskExecutor(timeout_seconds=30).execute(_task(sys.executable, "-c", "pass"))


@pytest.mark.asyncio
async def test_failing_command_raises_with_stderr_tail() -> None:
    script = "import sys; sys.stderr.write('merge conflict'); sys.exit(4)"

    with pytest.raises(TaskExecutionError, match="exit code 4: merge conflict") as info:
        await CommandTaskExecutor(timeout_seconds=30).execute(_task(sys.executable, "-c", script))
    assert info.value.task_id == "t1"


@pytest.mark.asyncio
async def test_timeout_and_spawn_failure_raise() -> None:
    slow = _task(sys.executable, "-c", "import time; time.sleep(30)")

    with pytest.raises(TaskExecutionError, match="timed out"):
        await CommandTaskExecutor(timeout_seconds=0.3).execute(slow)
    with pytest.raises(TaskExecutionError):
        await CommandTaskExecutor().execute(_task("definitely-not-a-real-binary-xyz"))

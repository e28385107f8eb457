"""
policy-orchestrator — unit tests for the check runner

File: tests/unit/verification_plane/test_check_runner.py

Purpose
- Exercise status normalization, timeout handling and the retry policy through
  a scripted command executor, plus a few real subprocess runs.
"""

from __future__ import annotations

import errno
import sys
import time
from collections.abc import Iterable

import pytest

from policy_orchestrator.domain.models import CheckKind, CheckSpec, CheckStatus
from policy_orchestrator.verification_plane.check_runner import (
    CheckRunner,
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    expand_command,
    uses_targets,
)


class ScriptedExecutor(CommandExecutor):
    """Return queued outcomes in order and record every command it receives."""

    def __init__(self, outcomes: Iterable[CommandResult | Exception]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.calls.append(spec)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _exit(code: int, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(
        argv=("tool",), exit_code=code, stdout=stdout, stderr=stderr, duration_ms=1
    )


def _timed_out() -> CommandResult:
    return CommandResult(
        argv=("tool",), exit_code=None, stdout="", stderr="", duration_ms=1, timed_out=True
    )


def _spawn_error(code: int) -> CommandResult:
    return CommandResult(
        argv=("tool",),
        exit_code=None,
        stdout="",
        stderr="",
        duration_ms=0,
        error=f"[Errno {code}] spawn failed",
        error_errno=code,
    )


def _spec(**overrides: object) -> CheckSpec:
    values: dict[str, object] = {"name": "unit", "kind": CheckKind.TEST, "command": ("tool", "run")}
    values.update(overrides)
    return CheckSpec(**values)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_expected_exit_code_passes() -> None:
    executor = ScriptedExecutor([_exit(0)])

    result = await CheckRunner(executor).run(_spec(), ["a.py"])

    assert result.status is CheckStatus.PASS
    assert result.message == ""
    assert result.attempts == 1
    assert result.category == "tests"
    assert executor.calls[0].argv == ("tool", "run")


@pytest.mark.asyncio
async def test_nonzero_exit_fails_with_captured_output() -> None:
    executor = ScriptedExecutor([_exit(1, stdout="1 failed", stderr="trace")])

    result = await CheckRunner(executor).run(_spec())

    assert result.status is CheckStatus.FAIL
    assert result.message == "exit code 1\n1 failed\ntrace"


@pytest.mark.asyncio
async def test_custom_expected_exit_code() -> None:
    executor = ScriptedExecutor([_exit(5)])

    result = await CheckRunner(executor).run(_spec(expected_exit_code=5))

    assert result.status is CheckStatus.PASS


@pytest.mark.asyncio
async def test_timeout_becomes_error_without_retry_when_not_retryable() -> None:
    executor = ScriptedExecutor([_timed_out()])

    result = await CheckRunner(executor, default_retries=3).run(_spec())

    assert result.status is CheckStatus.ERROR
    assert result.message == "timeout"
    assert result.attempts == 1
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_retryable_timeout_retried_until_pass() -> None:
    executor = ScriptedExecutor([_timed_out(), _timed_out(), _exit(0)])

    result = await CheckRunner(executor).run(_spec(retryable=True, retries=2))

    assert result.status is CheckStatus.PASS
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_retries_exhausted_reports_error() -> None:
    executor = ScriptedExecutor([_timed_out(), _timed_out()])

    result = await CheckRunner(executor, default_retries=1).run(_spec(retryable=True))

    assert result.status is CheckStatus.ERROR
    assert result.message == "timeout"
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_logical_failure_never_retried() -> None:
    executor = ScriptedExecutor([_exit(1), _exit(0)])

    result = await CheckRunner(executor).run(_spec(retryable=True, retries=3))

    assert result.status is CheckStatus.FAIL
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_spawn_errors_retry_only_when_transient() -> None:
    missing = ScriptedExecutor([_spawn_error(errno.ENOENT), _exit(0)])
    busy = ScriptedExecutor([_spawn_error(errno.EAGAIN), _exit(0)])

    missing_result = await CheckRunner(missing).run(_spec(retryable=True, retries=1))
    busy_result = await CheckRunner(busy).run(_spec(retryable=True, retries=1))

    assert missing_result.status is CheckStatus.ERROR
    assert "spawn failed" in missing_result.message
    assert busy_result.status is CheckStatus.PASS
    assert busy_result.attempts == 2


@pytest.mark.asyncio
async def test_executor_crash_is_captured_as_error() -> None:
    executor = ScriptedExecutor([RuntimeError("executor exploded")])

    result = await CheckRunner(executor).run(_spec())

    assert result.status is CheckStatus.ERROR
    assert result.message == "RuntimeError: executor exploded"


@pytest.mark.asyncio
async def test_placeholder_without_targets_is_skipped() -> None:
    executor = ScriptedExecutor([])

    result = await CheckRunner(executor).run(_spec(command=("ruff", "check", "{targets}")), [])

    assert result.status is CheckStatus.SKIPPED
    assert result.attempts == 0
    assert executor.calls == []


@pytest.mark.asyncio
async def test_timeout_and_cwd_reach_the_executor() -> None:
    executor = ScriptedExecutor([_exit(0), _exit(0)])
    runner = CheckRunner(executor, default_timeout_seconds=7, cwd="/repo")

    await runner.run(_spec())
    await runner.run(_spec(timeout_seconds=2))

    assert [call.timeout_seconds for call in executor.calls] == [7.0, 2.0]
    assert executor.calls[0].cwd == "/repo"


def test_expand_command_placeholders() -> None:
    targets = ["a.py", "b.py"]

    assert expand_command(["lint", "{targets}"], targets) == ("lint", "a.py", "b.py")
    assert expand_command(["lint --files {target_count}"], targets) == ("lint", "--files", "2")
    assert expand_command(["echo", "{targets_joined}"], targets) == ("echo", "a.py b.py")
    assert uses_targets(["x", "{targets}"])
    assert not uses_targets(["pytest", "-q"])


def test_runner_rejects_invalid_defaults() -> None:
    with pytest.raises(ValueError):
        CheckRunner(default_timeout_seconds=0)
    with pytest.raises(ValueError):
        CheckRunner(default_retries=-1)


@pytest.mark.asyncio
async def test_local_executor_reports_exit_code_and_output() -> None:
    runner = CheckRunner(LocalSubprocessExecutor(), default_timeout_seconds=30)
    script = "import sys; print('checked'); sys.exit(3)"

    result = await runner.run(_spec(command=(sys.executable, "-c", script)))

    assert result.status is CheckStatus.FAIL
    assert result.message.startswith("exit code 3")
    assert "checked" in result.message


@pytest.mark.asyncio
async def test_local_executor_kills_on_timeout() -> None:
    runner = CheckRunner(LocalSubprocessExecutor())
    spec = _spec(command=(sys.executable, "-c", "import time; time.sleep(30)"), timeout_seconds=0.3)

    result = await runner.run(spec)

    assert result.status is CheckStatus.ERROR
    assert result.message == "timeout"


# The child inherits stdout and outlives the parent's own sleep.
BACKGROUNDED_CHILD = (
    "import subprocess, sys, time; "
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(10)']); "
    "time.sleep(10)"
)


@pytest.mark.asyncio
async def test_local_executor_timeout_kills_backgrounded_children() -> None:
    runner = CheckRunner(LocalSubprocessExecutor())
    spec = _spec(command=(sys.executable, "-c", BACKGROUNDED_CHILD), timeout_seconds=0.5)

    started = time.monotonic()
    result = await runner.run(spec)
    elapsed = time.monotonic() - started

    assert result.status is CheckStatus.ERROR
    assert result.message == "timeout"
    assert elapsed < 4.0


@pytest.mark.asyncio
async def test_local_executor_missing_binary_is_error() -> None:
    runner = CheckRunner(LocalSubprocessExecutor())

    result = await runner.run(_spec(command=("definitely-not-a-real-binary-xyz", "--version")))

    assert result.status is CheckStatus.ERROR
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_local_executor_truncates_output() -> None:
    executor = LocalSubprocessExecutor(max_output_chars=10)

    outcome = await executor.run(
        CommandSpec(argv=(sys.executable, "-c", "print('x' * 50)"), timeout_seconds=30)
    )

    assert outcome.exit_code == 0
    assert outcome.stdout.startswith("x" * 10)
    assert "[truncated" in outcome.stdout

"""
policy-orchestrator — check runner

File: src/policy_orchestrator/verification_plane/check_runner.py

Purpose
- Execute one ``CheckSpec`` against a target file set through a uniform
  command contract and normalize the outcome into a ``CheckResult``.

Functional requirements
- ``CheckRunner.run`` never raises for tool failures: spawn errors, crashes and
  timeouts become ``status=error``. Only cancellation propagates.
- Hard timeout: the process is killed and the result message is ``"timeout"``.
- Retry up to ``retries`` times only when the check is ``retryable`` and the
  failure was a timeout or a transient spawn error; never on a logical failure.
- stdout/stderr are captured verbatim (bounded) into the failure message.

Non-functional requirements
- No interpretation of tool semantics beyond the exit code.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shlex
import signal
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Final, Protocol, runtime_checkable

from policy_orchestrator.constants import (
    DEFAULT_CHECK_RETRIES,
    DEFAULT_CHECK_TIMEOUT_SECONDS,
    DEFAULT_MAX_OUTPUT_CHARS,
)
from policy_orchestrator.domain.errors import CheckExecutionError
from policy_orchestrator.domain.models import CheckResult, CheckSpec, CheckStatus
from policy_orchestrator.observability.logging import correlation_scope

logger = logging.getLogger(__name__)

TARGETS_PLACEHOLDER: Final[str] = "{targets}"
TARGET_COUNT_PLACEHOLDER: Final[str] = "{target_count}"
TARGETS_JOINED_PLACEHOLDER: Final[str] = "{targets_joined}"
TIMEOUT_MESSAGE: Final[str] = "timeout"
# Bound on draining pipes once a timed-out process group has been killed.
KILL_GRACE_SECONDS: Final[float] = 2.0

_PROCESS_GROUPS: Final[bool] = hasattr(os, "killpg")

# Spawn failures worth retrying: the same command may start on a later attempt.
TRANSIENT_ERRNOS: Final[frozenset[int]] = frozenset(
    {errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETXTBSY, errno.ENOMEM}
)

TextRedactor = Callable[[str], str]


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    inherit_env: bool = True

    def __post_init__(self) -> None:
        if not self.argv or not all(isinstance(item, str) and item for item in self.argv):
            raise ValueError("CommandSpec.argv: must be a non-empty sequence of strings")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds: must be > 0")

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            if not self.env:
                return None
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None
    error_errno: int | None = None

    @property
    def started(self) -> bool:
        return self.error is None


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Async local subprocess executor with bounded capture and kill-on-timeout."""

    def __init__(
        self,
        *,
        max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
        redact_text: TextRedactor | None = None,
    ) -> None:
        if max_output_chars is not None and max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._max_output_chars = max_output_chars
        self._redact_text = redact_text if redact_text is not None else _identity_text

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_PROCESS_GROUPS,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=self._redact_text(str(exc)),
                error_errno=exc.errno,
            )

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                timeout_seconds=spec.timeout_seconds,
            )
            timed_out = False
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._redact_text(
                _truncate_text(_normalize_output_text(stdout_bytes), self._max_output_chars)
            ),
            stderr=self._redact_text(
                _truncate_text(_normalize_output_text(stderr_bytes), self._max_output_chars)
            ),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
        )


def expand_command(template: Sequence[str], targets: Sequence[str]) -> tuple[str, ...]:
    """Expand a command template into argv for ``targets``.

    A single-element template is split with ``shlex``. An argv element equal to
    ``{targets}`` expands to one argument per target; ``{target_count}`` and
    ``{targets_joined}`` are substituted inline.
    """

    parts = shlex.split(template[0]) if len(template) == 1 else list(template)
    joined = " ".join(targets)
    argv: list[str] = []
    for part in parts:
        if part == TARGETS_PLACEHOLDER:
            argv.extend(targets)
            continue
        argv.append(
            part.replace(TARGET_COUNT_PLACEHOLDER, str(len(targets))).replace(
                TARGETS_JOINED_PLACEHOLDER, joined
            )
        )
    if not argv:
        raise ValueError("command template expanded to an empty argv")
    return tuple(argv)


def uses_targets(template: Sequence[str]) -> bool:
    return any(
        placeholder in part
        for part in template
        for placeholder in (TARGETS_PLACEHOLDER, TARGETS_JOINED_PLACEHOLDER)
    )


class CheckRunner:
    """Run one check with retry and timeout policy; never raises for tool failures.

    ``default_timeout_seconds`` and ``default_retries`` apply to specs that do
    not set their own; the workflow engine derives them from the effective
    policy's ``timeout`` and ``retries`` directives.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        default_timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
        default_retries: int = DEFAULT_CHECK_RETRIES,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        retry_backoff_seconds: float = 0.0,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if default_retries < 0:
            raise ValueError("default_retries must be >= 0")
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._default_retries = default_retries
        self._cwd = cwd
        self._env = dict(env or {})
        self._retry_backoff_seconds = max(0.0, retry_backoff_seconds)

    def timeout_for(self, spec: CheckSpec) -> float:
        if spec.timeout_seconds is not None:
            return spec.timeout_seconds
        return self._default_timeout_seconds

    def max_attempts_for(self, spec: CheckSpec) -> int:
        if not spec.retryable:
            return 1
        retries = spec.retries if spec.retries is not None else self._default_retries
        return 1 + retries

    async def run(self, spec: CheckSpec, targets: Sequence[str] = ()) -> CheckResult:
        target_tuple = tuple(targets)
        with correlation_scope(check_name=spec.name):
            if not target_tuple and uses_targets(spec.command):
                logger.info("check skipped: no targets", extra={"check_kind": spec.kind.value})
                return self._result(spec, target_tuple, CheckStatus.SKIPPED, "no targets", 0, 0)

            try:
                argv = expand_command(spec.command, target_tuple)
            except ValueError as exc:
                return self._result(spec, target_tuple, CheckStatus.ERROR, str(exc), 0, 0)

            command = CommandSpec(
                argv=argv,
                cwd=self._cwd,
                env=self._env,
                timeout_seconds=self.timeout_for(spec),
            )
            max_attempts = self.max_attempts_for(spec)
            started_ns = time.monotonic_ns()
            attempt = 0
            while True:
                attempt += 1
                try:
                    status, message = await self._attempt(spec, command)
                except CheckExecutionError as exc:
                    if exc.transient and attempt < max_attempts:
                        logger.warning(
                            "check attempt %d/%d failed transiently: %s",
                            attempt,
                            max_attempts,
                            exc,
                        )
                        if self._retry_backoff_seconds:
                            await asyncio.sleep(self._retry_backoff_seconds * attempt)
                        continue
                    status, message = CheckStatus.ERROR, str(exc)
                result = self._result(
                    spec, target_tuple, status, message, _elapsed_ms(started_ns), attempt
                )
                logger.info(
                    "check finished",
                    extra={
                        "check_kind": spec.kind.value,
                        "status": result.status.value,
                        "attempts": attempt,
                        "duration_ms": result.duration_ms,
                    },
                )
                return result

    async def _attempt(self, spec: CheckSpec, command: CommandSpec) -> tuple[CheckStatus, str]:
        try:
            outcome = await self._executor.run(command)
        except asyncio.CancelledError:
            raise
        except TimeoutError as exc:
            raise CheckExecutionError(TIMEOUT_MESSAGE, transient=True) from exc
        except Exception as exc:  # noqa: BLE001
            raise CheckExecutionError(f"{type(exc).__name__}: {exc}") from exc

        if outcome.timed_out:
            raise CheckExecutionError(TIMEOUT_MESSAGE, transient=True)
        if not outcome.started or outcome.exit_code is None:
            raise CheckExecutionError(
                outcome.error or "command did not start",
                transient=outcome.error_errno in TRANSIENT_ERRNOS,
            )
        if outcome.exit_code == spec.expected_exit_code:
            return CheckStatus.PASS, ""
        return CheckStatus.FAIL, _failure_message(outcome)

    @staticmethod
    def _result(
        spec: CheckSpec,
        targets: tuple[str, ...],
        status: CheckStatus,
        message: str,
        duration_ms: int,
        attempts: int,
    ) -> CheckResult:
        return CheckResult(
            name=spec.name,
            kind=spec.kind,
            category=spec.category,
            status=status,
            duration_ms=duration_ms,
            message=message,
            severity=spec.severity,
            targets=targets,
            attempts=attempts,
        )


class _CommandTimeoutError(Exception):
    def __init__(self, *, stdout: bytes, stderr: bytes) -> None:
        super().__init__("command timed out")
        self.stdout = stdout
        self.stderr = stderr


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate()
        return await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        _kill_process_group(process)
        stdout_bytes, stderr_bytes = await _drain_after_kill(process)
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        _kill_process_group(process)
        with suppress(Exception):
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        raise


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` and every descendant sharing its session."""

    if _PROCESS_GROUPS:
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
        return
    with suppress(ProcessLookupError):
        process.kill()


async def _drain_after_kill(process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
    try:
        return await asyncio.wait_for(process.communicate(), timeout=KILL_GRACE_SECONDS)
    except TimeoutError:
        # A descendant that left the session still holds the pipes open.
        transport = getattr(process, "_transport", None)
        if transport is not None:
            transport.close()
        return b"", b""


def _failure_message(outcome: CommandResult) -> str:
    sections = [f"exit code {outcome.exit_code}"]
    if outcome.stdout:
        sections.append(outcome.stdout)
    if outcome.stderr:
        sections.append(outcome.stderr)
    return "\n".join(sections)


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


def _identity_text(text: str) -> str:
    return text


__all__ = [
    "CheckRunner",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "TIMEOUT_MESSAGE",
    "TRANSIENT_ERRNOS",
    "expand_command",
    "uses_targets",
]

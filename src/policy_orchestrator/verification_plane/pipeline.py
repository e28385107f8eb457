"""
policy-orchestrator — verification pipeline

File: src/policy_orchestrator/verification_plane/pipeline.py

Purpose
- Turn per-extension policy groups into a deterministic check plan and execute
  it through a bounded worker pool.

Normative behavior
- Each check inherits ``timeout`` and ``retries`` from the policy of the group
  that declared it unless the check sets its own.
- Identical checks declared by several groups run once against the union of
  their targets, even when the groups bind different timeouts or retries.
- Plan order is (category, name, first declaration); results are returned in
  plan order regardless of completion order.
- Cancelling the token cancels every in-flight check; partial results are
  discarded and ``asyncio.CancelledError`` propagates to the caller.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from policy_orchestrator.domain.models import CheckResult, CheckSpec
from policy_orchestrator.knowledge_plane.rule_resolver import FilePolicyGroup
from policy_orchestrator.utils.concurrency import (
    CancellationToken,
    WorkerPool,
    default_worker_count,
)
from policy_orchestrator.verification_plane.check_runner import CheckRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlannedCheck:
    """One check bound to its targets and the rule documents that declared it."""

    spec: CheckSpec
    targets: tuple[str, ...]
    sources: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class VerificationPlan:
    checks: tuple[PlannedCheck, ...]
    max_workers: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.checks

    @property
    def worker_count(self) -> int:
        return min(default_worker_count(self.max_workers), max(1, len(self.checks)))


def bind_policy_defaults(spec: CheckSpec, *, timeout_seconds: float, retries: int) -> CheckSpec:
    """Fill unset timeout/retries on ``spec`` from the owning policy."""

    changes: dict[str, object] = {}
    if spec.timeout_seconds is None:
        changes["timeout_seconds"] = timeout_seconds
    if spec.retries is None:
        changes["retries"] = retries
    if not changes:
        return spec
    return dataclasses.replace(spec, **changes)


def plan_checks(groups: Sequence[FilePolicyGroup]) -> VerificationPlan:
    """Build the deterministic check plan for ``groups``.

    Checks are merged on their declaration, before policy binding, so a check
    reached through groups whose policies disagree on ``timeout`` or
    ``retries`` still runs once, with the longest timeout and most retries.
    """

    order: list[CheckSpec] = []
    bound: dict[CheckSpec, CheckSpec] = {}
    targets: dict[CheckSpec, list[str]] = {}
    sources: dict[CheckSpec, list[str]] = {}
    max_workers = 0

    for group in groups:
        policy = group.policy
        max_workers = max(max_workers, policy.max_workers)
        for check in policy.checks:
            candidate = bind_policy_defaults(
                check, timeout_seconds=policy.timeout, retries=policy.retries
            )
            if check not in bound:
                order.append(check)
                bound[check] = candidate
                targets[check] = []
                sources[check] = []
            else:
                bound[check] = _widest(bound[check], candidate)
            for path in group.files:
                if path not in targets[check]:
                    targets[check].append(path)
            source = policy.check_sources.get(check.name)
            if source is not None and source not in sources[check]:
                sources[check].append(source)

    ranked = sorted(
        enumerate(order), key=lambda item: (item[1].category, item[1].name, item[0])
    )
    planned = tuple(
        PlannedCheck(
            spec=bound[check],
            targets=tuple(sorted(targets[check])),
            sources=tuple(sources[check]),
        )
        for _, check in ranked
    )
    return VerificationPlan(checks=planned, max_workers=max_workers)


def _widest(current: CheckSpec, other: CheckSpec) -> CheckSpec:
    timeout = max(current.timeout_seconds or 0.0, other.timeout_seconds or 0.0)
    retries = max(current.retries or 0, other.retries or 0)
    if (timeout, retries) == (current.timeout_seconds, current.retries):
        return current
    return dataclasses.replace(current, timeout_seconds=timeout, retries=retries)


class VerificationPipeline:
    """Run a ``VerificationPlan`` with bounded concurrency."""

    def __init__(self, runner: CheckRunner | None = None) -> None:
        self._runner = runner if runner is not None else CheckRunner()
        self._last_peak = 0

    @property
    def runner(self) -> CheckRunner:
        return self._runner

    @property
    def last_peak_concurrency(self) -> int:
        return self._last_peak

    async def run(
        self,
        plan: VerificationPlan,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[CheckResult, ...]:
        if plan.is_empty:
            self._last_peak = 0
            return ()

        pool: WorkerPool[CheckResult] = WorkerPool(
            max_concurrency=plan.worker_count,
            cancel_token=cancel_token,
        )
        logger.info(
            "verification started: %d checks on %d workers",
            len(plan.checks),
            plan.worker_count,
        )
        try:
            results = await pool.gather(
                self._runner.run(item.spec, item.targets) for item in plan.checks
            )
        finally:
            self._last_peak = pool.peak_concurrency
        return tuple(results)


__all__ = [
    "PlannedCheck",
    "VerificationPipeline",
    "VerificationPlan",
    "bind_policy_defaults",
    "plan_checks",
]

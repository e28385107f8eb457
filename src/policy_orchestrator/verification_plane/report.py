"""
policy-orchestrator — report aggregator

File: src/policy_orchestrator/verification_plane/report.py

Purpose
- Fold check results into a weighted 0..100 ``HealthReport``.

Scoring
- ``category score = weight * passed / total`` over non-skipped results.
- ``error`` results count as failures and are listed separately.
- Categories with no evaluated result, or with weight 0, are excluded from
  both numerator and denominator; the total is renormalized over the rest.
- No evaluated category at all yields total 0 and ``no_checks_run``.
- Results in a category the weights do not name are excluded too, and
  ``UnweightedCategoryWarning`` is emitted so a failing check cannot vanish
  from the score unnoticed.
"""

from __future__ import annotations

import logging
import math
import warnings
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from policy_orchestrator.constants import DEFAULT_CATEGORY_WEIGHTS
from policy_orchestrator.domain.errors import UnweightedCategoryWarning
from policy_orchestrator.domain.models import (
    CategoryScore,
    CheckResult,
    CheckStatus,
    HealthReport,
    utc_now,
)
from policy_orchestrator.utils.hashing import sha256_json

logger = logging.getLogger(__name__)


class ReportAggregator:
    """Stateless apart from its weights and clock; safe to reuse across phases."""

    def __init__(
        self,
        weights: Mapping[str, float] | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        source = DEFAULT_CATEGORY_WEIGHTS if weights is None else weights
        normalized: dict[str, float] = {}
        for category, weight in source.items():
            value = float(weight)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"weights.{category}: must be a finite number >= 0")
            normalized[str(category)] = value
        self._weights = normalized
        self._clock = clock

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def aggregate(self, results: Iterable[CheckResult]) -> HealthReport:
        collected = tuple(results)
        passed: dict[str, int] = {}
        totals: dict[str, int] = {}
        errors: dict[str, int] = {}
        for result in collected:
            if result.status is CheckStatus.SKIPPED:
                continue
            category = result.category
            totals[category] = totals.get(category, 0) + 1
            passed[category] = passed.get(category, 0) + (1 if result.passed else 0)
            if result.could_not_run:
                errors[category] = errors.get(category, 0) + 1

        unweighted = sorted(set(totals) - set(self._weights))
        if unweighted:
            message = (
                f"checks in unweighted categories do not affect readiness: {unweighted}; "
                "set scoring.weights or give the checks a weighted category"
            )
            logger.warning(message)
            warnings.warn(message, UnweightedCategoryWarning, stacklevel=2)

        scores = tuple(
            CategoryScore(
                category=category,
                weight=self._weights.get(category, 0.0),
                passed=passed.get(category, 0),
                total=totals.get(category, 0),
                errors=errors.get(category, 0),
            )
            for category in sorted(set(self._weights) | set(totals))
        )

        evaluated = [item for item in scores if item.evaluated]
        denominator = sum(item.weight for item in evaluated)
        if not evaluated or denominator <= 0:
            total = 0.0
            no_checks_run = True
        else:
            total = _clamp(sum(item.score for item in evaluated) / denominator * 100.0)
            no_checks_run = False

        return HealthReport(
            category_scores=scores,
            total=total,
            results=collected,
            timestamp=self._clock(),
            no_checks_run=no_checks_run,
        )


def fingerprint(report: HealthReport) -> str:
    """Digest of ``report`` that ignores the timestamp, durations and attempt counts."""

    return sha256_json(report.to_dict(include_volatile=False))


def _clamp(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(100.0, max(0.0, value))


__all__ = ["ReportAggregator", "fingerprint"]

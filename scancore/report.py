"""Turn raw rule outcomes into PolicyReport-style results."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from scancore.models import FailureAction, PolicyTraits, ReportResult, RuleOutcome, RuleStatus

__all__ = [
    "ClassifyOptions",
    "ReportClassifier",
    "VIOLATION_STATUSES",
    "classify_status",
    "parse_namespace_excludes",
    "summarize",
]

LOGGER = logging.getLogger(__name__)

REPORT_SOURCE = "kyverno"
VIOLATION_STATUSES = frozenset({RuleStatus.FAIL, RuleStatus.ERROR, RuleStatus.WARN})


@dataclass(frozen=True, slots=True)
class ClassifyOptions:
    audit_warn: bool = False
    violations_only: bool = True
    exclude_namespaces: frozenset[str] = field(default_factory=frozenset)


def classify_status(raw: RuleStatus | str, traits: PolicyTraits, *, audit_warn: bool = False) -> RuleStatus:
    """Map an engine status to a report status.

    A failure of an unscored policy, or of an audit-mode policy when
    ``audit_warn`` is on, is reported as ``warn``.  Unknown statuses become
    ``error``.
    """

    status = RuleStatus.parse(raw)
    if status is None:
        return RuleStatus.ERROR
    if status is not RuleStatus.FAIL:
        return status
    if not traits.scored:
        return RuleStatus.WARN
    if audit_warn and traits.failure_action is FailureAction.AUDIT:
        return RuleStatus.WARN
    return RuleStatus.FAIL


def parse_namespace_excludes(raw: str | Iterable[str] | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    parts = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(part.strip() for part in parts if part and part.strip())


def summarize(results: Iterable[ReportResult]) -> dict[str, int]:
    """Return the PolicyReport ``summary`` block for ``results``."""

    counts = {status.value: 0 for status in RuleStatus}
    for result in results:
        counts[result.result.value] += 1
    return counts


class ReportClassifier:
    def __init__(self, *, source: str = REPORT_SOURCE, clock: Callable[[], float] = time.time) -> None:
        self._source = source
        self._clock = clock

    def classify(
        self,
        outcomes: Sequence[RuleOutcome],
        options: ClassifyOptions | None = None,
    ) -> list[ReportResult]:
        opts = options or ClassifyOptions()
        timestamp = int(self._clock())
        results: list[ReportResult] = []
        dropped = 0
        for outcome in outcomes:
            if outcome.resource.namespace in opts.exclude_namespaces:
                dropped += 1
                continue
            status = classify_status(outcome.status, outcome.traits, audit_warn=opts.audit_warn)
            if opts.violations_only and status not in VIOLATION_STATUSES:
                continue
            results.append(
                ReportResult(
                    policy=outcome.policy,
                    rule=outcome.rule,
                    resource=outcome.resource,
                    result=status,
                    message=outcome.message,
                    scored=outcome.traits.scored,
                    source=self._source,
                    category=outcome.traits.category,
                    severity=outcome.traits.severity,
                    timestamp=timestamp,
                )
            )
        LOGGER.debug(
            "Classified %d outcome(s) into %d result(s); %d excluded by namespace",
            len(outcomes),
            len(results),
            dropped,
        )
        return results

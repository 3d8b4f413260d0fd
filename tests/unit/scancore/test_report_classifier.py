from __future__ import annotations

import pytest

from scancore.models import FailureAction, PolicyTraits, ResourceIdentity, RuleOutcome, RuleStatus
from scancore.report import (
    ClassifyOptions,
    ReportClassifier,
    classify_status,
    parse_namespace_excludes,
    summarize,
)

SCORED = PolicyTraits()
UNSCORED = PolicyTraits(scored=False)
ENFORCED = PolicyTraits(failure_action=FailureAction.ENFORCE)


@pytest.mark.parametrize(
    ("raw", "traits", "audit_warn", "expected"),
    [
        (RuleStatus.PASS, SCORED, False, RuleStatus.PASS),
        (RuleStatus.SKIP, UNSCORED, True, RuleStatus.SKIP),
        (RuleStatus.ERROR, UNSCORED, False, RuleStatus.ERROR),
        (RuleStatus.WARN, SCORED, False, RuleStatus.WARN),
        (RuleStatus.FAIL, SCORED, False, RuleStatus.FAIL),
        (RuleStatus.FAIL, UNSCORED, False, RuleStatus.WARN),
        (RuleStatus.FAIL, SCORED, True, RuleStatus.WARN),
        (RuleStatus.FAIL, ENFORCED, True, RuleStatus.FAIL),
        ("fail", SCORED, False, RuleStatus.FAIL),
        ("exploded", SCORED, False, RuleStatus.ERROR),
    ],
)
def test_classify_status(raw, traits, audit_warn, expected) -> None:
    assert classify_status(raw, traits, audit_warn=audit_warn) is expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, frozenset()),
        ("", frozenset()),
        ("kube-system, kyverno,,", frozenset({"kube-system", "kyverno"})),
        (["a", " b ", ""], frozenset({"a", "b"})),
    ],
)
def test_parse_namespace_excludes(raw, expected) -> None:
    assert parse_namespace_excludes(raw) == expected


def _outcome(namespace: str, status, *, traits: PolicyTraits = SCORED, name: str = "web") -> RuleOutcome:
    return RuleOutcome(
        resource=ResourceIdentity("v1", "Pod", namespace, name, f"uid-{name}"),
        policy="require-labels",
        rule="check",
        status=status,
        message=f"{name} {status}",
        traits=traits,
    )


def test_classifier_defaults_to_violations_only() -> None:
    outcomes = [
        _outcome("dev", RuleStatus.PASS, name="a"),
        _outcome("dev", RuleStatus.FAIL, name="b"),
        _outcome("dev", RuleStatus.SKIP, name="c"),
        _outcome("dev", "weird", name="d"),
        _outcome("dev", RuleStatus.FAIL, traits=UNSCORED, name="e"),
    ]
    results = ReportClassifier(clock=lambda: 7.9).classify(outcomes)
    assert [(r.resource.name, r.result) for r in results] == [
        ("b", RuleStatus.FAIL),
        ("d", RuleStatus.ERROR),
        ("e", RuleStatus.WARN),
    ]
    assert {r.timestamp for r in results} == {7}
    assert results[2].scored is False


def test_classifier_excludes_namespaces_before_filtering() -> None:
    outcomes = [_outcome("kube-system", RuleStatus.FAIL), _outcome("dev", RuleStatus.PASS)]
    options = ClassifyOptions(violations_only=False, exclude_namespaces=frozenset({"kube-system"}))
    results = ReportClassifier().classify(outcomes, options)
    assert [r.resource.namespace for r in results] == ["dev"]


def test_classifier_reads_the_clock_once() -> None:
    ticks = iter(range(100, 200))
    classifier = ReportClassifier(clock=lambda: next(ticks))
    results = classifier.classify([_outcome("dev", RuleStatus.FAIL, name=str(i)) for i in range(5)])
    assert {r.timestamp for r in results} == {100}


def test_classifier_carries_traits_and_source() -> None:
    traits = PolicyTraits(category="Pod Security", severity="medium")
    [result] = ReportClassifier(source="scanner").classify([_outcome("dev", RuleStatus.FAIL, traits=traits)])
    assert result.source == "scanner"
    assert result.category == "Pod Security"
    assert result.severity == "medium"
    assert result.message == "web fail"


def test_summarize_counts_every_status() -> None:
    outcomes = [
        _outcome("dev", RuleStatus.FAIL),
        _outcome("dev", RuleStatus.FAIL),
        _outcome("dev", RuleStatus.PASS),
        _outcome("dev", RuleStatus.SKIP),
    ]
    results = ReportClassifier().classify(outcomes, ClassifyOptions(violations_only=False))
    assert summarize(results) == {"pass": 1, "fail": 2, "warn": 0, "error": 0, "skip": 1}
    assert summarize([]) == {"pass": 0, "fail": 0, "warn": 0, "error": 0, "skip": 0}

"""Property checks for report classification and application fan-out."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from scancore.engine import ApplicationOrchestrator
from scancore.models import (
    FailureAction,
    PolicyDefinition,
    PolicyRule,
    PolicyScope,
    PolicyTraits,
    ResolvedResource,
    ResourceIdentity,
    RuleOutcome,
    RuleStatus,
)
from scancore.report import (
    VIOLATION_STATUSES,
    ClassifyOptions,
    ReportClassifier,
    parse_namespace_excludes,
)
from tests.helpers.fakes import StubEvaluator, pod

pytestmark = pytest.mark.property

NAMESPACES = ["default", "dev", "prod", "kube-system", "kyverno", ""]

_traits = st.builds(
    PolicyTraits,
    scored=st.booleans(),
    failure_action=st.sampled_from(list(FailureAction)),
)
_status = st.one_of(st.sampled_from(list(RuleStatus)), st.sampled_from(["bogus", "PASS", "Fail"]))
_outcome = st.builds(
    RuleOutcome,
    resource=st.builds(
        ResourceIdentity,
        api_version=st.just("v1"),
        kind=st.just("Pod"),
        namespace=st.sampled_from(NAMESPACES),
        name=st.text(alphabet="abcdef", min_size=1, max_size=4),
    ),
    policy=st.sampled_from(["p1", "p2"]),
    rule=st.sampled_from(["r1", "r2"]),
    status=_status,
    traits=_traits,
)
_excludes = st.frozensets(st.sampled_from(NAMESPACES), max_size=len(NAMESPACES))


def _key(result) -> tuple:
    return (result.resource, result.policy, result.rule, result.result)


@given(st.lists(_outcome, max_size=30), _excludes, _excludes, st.booleans())
def test_excluding_more_namespaces_never_adds_results(outcomes, smaller, extra, audit_warn) -> None:
    classifier = ReportClassifier(clock=lambda: 0)
    larger = smaller | extra
    few = classifier.classify(outcomes, ClassifyOptions(audit_warn=audit_warn, exclude_namespaces=larger))
    many = classifier.classify(outcomes, ClassifyOptions(audit_warn=audit_warn, exclude_namespaces=smaller))

    assert len(few) <= len(many)
    assert all(result.resource.namespace not in larger for result in few)
    remaining = [_key(r) for r in many if r.resource.namespace not in larger]
    assert [_key(r) for r in few] == remaining


@given(st.lists(_outcome, max_size=30), st.booleans())
def test_violations_are_a_filtered_view_of_all_results(outcomes, audit_warn) -> None:
    classifier = ReportClassifier(clock=lambda: 0)
    everything = classifier.classify(outcomes, ClassifyOptions(audit_warn=audit_warn, violations_only=False))
    violations = classifier.classify(outcomes, ClassifyOptions(audit_warn=audit_warn))

    assert len(everything) == len(outcomes)
    assert [_key(r) for r in violations] == [
        _key(r) for r in everything if r.result in VIOLATION_STATUSES
    ]
    assert all(isinstance(r.result, RuleStatus) for r in everything)


@given(st.lists(_outcome, max_size=30))
def test_unscored_failures_never_surface_as_fail(outcomes) -> None:
    results = ReportClassifier().classify(outcomes, ClassifyOptions(violations_only=False))
    for outcome, result in zip(outcomes, results):
        if not outcome.traits.scored:
            assert result.result is not RuleStatus.FAIL


@given(st.lists(st.text(alphabet="ab-, ", max_size=6), max_size=5))
def test_namespace_exclude_parsing_is_stable(parts) -> None:
    parsed = parse_namespace_excludes(",".join(parts))
    assert parse_namespace_excludes(",".join(sorted(parsed))) == parsed
    assert all(name == name.strip() and name for name in parsed)


@settings(max_examples=30, deadline=None)
@given(
    rules_per_policy=st.lists(st.integers(min_value=0, max_value=3), min_size=1, max_size=3),
    resource_count=st.integers(min_value=0, max_value=4),
    workers=st.integers(min_value=1, max_value=3),
)
def test_every_rule_meets_every_resource_once(rules_per_policy, resource_count, workers) -> None:
    policies = [
        PolicyDefinition(
            name=f"p{index}",
            scope=PolicyScope.CLUSTER,
            rules=tuple(
                PolicyRule.from_mapping({"name": f"r{rule}", "validate": {"pattern": {}}})
                for rule in range(count)
            ),
        )
        for index, count in enumerate(rules_per_policy)
    ]
    resources = [ResolvedResource(pod(f"pod{index}")) for index in range(resource_count)]

    outcomes = ApplicationOrchestrator(StubEvaluator(), max_workers=workers).apply(policies, resources)

    expected = [
        (resource.name, policy.name, rule.name)
        for resource in resources
        for policy in policies
        for rule in policy.rules
    ]
    assert [(o.resource.name, o.policy, o.rule) for o in outcomes] == expected

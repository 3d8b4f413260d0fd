from __future__ import annotations

from pathlib import Path

import pytest

from scancore.cancellation import CancellationToken
from scancore.config import NamespaceMode
from scancore.engine import ApplicationOrchestrator, PolicyEngine, derive_queries
from scancore.errors import ConfigurationError, EvaluationError, ScanCancelledError, SourceError
from scancore.evaluator import PatternEvaluator
from scancore.interfaces import RuleVerdict
from scancore.loader import PolicyLoader, parse_policies
from scancore.models import ResolvedResource, ResourceQuery, RuleKind, RuleStatus
from scancore.report import ReportClassifier
from scancore.resolver import ResolverOptions, ResourceResolver
from scancore.schemas import ApplyRequest
from tests.helpers.fakes import FakeClusterClient, StubEvaluator, deployment, pod

POLICIES = """
apiVersion: kyverno.io/v1
kind: ClusterPolicy
metadata:
  name: alpha
spec:
  rules:
  - name: a1
    match: {resources: {kinds: [Pod]}}
    validate: {pattern: {metadata: {labels: {app: "?*"}}}, message: app label required}
  - name: a2
    match: {resources: {kinds: [Pod]}}
    mutate: {patchStrategicMerge: {metadata: {labels: {seen: "true"}}}}
---
apiVersion: kyverno.io/v1
kind: ClusterPolicy
metadata:
  name: beta
  annotations:
    policies.kyverno.io/scored: "false"
spec:
  validationFailureAction: Enforce
  rules:
  - name: b1
    match: {any: [{resources: {kinds: [apps/v1/Deployment, Pod]}}]}
    validate: {pattern: {spec: {replicas: ">1"}}, message: run more replicas}
"""


def _policies():
    return parse_policies(POLICIES, origin="inline")


def _resources(*documents):
    return [ResolvedResource(document) for document in documents]


def test_empty_inputs_do_not_touch_the_evaluator() -> None:
    stub = StubEvaluator()
    orchestrator = ApplicationOrchestrator(stub)
    assert orchestrator.apply([], _resources(pod("web"))) == []
    assert orchestrator.apply(_policies(), []) == []
    assert stub.calls == []


def test_every_triple_is_evaluated_once_in_order() -> None:
    stub = StubEvaluator({"a1": RuleStatus.FAIL})
    outcomes = ApplicationOrchestrator(stub).apply(_policies(), _resources(pod("p1"), pod("p2")))

    expected = [
        ("p1", "alpha", "a1"),
        ("p1", "alpha", "a2"),
        ("p1", "beta", "b1"),
        ("p2", "alpha", "a1"),
        ("p2", "alpha", "a2"),
        ("p2", "beta", "b1"),
    ]
    assert stub.calls == expected
    assert [(o.resource.name, o.policy, o.rule) for o in outcomes] == expected
    assert outcomes[0].status is RuleStatus.FAIL
    assert outcomes[1].rule_kind is RuleKind.MUTATE
    assert outcomes[2].traits.scored is False


def test_parallel_units_keep_order() -> None:
    stub = StubEvaluator()
    resources = _resources(*(pod(f"p{index}") for index in range(12)))
    serial = ApplicationOrchestrator(stub).apply(_policies(), resources)
    parallel = ApplicationOrchestrator(StubEvaluator(), max_workers=4).apply(_policies(), resources)
    assert serial == parallel


def test_evaluator_failures_become_error_outcomes(caplog: pytest.LogCaptureFixture) -> None:
    stub = StubEvaluator({"a1": EvaluationError("boom"), "a2": KeyError("missing")})
    with caplog.at_level("WARNING", logger="scancore.engine"):
        outcomes = ApplicationOrchestrator(stub).apply(_policies(), _resources(pod("web")))
    statuses = [outcome.status for outcome in outcomes]
    assert statuses == [RuleStatus.ERROR, RuleStatus.ERROR, RuleStatus.PASS]
    assert outcomes[0].message == "boom"
    assert "alpha/a1" in caplog.text


def test_raw_statuses_pass_through() -> None:
    stub = StubEvaluator({"a1": RuleVerdict("unknown-status")})
    outcomes = ApplicationOrchestrator(stub).apply(_policies(), _resources(pod("web")))
    assert outcomes[0].status == "unknown-status"


def test_cancellation_aborts_application() -> None:
    token = CancellationToken()

    def cancel_then_pass(resource):
        token.cancel("stop")
        return RuleVerdict(RuleStatus.PASS)

    stub = StubEvaluator({"a1": cancel_then_pass})
    with pytest.raises(ScanCancelledError):
        ApplicationOrchestrator(stub).apply(_policies(), _resources(pod("web")), cancel=token)
    assert len(stub.calls) == 1


def test_orchestrator_rejects_bad_worker_count() -> None:
    with pytest.raises(ValueError):
        ApplicationOrchestrator(StubEvaluator(), max_workers=0)


def test_derive_queries_from_match_kinds() -> None:
    queries = derive_queries(_policies(), namespace="dev")
    assert queries == [
        ResourceQuery(api_version="v1", kind="Pod", namespace="dev"),
        ResourceQuery(api_version="apps/v1", kind="Deployment", namespace="dev"),
    ]


def test_derive_queries_skips_unknown_kinds_and_scopes_namespaced_policies() -> None:
    text = """
apiVersion: kyverno.io/v1
kind: Policy
metadata: {name: team, namespace: team}
spec:
  rules:
  - name: r
    match: {any: [{resources: {kinds: [Widget, Pod, Namespace]}}]}
    validate: {pattern: {metadata: {name: "?*"}}}
"""
    policies = parse_policies(text, origin="inline")
    assert derive_queries(policies) == [
        ResourceQuery(api_version="v1", kind="Pod", namespace="team"),
        ResourceQuery(api_version="v1", kind="Namespace", namespace=""),
    ]
    # An explicit namespace wins over the policy's own.
    assert derive_queries(policies, namespace="dev")[0] == ResourceQuery(
        api_version="v1", kind="Pod", namespace="dev"
    )


MIXED_SCOPES = """
apiVersion: kyverno.io/v1
kind: Policy
metadata: {name: team-only, namespace: team}
spec:
  rules:
  - name: r
    match: {resources: {kinds: [Pod]}}
    validate: {pattern: {metadata: {name: "?*"}}}
---
apiVersion: kyverno.io/v1
kind: Policy
metadata: {name: ops-only, namespace: ops}
spec:
  rules:
  - name: r
    match: {resources: {kinds: [Pod, ConfigMap]}}
    validate: {pattern: {metadata: {name: "?*"}}}
---
apiVersion: kyverno.io/v1
kind: ClusterPolicy
metadata: {name: everywhere}
spec:
  rules:
  - name: r
    match: {resources: {kinds: [Pod]}}
    validate: {pattern: {metadata: {labels: {app: "?*"}}}}
"""


def test_cluster_policy_widens_a_kind_a_namespaced_policy_saw_first() -> None:
    queries = derive_queries(parse_policies(MIXED_SCOPES, origin="inline"))
    assert queries == [
        ResourceQuery(api_version="v1", kind="Pod", namespace=""),
        ResourceQuery(api_version="v1", kind="ConfigMap", namespace="ops"),
    ]


def test_namespaced_policies_in_different_namespaces_each_get_a_query() -> None:
    policies = parse_policies(MIXED_SCOPES, origin="inline")[:2]
    assert derive_queries(policies) == [
        ResourceQuery(api_version="v1", kind="Pod", namespace="team"),
        ResourceQuery(api_version="v1", kind="Pod", namespace="ops"),
        ResourceQuery(api_version="v1", kind="ConfigMap", namespace="ops"),
    ]


# -- PolicyEngine --------------------------------------------------------------------


def _engine(cluster: FakeClusterClient, *, mode: NamespaceMode = NamespaceMode.ALL) -> PolicyEngine:
    return PolicyEngine(
        loader=PolicyLoader(),
        resolver=ResourceResolver(
            lambda credential: cluster, options=ResolverOptions(namespace_mode=mode)
        ),
        orchestrator=ApplicationOrchestrator(PatternEvaluator()),
        classifier=ReportClassifier(clock=lambda: 123),
    )


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "policies.yaml"
    path.write_text(POLICIES, encoding="utf-8")
    return path


def test_apply_groups_outcomes_per_resource_and_policy(
    fake_cluster: FakeClusterClient, policy_file: Path
) -> None:
    fake_cluster.add("pods", pod("web", labels={"app": "web"}), pod("db"))
    request = ApplyRequest.parse(
        {"policySources": [str(policy_file)], "resourceQueries": [{"kind": "Pod"}]}
    )
    response = _engine(fake_cluster).apply(request).to_dict()

    rows = [(row["resource"]["name"], row["policy"]) for row in response["results"]]
    assert rows == [("web", "alpha"), ("web", "beta"), ("db", "alpha"), ("db", "beta")]
    web_alpha = response["results"][0]
    assert [rule["status"] for rule in web_alpha["rules"]] == ["pass", "skip"]
    assert web_alpha["rules"][1]["type"] == "mutate"
    assert response["results"][1]["validationFailureAction"] == "enforce"
    assert response["results"][2]["rules"][0]["status"] == "fail"
    assert [document["metadata"]["name"] for document in response["resources"]] == ["web", "db"]


def test_apply_keeps_duplicate_resources_apart(
    fake_cluster: FakeClusterClient, policy_file: Path
) -> None:
    fake_cluster.add("pods", pod("web"))
    request = ApplyRequest.parse(
        {
            "policySources": [str(policy_file)],
            "resourceQueries": [{"kind": "Pod"}, {"kind": "Pod", "namespace": "default", "name": "web"}],
        }
    )
    response = _engine(fake_cluster).apply(request)
    assert len(response.results) == 4
    assert all(len(row.rules) == (2 if row.policy == "alpha" else 1) for row in response.results)


def test_apply_missing_source_aborts(fake_cluster: FakeClusterClient) -> None:
    request = ApplyRequest.parse(
        {"policySources": ["/missing.yaml"], "resourceQueries": [{"kind": "Pod"}]}
    )
    with pytest.raises(SourceError):
        _engine(fake_cluster).apply(request)
    assert fake_cluster.calls == []


def test_apply_unknown_kind_aborts(fake_cluster: FakeClusterClient, policy_file: Path) -> None:
    request = ApplyRequest.parse(
        {"policySources": [str(policy_file)], "resourceQueries": [{"apiVersion": "x/v1", "kind": "Widget"}]}
    )
    with pytest.raises(ConfigurationError):
        _engine(fake_cluster).apply(request)


def test_scan_classifies_and_filters(fake_cluster: FakeClusterClient, policy_file: Path) -> None:
    fake_cluster.add("pods", pod("web", "dev"), pod("dns", "kube-system"))
    fake_cluster.add("deployments", deployment("api", "dev", replicas=1))

    results = _engine(fake_cluster).scan(
        [str(policy_file)], exclude_namespaces={"kube-system"}
    )

    summary = [(r.resource.kind, r.resource.name, r.policy, r.rule, r.result.value) for r in results]
    assert summary == [
        ("Pod", "web", "alpha", "a1", "fail"),
        ("Pod", "web", "beta", "b1", "warn"),
        ("Deployment", "api", "beta", "b1", "warn"),
    ]
    assert all(result.timestamp == 123 for result in results)
    assert all(result.source == "kyverno" for result in results)


def test_scan_with_all_results(fake_cluster: FakeClusterClient, policy_file: Path) -> None:
    fake_cluster.add("pods", pod("web", labels={"app": "web"}))
    results = _engine(fake_cluster).scan([str(policy_file)], violations_only=False)
    assert {result.result for result in results} >= {RuleStatus.PASS, RuleStatus.SKIP}


def test_scan_requires_sources(fake_cluster: FakeClusterClient) -> None:
    with pytest.raises(SourceError):
        _engine(fake_cluster).scan([])


def test_scan_namespace_scopes_queries(fake_cluster: FakeClusterClient, policy_file: Path) -> None:
    fake_cluster.add("pods", pod("a", "dev"), pod("b", "prod"))
    results = _engine(fake_cluster).scan([str(policy_file)], namespace="prod")
    assert {result.resource.name for result in results} == {"b"}


def test_scan_mixed_policy_scopes_reports_every_namespace(
    fake_cluster: FakeClusterClient, tmp_path: Path
) -> None:
    source = tmp_path / "mixed.yaml"
    source.write_text(MIXED_SCOPES, encoding="utf-8")
    fake_cluster.add("pods", pod("a", "team"), pod("b", "prod"))

    results = _engine(fake_cluster).scan([str(source)])

    assert ("list", "pods", "") in fake_cluster.calls
    failing = {(r.policy, r.resource.namespace, r.resource.name) for r in results}
    assert failing == {("everywhere", "team", "a"), ("everywhere", "prod", "b")}

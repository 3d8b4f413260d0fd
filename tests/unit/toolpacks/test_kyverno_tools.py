"""Kyverno tool modules wired to an in-memory cluster."""

from __future__ import annotations

from pathlib import Path

import pytest

from apps.toolpacks.python.kyverno import apply_policies, apply_request, bundles_list, runtime, show_violations
from scancore import bundles
from scancore.config import NamespaceMode
from scancore.errors import ConfigurationError, SourceError
from scancore.violations import POLICY_REPORT_GROUP
from tests.helpers.fakes import FakeClusterClient, pod

PRIVILEGED = [{"name": "app", "image": "nginx:1.25", "securityContext": {"privileged": True}}]


def _violating_pods(cluster: FakeClusterClient) -> None:
    cluster.add(
        "pods",
        pod("root", "dev", containers=PRIVILEGED),
        pod("calm", "dev"),
        pod("system", "kube-system", containers=PRIVILEGED),
    )


def test_bundles_list_describes_every_bundle() -> None:
    payload = bundles_list.run({})
    names = [entry["name"] for entry in payload["bundles"]]
    assert names == ["pod-security", "rbac-best-practices", "kubernetes-best-practices", "all"]
    pod_security = payload["bundles"][0]["policies"]
    privileged = next(p for p in pod_security if p["name"] == "disallow-privileged-containers")
    assert privileged["rules"] == ["privileged-containers"]
    assert privileged["severity"] == "medium"


def test_apply_policies_reports_violations(wired_runtime: FakeClusterClient) -> None:
    _violating_pods(wired_runtime)

    payload = apply_policies.run({"policySets": "pod-security"})

    flagged = {
        (r["policy"], r["resources"][0]["name"])
        for r in payload["results"]
        if r["policy"] == "disallow-privileged-containers"
    }
    assert flagged == {("disallow-privileged-containers", "root")}
    assert all(r["result"] in {"fail", "warn", "error"} for r in payload["results"])
    assert payload["summary"]["pass"] > 0
    assert payload["message"].endswith("violation(s) found")
    assert payload["scan"] == {
        "policySets": "pod-security",
        "namespace": "",
        "namespaceExclude": "kube-system,kyverno",
        "gitBranch": "main",
    }
    assert {r["timestamp"]["seconds"] for r in payload["results"]} == {1_700_000_000}


def test_apply_policies_list_exclude_and_namespace(wired_runtime: FakeClusterClient) -> None:
    _violating_pods(wired_runtime)

    payload = apply_policies.run(
        {"policySets": "pod-security", "namespace": "kube-system", "namespace_exclude": ["dev"]}
    )

    names = {r["resources"][0]["name"] for r in payload["results"]}
    assert names == {"system"}
    assert payload["scan"]["namespaceExclude"] == "dev"
    assert payload["scan"]["namespace"] == "kube-system"


def test_apply_policies_all_namespaces_overrides_fixed_mode(
    wired_runtime: FakeClusterClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("KYSCAN_NAMESPACE_MODE", "fixed")
    monkeypatch.setenv("KYSCAN_DEFAULT_NAMESPACE", "prod")
    _violating_pods(wired_runtime)

    fixed = apply_policies.run({"policySets": "pod-security", "namespace_exclude": ""})
    assert fixed["results"] == []
    assert fixed["message"] == "No policies applied"

    everywhere = apply_policies.run({"policySets": "pod-security", "namespace": "all", "namespace_exclude": ""})
    assert {r["resources"][0]["name"] for r in everywhere["results"]} >= {"root", "system"}
    assert everywhere["scan"]["namespace"] == "all"


def test_apply_policies_accepts_a_policy_directory_but_not_a_url(
    wired_runtime: FakeClusterClient, tmp_path: Path
) -> None:
    _violating_pods(wired_runtime)
    (tmp_path / "privileged.yaml").write_text(
        bundles.bundle_text("pod-security").split("\n---\n")[0], encoding="utf-8"
    )

    payload = apply_policies.run({"policySets": str(tmp_path)})
    assert {r["resources"][0]["name"] for r in payload["results"]} == {"root"}

    with pytest.raises(SourceError):
        apply_policies.run({"policySets": "https://example.com/policies/pod-security.yaml"})


def test_apply_policies_without_matching_resources(wired_runtime: FakeClusterClient) -> None:
    payload = apply_policies.run({"policySets": "pod-security"})
    assert payload["results"] == []
    assert payload["message"] == "No policies applied"


def test_apply_request_accepts_legacy_field_names(
    wired_runtime: FakeClusterClient, tmp_path: Path
) -> None:
    policy = tmp_path / "labels.yaml"
    policy.write_text(
        """
apiVersion: kyverno.io/v1
kind: ClusterPolicy
metadata: {name: require-app}
spec:
  rules:
  - name: app
    match: {resources: {kinds: [Pod]}}
    validate: {message: app label, pattern: {metadata: {labels: {app: "?*"}}}}
""",
        encoding="utf-8",
    )
    wired_runtime.add("pods", pod("web", "dev", labels={"app": "web"}), pod("db", "dev"))

    payload = apply_request.run(
        {
            "policyPaths": [str(policy)],
            "resourceQueries": [{"kind": "Pod", "namespace": "dev"}],
            "kubeconfigPath": "",
        }
    )

    statuses = {row["resource"]["name"]: row["rules"][0]["status"] for row in payload["results"]}
    assert statuses == {"web": "pass", "db": "fail"}
    assert len(payload["resources"]) == 2


def test_apply_request_rejects_empty_queries(wired_runtime: FakeClusterClient) -> None:
    with pytest.raises(ConfigurationError, match="at least one resource query"):
        apply_request.run({"policySources": ["pod-security"], "resourceQueries": []})


def test_show_violations_without_kyverno(wired_runtime: FakeClusterClient) -> None:
    payload = show_violations.run({})
    assert payload["installed"] is False
    assert "helm install" in payload["guidance"]
    assert payload["results"] == []


def test_show_violations_reads_reports(wired_runtime: FakeClusterClient) -> None:
    wired_runtime.serve_group(POLICY_REPORT_GROUP, "v1alpha2", "policyreports")
    wired_runtime.add(
        "policyreports",
        {
            "metadata": {"name": "r1", "namespace": "team"},
            "summary": {"fail": 1},
            "results": [
                {
                    "policy": "require-labels",
                    "rule": "check-for-labels",
                    "result": "fail",
                    "resources": [{"apiVersion": "v1", "kind": "Pod", "name": "web"}],
                }
            ],
        },
    )

    payload = show_violations.run({"namespace": "team", "namespace_exclude": []})

    assert payload["installed"] is True
    assert payload["summary"]["fail"] == 1
    assert payload["results"][0]["resources"][0]["namespace"] == "team"


def test_runtime_factories_reset_to_defaults() -> None:
    seen = []
    runtime.set_engine_factory(lambda settings: seen.append(settings) or "engine")
    try:
        assert runtime.engine() == "engine"
        assert seen[0].namespace_mode is NamespaceMode.ALL
    finally:
        runtime.set_engine_factory(None)
    assert runtime._engine_factory.__name__ == "from_settings"

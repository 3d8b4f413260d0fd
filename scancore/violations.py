"""Read non-passing results from in-cluster ``wgpolicyk8s.io`` policy reports."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from scancore.errors import CapabilityMissingError
from scancore.interfaces import ClusterClient
from scancore.models import ReportResult, ResourceIdentity, ResourceLocator, RuleStatus
from scancore.report import VIOLATION_STATUSES, parse_namespace_excludes

__all__ = ["KYVERNO_HELM_INSTRUCTIONS", "POLICY_REPORT_GROUP", "ViolationCollector"]

LOGGER = logging.getLogger(__name__)

POLICY_REPORT_GROUP = "wgpolicyk8s.io"
ALL_NAMESPACES = "all"

KYVERNO_HELM_INSTRUCTIONS = """Kyverno is not installed in the cluster.

Install Kyverno using Helm:

1. Add the Kyverno Helm repository:
   helm repo add kyverno https://kyverno.github.io/kyverno/

2. Update the local Helm chart repository cache:
   helm repo update

3. Install Kyverno in the kyverno namespace (creates it if it doesn't exist):
   helm install kyverno kyverno/kyverno --namespace kyverno --create-namespace

4. (Optional) Install the Kyverno policies for pod security standards:
   helm install kyverno-policies kyverno/kyverno-policies --namespace kyverno

After installation, wait until all Kyverno pods are running before re-running this tool."""


class ViolationCollector:
    """Collect ``fail``/``error``/``warn`` entries from PolicyReports.

    Namespaced reports are read from one namespace (``"all"`` reads every
    namespace); ClusterPolicyReports are always read.  Reports in excluded
    namespaces, and reports whose summary shows no failures or errors, are
    skipped.
    """

    def __init__(self, client: ClusterClient) -> None:
        self._client = client

    def collect(
        self,
        namespace: str = "default",
        exclude: str | Iterable[str] | None = "kube-system,kyverno",
    ) -> list[ReportResult]:
        report_locator, cluster_locator = self._discover()
        excluded = parse_namespace_excludes(exclude)
        scope = "" if namespace == ALL_NAMESPACES else (namespace or "default")

        reports = list(self._client.list(report_locator, namespace=scope))
        if cluster_locator is not None:
            reports.extend(self._client.list(cluster_locator))

        results: list[ReportResult] = []
        for report in reports:
            metadata = report.get("metadata") or {}
            report_namespace = str(metadata.get("namespace") or "")
            if report_namespace in excluded:
                continue
            summary = report.get("summary") or {}
            if not summary.get("fail") and not summary.get("error"):
                continue
            for entry in report.get("results") or []:
                converted = _to_result(entry, report_namespace)
                if converted is not None:
                    results.append(converted)
        LOGGER.debug("Collected %d violation(s) from %d report(s)", len(results), len(reports))
        return results

    def _discover(self) -> tuple[ResourceLocator, ResourceLocator | None]:
        served = self._client.server_resources(POLICY_REPORT_GROUP)
        for version, resources in served.items():
            if "policyreports" not in resources:
                continue
            cluster = None
            if "clusterpolicyreports" in resources:
                cluster = ResourceLocator(
                    POLICY_REPORT_GROUP, version, "clusterpolicyreports", namespaced=False
                )
            return ResourceLocator(POLICY_REPORT_GROUP, version, "policyreports"), cluster
        raise CapabilityMissingError(
            "no PolicyReport CRD found", guidance=KYVERNO_HELM_INSTRUCTIONS
        )


def _to_result(entry: Mapping[str, Any], report_namespace: str) -> ReportResult | None:
    if not isinstance(entry, Mapping):
        return None
    status = RuleStatus.parse(entry.get("result"))
    if status not in VIOLATION_STATUSES:
        return None
    references = entry.get("resources") or [{}]
    reference = references[0] if isinstance(references[0], Mapping) else {}
    identity = ResourceIdentity.from_mapping(reference)
    if not identity.namespace and report_namespace:
        identity = ResourceIdentity(
            api_version=identity.api_version,
            kind=identity.kind,
            namespace=report_namespace,
            name=identity.name,
            uid=identity.uid,
        )
    timestamp = entry.get("timestamp") or {}
    return ReportResult(
        policy=str(entry.get("policy") or ""),
        rule=str(entry.get("rule") or ""),
        resource=identity,
        result=status,
        message=str(entry.get("message") or ""),
        scored=bool(entry.get("scored", True)),
        source=str(entry.get("source") or "kyverno"),
        category=str(entry.get("category") or ""),
        severity=str(entry.get("severity") or ""),
        timestamp=int(timestamp.get("seconds") or 0) if isinstance(timestamp, Mapping) else 0,
    )

"""``kyverno.show.violations``: read violations from in-cluster PolicyReports."""

from __future__ import annotations

from typing import Any

from scancore.cancellation import current_token
from scancore.config import DEFAULT_NAMESPACE_EXCLUDE
from scancore.errors import CapabilityMissingError
from scancore.report import summarize
from scancore.violations import ViolationCollector

from . import runtime


def run(payload: dict[str, Any]) -> dict[str, Any]:
    namespace = str(payload.get("namespace") or "default")
    namespace_exclude = payload.get("namespace_exclude")
    if namespace_exclude is None:
        namespace_exclude = DEFAULT_NAMESPACE_EXCLUDE

    token = current_token()
    token.raise_if_cancelled("show violations")
    collector = ViolationCollector(runtime.cluster_client())
    try:
        results = collector.collect(namespace, namespace_exclude)
    except CapabilityMissingError as exc:
        return {"installed": False, "guidance": exc.guidance, "results": []}
    token.raise_if_cancelled("show violations")

    return {
        "installed": True,
        "results": [result.as_dict() for result in results],
        "summary": summarize(results),
    }

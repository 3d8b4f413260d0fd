"""``kyverno.apply.policies``: scan the cluster with a packaged policy set."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from scancore import bundles
from scancore.cancellation import current_token
from scancore.config import DEFAULT_NAMESPACE_EXCLUDE, NamespaceMode
from scancore.report import VIOLATION_STATUSES, parse_namespace_excludes, summarize

from . import runtime

LOGGER = logging.getLogger(__name__)

ALL_NAMESPACES = "all"


def run(payload: dict[str, Any]) -> dict[str, Any]:
    policy_set = str(payload.get("policySets") or bundles.ALL_BUNDLES)
    namespace = str(payload.get("namespace") or "")
    namespace_exclude = payload.get("namespace_exclude")
    if namespace_exclude is None:
        namespace_exclude = DEFAULT_NAMESPACE_EXCLUDE
    elif not isinstance(namespace_exclude, str):
        namespace_exclude = ",".join(namespace_exclude)
    git_branch = str(payload.get("gitBranch") or "main")

    settings = runtime.settings()
    if namespace == ALL_NAMESPACES:
        settings = replace(settings, namespace_mode=NamespaceMode.ALL)
        namespace = ""

    engine = runtime.engine(settings)
    report = engine.scan(
        [policy_set],
        namespace=namespace,
        exclude_namespaces=parse_namespace_excludes(namespace_exclude),
        violations_only=False,
        audit_warn=settings.audit_warn,
        cancel=current_token(),
    )
    violations = [result for result in report if result.result in VIOLATION_STATUSES]
    LOGGER.info(
        "Policy set %s produced %d result(s), %d violation(s)",
        policy_set,
        len(report),
        len(violations),
    )

    if not report:
        message = "No policies applied"
    elif not violations:
        message = "No violations found"
    else:
        message = f"{len(violations)} violation(s) found"

    return {
        "results": [result.as_dict() for result in violations],
        "summary": summarize(report),
        "message": message,
        "scan": {
            "policySets": policy_set,
            "namespace": payload.get("namespace") or "",
            "namespaceExclude": str(namespace_exclude),
            "gitBranch": git_branch,
        },
    }

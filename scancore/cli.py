from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from scancore import bundles
from scancore.cluster import connect
from scancore.config import ScanSettings
from scancore.engine import PolicyEngine
from scancore.errors import CapabilityMissingError, ScanError
from scancore.loader import PolicyLoader
from scancore.models import ResourceQuery
from scancore.report import parse_namespace_excludes, summarize
from scancore.schemas import ApplyRequest, ResourceQueryPayload
from scancore.violations import ViolationCollector


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kyscan")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level for diagnostic output on stderr.",
    )
    parser.add_argument(
        "--kubeconfig",
        help="Kubeconfig path (defaults to KYSCAN_KUBECONFIG, then in-cluster, then ~/.kube/config).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "bundles",
        help="List packaged policy bundles and the policies they contain.",
    ).set_defaults(func=_cmd_bundles)

    apply = subparsers.add_parser(
        "apply",
        help="Apply policies to explicitly queried resources.",
    )
    apply.add_argument(
        "--policy",
        dest="policies",
        action="append",
        required=True,
        help="Policy file, directory or bundle key (repeatable).",
    )
    apply.add_argument(
        "--resource",
        dest="resources",
        action="append",
        required=True,
        help="Resource query as apiVersion/Kind[/namespace[/name]] (repeatable).",
    )
    apply.add_argument("--selector", default="", help="Label selector added to every query.")
    apply.set_defaults(func=_cmd_apply)

    scan = subparsers.add_parser(
        "scan",
        help="Scan the cluster with policies and print a policy report.",
    )
    scan.add_argument(
        "--policy",
        dest="policies",
        action="append",
        help="Policy file, directory or bundle key (repeatable; default: all).",
    )
    scan.add_argument("--namespace", default="", help="Namespace to scan ('' follows KYSCAN_NAMESPACE_MODE).")
    scan.add_argument("--exclude", default=None, help="Comma-separated namespaces to skip.")
    scan.add_argument(
        "--all-results",
        action="store_true",
        help="Include pass and skip results, not only violations.",
    )
    scan.add_argument(
        "--audit-warn",
        action="store_true",
        default=None,
        help="Report failures of audit-mode policies as warnings.",
    )
    scan.set_defaults(func=_cmd_scan)

    violations = subparsers.add_parser(
        "violations",
        help="Show violations recorded in in-cluster PolicyReports.",
    )
    violations.add_argument("--namespace", default="default", help="Namespace ('all' for every namespace).")
    violations.add_argument("--exclude", default=None, help="Comma-separated namespaces to skip.")
    violations.set_defaults(func=_cmd_violations)

    return parser


def _settings(args: argparse.Namespace) -> ScanSettings:
    settings = ScanSettings.from_env()
    if args.kubeconfig:
        return replace(settings, kubeconfig=args.kubeconfig)
    return settings


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _cmd_bundles(_: argparse.Namespace) -> int:
    loader = PolicyLoader()
    entries = []
    for key in bundles.available_bundles():
        policies = loader.load(key)
        entries.append({"name": key, "policies": [policy.name for policy in policies]})
    _emit({"bundles": entries})
    return 0


def _parse_resource(raw: str, selector: str) -> ResourceQuery:
    # The kind is the first capitalised segment; everything before it is the apiVersion.
    parts = raw.split("/")
    position = next((index for index, part in enumerate(parts) if part[:1].isupper()), None)
    if position is None:
        raise SystemExit(f"invalid --resource '{raw}': expected apiVersion/Kind[/namespace[/name]]")
    rest = parts[position + 1 :]
    payload = ResourceQueryPayload(
        apiVersion="/".join(parts[:position]),
        kind=parts[position],
        namespace=rest[0] if rest else "",
        name=rest[1] if len(rest) > 1 else "",
        labelSelector=selector,
    )
    return payload.to_query()


def _cmd_apply(args: argparse.Namespace) -> int:
    engine = PolicyEngine.from_settings(_settings(args))
    queries = [_parse_resource(raw, args.selector) for raw in args.resources]
    request = ApplyRequest.parse(
        {
            "policySources": list(args.policies),
            "resourceQueries": [query.as_dict() for query in queries],
        }
    )
    response = engine.apply(request)
    _emit(response.to_dict())
    return 0


def _cmd_scan(args: argparse.Namespace) -> int:
    settings = _settings(args)
    engine = PolicyEngine.from_settings(settings)
    exclude = settings.namespace_exclude if args.exclude is None else args.exclude
    audit_warn = settings.audit_warn if args.audit_warn is None else args.audit_warn
    results = engine.scan(
        args.policies or [bundles.ALL_BUNDLES],
        namespace=args.namespace,
        exclude_namespaces=parse_namespace_excludes(exclude),
        violations_only=not args.all_results,
        audit_warn=audit_warn,
    )
    _emit({"results": [result.as_dict() for result in results], "summary": summarize(results)})
    return 0


def _cmd_violations(args: argparse.Namespace) -> int:
    settings = _settings(args)
    exclude = settings.namespace_exclude if args.exclude is None else args.exclude
    client = connect(
        settings.kubeconfig,
        context=settings.kube_context,
        request_timeout_s=settings.request_timeout_s,
    )
    try:
        results = ViolationCollector(client).collect(args.namespace, exclude)
    except CapabilityMissingError as exc:
        print(exc.guidance, file=sys.stderr)
        return 2
    _emit({"results": [result.as_dict() for result in results], "summary": summarize(results)})
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))
    try:
        return args.func(args)
    except ScanError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

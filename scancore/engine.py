"""Application orchestration and the end-to-end scan pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial

from scancore import registry
from scancore.cancellation import CancellationToken
from scancore.cluster import connect
from scancore.config import ScanSettings
from scancore.errors import ConfigurationError, ScanCancelledError, SourceError
from scancore.evaluator import PatternEvaluator
from scancore.interfaces import RuleEvaluator
from scancore.loader import PolicyLoader
from scancore.models import (
    PolicyDefinition,
    PolicyRule,
    PolicyTraits,
    ReportResult,
    ResolvedResource,
    ResourceQuery,
    RuleKind,
    RuleOutcome,
    RuleStatus,
)
from scancore.report import ClassifyOptions, ReportClassifier
from scancore.resolver import ResolverOptions, ResourceResolver
from scancore.schemas import (
    ApplyRequest,
    ApplyResponse,
    PolicyApplicationResult,
    ResourceInfo,
    RuleResult,
)

__all__ = ["ApplicationOrchestrator", "PolicyEngine", "derive_queries"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _PlannedRule:
    policy: PolicyDefinition
    rule: PolicyRule
    kind: RuleKind
    traits: PolicyTraits


class ApplicationOrchestrator:
    """Evaluate every rule of every policy against every resource.

    Work is split into ``(resource, policy)`` units; with ``max_workers > 1``
    units run on a thread pool and outcomes are reassembled in
    resource-major, policy, rule order.
    """

    def __init__(self, evaluator: RuleEvaluator, *, max_workers: int = 1) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be a positive integer")
        self._evaluator = evaluator
        self._max_workers = max_workers

    def apply(
        self,
        policies: Sequence[PolicyDefinition],
        resources: Sequence[ResolvedResource],
        *,
        cancel: CancellationToken | None = None,
    ) -> list[RuleOutcome]:
        if not policies or not resources:
            return []
        token = cancel or CancellationToken()
        token.raise_if_cancelled("policy application")

        plan = [
            [
                _PlannedRule(policy=policy, rule=rule, kind=rule.kind, traits=policy.traits)
                for rule in policy.rules
            ]
            for policy in policies
        ]
        units = [(resource, rules) for resource in resources for rules in plan]
        run = partial(self._apply_unit, token=token)

        if self._max_workers == 1 or len(units) == 1:
            slots = [run(resource, rules) for resource, rules in units]
        else:
            workers = min(self._max_workers, len(units))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="orchestrator") as pool:
                futures = [pool.submit(run, resource, rules) for resource, rules in units]
                try:
                    slots = [future.result() for future in futures]
                except ScanCancelledError:
                    token.cancel("policy application cancelled")
                    for future in futures:
                        future.cancel()
                    raise

        token.raise_if_cancelled("policy application")
        outcomes = [outcome for slot in slots for outcome in slot]
        LOGGER.debug(
            "Applied %d policy(ies) to %d resource(s): %d outcome(s)",
            len(policies),
            len(resources),
            len(outcomes),
        )
        return outcomes

    def _apply_unit(
        self,
        resource: ResolvedResource,
        rules: Sequence[_PlannedRule],
        *,
        token: CancellationToken,
    ) -> list[RuleOutcome]:
        identity = resource.identity()
        outcomes: list[RuleOutcome] = []
        for planned in rules:
            token.raise_if_cancelled(f"policy {planned.policy.name}")
            try:
                verdict = self._evaluator.evaluate(
                    planned.policy, planned.rule, resource, cancel=token
                )
                status, message = verdict.status, verdict.message
            except ScanCancelledError:
                raise
            except Exception as exc:
                LOGGER.warning(
                    "Rule %s/%s failed on %s %s/%s: %s",
                    planned.policy.name,
                    planned.rule.name,
                    identity.kind,
                    identity.namespace,
                    identity.name,
                    exc,
                )
                status, message = RuleStatus.ERROR, str(exc)
            outcomes.append(
                RuleOutcome(
                    resource=identity,
                    policy=planned.policy.name,
                    rule=planned.rule.name,
                    status=status,
                    message=message,
                    rule_kind=planned.kind,
                    traits=planned.traits,
                )
            )
        return outcomes


class PolicyEngine:
    """Compose resolver, loader, orchestrator and classifier per request."""

    def __init__(
        self,
        loader: PolicyLoader,
        resolver: ResourceResolver,
        orchestrator: ApplicationOrchestrator,
        classifier: ReportClassifier | None = None,
    ) -> None:
        self.loader = loader
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.classifier = classifier or ReportClassifier()

    @classmethod
    def from_settings(cls, settings: ScanSettings | None = None) -> PolicyEngine:
        settings = settings or ScanSettings.from_env()

        def factory(credential: str | None):
            return connect(
                credential,
                context=settings.kube_context,
                request_timeout_s=settings.request_timeout_s,
            )

        return cls(
            loader=PolicyLoader(),
            resolver=ResourceResolver(factory, options=ResolverOptions.from_settings(settings)),
            orchestrator=ApplicationOrchestrator(
                PatternEvaluator(), max_workers=settings.evaluator_workers
            ),
            classifier=ReportClassifier(),
        )

    def apply(self, request: ApplyRequest, *, cancel: CancellationToken | None = None) -> ApplyResponse:
        token = cancel or CancellationToken()
        policies = self.loader.load_many(request.policy_sources)
        resources = self.resolver.resolve(
            request.queries(), request.target_credential, cancel=token
        )
        outcomes = self.orchestrator.apply(policies, resources, cancel=token)
        return ApplyResponse(
            results=tuple(_group_outcomes(outcomes, policies)),
            resources=tuple(resource.to_dict() for resource in resources),
        )

    def scan(
        self,
        policy_sources: Sequence[str],
        *,
        namespace: str = "",
        exclude_namespaces: Iterable[str] = (),
        credential: str | None = None,
        violations_only: bool = True,
        audit_warn: bool = False,
        cancel: CancellationToken | None = None,
    ) -> list[ReportResult]:
        """Scan the cluster resources the loaded policies match.

        Queries are derived from the kinds named in the rules' ``match``
        blocks; ``namespace`` scopes namespaced kinds (empty follows the
        resolver's namespace mode).
        """

        token = cancel or CancellationToken()
        if not policy_sources:
            raise SourceError("no policy sources provided")
        policies = self.loader.load_many(policy_sources)
        queries = derive_queries(policies, namespace=namespace)
        if not queries:
            LOGGER.info("Loaded policies match no known resource kinds")
            return []
        resources = self.resolver.resolve(queries, credential, cancel=token)
        outcomes = self.orchestrator.apply(policies, resources, cancel=token)
        options = ClassifyOptions(
            audit_warn=audit_warn,
            violations_only=violations_only,
            exclude_namespaces=frozenset(exclude_namespaces),
        )
        return self.classifier.classify(outcomes, options)


def derive_queries(policies: Iterable[PolicyDefinition], *, namespace: str = "") -> list[ResourceQuery]:
    """Return the queries covering every known kind matched by ``policies``, in first-seen order.

    A namespaced kind is listed in ``namespace`` when the caller gives one.
    Otherwise a ``ClusterPolicy`` needs it cluster-wide and a ``Policy`` only
    in its own namespace; a cluster-wide query absorbs the narrower ones so no
    resource is fetched twice.  ``PatternEvaluator`` still keeps ``Policy``
    rules inside their namespace.
    """

    scopes: dict[tuple[str, str], list[str]] = {}
    for policy in policies:
        for rule in policy.rules:
            for kind_ref in _match_kinds(rule):
                try:
                    api_version, locator = registry.lookup_kind(kind_ref)
                except ConfigurationError:
                    LOGGER.debug("Skipping kind %s of policy %s: no locator", kind_ref, policy.name)
                    continue
                if not locator.namespaced:
                    scoped = ""
                else:
                    scoped = namespace or policy.namespace
                wanted = scopes.setdefault((api_version, kind_ref.split("/")[-1]), [])
                if scoped not in wanted:
                    wanted.append(scoped)

    queries: list[ResourceQuery] = []
    for (api_version, kind), namespaces in scopes.items():
        if "" in namespaces:
            namespaces = [""]
        queries.extend(
            ResourceQuery(api_version=api_version, kind=kind, namespace=scoped) for scoped in namespaces
        )
    return queries


def _match_kinds(rule: PolicyRule) -> list[str]:
    match = rule.match
    filters = [match] if "resources" in match else []
    filters.extend(match.get("any") or [])
    filters.extend(match.get("all") or [])
    kinds: list[str] = []
    for entry in filters:
        description = entry.get("resources") if isinstance(entry, Mapping) else None
        for kind in (description or {}).get("kinds") or []:
            if isinstance(kind, str) and kind not in kinds:
                kinds.append(kind)
    return kinds


def _group_outcomes(
    outcomes: Sequence[RuleOutcome],
    policies: Sequence[PolicyDefinition],
) -> list[PolicyApplicationResult]:
    # Outcomes arrive resource-major, then policy, then rule; slice per policy.
    results: list[PolicyApplicationResult] = []
    cursor = 0
    while cursor < len(outcomes):
        for policy in policies:
            rows = outcomes[cursor : cursor + len(policy.rules)]
            cursor += len(policy.rules)
            if not rows:
                continue
            resource = rows[0].resource
            results.append(
                PolicyApplicationResult(
                    policy=policy.name,
                    resource=ResourceInfo(
                        apiVersion=resource.api_version,
                        kind=resource.kind,
                        namespace=resource.namespace,
                        name=resource.name,
                        uid=resource.uid,
                    ),
                    rules=tuple(
                        RuleResult(
                            name=row.rule,
                            type=row.rule_kind.value,
                            message=row.message,
                            status=_status_text(row.status),
                        )
                        for row in rows
                    ),
                    validationFailureAction=policy.failure_action.value,
                )
            )
    return results


def _status_text(status: RuleStatus | str) -> str:
    return status.value if isinstance(status, RuleStatus) else str(status)

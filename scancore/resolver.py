"""Resource resolution: resource queries in, resolved cluster resources out."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from scancore import registry
from scancore.cancellation import CancellationToken
from scancore.config import NamespaceMode, ScanSettings
from scancore.errors import ConfigurationError, ScanCancelledError, ScanError, TransportError
from scancore.interfaces import ClusterClient
from scancore.models import ResolvedResource, ResourceLocator, ResourceQuery

__all__ = ["ResolverOptions", "ResourceResolver"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResolverOptions:
    max_workers: int = 4
    namespace_mode: NamespaceMode = NamespaceMode.ALL
    default_namespace: str = "default"
    default_credential: str | None = None

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError("max_workers must be a positive integer")

    @classmethod
    def from_settings(cls, settings: ScanSettings) -> ResolverOptions:
        return cls(
            max_workers=settings.resolver_workers,
            namespace_mode=settings.namespace_mode,
            default_namespace=settings.default_namespace,
            default_credential=settings.kubeconfig,
        )


@dataclass(frozen=True, slots=True)
class _Plan:
    index: int
    query: ResourceQuery
    locator: ResourceLocator
    namespace: str


class ResourceResolver:
    """Fetch the resources described by a batch of :class:`ResourceQuery`.

    Every query is mapped to a locator before any network traffic; the first
    failure aborts the whole call.  Queries run concurrently on a bounded pool
    and their results are returned in query order, without deduplication.
    """

    def __init__(
        self,
        client_factory: Callable[[str | None], ClusterClient],
        *,
        options: ResolverOptions | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._options = options or ResolverOptions()

    @property
    def options(self) -> ResolverOptions:
        return self._options

    def resolve(
        self,
        queries: Sequence[ResourceQuery],
        credential: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[ResolvedResource]:
        token = cancel or CancellationToken()
        plans = [self._plan(index, query) for index, query in enumerate(queries)]
        if not plans:
            return []
        token.raise_if_cancelled("resource resolution")

        effective_credential = credential or self._options.default_credential
        try:
            cluster = self._client_factory(effective_credential)
        except ScanError:
            raise
        except Exception as exc:
            raise ConfigurationError(f"failed to create cluster client: {exc}") from exc

        slots: list[list[ResolvedResource] | None] = [None] * len(plans)
        workers = min(self._options.max_workers, len(plans))
        # Workers poll this token so a failing query stops the others early.
        abort = _LinkedToken(token)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolver") as pool:
            futures: dict[Future[list[ResolvedResource]], _Plan] = {
                pool.submit(self._fetch, cluster, plan, abort): plan for plan in plans
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [future for future in done if future.exception() is not None]
            if failed:
                abort.cancel("sibling query failed")
                for future in pending:
                    future.cancel()
                wait(pending)
                error = _first_error(failed, futures)
                raise error
            for future, plan in futures.items():
                slots[plan.index] = future.result()

        token.raise_if_cancelled("resource resolution")
        resources = [resource for slot in slots for resource in slot or ()]
        LOGGER.debug("Resolved %d resource(s) from %d query(ies)", len(resources), len(plans))
        return resources

    def _plan(self, index: int, query: ResourceQuery) -> _Plan:
        try:
            locator = registry.lookup(query.api_version, query.kind)
        except ConfigurationError as exc:
            raise ConfigurationError(f"error processing query {index}: {exc}") from exc
        if not locator.namespaced:
            namespace = ""
        elif query.namespace:
            namespace = query.namespace
        elif self._options.namespace_mode is NamespaceMode.FIXED:
            namespace = self._options.default_namespace
        else:
            namespace = ""
        return _Plan(index=index, query=query, locator=locator, namespace=namespace)

    def _fetch(
        self,
        cluster: ClusterClient,
        plan: _Plan,
        token: CancellationToken,
    ) -> list[ResolvedResource]:
        token.raise_if_cancelled(f"query {plan.index}")
        query = plan.query
        try:
            if query.name:
                documents = [
                    cluster.get(plan.locator, namespace=plan.namespace, name=query.name)
                ]
            else:
                documents = cluster.list(
                    plan.locator,
                    namespace=plan.namespace,
                    label_selector=query.label_selector,
                    field_selector=query.field_selector,
                )
        except ScanCancelledError:
            raise
        except ScanError as exc:
            raise type(exc)(
                f"error processing query {plan.index} ({query.describe()}): {exc}"
            ) from exc
        except Exception as exc:
            raise TransportError(
                f"error processing query {plan.index} ({query.describe()}): {exc}"
            ) from exc
        token.raise_if_cancelled(f"query {plan.index}")
        LOGGER.debug("Query %d (%s) returned %d item(s)", plan.index, query.describe(), len(documents))
        return [_as_resource(document, plan) for document in documents]


class _LinkedToken(CancellationToken):
    """Token that also reports the caller's token as cancelled."""

    def __init__(self, parent: CancellationToken) -> None:
        super().__init__()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._parent.cancelled:
            self.cancel(self._parent.reason or "cancelled")
        return super().cancelled


def _as_resource(source: Mapping[str, Any], plan: _Plan) -> ResolvedResource:
    document = dict(source)
    document.setdefault("apiVersion", plan.locator.api_version)
    document.setdefault("kind", plan.query.kind)
    return ResolvedResource(document)


def _first_error(
    failed: list[Future[list[ResolvedResource]]],
    futures: dict[Future[list[ResolvedResource]], _Plan],
) -> BaseException:
    # Prefer a real failure over the cancellations it triggered, then lowest index.
    ordered = sorted(failed, key=lambda future: futures[future].index)
    for future in ordered:
        error = future.exception()
        if error is not None and not isinstance(error, ScanCancelledError):
            return error
    error = ordered[0].exception()
    assert error is not None
    return error

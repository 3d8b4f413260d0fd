"""Protocols for the collaborators the scan pipeline depends on."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from scancore.cancellation import CancellationToken
from scancore.models import (
    PolicyDefinition,
    PolicyRule,
    ResolvedResource,
    ResourceLocator,
    RuleStatus,
)

__all__ = ["ClientFactory", "ClusterClient", "RuleEvaluator", "RuleVerdict"]


@runtime_checkable
class ClusterClient(Protocol):
    """Read-only access to the cluster API.

    Implementations raise :class:`~scancore.errors.NotFoundError` for a named
    item that does not exist and :class:`~scancore.errors.TransportError` for
    any other API failure.
    """

    def get(self, locator: ResourceLocator, *, namespace: str, name: str) -> Mapping[str, Any]:
        """Fetch a single object."""

    def list(
        self,
        locator: ResourceLocator,
        *,
        namespace: str = "",
        label_selector: str = "",
        field_selector: str = "",
    ) -> list[Mapping[str, Any]]:
        """List objects of a collection; items carry ``apiVersion`` and ``kind``."""

    def server_resources(self, group: str) -> Mapping[str, list[str]]:
        """Return ``{version: [resource, ...]}`` served for ``group`` (empty when absent)."""


class ClientFactory(Protocol):
    def __call__(self, credential: str | None) -> ClusterClient: ...


@dataclass(frozen=True, slots=True)
class RuleVerdict:
    status: RuleStatus | str
    message: str = ""


@runtime_checkable
class RuleEvaluator(Protocol):
    """Evaluates one rule against one resource.

    Failures are reported by raising :class:`~scancore.errors.EvaluationError`.
    """

    def evaluate(
        self,
        policy: PolicyDefinition,
        rule: PolicyRule,
        resource: ResolvedResource,
        *,
        cancel: CancellationToken | None = None,
    ) -> RuleVerdict: ...

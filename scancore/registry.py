"""Process-wide lookup table from ``(apiVersion, kind)`` to a resource locator.

The table is built once at import time and exposed read-only, so concurrent
readers need no locking.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from scancore.errors import ConfigurationError
from scancore.models import CORE_API_VERSION, ResourceLocator, split_api_version

__all__ = ["list_locators", "lookup", "lookup_kind"]

# (apiVersion, kind, resource, namespaced)
_KNOWN_KINDS: tuple[tuple[str, str, str, bool], ...] = (
    ("v1", "Pod", "pods", True),
    ("v1", "Service", "services", True),
    ("v1", "Namespace", "namespaces", False),
    ("v1", "Node", "nodes", False),
    ("v1", "ConfigMap", "configmaps", True),
    ("v1", "Secret", "secrets", True),
    ("v1", "ServiceAccount", "serviceaccounts", True),
    ("v1", "PersistentVolume", "persistentvolumes", False),
    ("v1", "PersistentVolumeClaim", "persistentvolumeclaims", True),
    ("apps/v1", "Deployment", "deployments", True),
    ("apps/v1", "StatefulSet", "statefulsets", True),
    ("apps/v1", "DaemonSet", "daemonsets", True),
    ("apps/v1", "ReplicaSet", "replicasets", True),
    ("batch/v1", "Job", "jobs", True),
    ("batch/v1", "CronJob", "cronjobs", True),
    ("networking.k8s.io/v1", "NetworkPolicy", "networkpolicies", True),
    ("networking.k8s.io/v1", "Ingress", "ingresses", True),
    ("rbac.authorization.k8s.io/v1", "Role", "roles", True),
    ("rbac.authorization.k8s.io/v1", "RoleBinding", "rolebindings", True),
    ("rbac.authorization.k8s.io/v1", "ClusterRole", "clusterroles", False),
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", "clusterrolebindings", False),
    ("storage.k8s.io/v1", "StorageClass", "storageclasses", False),
)


def _build_table() -> Mapping[tuple[str, str], ResourceLocator]:
    table: dict[tuple[str, str], ResourceLocator] = {}
    for api_version, kind, resource, namespaced in _KNOWN_KINDS:
        group, version = split_api_version(api_version)
        table[(api_version, kind)] = ResourceLocator(
            group=group,
            version=version,
            resource=resource,
            namespaced=namespaced,
        )
    return MappingProxyType(table)


_LOCATORS = _build_table()
_BY_KIND: Mapping[str, tuple[str, ResourceLocator]] = MappingProxyType(
    {kind: (api_version, locator) for (api_version, kind), locator in _LOCATORS.items()}
)


def lookup(api_version: str, kind: str) -> ResourceLocator:
    """Return the locator for ``(api_version, kind)``; ``""`` means ``v1``."""

    key = (api_version or CORE_API_VERSION, kind)
    try:
        return _LOCATORS[key]
    except KeyError as exc:
        raise ConfigurationError(
            f"no resource locator found for apiVersion={key[0]}, kind={kind}"
        ) from exc


def lookup_kind(kind_ref: str) -> tuple[str, ResourceLocator]:
    """Resolve a policy match kind (``Pod`` or ``apps/v1/Deployment``).

    Returns the canonical ``(apiVersion, locator)`` pair.
    """

    parts = kind_ref.split("/")
    kind = parts[-1]
    if len(parts) == 1 or parts[-2] == "*":
        entry = _BY_KIND.get(kind)
        if entry is None or (len(parts) == 3 and entry[1].group != parts[0]):
            raise ConfigurationError(f"no resource locator found for kind={kind_ref}")
        return entry
    api_version = "/".join(parts[:-1])
    return api_version, lookup(api_version, kind)


def list_locators() -> Iterable[tuple[str, str, ResourceLocator]]:
    return tuple(
        (api_version, kind, locator)
        for (api_version, kind), locator in sorted(_LOCATORS.items())
    )

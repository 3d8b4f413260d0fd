"""Cluster access through the official ``kubernetes`` client.

Only raw JSON is exchanged: every call goes through
:meth:`kubernetes.client.ApiClient.call_api` with ``response_type="object"``
so resources of any kind come back as plain mappings.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from scancore.errors import ConfigurationError, NotFoundError, TransportError
from scancore.models import ResourceLocator

__all__ = ["KubernetesClusterClient", "connect"]

LOGGER = logging.getLogger(__name__)

_AUTH_SETTINGS = ["BearerToken"]


class KubernetesClusterClient:
    """:class:`~scancore.interfaces.ClusterClient` backed by an ``ApiClient``."""

    def __init__(self, api_client: client.ApiClient, *, request_timeout_s: float = 30.0) -> None:
        self._api = api_client
        self._timeout = request_timeout_s

    def get(self, locator: ResourceLocator, *, namespace: str, name: str) -> Mapping[str, Any]:
        path = locator.path(namespace=namespace, name=name)
        try:
            return self._call(path)
        except NotFoundError as exc:
            where = f" in namespace {namespace}" if namespace else ""
            raise NotFoundError(f'{locator.resource} "{name}" not found{where}') from exc

    def list(
        self,
        locator: ResourceLocator,
        *,
        namespace: str = "",
        label_selector: str = "",
        field_selector: str = "",
    ) -> list[Mapping[str, Any]]:
        query: list[tuple[str, str]] = []
        if label_selector:
            query.append(("labelSelector", label_selector))
        if field_selector:
            query.append(("fieldSelector", field_selector))
        payload = self._call(locator.path(namespace=namespace), query=query)
        items = payload.get("items") or []
        api_version = str(payload.get("apiVersion") or locator.api_version)
        list_kind = str(payload.get("kind") or "")
        item_kind = list_kind[: -len("List")] if list_kind.endswith("List") else ""
        documents: list[Mapping[str, Any]] = []
        for item in items:
            if not isinstance(item, Mapping):
                continue
            document = dict(item)
            # List responses omit per-item type information.
            document.setdefault("apiVersion", api_version)
            if item_kind:
                document.setdefault("kind", item_kind)
            documents.append(document)
        return documents

    def server_resources(self, group: str) -> Mapping[str, list[str]]:
        groups = self._call("/apis").get("groups") or []
        served: dict[str, list[str]] = {}
        for entry in groups:
            if not isinstance(entry, Mapping) or entry.get("name") != group:
                continue
            for version in entry.get("versions") or []:
                group_version = version.get("groupVersion")
                if not group_version:
                    continue
                try:
                    resources = self._call(f"/apis/{group_version}").get("resources") or []
                except TransportError as exc:
                    LOGGER.warning("Discovery failed for %s: %s", group_version, exc)
                    continue
                served[str(version.get("version"))] = [
                    str(resource.get("name")) for resource in resources if resource.get("name")
                ]
        return served

    def _call(self, path: str, *, query: list[tuple[str, str]] | None = None) -> Mapping[str, Any]:
        LOGGER.debug("GET %s %s", path, query or "")
        try:
            payload = self._api.call_api(
                path,
                "GET",
                query_params=query or [],
                header_params={"Accept": "application/json"},
                response_type="object",
                auth_settings=_AUTH_SETTINGS,
                _return_http_data_only=True,
                _preload_content=True,
                _request_timeout=self._timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"{path} not found") from exc
            raise TransportError(
                f"GET {path} failed with HTTP {exc.status}: {exc.reason}"
            ) from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise TransportError(f"GET {path} failed: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise TransportError(f"GET {path} returned {type(payload).__name__}, expected object")
        return payload


def connect(
    credential: str | None = None,
    *,
    context: str | None = None,
    request_timeout_s: float = 30.0,
) -> KubernetesClusterClient:
    """Build a cluster client.

    An explicit kubeconfig path wins.  Without one the in-cluster service
    account is tried first, then the default kubeconfig (``$KUBECONFIG`` or
    ``~/.kube/config``).
    """

    configuration = client.Configuration()
    try:
        if credential:
            config.load_kube_config(
                config_file=credential,
                context=context,
                client_configuration=configuration,
                persist_config=False,
            )
        else:
            try:
                config.load_incluster_config(client_configuration=configuration)
                LOGGER.debug("Using in-cluster configuration")
            except ConfigException:
                config.load_kube_config(
                    context=context,
                    client_configuration=configuration,
                    persist_config=False,
                )
    except (ConfigException, OSError, TypeError) as exc:
        source = credential or "default kubeconfig"
        raise ConfigurationError(f"failed to load cluster credentials from {source}: {exc}") from exc
    return KubernetesClusterClient(
        client.ApiClient(configuration=configuration),
        request_timeout_s=request_timeout_s,
    )

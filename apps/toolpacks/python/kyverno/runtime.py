"""Process-wide wiring shared by the kyverno tool modules."""

from __future__ import annotations

import threading
from collections.abc import Callable

from scancore.cluster import connect
from scancore.config import ScanSettings
from scancore.engine import PolicyEngine
from scancore.interfaces import ClusterClient

EngineFactory = Callable[[ScanSettings], PolicyEngine]
ClientFactory = Callable[[ScanSettings], ClusterClient]

_LOCK = threading.Lock()
_engine_factory: EngineFactory = PolicyEngine.from_settings


def _default_client(settings: ScanSettings) -> ClusterClient:
    return connect(
        settings.kubeconfig,
        context=settings.kube_context,
        request_timeout_s=settings.request_timeout_s,
    )


_client_factory: ClientFactory = _default_client


def settings() -> ScanSettings:
    """Settings are re-read per call so ``--kubeconfig`` exports take effect."""

    return ScanSettings.from_env()


def engine(current: ScanSettings | None = None) -> PolicyEngine:
    with _LOCK:
        factory = _engine_factory
    return factory(current or settings())


def cluster_client(current: ScanSettings | None = None) -> ClusterClient:
    with _LOCK:
        factory = _client_factory
    return factory(current or settings())


def set_engine_factory(factory: EngineFactory | None) -> None:
    """Override how engines are built; ``None`` restores the default."""

    global _engine_factory
    with _LOCK:
        _engine_factory = factory or PolicyEngine.from_settings


def set_client_factory(factory: ClientFactory | None) -> None:
    global _client_factory
    with _LOCK:
        _client_factory = factory or _default_client

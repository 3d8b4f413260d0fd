"""Runtime settings for the scan pipeline, read from ``KYSCAN_*`` variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

__all__ = ["DEFAULT_NAMESPACE_EXCLUDE", "NamespaceMode", "ScanSettings"]

DEFAULT_NAMESPACE_EXCLUDE = "kube-system,kyverno"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class NamespaceMode(Enum):
    """How a query with an empty namespace is scoped."""

    ALL = "all"
    FIXED = "fixed"

    @classmethod
    def from_str(cls, raw: str | None) -> NamespaceMode:
        if not raw:
            return cls.ALL
        normalised = raw.strip().lower()
        for mode in cls:
            if mode.value == normalised:
                return mode
        raise ValueError(f"unknown namespace mode '{raw}' (expected 'all' or 'fixed')")


@dataclass(frozen=True, slots=True)
class ScanSettings:
    kubeconfig: str | None = None
    kube_context: str | None = None
    resolver_workers: int = 4
    evaluator_workers: int = 1
    namespace_mode: NamespaceMode = NamespaceMode.ALL
    default_namespace: str = "default"
    namespace_exclude: str = DEFAULT_NAMESPACE_EXCLUDE
    audit_warn: bool = False
    request_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.resolver_workers <= 0:
            raise ValueError("resolver_workers must be a positive integer")
        if self.evaluator_workers <= 0:
            raise ValueError("evaluator_workers must be a positive integer")
        if self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be positive")
        if self.namespace_mode is NamespaceMode.FIXED and not self.default_namespace:
            raise ValueError("default_namespace is required when namespace_mode is 'fixed'")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ScanSettings:
        env = os.environ if environ is None else environ
        return cls(
            kubeconfig=env.get("KYSCAN_KUBECONFIG") or None,
            kube_context=env.get("KYSCAN_KUBE_CONTEXT") or None,
            resolver_workers=int(env.get("KYSCAN_RESOLVER_WORKERS", "4")),
            evaluator_workers=int(env.get("KYSCAN_EVALUATOR_WORKERS", "1")),
            namespace_mode=NamespaceMode.from_str(env.get("KYSCAN_NAMESPACE_MODE")),
            default_namespace=env.get("KYSCAN_DEFAULT_NAMESPACE", "default"),
            namespace_exclude=env.get("KYSCAN_NAMESPACE_EXCLUDE", DEFAULT_NAMESPACE_EXCLUDE),
            audit_warn=env.get("KYSCAN_AUDIT_WARN", "").strip().lower() in _TRUE_VALUES,
            request_timeout_s=float(env.get("KYSCAN_REQUEST_TIMEOUT", "30")),
        )

"""Curated policy sets shipped with the package."""

from __future__ import annotations

from importlib import resources

__all__ = ["ALL_BUNDLES", "BUNDLE_FILES", "available_bundles", "bundle_text", "is_bundle"]

ALL_BUNDLES = "all"

BUNDLE_FILES: dict[str, str] = {
    "pod-security": "pod-security.yaml",
    "rbac-best-practices": "rbac-best-practices.yaml",
    "kubernetes-best-practices": "kubernetes-best-practices.yaml",
}


def available_bundles() -> tuple[str, ...]:
    return (*BUNDLE_FILES, ALL_BUNDLES)


def is_bundle(key: str) -> bool:
    return key == ALL_BUNDLES or key in BUNDLE_FILES


def bundle_text(key: str) -> str:
    """Return the YAML stream for ``key``; ``all`` joins every bundle in order."""

    if key == ALL_BUNDLES:
        return "\n---\n".join(_read(name).strip() for name in BUNDLE_FILES.values()) + "\n"
    try:
        filename = BUNDLE_FILES[key]
    except KeyError as exc:
        raise KeyError(f"unknown policy bundle '{key}'") from exc
    return _read(filename)


def _read(filename: str) -> str:
    return resources.files(__name__).joinpath(filename).read_text(encoding="utf-8")

"""Load Kyverno policies from files, directories, or packaged bundles."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from scancore import bundles
from scancore.errors import SourceError
from scancore.models import FailureAction, PolicyDefinition, PolicyRule, PolicyScope

__all__ = ["PolicyLoader", "parse_policies"]

LOGGER = logging.getLogger(__name__)

_POLICY_KINDS = {
    "ClusterPolicy": PolicyScope.CLUSTER,
    "Policy": PolicyScope.NAMESPACED,
}
_POLICY_SUFFIXES = {".yaml", ".yml", ".json"}


class PolicyLoader:
    """Turn a policy source into parsed :class:`PolicyDefinition` objects.

    A source is an existing file or directory, or the key of a packaged bundle
    (see :mod:`scancore.bundles`).  A successful load never returns an empty
    list.
    """

    def __init__(self, *, recursive: bool = False) -> None:
        self._recursive = recursive

    def load(self, source: str | Path) -> list[PolicyDefinition]:
        text = str(source)
        path = Path(text).expanduser()
        if path.is_dir():
            return self._load_dir(path)
        if path.is_file():
            return self._load_file(path)
        if bundles.is_bundle(text):
            LOGGER.debug("Loading packaged policy bundle %s", text)
            return parse_policies(bundles.bundle_text(text), origin=f"bundle:{text}")
        raise SourceError(f"policy file does not exist: {text}")

    def load_many(self, sources: Iterable[str | Path]) -> list[PolicyDefinition]:
        policies: list[PolicyDefinition] = []
        for source in sources:
            policies.extend(self.load(source))
        if not policies:
            raise SourceError("no valid policies found in the provided sources")
        return policies

    def _load_file(self, path: Path) -> list[PolicyDefinition]:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceError(f"failed to read policy file {path}: {exc}") from exc
        policies = parse_policies(text, origin=str(path))
        LOGGER.debug("Loaded %d policy(ies) from %s", len(policies), path)
        return policies

    def _load_dir(self, directory: Path) -> list[PolicyDefinition]:
        candidates = directory.rglob("*") if self._recursive else directory.iterdir()
        files = sorted(
            entry
            for entry in candidates
            if entry.is_file() and entry.suffix.lower() in _POLICY_SUFFIXES
        )
        policies: list[PolicyDefinition] = []
        for path in files:
            policies.extend(self._load_file(path))
        if not policies:
            raise SourceError(f"no valid policy found in directory {directory}")
        return policies


def parse_policies(text: str, *, origin: str) -> list[PolicyDefinition]:
    """Parse a YAML/JSON stream holding single policies and/or policy lists."""

    try:
        documents = [document for document in yaml.safe_load_all(text) if document is not None]
    except yaml.YAMLError as exc:
        raise SourceError(f"failed to parse policy file {origin}: {exc}") from exc

    policies: list[PolicyDefinition] = []
    for document in documents:
        policies.extend(_parse_document(document, origin))
    if not policies:
        raise SourceError(f"no valid policy found in {origin}")
    return policies


def _parse_document(document: Any, origin: str) -> list[PolicyDefinition]:
    if _is_policy(document):
        return [_build_policy(document, origin)]

    items = _list_items(document)
    if items is None:
        raise SourceError(f"failed to parse policy file {origin}: not a valid Kyverno policy")
    policies: list[PolicyDefinition] = []
    for index, item in enumerate(items):
        if not _is_policy(item):
            raise SourceError(
                f"failed to parse policy file {origin}: item {index} is not a valid Kyverno policy"
            )
        policies.append(_build_policy(item, origin))
    return policies


def _is_policy(document: Any) -> bool:
    return (
        isinstance(document, Mapping)
        and bool(document.get("apiVersion"))
        and document.get("kind") in _POLICY_KINDS
    )


def _list_items(document: Any) -> list[Any] | None:
    if isinstance(document, list):
        return document
    if isinstance(document, Mapping) and isinstance(document.get("items"), list):
        return document["items"]
    return None


def _build_policy(document: Mapping[str, Any], origin: str) -> PolicyDefinition:
    metadata = document.get("metadata")
    if not isinstance(metadata, Mapping) or not metadata.get("name"):
        raise SourceError(f"policy in {origin} is missing metadata.name")
    name = str(metadata["name"])

    spec = document.get("spec")
    if not isinstance(spec, Mapping):
        raise SourceError(f"policy {name} in {origin} is missing spec")
    raw_rules = spec.get("rules")
    if not isinstance(raw_rules, list) or not raw_rules:
        raise SourceError(f"policy {name} in {origin} must define at least one rule")

    rules: list[PolicyRule] = []
    for index, raw_rule in enumerate(raw_rules):
        if not isinstance(raw_rule, Mapping):
            raise SourceError(f"policy {name} in {origin}: rule {index} must be a mapping")
        try:
            rules.append(PolicyRule.from_mapping(raw_rule))
        except ValueError as exc:
            raise SourceError(f"policy {name} in {origin}: rule {index}: {exc}") from exc

    try:
        failure_action = FailureAction.from_str(spec.get("validationFailureAction"))
    except ValueError as exc:
        raise SourceError(f"policy {name} in {origin}: {exc}") from exc

    annotations = metadata.get("annotations") or {}
    if not isinstance(annotations, Mapping):
        raise SourceError(f"policy {name} in {origin}: metadata.annotations must be a mapping")

    return PolicyDefinition(
        name=name,
        scope=_POLICY_KINDS[str(document["kind"])],
        rules=tuple(rules),
        namespace=str(metadata.get("namespace") or ""),
        annotations=MappingProxyType({str(k): _annotation_text(v) for k, v in annotations.items()}),
        failure_action=failure_action,
        source=origin,
    )


def _annotation_text(value: Any) -> str:
    # Unquoted YAML booleans load as bool; keep the lowercase spelling.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

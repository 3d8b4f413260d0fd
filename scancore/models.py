"""Value types flowing through the scan pipeline.

Everything here is request scoped and immutable once built.  Resource and
policy documents stay generic mappings so that kinds unknown at import time
keep working; typed accessors cover the identity fields the pipeline needs.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any
from urllib.parse import quote

from scancore.errors import ConfigurationError

__all__ = [
    "ANNOTATION_CATEGORY",
    "ANNOTATION_SCORED",
    "ANNOTATION_SEVERITY",
    "CORE_API_VERSION",
    "FailureAction",
    "PolicyDefinition",
    "PolicyRule",
    "PolicyScope",
    "PolicyTraits",
    "ReportResult",
    "ResolvedResource",
    "ResourceIdentity",
    "ResourceLocator",
    "ResourceQuery",
    "RuleKind",
    "RuleOutcome",
    "RuleStatus",
    "split_api_version",
]

ANNOTATION_SCORED = "policies.kyverno.io/scored"
ANNOTATION_CATEGORY = "policies.kyverno.io/category"
ANNOTATION_SEVERITY = "policies.kyverno.io/severity"
CORE_API_VERSION = "v1"


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split ``group/version`` into its parts; the core group is ``""``."""

    value = api_version or CORE_API_VERSION
    group, sep, version = value.rpartition("/")
    if not sep:
        return "", value
    return group, version


def _query_field(mapping: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = mapping.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigurationError(f"resource query field '{key}' must be a string")
        return value.strip()
    return ""


@dataclass(frozen=True, slots=True)
class ResourceQuery:
    """Caller intent describing zero or more cluster resources."""

    api_version: str
    kind: str
    namespace: str = ""
    name: str = ""
    label_selector: str = ""
    field_selector: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind.strip():
            raise ConfigurationError("resource query requires a non-empty kind")
        if not self.api_version:
            object.__setattr__(self, "api_version", CORE_API_VERSION)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> ResourceQuery:
        if not isinstance(mapping, Mapping):
            raise ConfigurationError(
                f"resource query must be a mapping, got {type(mapping).__name__}"
            )
        return cls(
            api_version=_query_field(mapping, "apiVersion", "api_version"),
            kind=_query_field(mapping, "kind"),
            namespace=_query_field(mapping, "namespace"),
            name=_query_field(mapping, "name"),
            label_selector=_query_field(mapping, "labelSelector", "label_selector"),
            field_selector=_query_field(mapping, "fieldSelector", "field_selector"),
        )

    def describe(self) -> str:
        parts = [f"apiVersion={self.api_version}", f"kind={self.kind}"]
        optional = (
            ("namespace", self.namespace),
            ("name", self.name),
            ("labelSelector", self.label_selector),
            ("fieldSelector", self.field_selector),
        )
        parts.extend(f"{label}={value}" for label, value in optional if value)
        return ", ".join(parts)

    def as_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "labelSelector": self.label_selector,
            "fieldSelector": self.field_selector,
        }


@dataclass(frozen=True, slots=True)
class ResourceLocator:
    """Concrete API collection identity for one ``(apiVersion, kind)`` pair."""

    group: str
    version: str
    resource: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def path(self, *, namespace: str = "", name: str = "") -> str:
        """Return the REST path of the collection, or of one item when ``name`` is set."""

        if self.group:
            segments = ["/apis", self.group, self.version]
        else:
            segments = ["/api", self.version]
        if namespace:
            segments.extend(["namespaces", quote(namespace, safe="")])
        segments.append(self.resource)
        if name:
            segments.append(quote(name, safe=""))
        return "/".join(segments)


@dataclass(frozen=True, slots=True)
class ResourceIdentity:
    api_version: str
    kind: str
    namespace: str = ""
    name: str = ""
    uid: str = ""

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> ResourceIdentity:
        """Build an identity from an object reference (``apiVersion``, ``kind``, ...)."""

        return cls(
            api_version=str(mapping.get("apiVersion") or ""),
            kind=str(mapping.get("kind") or ""),
            namespace=str(mapping.get("namespace") or ""),
            name=str(mapping.get("name") or ""),
            uid=str(mapping.get("uid") or ""),
        )

    def as_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "uid": self.uid,
        }


@dataclass(frozen=True, slots=True)
class ResolvedResource:
    """Read-only snapshot of a resource document fetched from the cluster."""

    document: Mapping[str, Any]

    def __post_init__(self) -> None:
        snapshot = copy.deepcopy(dict(self.document))
        object.__setattr__(self, "document", MappingProxyType(snapshot))

    @property
    def metadata(self) -> Mapping[str, Any]:
        metadata = self.document.get("metadata")
        return metadata if isinstance(metadata, Mapping) else {}

    @property
    def api_version(self) -> str:
        return str(self.document.get("apiVersion") or "")

    @property
    def kind(self) -> str:
        return str(self.document.get("kind") or "")

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def uid(self) -> str:
        return str(self.metadata.get("uid") or "")

    @property
    def labels(self) -> Mapping[str, str]:
        labels = self.metadata.get("labels")
        return labels if isinstance(labels, Mapping) else {}

    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(
            api_version=self.api_version,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
            uid=self.uid,
        )

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self.document))


class RuleKind(str, Enum):
    VALIDATE = "validate"
    MUTATE = "mutate"
    GENERATE = "generate"

    @classmethod
    def infer(cls, rule: Mapping[str, Any]) -> RuleKind:
        """Return the kind of ``rule`` from its first populated block.

        Priority is ``validate`` > ``mutate`` > ``generate``: a rule carrying
        both a validate and a mutate block is a validate rule.  A rule with
        none of the blocks populated is treated as ``validate``.
        """

        for kind in (cls.VALIDATE, cls.MUTATE, cls.GENERATE):
            if rule.get(kind.value):
                return kind
        return cls.VALIDATE


class RuleStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    ERROR = "error"
    SKIP = "skip"

    @classmethod
    def parse(cls, raw: object) -> RuleStatus | None:
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            return None
        normalised = raw.strip().lower()
        for status in cls:
            if status.value == normalised:
                return status
        return None


class FailureAction(str, Enum):
    AUDIT = "audit"
    ENFORCE = "enforce"

    @classmethod
    def from_str(cls, raw: str | None) -> FailureAction:
        if not raw:
            return cls.AUDIT
        normalised = str(raw).strip().lower()
        for action in cls:
            if action.value == normalised:
                return action
        raise ValueError(f"unknown validationFailureAction '{raw}'")


class PolicyScope(str, Enum):
    CLUSTER = "cluster"
    NAMESPACED = "namespaced"


@dataclass(frozen=True, slots=True)
class PolicyTraits:
    """Policy-level attributes the report classifier needs for every outcome."""

    scored: bool = True
    category: str = ""
    severity: str = ""
    failure_action: FailureAction = FailureAction.AUDIT


@dataclass(frozen=True, slots=True)
class PolicyRule:
    name: str
    kind: RuleKind
    raw: Mapping[str, Any] = field(repr=False)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> PolicyRule:
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("rule requires a non-empty 'name'")
        return cls(name=name, kind=RuleKind.infer(raw), raw=MappingProxyType(dict(raw)))

    @property
    def match(self) -> Mapping[str, Any]:
        value = self.raw.get("match")
        return value if isinstance(value, Mapping) else {}

    @property
    def exclude(self) -> Mapping[str, Any]:
        value = self.raw.get("exclude")
        return value if isinstance(value, Mapping) else {}

    @property
    def body(self) -> Mapping[str, Any]:
        """The block that determined :attr:`kind` (empty when absent)."""

        value = self.raw.get(self.kind.value)
        return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True, slots=True)
class PolicyDefinition:
    name: str
    scope: PolicyScope
    rules: tuple[PolicyRule, ...]
    namespace: str = ""
    annotations: Mapping[str, str] = field(default_factory=dict)
    failure_action: FailureAction = FailureAction.AUDIT
    source: str = field(default="", compare=False)

    @property
    def scored(self) -> bool:
        return str(self.annotations.get(ANNOTATION_SCORED, "")).strip().lower() != "false"

    @property
    def category(self) -> str:
        return str(self.annotations.get(ANNOTATION_CATEGORY, ""))

    @property
    def severity(self) -> str:
        return str(self.annotations.get(ANNOTATION_SEVERITY, ""))

    @property
    def traits(self) -> PolicyTraits:
        return PolicyTraits(
            scored=self.scored,
            category=self.category,
            severity=self.severity,
            failure_action=self.failure_action,
        )


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    """Raw result of evaluating one rule of one policy against one resource.

    ``status`` is normally a :class:`RuleStatus` but external engines may
    report arbitrary strings; the classifier maps unknown values to ``error``.
    """

    resource: ResourceIdentity
    policy: str
    rule: str
    status: RuleStatus | str
    message: str = ""
    rule_kind: RuleKind = RuleKind.VALIDATE
    traits: PolicyTraits = field(default_factory=PolicyTraits)


@dataclass(frozen=True, slots=True)
class ReportResult:
    policy: str
    rule: str
    resource: ResourceIdentity
    result: RuleStatus
    message: str
    scored: bool
    source: str
    category: str
    severity: str
    timestamp: int

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "source": self.source,
            "policy": self.policy,
            "rule": self.rule,
            "resources": [self.resource.as_dict()],
            "result": self.result.value,
            "scored": self.scored,
            "message": self.message,
            "timestamp": {"seconds": self.timestamp, "nanos": 0},
        }
        if self.category:
            payload["category"] = self.category
        if self.severity:
            payload["severity"] = self.severity
        return payload

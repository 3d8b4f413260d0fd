from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from scancore.errors import ConfigurationError
from scancore.models import ResourceQuery

__all__ = [
    "ApplyRequest",
    "ApplyResponse",
    "PolicyApplicationResult",
    "ResourceInfo",
    "ResourceQueryPayload",
    "RuleResult",
]


class ResourceQueryPayload(BaseModel):
    """Wire form of a :class:`~scancore.models.ResourceQuery`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    api_version: str = Field("", alias="apiVersion")
    kind: str = Field(..., min_length=1)
    namespace: str = ""
    name: str = ""
    label_selector: str = Field("", alias="labelSelector")
    field_selector: str = Field("", alias="fieldSelector")

    def to_query(self) -> ResourceQuery:
        return ResourceQuery(
            api_version=self.api_version.strip(),
            kind=self.kind.strip(),
            namespace=self.namespace.strip(),
            name=self.name.strip(),
            label_selector=self.label_selector.strip(),
            field_selector=self.field_selector.strip(),
        )


class ApplyRequest(BaseModel):
    """Policy sources plus resource queries to evaluate them against."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    policy_sources: tuple[str, ...] = Field(..., alias="policySources")
    resource_queries: tuple[ResourceQueryPayload, ...] = Field(..., alias="resourceQueries")
    target_credential: str | None = Field(default=None, alias="targetCredential")

    @field_validator("policy_sources")
    @classmethod
    def _require_sources(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(source.strip() for source in value if source.strip())
        if not cleaned:
            raise ValueError("at least one policy source is required")
        return cleaned

    @field_validator("resource_queries")
    @classmethod
    def _require_queries(
        cls, value: tuple[ResourceQueryPayload, ...]
    ) -> tuple[ResourceQueryPayload, ...]:
        if not value:
            raise ValueError("at least one resource query is required")
        return value

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> ApplyRequest:
        """Validate ``payload``; validation failures surface as ``ConfigurationError``."""

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            messages = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
                for error in exc.errors()
            )
            raise ConfigurationError(f"invalid apply request: {messages}") from exc

    def queries(self) -> list[ResourceQuery]:
        return [payload.to_query() for payload in self.resource_queries]


class ResourceInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    namespace: str = ""
    name: str
    uid: str = ""


class RuleResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str
    type: str
    message: str = ""
    status: str


class PolicyApplicationResult(BaseModel):
    """All rule results of one policy against one resource."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    policy: str
    resource: ResourceInfo
    rules: tuple[RuleResult, ...] = ()
    validation_failure_action: str = Field("audit", alias="validationFailureAction")


class ApplyResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    results: tuple[PolicyApplicationResult, ...] = ()
    resources: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

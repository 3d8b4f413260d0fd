"""Response envelope returned by every MCP route, over HTTP and STDIO alike."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["Envelope", "EnvelopeError", "EnvelopeMeta", "ExecutionMeta", "IdempotencyMeta"]

_WIRE_MODEL = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class ExecutionMeta(BaseModel):
    model_config = _WIRE_MODEL

    duration_ms: float = Field(0.0, alias="durationMs", ge=0)
    input_bytes: int = Field(0, alias="inputBytes", ge=0)
    output_bytes: int = Field(0, alias="outputBytes", ge=0)


class IdempotencyMeta(BaseModel):
    """``cacheHit`` is set when a deterministic tool answered from its result cache."""

    model_config = _WIRE_MODEL

    cache_hit: bool = Field(False, alias="cacheHit")


class EnvelopeError(BaseModel):
    model_config = _WIRE_MODEL

    code: str
    message: str
    retryable: bool = False
    # e.g. ``{"guidance": "helm install kyverno ..."}`` when Kyverno is absent
    details: dict[str, Any] | None = None


class EnvelopeMeta(BaseModel):
    model_config = _WIRE_MODEL

    request_id: str = Field(..., alias="requestId")
    trace_id: str = Field(..., alias="traceId")
    span_id: str = Field(..., alias="spanId")
    schema_version: str = Field(..., alias="schemaVersion")
    deterministic: bool
    transport: str
    route: str
    method: str
    status: str
    attempt: int = 0
    tool_id: str | None = Field(default=None, alias="toolId")
    execution: ExecutionMeta = Field(default_factory=ExecutionMeta)
    idempotency: IdempotencyMeta = Field(default_factory=IdempotencyMeta)


class Envelope(BaseModel):
    """Either ``data`` (``ok`` is true) or ``error`` is set, never both."""

    model_config = _WIRE_MODEL

    ok: bool
    data: dict[str, Any] | None = None
    error: EnvelopeError | None = None
    meta: EnvelopeMeta

    @classmethod
    def success(cls, *, data: dict[str, Any], meta: EnvelopeMeta) -> Envelope:
        return cls(ok=True, data=data, meta=meta)

    @classmethod
    def failure(cls, *, error: EnvelopeError, meta: EnvelopeMeta) -> Envelope:
        return cls(ok=False, error=error, meta=meta)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

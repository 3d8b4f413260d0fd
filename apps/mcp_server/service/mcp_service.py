"""Transport-independent MCP service: discovery, health and guarded tool calls."""

from __future__ import annotations

import itertools
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4, uuid5

from jsonschema import validators

from apps.mcp_server.logging import JsonLogWriter, McpLogEvent, request_log_path
from apps.toolpacks.executor import ExecutionStats, Executor, ToolpackExecutionError
from apps.toolpacks.loader import Toolpack, ToolpackLoader
from scancore.errors import ScanError

from .envelope import Envelope, EnvelopeError, EnvelopeMeta, ExecutionMeta, IdempotencyMeta
from .errors import CanonicalError, canonical_code_for, failure_details

__all__ = ["McpService", "RequestContext", "RequestIds", "ServerLogManager", "ServiceLimits"]

LOGGER = logging.getLogger(__name__)

_AGENT_ID = "kyscan_mcp_server"
_SCHEMA_VERSION_DEFAULT = "0.1.0"
_DETERMINISTIC_NAMESPACE = UUID("5d0c2a43-6a53-4f0e-9d59-2f1f8a6b7c31")


@dataclass(frozen=True, slots=True)
class RequestIds:
    request_id: str
    trace_id: str
    span_id: str
    input_bytes: int

    @classmethod
    def for_request(
        cls, *, route: str, method: str, payload: Mapping[str, Any], deterministic: bool
    ) -> RequestIds:
        # Deterministic ids are a pure function of route, method and payload.
        fingerprint = _canonical_json({"route": route, "method": method, "payload": payload})
        if deterministic:
            ids = [uuid5(_DETERMINISTIC_NAMESPACE, f"{kind}:{fingerprint}") for kind in ("req", "trace", "span")]
        else:
            ids = [uuid4(), uuid4(), uuid4()]
        return cls(
            request_id=str(ids[0]),
            trace_id=str(ids[1]),
            span_id=str(ids[2]),
            input_bytes=_payload_size(payload),
        )


@dataclass(slots=True)
class RequestContext:
    """Per-request metadata supplied by transports."""

    transport: str
    route: str
    method: str
    deterministic_ids: bool = False
    request_payload: Mapping[str, Any] | None = None
    start_time: float = field(default_factory=time.perf_counter)
    attempt: int = 0
    _ids: RequestIds | None = field(default=None, repr=False, init=False)

    def with_payload(self, payload: Mapping[str, Any]) -> RequestContext:
        return RequestContext(
            transport=self.transport,
            route=self.route,
            method=self.method,
            deterministic_ids=self.deterministic_ids,
            request_payload=payload,
            attempt=self.attempt,
        )

    @property
    def ids(self) -> RequestIds:
        if self._ids is None:
            self._ids = RequestIds.for_request(
                route=self.route,
                method=self.method,
                payload=self.request_payload or {},
                deterministic=self.deterministic_ids,
            )
        return self._ids

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000.0


@dataclass(frozen=True, slots=True)
class ServiceLimits:
    """Global guardrails; a tool's own limits can only tighten them."""

    max_input_bytes: int = 1_048_576
    max_output_bytes: int = 8_388_608
    timeout_ms: int = 120_000

    def __post_init__(self) -> None:
        for name in ("max_input_bytes", "max_output_bytes", "timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")

    def overridden(self, **values: int | None) -> ServiceLimits:
        return replace(self, **{name: value for name, value in values.items() if value is not None})

    def tightened_by(self, toolpack: Toolpack) -> ServiceLimits:
        return ServiceLimits(
            max_input_bytes=min(
                self.max_input_bytes, int(toolpack.limits.get("maxInputBytes", self.max_input_bytes))
            ),
            max_output_bytes=min(
                self.max_output_bytes, int(toolpack.limits.get("maxOutputBytes", self.max_output_bytes))
            ),
            timeout_ms=min(self.timeout_ms, toolpack.timeout_ms),
        )


class ResponseSchemas:
    """Validators for the ``data`` member of discover and tool responses."""

    _FILES = {
        "discover": "discover.response.schema.json",
        "tool": "tool.response.schema.json",
    }

    def __init__(self, schema_dir: Path) -> None:
        self._validators = {route: _load_validator(Path(schema_dir) / name) for route, name in self._FILES.items()}

    def check(self, route: str, data: Mapping[str, Any]) -> None:
        self._validators[route].validate(data)


class ServerLogManager:
    """Write one :class:`McpLogEvent` per served request."""

    def __init__(self, *, log_dir: Path, deterministic: bool, retention: int = 5) -> None:
        run_name = "deterministic" if deterministic else datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        self._path = request_log_path(Path(log_dir), run_name=run_name)
        self._writer = JsonLogWriter(self._path, agent_id=_AGENT_ID, retention=retention)
        self._steps = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def writer(self) -> JsonLogWriter:
        return self._writer

    def next_step_id(self) -> int:
        return next(self._steps)

    def emit(self, event: McpLogEvent) -> None:
        self._writer.write(event)


class _ToolRejected(Exception):
    """A tool call that ends in an error envelope."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        stats: ExecutionStats | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.stats = stats
        self.details = details


class McpService:
    """Discovery, health and tool invocation behind every transport."""

    def __init__(
        self,
        *,
        toolpacks: dict[str, Toolpack],
        executor: Executor,
        schemas: ResponseSchemas,
        log_manager: ServerLogManager,
        schema_version: str,
        limits: ServiceLimits,
    ) -> None:
        self._toolpacks = dict(sorted(toolpacks.items()))
        self._executor = executor
        self._schemas = schemas
        self._log_manager = log_manager
        self._schema_version = schema_version
        self._limits = limits

    @property
    def log_manager(self) -> ServerLogManager:
        return self._log_manager

    @property
    def limits(self) -> ServiceLimits:
        return self._limits

    @property
    def schema_version(self) -> str:
        return self._schema_version

    @classmethod
    def create(
        cls,
        *,
        toolpacks_dir: Path,
        schema_dir: Path,
        log_dir: Path,
        schema_version: str = _SCHEMA_VERSION_DEFAULT,
        deterministic_logs: bool = True,
        logger: ServerLogManager | None = None,
        max_input_bytes: int | None = None,
        max_output_bytes: int | None = None,
        timeout_ms: int | None = None,
    ) -> McpService:
        loader = ToolpackLoader()
        loader.load_dir(toolpacks_dir)
        LOGGER.info("Loaded %d toolpacks from %s", len(loader.list()), toolpacks_dir)
        return cls(
            toolpacks={pack.id: pack for pack in loader.list()},
            executor=Executor(),
            schemas=ResponseSchemas(schema_dir),
            log_manager=logger or ServerLogManager(log_dir=log_dir, deterministic=deterministic_logs),
            schema_version=schema_version,
            limits=ServiceLimits().overridden(
                max_input_bytes=max_input_bytes,
                max_output_bytes=max_output_bytes,
                timeout_ms=timeout_ms,
            ),
        )

    def discover(self, context: RequestContext | None = None) -> Envelope:
        ctx = _bind(context, "discover", "mcp.discover", {})
        data = {"tools": [_describe(tool) for tool in self._toolpacks.values()]}
        self._schemas.check("discover", data)
        return self._success(ctx, data)

    def invoke_tool(
        self,
        *,
        tool_id: str,
        arguments: Mapping[str, Any],
        context: RequestContext | None = None,
    ) -> Envelope:
        ctx = _bind(context, "tool", "mcp.tool.invoke", {"toolId": tool_id, "arguments": dict(arguments)})
        try:
            data, stats = self._guarded_call(tool_id, arguments, ctx)
        except _ToolRejected as rejected:
            return self._failure(ctx, rejected, tool_id=tool_id)
        return self._success(ctx, data, tool_id=tool_id, stats=stats)

    def health(self, context: RequestContext | None = None) -> dict[str, Any]:
        _bind(context, "health", "mcp.health", {})
        return {"status": "ok", "tools": len(self._toolpacks)}

    def _guarded_call(
        self, tool_id: str, arguments: Mapping[str, Any], ctx: RequestContext
    ) -> tuple[dict[str, Any], ExecutionStats]:
        toolpack = self._toolpacks.get(tool_id)
        if toolpack is None:
            raise _ToolRejected("NOT_FOUND", f"Tool '{tool_id}' not found")

        limits = self._limits.tightened_by(toolpack)
        if ctx.ids.input_bytes > limits.max_input_bytes:
            raise _ToolRejected("INVALID_INPUT", "Input payload exceeds configured maxInputBytes")

        try:
            result, stats = self._executor.run_toolpack_with_stats(
                toolpack, arguments, timeout_ms=limits.timeout_ms
            )
        except ToolpackExecutionError as exc:
            code = canonical_code_for(exc)
            LOGGER.info("Tool %s failed with %s: %s", tool_id, code, exc)
            raise _ToolRejected(code, _root_message(exc), details=failure_details(exc)) from exc

        if stats.duration_ms > limits.timeout_ms:
            raise _ToolRejected(
                "TIMEOUT", f"Tool execution exceeded timeout of {limits.timeout_ms}ms", stats=stats
            )
        if stats.output_bytes > limits.max_output_bytes:
            raise _ToolRejected("INVALID_OUTPUT", "Tool output exceeded configured maxOutputBytes", stats=stats)

        data = {
            "toolId": tool_id,
            "result": result,
            "metadata": {
                "toolpack": {
                    "id": toolpack.id,
                    "version": toolpack.version,
                    "deterministic": toolpack.deterministic,
                    "timeoutMs": toolpack.timeout_ms,
                }
            },
        }
        self._schemas.check("tool", data)
        return data, stats

    def _success(
        self,
        ctx: RequestContext,
        data: dict[str, Any],
        *,
        tool_id: str | None = None,
        stats: ExecutionStats | None = None,
    ) -> Envelope:
        stats = stats or self._request_stats(ctx, output_bytes=_payload_size(data))
        meta = self._meta(ctx, "ok", tool_id, stats)
        self._record(ctx, meta, stats, error=None)
        return Envelope.success(data=data, meta=meta)

    def _failure(self, ctx: RequestContext, rejected: _ToolRejected, *, tool_id: str) -> Envelope:
        stats = rejected.stats or self._request_stats(ctx, output_bytes=0)
        meta = self._meta(ctx, "error", tool_id, stats)
        self._record(ctx, meta, stats, error={"code": rejected.code, "message": rejected.message})
        error = EnvelopeError(
            code=rejected.code,
            message=rejected.message,
            retryable=CanonicalError.is_retryable(rejected.code),
            details=rejected.details,
        )
        return Envelope.failure(error=error, meta=meta)

    @staticmethod
    def _request_stats(ctx: RequestContext, *, output_bytes: int) -> ExecutionStats:
        return ExecutionStats(
            duration_ms=ctx.elapsed_ms(),
            input_bytes=ctx.ids.input_bytes,
            output_bytes=output_bytes,
            cache_hit=False,
        )

    def _meta(
        self, ctx: RequestContext, status: str, tool_id: str | None, stats: ExecutionStats
    ) -> EnvelopeMeta:
        ids = ctx.ids
        return EnvelopeMeta(
            requestId=ids.request_id,
            traceId=ids.trace_id,
            spanId=ids.span_id,
            schemaVersion=self._schema_version,
            deterministic=ctx.deterministic_ids,
            transport=ctx.transport,
            route=ctx.route,
            method=ctx.method,
            status=status,
            attempt=ctx.attempt,
            toolId=tool_id,
            execution=ExecutionMeta(
                durationMs=max(stats.duration_ms, 0.0),
                inputBytes=max(stats.input_bytes, 0),
                outputBytes=max(stats.output_bytes, 0),
            ),
            idempotency=IdempotencyMeta(cacheHit=stats.cache_hit),
        )

    def _record(
        self,
        ctx: RequestContext,
        meta: EnvelopeMeta,
        stats: ExecutionStats,
        *,
        error: dict[str, Any] | None,
    ) -> None:
        self._log_manager.emit(
            McpLogEvent(
                ts=datetime.now(UTC),
                step_id=self._log_manager.next_step_id(),
                request_id=meta.request_id,
                trace_id=meta.trace_id,
                span_id=meta.span_id,
                transport=ctx.transport,
                route=ctx.route,
                method=ctx.method,
                status=meta.status,
                duration_ms=stats.duration_ms,
                attempt=ctx.attempt,
                input_bytes=stats.input_bytes,
                output_bytes=stats.output_bytes,
                tool_id=meta.tool_id,
                cache_hit=stats.cache_hit,
                metadata={"schemaVersion": self._schema_version},
                error=error,
            )
        )


def _bind(
    context: RequestContext | None, route: str, method: str, payload: Mapping[str, Any]
) -> RequestContext:
    if context is None:
        context = RequestContext(transport="http", route=route, method=method)
    return context.with_payload(payload)


def _describe(toolpack: Toolpack) -> dict[str, Any]:
    return {
        "id": toolpack.id,
        "title": toolpack.title,
        "description": toolpack.description,
        "version": toolpack.version,
        "deterministic": toolpack.deterministic,
        "timeoutMs": toolpack.timeout_ms,
        "limits": dict(toolpack.limits),
        "inputSchema": dict(toolpack.input_schema),
    }


def _load_validator(path: Path) -> Any:
    if not path.exists():
        raise FileNotFoundError(f"Schema not found: {path}")
    schema = json.loads(path.read_text(encoding="utf-8"))
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _root_message(exc: BaseException) -> str:
    # Prefer the scan-level message over the executor's wrapper text.
    cause = exc.__cause__
    return str(cause) if isinstance(cause, ScanError) and str(cause) else str(exc)


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _payload_size(payload: Any) -> int:
    return len(_canonical_json(payload).encode("utf-8"))

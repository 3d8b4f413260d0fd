from __future__ import annotations

import copy
import hashlib
import importlib
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from jsonschema import validators
from jsonschema.exceptions import ValidationError

from apps.toolpacks.loader import Toolpack
from scancore.cancellation import CancellationToken, use_token

__all__ = [
    "ExecutionStats",
    "Executor",
    "ToolInputError",
    "ToolOutputError",
    "ToolpackExecutionError",
]

LOGGER = logging.getLogger(__name__)

ToolCallable = Callable[[Mapping[str, Any]], Any]


@dataclass(slots=True)
class ExecutionStats:
    """Metrics recorded for one tool invocation."""

    duration_ms: float
    input_bytes: int
    output_bytes: int
    cache_hit: bool


class ToolpackExecutionError(Exception):
    """Raised when executing a toolpack fails."""


class ToolInputError(ToolpackExecutionError):
    """Raised when a payload does not satisfy the tool's input schema."""


class ToolOutputError(ToolpackExecutionError):
    """Raised when a tool returns output that fails its output schema."""


class _ResultCache:
    """Results of deterministic tools, keyed by tool id, version and input."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, Any]] = {}

    @staticmethod
    def key(toolpack: Toolpack, payload: Mapping[str, Any]) -> str:
        material = {"id": toolpack.id, "version": toolpack.version, "payload": payload}
        try:
            serialised = _canonical_json(material)
        except TypeError as exc:
            raise ToolpackExecutionError(
                f"Toolpack {toolpack.id} input is not JSON serialisable for caching"
            ) from exc
        return hashlib.sha256(serialised.encode("utf-8")).hexdigest()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            hit = self._entries.get(key)
        return copy.deepcopy(hit) if hit is not None else None

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        with self._lock:
            self._entries[key] = copy.deepcopy(dict(value))


class Executor:
    """Run python toolpacks with schema checks, a deadline and a result cache.

    Each call installs a :class:`~scancore.cancellation.CancellationToken`
    bounded by the tool timeout; tool modules hand it to the scan core so a
    slow cluster aborts the request instead of overrunning it.  Only
    deterministic toolpacks are cached.
    """

    def __init__(self) -> None:
        self._cache = _ResultCache()
        self._last_stats: ContextVar[ExecutionStats | None] = ContextVar(
            f"toolpack_executor_last_stats_{id(self)}",
            default=None,
        )

    def last_run_stats(self) -> ExecutionStats | None:
        return self._last_stats.get()

    def run_toolpack(self, toolpack: Toolpack, payload: Mapping[str, Any]) -> dict[str, Any]:
        result, _ = self.run_toolpack_with_stats(toolpack, payload)
        return result

    def run_toolpack_with_stats(
        self,
        toolpack: Toolpack,
        payload: Mapping[str, Any],
        *,
        use_cache: bool = True,
        timeout_ms: int | None = None,
    ) -> tuple[dict[str, Any], ExecutionStats]:
        started = time.perf_counter()
        arguments = self._checked(toolpack, payload, "input")
        input_bytes = _payload_size(arguments)

        cache_key = self._cache.key(toolpack, arguments) if use_cache and toolpack.deterministic else None
        result = self._cache.get(cache_key) if cache_key else None
        cache_hit = result is not None
        if result is None:
            deadline_ms = min(toolpack.timeout_ms, timeout_ms) if timeout_ms else toolpack.timeout_ms
            result = self._checked(toolpack, self._call(toolpack, arguments, deadline_ms), "output")
            if cache_key:
                self._cache.put(cache_key, result)

        stats = ExecutionStats(
            duration_ms=(time.perf_counter() - started) * 1000.0,
            input_bytes=input_bytes,
            output_bytes=_payload_size(result),
            cache_hit=cache_hit,
        )
        self._last_stats.set(stats)
        return result, stats

    def _call(self, toolpack: Toolpack, arguments: dict[str, Any], deadline_ms: int) -> Any:
        runner = _resolve_entrypoint(toolpack)
        token = CancellationToken(timeout_s=deadline_ms / 1000.0)
        try:
            with use_token(token):
                return runner(copy.deepcopy(arguments))
        except Exception as exc:
            LOGGER.debug("Toolpack %s raised %s", toolpack.id, type(exc).__name__)
            raise ToolpackExecutionError(f"Toolpack {toolpack.id} execution failed: {exc}") from exc

    def _checked(self, toolpack: Toolpack, value: Any, stage: str) -> dict[str, Any]:
        error_cls = ToolInputError if stage == "input" else ToolOutputError
        if not isinstance(value, Mapping):
            raise error_cls(f"Toolpack {toolpack.id} {stage} payload must be a mapping")
        instance = copy.deepcopy(dict(value))
        try:
            _validator(toolpack, stage).validate(instance)
        except ValidationError as exc:
            location = "/".join(str(part) for part in exc.absolute_path)
            where = f" at '{location}'" if location else ""
            raise error_cls(
                f"Toolpack {toolpack.id} {stage} failed JSON schema validation{where}: {exc.message}"
            ) from exc
        return instance


def _validator(toolpack: Toolpack, stage: str) -> Any:
    schema = toolpack.input_schema if stage == "input" else toolpack.output_schema
    return validators.validator_for(schema)(schema)


def _resolve_entrypoint(toolpack: Toolpack) -> ToolCallable:
    module_name, _, attr_name = toolpack.entrypoint.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ToolpackExecutionError(
            f"Toolpack {toolpack.id} failed to import module '{module_name}': {exc}"
        ) from exc
    func = getattr(module, attr_name, None)
    if func is None:
        raise ToolpackExecutionError(
            f"Toolpack {toolpack.id} module '{module_name}' has no attribute '{attr_name}'"
        )
    if not callable(func):
        raise ToolpackExecutionError(f"Toolpack {toolpack.id} attribute '{attr_name}' is not callable")
    return func


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def _payload_size(payload: Mapping[str, Any]) -> int:
    return len(_canonical_json(payload).encode("utf-8"))

"""Structured JSONL logging for MCP server requests."""

from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Mapping
from uuid import uuid4

__all__ = ["JsonLogWriter", "McpLogEvent", "prune_runs", "request_log_path"]


@dataclass(frozen=True)
class McpLogEvent:
    """One served request: route, outcome and execution metrics."""

    ts: datetime
    step_id: int
    request_id: str
    trace_id: str
    span_id: str
    transport: str
    route: str
    method: str
    status: str
    duration_ms: float
    attempt: int
    input_bytes: int
    output_bytes: int
    tool_id: str | None = None
    cache_hit: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    error: Mapping[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        ts = self.ts if self.ts.tzinfo is not None else self.ts.replace(tzinfo=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "tool_id": self.tool_id,
            "metadata": dict(self.metadata or {}),
            "error": dict(self.error) if self.error is not None else None,
        }
        for name in ("request_id", "trace_id", "span_id", "transport", "route", "method", "status"):
            payload[name] = str(getattr(self, name))
        for name in ("step_id", "attempt", "input_bytes", "output_bytes"):
            payload[name] = int(getattr(self, name))
        payload["duration_ms"] = float(self.duration_ms)
        payload["cache_hit"] = bool(self.cache_hit)
        return payload


def request_log_path(root: Path, *, run_name: str) -> Path:
    """Return the JSONL file for one server run under ``root``."""

    return Path(root) / "logs" / "mcp_server" / "requests" / f"{run_name}.jsonl"


def prune_runs(directory: Path, *, keep: int, current: Path | None = None) -> list[Path]:
    """Delete the oldest ``*.jsonl`` runs so at most ``keep`` remain."""

    try:
        runs = sorted(
            (entry for entry in directory.glob("*.jsonl") if entry.is_file()),
            key=lambda entry: entry.stat().st_mtime,
        )
    except OSError:
        return []
    removed: list[Path] = []
    for old in runs[: max(len(runs) - max(keep, 1), 0)]:
        if old == current:
            continue
        try:
            old.unlink()
        except OSError:
            continue
        removed.append(old)
    return removed


class JsonLogWriter:
    """Append structured events to newline-delimited JSON.

    Old runs in the same directory are pruned so that at most ``retention``
    files are kept.  Lines that fail to write stay queued and are retried on
    the next write or flush.
    """

    def __init__(self, path: str | Path, *, agent_id: str, retention: int = 5) -> None:
        self.path = Path(path)
        self.agent_id = agent_id
        self.run_id = uuid4().hex
        self._lock = threading.Lock()
        self._sequence = 0
        self._pending: list[str] = []
        self._handle: IO[str] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        prune_runs(self.path.parent, keep=retention, current=self.path)

    def write(self, event: McpLogEvent) -> None:
        payload = event.to_payload()
        with self._lock:
            payload.update(
                agent_id=self.agent_id,
                run_id=self.run_id,
                attempt_id=f"{self.run_id}:{event.step_id}:{event.attempt}:{self._sequence}",
            )
            self._sequence += 1
            self._pending.append(json.dumps(payload, sort_keys=True, ensure_ascii=False) + "\n")
            self._drain()

    def flush(self) -> None:
        with self._lock:
            self._drain()

    def close(self) -> None:
        with self._lock:
            self._drain()
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    def __enter__(self) -> JsonLogWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _drain(self) -> None:
        if not self._pending:
            return
        try:
            if self._handle is None:
                self._handle = self.path.open("a", encoding="utf-8")
            self._handle.writelines(self._pending)
            self._handle.flush()
        except OSError:
            # Keep the queue; the next call reopens the file.
            if self._handle is not None:
                with contextlib.suppress(OSError):
                    self._handle.close()
            self._handle = None
            return
        self._pending.clear()

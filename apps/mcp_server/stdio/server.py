from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from apps.mcp_server.service.envelope import Envelope
from apps.mcp_server.service.errors import CanonicalError
from apps.mcp_server.service.mcp_service import McpService, RequestContext

__all__ = ["JsonRpcStdioServer"]

LOGGER = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602


class _InvalidParams(ValueError):
    pass


def _rpc_error(code: int, message: str, request_id: Any = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id}


class JsonRpcStdioServer:
    """Minimal JSON-RPC 2.0 server over STDIO.

    Methods mirror the HTTP routes: ``mcp.discover``, ``mcp.tool.invoke``
    and ``mcp.health``.  Failed envelopes become JSON-RPC errors whose
    ``data`` carries the canonical code and the full envelope.
    """

    def __init__(self, service: McpService, *, deterministic_ids: bool = False) -> None:
        self._service = service
        self._deterministic_ids = deterministic_ids
        self._methods: dict[str, Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]] = {
            "mcp.discover": self._discover,
            "mcp.tool.invoke": self._invoke,
            "mcp.health": self._health,
        }

    def _context(self, route: str, method: str) -> RequestContext:
        return RequestContext(
            transport="stdio",
            route=route,
            method=method,
            deterministic_ids=self._deterministic_ids,
        )

    async def handle_request(self, message: Mapping[str, Any] | Any) -> dict[str, Any]:
        if not isinstance(message, Mapping):
            return _rpc_error(INVALID_REQUEST, "Invalid request")

        request_id = message.get("id")
        method = str(message.get("method", ""))
        handler = self._methods.get(method)
        if handler is None:
            return _rpc_error(METHOD_NOT_FOUND, f"Method not found: {method}", request_id)

        params = message.get("params")
        try:
            if params is None:
                params = {}
            elif not isinstance(params, Mapping):
                raise _InvalidParams("Invalid params: expected object")
            response = await handler(params)
        except _InvalidParams as exc:
            return _rpc_error(INVALID_PARAMS, str(exc), request_id)
        response["id"] = request_id
        return response

    async def _discover(self, params: Mapping[str, Any]) -> dict[str, Any]:
        envelope = await asyncio.to_thread(self._service.discover, self._context("discover", "mcp.discover"))
        return self._envelope_response(envelope)

    async def _invoke(self, params: Mapping[str, Any]) -> dict[str, Any]:
        tool_id = params.get("toolId")
        if not isinstance(tool_id, str) or not tool_id:
            raise _InvalidParams("Invalid params: toolId must be a non-empty string")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        elif not isinstance(arguments, Mapping):
            raise _InvalidParams("Invalid params: arguments must be an object")
        # Tools block on cluster I/O; keep the read loop responsive.
        envelope = await asyncio.to_thread(
            self._service.invoke_tool,
            tool_id=tool_id,
            arguments=dict(arguments),
            context=self._context("tool", "mcp.tool.invoke"),
        )
        return self._envelope_response(envelope)

    async def _health(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "result": self._service.health(self._context("health", "mcp.health"))}

    @staticmethod
    def _envelope_response(envelope: Envelope) -> dict[str, Any]:
        payload = envelope.to_dict()
        if envelope.error is None:
            return {"jsonrpc": "2.0", "result": payload}
        error = CanonicalError.to_jsonrpc_error(envelope.error.code)
        error["data"] = {**error["data"], "envelope": payload}  # type: ignore[dict-item]
        return {"jsonrpc": "2.0", "error": error}

    async def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Answer one framed message; notifications return ``None``."""

        try:
            message = json.loads(line)
        except ValueError:
            return _rpc_error(PARSE_ERROR, "Invalid JSON")
        if isinstance(message, Mapping) and "id" not in message:
            LOGGER.debug("Ignoring notification %s", message.get("method"))
            return None
        return await self.handle_request(message)

    async def serve(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        once: bool = False,
    ) -> None:
        async def send(response: Mapping[str, Any]) -> None:
            writer.write((json.dumps(response) + "\n").encode("utf-8"))
            await writer.drain()

        while line := await reader.readline():
            if not line.strip():
                continue
            response = await self.handle_line(line)
            if response is not None:
                await send(response)
            if once:
                break
        writer.close()
        await writer.wait_closed()
